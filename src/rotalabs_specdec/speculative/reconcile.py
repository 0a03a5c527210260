"""Cache reconciliation after a speculative round.

Both models advanced their caches through every drafted token: the draft
while proposing, the target while verifying. After the acceptance test only a
prefix of those tokens, plus one resampled or bonus token, is committed. This
module crops each cache back to the committed prefix it already holds and
runs the remaining committed token through the model, so both caches hold
exactly the committed sequence before the next round.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple

import torch

from rotalabs_specdec.errors import InvariantViolation

from .adapters import ModelAdapter
from .cache import IncrementalCache

logger = logging.getLogger(__name__)


def restore_cache(
    model: ModelAdapter,
    cache: IncrementalCache,
    base_length: int,
    round_logits: Sequence[torch.Tensor],
    committed: Sequence[int],
    reuse: int,
) -> IncrementalCache:
    """Bring one model's cache in line with the committed tokens.

    Args:
        model: Adapter owning ``cache``.
        cache: Cache advanced through this round's proposals.
        base_length: Cache length at the start of the round.
        round_logits: Logits rows for the round; entry i is the model's
            next-token logits after base_length + i tokens.
        committed: Tokens appended to the sequence this round.
        reuse: How many leading committed tokens the cache already holds.

    Returns:
        The cache, holding base_length + len(committed) tokens.
    """
    cache = model.truncate(cache, base_length + reuse, round_logits[reuse])
    remaining = list(committed[reuse:])
    if remaining:
        _, cache = model.step(remaining, cache)
    return cache


def reconcile(
    draft: ModelAdapter,
    target: ModelAdapter,
    draft_cache: IncrementalCache,
    target_cache: IncrementalCache,
    base_length: int,
    accepted_count: int,
    committed: Sequence[int],
    draft_logits: Sequence[torch.Tensor],
    target_logits: Sequence[torch.Tensor],
) -> Tuple[IncrementalCache, IncrementalCache]:
    """
    Make both caches reflect exactly the committed sequence.

    The draft cache advanced by gamma tokens while proposing and the target
    cache by gamma tokens while verifying. The first
    ``min(accepted_count, len(committed))`` of those are part of the committed
    sequence and are kept; everything past them is cropped. The final token
    (resampled or bonus), when committed, is then run through each model in
    one step, which also refreshes the pending next-token logits.

    Args:
        draft: Draft model adapter.
        target: Target model adapter.
        draft_cache: Draft cache after proposing.
        target_cache: Target cache after verifying.
        base_length: Committed length before the round.
        accepted_count: Number of proposals accepted this round.
        committed: Tokens appended to the sequence this round, i.e. the
            accepted proposals followed by the final token, possibly cut
            short by an end-of-sequence token or the length limit.
        draft_logits: The proposer's gamma + 1 logits rows.
        target_logits: The verifier's gamma + 1 logits rows.

    Returns:
        Tuple of (draft_cache, target_cache), both holding
        base_length + len(committed) tokens.

    Raises:
        InvariantViolation: If the inputs are inconsistent or a cache ends
            up at the wrong length.
    """
    if not committed:
        raise InvariantViolation("a round must commit at least one token")
    if len(committed) > accepted_count + 1:
        raise InvariantViolation(
            f"{len(committed)} tokens committed with only {accepted_count} accepted"
        )
    if len(draft_logits) <= accepted_count or len(target_logits) <= accepted_count:
        raise InvariantViolation("missing logits rows for the accepted prefix")

    reuse = min(accepted_count, len(committed))
    draft_cache = restore_cache(draft, draft_cache, base_length, draft_logits, committed, reuse)
    target_cache = restore_cache(target, target_cache, base_length, target_logits, committed, reuse)

    expected = base_length + len(committed)
    for name, cache in (("draft", draft_cache), ("target", target_cache)):
        if cache.length != expected:
            raise InvariantViolation(
                f"{name} cache holds {cache.length} tokens after reconcile, expected {expected}"
            )

    logger.debug(
        "reconciled caches to %d tokens (kept %d drafted, stepped %d)",
        expected, reuse, len(committed) - reuse,
    )
    return draft_cache, target_cache


def rollback(
    draft: ModelAdapter,
    target: ModelAdapter,
    draft_cache: IncrementalCache,
    target_cache: IncrementalCache,
    base_length: int,
    draft_logits: torch.Tensor,
    target_logits: torch.Tensor,
) -> Tuple[IncrementalCache, IncrementalCache]:
    """Undo a partially executed round.

    Crops both caches back to ``base_length`` and restores the pending logits
    saved at the start of the round.
    """
    if draft_cache.length > base_length:
        draft_cache = draft.truncate(draft_cache, base_length, draft_logits)
    if target_cache.length > base_length:
        target_cache = target.truncate(target_cache, base_length, target_logits)
    draft_cache.next_logits = draft_logits
    target_cache.next_logits = target_logits
    return draft_cache, target_cache


__all__ = [
    "restore_cache",
    "reconcile",
    "rollback",
]
