"""Draft proposal step of speculative decoding.

The draft model samples ``gamma`` candidate tokens one after another. Each
draw depends on the previous one, so the loop is strictly sequential.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import torch

from rotalabs_specdec.errors import InvariantViolation

from .adapters import ModelAdapter
from .cache import IncrementalCache
from .config import GenerationConfig
from .distribution import Distribution
from .rng import RandomSource
from .sampling import sample_from_logits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Proposal:
    """A drafted token and the distribution it was sampled from."""
    token: int
    distribution: Distribution


@dataclass
class ProposalBatch:
    """Result of one drafting pass.

    Attributes:
        proposals: The drafted tokens in order.
        cache: Draft cache, advanced by ``len(proposals)`` tokens.
        logits: gamma + 1 draft logits rows. Entry i is the draft's
            next-token logits once proposals[:i] are incorporated.
    """
    proposals: List[Proposal]
    cache: IncrementalCache
    logits: List[torch.Tensor] = field(default_factory=list)

    @property
    def tokens(self) -> List[int]:
        return [p.token for p in self.proposals]


def propose(
    draft: ModelAdapter,
    sequence: Sequence[int],
    draft_cache: IncrementalCache,
    config: GenerationConfig,
    rng: RandomSource,
    gamma: Optional[int] = None,
) -> ProposalBatch:
    """
    Draft ``gamma`` tokens with the draft model.

    Each token is sampled from the sampling-policy distribution of the draft
    logits at its position, then fed back through the draft model so the
    cache advances by exactly one token per draw.

    Args:
        draft: Draft model adapter.
        sequence: Committed sequence (prompt + generated). The cache must
            hold exactly these tokens.
        draft_cache: Draft cache with ``next_logits`` for the next position.
        config: Sampling policy and default gamma.
        rng: Randomness source for the draws.
        gamma: Number of tokens to draft. Defaults to ``config.gamma``.

    Returns:
        ProposalBatch with the proposals and the advanced cache.

    Raises:
        InvariantViolation: If the cache does not match ``sequence``.
        GenerationError: Any adapter failure, unretried.
    """
    if gamma is None:
        gamma = config.gamma
    if gamma < 1:
        raise InvariantViolation(f"gamma must be >= 1, got {gamma}")
    if draft_cache.length != len(sequence) or draft_cache.next_logits is None:
        raise InvariantViolation(
            f"draft cache holds {draft_cache.length} tokens, sequence has {len(sequence)}"
        )

    proposals: List[Proposal] = []
    logits: List[torch.Tensor] = [draft_cache.next_logits]
    cache = draft_cache

    for _ in range(gamma):
        token, distribution = sample_from_logits(
            cache.next_logits, rng,
            config.temperature, config.top_k, config.top_p,
        )
        proposals.append(Proposal(token, distribution))
        _, cache = draft.step([token], cache)
        logits.append(cache.next_logits)

    logger.debug("drafted %d tokens: %s", gamma, [p.token for p in proposals])
    return ProposalBatch(proposals=proposals, cache=cache, logits=logits)


__all__ = [
    "Proposal",
    "ProposalBatch",
    "propose",
]
