"""Target verification pass.

One target forward over all drafted tokens yields the target distribution at
every drafted position plus the one after, so checking ``gamma`` proposals
costs a single target call instead of ``gamma + 1``.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

import torch

from rotalabs_specdec.errors import InvariantViolation

from .adapters import ModelAdapter
from .cache import IncrementalCache
from .config import GenerationConfig
from .distribution import Distribution
from .proposer import Proposal
from .sampling import apply_sampling_policy_batch

logger = logging.getLogger(__name__)


@dataclass
class Verification:
    """Target model scores for one round.

    Attributes:
        distributions: gamma + 1 target distributions. Entry i is the
            distribution for the token after proposals[:i].
        logits: The gamma + 1 raw logits rows behind ``distributions``.
        cache: Target cache, advanced through every proposal.
    """
    distributions: List[Distribution]
    logits: torch.Tensor
    cache: IncrementalCache


def verify(
    target: ModelAdapter,
    sequence: Sequence[int],
    proposals: Sequence[Proposal],
    target_cache: IncrementalCache,
    config: GenerationConfig,
) -> Verification:
    """
    Score all proposals with a single target model call.

    The first row comes from the cache's pending logits (the position right
    after the committed sequence); the remaining gamma rows come from running
    the proposals through the target as one increment.

    Args:
        target: Target model adapter.
        sequence: Committed sequence. The cache must hold exactly these tokens.
        proposals: Drafted tokens for this round, at least one.
        target_cache: Target cache with ``next_logits`` for the next position.
        config: Sampling policy, shared with the proposer.

    Returns:
        Verification with gamma + 1 distributions.
    """
    if not proposals:
        raise InvariantViolation("verify called without proposals")
    if target_cache.length != len(sequence) or target_cache.next_logits is None:
        raise InvariantViolation(
            f"target cache holds {target_cache.length} tokens, sequence has {len(sequence)}"
        )

    pending = target_cache.next_logits
    step_logits, cache = target.step([p.token for p in proposals], target_cache)

    all_logits = torch.cat([pending.unsqueeze(0), step_logits.to(pending.device)], dim=0)
    distributions = apply_sampling_policy_batch(
        all_logits, config.temperature, config.top_k, config.top_p
    )

    logger.debug("verified %d proposals in one target call", len(proposals))
    return Verification(distributions=distributions, logits=all_logits, cache=cache)


__all__ = [
    "Verification",
    "verify",
]
