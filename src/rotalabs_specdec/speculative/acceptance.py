"""Acceptance-rejection sampling for speculative decoding.

Implements the rejection sampling scheme from Leviathan et al. (2023) and
Chen et al. (2023). Walking the proposals in order, proposal i with draft
probability q and target probability p is kept with probability min(1, p / q).
At the first rejection a replacement is drawn from the residual
norm(max(0, p_target - p_draft)); if every proposal survives, a bonus token is
drawn from the target distribution after the last proposal.

The token emitted at each position is then distributed exactly as the target
distribution at that position, whatever the draft proposed.

References:
    - Leviathan et al. "Fast Inference from Transformers via Speculative
      Decoding" https://arxiv.org/abs/2211.17192
    - Chen et al. "Accelerating Large Language Model Decoding with
      Speculative Sampling" https://arxiv.org/abs/2302.01318

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from rotalabs_specdec.errors import DegenerateResidual, InvariantViolation

from .distribution import Distribution
from .proposer import Proposal
from .rng import RandomSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Outcome of the acceptance test for one round.

    Attributes:
        accepted_count: Number of leading proposals kept, in [0, gamma].
        final_token: Resampled token after a rejection, or the bonus token
            when every proposal was accepted.
        resampled: True if a proposal was rejected.
    """
    accepted_count: int
    final_token: int
    resampled: bool


def acceptance_probability(proposal: Proposal, target: Distribution) -> float:
    """Return min(1, p_target / p_draft) for one proposal.

    Raises:
        InvariantViolation: If the draft gave its own proposal zero mass.
    """
    p_draft = proposal.distribution.prob(proposal.token)
    if p_draft <= 0:
        raise InvariantViolation(
            f"proposed token {proposal.token} has zero probability under the draft distribution"
        )
    p_target = target.prob(proposal.token)
    return min(1.0, p_target / p_draft)


def accept_probabilities(
    proposals: Sequence[Proposal],
    target_distributions: Sequence[Distribution],
) -> List[float]:
    """Per-position acceptance probabilities, for diagnostics."""
    return [
        acceptance_probability(proposal, target)
        for proposal, target in zip(proposals, target_distributions)
    ]


def resolve(
    proposals: Sequence[Proposal],
    target_distributions: Sequence[Distribution],
    rng: RandomSource,
) -> Resolution:
    """
    Decide how many proposals to keep and draw the round's final token.

    Args:
        proposals: gamma drafted tokens with their draft distributions.
        target_distributions: gamma + 1 target distributions from the
            verification pass.
        rng: Randomness source for the uniform and categorical draws.

    Returns:
        Resolution with the accepted prefix length and the final token.

    Raises:
        InvariantViolation: On mismatched lengths or a zero-probability
            proposal.

    Example:
        >>> resolution = resolve(batch.proposals, verification.distributions, rng)
        >>> committed = batch.tokens[:resolution.accepted_count] + [resolution.final_token]
    """
    gamma = len(proposals)
    if gamma == 0:
        raise InvariantViolation("resolve called without proposals")
    if len(target_distributions) != gamma + 1:
        raise InvariantViolation(
            f"expected {gamma + 1} target distributions, got {len(target_distributions)}"
        )

    for i, proposal in enumerate(proposals):
        target = target_distributions[i]
        accept_prob = acceptance_probability(proposal, target)

        # u in [0, 1): a zero-ratio proposal is always rejected
        if rng.uniform() < accept_prob:
            continue

        try:
            distribution = target.residual(proposal.distribution)
        except DegenerateResidual as exc:
            logger.debug("position %d: %s; sampling from target directly", i, exc)
            distribution = target
        final_token = distribution.sample(rng)
        return Resolution(accepted_count=i, final_token=final_token, resampled=True)

    bonus = target_distributions[gamma].sample(rng)
    return Resolution(accepted_count=gamma, final_token=bonus, resampled=False)


__all__ = [
    "Resolution",
    "acceptance_probability",
    "accept_probabilities",
    "resolve",
]
