"""Sampling policy for speculative decoding.

Converts raw logits into a :class:`Distribution` using temperature scaling
followed by optional top-k and top-p (nucleus) truncation. The same policy is
applied to draft and target logits, so the acceptance test compares
distributions built the same way.

Filter order is fixed: temperature, then top-k, then top-p on what top-k left.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

from typing import List, Tuple

import torch
import torch.nn.functional as F

from rotalabs_specdec.errors import InvalidConfig, InvariantViolation

from .distribution import Distribution
from .rng import RandomSource


def apply_sampling_policy(
    logits: torch.Tensor,
    temperature: float = 1.0,
    top_k: int = 0,
    top_p: float = 1.0,
) -> Distribution:
    """Turn one row of logits into a sampling distribution.

    Args:
        logits: Unnormalized log probabilities of shape (vocab_size,).
        temperature: Softmax temperature, must be > 0. Default: 1.0.
        top_k: Keep only the top-k highest logits. 0 disables. Default: 0.
        top_p: Keep the smallest set of most likely tokens whose cumulative
            probability reaches top_p. 1.0 disables. Default: 1.0.

    Returns:
        Distribution over the vocabulary.

    Raises:
        InvalidConfig: If temperature is not positive.

    Example:
        >>> dist = apply_sampling_policy(logits, temperature=0.8, top_k=50, top_p=0.95)
        >>> print(dist.prob(token_id))
    """
    if logits.dim() != 1:
        raise InvariantViolation(f"expected 1-D logits, got shape {tuple(logits.shape)}")
    probs = _policy_probs(logits.unsqueeze(0), temperature, top_k, top_p)
    return Distribution(probs[0])


def apply_sampling_policy_batch(
    logits: torch.Tensor,
    temperature: float = 1.0,
    top_k: int = 0,
    top_p: float = 1.0,
) -> List[Distribution]:
    """Apply the sampling policy independently to each row of 2-D logits.

    Args:
        logits: Logits of shape (num_positions, vocab_size).

    Returns:
        One Distribution per row, in order.
    """
    if logits.dim() != 2:
        raise InvariantViolation(f"expected 2-D logits, got shape {tuple(logits.shape)}")
    probs = _policy_probs(logits, temperature, top_k, top_p)
    return [Distribution(row) for row in probs]


def sample_from_logits(
    logits: torch.Tensor,
    rng: RandomSource,
    temperature: float = 1.0,
    top_k: int = 0,
    top_p: float = 1.0,
) -> Tuple[int, Distribution]:
    """Apply the sampling policy and draw one token.

    Returns:
        Tuple of (token, distribution) where distribution is the one the
        token was drawn from. The distribution is needed later to compute
        the acceptance ratio.
    """
    distribution = apply_sampling_policy(logits, temperature, top_k, top_p)
    return distribution.sample(rng), distribution


def _policy_probs(
    logits: torch.Tensor,
    temperature: float,
    top_k: int,
    top_p: float,
) -> torch.Tensor:
    if temperature <= 0:
        raise InvalidConfig(f"temperature must be > 0, got {temperature}")

    logits = logits.detach().to(torch.float32) / temperature

    if top_k > 0 and top_k < logits.size(-1):
        logits = _top_k_filtering(logits, top_k)

    if top_p < 1.0:
        logits = _top_p_filtering(logits, top_p)

    return F.softmax(logits, dim=-1)


def _top_k_filtering(logits: torch.Tensor, top_k: int) -> torch.Tensor:
    """Mask everything below the k-th largest logit to -inf.

    Ties with the k-th value are kept.
    """
    values, _ = torch.topk(logits, top_k, dim=-1)
    min_value = values[..., -1, None]
    return torch.where(
        logits < min_value,
        torch.full_like(logits, float("-inf")),
        logits,
    )


def _top_p_filtering(logits: torch.Tensor, top_p: float) -> torch.Tensor:
    """Mask tokens outside the nucleus to -inf.

    A token is dropped when the probability mass strictly before it (in
    descending order) already reaches top_p. The most likely token is
    always kept.
    """
    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    sorted_probs = F.softmax(sorted_logits, dim=-1)
    mass_before = torch.cumsum(sorted_probs, dim=-1) - sorted_probs

    sorted_indices_to_remove = mass_before >= top_p
    sorted_indices_to_remove[..., 0] = False

    indices_to_remove = sorted_indices_to_remove.scatter(
        -1, sorted_indices, sorted_indices_to_remove
    )

    return torch.where(
        indices_to_remove,
        torch.full_like(logits, float("-inf")),
        logits,
    )


__all__ = [
    "apply_sampling_policy",
    "apply_sampling_policy_batch",
    "sample_from_logits",
]
