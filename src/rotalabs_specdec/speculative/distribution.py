"""Probability distributions over the shared vocabulary.

A :class:`Distribution` is a thin, validated wrapper around a 1-D probability
tensor. It carries the few operations the acceptance-rejection sampler needs:
point lookup, the clamped residual ``max(p - q, 0)``, renormalization and
sampling.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import torch

from rotalabs_specdec.errors import DegenerateResidual, InvariantViolation

if TYPE_CHECKING:
    from .rng import RandomSource


# Residual mass below this is treated as numerically zero.
RESIDUAL_MASS_EPSILON = 1e-6

# Allowed deviation of the total mass from 1.
NORMALIZATION_TOLERANCE = 1e-3


@dataclass(frozen=True)
class Distribution:
    """Dense probability vector over the vocabulary.

    Attributes:
        probs: Float tensor of shape (vocab_size,). Non-negative, finite and
            summing to 1 within ``NORMALIZATION_TOLERANCE``.

    Raises:
        InvariantViolation: If the tensor is not a valid distribution.
    """
    probs: torch.Tensor

    def __post_init__(self) -> None:
        probs = self.probs
        if probs.dim() != 1 or probs.numel() == 0:
            raise InvariantViolation(
                f"distribution must be a non-empty 1-D tensor, got shape {tuple(probs.shape)}"
            )
        if not torch.isfinite(probs).all():
            raise InvariantViolation("distribution contains non-finite values")
        if (probs < 0).any():
            raise InvariantViolation("distribution contains negative probabilities")
        total = probs.sum().item()
        if abs(total - 1.0) > NORMALIZATION_TOLERANCE:
            raise InvariantViolation(f"distribution sums to {total}, expected 1")

    @classmethod
    def from_probs(cls, probs: torch.Tensor) -> "Distribution":
        """Build a distribution from non-negative weights, normalizing them."""
        probs = probs.detach().to(torch.float32)
        total = probs.sum()
        if probs.numel() == 0 or total.item() <= 0:
            raise InvariantViolation("cannot normalize an empty or zero-mass vector")
        return cls(probs / total)

    @property
    def vocab_size(self) -> int:
        return self.probs.shape[0]

    def prob(self, token: int) -> float:
        """Probability assigned to ``token``."""
        return self.probs[token].item()

    def residual(self, other: "Distribution") -> "Distribution":
        """Return ``norm(max(self - other, 0))``.

        This is the excess mass ``self`` assigns beyond ``other``, used to
        resample after a draft token is rejected.

        Raises:
            DegenerateResidual: If the mass before normalization is below
                ``RESIDUAL_MASS_EPSILON``.
        """
        if other.vocab_size != self.vocab_size:
            raise InvariantViolation(
                f"vocabulary sizes differ: {self.vocab_size} vs {other.vocab_size}"
            )
        excess = torch.clamp(self.probs - other.probs.to(self.probs.device), min=0)
        mass = excess.sum().item()
        if mass < RESIDUAL_MASS_EPSILON:
            raise DegenerateResidual(f"residual mass {mass:.3e} below {RESIDUAL_MASS_EPSILON}")
        return Distribution(excess / mass)

    def sample(self, rng: "RandomSource") -> int:
        """Draw one token id."""
        return rng.categorical(self)


__all__ = [
    "RESIDUAL_MASS_EPSILON",
    "NORMALIZATION_TOLERANCE",
    "Distribution",
]
