"""Seedable randomness source for sampling and acceptance tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Union

import torch

if TYPE_CHECKING:
    from .distribution import Distribution


class RandomSource:
    """Uniform and categorical draws backed by a ``torch.Generator``.

    Args:
        seed: Seed for reproducible draws. If None, the generator is seeded
            from torch's default entropy.
        device: Device the generator lives on. Categorical draws move the
            distribution there if needed.

    Example:
        >>> rng = RandomSource(seed=0)
        >>> u = rng.uniform()
        >>> token = rng.categorical(distribution)
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        device: Union[str, torch.device] = "cpu",
    ):
        self.device = torch.device(device)
        self.generator = torch.Generator(device=self.device)
        if seed is None:
            self.generator.seed()
        else:
            self.generator.manual_seed(seed)

    def uniform(self) -> float:
        """Draw from U[0, 1)."""
        return torch.rand(1, generator=self.generator, device=self.device).item()

    def categorical(self, distribution: "Distribution") -> int:
        """Draw a token id from ``distribution``."""
        probs = distribution.probs
        if probs.device != self.device:
            probs = probs.to(self.device)
        return int(torch.multinomial(probs, num_samples=1, generator=self.generator).item())


__all__ = ["RandomSource"]
