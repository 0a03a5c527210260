"""Configuration and result classes for speculative decoding.

This module provides the per-request :class:`GenerationConfig`, the
:class:`GenerationMetrics` collected while generating, and the
:class:`GenerationResult` returned to callers.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

import dataclasses
import numbers
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from rotalabs_specdec.errors import InvalidConfig

_INT_FIELDS = ("gamma", "top_k", "max_new_tokens", "eos_token_id", "seed", "min_gamma", "max_gamma")
_OPTIONAL_FIELDS = ("eos_token_id", "seed")
_REAL_FIELDS = ("temperature", "top_p")


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for one speculative decoding request.

    A small draft model proposes ``gamma`` tokens per round, which the target
    model verifies in a single forward pass. Every accepted token, and the
    correction or bonus token sampled at the end of the round, is distributed
    exactly as if sampled from the target model under this sampling policy.

    References:
        - Fast Inference from Transformers via Speculative Decoding
          https://arxiv.org/abs/2211.17192

    Attributes:
        gamma: Number of tokens drafted per round. Higher values increase
            potential speedup but lower the chance the whole draft survives.
            Default: 4.
        temperature: Softmax temperature applied to both models (must be > 0).
            Default: 1.0.
        top_k: Keep only tokens whose logit is at least the k-th largest. Tokens
            tied with the k-th logit are all kept, so more than top_k tokens
            can survive. 0 disables. Default: 0.
        top_p: Nucleus sampling threshold in (0, 1]. 1.0 disables. Default: 1.0.
        max_new_tokens: Number of tokens to generate, excluding the prompt.
            Default: 128.
        eos_token_id: Generation stops right after this token is emitted.
            None disables. Default: None.
        seed: Seed for the request's random source. Default: None.
        adaptive_gamma: If True, adjust gamma between rounds from the recent
            acceptance rate. Default: False.
        min_gamma: Lower bound for adaptive gamma. Default: 1.
        max_gamma: Upper bound for adaptive gamma. Default: 8.

    Raises:
        InvalidConfig: If any field has the wrong type or is out of range.

    Example:
        >>> config = GenerationConfig(gamma=5, temperature=0.8, top_p=0.95,
        ...                           max_new_tokens=256, eos_token_id=2)
    """
    gamma: int = 4
    temperature: float = 1.0
    top_k: int = 0
    top_p: float = 1.0
    max_new_tokens: int = 128
    eos_token_id: Optional[int] = None
    seed: Optional[int] = None
    adaptive_gamma: bool = False
    min_gamma: int = 1
    max_gamma: int = 8

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        for name in _INT_FIELDS:
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_FIELDS:
                continue
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidConfig(f"{name} must be an int, got {value!r}")
        for name in _REAL_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, numbers.Real) or isinstance(value, bool):
                raise InvalidConfig(f"{name} must be a real number, got {value!r}")
        if not isinstance(self.adaptive_gamma, bool):
            raise InvalidConfig(f"adaptive_gamma must be a bool, got {self.adaptive_gamma!r}")

        if self.gamma < 1:
            raise InvalidConfig(f"gamma must be >= 1, got {self.gamma}")
        if not self.temperature > 0:
            raise InvalidConfig(f"temperature must be > 0, got {self.temperature}")
        if self.top_k < 0:
            raise InvalidConfig(f"top_k must be >= 0, got {self.top_k}")
        if not (0 < self.top_p <= 1):
            raise InvalidConfig(f"top_p must be in (0, 1], got {self.top_p}")
        if self.max_new_tokens < 1:
            raise InvalidConfig(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")
        if self.eos_token_id is not None and self.eos_token_id < 0:
            raise InvalidConfig(f"eos_token_id must be >= 0, got {self.eos_token_id}")
        if self.min_gamma < 1:
            raise InvalidConfig(f"min_gamma must be >= 1, got {self.min_gamma}")
        if self.max_gamma < self.min_gamma:
            raise InvalidConfig(
                f"max_gamma must be >= min_gamma, got max_gamma={self.max_gamma}, "
                f"min_gamma={self.min_gamma}"
            )

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "GenerationConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidConfig(f"unknown generation config keys: {', '.join(unknown)}")
        return cls(**dict(values))

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "GenerationConfig":
        """Load a config from a YAML file.

        The file may hold the fields at top level or under a ``generation``
        key::

            generation:
              gamma: 5
              temperature: 0.7
              max_new_tokens: 256
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise InvalidConfig(f"expected a mapping in {path}, got {type(data).__name__}")
        if "generation" in data:
            data = data["generation"] or {}
        return cls.from_dict(data)


@dataclass
class GenerationMetrics:
    """Metrics collected during speculative generation.

    Attributes:
        rounds: Number of draft-verify rounds performed.
        proposed_tokens: Total number of tokens drafted (including rejected).
        accepted_tokens: Number of drafted tokens the target accepted.
        generated_tokens: Tokens appended to the output, counting the
            correction or bonus token of each round.
        draft_calls: Draft model forward calls, prefill included.
        target_calls: Target model forward calls, prefill included.
        draft_time_ms: Total time spent drafting in milliseconds.
        verify_time_ms: Total time spent verifying in milliseconds.
        total_time_ms: Total generation time in milliseconds.

    Example:
        >>> result = generator.generate(prompt_ids, config)
        >>> print(f"Acceptance rate: {result.metrics.acceptance_rate:.1%}")
        >>> print(f"Tokens per round: {result.metrics.tokens_per_round:.2f}")
    """
    rounds: int = 0
    proposed_tokens: int = 0
    accepted_tokens: int = 0
    generated_tokens: int = 0
    draft_calls: int = 0
    target_calls: int = 0
    draft_time_ms: float = 0.0
    verify_time_ms: float = 0.0
    total_time_ms: float = 0.0

    @property
    def acceptance_rate(self) -> float:
        """Fraction of drafted tokens that were accepted."""
        if self.proposed_tokens == 0:
            return 0.0
        return self.accepted_tokens / self.proposed_tokens

    @property
    def tokens_per_round(self) -> float:
        """Average tokens appended per round."""
        if self.rounds == 0:
            return 0.0
        return self.generated_tokens / self.rounds

    @property
    def tokens_per_second(self) -> float:
        """Generation throughput in tokens/second."""
        if self.total_time_ms == 0:
            return 0.0
        return self.generated_tokens / (self.total_time_ms / 1000)

    @property
    def speedup_ratio(self) -> float:
        """Estimate speedup over standard autoregressive decoding.

        Approximated as tokens_per_round, since each round costs roughly one
        target model pass.
        """
        return self.tokens_per_round

    def __str__(self) -> str:
        """Return a formatted string representation of metrics."""
        return (
            f"GenerationMetrics(\n"
            f"  accepted={self.accepted_tokens}/{self.proposed_tokens} "
            f"({self.acceptance_rate:.1%} acceptance)\n"
            f"  rounds={self.rounds} "
            f"({self.tokens_per_round:.2f} tok/round)\n"
            f"  time={self.total_time_ms:.1f}ms "
            f"({self.tokens_per_second:.1f} tok/s)\n"
            f"  estimated_speedup={self.speedup_ratio:.2f}x\n"
            f")"
        )


@dataclass
class GenerationResult:
    """Output of one generation request.

    Attributes:
        tokens: Generated token ids, prompt excluded.
        prompt_tokens: The prompt the request started from.
        finish_reason: ``"length"``, ``"eos"`` or ``"cancelled"``.
        metrics: Statistics for the request.
    """
    tokens: List[int]
    prompt_tokens: List[int]
    finish_reason: str
    metrics: GenerationMetrics = field(default_factory=GenerationMetrics)

    @property
    def sequence(self) -> List[int]:
        """Prompt followed by the generated tokens."""
        return list(self.prompt_tokens) + list(self.tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens": list(self.tokens),
            "finish_reason": self.finish_reason,
            "rounds": self.metrics.rounds,
            "proposed_tokens": self.metrics.proposed_tokens,
            "accepted_tokens": self.metrics.accepted_tokens,
            "acceptance_rate": self.metrics.acceptance_rate,
        }


__all__ = [
    "GenerationConfig",
    "GenerationMetrics",
    "GenerationResult",
]
