"""Exception hierarchy for speculative decoding.

Ordinary failures (bad input, backend errors, context overflow) derive from
:class:`GenerationError`. :class:`InvariantViolation` is kept outside that
branch so callers can tell "my request was bad" apart from "the decoder has a
bug". :class:`DegenerateResidual` is raised and handled inside the acceptance
sampler and never reaches callers.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

from typing import Optional


class SpeculativeDecodingError(Exception):
    """Base class for all errors raised by this package.

    Attributes:
        round_index: Round in which the error surfaced, if it happened inside
            a generation loop. ``None`` for errors raised before generation.
        tokens_generated: Number of tokens committed before the failing round.
        accepted_count: Drafted tokens accepted before the failing round.
    """

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.round_index: Optional[int] = None
        self.tokens_generated: Optional[int] = None
        self.accepted_count: Optional[int] = None

    def with_context(
        self,
        round_index: int,
        tokens_generated: int,
        accepted_count: int = 0,
    ) -> "SpeculativeDecodingError":
        """Attach loop position to the error and return it for re-raising."""
        self.round_index = round_index
        self.tokens_generated = tokens_generated
        self.accepted_count = accepted_count
        return self

    def __str__(self) -> str:
        message = super().__str__()
        if self.round_index is None:
            return message
        return (
            f"{message} (round={self.round_index}, "
            f"tokens_generated={self.tokens_generated}, "
            f"accepted_count={self.accepted_count})"
        )


class GenerationError(SpeculativeDecodingError):
    """An ordinary, non-defect failure of a generation request."""


class InvalidConfig(GenerationError, ValueError):
    """Configuration or request parameters are out of range."""


class VocabularyMismatch(GenerationError, ValueError):
    """Draft and target (or a model and its recorded size) disagree on vocabulary."""


class ContextTooLong(GenerationError):
    """A model call would exceed the model's context window."""


class ModelAdapterFailure(GenerationError):
    """Opaque backend error raised during a model call.

    The original exception is chained as ``__cause__``.
    """


class DegenerateResidual(SpeculativeDecodingError):
    """Residual distribution has (almost) no probability mass left."""


class InvariantViolation(SpeculativeDecodingError):
    """Internal contract breach. Indicates a bug, never retried."""


__all__ = [
    "SpeculativeDecodingError",
    "GenerationError",
    "InvalidConfig",
    "VocabularyMismatch",
    "ContextTooLong",
    "ModelAdapterFailure",
    "DegenerateResidual",
    "InvariantViolation",
]
