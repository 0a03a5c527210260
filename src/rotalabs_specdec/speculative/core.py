"""Core speculative decoding loop.

Implements the standard speculative decoding algorithm (Leviathan et al., 2023)
with incremental caches for both models.

Each round the draft model proposes ``gamma`` tokens, the target model scores
all of them in one pass, the acceptance test keeps a prefix and draws one
more token, and both caches are reconciled to the committed sequence. A round
appends between 1 and gamma + 1 tokens, and the output is distributed exactly
as sampling from the target model alone.

Key features:
- Explicit per-request session with a round-level state machine
- Rollback of both caches when a round fails, so a session can be resumed
- Cancellation checked between rounds
- Adaptive gamma selection based on acceptance rates
- Compatible with HuggingFace transformers models

Reference: https://arxiv.org/abs/2211.17192

Author: Subhadip Mitra <research@rotalabs.ai>
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple, Union

import torch
from transformers import PreTrainedModel, PreTrainedTokenizerBase

from rotalabs_specdec.errors import (
    InvalidConfig,
    InvariantViolation,
    SpeculativeDecodingError,
    VocabularyMismatch,
)

from .acceptance import resolve
from .adapters import HFModelAdapter, ModelAdapter
from .config import GenerationConfig, GenerationMetrics, GenerationResult
from .proposer import propose
from .reconcile import reconcile, rollback
from .rng import RandomSource
from .verifier import verify

logger = logging.getLogger(__name__)

# Number of recent rounds averaged for adaptive gamma.
ADAPTIVE_WINDOW = 5
ADAPTIVE_RAISE_ABOVE = 0.8
ADAPTIVE_LOWER_BELOW = 0.5


class LoopState(Enum):
    """Stage of the generation loop.

    Attributes:
        PROPOSE: Drafting gamma tokens.
        VERIFY: Scoring the draft with the target model.
        ACCEPT: Running the acceptance test.
        COMMIT: Appending tokens and reconciling caches.
        TERMINATED: Generation finished; the session is read-only.
    """
    PROPOSE = "propose"
    VERIFY = "verify"
    ACCEPT = "accept"
    COMMIT = "commit"
    TERMINATED = "terminated"


class CancelFlag(Protocol):
    """Anything with an ``is_set`` method, e.g. ``threading.Event``."""

    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class RoundOutcome:
    """What one round did.

    Attributes:
        round_index: 1-based round number.
        gamma: Tokens drafted this round.
        accepted_count: Drafted tokens the target accepted.
        final_token: Resampled or bonus token drawn at the end of the round.
        committed: Tokens appended to the sequence.
        resampled: True if a draft token was rejected.
    """
    round_index: int
    gamma: int
    accepted_count: int
    final_token: int
    committed: Tuple[int, ...]
    resampled: bool


class GenerationSession:
    """State of a single generation request.

    Owns the token sequence and both models' caches for the duration of the
    request. Created by :meth:`SpeculativeGenerator.start`, which prefills both
    caches with the prompt.

    If a round fails, both caches are rolled back to the end of the last
    completed round and the error is re-raised with the round number
    attached; calling :meth:`run` again resumes from there.
    """

    def __init__(
        self,
        draft: ModelAdapter,
        target: ModelAdapter,
        prompt_tokens: Sequence[int],
        config: GenerationConfig,
        rng: RandomSource,
    ):
        self.draft = draft
        self.target = target
        self.config = config
        self.rng = rng
        self.prompt_tokens: List[int] = list(prompt_tokens)
        self.sequence: List[int] = list(prompt_tokens)
        self.metrics = GenerationMetrics()
        self.state = LoopState.PROPOSE
        self.finish_reason: Optional[str] = None

        self._gamma = config.gamma
        if config.adaptive_gamma:
            self._gamma = min(max(config.gamma, config.min_gamma), config.max_gamma)
        self._recent_rates: List[float] = []

        self.draft_cache = draft.prefill(self.prompt_tokens)
        self.metrics.draft_calls += 1
        self.target_cache = target.prefill(self.prompt_tokens)
        self.metrics.target_calls += 1

    @property
    def generated_tokens(self) -> List[int]:
        return self.sequence[len(self.prompt_tokens):]

    @property
    def is_finished(self) -> bool:
        return self.state is LoopState.TERMINATED

    @property
    def current_gamma(self) -> int:
        """Gamma the next round starts from, before tail clamping."""
        return self._gamma

    def run(self, cancel_event: Optional[CancelFlag] = None) -> GenerationResult:
        """Run rounds until the length limit, end of sequence or cancellation.

        Args:
            cancel_event: Checked before each round. When set, the session
                terminates with ``finish_reason == "cancelled"``.

        Returns:
            GenerationResult for the request.
        """
        start_time = time.perf_counter()
        try:
            while self.state is not LoopState.TERMINATED:
                if cancel_event is not None and cancel_event.is_set():
                    self.finish_reason = "cancelled"
                    self.state = LoopState.TERMINATED
                    logger.info("generation cancelled after %d rounds", self.metrics.rounds)
                    break
                self.run_round()
        finally:
            self.metrics.total_time_ms += (time.perf_counter() - start_time) * 1000

        logger.info(
            "generated %d tokens in %d rounds (acceptance %.1f%%, finish=%s)",
            self.metrics.generated_tokens, self.metrics.rounds,
            100 * self.metrics.acceptance_rate, self.finish_reason,
        )
        return self.result()

    def run_round(self) -> RoundOutcome:
        """Execute one propose, verify, accept, commit cycle."""
        if self.state is LoopState.TERMINATED:
            raise InvariantViolation("session has already terminated")

        round_index = self.metrics.rounds + 1
        base_length = len(self.sequence)
        draft_pending = self.draft_cache.next_logits
        target_pending = self.target_cache.next_logits

        try:
            return self._execute_round(round_index, base_length)
        except Exception as exc:
            self.draft_cache, self.target_cache = rollback(
                self.draft, self.target, self.draft_cache, self.target_cache,
                base_length, draft_pending, target_pending,
            )
            self.state = LoopState.PROPOSE
            if isinstance(exc, SpeculativeDecodingError):
                exc.with_context(
                    round_index, len(self.generated_tokens), self.metrics.accepted_tokens
                )
            if isinstance(exc, InvariantViolation):
                logger.error("round %d hit an internal invariant violation: %s", round_index, exc)
            else:
                logger.warning("round %d failed: %s", round_index, exc)
            raise

    def result(self) -> GenerationResult:
        return GenerationResult(
            tokens=list(self.generated_tokens),
            prompt_tokens=list(self.prompt_tokens),
            finish_reason=self.finish_reason or "incomplete",
            metrics=self.metrics,
        )

    def _execute_round(self, round_index: int, base_length: int) -> RoundOutcome:
        config = self.config
        remaining = config.max_new_tokens - len(self.generated_tokens)

        # Propose
        self.state = LoopState.PROPOSE
        gamma = self._round_gamma(remaining)
        draft_start = time.perf_counter()
        batch = propose(self.draft, self.sequence, self.draft_cache, config, self.rng, gamma)
        self.metrics.draft_time_ms += (time.perf_counter() - draft_start) * 1000

        # Verify
        self.state = LoopState.VERIFY
        verify_start = time.perf_counter()
        verification = verify(self.target, self.sequence, batch.proposals, self.target_cache, config)
        self.metrics.verify_time_ms += (time.perf_counter() - verify_start) * 1000

        # Accept
        self.state = LoopState.ACCEPT
        resolution = resolve(batch.proposals, verification.distributions, self.rng)

        # Commit
        self.state = LoopState.COMMIT
        accepted = resolution.accepted_count
        committed = batch.tokens[:accepted] + [resolution.final_token]
        committed, finish_reason = self._cut(committed, remaining)

        self.draft_cache, self.target_cache = reconcile(
            self.draft, self.target, batch.cache, verification.cache,
            base_length, accepted, committed, batch.logits, verification.logits,
        )
        self.sequence.extend(committed)

        stepped = len(committed) - min(accepted, len(committed))
        self.metrics.rounds += 1
        self.metrics.proposed_tokens += gamma
        self.metrics.accepted_tokens += accepted
        self.metrics.generated_tokens += len(committed)
        self.metrics.draft_calls += gamma + stepped
        self.metrics.target_calls += 1 + stepped

        if config.adaptive_gamma:
            self._adapt_gamma(accepted / gamma)

        logger.debug(
            "round %d: gamma=%d accepted=%d final=%d committed=%s",
            round_index, gamma, accepted, resolution.final_token, committed,
        )

        if finish_reason is not None:
            self.finish_reason = finish_reason
            self.state = LoopState.TERMINATED
        else:
            self.state = LoopState.PROPOSE

        return RoundOutcome(
            round_index=round_index,
            gamma=gamma,
            accepted_count=accepted,
            final_token=resolution.final_token,
            committed=tuple(committed),
            resampled=resolution.resampled,
        )

    def _round_gamma(self, remaining: int) -> int:
        """Gamma for this round, clamped to the tokens and context left."""
        gamma = min(self._gamma, remaining - 1)
        for model in (self.draft, self.target):
            if model.max_context_length is not None:
                gamma = min(gamma, model.max_context_length - len(self.sequence) - 1)
        return max(1, gamma)

    def _cut(self, committed: List[int], remaining: int) -> Tuple[List[int], Optional[str]]:
        """Stop at the length limit or right after an end-of-sequence token."""
        committed = committed[:remaining]
        eos = self.config.eos_token_id
        if eos is not None and eos in committed:
            return committed[:committed.index(eos) + 1], "eos"
        if len(committed) == remaining:
            return committed, "length"
        return committed, None

    def _adapt_gamma(self, round_rate: float) -> None:
        self._recent_rates.append(round_rate)
        if len(self._recent_rates) > ADAPTIVE_WINDOW:
            self._recent_rates.pop(0)

        if len(self._recent_rates) >= ADAPTIVE_WINDOW:
            avg_rate = sum(self._recent_rates) / len(self._recent_rates)
            if avg_rate > ADAPTIVE_RAISE_ABOVE and self._gamma < self.config.max_gamma:
                self._gamma += 1
            elif avg_rate < ADAPTIVE_LOWER_BELOW and self._gamma > self.config.min_gamma:
                self._gamma -= 1


class SpeculativeGenerator:
    """Speculative decoder over a draft and a target model adapter.

    Holds no per-request state, so one generator can serve many requests;
    each request gets its own :class:`GenerationSession`.

    Args:
        draft: Adapter for the cheap draft model.
        target: Adapter for the target model whose distribution is reproduced.
        config: Default configuration for requests that do not pass one.

    Raises:
        VocabularyMismatch: If the two models have different vocabulary sizes.

    Example:
        >>> generator = SpeculativeGenerator(draft, target, GenerationConfig(gamma=4))
        >>> result = generator.generate(prompt_ids)
        >>> print(result.tokens, result.metrics.acceptance_rate)
    """

    def __init__(
        self,
        draft: ModelAdapter,
        target: ModelAdapter,
        config: Optional[GenerationConfig] = None,
    ):
        if draft.vocab_size != target.vocab_size:
            raise VocabularyMismatch(
                f"draft vocab size {draft.vocab_size} != target vocab size {target.vocab_size}"
            )
        self.draft = draft
        self.target = target
        self.config = config if config is not None else GenerationConfig()

    def start(
        self,
        prompt_tokens: Union[Sequence[int], torch.Tensor],
        config: Optional[GenerationConfig] = None,
        rng: Optional[RandomSource] = None,
    ) -> GenerationSession:
        """Validate a request and prefill both models with the prompt.

        Args:
            prompt_tokens: Prompt token ids, as a sequence or a tensor.
            config: Per-request configuration. Defaults to the generator's.
            rng: Randomness source. Defaults to one seeded from ``config.seed``.

        Raises:
            InvalidConfig: If the config or prompt is invalid. No model is
                called in that case.
        """
        config = config if config is not None else self.config
        if not isinstance(config, GenerationConfig):
            raise InvalidConfig(f"expected GenerationConfig, got {type(config).__name__}")

        if isinstance(prompt_tokens, torch.Tensor):
            prompt_tokens = prompt_tokens.reshape(-1).tolist()
        prompt = [int(t) for t in prompt_tokens]
        if not prompt:
            raise InvalidConfig("prompt must contain at least one token")
        out_of_range = [t for t in prompt if not 0 <= t < self.target.vocab_size]
        if out_of_range:
            raise InvalidConfig(
                f"prompt contains token ids outside the vocabulary: {out_of_range[:5]}"
            )

        if rng is None:
            rng = RandomSource(config.seed, device=self.target.device)

        logger.info(
            "starting generation: prompt=%d tokens, gamma=%d, max_new_tokens=%d",
            len(prompt), config.gamma, config.max_new_tokens,
        )
        try:
            return GenerationSession(self.draft, self.target, prompt, config, rng)
        except SpeculativeDecodingError as exc:
            exc.with_context(0, 0, 0)
            raise

    def generate(
        self,
        prompt_tokens: Union[Sequence[int], torch.Tensor],
        config: Optional[GenerationConfig] = None,
        *,
        rng: Optional[RandomSource] = None,
        cancel_event: Optional[CancelFlag] = None,
    ) -> GenerationResult:
        """Generate a continuation of ``prompt_tokens``.

        Returns:
            GenerationResult with the generated tokens (prompt excluded),
            finish reason and metrics.
        """
        return self.start(prompt_tokens, config, rng).run(cancel_event)


def speculative_decode(
    draft_model: PreTrainedModel,
    target_model: PreTrainedModel,
    tokenizer: PreTrainedTokenizerBase,
    prompt: str,
    config: Optional[GenerationConfig] = None,
    device: Optional[Union[str, torch.device]] = None,
) -> Tuple[str, GenerationMetrics]:
    """
    Generate text using speculative decoding.

    Convenience entry point for Hugging Face models sharing one tokenizer.
    Both models must already live on ``device``.

    Args:
        draft_model: Small, fast model for speculation.
        target_model: Large, accurate model for verification.
        tokenizer: Tokenizer shared by both models.
        prompt: Input text prompt.
        config: Generation configuration. If it has no ``eos_token_id``, the
            tokenizer's is used.
        device: Device to place input ids on. Defaults to each model's device.

    Returns:
        Tuple of (generated_text, metrics) where:
        - generated_text: The complete generated text including prompt
        - metrics: GenerationMetrics with timing and acceptance statistics

    Example:
        >>> from rotalabs_specdec.speculative import speculative_decode, GenerationConfig
        >>> config = GenerationConfig(gamma=4, max_new_tokens=100)
        >>> text, metrics = speculative_decode(draft_model, target_model, tokenizer, "Hello", config)
        >>> print(f"Generated {metrics.generated_tokens} tokens")
    """
    config = config if config is not None else GenerationConfig()
    eos_token_id = getattr(tokenizer, "eos_token_id", None)
    if config.eos_token_id is None and eos_token_id is not None:
        config = dataclasses.replace(config, eos_token_id=eos_token_id)

    draft = HFModelAdapter(draft_model, device=device)
    target = HFModelAdapter(target_model, device=device)

    input_ids = tokenizer.encode(prompt)
    result = SpeculativeGenerator(draft, target, config).generate(input_ids)

    generated_text = tokenizer.decode(result.sequence, skip_special_tokens=True)
    return generated_text, result.metrics


__all__ = [
    "LoopState",
    "RoundOutcome",
    "GenerationSession",
    "SpeculativeGenerator",
    "speculative_decode",
]
