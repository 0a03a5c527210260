"""Model adapters: the capability interface the decoder drives.

An adapter turns "these new tokens, continuing from this cache" into
next-token logits for every new position plus the advanced cache. The
decoder uses two adapter instances, one for the draft model and one for the
target model; which backend each uses is decided when they are constructed.

Backends:
    - :class:`HFModelAdapter`: Hugging Face ``transformers`` causal LMs with
      KV-cache reuse.
    - :class:`CallableModelAdapter`: any function mapping a full token
      sequence to per-position logits. Recomputes from scratch every step.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence, Tuple, Union

import torch
from transformers import PreTrainedModel

from rotalabs_specdec.errors import (
    ContextTooLong,
    InvariantViolation,
    ModelAdapterFailure,
    SpeculativeDecodingError,
    VocabularyMismatch,
)

from .cache import IncrementalCache, kv_cache_length, trim_kv_cache

logger = logging.getLogger(__name__)


class ModelAdapter(ABC):
    """Interface between the decoder and one model backend.

    Subclasses implement :meth:`_forward` and :meth:`_crop`; the public
    :meth:`step` and :meth:`truncate` enforce the contract shared by all
    backends (context limit, vocabulary size, error wrapping, cache
    bookkeeping).

    Caches are updated in place and also returned, so the caller keeps a
    single handle per model.
    """

    def __init__(
        self,
        vocab_size: int,
        max_context_length: Optional[int] = None,
        device: Union[str, torch.device] = "cpu",
        name: str = "model",
    ):
        if vocab_size < 1:
            raise VocabularyMismatch(f"vocab_size must be >= 1, got {vocab_size}")
        self.vocab_size = vocab_size
        self.max_context_length = max_context_length
        self.device = torch.device(device)
        self.name = name

    @abstractmethod
    def _forward(self, token_ids: torch.Tensor, state: Any) -> Tuple[torch.Tensor, Any]:
        """Run the model on new tokens.

        Args:
            token_ids: Shape (n,) - tokens to incorporate after ``state``.
            state: Backend state from the previous call, or None.

        Returns:
            Tuple of (logits, state) where logits has shape (n, vocab_size),
            row i holding the next-token logits after token i.
        """

    @abstractmethod
    def _crop(self, state: Any, length: int) -> Any:
        """Drop backend state beyond the first ``length`` tokens."""

    def new_cache(self) -> IncrementalCache:
        return IncrementalCache()

    def step(
        self,
        tokens: Sequence[int],
        cache: IncrementalCache,
    ) -> Tuple[torch.Tensor, IncrementalCache]:
        """Incorporate ``tokens`` into ``cache`` and return their logits.

        Args:
            tokens: One or more token ids continuing the cached sequence.
            cache: Cache owned by the caller. Advanced by ``len(tokens)``.

        Returns:
            Tuple of (logits, cache) with logits of shape
            (len(tokens), vocab_size).

        Raises:
            ContextTooLong: If the context window would be exceeded.
            VocabularyMismatch: If the backend returns a different vocab size.
            ModelAdapterFailure: If the backend raises.
        """
        n = len(tokens)
        if n == 0:
            raise InvariantViolation(f"{self.name}: step called with no tokens")
        limit = self.max_context_length
        if limit is not None and cache.length + n > limit:
            raise ContextTooLong(
                f"{self.name}: context of {cache.length + n} tokens exceeds "
                f"the limit of {limit}"
            )

        token_ids = torch.tensor(list(tokens), dtype=torch.long, device=self.device)
        try:
            logits, state = self._forward(token_ids, cache.state)
        except SpeculativeDecodingError:
            self._discard_partial_update(cache)
            raise
        except Exception as exc:
            self._discard_partial_update(cache)
            raise ModelAdapterFailure(f"{self.name}: forward pass failed: {exc}") from exc

        if logits.dim() != 2 or logits.shape[0] != n:
            self._discard_partial_update(cache)
            raise ModelAdapterFailure(
                f"{self.name}: expected logits of shape ({n}, {self.vocab_size}), "
                f"got {tuple(logits.shape)}"
            )
        if logits.shape[-1] != self.vocab_size:
            self._discard_partial_update(cache)
            raise VocabularyMismatch(
                f"{self.name}: logits have vocab size {logits.shape[-1]}, "
                f"expected {self.vocab_size}"
            )

        cache.state = state
        cache.length += n
        cache.next_logits = logits[-1]
        return logits, cache

    def _discard_partial_update(self, cache: IncrementalCache) -> None:
        # Backends such as DynamicCache grow in place, so a failed call may
        # leave extra positions behind.
        if cache.state is None:
            return
        try:
            cache.state = self._crop(cache.state, cache.length)
        except Exception:
            logger.exception("%s: could not restore cache after failed step", self.name)

    def prefill(self, tokens: Sequence[int]) -> IncrementalCache:
        """Create a cache holding ``tokens``."""
        _, cache = self.step(tokens, self.new_cache())
        return cache

    def truncate(
        self,
        cache: IncrementalCache,
        length: int,
        next_logits: Optional[torch.Tensor] = None,
    ) -> IncrementalCache:
        """Roll ``cache`` back to its first ``length`` tokens.

        Args:
            cache: Cache to truncate in place.
            length: Number of tokens to keep, at most ``cache.length``.
            next_logits: Logits the model produced after token ``length``.
                Required whenever tokens are dropped, since the cached row
                no longer applies.
        """
        if not 0 <= length <= cache.length:
            raise InvariantViolation(
                f"{self.name}: cannot truncate cache of length {cache.length} to {length}"
            )
        if length < cache.length:
            if next_logits is None and length > 0:
                raise InvariantViolation(
                    f"{self.name}: truncation to {length} needs the logits for that position"
                )
            try:
                cache.state = self._crop(cache.state, length)
            except SpeculativeDecodingError:
                raise
            except Exception as exc:
                raise ModelAdapterFailure(f"{self.name}: cache crop failed: {exc}") from exc
            cache.length = length
            cache.next_logits = next_logits
        elif next_logits is not None:
            cache.next_logits = next_logits
        return cache


class HFModelAdapter(ModelAdapter):
    """Adapter for Hugging Face causal language models.

    Keeps the model's ``past_key_values`` as cache state so each step only
    runs the new tokens.

    Args:
        model: A ``transformers`` causal LM.
        vocab_size: Vocabulary size. Defaults to ``model.config.vocab_size``.
        max_context_length: Context window. Defaults to the config's
            ``max_position_embeddings`` when present.
        device: Device input ids are placed on. Defaults to the model's.

    Example:
        >>> draft = HFModelAdapter(AutoModelForCausalLM.from_pretrained("gpt2"))
        >>> target = HFModelAdapter(AutoModelForCausalLM.from_pretrained("gpt2-large"))
    """

    def __init__(
        self,
        model: PreTrainedModel,
        vocab_size: Optional[int] = None,
        max_context_length: Optional[int] = None,
        device: Optional[Union[str, torch.device]] = None,
    ):
        config = model.config
        if vocab_size is None:
            vocab_size = config.vocab_size
        if max_context_length is None:
            max_context_length = getattr(config, "max_position_embeddings", None)
        if device is None:
            device = next(model.parameters()).device
        super().__init__(
            vocab_size=vocab_size,
            max_context_length=max_context_length,
            device=device,
            name=getattr(config, "_name_or_path", None) or type(model).__name__,
        )
        self.model = model
        self.model.eval()

    @torch.no_grad()
    def _forward(self, token_ids: torch.Tensor, state: Any) -> Tuple[torch.Tensor, Any]:
        outputs = self.model(
            token_ids.unsqueeze(0),
            past_key_values=state,
            use_cache=True,
        )
        return outputs.logits[0], outputs.past_key_values

    def _crop(self, state: Any, length: int) -> Any:
        if length == 0:
            return None
        trimmed = trim_kv_cache(state, length)
        if kv_cache_length(trimmed) != length:
            raise InvariantViolation(
                f"{self.name}: KV cache holds {kv_cache_length(trimmed)} positions "
                f"after trimming to {length}"
            )
        return trimmed


class CallableModelAdapter(ModelAdapter):
    """Adapter for a plain function over the full token sequence.

    ``fn`` receives all incorporated tokens as a LongTensor of shape (L,) and
    returns logits of shape (L, vocab_size). The cache state is the tuple of
    tokens seen so far, so cropping is slicing and every step recomputes
    from scratch.

    Args:
        fn: Logits function.
        vocab_size: Vocabulary size the function produces.
        max_context_length: Optional context window.
        device: Device token ids are placed on.
        name: Label used in errors and logs.

    Example:
        >>> table = torch.randn(100, 100)
        >>> bigram = CallableModelAdapter(lambda ids: table[ids], vocab_size=100)
    """

    def __init__(
        self,
        fn: Callable[[torch.Tensor], torch.Tensor],
        vocab_size: int,
        max_context_length: Optional[int] = None,
        device: Union[str, torch.device] = "cpu",
        name: str = "callable",
    ):
        super().__init__(
            vocab_size=vocab_size,
            max_context_length=max_context_length,
            device=device,
            name=name,
        )
        self.fn = fn

    def _forward(self, token_ids: torch.Tensor, state: Any) -> Tuple[torch.Tensor, Any]:
        context = (state or ()) + tuple(token_ids.tolist())
        with torch.no_grad():
            logits = self.fn(torch.tensor(context, dtype=torch.long, device=self.device))
        return logits[-token_ids.shape[0]:], context

    def _crop(self, state: Any, length: int) -> Any:
        return tuple(state[:length]) if length else None


__all__ = [
    "ModelAdapter",
    "HFModelAdapter",
    "CallableModelAdapter",
]
