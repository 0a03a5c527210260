"""Per-model incremental state.

An :class:`IncrementalCache` records how many tokens a model has incorporated,
the backend state that lets it continue from there (a KV cache for
transformers models), and the logits it produced after the last incorporated
token. It belongs to exactly one generation session and is only mutated through
its model's adapter.

Author: Rotalabs Research <research@rotalabs.ai>
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

import torch
from transformers.cache_utils import DynamicCache


KVCache = Union[DynamicCache, Tuple[Tuple[torch.Tensor, ...], ...], None]


@dataclass
class IncrementalCache:
    """Opaque model state keyed by the number of incorporated tokens.

    Attributes:
        state: Backend-specific state. The core never looks inside it.
        length: Number of tokens incorporated so far.
        next_logits: Logits of shape (vocab_size,) for the position after the
            last incorporated token. None until the first step.
    """
    state: Any = None
    length: int = 0
    next_logits: Optional[torch.Tensor] = None


def kv_cache_length(past_key_values: KVCache) -> int:
    """Number of positions held by a KV cache."""
    if past_key_values is None:
        return 0
    if isinstance(past_key_values, DynamicCache):
        return past_key_values.get_seq_length()
    return past_key_values[0][0].shape[2]


def trim_kv_cache(past_key_values: KVCache, keep_length: int) -> KVCache:
    """
    Trim KV cache to a specific sequence length.

    This is necessary when draft tokens are rejected during verification,
    as the cache must be rolled back to match the accepted sequence length.

    Args:
        past_key_values: The KV cache to trim. Can be a DynamicCache instance
            or a tuple of (key, value) tuples for each layer.
        keep_length: Number of positions to keep in the cache.

    Returns:
        Trimmed KV cache of the same type as input.
    """
    if past_key_values is None:
        return None

    if isinstance(past_key_values, DynamicCache):
        if hasattr(past_key_values, 'crop'):
            past_key_values.crop(keep_length)
            return past_key_values
        trimmed = DynamicCache()
        for layer_idx in range(len(past_key_values.key_cache)):
            key = past_key_values.key_cache[layer_idx][:, :, :keep_length, :]
            value = past_key_values.value_cache[layer_idx][:, :, :keep_length, :]
            trimmed.update(key, value, layer_idx)
        return trimmed

    # Legacy tuple format
    trimmed = []
    for layer_kv in past_key_values:
        key, value = layer_kv[0], layer_kv[1]
        trimmed.append((
            key[:, :, :keep_length, :],
            value[:, :, :keep_length, :]
        ))
    return tuple(trimmed)


__all__ = [
    "KVCache",
    "IncrementalCache",
    "kv_cache_length",
    "trim_kv_cache",
]
