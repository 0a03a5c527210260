"""Shared fixtures: small deterministic models and scripted randomness."""

from typing import Callable, List, Optional

import pytest
import torch

from rotalabs_specdec.speculative import CallableModelAdapter, RandomSource


NEG_INF = float("-inf")


class BigramModel:
    """Logits depend only on the last token: ``table[token]``.

    Counts forward calls and can be told to fail on a given call.
    """

    def __init__(self, table: torch.Tensor, fail_on_call: Optional[int] = None):
        self.table = table
        self.calls = 0
        self.fail_on_call = fail_on_call

    def __call__(self, token_ids: torch.Tensor) -> torch.Tensor:
        self.calls += 1
        if self.fail_on_call is not None and self.calls == self.fail_on_call:
            raise RuntimeError("backend exploded")
        return self.table[token_ids]


class ScriptedRandom(RandomSource):
    """RandomSource whose uniform draws come from a fixed list.

    Categorical draws still use the seeded generator and are recorded.
    """

    def __init__(self, uniforms: List[float], seed: int = 0):
        super().__init__(seed=seed)
        self.uniforms = list(uniforms)
        self.sampled_from = []

    def uniform(self) -> float:
        return self.uniforms.pop(0)

    def categorical(self, distribution) -> int:
        self.sampled_from.append(distribution)
        return super().categorical(distribution)


def random_table(vocab_size: int, seed: int, scale: float = 2.0) -> torch.Tensor:
    generator = torch.Generator().manual_seed(seed)
    return torch.randn(vocab_size, vocab_size, generator=generator) * scale


def chain_table(vocab_size: int) -> torch.Tensor:
    """One-hot transitions t -> (t + 1) % vocab_size."""
    table = torch.full((vocab_size, vocab_size), NEG_INF)
    for token in range(vocab_size):
        table[token, (token + 1) % vocab_size] = 0.0
    return table


@pytest.fixture
def make_bigram() -> Callable:
    """Factory returning (adapter, model) for a bigram logits table."""

    def _make(table, name="bigram", max_context_length=None, fail_on_call=None):
        model = BigramModel(table, fail_on_call=fail_on_call)
        adapter = CallableModelAdapter(
            model,
            vocab_size=table.shape[-1],
            max_context_length=max_context_length,
            name=name,
        )
        return adapter, model

    return _make


@pytest.fixture
def bigram_pair(make_bigram):
    """Draft and target bigram models that disagree."""
    draft, draft_model = make_bigram(random_table(16, seed=1), name="draft")
    target, target_model = make_bigram(random_table(16, seed=2), name="target")
    return draft, target, draft_model, target_model


@pytest.fixture
def tiny_gpt2():
    """Factory for tiny randomly initialised GPT-2 models (no downloads)."""
    transformers = pytest.importorskip("transformers")

    def _make(seed: int, vocab_size: int = 48, n_positions: int = 64):
        torch.manual_seed(seed)
        config = transformers.GPT2Config(
            vocab_size=vocab_size,
            n_positions=n_positions,
            n_embd=32,
            n_layer=2,
            n_head=2,
        )
        return transformers.GPT2LMHeadModel(config).eval()

    return _make
