"""Tests for the proposer, verifier and cache reconciler."""

import pytest
import torch

from rotalabs_specdec.errors import InvariantViolation
from rotalabs_specdec.speculative import (
    GenerationConfig,
    RandomSource,
    apply_sampling_policy,
    propose,
    reconcile,
    rollback,
    verify,
)

from conftest import random_table


@pytest.fixture
def round_setup(make_bigram):
    draft_table = random_table(12, seed=5)
    target_table = random_table(12, seed=6)
    draft, draft_model = make_bigram(draft_table, name="draft")
    target, target_model = make_bigram(target_table, name="target")
    sequence = [1, 2, 3]
    draft_cache = draft.prefill(sequence)
    target_cache = target.prefill(sequence)
    return {
        "draft": draft,
        "target": target,
        "draft_model": draft_model,
        "target_model": target_model,
        "draft_table": draft_table,
        "target_table": target_table,
        "sequence": sequence,
        "draft_cache": draft_cache,
        "target_cache": target_cache,
    }


class TestPropose:
    """Test drafting gamma tokens."""

    def test_drafts_gamma_tokens(self, round_setup):
        s = round_setup
        config = GenerationConfig(gamma=4, temperature=0.9, top_k=8)
        batch = propose(s["draft"], s["sequence"], s["draft_cache"], config, RandomSource(seed=0))

        assert len(batch.proposals) == 4
        assert len(batch.logits) == 5
        assert batch.cache.length == len(s["sequence"]) + 4
        assert s["draft_model"].calls == 1 + 4
        for proposal in batch.proposals:
            assert proposal.distribution.prob(proposal.token) > 0

    def test_distributions_follow_previous_proposal(self, round_setup):
        s = round_setup
        config = GenerationConfig(gamma=3)
        batch = propose(s["draft"], s["sequence"], s["draft_cache"], config, RandomSource(seed=0))

        previous = s["sequence"][-1]
        for proposal in batch.proposals:
            expected = apply_sampling_policy(s["draft_table"][previous])
            assert torch.allclose(proposal.distribution.probs, expected.probs)
            previous = proposal.token

    def test_gamma_override(self, round_setup):
        s = round_setup
        config = GenerationConfig(gamma=4)
        batch = propose(
            s["draft"], s["sequence"], s["draft_cache"], config, RandomSource(seed=0), gamma=2
        )
        assert len(batch.proposals) == 2

    def test_cache_must_match_sequence(self, round_setup):
        s = round_setup
        with pytest.raises(InvariantViolation):
            propose(s["draft"], [1, 2], s["draft_cache"], GenerationConfig(), RandomSource(seed=0))


class TestVerify:
    """Test the single target pass."""

    def test_one_target_call_for_all_positions(self, round_setup):
        s = round_setup
        config = GenerationConfig(gamma=4, temperature=0.8)
        batch = propose(s["draft"], s["sequence"], s["draft_cache"], config, RandomSource(seed=0))
        calls_before = s["target_model"].calls

        verification = verify(s["target"], s["sequence"], batch.proposals, s["target_cache"], config)

        assert s["target_model"].calls == calls_before + 1
        assert len(verification.distributions) == 5
        assert verification.cache.length == len(s["sequence"]) + 4

        contexts = [s["sequence"][-1]] + batch.tokens
        for last_token, distribution in zip(contexts, verification.distributions):
            expected = apply_sampling_policy(s["target_table"][last_token], temperature=0.8)
            assert torch.allclose(distribution.probs, expected.probs)

    def test_requires_proposals(self, round_setup):
        s = round_setup
        with pytest.raises(InvariantViolation):
            verify(s["target"], s["sequence"], [], s["target_cache"], GenerationConfig())


class TestReconcile:
    """Test cache truncation to the committed prefix."""

    def _round(self, s, gamma=4):
        config = GenerationConfig(gamma=gamma)
        batch = propose(s["draft"], s["sequence"], s["draft_cache"], config, RandomSource(seed=0))
        verification = verify(s["target"], s["sequence"], batch.proposals, s["target_cache"], config)
        return batch, verification

    @pytest.mark.parametrize("accepted", [0, 2, 4])
    def test_caches_hold_committed_sequence(self, round_setup, accepted):
        s = round_setup
        batch, verification = self._round(s)
        committed = batch.tokens[:accepted] + [7]

        draft_cache, target_cache = reconcile(
            s["draft"], s["target"], batch.cache, verification.cache,
            len(s["sequence"]), accepted, committed, batch.logits, verification.logits,
        )

        expected_sequence = tuple(s["sequence"] + committed)
        for cache, table in ((draft_cache, s["draft_table"]), (target_cache, s["target_table"])):
            assert cache.length == len(expected_sequence)
            assert cache.state == expected_sequence
            assert torch.equal(cache.next_logits, table[7])

    def test_cut_inside_accepted_prefix_needs_no_model_call(self, round_setup):
        s = round_setup
        batch, verification = self._round(s)
        committed = batch.tokens[:2]
        draft_calls = s["draft_model"].calls
        target_calls = s["target_model"].calls

        draft_cache, target_cache = reconcile(
            s["draft"], s["target"], batch.cache, verification.cache,
            len(s["sequence"]), 3, committed, batch.logits, verification.logits,
        )

        assert s["draft_model"].calls == draft_calls
        assert s["target_model"].calls == target_calls
        assert draft_cache.length == len(s["sequence"]) + 2
        assert torch.equal(draft_cache.next_logits, s["draft_table"][committed[-1]])
        assert torch.equal(target_cache.next_logits, s["target_table"][committed[-1]])

    def test_rejects_too_many_committed_tokens(self, round_setup):
        s = round_setup
        batch, verification = self._round(s)
        with pytest.raises(InvariantViolation):
            reconcile(
                s["draft"], s["target"], batch.cache, verification.cache,
                len(s["sequence"]), 1, batch.tokens[:3], batch.logits, verification.logits,
            )

    def test_rollback_restores_round_start(self, round_setup):
        s = round_setup
        draft_pending = s["draft_cache"].next_logits
        target_pending = s["target_cache"].next_logits
        batch, verification = self._round(s)

        draft_cache, target_cache = rollback(
            s["draft"], s["target"], batch.cache, verification.cache,
            len(s["sequence"]), draft_pending, target_pending,
        )

        assert draft_cache.state == tuple(s["sequence"])
        assert target_cache.state == tuple(s["sequence"])
        assert draft_cache.next_logits is draft_pending
        assert target_cache.next_logits is target_pending
