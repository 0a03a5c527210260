"""Tests for the acceptance-rejection sampler."""

from collections import Counter

import pytest
import torch

from rotalabs_specdec.errors import InvariantViolation
from rotalabs_specdec.speculative import (
    Distribution,
    Proposal,
    RandomSource,
    accept_probabilities,
    acceptance_probability,
    resolve,
)

from conftest import ScriptedRandom


def dist(*probs):
    return Distribution(torch.tensor(probs, dtype=torch.float32))


class TestResolve:
    """Test accept/reject decisions and the final token."""

    def test_all_accepted_draws_bonus_from_last_distribution(self):
        q = dist(0.5, 0.5, 0.0)
        proposals = [Proposal(0, q), Proposal(1, q)]
        targets = [dist(0.5, 0.5, 0.0), dist(0.5, 0.5, 0.0), dist(0.0, 0.0, 1.0)]
        rng = ScriptedRandom([0.3, 0.9])

        resolution = resolve(proposals, targets, rng)

        assert resolution.accepted_count == 2
        assert resolution.final_token == 2
        assert resolution.resampled is False
        assert rng.sampled_from[0] is targets[2]

    def test_rejection_resamples_from_residual(self):
        q = dist(0.8, 0.2, 0.0)
        p = dist(0.4, 0.2, 0.4)
        proposals = [Proposal(0, q), Proposal(0, q)]
        rng = ScriptedRandom([0.6])

        resolution = resolve(proposals, [p, p, p], rng)

        # ratio 0.4 / 0.8 = 0.5 < u = 0.6 -> reject at position 0
        assert resolution.accepted_count == 0
        assert resolution.resampled is True
        assert resolution.final_token == 2
        residual = rng.sampled_from[0]
        assert torch.allclose(residual.probs, torch.tensor([0.0, 0.0, 1.0]))

    def test_stops_at_first_rejection(self):
        q = dist(0.5, 0.5)
        proposals = [Proposal(0, q), Proposal(1, q), Proposal(0, q)]
        targets = [dist(0.5, 0.5), dist(0.75, 0.25), dist(0.5, 0.5), dist(0.5, 0.5)]
        # position 0: ratio 1 accept; position 1: ratio 0.5, u = 0.7 reject
        rng = ScriptedRandom([0.1, 0.7])

        resolution = resolve(proposals, targets, rng)

        assert resolution.accepted_count == 1
        assert resolution.final_token == 0
        assert rng.uniforms == []

    def test_zero_target_mass_never_accepted(self):
        """u can be exactly 0; a zero-ratio proposal must still be rejected."""
        q = dist(1.0, 0.0)
        p = dist(0.0, 1.0)
        rng = ScriptedRandom([0.0])
        resolution = resolve([Proposal(0, q)], [p, p], rng)
        assert resolution.accepted_count == 0
        assert resolution.final_token == 1

    def test_degenerate_residual_falls_back_to_target(self):
        q = Distribution(torch.tensor([0.5000004, 0.4999996]))
        p = Distribution(torch.tensor([0.5, 0.5]))
        rng = ScriptedRandom([0.9999999])

        resolution = resolve([Proposal(0, q)], [p, p], rng)

        assert resolution.accepted_count == 0
        assert resolution.resampled is True
        assert rng.sampled_from[0] is p

    def test_zero_draft_mass_is_invariant_violation(self):
        q = dist(1.0, 0.0)
        p = dist(0.5, 0.5)
        with pytest.raises(InvariantViolation):
            resolve([Proposal(1, q)], [p, p], RandomSource(seed=0))

    @pytest.mark.parametrize("num_targets", [1, 3])
    def test_wrong_number_of_target_distributions(self, num_targets):
        q = dist(0.5, 0.5)
        with pytest.raises(InvariantViolation):
            resolve([Proposal(0, q)], [q] * num_targets, RandomSource(seed=0))

    def test_empty_proposals_rejected(self):
        with pytest.raises(InvariantViolation):
            resolve([], [dist(1.0)], RandomSource(seed=0))


class TestAcceptanceProbability:
    """Test min(1, p/q)."""

    def test_values(self):
        q = dist(0.8, 0.2)
        p = dist(0.4, 0.6)
        assert acceptance_probability(Proposal(0, q), p) == pytest.approx(0.5)
        assert acceptance_probability(Proposal(1, q), p) == 1.0
        assert accept_probabilities([Proposal(0, q), Proposal(1, q)], [p, p]) == pytest.approx(
            [0.5, 1.0]
        )


class TestDistributionFidelity:
    """The realized token follows the target distribution whatever the draft."""

    @pytest.mark.parametrize("draft_probs", [
        (0.7, 0.1, 0.1, 0.1),
        (0.0, 0.0, 0.5, 0.5),
        (0.25, 0.25, 0.25, 0.25),
    ])
    def test_first_position_matches_target(self, draft_probs):
        q = dist(*draft_probs)
        p = dist(0.1, 0.2, 0.3, 0.4)
        bonus = dist(0.25, 0.25, 0.25, 0.25)
        rng = RandomSource(seed=1234)
        trials = 8000

        counts = Counter()
        for _ in range(trials):
            token = q.sample(rng)
            resolution = resolve([Proposal(token, q)], [p, bonus], rng)
            realized = token if resolution.accepted_count == 1 else resolution.final_token
            counts[realized] += 1

        for token in range(4):
            assert counts[token] / trials == pytest.approx(p.prob(token), abs=0.025)

    def test_universal_rejection_final_token_never_rejected_proposal(self):
        q = dist(1.0, 0.0, 0.0)
        p = dist(0.0, 0.3, 0.7)
        rng = RandomSource(seed=3)
        finals = Counter()
        for _ in range(500):
            resolution = resolve([Proposal(0, q), Proposal(0, q)], [p, p, p], rng)
            assert resolution.accepted_count == 0
            finals[resolution.final_token] += 1
        assert finals[0] == 0
        assert finals[2] > finals[1]
