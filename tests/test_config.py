"""Tests for GenerationConfig, metrics and results."""

import dataclasses

import pytest

from rotalabs_specdec.errors import InvalidConfig
from rotalabs_specdec.speculative import GenerationConfig, GenerationMetrics, GenerationResult


class TestGenerationConfig:
    """Test configuration defaults and validation."""

    def test_defaults(self):
        config = GenerationConfig()
        assert config.gamma == 4
        assert config.temperature == 1.0
        assert config.top_k == 0
        assert config.top_p == 1.0
        assert config.max_new_tokens == 128
        assert config.eos_token_id is None
        assert config.adaptive_gamma is False

    def test_is_immutable(self):
        config = GenerationConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.gamma = 2

    @pytest.mark.parametrize("kwargs", [
        {"gamma": 0},
        {"temperature": 0.0},
        {"temperature": -0.5},
        {"top_p": 0.0},
        {"top_p": 1.5},
        {"max_new_tokens": 0},
        {"top_k": -1},
        {"eos_token_id": -3},
        {"min_gamma": 0},
        {"min_gamma": 4, "max_gamma": 2},
        {"gamma": 2.5},
        {"gamma": "4"},
        {"gamma": True},
        {"top_k": 1.5},
        {"max_new_tokens": 10.0},
        {"min_gamma": 1.0},
        {"max_gamma": "8"},
        {"eos_token_id": 2.0},
        {"seed": "7"},
        {"temperature": "0.8"},
        {"top_p": None},
        {"temperature": False},
        {"adaptive_gamma": "yes"},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(InvalidConfig):
            GenerationConfig(**kwargs)

    def test_integral_and_real_values_accepted(self):
        config = GenerationConfig(temperature=1, top_p=1, eos_token_id=0, seed=0)
        assert config.temperature == 1
        assert config.eos_token_id == 0

    def test_invalid_config_is_value_error(self):
        with pytest.raises(ValueError):
            GenerationConfig(gamma=0)

    def test_from_dict(self):
        config = GenerationConfig.from_dict({"gamma": 6, "top_p": 0.9})
        assert config.gamma == 6
        assert config.top_p == 0.9

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(InvalidConfig, match="lookahead"):
            GenerationConfig.from_dict({"lookahead": 3})

    def test_from_yaml_nested(self, tmp_path):
        path = tmp_path / "generation.yaml"
        path.write_text(
            "generation:\n"
            "  gamma: 3\n"
            "  temperature: 0.7\n"
            "  max_new_tokens: 32\n"
            "  eos_token_id: 2\n"
        )
        config = GenerationConfig.from_yaml(path)
        assert config == GenerationConfig(
            gamma=3, temperature=0.7, max_new_tokens=32, eos_token_id=2
        )

    def test_from_yaml_flat(self, tmp_path):
        path = tmp_path / "generation.yaml"
        path.write_text("gamma: 2\nseed: 11\n")
        config = GenerationConfig.from_yaml(path)
        assert config.gamma == 2
        assert config.seed == 11

    @pytest.mark.parametrize("text", [
        "gamma: 0\n",
        "gamma: \"4\"\n",
        "gamma: 2.5\n",
        "temperature: \"0.8\"\n",
        "generation:\n  top_k: [5]\n",
    ])
    def test_from_yaml_invalid_values(self, tmp_path, text):
        path = tmp_path / "generation.yaml"
        path.write_text(text)
        with pytest.raises(InvalidConfig):
            GenerationConfig.from_yaml(path)

    def test_from_yaml_not_a_mapping(self, tmp_path):
        path = tmp_path / "generation.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(InvalidConfig):
            GenerationConfig.from_yaml(path)


class TestGenerationMetrics:
    """Test derived metric properties."""

    def test_empty_metrics(self):
        metrics = GenerationMetrics()
        assert metrics.acceptance_rate == 0.0
        assert metrics.tokens_per_round == 0.0
        assert metrics.tokens_per_second == 0.0

    def test_rates(self):
        metrics = GenerationMetrics(
            rounds=4,
            proposed_tokens=16,
            accepted_tokens=12,
            generated_tokens=16,
            total_time_ms=500.0,
        )
        assert metrics.acceptance_rate == 0.75
        assert metrics.tokens_per_round == 4.0
        assert metrics.tokens_per_second == 32.0
        assert metrics.speedup_ratio == 4.0
        assert "75.0% acceptance" in str(metrics)


class TestGenerationResult:
    """Test result helpers."""

    def test_sequence_and_dict(self):
        result = GenerationResult(
            tokens=[5, 6],
            prompt_tokens=[1, 2, 3],
            finish_reason="length",
            metrics=GenerationMetrics(rounds=1, proposed_tokens=4, accepted_tokens=1),
        )
        assert result.sequence == [1, 2, 3, 5, 6]
        data = result.to_dict()
        assert data["tokens"] == [5, 6]
        assert data["acceptance_rate"] == 0.25
