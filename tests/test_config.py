"""
Unit tests for configuration loading and validation.

Tests strict validation, environment overrides and error handling for
application settings.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from appforge.config.loader import (
    BillingConfig,
    EstimatesConfig,
    ModelsConfig,
    OrchestratorConfig,
    RateLimitConfig,
    Settings,
    load_settings,
)
from appforge.core.pricing import DEFAULT_CHEAP_MODEL, DEFAULT_MARKUP, DEFAULT_STRONG_MODEL
from appforge.storage.db import DEFAULT_DB_PATH


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "appforge.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_file(self):
        settings = load_settings(environ={})

        assert settings == Settings()
        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.billing.markup == DEFAULT_MARKUP
        assert settings.billing.free_monthly_credits == 1.0
        assert settings.billing.pro_monthly_credits == 10.0
        assert settings.billing.team_credits_per_seat == 15.0
        assert settings.models.cheap == DEFAULT_CHEAP_MODEL
        assert settings.models.strong == DEFAULT_STRONG_MODEL
        assert settings.orchestrator.max_iterations == 5
        assert settings.rate_limit.ai_per_minute == 10

    def test_valid_config_loads_correctly(self):
        config_path = self._write_config({
            "database": {"path": "/tmp/appforge-test.db"},
            "billing": {"markup": 1.5, "free_monthly_credits": 2, "pro_monthly_credits": 20.0},
            "models": {"cheap": "gpt-4o-mini", "strong": "gpt-4o", "default": "gpt-4o"},
            "orchestrator": {"max_iterations": 3},
            "estimates": {"input_tokens": 20000, "output_tokens": 2048},
            "rate_limit": {"ai_per_minute": 5},
        })

        settings = load_settings(config_path, environ={})

        assert settings.db_path == "/tmp/appforge-test.db"
        assert settings.billing.markup == 1.5
        assert settings.billing.free_monthly_credits == 2.0
        assert isinstance(settings.billing.free_monthly_credits, float)
        assert settings.billing.team_credits_per_seat == 15.0
        assert settings.models.routing().cheap == "gpt-4o-mini"
        assert settings.orchestrator.max_iterations == 3
        assert settings.orchestrator.max_output_tokens == 4096
        assert settings.estimates.input_tokens == 20000
        assert settings.rate_limit.ai_per_minute == 5

    def test_empty_file_uses_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, "w").close()
        assert load_settings(config_path, environ={}) == Settings()

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError, match="Settings file not found"):
            load_settings(os.path.join(self.temp_dir, "nope.yaml"), environ={})

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("billing: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_settings(config_path, environ={})

    def test_non_mapping_file_rejected(self):
        config_path = self._write_config(["a", "b"])
        with pytest.raises(ValueError, match="must contain a mapping"):
            load_settings(config_path, environ={})

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"guardrails": {}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(config_path, environ={})

    def test_unknown_section_key_rejected(self):
        config_path = self._write_config({"billing": {"discount": 0.5}})
        with pytest.raises(ValueError, match="Unknown keys in billing"):
            load_settings(config_path, environ={})

    def test_section_must_be_mapping(self):
        config_path = self._write_config({"models": "gpt-4o"})
        with pytest.raises(ValueError, match="'models' must be a dictionary"):
            load_settings(config_path, environ={})

    @pytest.mark.parametrize("section,key,value", [
        ("billing", "markup", "1.2"),
        ("billing", "markup", True),
        ("orchestrator", "max_iterations", 2.5),
        ("models", "cheap", 42),
    ])
    def test_wrong_value_types_rejected(self, section, key, value):
        config_path = self._write_config({section: {key: value}})
        with pytest.raises(ValueError, match="must be of type"):
            load_settings(config_path, environ={})

    def test_database_section_validated(self):
        config_path = self._write_config({"database": {"path": "x.db", "pool": 4}})
        with pytest.raises(ValueError, match="'database'"):
            load_settings(config_path, environ={})


class TestEnvironmentOverrides:

    def test_markup_override(self):
        settings = load_settings(environ={"AI_CREDIT_MARKUP": "1.35"})
        assert settings.billing.markup == 1.35

    def test_model_and_iteration_overrides(self):
        settings = load_settings(environ={
            "AI_CHEAP_MODEL": "gpt-4o-mini",
            "AI_MAX_TOOL_ITERATIONS": "8",
            "AI_RATE_LIMIT_PER_MIN": "30",
            "FREE_MONTHLY_CREDITS": "0.5",
        })
        assert settings.models.cheap == "gpt-4o-mini"
        assert settings.orchestrator.max_iterations == 8
        assert settings.rate_limit.ai_per_minute == 30
        assert settings.billing.free_monthly_credits == 0.5

    def test_db_path_override(self):
        settings = load_settings(environ={"APPFORGE_DB_PATH": "/var/lib/appforge.db"})
        assert settings.db_path == "/var/lib/appforge.db"

    def test_environment_beats_file(self):
        temp_dir = tempfile.mkdtemp()
        try:
            config_path = os.path.join(temp_dir, "appforge.yaml")
            with open(config_path, "w", encoding="utf-8") as f:
                yaml.dump({"billing": {"markup": 1.5}, "database": {"path": "file.db"}}, f)

            settings = load_settings(config_path, environ={
                "AI_CREDIT_MARKUP": "2.0",
                "APPFORGE_DB_PATH": "env.db",
            })

            assert settings.billing.markup == 2.0
            assert settings.db_path == "env.db"
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def test_bad_cast_raises(self):
        with pytest.raises(ValueError, match="AI_MAX_TOOL_ITERATIONS must be a int"):
            load_settings(environ={"AI_MAX_TOOL_ITERATIONS": "many"})

    def test_override_still_validated(self):
        with pytest.raises(ValueError, match="markup must be >= 1.0"):
            load_settings(environ={"AI_CREDIT_MARKUP": "0.8"})


class TestSectionValidation:

    @pytest.mark.parametrize("kwargs,message", [
        ({"markup": 0.9}, "markup"),
        ({"free_monthly_credits": -1.0}, "free_monthly_credits"),
        ({"pro_monthly_credits": 0.0}, "pro_monthly_credits"),
        ({"team_credits_per_seat": 0.0}, "team_credits_per_seat"),
    ])
    def test_billing_bounds(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            BillingConfig(**kwargs)

    def test_free_grant_may_be_zero(self):
        assert BillingConfig(free_monthly_credits=0.0).free_monthly_credits == 0.0

    def test_grant_policy(self):
        policy = BillingConfig(free_monthly_credits=2.0, pro_monthly_credits=12.0).grant_policy()
        assert policy.free_credits == 2.0
        assert policy.pro_credits == 12.0
        assert policy.team_credits_per_seat == 15.0

    def test_models_must_be_named(self):
        with pytest.raises(ValueError, match="models.strong"):
            ModelsConfig(strong="  ")

    def test_other_bounds(self):
        with pytest.raises(ValueError):
            OrchestratorConfig(max_iterations=0)
        with pytest.raises(ValueError):
            OrchestratorConfig(max_output_tokens=0)
        with pytest.raises(ValueError):
            EstimatesConfig(input_tokens=0)
        with pytest.raises(ValueError):
            RateLimitConfig(ai_per_minute=0)
