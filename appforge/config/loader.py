"""
Configuration management and loading.

Handles the settings file and environment variable overrides.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from appforge.core.credits import GrantPolicy
from appforge.core.pricing import DEFAULT_CHEAP_MODEL, DEFAULT_MARKUP, DEFAULT_STRONG_MODEL, ModelRouting
from appforge.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class BillingConfig:
    """Credit markup and monthly grant amounts."""
    markup: float = DEFAULT_MARKUP
    free_monthly_credits: float = 1.0
    pro_monthly_credits: float = 10.0
    team_credits_per_seat: float = 15.0

    def __post_init__(self):
        """Validate billing values."""
        if self.markup < 1.0:
            raise ValueError("markup must be >= 1.0")
        if self.free_monthly_credits < 0:
            raise ValueError("free_monthly_credits must be >= 0")
        if self.pro_monthly_credits <= 0:
            raise ValueError("pro_monthly_credits must be > 0")
        if self.team_credits_per_seat <= 0:
            raise ValueError("team_credits_per_seat must be > 0")

    def grant_policy(self) -> GrantPolicy:
        return GrantPolicy(
            free_credits=self.free_monthly_credits,
            pro_credits=self.pro_monthly_credits,
            team_credits_per_seat=self.team_credits_per_seat,
        )


@dataclass(frozen=True)
class ModelsConfig:
    cheap: str = DEFAULT_CHEAP_MODEL
    strong: str = DEFAULT_STRONG_MODEL
    default: str = DEFAULT_STRONG_MODEL

    def __post_init__(self):
        for name in ("cheap", "strong", "default"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"models.{name} must be a non-empty string")

    def routing(self) -> ModelRouting:
        return ModelRouting(cheap=self.cheap, strong=self.strong, default=self.default)


@dataclass(frozen=True)
class OrchestratorConfig:
    max_iterations: int = 5
    max_output_tokens: int = 4096

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.max_output_tokens < 1:
            raise ValueError("max_output_tokens must be >= 1")


@dataclass(frozen=True)
class EstimatesConfig:
    """Conservative token estimates for the pre-flight affordability check."""
    input_tokens: int = 50000
    output_tokens: int = 4096

    def __post_init__(self):
        if self.input_tokens <= 0 or self.output_tokens <= 0:
            raise ValueError("token estimates must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    ai_per_minute: int = 10

    def __post_init__(self):
        if self.ai_per_minute <= 0:
            raise ValueError("ai_per_minute must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    db_path: str = DEFAULT_DB_PATH
    billing: BillingConfig = field(default_factory=BillingConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    estimates: EstimatesConfig = field(default_factory=EstimatesConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


_SECTIONS = {
    "billing": (BillingConfig, {"markup", "free_monthly_credits", "pro_monthly_credits", "team_credits_per_seat"}),
    "models": (ModelsConfig, {"cheap", "strong", "default"}),
    "orchestrator": (OrchestratorConfig, {"max_iterations", "max_output_tokens"}),
    "estimates": (EstimatesConfig, {"input_tokens", "output_tokens"}),
    "rate_limit": (RateLimitConfig, {"ai_per_minute"}),
}

# Environment variable -> (section, key, type)
ENV_OVERRIDES = {
    "AI_CREDIT_MARKUP": ("billing", "markup", float),
    "FREE_MONTHLY_CREDITS": ("billing", "free_monthly_credits", float),
    "AI_CHEAP_MODEL": ("models", "cheap", str),
    "AI_STRONG_MODEL": ("models", "strong", str),
    "AI_DEFAULT_MODEL": ("models", "default", str),
    "AI_MAX_TOOL_ITERATIONS": ("orchestrator", "max_iterations", int),
    "AI_RATE_LIMIT_PER_MIN": ("rate_limit", "ai_per_minute", int),
}


def _parse_section(name: str, data: Any) -> Any:
    """Parse and validate one settings section.

    Raises:
        ValueError: If the section is not a mapping, has unknown keys, or
            has values of the wrong type
    """
    cls, allowed = _SECTIONS[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {name}: {unknown}")

    defaults = cls()
    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = type(getattr(defaults, key))
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ValueError(f"'{name}.{key}' must be of type {expected.__name__}")
        values[key] = value
    return cls(**values)


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from an optional YAML file plus environment overrides.

    Strict validation ensures no silent misconfiguration of billing.

    Args:
        path: Path to YAML settings file; defaults apply when None
        environ: Environment mapping, ``os.environ`` when None

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If a path is given and the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        with open(config_path, "r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in settings file {path}: {e}")
        if not isinstance(raw, dict):
            raise ValueError("Settings file must contain a mapping")

    allowed_top_keys = {"database"} | set(_SECTIONS)
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: raw.get(name, {}) for name in _SECTIONS}
    for variable, (section, key, cast) in ENV_OVERRIDES.items():
        if variable in environ:
            try:
                value = cast(environ[variable])
            except ValueError:
                raise ValueError(f"Environment variable {variable} must be a {cast.__name__}")
            sections[section] = {**(sections[section] or {}), key: value}

    db_path = DEFAULT_DB_PATH
    database = raw.get("database")
    if database is not None:
        if not isinstance(database, dict) or set(database.keys()) - {"path"}:
            raise ValueError("'database' must be a dictionary with only a 'path' key")
        db_path = str(database.get("path", DEFAULT_DB_PATH))
    db_path = environ.get("APPFORGE_DB_PATH", db_path)

    settings = Settings(db_path=db_path)
    return replace(settings, **{
        name: _parse_section(name, sections[name] or {}) for name in _SECTIONS
    })
