"""Configuration for Murmur.

A YAML file validated by pydantic, with a few ``MURMUR_*`` environment
variables layered on top. Every section has defaults, so an empty file (or no
file at all) yields a working configuration.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

# Namespace for deriving stable agent ids from agent names
AGENT_NAMESPACE = uuid.UUID("6f1c2a58-4e0b-4c9e-9a51-3d2b7e0c8a11")

# Longest alias chain resolve_profile follows
MAX_ALIAS_DEPTH = 10

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Environment variable -> (config key, parser)
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "MURMUR_DATA_DIR": ("data_dir", str),
    "MURMUR_LOG_LEVEL": ("log_level", str),
    "MURMUR_LOG_JSON": ("log_json", lambda v: v.lower() == "true"),
}


class ModelProfile(BaseModel):
    """A concrete provider/model pair."""

    provider: str
    model: str


DEFAULT_PROFILES: dict[str, ModelProfile | str] = {
    "small": ModelProfile(provider="anthropic", model="claude-3-5-haiku-20241022"),
    "large": ModelProfile(provider="anthropic", model="claude-sonnet-4-20250514"),
}


class ModelsConfig(BaseModel):
    """Model profiles and provider settings.

    Profile names double as model tiers: the core asks for ``small`` or
    ``large`` and the profile (or alias chain) decides the concrete model.
    A profile given as a string is an alias for another profile.
    """

    profiles: dict[str, ModelProfile | str] = Field(
        default_factory=lambda: dict(DEFAULT_PROFILES)
    )
    providers: dict[str, dict[str, Any]] = Field(
        default_factory=lambda: {"anthropic": {"api_key_env": "ANTHROPIC_API_KEY"}}
    )

    def resolve_profile(self, name: str) -> ModelProfile:
        """Follow aliases from ``name`` to a concrete profile.

        Raises:
            KeyError: If a profile along the chain does not exist.
            ValueError: If the chain loops or exceeds MAX_ALIAS_DEPTH.
        """
        chain: list[str] = []
        current: str = name

        while len(chain) < MAX_ALIAS_DEPTH:
            if current in chain:
                raise ValueError(f"Circular alias detected: {' -> '.join([*chain, current])}")
            chain.append(current)

            profile = self.profiles.get(current)
            if profile is None:
                raise KeyError(f"Unknown model profile: {current}")
            if isinstance(profile, ModelProfile):
                return profile
            current = profile

        raise ValueError(f"Alias chain too deep for profile: {name}")

    def get_api_key(self, provider: str) -> str | None:
        """API key for ``provider`` from its configured environment variable."""
        env_var = self.providers.get(provider, {}).get("api_key_env")
        return os.environ.get(env_var) if env_var else None


class AgentConfig(BaseModel):
    """Identity and conversational window of the agent."""

    name: str = "Murmur"
    id: str | None = None
    bio: str = ""
    system: str = ""
    conversation_length: int = Field(32, ge=1)
    templates_dir: Path | None = None

    @model_validator(mode="after")
    def derive_id(self) -> AgentConfig:
        """Derive a stable agent id from the name when none is configured."""
        if not self.id:
            self.id = str(uuid.uuid5(AGENT_NAMESPACE, self.name))
        return self


class ReflectionConfig(BaseModel):
    """Reflection pass configuration."""

    enabled: bool = True
    known_facts_count: int = Field(30, ge=0)


class SyncConfig(BaseModel):
    """World sync batching."""

    batch_size: int = Field(50, ge=1)
    batch_delay_seconds: float = Field(0.5, ge=0.0)


class DatabaseConfig(BaseModel):
    """SQLite file location, relative to ``data_dir``."""

    path: str = "murmur.db"


class Config(BaseModel):
    """Root configuration for Murmur."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    agent: AgentConfig = Field(default_factory=AgentConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    reflection: ReflectionConfig = Field(default_factory=ReflectionConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database.path

    @property
    def agent_id(self) -> str:
        """The configured (or derived) agent id."""
        assert self.agent.id is not None
        return self.agent.id

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> Config:
        """Read a YAML file and apply environment overrides.

        Raises:
            FileNotFoundError: If the file does not exist.
            pydantic.ValidationError: If a value is invalid.
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        raw = yaml.safe_load(path.read_text()) or {}
        for env_var, (key, parse) in ENV_OVERRIDES.items():
            if env_var in os.environ:
                raw[key] = parse(os.environ[env_var])

        return cls.model_validate(raw)

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> Config:
        """Like ``load``, but fall back to defaults when there is no file.

        Without a path, ``config.yaml`` and then ``config.yml`` in the working
        directory are tried.
        """
        candidates = [Path(config_path)] if config_path else [Path("config.yaml"), Path("config.yml")]
        for candidate in candidates:
            if candidate.exists():
                return cls.load(candidate)
        return cls()
