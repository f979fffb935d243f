"""Tests for the configuration module."""

from pathlib import Path

import pytest
import yaml

from murmur.config import AgentConfig, Config, ModelProfile, ModelsConfig


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> Path:
    """Create a sample config file for testing."""
    config = {
        "data_dir": str(tmp_path / "data"),
        "log_level": "debug",
        "log_json": False,
        "database": {"path": "test.db"},
        "agent": {
            "name": "Eliza",
            "bio": "Listens carefully.",
            "conversation_length": 12,
        },
        "models": {
            "profiles": {
                "haiku": {"provider": "anthropic", "model": "claude-3-5-haiku"},
                "small": "haiku",  # alias
                "large": {"provider": "anthropic", "model": "claude-sonnet-4"},
            },
        },
        "reflection": {"known_facts_count": 10},
        "sync": {"batch_size": 25, "batch_delay_seconds": 0},
    }
    config_path = tmp_path / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    return config_path


def test_config_load(sample_config_yaml: Path) -> None:
    """Config loads correctly from YAML."""
    config = Config.load(sample_config_yaml)

    assert config.log_level == "DEBUG"
    assert config.log_json is False
    assert config.agent.name == "Eliza"
    assert config.agent.conversation_length == 12
    assert config.reflection.known_facts_count == 10
    assert config.sync.batch_size == 25
    assert config.database_path == sample_config_yaml.parent / "data" / "test.db"


def test_config_load_not_found() -> None:
    """Loading a missing file raises."""
    with pytest.raises(FileNotFoundError):
        Config.load("/nonexistent/config.yaml")


def test_config_load_or_default_missing() -> None:
    """A missing file falls back to defaults."""
    config = Config.load_or_default("/nonexistent/config.yaml")
    assert config.agent.name == "Murmur"


def test_config_defaults() -> None:
    """Defaults match the documented values."""
    config = Config()

    assert config.agent.conversation_length == 32
    assert config.reflection.enabled is True
    assert config.reflection.known_facts_count == 30
    assert config.sync.batch_size == 50
    assert config.log_level == "INFO"


def test_config_env_override(sample_config_yaml: Path, monkeypatch) -> None:
    """Environment variables override YAML values."""
    monkeypatch.setenv("MURMUR_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("MURMUR_LOG_JSON", "true")
    monkeypatch.setenv("MURMUR_DATA_DIR", "/tmp/murmur-data")

    config = Config.load(sample_config_yaml)

    assert config.log_level == "WARNING"
    assert config.log_json is True
    assert config.data_dir == Path("/tmp/murmur-data")


def test_agent_id_derived_from_name() -> None:
    """Agents without an explicit id get a stable one from their name."""
    first = AgentConfig(name="Eliza")
    second = AgentConfig(name="Eliza")
    other = AgentConfig(name="Trinity")

    assert first.id == second.id
    assert first.id != other.id


def test_agent_id_explicit() -> None:
    config = Config(agent=AgentConfig(name="Eliza", id="agent-1"))
    assert config.agent_id == "agent-1"


def test_conversation_length_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AgentConfig(conversation_length=0)


def test_model_profile_resolution(sample_config_yaml: Path) -> None:
    """Tier names resolve through aliases."""
    config = Config.load(sample_config_yaml)

    assert config.models.resolve_profile("small").model == "claude-3-5-haiku"
    assert config.models.resolve_profile("large").model == "claude-sonnet-4"


def test_model_profile_unknown() -> None:
    with pytest.raises(KeyError, match="Unknown model profile"):
        ModelsConfig().resolve_profile("nonexistent")


def test_model_profile_circular_alias() -> None:
    models = ModelsConfig(profiles={"a": "b", "b": "a"})
    with pytest.raises(ValueError, match="Circular alias"):
        models.resolve_profile("a")


def test_default_tiers_are_anthropic() -> None:
    models = ModelsConfig()
    assert models.resolve_profile("small") == ModelProfile(
        provider="anthropic", model="claude-3-5-haiku-20241022"
    )
    assert models.resolve_profile("large").provider == "anthropic"


def test_log_level_validation() -> None:
    with pytest.raises(ValueError, match="log_level must be one of"):
        Config(log_level="LOUD")


def test_get_api_key_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    assert ModelsConfig().get_api_key("anthropic") == "sk-test"


def test_get_api_key_provider_not_configured() -> None:
    assert ModelsConfig().get_api_key("openai") is None
