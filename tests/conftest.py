"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from click.testing import CliRunner

from murmur.config import AgentConfig, Config, ReflectionConfig
from murmur.database import create_tables, get_engine
from murmur.models import ChannelType, Content, Entity, Memory, MemoryTable, Room
from murmur.store import DatabaseAdapter, MemoryManager

ROOM_ID = "room-general"
ALICE_ID = "a1b2c3d4-0000-4000-8000-000000000001"
BOB_ID = "b0b0b0b0-0000-4000-8000-000000000002"

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def temp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def test_config(temp_data_dir: Path) -> Config:
    """Agent "SarahBot" with an eight message window (reflection interval 2)."""
    return Config(
        data_dir=temp_data_dir,
        agent=AgentConfig(name="SarahBot", bio="A helpful community bot.", conversation_length=8),
        reflection=ReflectionConfig(enabled=False),
    )


@pytest.fixture
def engine(test_config: Config):
    """Create a test database engine with all tables."""
    eng = get_engine(test_config)
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine, test_config: Config) -> DatabaseAdapter:
    return DatabaseAdapter(engine, test_config.agent_id)


@pytest.fixture
def messages(engine) -> MemoryManager:
    return MemoryManager(engine, MemoryTable.MESSAGES)


@pytest.fixture
def facts(engine) -> MemoryManager:
    return MemoryManager(engine, MemoryTable.FACTS)


@pytest.fixture
def room() -> Room:
    return Room(id=ROOM_ID, name="general", source="test", type=ChannelType.GROUP)


@pytest_asyncio.fixture
async def populated_room(db: DatabaseAdapter, test_config: Config, room: Room) -> Room:
    """Room with Alice, Bob and the agent as participants."""
    await db.ensure_connection(Entity(id=ALICE_ID, names=["Alice", "alice_w"]), room)
    await db.ensure_connection(Entity(id=BOB_ID, names=["Bob"]), room)
    await db.ensure_connection(Entity(id=test_config.agent_id, names=["SarahBot"]), room)
    return room


@pytest.fixture
def mock_model() -> MagicMock:
    """A TextModel stand-in; tests set ``invoke.side_effect`` or ``return_value``."""
    model = MagicMock()
    model.invoke = AsyncMock(return_value="IGNORE")
    return model


def make_message(
    text: str,
    entity_id: str = ALICE_ID,
    room_id: str = ROOM_ID,
    offset: int = 0,
    **kwargs,
) -> Memory:
    """Build an inbound message ``offset`` seconds after a fixed base time."""
    return Memory(
        entity_id=entity_id,
        room_id=room_id,
        content=Content(text=text, source="test", **kwargs),
        created_at=BASE_TIME + timedelta(seconds=offset),
    )
