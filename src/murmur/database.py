"""Database schema and connection management for Murmur.

Uses SQLAlchemy Core (not ORM) for explicit SQL control. The schema backs the
reference implementation of the persistence collaborators in ``murmur.store``.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from murmur.config import Config
from murmur.models import utcnow

# Every Murmur table
metadata = MetaData()


# =============================================================================
# Conversations & Entities
# =============================================================================

worlds = Table(
    "worlds",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=True),
    Column("agent_id", String, nullable=False),
    Column("server_id", String, nullable=True),
    Column("metadata", JSON, nullable=True),
)

rooms = Table(
    "rooms",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=True),
    Column("source", String, nullable=True),
    Column("type", String, nullable=False),  # ChannelType value
    Column("channel_id", String, nullable=True),
    Column("server_id", String, nullable=True),
    Column("world_id", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

entities = Table(
    "entities",
    metadata,
    Column("id", String, primary_key=True),
    Column("names", JSON, nullable=False),  # Ordered list of display names
    Column("metadata", JSON, nullable=True),
    Column("agent_id", String, nullable=True),
)

participants = Table(
    "participants",
    metadata,
    Column("room_id", String, primary_key=True),
    Column("entity_id", String, primary_key=True),
    Column("state", String, nullable=False, default="none"),  # ParticipantState value
    Index("ix_participants_entity", "entity_id"),
)


# =============================================================================
# Memories
# =============================================================================

memories = Table(
    "memories",
    metadata,
    Column("id", String, primary_key=True),
    Column("table_name", String, nullable=False),  # MemoryTable value
    Column("entity_id", String, nullable=False),
    Column("agent_id", String, nullable=True),
    Column("room_id", String, nullable=False),
    Column("content", JSON, nullable=False),
    Column("embedding", JSON, nullable=True),
    Column("is_unique", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Index("ix_memories_room_table_created", "room_id", "table_name", "created_at"),
)


# =============================================================================
# Relationship Graph
# =============================================================================

relationships = Table(
    "relationships",
    metadata,
    Column("id", String, primary_key=True),  # ULID
    Column("source_entity_id", String, nullable=False),
    Column("target_entity_id", String, nullable=False),
    Column("agent_id", String, nullable=True),
    Column("tags", JSON, nullable=False),
    Column("metadata", JSON, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    # At most one stored edge per ordered pair
    Index("ix_relationships_pair", "source_entity_id", "target_entity_id", unique=True),
    Index("ix_relationships_target", "target_entity_id"),
)


# =============================================================================
# Cache
# =============================================================================

cache = Table(
    "cache",
    metadata,
    Column("key", String, primary_key=True),
    Column("agent_id", String, primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", DateTime, nullable=False, default=utcnow),
)


# =============================================================================
# Engine
# =============================================================================


def get_engine(config: Config) -> Engine:
    """Open the SQLite database named by the config, in WAL mode.

    Args:
        config: Murmur configuration.

    Returns:
        Engine bound to ``config.database_path``.
    """
    db_path = config.database_path

    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=config.log_level == "DEBUG",
    )

    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.commit()

    return engine


def create_tables(engine: Engine) -> None:
    """Create any missing Murmur tables.

    Args:
        engine: Engine from ``get_engine``.
    """
    metadata.create_all(engine)
