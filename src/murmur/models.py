"""Pydantic models for Murmur entities.

These models bridge between the database (SQLAlchemy Core) and application
code, providing validation and serialization.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ulid import ULID


# =============================================================================
# Enums
# =============================================================================


class ChannelType(str, Enum):
    """Conversation (room) types."""

    SELF = "self"
    DM = "dm"
    GROUP = "group"
    VOICE_DM = "voice_dm"
    VOICE_GROUP = "voice_group"
    FEED = "feed"
    THREAD = "thread"
    WORLD = "world"
    API = "api"


class ParticipantState(str, Enum):
    """Agent participation state in a room."""

    MUTED = "muted"
    FOLLOWED = "followed"
    NONE = "none"


class FactKind(str, Enum):
    """Kind tag of an extracted fact."""

    FACT = "fact"
    OPINION = "opinion"
    STATUS = "status"


class MemoryTable(str, Enum):
    """Logical memory tables."""

    MESSAGES = "messages"
    FACTS = "facts"
    REACTIONS = "reactions"


# =============================================================================
# Helper Functions
# =============================================================================


def generate_id() -> str:
    """Generate a new ULID for internal rows."""
    return str(ULID())


def generate_uuid() -> str:
    """Generate a new UUID for messages, entities and tokens."""
    return str(uuid.uuid4())


def scoped_uuid(agent_id: str, value: str) -> str:
    """Stable UUID for a platform id as seen by one agent."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{agent_id}:{value}"))


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes (as read back from SQLite) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# =============================================================================
# Conversation Models
# =============================================================================


class World(BaseModel):
    """A platform server grouping rooms."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str | None = None
    agent_id: str
    server_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Room(BaseModel):
    """A bounded message channel."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str | None = None
    source: str | None = None
    type: ChannelType = ChannelType.GROUP
    channel_id: str | None = None
    server_id: str | None = None
    world_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Entity(BaseModel):
    """A participant (human or agent) with one or more display names."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    names: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    agent_id: str | None = None

    @property
    def display_name(self) -> str:
        """First known name, or the id when unnamed."""
        return self.names[0] if self.names else self.id


class Content(BaseModel):
    """Text plus structured fields of a message."""

    model_config = ConfigDict(extra="allow")

    text: str = ""
    thought: str | None = None
    actions: list[str] = Field(default_factory=list)
    action: str | None = None
    in_reply_to: str | None = None
    channel_type: ChannelType | None = None
    source: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Memory(BaseModel):
    """A persisted message, fact or reaction."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_uuid)
    entity_id: str
    agent_id: str | None = None
    room_id: str
    content: Content = Field(default_factory=Content)
    embedding: list[float] | None = None
    unique: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Fact(BaseModel):
    """A write-once claim distilled from a conversation."""

    claim: str
    kind: FactKind = FactKind.FACT
    room_id: str
    agent_id: str
    created_at: datetime = Field(default_factory=utcnow)

    def to_memory(self) -> Memory:
        """Facts are stored as memories attributed to the agent."""
        return Memory(
            entity_id=self.agent_id,
            agent_id=self.agent_id,
            room_id=self.room_id,
            content=Content(text=self.claim, metadata={"kind": self.kind.value}),
            created_at=self.created_at,
        )


class Relationship(BaseModel):
    """Directed edge between two entities."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=generate_id)
    source_entity_id: str
    target_entity_id: str
    agent_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def interactions(self) -> int:
        """Interaction counter, defaulting to 0 when never recorded."""
        return int(self.metadata.get("interactions") or 0)
