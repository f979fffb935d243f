"""Persistence collaborators for Murmur.

The core depends only on the protocols at the top of this module. The SQLite
classes below them are the reference implementation, built on SQLAlchemy Core
tables from ``murmur.database``.

Key concepts:
- MemoryManager: one logical memory table (messages, facts, reactions)
- DatabaseAdapter: rooms, entities, participants, relationships and cache
- Embedder: optional text embedding hook applied before storage
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import and_, delete, literal_column, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from murmur.database import (
    cache as cache_table,
    entities as entities_table,
    memories as memories_table,
    participants as participants_table,
    relationships as relationships_table,
    rooms as rooms_table,
    worlds as worlds_table,
)
from murmur.logging import get_logger
from murmur.models import (
    Entity,
    Memory,
    MemoryTable,
    ParticipantState,
    Relationship,
    Room,
    World,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = get_logger("store")


class DuplicateMemoryError(Exception):
    """Raised when a memory id is already stored."""


class Embedder(Protocol):
    """Produces an embedding vector for a piece of text."""

    async def embed(self, text: str) -> list[float] | None: ...


# =============================================================================
# Memory Manager
# =============================================================================


def _row_to_memory(row: Any) -> Memory:
    data = dict(row._mapping)
    data["unique"] = data.pop("is_unique")
    data.pop("table_name", None)
    return Memory.model_validate(data)


class MemoryManager:
    """Stores and queries memories of one logical table."""

    def __init__(
        self,
        engine: Engine,
        table_name: MemoryTable,
        embedder: Embedder | None = None,
    ) -> None:
        self.engine = engine
        self.table_name = table_name
        self.embedder = embedder

    async def add_embedding(self, memory: Memory) -> Memory:
        """Return the memory with an embedding attached.

        A memory that already carries an embedding, or a manager without an
        embedder, yields the memory unchanged.
        """
        if memory.embedding is not None or self.embedder is None:
            return memory
        if not memory.content.text:
            return memory

        embedding = await self.embedder.embed(memory.content.text)
        return memory.model_copy(update={"embedding": embedding})

    async def create_memory(self, memory: Memory, unique: bool = False) -> str:
        """Insert a memory.

        Raises:
            DuplicateMemoryError: If a memory with the same id exists.
        """
        values = {
            "id": memory.id,
            "table_name": self.table_name.value,
            "entity_id": memory.entity_id,
            "agent_id": memory.agent_id,
            "room_id": memory.room_id,
            "content": memory.content.model_dump(mode="json", exclude_none=True),
            "embedding": memory.embedding,
            "is_unique": unique or memory.unique,
            "created_at": memory.created_at,
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(memories_table.insert().values(**values))
        except IntegrityError as e:
            raise DuplicateMemoryError(f"Memory already exists: {memory.id}") from e

        log.debug(
            "memory_created",
            table=self.table_name.value,
            memory_id=memory.id,
            room_id=memory.room_id,
        )
        return memory.id

    async def get_memories(
        self,
        room_id: str,
        count: int = 10,
        unique: bool = False,
    ) -> list[Memory]:
        """Most recent memories for a room, newest first.

        Args:
            room_id: Room to query.
            count: Maximum number of memories.
            unique: Only return memories stored as unique.
        """
        conditions = [
            memories_table.c.room_id == room_id,
            memories_table.c.table_name == self.table_name.value,
        ]
        if unique:
            conditions.append(memories_table.c.is_unique.is_(True))

        stmt = (
            select(memories_table)
            .where(and_(*conditions))
            .order_by(
                memories_table.c.created_at.desc(),
                literal_column("rowid").desc(),
            )
            .limit(count)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_memory(row) for row in rows]

    async def get_memory(self, memory_id: str) -> Memory | None:
        """Fetch one memory of this table by id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(memories_table).where(
                    and_(
                        memories_table.c.id == memory_id,
                        memories_table.c.table_name == self.table_name.value,
                    )
                )
            ).first()
        return _row_to_memory(row) if row else None


# =============================================================================
# Database Adapter
# =============================================================================


def _row_to_relationship(row: Any) -> Relationship:
    data = dict(row._mapping)
    data["metadata"] = data.get("metadata") or {}
    return Relationship.model_validate(data)


def _row_to_entity(row: Any) -> Entity:
    data = dict(row._mapping)
    data["metadata"] = data.get("metadata") or {}
    return Entity.model_validate(data)


class DatabaseAdapter:
    """Rooms, entities, participation, relationships and cache for one agent."""

    def __init__(self, engine: Engine, agent_id: str) -> None:
        self.engine = engine
        self.agent_id = agent_id

    # -------------------------------------------------------------------------
    # Relationships
    # -------------------------------------------------------------------------

    async def get_relationships(self, entity_id: str) -> list[Relationship]:
        """All edges touching an entity, in either direction."""
        stmt = select(relationships_table).where(
            or_(
                relationships_table.c.source_entity_id == entity_id,
                relationships_table.c.target_entity_id == entity_id,
            )
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_relationship(row) for row in rows]

    async def get_relationship(
        self, source_entity_id: str, target_entity_id: str
    ) -> Relationship | None:
        """The edge for an ordered pair, if stored."""
        stmt = select(relationships_table).where(
            and_(
                relationships_table.c.source_entity_id == source_entity_id,
                relationships_table.c.target_entity_id == target_entity_id,
            )
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _row_to_relationship(row) if row else None

    async def create_relationship(self, relationship: Relationship) -> Relationship:
        """Insert a new edge. The ordered pair must not exist yet."""
        with self.engine.begin() as conn:
            conn.execute(
                relationships_table.insert().values(
                    id=relationship.id,
                    source_entity_id=relationship.source_entity_id,
                    target_entity_id=relationship.target_entity_id,
                    agent_id=relationship.agent_id or self.agent_id,
                    tags=relationship.tags,
                    metadata=relationship.metadata,
                    created_at=relationship.created_at,
                    updated_at=relationship.updated_at,
                )
            )
        log.debug(
            "relationship_created",
            source=relationship.source_entity_id,
            target=relationship.target_entity_id,
        )
        return relationship

    async def update_relationship(self, relationship: Relationship) -> None:
        """Overwrite tags and metadata of an existing edge."""
        with self.engine.begin() as conn:
            conn.execute(
                update(relationships_table)
                .where(relationships_table.c.id == relationship.id)
                .values(
                    tags=relationship.tags,
                    metadata=relationship.metadata,
                    updated_at=utcnow(),
                )
            )
        log.debug(
            "relationship_updated",
            source=relationship.source_entity_id,
            target=relationship.target_entity_id,
            interactions=relationship.interactions,
        )

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    async def get_cache(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(cache_table.c.value).where(
                    and_(
                        cache_table.c.key == key,
                        cache_table.c.agent_id == self.agent_id,
                    )
                )
            ).first()
        return row.value if row else None

    async def set_cache(self, key: str, value: str) -> None:
        stmt = sqlite_insert(cache_table).values(
            key=key,
            agent_id=self.agent_id,
            value=value,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["key", "agent_id"],
            set_={"value": value, "updated_at": utcnow()},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    async def delete_cache(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                delete(cache_table).where(
                    and_(
                        cache_table.c.key == key,
                        cache_table.c.agent_id == self.agent_id,
                    )
                )
            )

    # -------------------------------------------------------------------------
    # Participation
    # -------------------------------------------------------------------------

    async def get_participant_state(
        self, room_id: str, entity_id: str
    ) -> ParticipantState:
        """Participation state, ``NONE`` when the entity is not a participant."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(participants_table.c.state).where(
                    and_(
                        participants_table.c.room_id == room_id,
                        participants_table.c.entity_id == entity_id,
                    )
                )
            ).first()
        if row is None:
            return ParticipantState.NONE
        return ParticipantState(row.state)

    async def set_participant_state(
        self, room_id: str, entity_id: str, state: ParticipantState
    ) -> None:
        stmt = sqlite_insert(participants_table).values(
            room_id=room_id,
            entity_id=entity_id,
            state=state.value,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["room_id", "entity_id"],
            set_={"state": state.value},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        log.info("participant_state_set", room_id=room_id, entity_id=entity_id, state=state.value)

    async def add_participant(self, room_id: str, entity_id: str) -> None:
        stmt = sqlite_insert(participants_table).values(
            room_id=room_id,
            entity_id=entity_id,
            state=ParticipantState.NONE.value,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt.on_conflict_do_nothing())

    # -------------------------------------------------------------------------
    # Rooms, worlds, entities
    # -------------------------------------------------------------------------

    async def get_room(self, room_id: str) -> Room | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(rooms_table).where(rooms_table.c.id == room_id)).first()
        return Room.model_validate(row._mapping) if row else None

    async def ensure_world(self, world: World) -> None:
        stmt = sqlite_insert(worlds_table).values(
            id=world.id,
            name=world.name,
            agent_id=world.agent_id,
            server_id=world.server_id,
            metadata=world.metadata,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"name": world.name, "metadata": world.metadata},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    async def ensure_room(self, room: Room) -> None:
        """Create a room on first sight. Existing rooms are left untouched."""
        stmt = sqlite_insert(rooms_table).values(
            id=room.id,
            name=room.name,
            source=room.source,
            type=room.type.value,
            channel_id=room.channel_id,
            server_id=room.server_id,
            world_id=room.world_id,
            created_at=room.created_at,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt.on_conflict_do_nothing())

    async def get_entity(self, entity_id: str) -> Entity | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(entities_table).where(entities_table.c.id == entity_id)
            ).first()
        return _row_to_entity(row) if row else None

    async def ensure_entity(self, entity: Entity) -> Entity:
        """Create an entity, or append names and metadata it did not have yet."""
        existing = await self.get_entity(entity.id)
        if existing is None:
            with self.engine.begin() as conn:
                conn.execute(
                    entities_table.insert().values(
                        id=entity.id,
                        names=entity.names,
                        metadata=entity.metadata,
                        agent_id=entity.agent_id or self.agent_id,
                    )
                )
            return entity

        names = list(existing.names)
        names.extend(n for n in entity.names if n not in names)
        metadata = {**existing.metadata, **entity.metadata}
        if names != existing.names or metadata != existing.metadata:
            with self.engine.begin() as conn:
                conn.execute(
                    update(entities_table)
                    .where(entities_table.c.id == entity.id)
                    .values(names=names, metadata=metadata)
                )
        return existing.model_copy(update={"names": names, "metadata": metadata})

    async def ensure_connection(self, entity: Entity, room: Room) -> None:
        """Make sure entity and room exist and the entity participates in the room."""
        await self.ensure_entity(entity)
        await self.ensure_room(room)
        await self.add_participant(room.id, entity.id)

    async def get_entities_for_room(self, room_id: str) -> list[Entity]:
        """Entities participating in a room."""
        stmt = (
            select(entities_table)
            .join(
                participants_table,
                participants_table.c.entity_id == entities_table.c.id,
            )
            .where(participants_table.c.room_id == room_id)
            .order_by(entities_table.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entity(row) for row in rows]
