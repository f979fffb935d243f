"""Event dispatch and world synchronization.

Platform adapters emit named events with keyword payloads. Each event maps to
an ordered list of handlers; a failing handler is logged and does not stop
the ones after it.

Payloads by event:
- MESSAGE_RECEIVED / VOICE_MESSAGE_RECEIVED: ``message``, optional ``callback``
- REACTION_RECEIVED: ``message`` (the reaction as a memory)
- SERVER_JOINED / SERVER_CONNECTED: ``world``, ``rooms``, ``users``, ``source``
- USER_JOINED: ``user``, ``server_id``, ``channel_id``, ``channel_type``, ``source``
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from murmur.logging import get_logger
from murmur.models import ChannelType, Entity, Room, World, scoped_uuid
from murmur.store import DuplicateMemoryError

if TYPE_CHECKING:
    from murmur.models import Memory
    from murmur.runtime import AgentRuntime
    from murmur.store import DatabaseAdapter

log = get_logger("events")

Handler = Callable[..., Any]


class EventType(str, Enum):
    """Events a platform adapter can emit."""

    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    VOICE_MESSAGE_RECEIVED = "VOICE_MESSAGE_RECEIVED"
    REACTION_RECEIVED = "REACTION_RECEIVED"
    SERVER_JOINED = "SERVER_JOINED"
    SERVER_CONNECTED = "SERVER_CONNECTED"
    USER_JOINED = "USER_JOINED"


class EventDispatchTable:
    """Ordered handler lists keyed by event type."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Handler]] = {}

    def register(self, event: EventType, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def handlers(self, event: EventType) -> list[Handler]:
        return list(self._handlers.get(event, []))

    async def emit(self, event: EventType, **payload: Any) -> list[BaseException]:
        """Run every handler for ``event`` in registration order.

        Handlers may be plain functions or coroutines.

        Returns:
            Exceptions raised by handlers, in order. Empty when all succeeded.
        """
        errors: list[BaseException] = []
        for handler in self.handlers(event):
            try:
                result = handler(**payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(
                    "event_handler_failed",
                    event_type=event.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )
                errors.append(e)
        return errors


# =============================================================================
# World sync
# =============================================================================


class WorldSyncAdapter(Protocol):
    """Mirrors platform servers, channels and users into the store."""

    async def sync_server(
        self, world: World, rooms: list[Room], users: list[Entity], source: str
    ) -> None: ...

    async def sync_user(
        self,
        user: Entity,
        server_id: str | None,
        channel_id: str | None,
        channel_type: ChannelType,
        source: str,
    ) -> None: ...


def _user_names(user: Entity, source: str) -> list[str]:
    """Names for a platform user: source profile first, then known names."""
    profile = user.metadata.get(source) or {}
    names = [profile.get("name"), profile.get("username"), *user.names]
    return list(dict.fromkeys(n for n in names if n))


class StoreWorldSync:
    """Default sync for the standardized server payload."""

    def __init__(
        self,
        db: DatabaseAdapter,
        agent_id: str,
        batch_size: int = 50,
        batch_delay: float = 0.5,
    ) -> None:
        self.db = db
        self.agent_id = agent_id
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    async def sync_server(
        self, world: World, rooms: list[Room], users: list[Entity], source: str
    ) -> None:
        """Create the world and its rooms, then connect users in batches.

        Users are connected to the first room of the server. A user that fails
        to sync is logged and skipped.
        """
        log.info("server_sync_started", world_id=world.id, rooms=len(rooms), users=len(users))

        await self.db.ensure_world(world.model_copy(update={"agent_id": self.agent_id}))

        for room in rooms:
            await self.db.ensure_room(
                room.model_copy(
                    update={
                        "source": source,
                        "server_id": world.server_id,
                        "world_id": world.id,
                    }
                )
            )

        if users and not rooms:
            log.warning("server_sync_no_rooms", world_id=world.id, users=len(users))
            return

        first_room = rooms[0] if rooms else None
        for start in range(0, len(users), self.batch_size):
            batch = users[start : start + self.batch_size]
            await asyncio.gather(
                *(self._connect_user(user, first_room, world, source) for user in batch)
            )
            if start + self.batch_size < len(users):
                await asyncio.sleep(self.batch_delay)

        log.info("server_sync_complete", world_id=world.id)

    async def _connect_user(self, user: Entity, room: Room, world: World, source: str) -> None:
        try:
            entity = user.model_copy(update={"names": _user_names(user, source)})
            await self.db.ensure_connection(
                entity,
                room.model_copy(update={"server_id": world.server_id, "world_id": world.id}),
            )
        except Exception as e:
            log.warning("user_sync_failed", user_id=user.id, error=str(e))

    async def sync_user(
        self,
        user: Entity,
        server_id: str | None,
        channel_id: str | None,
        channel_type: ChannelType,
        source: str,
    ) -> None:
        """Connect one user to the room of a channel."""
        if not channel_id:
            log.warning("user_sync_missing_channel", user_id=user.id)
            return

        room = Room(
            id=scoped_uuid(self.agent_id, channel_id),
            source=source,
            type=channel_type,
            channel_id=channel_id,
            server_id=server_id,
            world_id=scoped_uuid(self.agent_id, server_id) if server_id else None,
        )
        entity = user.model_copy(update={"names": _user_names(user, source)})
        await self.db.ensure_connection(entity, room)
        log.info("user_synced", user_id=user.id, room_id=room.id)


# =============================================================================
# Default table
# =============================================================================


def build_event_table(runtime: AgentRuntime) -> EventDispatchTable:
    """Wire the default handlers to a runtime."""
    table = EventDispatchTable()

    async def on_message(message: Memory, callback: Any = None, **_: Any) -> None:
        await runtime.orchestrator.handle_message(message, callback)

    async def on_reaction(message: Memory, **_: Any) -> None:
        try:
            await runtime.reactions.create_memory(message)
        except DuplicateMemoryError:
            log.warning("duplicate_reaction", memory_id=message.id)

    async def on_server(
        world: World,
        rooms: list[Room] | None = None,
        users: list[Entity] | None = None,
        source: str = "",
        **_: Any,
    ) -> None:
        await runtime.world_sync.sync_server(world, rooms or [], users or [], source)

    async def on_user_joined(
        user: Entity,
        server_id: str | None = None,
        channel_id: str | None = None,
        channel_type: ChannelType = ChannelType.GROUP,
        source: str = "",
        **_: Any,
    ) -> None:
        await runtime.world_sync.sync_user(user, server_id, channel_id, channel_type, source)

    table.register(EventType.MESSAGE_RECEIVED, on_message)
    table.register(EventType.VOICE_MESSAGE_RECEIVED, on_message)
    table.register(EventType.REACTION_RECEIVED, on_reaction)
    table.register(EventType.SERVER_JOINED, on_server)
    table.register(EventType.SERVER_CONNECTED, on_server)
    table.register(EventType.USER_JOINED, on_user_joined)
    return table
