"""Tests for event dispatch and world sync."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ALICE_ID, ROOM_ID, make_message
from murmur.events import EventDispatchTable, EventType, StoreWorldSync
from murmur.models import ChannelType, Entity, Room, World, scoped_uuid
from murmur.runtime import AgentRuntime


@pytest.fixture
def runtime(test_config, engine, mock_model) -> AgentRuntime:
    return AgentRuntime.create(test_config, model=mock_model, engine=engine)


def discord_user(user_id: str, username: str, name: str) -> Entity:
    return Entity(id=user_id, metadata={"discord": {"username": username, "name": name}})


class TestEventDispatchTable:
    """Tests for handler registration and dispatch."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_order(self) -> None:
        table = EventDispatchTable()
        seen = []

        def sync_handler(**payload):
            seen.append(("sync", payload["value"]))

        async def async_handler(**payload):
            seen.append(("async", payload["value"]))

        table.register(EventType.USER_JOINED, sync_handler)
        table.register(EventType.USER_JOINED, async_handler)

        errors = await table.emit(EventType.USER_JOINED, value=1)

        assert errors == []
        assert seen == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self) -> None:
        table = EventDispatchTable()
        after = AsyncMock()

        async def broken(**payload):
            raise RuntimeError("broken handler")

        table.register(EventType.SERVER_JOINED, broken)
        table.register(EventType.SERVER_JOINED, after)

        errors = await table.emit(EventType.SERVER_JOINED, world=None)

        assert len(errors) == 1
        assert str(errors[0]) == "broken handler"
        after.assert_awaited_once_with(world=None)

    @pytest.mark.asyncio
    async def test_unregistered_event(self) -> None:
        assert await EventDispatchTable().emit(EventType.REACTION_RECEIVED) == []

    def test_handlers_returns_copy(self) -> None:
        table = EventDispatchTable()
        table.handlers(EventType.USER_JOINED).append(print)
        assert table.handlers(EventType.USER_JOINED) == []


class TestDefaultTable:
    """Tests for the handlers wired by the runtime."""

    def test_all_events_registered(self, runtime) -> None:
        for event in EventType:
            assert len(runtime.events.handlers(event)) == 1

    @pytest.mark.asyncio
    async def test_message_routes_to_orchestrator(self, runtime, mock_model) -> None:
        mock_model.invoke.return_value = json.dumps({"text": "hello there", "actions": ["REPLY"]})
        callback = AsyncMock()

        errors = await runtime.emit(
            EventType.VOICE_MESSAGE_RECEIVED,
            message=make_message("SarahBot can you hear me"),
            callback=callback,
        )

        assert errors == []
        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reaction_stored_once(self, runtime) -> None:
        reaction = make_message("+1")

        assert await runtime.emit(EventType.REACTION_RECEIVED, message=reaction) == []
        # A duplicate is only a warning
        assert await runtime.emit(EventType.REACTION_RECEIVED, message=reaction) == []

        stored = await runtime.reactions.get_memories(ROOM_ID)
        assert [m.id for m in stored] == [reaction.id]
        assert await runtime.messages.get_memories(ROOM_ID) == []

    @pytest.mark.asyncio
    async def test_server_events_use_world_sync(self, test_config, engine, mock_model) -> None:
        world_sync = MagicMock()
        world_sync.sync_server = AsyncMock()
        runtime = AgentRuntime.create(
            test_config, model=mock_model, engine=engine, world_sync=world_sync
        )
        world = World(id="w1", name="Guild", agent_id=runtime.agent_id, server_id="123")

        await runtime.emit(EventType.SERVER_CONNECTED, world=world, source="discord")

        world_sync.sync_server.assert_awaited_once_with(world, [], [], "discord")


class TestStoreWorldSync:
    """Tests for the default world sync."""

    @pytest.mark.asyncio
    async def test_sync_server(self, db, test_config) -> None:
        sync = StoreWorldSync(db, test_config.agent_id, batch_size=2, batch_delay=0)
        world = World(id="w1", name="Guild", agent_id="someone-else", server_id="123")
        rooms = [
            Room(id="r-general", name="general", channel_id="c1"),
            Room(id="r-random", name="random", channel_id="c2"),
        ]
        users = [
            discord_user("u1", "alice", "Alice"),
            discord_user("u2", "bob", "Bob"),
            discord_user("u3", "carol", "Carol"),
        ]

        await sync.sync_server(world, rooms, users, "discord")

        general = await db.get_room("r-general")
        assert general.source == "discord"
        assert general.server_id == "123"
        assert general.world_id == "w1"
        assert await db.get_room("r-random") is not None

        members = await db.get_entities_for_room("r-general")
        assert [m.id for m in members] == ["u1", "u2", "u3"]
        assert members[0].names == ["Alice", "alice"]
        assert await db.get_entities_for_room("r-random") == []

    @pytest.mark.asyncio
    async def test_failing_user_is_skipped(self, db, test_config) -> None:
        sync = StoreWorldSync(db, test_config.agent_id, batch_size=10, batch_delay=0)
        world = World(id="w1", agent_id=test_config.agent_id)
        room = Room(id="r1", channel_id="c1")
        original = db.ensure_connection

        async def flaky(entity, target_room):
            if entity.id == "bad":
                raise RuntimeError("constraint failed")
            await original(entity, target_room)

        db.ensure_connection = flaky
        await sync.sync_server(
            world, [room], [Entity(id="bad", names=["Bad"]), Entity(id="ok", names=["Ok"])], "x"
        )

        assert [m.id for m in await db.get_entities_for_room("r1")] == ["ok"]

    @pytest.mark.asyncio
    async def test_sync_user(self, db, test_config) -> None:
        sync = StoreWorldSync(db, test_config.agent_id)

        await sync.sync_user(
            Entity(id=ALICE_ID, names=["Alice"]), "srv", "chan-9", ChannelType.DM, "discord"
        )

        room_id = scoped_uuid(test_config.agent_id, "chan-9")
        room = await db.get_room(room_id)
        assert room.type == ChannelType.DM
        assert room.channel_id == "chan-9"
        assert [e.id for e in await db.get_entities_for_room(room_id)] == [ALICE_ID]

    @pytest.mark.asyncio
    async def test_sync_user_requires_channel(self, db, test_config) -> None:
        sync = StoreWorldSync(db, test_config.agent_id)

        await sync.sync_user(Entity(id=ALICE_ID), "srv", None, ChannelType.GROUP, "discord")

        assert await db.get_entity(ALICE_ID) is None
