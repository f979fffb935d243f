"""State composition for prompts.

Gathers what the agent knows about a conversation at the moment a message is
handled: recent messages, who is in the room, known facts, and the sender's
relationships. The resulting dict feeds the prompt templates and is handed to
the action executor and the reflection pass.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from murmur.entities import format_entities
from murmur.templates import format_facts, format_messages, format_relationships

if TYPE_CHECKING:
    from murmur.config import Config
    from murmur.models import Memory
    from murmur.store import DatabaseAdapter, MemoryManager


class ContextBuilder:
    """Builds the prompt state for a message."""

    def __init__(
        self,
        config: Config,
        db: DatabaseAdapter,
        messages: MemoryManager,
        facts: MemoryManager,
        action_names: list[str] | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.messages = messages
        self.facts = facts
        self.action_names = action_names or []

    async def recent_messages(self, message: Memory) -> list[Memory]:
        """Recent room messages, newest first, including ``message`` itself."""
        recent = await self.messages.get_memories(
            room_id=message.room_id,
            count=self.config.agent.conversation_length,
        )
        if all(m.id != message.id for m in recent):
            recent.insert(0, message)
        return recent

    async def build(self, message: Memory) -> dict[str, Any]:
        """Compose the full state for a message."""
        recent, entities, known_facts, relationships, room = await asyncio.gather(
            self.recent_messages(message),
            self.db.get_entities_for_room(message.room_id),
            self.facts.get_memories(
                room_id=message.room_id,
                count=self.config.reflection.known_facts_count,
                unique=True,
            ),
            self.db.get_relationships(message.entity_id),
            self.db.get_room(message.room_id),
        )

        sender = next((e for e in entities if e.id == message.entity_id), None)
        room_type = message.content.channel_type or (room.type if room else None)

        return {
            "agent_id": self.config.agent_id,
            "agent_name": self.config.agent.name,
            "bio": self.config.agent.bio,
            "system": self.config.agent.system,
            "room_type": room_type.value if room_type else "unknown",
            "sender_id": message.entity_id,
            "sender_name": sender.display_name if sender else "Unknown User",
            "entities": format_entities(entities),
            "entity_list": entities,
            "recent_messages": format_messages(recent, entities),
            "recent_message_list": recent,
            "known_facts": format_facts(known_facts),
            "relationships": format_relationships(relationships, entities),
            "action_names": self.action_names,
        }
