"""Reflection: distilling conversations into facts and relationships.

Runs after every handled message but only does work when enough new messages
have arrived since the last completed pass (the checkpoint). A pass asks the
small model for a self-reflective thought, new facts, and directed
relationships between entities in the room, then:

- persists facts that are new and not part of the agent's bio
- resolves relationship endpoints against the room roster
- merges each relationship into the graph (tag union, interactions + 1)
- advances the checkpoint to the triggering message

A pass with an unusable model answer changes nothing, not even the
checkpoint. A pass that succeeds advances the checkpoint even if it wrote
nothing, so the same window is never reprocessed.
"""

from __future__ import annotations

import asyncio
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from murmur.entities import EntityResolutionError, format_entities, resolve_entity
from murmur.extraction import OutputMode, Parsed, match_enum
from murmur.llm import ModelTier
from murmur.logging import get_logger
from murmur.models import Fact, FactKind, Relationship, utcnow
from murmur.templates import REFLECTION_TEMPLATE, format_facts, format_relationships

if TYPE_CHECKING:
    from murmur.config import Config
    from murmur.context import ContextBuilder
    from murmur.extraction import StructuredExtractor
    from murmur.models import Entity, Memory
    from murmur.store import DatabaseAdapter, MemoryManager
    from murmur.templates import TemplateEngine

log = get_logger("reflection")


# =============================================================================
# Output schema
# =============================================================================


class ExtractedFact(BaseModel):
    """A fact as the model reports it."""

    claim: str
    kind: FactKind = Field(
        default=FactKind.FACT,
        validation_alias=AliasChoices("kind", "type"),
    )
    in_bio: bool
    already_known: bool

    @field_validator("kind", mode="before")
    @classmethod
    def near_kind(cls, v: Any) -> Any:
        """Resolve near-matches like "Opinion" or "fact|status"; default to fact."""
        if isinstance(v, FactKind) or v is None:
            return v or FactKind.FACT
        matched = match_enum(str(v).lower(), [k.value for k in FactKind])
        return matched or FactKind.FACT


class ExtractedRelationship(BaseModel):
    """A directed relationship as the model reports it."""

    model_config = ConfigDict(populate_by_name=True)

    source_entity_id: str = Field(alias="sourceEntityId")
    target_entity_id: str = Field(alias="targetEntityId")
    tags: list[str]
    metadata: dict[str, Any] | None = None


class ReflectionOutput(BaseModel):
    """Full reflection answer."""

    thought: str = ""
    facts: list[ExtractedFact]
    relationships: list[ExtractedRelationship]


@dataclass
class ReflectionOutcome:
    """What a completed pass wrote."""

    thought: str
    facts: list[Fact] = field(default_factory=list)
    relationships_created: int = 0
    relationships_updated: int = 0
    relationships_skipped: int = 0


# =============================================================================
# Examples shown to the model
# =============================================================================


REFLECTION_EXAMPLES: list[dict[str, Any]] = [
    {
        "context": (
            "Agent Name: Sarah\nAgent Role: Community Manager\nRoom Type: group\n"
            "Current Room: general-chat\nMessage Sender: John (user-123)"
        ),
        "messages": [
            "John: Hey everyone, I'm new here!",
            "Sarah: Welcome John! How did you find our community?",
            "John: Through a friend who's really into AI",
        ],
        "outcome": """{
    "thought": "I'm engaging appropriately with a new community member, keeping a welcoming tone.",
    "facts": [
        {"claim": "John is new to the community", "kind": "fact", "in_bio": false, "already_known": false},
        {"claim": "John found the community through a friend interested in AI", "kind": "fact", "in_bio": false, "already_known": false}
    ],
    "relationships": [
        {"sourceEntityId": "sarah-agent", "targetEntityId": "user-123", "tags": ["group_interaction"]},
        {"sourceEntityId": "user-123", "targetEntityId": "sarah-agent", "tags": ["group_interaction"]}
    ]
}""",
    },
    {
        "context": (
            "Agent Name: Max\nAgent Role: Discussion Facilitator\nRoom Type: group\n"
            "Current Room: book-club\nMessage Sender: Lisa (user-789)"
        ),
        "messages": [
            "Lisa: What did everyone think about chapter 5?",
            "Max: The symbolism was fascinating! The red door clearly represents danger.",
            "Max: And did anyone notice how the author used weather to reflect the mood?",
            "Max: Plus the foreshadowing in the first paragraph was brilliant!",
        ],
        "outcome": """{
    "thought": "I'm dominating the conversation. I should step back and let others share.",
    "facts": [
        {"claim": "The discussion is about chapter 5 of a book", "kind": "fact", "in_bio": false, "already_known": false},
        {"claim": "Max has sent several consecutive messages without user responses", "kind": "status", "in_bio": false, "already_known": false}
    ],
    "relationships": [
        {"sourceEntityId": "max-agent", "targetEntityId": "user-789", "tags": ["group_interaction", "excessive_interaction"]}
    ]
}""",
    },
]


# =============================================================================
# Consolidator
# =============================================================================


def checkpoint_key(room_id: str) -> str:
    """Cache key holding the last reflected message id of a room."""
    return f"{room_id}-reflection-last-processed"


def merge_tags(existing: list[str], new: list[str]) -> list[str]:
    """Order-preserving union."""
    return list(dict.fromkeys([*existing, *new]))


class ReflectionConsolidator:
    """Post-message evaluator that extracts and merges durable knowledge."""

    def __init__(
        self,
        config: Config,
        db: DatabaseAdapter,
        messages: MemoryManager,
        facts: MemoryManager,
        extractor: StructuredExtractor,
        templates: TemplateEngine,
        context: ContextBuilder,
    ) -> None:
        self.config = config
        self.db = db
        self.messages = messages
        self.facts = facts
        self.extractor = extractor
        self.templates = templates
        self.context = context
        self.room_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def interval(self) -> int:
        """Number of new messages that must be exceeded before a pass runs."""
        return math.ceil(self.config.agent.conversation_length / 4)

    async def evaluate(
        self, message: Memory, state: dict[str, Any] | None, did_respond: bool
    ) -> ReflectionOutcome | None:
        """Run a pass if one is due.

        Passes for one room run one at a time, so a window being reflected on
        is never picked up again by a concurrent message.
        """
        async with self.room_locks[message.room_id]:
            if not await self.validate(message):
                return None
            return await self.handle(message, state)

    async def validate(self, message: Memory) -> bool:
        """True when more than ``interval`` messages arrived since the checkpoint."""
        last_id = await self.db.get_cache(checkpoint_key(message.room_id))
        recent = await self.messages.get_memories(
            room_id=message.room_id,
            count=self.config.agent.conversation_length,
        )
        chronological = list(reversed(recent))

        if last_id:
            ids = [m.id for m in chronological]
            if last_id in ids:
                chronological = chronological[ids.index(last_id) + 1 :]

        due = len(chronological) > self.interval
        log.debug(
            "reflection_validated",
            room_id=message.room_id,
            new_messages=len(chronological),
            interval=self.interval,
            due=due,
        )
        return due

    async def handle(
        self, message: Memory, state: dict[str, Any] | None = None
    ) -> ReflectionOutcome | None:
        """Run one reflection pass for the room of ``message``."""
        if state is None:
            state = await self.context.build(message)

        existing = await self.db.get_relationships(message.entity_id)
        entities = await self.db.get_entities_for_room(message.room_id)
        known_facts = await self.facts.get_memories(
            room_id=message.room_id,
            count=self.config.reflection.known_facts_count,
            unique=True,
        )

        prompt = self.templates.render(
            REFLECTION_TEMPLATE,
            {
                "examples": REFLECTION_EXAMPLES,
                "entities_in_room": format_entities(entities),
                "existing_relationships": format_relationships(existing, entities),
                "agent_name": self.config.agent.name,
                "room_type": state.get("room_type", "unknown"),
                "sender_name": state.get("sender_name", "Unknown User"),
                "sender_id": message.entity_id,
                "recent_messages": state.get("recent_messages", ""),
                "known_facts": format_facts(known_facts),
            },
        )

        result = await self.extractor.extract_result(
            prompt,
            output=OutputMode.OBJECT,
            schema=ReflectionOutput,
            tier=ModelTier.SMALL,
        )
        if not isinstance(result, Parsed):
            log.warning("reflection_skipped", room_id=message.room_id, reason=result.reason)
            return None

        reflection: ReflectionOutput = result.value
        outcome = ReflectionOutcome(thought=reflection.thought)

        await self._persist_facts(message, reflection.facts, outcome)
        await self._merge_relationships(reflection.relationships, existing, entities, outcome)

        await self.db.set_cache(checkpoint_key(message.room_id), message.id)

        log.info(
            "reflection_complete",
            room_id=message.room_id,
            facts=len(outcome.facts),
            relationships_created=outcome.relationships_created,
            relationships_updated=outcome.relationships_updated,
            relationships_skipped=outcome.relationships_skipped,
        )
        return outcome

    async def _persist_facts(
        self,
        message: Memory,
        extracted: list[ExtractedFact],
        outcome: ReflectionOutcome,
    ) -> None:
        agent_id = self.config.agent_id
        for item in extracted:
            claim = item.claim.strip()
            if item.already_known or item.in_bio or not claim:
                continue

            fact = Fact(claim=claim, kind=item.kind, room_id=message.room_id, agent_id=agent_id)
            memory = await self.facts.add_embedding(fact.to_memory())
            await self.facts.create_memory(memory, unique=True)
            outcome.facts.append(fact)

    async def _merge_relationships(
        self,
        extracted: list[ExtractedRelationship],
        existing: list[Relationship],
        entities: list[Entity],
        outcome: ReflectionOutcome,
    ) -> None:
        known = {(r.source_entity_id, r.target_entity_id): r for r in existing}

        for item in extracted:
            try:
                source_id = resolve_entity(item.source_entity_id, entities)
                target_id = resolve_entity(item.target_entity_id, entities)
            except EntityResolutionError as e:
                log.warning(
                    "relationship_entity_unresolved",
                    identifier=e.identifier,
                    source=item.source_entity_id,
                    target=item.target_entity_id,
                )
                outcome.relationships_skipped += 1
                continue

            key = (source_id, target_id)
            current = known.get(key)
            if current is None:
                current = await self.db.get_relationship(source_id, target_id)

            if current is not None:
                updated = current.model_copy(
                    update={
                        "tags": merge_tags(current.tags, item.tags),
                        "metadata": {
                            **current.metadata,
                            "interactions": current.interactions + 1,
                        },
                        "updated_at": utcnow(),
                    }
                )
                await self.db.update_relationship(updated)
                known[key] = updated
                outcome.relationships_updated += 1
            else:
                created = Relationship(
                    source_entity_id=source_id,
                    target_entity_id=target_id,
                    agent_id=self.config.agent_id,
                    tags=merge_tags([], item.tags),
                    metadata={**(item.metadata or {}), "interactions": 1},
                )
                await self.db.create_relationship(created)
                known[key] = created
                outcome.relationships_created += 1
