"""Response orchestration for incoming messages.

Every message goes through the same pipeline:
1. Mint a generation token for (agent, room), superseding any in-flight one
2. Persist the inbound message
3. Decide whether to respond (cheap early-outs first, then the small model)
4. Generate a response with the large model
5. Dispatch it only if the token is still the live one, then store it
6. Run post-step evaluators (reflection)

Cancellation is after the fact: an in-flight generation is never interrupted,
but its result is dropped when a newer message minted a token meanwhile.
The last minted token wins, not the last completed generation.
"""

from __future__ import annotations

import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from murmur.entities import format_entities
from murmur.extraction import OutputMode, Parsed
from murmur.llm import ModelTier
from murmur.logging import get_logger
from murmur.models import Content, Memory, ParticipantState, generate_uuid
from murmur.templates import (
    MESSAGE_HANDLER_TEMPLATE,
    SHOULD_RESPOND_TEMPLATE,
    format_messages,
)

if TYPE_CHECKING:
    from murmur.config import Config
    from murmur.context import ContextBuilder
    from murmur.extraction import StructuredExtractor
    from murmur.llm import TextModel
    from murmur.store import DatabaseAdapter, MemoryManager
    from murmur.templates import TemplateEngine

log = get_logger("orchestrator")

DeliveryCallback = Callable[[Content], Awaitable[Any]]


# =============================================================================
# Should-respond decision
# =============================================================================


class ResponseDecision(str, Enum):
    """Outcome of the model's should-respond answer."""

    RESPOND = "RESPOND"
    IGNORE = "IGNORE"
    STOP = "STOP"
    UNKNOWN = "UNKNOWN"

    @property
    def should_respond(self) -> bool:
        return self is ResponseDecision.RESPOND


def decide_response(text: str) -> ResponseDecision:
    """Map raw model output to a decision.

    Substring checks in fixed precedence: RESPOND, then IGNORE, then STOP.
    Anything else is UNKNOWN, which callers treat as not responding.
    """
    for decision in (ResponseDecision.RESPOND, ResponseDecision.IGNORE, ResponseDecision.STOP):
        if decision.value in text:
            return decision
    return ResponseDecision.UNKNOWN


def mentions_name(text: str, name: str) -> bool:
    """Case-insensitive substring mention check."""
    return bool(name) and name.lower() in text.lower()


# =============================================================================
# Generation tokens
# =============================================================================


class GenerationTokens:
    """Live generation token per (agent, room).

    ``mint`` is an exchange: it installs a fresh token and returns the one it
    replaced. ``clear_if_current`` is a compare-and-clear. Both run under one
    lock, so they are linearizable against concurrent mints for the same key.
    """

    def __init__(self) -> None:
        self._tokens: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def mint(self, agent_id: str, room_id: str) -> tuple[str, str | None]:
        """Install a new token; return ``(new_token, previous_token)``."""
        token = generate_uuid()
        with self._lock:
            previous = self._tokens.get((agent_id, room_id))
            self._tokens[(agent_id, room_id)] = token
        return token, previous

    def current(self, agent_id: str, room_id: str) -> str | None:
        with self._lock:
            return self._tokens.get((agent_id, room_id))

    def is_current(self, agent_id: str, room_id: str, token: str) -> bool:
        return self.current(agent_id, room_id) == token

    def clear_if_current(self, agent_id: str, room_id: str, token: str) -> bool:
        """Remove the live token only if it is still ``token``."""
        with self._lock:
            if self._tokens.get((agent_id, room_id)) != token:
                return False
            del self._tokens[(agent_id, room_id)]
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


# =============================================================================
# Collaborators
# =============================================================================


class ResponseContent(BaseModel):
    """What the model produces for a reply."""

    model_config = ConfigDict(extra="allow")

    thought: str | None = None
    text: str = ""
    actions: list[str] = Field(default_factory=list)

    @field_validator("actions", mode="before")
    @classmethod
    def split_actions(cls, v: Any) -> Any:
        """Accept ``"REPLY, FOLLOW_ROOM"`` as well as a list."""
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        return v

    @field_validator("text", mode="before")
    @classmethod
    def none_text(cls, v: Any) -> Any:
        return "" if v is None else v


class ActionExecutor(Protocol):
    """Executes the actions named by response messages."""

    action_names: list[str]

    async def process_actions(
        self,
        message: Memory,
        responses: list[Memory],
        state: dict[str, Any],
        callback: DeliveryCallback | None,
    ) -> None: ...


class PostEvaluator(Protocol):
    """Runs after every handled message."""

    async def evaluate(
        self, message: Memory, state: dict[str, Any] | None, did_respond: bool
    ) -> Any: ...


@dataclass
class MessageOutcome:
    """What happened to one inbound message.

    Attributes:
        token: Generation token minted for this message.
        should_respond: Result of the should-respond gate.
        responded: A response was dispatched.
        discarded: A response was generated but superseded by a newer token.
        responses: Response messages that were dispatched.
        errors: Non-fatal failures along the way.
    """

    token: str
    should_respond: bool = False
    responded: bool = False
    discarded: bool = False
    responses: list[Memory] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


# =============================================================================
# Orchestrator
# =============================================================================


class ResponseOrchestrator:
    """Gates, generates and dispatches responses for one agent."""

    def __init__(
        self,
        config: Config,
        db: DatabaseAdapter,
        messages: MemoryManager,
        model: TextModel,
        extractor: StructuredExtractor,
        templates: TemplateEngine,
        context: ContextBuilder,
        actions: ActionExecutor,
        evaluators: Sequence[PostEvaluator] = (),
        tokens: GenerationTokens | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.messages = messages
        self.model = model
        self.extractor = extractor
        self.templates = templates
        self.context = context
        self.actions = actions
        self.evaluators = list(evaluators)
        self.tokens = tokens or GenerationTokens()

    @property
    def agent_id(self) -> str:
        return self.config.agent_id

    async def handle_message(
        self, message: Memory, callback: DeliveryCallback | None = None
    ) -> MessageOutcome:
        """Handle one inbound message end to end.

        Args:
            message: The inbound message.
            callback: Delivery callback handed to the action executor.

        Returns:
            MessageOutcome describing what happened.
        """
        token, previous = self.tokens.mint(self.agent_id, message.room_id)
        outcome = MessageOutcome(token=token)
        if previous is not None:
            log.debug("generation_superseded", room_id=message.room_id, previous=previous)

        state: dict[str, Any] | None = None
        try:
            await self._persist_inbound(message, outcome)

            outcome.should_respond = await self.should_respond(message)
            state = await self._compose_state(message, outcome)

            if outcome.should_respond and state is not None:
                await self._respond(message, state, token, outcome, callback)
        finally:
            self.tokens.clear_if_current(self.agent_id, message.room_id, token)

        await self._run_evaluators(message, state, outcome)
        return outcome

    async def should_respond(self, message: Memory) -> bool:
        """Decide whether the agent replies to a message.

        Early-outs, in order: own message, muted without mention, followed
        room, name mention. Otherwise the small model decides.
        """
        if message.entity_id == self.agent_id:
            return False

        name = self.config.agent.name
        text = message.content.text
        mentioned = mentions_name(text, name)

        try:
            state = await self.db.get_participant_state(message.room_id, self.agent_id)
        except Exception as e:
            log.warning("participant_state_failed", room_id=message.room_id, error=str(e))
            state = ParticipantState.NONE

        if state == ParticipantState.MUTED and not mentioned:
            log.debug("ignoring_muted_room", room_id=message.room_id)
            return False

        if state == ParticipantState.FOLLOWED:
            return True

        if mentioned:
            return True

        try:
            recent = await self.context.recent_messages(message)
            entities = await self.db.get_entities_for_room(message.room_id)
            prompt = self.templates.render(
                SHOULD_RESPOND_TEMPLATE,
                {
                    "agent_name": name,
                    "bio": self.config.agent.bio,
                    "system": self.config.agent.system,
                    "entities": format_entities(entities),
                    "recent_messages": format_messages(recent, entities),
                },
            )
            response = await self.model.invoke(ModelTier.SMALL, prompt)
        except Exception as e:
            log.warning("should_respond_failed", room_id=message.room_id, error=str(e))
            return False

        decision = decide_response(response)
        if decision is ResponseDecision.UNKNOWN:
            log.error("should_respond_invalid", room_id=message.room_id, response=response)
        else:
            log.debug("should_respond_decided", room_id=message.room_id, decision=decision.value)
        return decision.should_respond

    async def _persist_inbound(self, message: Memory, outcome: MessageOutcome) -> None:
        try:
            embedded = await self.messages.add_embedding(message)
            await self.messages.create_memory(embedded)
        except Exception as e:
            log.error("inbound_persist_failed", message_id=message.id, error=str(e))
            outcome.errors.append({"step": "persist_inbound", "error": str(e)})

    async def _compose_state(
        self, message: Memory, outcome: MessageOutcome
    ) -> dict[str, Any] | None:
        try:
            return await self.context.build(message)
        except Exception as e:
            log.error("compose_state_failed", message_id=message.id, error=str(e))
            outcome.errors.append({"step": "compose_state", "error": str(e)})
            return None

    async def _respond(
        self,
        message: Memory,
        state: dict[str, Any],
        token: str,
        outcome: MessageOutcome,
        callback: DeliveryCallback | None,
    ) -> None:
        try:
            prompt = self.templates.render(MESSAGE_HANDLER_TEMPLATE, state)
        except Exception as e:
            log.error("response_prompt_failed", message_id=message.id, error=str(e))
            outcome.errors.append({"step": "render_prompt", "error": str(e)})
            return

        result = await self.extractor.extract_result(
            prompt,
            output=OutputMode.OBJECT,
            schema=ResponseContent,
            tier=ModelTier.LARGE,
        )
        if not isinstance(result, Parsed):
            log.info("no_response_generated", room_id=message.room_id, reason=result.reason)
            return

        content: ResponseContent = result.value
        response = Memory(
            entity_id=self.agent_id,
            agent_id=self.agent_id,
            room_id=message.room_id,
            content=Content(
                text=content.text.strip(),
                thought=content.thought,
                actions=content.actions,
                in_reply_to=message.id,
                channel_type=message.content.channel_type,
                source=message.content.source,
            ),
        )

        try:
            response = await self.messages.add_embedding(response)
        except Exception as e:
            log.error("response_embedding_failed", message_id=response.id, error=str(e))
            outcome.errors.append({"step": "persist_response", "error": str(e)})

        # No await between this check and dispatch
        if not self.tokens.is_current(self.agent_id, message.room_id, token):
            log.info(
                "response_discarded",
                agent_id=self.agent_id,
                room_id=message.room_id,
                message_id=message.id,
            )
            outcome.discarded = True
            return

        outcome.responded = True
        outcome.responses.append(response)

        try:
            await self.actions.process_actions(message, [response], state, callback)
        except Exception as e:
            log.error("process_actions_failed", message_id=message.id, error=str(e))
            outcome.errors.append({"step": "process_actions", "error": str(e)})

        self.tokens.clear_if_current(self.agent_id, message.room_id, token)

        try:
            await self.messages.create_memory(response)
        except Exception as e:
            log.error("response_persist_failed", message_id=response.id, error=str(e))
            outcome.errors.append({"step": "persist_response", "error": str(e)})

    async def _run_evaluators(
        self, message: Memory, state: dict[str, Any] | None, outcome: MessageOutcome
    ) -> None:
        for evaluator in self.evaluators:
            try:
                await evaluator.evaluate(message, state, outcome.responded)
            except Exception as e:
                log.error(
                    "evaluator_failed",
                    evaluator=type(evaluator).__name__,
                    message_id=message.id,
                    error=str(e),
                    exc_info=True,
                )
                outcome.errors.append({"step": "evaluate", "error": str(e)})
