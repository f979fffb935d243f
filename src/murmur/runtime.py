"""Agent runtime: one agent's collaborators wired together."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from murmur.actions import DefaultActionExecutor
from murmur.context import ContextBuilder
from murmur.database import create_tables, get_engine
from murmur.events import EventDispatchTable, EventType, StoreWorldSync, build_event_table
from murmur.extraction import StructuredExtractor
from murmur.llm import ModelClient
from murmur.logging import get_logger
from murmur.models import MemoryTable
from murmur.orchestrator import GenerationTokens, ResponseOrchestrator
from murmur.reflection import ReflectionConsolidator
from murmur.store import DatabaseAdapter, MemoryManager
from murmur.templates import TemplateEngine

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

    from murmur.config import Config
    from murmur.events import WorldSyncAdapter
    from murmur.llm import TextModel
    from murmur.store import Embedder

log = get_logger("runtime")


class AgentRuntime:
    """Holds the store, model, pipeline and event table of one agent.

    Use ``AgentRuntime.create`` rather than the constructor.
    """

    def __init__(
        self,
        config: Config,
        engine: Engine,
        db: DatabaseAdapter,
        messages: MemoryManager,
        facts: MemoryManager,
        reactions: MemoryManager,
        model: TextModel,
        orchestrator: ResponseOrchestrator,
        reflection: ReflectionConsolidator | None,
        world_sync: WorldSyncAdapter,
    ) -> None:
        self.config = config
        self.engine = engine
        self.db = db
        self.messages = messages
        self.facts = facts
        self.reactions = reactions
        self.model = model
        self.orchestrator = orchestrator
        self.reflection = reflection
        self.world_sync = world_sync
        self.events: EventDispatchTable = build_event_table(self)

    @classmethod
    def create(
        cls,
        config: Config,
        *,
        model: TextModel | None = None,
        embedder: Embedder | None = None,
        engine: Engine | None = None,
        world_sync: WorldSyncAdapter | None = None,
    ) -> AgentRuntime:
        """Build a runtime from configuration.

        Args:
            config: Application configuration.
            model: Text model; defaults to the Anthropic-backed ModelClient.
            embedder: Optional embedding hook for stored memories.
            engine: Existing engine; defaults to the configured SQLite file.
            world_sync: Platform sync; defaults to StoreWorldSync.
        """
        if engine is None:
            engine = get_engine(config)
        create_tables(engine)

        agent_id = config.agent_id
        db = DatabaseAdapter(engine, agent_id)
        messages = MemoryManager(engine, MemoryTable.MESSAGES, embedder)
        facts = MemoryManager(engine, MemoryTable.FACTS, embedder)
        reactions = MemoryManager(engine, MemoryTable.REACTIONS, embedder)

        if model is None:
            model = ModelClient(config)
        extractor = StructuredExtractor(model)
        templates = TemplateEngine(config.agent.templates_dir)
        actions = DefaultActionExecutor(db, agent_id)
        context = ContextBuilder(config, db, messages, facts, action_names=actions.action_names)

        reflection = None
        if config.reflection.enabled:
            reflection = ReflectionConsolidator(
                config, db, messages, facts, extractor, templates, context
            )

        orchestrator = ResponseOrchestrator(
            config,
            db,
            messages,
            model,
            extractor,
            templates,
            context,
            actions,
            evaluators=[reflection] if reflection else [],
            tokens=GenerationTokens(),
        )

        if world_sync is None:
            world_sync = StoreWorldSync(
                db,
                agent_id,
                batch_size=config.sync.batch_size,
                batch_delay=config.sync.batch_delay_seconds,
            )

        log.info(
            "runtime_created",
            agent_id=agent_id,
            agent_name=config.agent.name,
            reflection=config.reflection.enabled,
        )
        return cls(
            config=config,
            engine=engine,
            db=db,
            messages=messages,
            facts=facts,
            reactions=reactions,
            model=model,
            orchestrator=orchestrator,
            reflection=reflection,
            world_sync=world_sync,
        )

    @property
    def agent_id(self) -> str:
        return self.config.agent_id

    async def emit(self, event: EventType, **payload: Any) -> list[BaseException]:
        """Dispatch an event to the registered handlers."""
        return await self.events.emit(event, **payload)

    async def close(self) -> None:
        close = getattr(self.model, "close", None)
        if close is not None:
            await close()
        self.engine.dispose()
