"""Prompt templates for Murmur.

Prompts are Jinja2 files. Murmur ships defaults in ``murmur/prompts``, and an
agent's ``templates_dir`` can shadow any of them with a file of the same name.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    TemplateNotFound,
)

from murmur.logging import get_logger

if TYPE_CHECKING:
    from murmur.models import Entity, Memory, Relationship

log = get_logger("templates")

SHOULD_RESPOND_TEMPLATE = "should_respond.jinja2"
MESSAGE_HANDLER_TEMPLATE = "message_handler.jinja2"
REFLECTION_TEMPLATE = "reflection.jinja2"

# (unit seconds, unit name), largest first
TIME_UNITS = (
    (86400, "day"),
    (3600, "hour"),
    (60, "minute"),
)


class TemplateNotFoundError(Exception):
    """No override or packaged template has the requested name."""


class TemplateEngine:
    """Jinja2 environment for prompt templates.

    Attributes:
        templates_dir: Override directory searched before the packaged prompts.
    """

    def __init__(self, templates_dir: Path | None = None) -> None:
        self.templates_dir = templates_dir

        loaders: list[BaseLoader] = []
        if templates_dir is not None:
            loaders.append(FileSystemLoader(templates_dir))
        loaders.append(PackageLoader("murmur", "prompts"))

        self.env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["relative_time"] = self.relative_time

        log.debug("templates_ready", override_dir=str(templates_dir) if templates_dir else None)

    def load_template(self, name: str) -> Any:
        """Look up a template, overrides first.

        Raises:
            TemplateNotFoundError: If neither loader has ``name``.
        """
        try:
            return self.env.get_template(name)
        except TemplateNotFound as e:
            log.error("template_missing", name=name)
            raise TemplateNotFoundError(f"Template not found: {name}") from e

    def render(self, name: str, context: dict[str, Any] | None = None) -> str:
        """Render ``name`` with ``context``; ``now`` is always available."""
        variables: dict[str, Any] = {"now": datetime.now(timezone.utc), **(context or {})}
        text = self.load_template(name).render(**variables)
        log.debug("template_rendered", name=name, length=len(text))
        return text

    @staticmethod
    def relative_time(dt: datetime | None) -> str:
        """Describe how long ago ``dt`` was, e.g. ``"3 hours ago"``.

        Naive datetimes are taken as UTC.
        """
        if dt is None:
            return "unknown time"
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)

        seconds = (datetime.now(timezone.utc) - dt).total_seconds()
        if seconds < 0:
            return "in the future"

        for unit_seconds, unit in TIME_UNITS:
            count = int(seconds // unit_seconds)
            if count >= 1:
                return f"{count} {unit}{'' if count == 1 else 's'} ago"
        return "just now"


# =============================================================================
# Formatting helpers
# =============================================================================


def format_messages(messages: list[Memory], entities: list[Entity]) -> str:
    """Render messages oldest first as ``Name: text`` lines.

    Args:
        messages: Messages in any order; they are sorted by creation time.
        entities: Known entities used to name authors.
    """
    names = {entity.id: entity.display_name for entity in entities}
    lines = []
    for message in sorted(messages, key=lambda m: m.created_at):
        author = names.get(message.entity_id, "Unknown User")
        text = message.content.text
        if message.content.actions:
            text += f" ({', '.join(message.content.actions)})"
        lines.append(f"{author}: {text}")
    return "\n".join(lines)


def format_facts(facts: list[Memory]) -> str:
    """Facts arrive newest first; list them oldest first, one per line."""
    return "\n".join(fact.content.text for fact in reversed(facts))


def format_relationships(relationships: list[Relationship], entities: list[Entity]) -> str:
    """One line per edge: ``Source -> Target [tags] (n interactions)``."""
    names = {entity.id: entity.display_name for entity in entities}
    lines = []
    for rel in relationships:
        source = names.get(rel.source_entity_id, rel.source_entity_id)
        target = names.get(rel.target_entity_id, rel.target_entity_id)
        tags = ", ".join(rel.tags)
        lines.append(f"{source} -> {target} [{tags}] ({rel.interactions} interactions)")
    return "\n".join(lines)
