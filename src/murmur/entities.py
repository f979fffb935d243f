"""Entity resolution and formatting.

Models refer to entities loosely: a full UUID, a fragment of one, or a
display name. ``resolve_entity`` maps such a reference onto an entity of the
room roster.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from murmur.models import Entity

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class EntityResolutionError(LookupError):
    """Raised when a reference matches no entity."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Could not resolve entity id {identifier!r}")
        self.identifier = identifier


def resolve_entity(identifier: str, entities: list[Entity]) -> str:
    """Resolve a loose entity reference to an entity id.

    Rules, first match wins:
    1. A syntactically valid UUID is accepted as-is, without roster lookup.
    2. Exact id match.
    3. The reference is a substring of an id.
    4. The reference is a case-insensitive substring of one of the names.

    Raises:
        EntityResolutionError: If no rule matches.
    """
    if UUID_PATTERN.match(identifier):
        return identifier

    for entity in entities:
        if entity.id == identifier:
            return entity.id

    # Empty references would match every id and name below
    if identifier:
        for entity in entities:
            if identifier in entity.id:
                return entity.id

        needle = identifier.lower()
        for entity in entities:
            if any(needle in name.lower() for name in entity.names):
                return entity.id

    raise EntityResolutionError(identifier)


def format_entities(entities: list[Entity]) -> str:
    """One line per entity: ``Name (aka: other) [ID: id]``."""
    lines = []
    for entity in entities:
        line = entity.display_name
        aliases = entity.names[1:]
        if aliases:
            line += f" (aka: {', '.join(aliases)})"
        lines.append(f"{line} [ID: {entity.id}]")
    return "\n".join(lines)
