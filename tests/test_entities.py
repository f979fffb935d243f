"""Tests for entity resolution."""

import pytest

from murmur.entities import EntityResolutionError, format_entities, resolve_entity
from murmur.models import Entity

ALICE = Entity(id="user-alice-42", names=["Alice", "alice_w"])
BOB = Entity(id="user-bob-77", names=["Bob"])
ROSTER = [ALICE, BOB]


class TestResolveEntity:
    """Tests for the first-match-wins resolution rules."""

    def test_uuid_accepted_without_lookup(self) -> None:
        unknown = "0f8fad5b-d9cb-469f-a165-70867728950e"
        assert resolve_entity(unknown, ROSTER) == unknown

    def test_uuid_is_case_insensitive(self) -> None:
        upper = "0F8FAD5B-D9CB-469F-A165-70867728950E"
        assert resolve_entity(upper, []) == upper

    def test_exact_id(self) -> None:
        assert resolve_entity("user-bob-77", ROSTER) == BOB.id

    def test_id_fragment(self) -> None:
        assert resolve_entity("alice-42", ROSTER) == ALICE.id

    def test_name_case_insensitive(self) -> None:
        assert resolve_entity("BOB", ROSTER) == BOB.id

    def test_alias_name(self) -> None:
        assert resolve_entity("alice_w", ROSTER) == ALICE.id

    def test_exact_id_beats_fragment(self) -> None:
        short = Entity(id="user-1", names=["Short"])
        longer = Entity(id="user-10", names=["Longer"])
        assert resolve_entity("user-1", [longer, short]) == "user-1"

    def test_unresolvable_raises(self) -> None:
        with pytest.raises(EntityResolutionError) as exc_info:
            resolve_entity("Zed", ROSTER)
        assert exc_info.value.identifier == "Zed"

    def test_empty_reference_does_not_match(self) -> None:
        with pytest.raises(EntityResolutionError):
            resolve_entity("", ROSTER)


class TestFormatEntities:
    """Tests for roster formatting."""

    def test_names_aliases_and_ids(self) -> None:
        text = format_entities(ROSTER)
        assert text.splitlines() == [
            "Alice (aka: alice_w) [ID: user-alice-42]",
            "Bob [ID: user-bob-77]",
        ]

    def test_unnamed_entity_uses_id(self) -> None:
        assert format_entities([Entity(id="anon")]) == "anon [ID: anon]"
