"""Tests for structured extraction from model output."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel

from murmur.extraction import (
    ENUM_MAX_TOKENS,
    Empty,
    Invalid,
    OutputMode,
    Parsed,
    StructuredExtractor,
    match_enum,
    slice_json,
)
from murmur.llm import ModelTier


class Answer(BaseModel):
    text: str
    score: int = 0


def extractor_returning(response: str | Exception) -> tuple[StructuredExtractor, MagicMock]:
    model = MagicMock()
    if isinstance(response, Exception):
        model.invoke = AsyncMock(side_effect=response)
    else:
        model.invoke = AsyncMock(return_value=response)
    return StructuredExtractor(model), model


class TestSliceJson:
    """Tests for cutting JSON out of surrounding prose."""

    def test_object_in_prose(self) -> None:
        response = 'Sure! Here you go:\n```json\n{"text": "hi"}\n```\nAnything else?'
        assert slice_json(response, OutputMode.OBJECT) == '{"text": "hi"}'

    def test_outermost_pair(self) -> None:
        response = 'x {"a": {"b": 1}} y'
        assert slice_json(response, OutputMode.OBJECT) == '{"a": {"b": 1}}'

    def test_array(self) -> None:
        assert slice_json("list: [1, 2, 3].", OutputMode.ARRAY) == "[1, 2, 3]"

    def test_no_brackets(self) -> None:
        assert slice_json("I have nothing to say", OutputMode.OBJECT) is None

    def test_closing_before_opening(self) -> None:
        assert slice_json("} backwards {", OutputMode.OBJECT) is None


class TestMatchEnum:
    """Tests for enum answer matching."""

    def test_exact_match_after_trim(self) -> None:
        assert match_enum("  RESPOND\n", ["RESPOND", "IGNORE"]) == "RESPOND"

    def test_single_containment_case_insensitive(self) -> None:
        assert match_enum("I would ignore this one.", ["RESPOND", "IGNORE"]) == "IGNORE"

    def test_ambiguous_containment(self) -> None:
        assert match_enum("respond or ignore?", ["RESPOND", "IGNORE"]) is None

    def test_no_match(self) -> None:
        assert match_enum("maybe", ["RESPOND", "IGNORE"]) is None


class TestStructuredExtractor:
    """Tests for the tagged extraction results."""

    @pytest.mark.asyncio
    async def test_parsed_with_schema(self) -> None:
        extractor, model = extractor_returning('Here: {"text": "hello", "score": 3}')

        result = await extractor.extract_result(
            "prompt", schema=Answer, tier=ModelTier.LARGE
        )

        assert isinstance(result, Parsed)
        assert result.value == Answer(text="hello", score=3)
        model.invoke.assert_awaited_once_with(ModelTier.LARGE, "prompt")

    @pytest.mark.asyncio
    async def test_parsed_without_schema(self) -> None:
        extractor, _ = extractor_returning('[{"a": 1}]')

        result = await extractor.extract_result("prompt", output=OutputMode.ARRAY)

        assert result == Parsed([{"a": 1}])

    @pytest.mark.asyncio
    async def test_bracketless_output_is_empty(self) -> None:
        extractor, _ = extractor_returning("No JSON here at all")

        result = await extractor.extract_result("prompt", schema=Answer)

        assert isinstance(result, Empty)
        assert await extractor.extract("prompt", schema=Answer) is None

    @pytest.mark.asyncio
    async def test_unparsable_json_is_invalid(self) -> None:
        extractor, _ = extractor_returning('{"text": "unterminated}')

        result = await extractor.extract_result("prompt")

        assert isinstance(result, Invalid)

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_invalid(self) -> None:
        extractor, _ = extractor_returning('{"score": "lots"}')

        result = await extractor.extract_result("prompt", schema=Answer)

        assert isinstance(result, Invalid)
        assert "schema" in result.reason

    @pytest.mark.asyncio
    async def test_model_failure_is_empty(self) -> None:
        extractor, _ = extractor_returning(RuntimeError("overloaded"))

        result = await extractor.extract_result("prompt")

        assert isinstance(result, Empty)
        assert "overloaded" in result.reason

    @pytest.mark.asyncio
    async def test_empty_prompt_raises(self) -> None:
        extractor, model = extractor_returning("{}")

        with pytest.raises(ValueError):
            await extractor.extract_result("")
        model.invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enum_mode(self) -> None:
        extractor, model = extractor_returning(" ignore ")

        result = await extractor.extract_result(
            "prompt", output=OutputMode.ENUM, enum_values=["RESPOND", "IGNORE", "STOP"]
        )

        assert result == Parsed("IGNORE")
        model.invoke.assert_awaited_once_with(
            ModelTier.SMALL, "prompt", max_tokens=ENUM_MAX_TOKENS
        )

    @pytest.mark.asyncio
    async def test_enum_mode_unmatched_is_invalid(self) -> None:
        extractor, _ = extractor_returning("perhaps")

        result = await extractor.extract_result(
            "prompt", output=OutputMode.ENUM, enum_values=["RESPOND", "IGNORE"]
        )

        assert isinstance(result, Invalid)
