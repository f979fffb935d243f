"""Structured extraction from model output.

Sends a prompt to the model, slices a JSON payload out of the surrounding
prose, and validates it against a pydantic schema. Enum outputs are matched
exactly first, then by a single case-insensitive containment.

Results are tagged:
- Parsed: a usable (validated) value
- Invalid: the model answered, but the answer could not be used
- Empty: no usable output at all (model failure, nothing to parse)

Only an empty prompt raises; every model or parse failure becomes a result.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from murmur.llm import ModelTier
from murmur.logging import get_logger

if TYPE_CHECKING:
    from murmur.llm import TextModel

log = get_logger("extraction")

# Output budget for enum answers
ENUM_MAX_TOKENS = 8


class OutputMode(str, Enum):
    """Shape of the expected model output."""

    OBJECT = "object"
    ARRAY = "array"
    ENUM = "enum"


@dataclass(frozen=True)
class Parsed:
    """A usable extraction result."""

    value: Any


@dataclass(frozen=True)
class Invalid:
    """The model answered with something unusable."""

    reason: str


@dataclass(frozen=True)
class Empty:
    """There was no usable model output."""

    reason: str


ExtractionResult = Parsed | Invalid | Empty


def match_enum(response: str, enum_values: list[str]) -> str | None:
    """Resolve a model answer to one of the allowed enum values.

    An exact (trimmed) match wins. Otherwise the answer must contain exactly
    one of the values, compared case-insensitively.
    """
    cleaned = response.strip()
    if cleaned in enum_values:
        return cleaned

    lowered = cleaned.lower()
    matches = [value for value in enum_values if value.lower() in lowered]
    if len(matches) == 1:
        return matches[0]
    return None


def slice_json(response: str, output: OutputMode) -> str | None:
    """Cut the outermost bracket pair for the requested shape out of text.

    Returns None when there is no opening bracket before a closing one.
    """
    first_char, last_char = ("[", "]") if output == OutputMode.ARRAY else ("{", "}")
    first = response.find(first_char)
    last = response.rfind(last_char)
    if first == -1 or last == -1 or first >= last:
        return None
    return response[first : last + 1]


class StructuredExtractor:
    """Model invocation plus JSON/enum extraction."""

    def __init__(self, model: TextModel) -> None:
        self.model = model

    async def extract(
        self,
        prompt: str,
        *,
        output: OutputMode = OutputMode.OBJECT,
        schema: type[BaseModel] | None = None,
        tier: ModelTier = ModelTier.SMALL,
        enum_values: list[str] | None = None,
    ) -> Any | None:
        """Like ``extract_result`` but returns the value, or None on failure."""
        result = await self.extract_result(
            prompt,
            output=output,
            schema=schema,
            tier=tier,
            enum_values=enum_values,
        )
        if isinstance(result, Parsed):
            return result.value
        return None

    async def extract_result(
        self,
        prompt: str,
        *,
        output: OutputMode = OutputMode.OBJECT,
        schema: type[BaseModel] | None = None,
        tier: ModelTier = ModelTier.SMALL,
        enum_values: list[str] | None = None,
    ) -> ExtractionResult:
        """Invoke the model and extract a structured value.

        Args:
            prompt: Prompt text. Must not be empty.
            output: Expected output shape.
            schema: Optional pydantic model the parsed JSON must satisfy.
            tier: Model tier to invoke.
            enum_values: Allowed answers in enum mode.

        Returns:
            Parsed, Invalid or Empty.

        Raises:
            ValueError: If the prompt is empty.
        """
        if not prompt:
            raise ValueError("extraction prompt is empty")

        if output == OutputMode.ENUM:
            return await self._extract_enum(prompt, tier, enum_values or [])

        try:
            response = await self.model.invoke(tier, prompt)
        except Exception as e:
            log.warning("extraction_model_failed", tier=tier.value, error=str(e))
            return Empty(f"model call failed: {e}")

        json_string = slice_json(response, output)
        if not json_string:
            log.warning("extraction_no_json", output=output.value, response_length=len(response))
            return Empty(f"no JSON {output.value} in model response")

        try:
            data = json.loads(json_string)
        except json.JSONDecodeError as e:
            log.warning("extraction_parse_failed", output=output.value, error=str(e))
            return Invalid(f"unparsable JSON {output.value}: {e}")

        if schema is None:
            return Parsed(data)

        try:
            return Parsed(schema.model_validate(data))
        except ValidationError as e:
            log.warning(
                "extraction_schema_invalid",
                schema=schema.__name__,
                errors=e.error_count(),
            )
            return Invalid(f"schema validation failed: {e.error_count()} errors")

    async def _extract_enum(
        self, prompt: str, tier: ModelTier, enum_values: list[str]
    ) -> ExtractionResult:
        try:
            response = await self.model.invoke(tier, prompt, max_tokens=ENUM_MAX_TOKENS)
        except Exception as e:
            log.warning("extraction_model_failed", tier=tier.value, error=str(e))
            return Empty(f"model call failed: {e}")

        value = match_enum(response, enum_values)
        if value is None:
            log.error(
                "extraction_invalid_enum",
                response=response.strip(),
                expected=enum_values,
            )
            return Invalid(f"not one of {enum_values}: {response.strip()!r}")
        return Parsed(value)
