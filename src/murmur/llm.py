"""Model access for Murmur.

The core only ever calls ``invoke(tier, prompt) -> text`` (the ``TextModel``
protocol). ``ModelClient`` is the Anthropic-backed implementation:

- tiers map to configured model profiles (``small``, ``large`` or aliases)
- each provider gets its own sliding-window rate limiter
- failures are logged and raised, never retried here
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from murmur.logging import get_logger

if TYPE_CHECKING:
    from anthropic import AsyncAnthropic

    from murmur.config import Config

log = get_logger("llm")

# Seconds covered by the rate limit window
RATE_WINDOW = 60.0


class ModelTier(str, Enum):
    """Model size/quality tier."""

    SMALL = "small"
    LARGE = "large"


class TextModel(Protocol):
    """Opaque prompt-to-text model invocation."""

    async def invoke(self, tier: ModelTier, prompt: str, *, max_tokens: int = 1024) -> str: ...


@dataclass
class Usage:
    """Tokens consumed by one call."""

    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CompletionResult:
    """Text of a completion plus what produced it."""

    text: str
    usage: Usage
    model: str
    provider: str


class RateLimiter:
    """Sliding-window limiter: at most ``calls_per_minute`` starts per window.

    Call start times are kept on the monotonic clock; ``acquire`` sleeps until
    the oldest call leaves the window when the window is full.
    """

    def __init__(self, calls_per_minute: int = 50) -> None:
        self.calls_per_minute = calls_per_minute
        self.calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _expire(self, now: float) -> None:
        while self.calls and now - self.calls[0] >= RATE_WINDOW:
            self.calls.popleft()

    async def acquire(self) -> None:
        """Block until another call may start, then record it."""
        async with self._lock:
            now = time.monotonic()
            self._expire(now)

            if len(self.calls) >= self.calls_per_minute:
                delay = RATE_WINDOW - (now - self.calls[0])
                log.debug("rate_limited", delay_seconds=round(delay, 2), in_window=len(self.calls))
                await asyncio.sleep(delay)
                now = time.monotonic()
                self._expire(now)

            self.calls.append(now)


class ModelClient:
    """Tiered model client over the Anthropic messages API.

    The SDK client is built on first use, so configuring Murmur without an
    API key only fails once a model is actually called.
    """

    def __init__(self, config: Config, calls_per_minute: int = 50) -> None:
        """Set up the client.

        Args:
            config: Configuration holding model profiles and providers.
            calls_per_minute: Rate limit applied to each provider.
        """
        self.config = config
        self.calls_per_minute = calls_per_minute
        self._anthropic: AsyncAnthropic | None = None
        self._rate_limiters: dict[str, RateLimiter] = {}

    def _get_anthropic(self) -> AsyncAnthropic:
        """Return the SDK client, creating it on first use.

        Raises:
            ValueError: If no API key is configured.
        """
        if self._anthropic is None:
            from anthropic import AsyncAnthropic

            api_key = self.config.models.get_api_key("anthropic")
            if not api_key:
                raise ValueError("Anthropic API key not found; set ANTHROPIC_API_KEY")
            self._anthropic = AsyncAnthropic(api_key=api_key)
        return self._anthropic

    def _get_rate_limiter(self, provider: str) -> RateLimiter:
        limiter = self._rate_limiters.get(provider)
        if limiter is None:
            limiter = RateLimiter(calls_per_minute=self.calls_per_minute)
            self._rate_limiters[provider] = limiter
        return limiter

    async def invoke(self, tier: ModelTier, prompt: str, *, max_tokens: int = 1024) -> str:
        """Complete a prompt at the given tier and return only the text."""
        result = await self.complete(prompt, model_profile=tier.value, max_tokens=max_tokens)
        return result.text

    async def complete(
        self,
        prompt: str,
        model_profile: str = ModelTier.SMALL.value,
        max_tokens: int = 1024,
        temperature: float = 0.7,
    ) -> CompletionResult:
        """Run one completion through the profile's provider.

        Args:
            prompt: User prompt.
            model_profile: Profile or tier name, aliases allowed.
            max_tokens: Output token budget.
            temperature: Sampling temperature.

        Returns:
            CompletionResult for the call.

        Raises:
            KeyError: If the model profile is unknown.
            ValueError: If the provider is unsupported.
        """
        profile = self.config.models.resolve_profile(model_profile)
        if profile.provider != "anthropic":
            raise ValueError(f"Unsupported provider: {profile.provider}")

        await self._get_rate_limiter(profile.provider).acquire()

        started = time.monotonic()
        result = await self._anthropic_complete(prompt, profile.model, max_tokens, temperature)

        log.debug(
            "model_call_complete",
            provider=profile.provider,
            model=profile.model,
            profile=model_profile,
            tokens_in=result.usage.input_tokens,
            tokens_out=result.usage.output_tokens,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    async def _anthropic_complete(
        self,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        import anthropic

        client = self._get_anthropic()
        log.debug("model_call_start", model=model, prompt_length=len(prompt))

        try:
            response = await client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            log.error("model_call_failed", provider="anthropic", model=model, error=str(e))
            raise

        return CompletionResult(
            text=response.content[0].text,
            usage=Usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            model=model,
            provider="anthropic",
        )

    async def close(self) -> None:
        """Close the SDK client if one was created."""
        if self._anthropic is not None:
            await self._anthropic.close()
            self._anthropic = None
