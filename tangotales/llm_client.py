"""Gemini multi-turn chat sessions with Google Search grounding."""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from loguru import logger

from tangotales.config import settings
from tangotales.errors import DialogueError
from tangotales.services.logger import log_llm_call

_TRANSIENT_CODES = {408, 429, 500, 502, 503, 504}
_TRANSIENT_MARKERS = ("unavailable", "overloaded", "too many", "timeout", "temporarily", "resource_exhausted")


@dataclass(slots=True)
class SessionConfig:
    model: str
    temperature: float = 0.3
    max_output_tokens: int = 2048
    search_grounding: bool = True


@dataclass(slots=True)
class DialogueTurn:
    text: str
    raw: Any
    duration_ms: int = 0


class DialogueSession(Protocol):
    async def send(self, prompt: str) -> DialogueTurn: ...


class DialogueProvider(Protocol):
    def create_session(self, config: SessionConfig) -> DialogueSession: ...


def default_session_config() -> SessionConfig:
    return SessionConfig(
        model=settings.gemini_model,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
        search_grounding=settings.search_grounding_enabled,
    )


def _is_transient(err: Exception) -> bool:
    if isinstance(err, httpx.TransportError):
        return True
    code = getattr(err, "code", None)
    if isinstance(code, int) and code in _TRANSIENT_CODES:
        return True
    msg = str(err).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


def _usage(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return 0, 0
    return (
        getattr(usage, "prompt_token_count", 0) or 0,
        getattr(usage, "candidates_token_count", 0) or 0,
    )


class GeminiChatSession:
    """One chat; history accumulates across ``send`` calls."""

    def __init__(
        self,
        chat: Any,
        *,
        model: str,
        max_attempts: int | None = None,
        base_delay_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._chat = chat
        self.model = model
        self.max_attempts = max(1, max_attempts or settings.gemini_max_attempts)
        self.base_delay_seconds = (
            settings.gemini_base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        )
        self._sleep = sleep

    async def send(self, prompt: str) -> DialogueTurn:
        last_err: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            started = time.perf_counter()
            try:
                response = await self._chat.send_message(prompt)
            except (genai_errors.APIError, httpx.HTTPError) as exc:
                duration_ms = int((time.perf_counter() - started) * 1000)
                log_llm_call(self.model, "enrichment", duration_ms=duration_ms, status="error", error=str(exc))
                last_err = exc
                if not _is_transient(exc) or attempt == self.max_attempts:
                    break
                delay = self.base_delay_seconds * (2 ** (attempt - 1)) + random.random() * 0.5
                logger.warning(f"Gemini transient error ({exc}); retry {attempt}/{self.max_attempts} in {delay:.2f}s")
                await self._sleep(delay)
                continue

            duration_ms = int((time.perf_counter() - started) * 1000)
            input_tokens, output_tokens = _usage(response)
            text = getattr(response, "text", None) or ""
            log_llm_call(
                self.model,
                "enrichment",
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
            )
            if not text.strip():
                raise DialogueError("Gemini returned empty content")
            return DialogueTurn(text=text, raw=response, duration_ms=duration_ms)

        raise DialogueError(f"Gemini send_message failed: {last_err}") from last_err


class GeminiDialogueProvider:
    def __init__(self, client: genai.Client | None = None):
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    def create_session(self, config: SessionConfig) -> GeminiChatSession:
        tools = [types.Tool(google_search=types.GoogleSearch())] if config.search_grounding else None
        chat = self.client.aio.chats.create(
            model=config.model,
            config=types.GenerateContentConfig(
                temperature=config.temperature,
                max_output_tokens=config.max_output_tokens,
                tools=tools,
            ),
        )
        logger.info(f"Created Gemini chat session (model={config.model}, grounding={config.search_grounding})")
        return GeminiChatSession(chat, model=config.model)


def get_client() -> genai.Client:
    if not settings.gemini_api_key:
        raise RuntimeError("GEMINI_API_KEY is not set.")
    return genai.Client(api_key=settings.gemini_api_key)
