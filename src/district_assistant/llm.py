"""Completion client over LangChain chat models, plus JSON reply parsing."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Protocol, TypeVar

import structlog
from langchain_core.embeddings import Embeddings
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI, OpenAIEmbeddings
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from district_assistant.config import AssistantSettings
from district_assistant.errors import (
    AssistantError,
    ConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    ResponseFormatError,
)

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_JSON_ARRAY = re.compile(r"\[[\s\S]*?\]")


class ChatModel(Protocol):
    """What we need from a LangChain chat model (`ChatOpenAI` and friends)."""

    async def ainvoke(self, input: Any, **kwargs: Any) -> Any: ...


class CompletionClient:
    """Single-shot prompt completion with a time budget.

    Provider exceptions surface as `ProviderError` and expired budgets as
    `ProviderTimeoutError`, so callers can pick their own fallback.
    """

    def __init__(
        self,
        llm: ChatModel,
        *,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 500,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.llm = llm
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds

    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout_seconds: float | None = None,
    ) -> str:
        messages: list[BaseMessage] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))
        budget = timeout_seconds or self.timeout_seconds

        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke(
                    messages,
                    max_tokens=max_tokens or self.max_tokens,
                    temperature=self.temperature if temperature is None else temperature,
                ),
                timeout=budget,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(f"completion exceeded {budget:.1f}s") from exc
        except AssistantError:
            raise
        except Exception as exc:
            raise ProviderError(f"completion failed: {exc}") from exc
        return message_text(response)

    async def complete_json(
        self,
        prompt: str,
        schema: type[M],
        *,
        system: str | None = None,
        attempts: int = 2,
        max_tokens: int | None = None,
        temperature: float | None = None,
        timeout_seconds: float | None = None,
    ) -> M:
        """Complete and validate the reply against `schema`.

        Unparsable replies are retried up to `attempts` times in total;
        provider failures are not retried here.
        """

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            retry=retry_if_exception_type(ResponseFormatError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                text = await self.complete(
                    prompt,
                    system=system,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    timeout_seconds=timeout_seconds,
                )
                if attempt.retry_state.attempt_number > 1:
                    logger.info("json_reply_retry", schema=schema.__name__)
                parsed = parse_json_object(text, schema)
        return parsed


def message_text(response: Any) -> str:
    """Plain text of a LangChain message, a string, or a content-part list."""

    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content)


def parse_json_object(text: str, schema: type[M]) -> M:
    match = _JSON_OBJECT.search(text)
    if match is None:
        raise ResponseFormatError("no JSON object in reply")
    try:
        payload = json.loads(match.group(0))
        return schema.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ResponseFormatError(f"reply does not match {schema.__name__}: {exc}") from exc


def parse_json_array(text: str) -> list[Any]:
    match = _JSON_ARRAY.search(text)
    if match is None:
        raise ResponseFormatError("no JSON array in reply")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"invalid JSON array: {exc}") from exc
    if not isinstance(payload, list):
        raise ResponseFormatError("reply is not a JSON array")
    return payload


def create_chat_model(settings: AssistantSettings, *, model: str, temperature: float) -> ChatModel:
    """Build an OpenAI chat model; completion credentials are mandatory."""

    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is required for completion models")

    return ChatOpenAI(
        model=model,
        temperature=temperature,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )


def create_embeddings(settings: AssistantSettings) -> Embeddings | None:
    """OpenAI embeddings, or None to run the generator in degraded mode."""

    if not settings.openai_api_key:
        logger.warning("embedding_credentials_missing_degraded_mode")
        return None

    return OpenAIEmbeddings(
        model=settings.embedding.model,
        dimensions=settings.embedding.dimensions,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )
