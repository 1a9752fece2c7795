"""
OpenAI access for every pipeline stage.

All chat completions go through ``OpenAiService.chat_completion``, which walks an
ordered model list and shapes each request from ``MODEL_CAPABILITIES``:
newer models take ``max_completion_tokens`` and reject ``temperature``,
older ones take ``max_tokens`` and accept it. The first model that answers wins.

Embeddings use the same walk over the embedding model list (large, then small),
always requesting 1536 dimensions so vectors fit the pgvector columns.

The SDK client is synchronous; calls run in worker threads via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Type, TypeVar

import openai
from openai import OpenAI
from pydantic import BaseModel, TypeAdapter, ValidationError

from app.core.config import settings
from app.core.logger import logger
from app.utils.exceptions import AllModelsFailedError, ConfigurationError, LlmResponseError

T = TypeVar("T")

MISSING_KEY_ERROR = "Server not configured. Missing OPENAI_API_KEY."


# ============================================================================
# Model capability table
# ============================================================================

@dataclass(frozen=True)
class ModelCapability:
    token_param: str = "max_tokens"
    supports_temperature: bool = True
    max_output_tokens: int = 4000
    default_temperature: float = 0.7


MODEL_CAPABILITIES: dict[str, ModelCapability] = {
    "gpt-5-mini": ModelCapability(token_param="max_completion_tokens", supports_temperature=False, max_output_tokens=8000),
    "gpt-4.1-mini": ModelCapability(token_param="max_completion_tokens", supports_temperature=False, max_output_tokens=8000),
    "gpt-4o-mini": ModelCapability(token_param="max_tokens", supports_temperature=True, max_output_tokens=4000),
    "gpt-4o": ModelCapability(token_param="max_tokens", supports_temperature=True, max_output_tokens=8000),
}

# Unknown models are treated like the legacy chat models
DEFAULT_CAPABILITY = ModelCapability()


def capability_for(model: str) -> ModelCapability:
    """Exact match first, then the longest table key the name starts with (dated snapshots)."""
    if model in MODEL_CAPABILITIES:
        return MODEL_CAPABILITIES[model]
    matches = [key for key in MODEL_CAPABILITIES if model.startswith(f"{key}-")]
    if matches:
        return MODEL_CAPABILITIES[max(matches, key=len)]
    return DEFAULT_CAPABILITY


def build_completion_params(
    model: str,
    max_tokens: int,
    temperature: Optional[float] = None,
) -> dict[str, Any]:
    cap = capability_for(model)
    params: dict[str, Any] = {cap.token_param: min(max_tokens, cap.max_output_tokens)}
    if cap.supports_temperature:
        params["temperature"] = cap.default_temperature if temperature is None else temperature
    return params


# ============================================================================
# JSON helpers
# ============================================================================

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def extract_json(text: str) -> Any:
    """
    Parse the JSON object or array in a model reply. Tolerates markdown fences
    and prose around the payload. Raises LlmResponseError otherwise.
    """
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    if not cleaned:
        raise LlmResponseError("Empty model response")
    try:
        return json.loads(cleaned)
    except ValueError:
        pass

    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if not starts:
        raise LlmResponseError(f"No JSON found in model response: {cleaned[:200]}")
    start = min(starts)
    closer = "}" if cleaned[start] == "{" else "]"
    end = cleaned.rfind(closer)
    if end <= start:
        raise LlmResponseError(f"Unterminated JSON in model response: {cleaned[:200]}")
    try:
        return json.loads(cleaned[start:end + 1])
    except ValueError as exc:
        raise LlmResponseError(f"Model response is not valid JSON: {exc}") from exc


def parse_model_output(text: str, schema: Type[T]) -> T:
    """Extract JSON from *text* and validate it against *schema* (a pydantic model or type)."""
    data = extract_json(text)
    try:
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            return schema.model_validate(data)
        return TypeAdapter(schema).validate_python(data)
    except ValidationError as exc:
        raise LlmResponseError(f"Model response failed validation: {exc.error_count()} error(s)") from exc


# ============================================================================
# Service
# ============================================================================

@dataclass
class CompletionResult:
    content: str
    model: str


@dataclass
class EmbeddingResult:
    vector: list[float]
    model: str


class OpenAiService:
    """Chat completions and embeddings with ordered model fallback."""

    def __init__(self) -> None:
        self._client: Optional[OpenAI] = None

    @property
    def is_configured(self) -> bool:
        return bool(settings.OPENAI_API_KEY)

    @property
    def client(self) -> OpenAI:
        if not self.is_configured:
            raise ConfigurationError(MISSING_KEY_ERROR)
        if self._client is None:
            self._client = OpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
                max_retries=settings.OPENAI_MAX_RETRIES,
            )
            logger.info("OpenAI client initialised")
        return self._client

    # ------------------------------------------------------------------
    # Low-level SDK calls (blocking)
    # ------------------------------------------------------------------

    def _complete(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: Optional[float],
        json_mode: bool,
    ) -> str:
        kwargs: dict[str, Any] = {"model": model, "messages": messages}
        kwargs.update(build_completion_params(model, max_tokens, temperature))
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self.client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()

    def _embed(self, model: str, text: str) -> list[float]:
        response = self.client.embeddings.create(
            model=model,
            input=text,
            dimensions=settings.EMBEDDING_DIMENSIONS,
        )
        return list(response.data[0].embedding)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        models: Optional[Sequence[str]] = None,
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> CompletionResult:
        """
        Try each model in turn and return the first non-empty reply.

        Authentication failures stop the walk immediately; every other API error
        (rate limit, unsupported parameter, outage) falls through to the next model.
        """
        candidates = list(models or settings.chat_models_list)
        for model in candidates:
            try:
                content = await asyncio.to_thread(
                    self._complete, model, messages, max_tokens, temperature, json_mode
                )
            except openai.AuthenticationError as exc:
                logger.error("OpenAI authentication failed: %s", exc)
                raise AllModelsFailedError("OpenAI authentication failed") from exc
            except openai.OpenAIError as exc:
                logger.warning("Model %s failed: %s", model, exc)
                continue

            if not content:
                logger.warning("Model %s returned an empty response", model)
                continue
            logger.debug("Completion served by %s", model)
            return CompletionResult(content=content, model=model)

        raise AllModelsFailedError()

    async def embed(self, text: str, models: Optional[Sequence[str]] = None) -> EmbeddingResult:
        """Embedding for *text* from the first embedding model that answers."""
        candidates = list(models or settings.embedding_models_list)
        for model in candidates:
            try:
                vector = await asyncio.to_thread(self._embed, model, text[:8000])
            except openai.AuthenticationError as exc:
                logger.error("OpenAI authentication failed: %s", exc)
                raise AllModelsFailedError("OpenAI authentication failed") from exc
            except openai.OpenAIError as exc:
                logger.warning("Embedding model %s failed: %s", model, exc)
                continue
            return EmbeddingResult(vector=vector, model=model)

        raise AllModelsFailedError("All embedding models failed to respond")

    async def complete_json(
        self,
        messages: list[dict[str, str]],
        schema: Type[T],
        models: Optional[Sequence[str]] = None,
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> T:
        """chat_completion + parse_model_output. Raises LlmResponseError on a bad reply."""
        result = await self.chat_completion(
            messages,
            models=models,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
        )
        return parse_model_output(result.content, schema)


# Singleton
openai_service = OpenAiService()
