from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from loguru import logger
from openai import AsyncOpenAI

from .adapters import BaseAdapter, adapter_class_for
from .config import OPROSettings


@dataclass(frozen=True)
class Completion:
    """Raw text of a model reply plus its token usage."""

    text: Optional[str]
    prompt_tokens: int = 0
    completion_tokens: int = 0


class ModelClient(Protocol):
    """
    The handle the engines use to reach a language model.

    Implementations return the raw reply; validation of its structure belongs
    to :mod:`opro.replies`.
    """

    async def complete_json(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        schema: Dict[str, Any],
        max_tokens: int,
    ) -> Completion: ...


class OpenAICompatibleClient:
    """
    OpenAICompatibleClient sends structured-output chat completions to any
    provider exposing the OpenAI API.

    One ``AsyncOpenAI`` instance is created per provider and reused for every
    model of that provider. Sampling parameters are shaped by the model's
    adapter, since providers and model families spell them differently.

    Args:
        settings (OPROSettings): Credentials are read from here.

    Attributes:
        settings (OPROSettings): The settings object.
        _client_cache (Dict[str, AsyncOpenAI]): Provider name to client.
    """

    def __init__(self, settings: OPROSettings):
        self.settings = settings
        self._client_cache: Dict[str, AsyncOpenAI] = {}

    def _client(self, adapter: BaseAdapter) -> AsyncOpenAI:
        if adapter.provider not in self._client_cache:
            logger.bind(provider=adapter.provider).debug("Creating model client")
            self._client_cache[adapter.provider] = AsyncOpenAI(**adapter.client_kwargs())
        return self._client_cache[adapter.provider]

    async def complete_json(
        self,
        prompt: str,
        *,
        model: str,
        temperature: float,
        schema: Dict[str, Any],
        max_tokens: int,
    ) -> Completion:
        adapter = adapter_class_for(model)(model, self.settings)
        resp = await self._client(adapter).chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            **adapter.request_kwargs(temperature, max_tokens),
            response_format={"type": "json_schema", "json_schema": schema},
        )
        text = resp.choices[0].message.content if resp.choices else None
        usage = resp.usage
        return Completion(
            text=text,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )

    async def aclose(self) -> None:
        for client in self._client_cache.values():
            await client.close()
        self._client_cache.clear()
