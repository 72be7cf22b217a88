from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional, Type

from .constants import OPENAI_MAX_OUTPUT_TOKENS

if TYPE_CHECKING:
    from .config import OPROSettings

REASONING_PREFIXES = ("o1", "o3", "o4")


class BaseAdapter(ABC):
    """
    BaseAdapter maps a model identifier to the connection settings of its provider.

    Every provider is reached through an OpenAI-compatible chat completions
    endpoint. An adapter decides the API key, the base URL and how sampling
    parameters are spelled for its models.

    Args:
        model (str): The name or identifier of the model to be used.
        settings (OPROSettings): Process settings holding the credentials.

    Attributes:
        provider (str): Short provider name, also the client cache key.
        key_env (str): Environment variable expected to hold the API key.
    """

    provider: str = ""
    key_env: str = ""

    def __init__(self, model: str, settings: "OPROSettings"):
        self.model = model
        self.settings = settings

    @abstractmethod
    def api_key(self) -> str: ...

    def base_url(self) -> Optional[str]:
        return None

    def client_kwargs(self) -> Dict[str, Optional[str]]:
        return {"api_key": self.api_key(), "base_url": self.base_url()}

    def request_kwargs(self, temperature: float, max_tokens: int) -> Dict[str, Any]:
        return {"temperature": temperature, "max_tokens": max_tokens}


class OpenAIAdapter(BaseAdapter):
    """Adapter for OpenAI hosted models."""

    provider = "openai"
    key_env = "OPENAI_API_KEY"

    def api_key(self) -> str:
        return self.settings.openai_api_key

    @property
    def is_reasoning(self) -> bool:
        return self.model.startswith(REASONING_PREFIXES)

    def request_kwargs(self, temperature: float, max_tokens: int) -> Dict[str, Any]:
        # o-series models reject max_tokens and any non-default temperature
        kwargs: Dict[str, Any] = {
            "max_completion_tokens": min(max_tokens, OPENAI_MAX_OUTPUT_TOKENS)
        }
        if not self.is_reasoning:
            kwargs["temperature"] = temperature
        return kwargs


class GeminiAdapter(BaseAdapter):
    """
    Adapter for Gemini models served through Google's OpenAI-compatible endpoint.
    """

    provider = "gemini"
    key_env = "GEMINI_API_KEY"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

    def api_key(self) -> str:
        return self.settings.gemini_api_key

    def base_url(self) -> Optional[str]:
        return self.BASE_URL


ADAPTER_REGISTRY: Dict[str, Type[BaseAdapter]] = {
    "gpt": OpenAIAdapter,
    "o1": OpenAIAdapter,
    "o3": OpenAIAdapter,
    "o4": OpenAIAdapter,
    "gemini": GeminiAdapter,
}


def adapter_class_for(model: str) -> Type[BaseAdapter]:
    """
    Returns the adapter class corresponding to the given model name prefix.

    Args:
        model (str): The name of the model for which to find the adapter class.

    Returns:
        Type[BaseAdapter]: The adapter class associated with the model's prefix.

    Raises:
        ValueError: If no adapter class is found for the given model prefix.
    """
    for prefix, cls in ADAPTER_REGISTRY.items():
        if model.startswith(prefix):
            return cls
    raise ValueError(f"No adapter found for model prefix: {model}")
