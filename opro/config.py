from __future__ import annotations

import os
import pathlib
from typing import Any, Dict, List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .adapters import adapter_class_for
from .constants import (
    BENCHMARK_ENV,
    DEFAULT_BENCHMARK,
    DEFAULT_MODEL,
    DEFAULT_RETRY_DELAY,
    DEFAULT_STORE_DIR,
    MAX_K,
    MAX_TEMPERATURE,
    MIN_K,
    MIN_TEMPERATURE,
    PROPOSER_MAX_ATTEMPTS,
    REQUEST_STAGGER,
    SCORER_MAX_ATTEMPTS,
    SCORER_RETRY_DELAY,
    STORE_DIR_ENV,
)

# ─────────────────────────── Prices Loader ───────────────────────────────
# USD per 1M tokens; only used by the usage report, never by the loop itself.

_DEFAULT_PRICES: Dict[str, Dict[str, float]] = {
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
    "gemini-2.5-flash-lite": {"input": 0.10, "output": 0.40},
    "gpt-4o-mini": {"input": 0.150, "output": 0.600},
    "default": {"input": 0.30, "output": 2.50},
}


def load_prices(
    default_prices: Dict[str, Dict[str, float]],
    prices_path: pathlib.Path = pathlib.Path("prices.yaml"),
) -> Dict[str, Dict[str, float]]:
    """
    Load prices from a YAML file if it exists, falling back to defaults on error.

    Args:
        default_prices: The default price dictionary.
        prices_path: Path to the YAML file.

    Returns:
        A dictionary of prices.
    """
    try:
        loaded = yaml.safe_load(prices_path.read_text()) if prices_path.exists() else {}
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError("prices.yaml did not contain a dict")
        tmp = default_prices.copy()
        for model, entry in loaded.items():
            if isinstance(entry, dict) and {"input", "output"} <= set(entry):
                tmp[model] = {"input": float(entry["input"]), "output": float(entry["output"])}
            else:
                logger.warning("Skipping invalid price entry for {}", model)
        return tmp
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Using default price table due to error: {}", exc)
        return default_prices


# ─────────────────────────── Session Configuration ───────────────────────────
class OPROConfig(BaseModel):
    """
    Immutable per-session configuration of the optimisation loop.

    Validation happens here, at creation time; the synthesizer and the engines
    trust these values.

    Attributes:
        k (int): Candidates generated per step, between 1 and 16.
        top_x (int): Number of best distinct candidates shown to the proposer.
        optimizer_model (str): Proposer model identifier.
        optimizer_temperature (float): Proposer sampling temperature.
        scorer_model (str): Grader model identifier.
        scorer_temperature (float): Grader sampling temperature.
    """

    model_config = ConfigDict(frozen=True)

    k: int = 4
    top_x: int = 20
    optimizer_model: str = DEFAULT_MODEL
    optimizer_temperature: float = 1.0
    scorer_model: str = DEFAULT_MODEL
    scorer_temperature: float = 0.0

    @field_validator("k")
    @classmethod
    def _v_k(cls, v: int) -> int:
        if not MIN_K <= v <= MAX_K:
            raise ValueError(f"k must be between {MIN_K} and {MAX_K}")
        return v

    @field_validator("top_x")
    @classmethod
    def _v_top_x(cls, v: int) -> int:
        if v < 1:
            raise ValueError("top_x must be at least 1")
        return v

    @field_validator("optimizer_temperature", "scorer_temperature")
    @classmethod
    def _v_temperature(cls, v: float) -> float:
        if not MIN_TEMPERATURE <= v <= MAX_TEMPERATURE:
            raise ValueError(
                f"temperature must be between {MIN_TEMPERATURE} and {MAX_TEMPERATURE}"
            )
        return v

    @field_validator("optimizer_model", "scorer_model")
    @classmethod
    def _v_model(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("model identifier cannot be empty")
        return v.strip()


# ─────────────────────────── Process Settings ────────────────────────────────
def _env(*names: str) -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return ""


class OPROSettings(BaseModel):
    """
    Process-wide settings: credentials, retry budgets, storage and benchmark paths.

    Unlike :class:`OPROConfig` these are not stored with a session and can be
    changed between runs. ``from_yaml`` overlays a YAML file on the defaults.
    """

    # Credentials
    openai_api_key: str = Field(default_factory=lambda: _env("OPENAI_API_KEY"))
    gemini_api_key: str = Field(
        default_factory=lambda: _env("GEMINI_API_KEY", "GOOGLE_API_KEY")
    )

    # Retry policy
    proposer_max_attempts: int = PROPOSER_MAX_ATTEMPTS
    proposer_retry_delay: float = DEFAULT_RETRY_DELAY
    scorer_max_attempts: int = SCORER_MAX_ATTEMPTS
    scorer_retry_delay: float = SCORER_RETRY_DELAY
    request_stagger: float = REQUEST_STAGGER
    request_timeout: Optional[float] = None

    # Loop
    score_batch_size: Optional[int] = None
    show_progress: bool = True

    # Paths
    store_dir: str = Field(
        default_factory=lambda: os.getenv(STORE_DIR_ENV, DEFAULT_STORE_DIR)
    )
    benchmark_path: str = Field(
        default_factory=lambda: os.getenv(BENCHMARK_ENV, DEFAULT_BENCHMARK)
    )

    prices: Dict[str, Dict[str, float]] = Field(
        default_factory=lambda: load_prices(_DEFAULT_PRICES)
    )

    @field_validator("proposer_max_attempts", "scorer_max_attempts")
    @classmethod
    def _v_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("attempt budget must be at least 1")
        return v

    @field_validator("proposer_retry_delay", "scorer_retry_delay", "request_stagger")
    @classmethod
    def _v_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays cannot be negative")
        return v

    @field_validator("request_timeout")
    @classmethod
    def _v_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("request_timeout must be positive")
        return v

    @field_validator("score_batch_size")
    @classmethod
    def _v_batch(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("score_batch_size must be at least 1")
        return v

    @field_validator("prices")
    @classmethod
    def _v_price(cls, v_prices: Dict[str, Dict[str, float]]) -> Dict[str, Dict[str, float]]:
        for model, entry in v_prices.items():
            if not {"input", "output"} <= set(entry):
                raise ValueError(f"Price dict for {model} missing keys")
        return v_prices

    @classmethod
    def from_yaml(cls, path: pathlib.Path, **overrides: Any) -> "OPROSettings":
        data: Dict[str, Any] = {}
        if path.exists():
            loaded = yaml.safe_load(path.read_text())
            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError(f"{path} did not contain a mapping")
            data.update(loaded or {})
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)


# ─────────────────────────── Credential Check Utilities ─────────────────────────────
def _models_from_config(cfg: OPROConfig) -> List[str]:
    return [cfg.optimizer_model, cfg.scorer_model]


def check_api_keys(settings: OPROSettings, cfg: OPROConfig) -> bool:
    """
    Checks that every provider referenced by ``cfg`` has a key in ``settings``.

    Returns:
        bool: True when nothing is missing; missing names are logged.
    """
    missing: List[str] = []
    for model in _models_from_config(cfg):
        adapter = adapter_class_for(model)(model, settings)
        if not adapter.api_key() and adapter.key_env not in missing:
            missing.append(adapter.key_env)

    if missing:
        logger.error("Missing credentials: {!r}", missing)
        return False
    return True
