"""Configuration — YAML file with environment overrides."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .retry import RetryPolicy
from .transport import DEFAULT_API_URL

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_MODEL = "llama3-70b-8192"
DEFAULT_STOP = ["<|eot_id|>", "<|end_of_text|>"]

# Environment variable -> config field
_ENV_OVERRIDES: dict[str, str] = {
    "GROQ_API_KEY": "groq_api_key",
    "LLMCHAT_API_URL": "api_url",
    "LLMCHAT_MODEL": "model",
    "LLMCHAT_TIMEOUT_SEC": "request_timeout",
    "LLMCHAT_RPS": "requests_per_second",
    "LLMCHAT_SYSTEM_PROMPT": "system_prompt_path",
    "LLMCHAT_HISTORY_DIR": "history_dir",
}


class ChatConfig(BaseModel):
    """Effective runtime configuration.

    Token limits are in :func:`~llmchat.tokens.estimate_tokens` units:
    ``max_conversation_tokens`` bounds what the local buffer retains,
    ``max_request_tokens`` bounds what is sent per request, and
    ``max_tokens`` is the completion cap forwarded to the API.
    """

    groq_api_key: str
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    temperature: float = Field(default=0.7, ge=0, le=2)
    top_p: float = Field(default=0.9, gt=0, le=1)
    max_tokens: int = Field(default=8000, gt=0)
    max_conversation_tokens: int = Field(default=8000, gt=0)
    max_request_tokens: int = Field(default=8000, gt=0)
    stop: list[str] = Field(default_factory=lambda: list(DEFAULT_STOP), max_length=4)
    request_timeout: float = Field(default=30.0, gt=0)
    requests_per_second: float = Field(default=1.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    render_delay: float = Field(default=0.02, ge=0)
    system_prompt_path: Path = Path("system_prompt.txt")
    history_dir: Path = Path(".")

    @field_validator("groq_api_key")
    @classmethod
    def _require_key(cls, value: str) -> str:
        if not value.strip():
            msg = "groq_api_key must not be empty"
            raise ValueError(msg)
        return value.strip()


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML from file, returning empty mapping when missing."""
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        msg = f"Failed to read config file {path}: {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Config file must contain a mapping: {path}"
        raise ConfigError(msg)
    return data


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, key in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            overrides[key] = value
    return overrides


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> ChatConfig:
    """Build the effective :class:`ChatConfig`.

    Precedence, lowest first: model defaults, the YAML file, environment
    variables, then explicit ``overrides`` (``None`` values are skipped).

    Raises:
        ConfigError: unreadable file, missing credential, or invalid values.
    """
    config_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILE)
    if path is not None and not config_path.exists():
        msg = f"Config file not found: {config_path}"
        raise ConfigError(msg)

    data = load_yaml(config_path)
    data.update(_env_overrides(os.environ if environ is None else environ))
    data.update({k: v for k, v in overrides.items() if v is not None})

    if not data.get("groq_api_key"):
        msg = (
            "API key is not set. Add 'groq_api_key' to "
            f"{config_path} or set the GROQ_API_KEY environment variable."
        )
        raise ConfigError(msg)

    try:
        config = ChatConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise ConfigError(msg) from exc

    logger.info("Loaded configuration (model=%s, url=%s)", config.model, config.api_url)
    return config


def load_system_prompt(path: Path | str) -> str:
    """Read the whole prompt file; its contents become the first system message."""
    prompt_path = Path(path)
    try:
        text = prompt_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        msg = f"Failed to read system prompt file {prompt_path}: {exc}"
        raise ConfigError(msg) from exc
    if not text.strip():
        msg = f"System prompt file is empty: {prompt_path}"
        raise ConfigError(msg)
    return text
