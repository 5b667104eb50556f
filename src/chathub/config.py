import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from chathub.errors import ConfigError

logger = logging.getLogger(__name__)

API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "grok": "XAI_API_KEY",
}

LOG_FORMATS = ("text", "json")


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def api_keys_from_env() -> dict[str, str]:
    keys = {}
    for base_model, env_name in API_KEY_ENV_VARS.items():
        value = os.environ.get(env_name)
        if value:
            keys[base_model] = value
    return keys


@dataclass
class ChatConfig:
    data_dir: str = field(
        default_factory=lambda: get_optional_env("CHATHUB_DATA_DIR", ".chathub")
    )
    stream: bool = True
    max_iterations: int = 10
    max_tool_calls_per_tool: int = 3
    turn_timeout_s: float | None = None
    request_timeout_s: float | None = 60.0
    memory_model: str = "gpt-3.5-turbo"
    title_model: str | None = None
    image_model: str = "dall-e-3"
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "ChatConfig":
        load_dotenv(dotenv_path)
        return cls(
            stream=_env_bool("CHATHUB_STREAM", True),
            max_iterations=_env_int("CHATHUB_MAX_ITERATIONS", 10),
            max_tool_calls_per_tool=_env_int("CHATHUB_MAX_TOOL_CALLS_PER_TOOL", 3),
            turn_timeout_s=_env_float("CHATHUB_TURN_TIMEOUT_S", None),
            request_timeout_s=_env_float("CHATHUB_REQUEST_TIMEOUT_S", 60.0),
            memory_model=get_optional_env("CHATHUB_MEMORY_MODEL", "gpt-3.5-turbo"),
            title_model=os.environ.get("CHATHUB_TITLE_MODEL") or None,
            image_model=get_optional_env("CHATHUB_IMAGE_MODEL", "dall-e-3"),
            log_level=get_optional_env("CHATHUB_LOG_LEVEL", "INFO"),
            log_format=get_optional_env("CHATHUB_LOG_FORMAT", "text"),
        )

    def validate(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        if self.max_tool_calls_per_tool < 1:
            raise ConfigError("max_tool_calls_per_tool must be at least 1")
        if self.turn_timeout_s is not None and self.turn_timeout_s <= 0:
            raise ConfigError("turn_timeout_s must be > 0 when set")
        if self.request_timeout_s is not None and self.request_timeout_s <= 0:
            raise ConfigError("request_timeout_s must be > 0 when set")
        if not self.data_dir:
            raise ConfigError("data_dir must not be empty")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format!r}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"Unknown log level: {self.log_level!r}")
        logger.debug("Configuration validated successfully")
