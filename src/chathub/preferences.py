import logging
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from chathub.config import api_keys_from_env
from chathub.errors import ConfigError
from chathub.storage import KeyValueStore

logger = logging.getLogger(__name__)

PREFERENCES_KEY = "preferences"
API_KEYS_KEY = "api-keys"

DEFAULT_SYSTEM_PROMPT = "You're helpful assistant that can help me with my questions."


class Preferences(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    default_assistant: str = "gpt-3.5-turbo"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    message_limit: int = Field(default=30, ge=1)
    temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    top_k: int = Field(default=5, ge=1)
    google_search_engine_id: str | None = None
    google_search_api_key: str | None = None
    default_plugins: list[str] = Field(default_factory=list)
    whisper_speech_to_text_enabled: bool = False
    default_web_search_engine: Literal["google", "duckduckgo"] = "duckduckgo"
    ollama_base_url: str = "http://localhost:11434"
    memories: list[str] = Field(default_factory=list)


class PreferencesStore:
    """Process-wide user configuration and provider API keys.

    Preferences and API keys live under separate storage keys. Keys found in
    the environment fill in providers the user has not configured.
    """

    def __init__(self, storage: KeyValueStore, env_api_keys: dict[str, str] | None = None):
        self.storage = storage
        self._env_api_keys = api_keys_from_env() if env_api_keys is None else dict(env_api_keys)
        self._preferences = self._load_preferences()
        self._api_keys: dict[str, str] = dict(self.storage.get(API_KEYS_KEY, {}) or {})

    def _load_preferences(self) -> Preferences:
        data = self.storage.get(PREFERENCES_KEY)
        if not data:
            preferences = Preferences()
            self.storage.set(PREFERENCES_KEY, preferences.model_dump(mode="json", by_alias=True))
            logger.info("Initialized default preferences")
            return preferences
        try:
            return Preferences.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Stored preferences are invalid, falling back to defaults: {e}")
            return Preferences()

    @property
    def preferences(self) -> Preferences:
        return self._preferences

    @property
    def api_keys(self) -> dict[str, str]:
        return {**self._env_api_keys, **{k: v for k, v in self._api_keys.items() if v}}

    def get_api_key(self, base_model: str) -> str | None:
        return self.api_keys.get(base_model)

    def update_preferences(
        self,
        new_preferences: dict[str, Any] | None = None,
        on_success: Callable[[Preferences], None] | None = None,
        **changes: Any,
    ) -> Preferences:
        aliases = {field.alias or name: name for name, field in Preferences.model_fields.items()}
        incoming = {aliases.get(k, k): v for k, v in {**(new_preferences or {}), **changes}.items()}
        merged = {**self._preferences.model_dump(), **incoming}
        try:
            updated = Preferences.model_validate(merged)
        except ValidationError as e:
            raise ConfigError(f"Invalid preferences: {e}") from e

        self._preferences = updated
        self.storage.set(PREFERENCES_KEY, updated.model_dump(mode="json", by_alias=True))
        logger.info(f"Updated preferences: {sorted(incoming)}")
        if on_success is not None:
            on_success(updated)
        return updated

    def reset_to_defaults(self) -> Preferences:
        self._preferences = Preferences()
        self.storage.set(PREFERENCES_KEY, self._preferences.model_dump(mode="json", by_alias=True))
        return self._preferences

    def update_api_key(self, base_model: str, value: str) -> None:
        self._api_keys[base_model] = value
        self.storage.set(API_KEYS_KEY, self._api_keys)
        logger.info(f"Updated API key for {base_model} (set={bool(value)})")

    def update_api_keys(self, keys: dict[str, str]) -> None:
        self._api_keys = dict(keys)
        self.storage.set(API_KEYS_KEY, self._api_keys)

    def set_memories(self, memories: list[str]) -> Preferences:
        cleaned = [m.strip() for m in memories if m and m.strip()]
        return self.update_preferences(memories=cleaned)

    def add_memory(self, memory: str) -> Preferences:
        memory = (memory or "").strip()
        if not memory or memory in self._preferences.memories:
            return self._preferences
        return self.set_memories([*self._preferences.memories, memory])
