import logging
from pathlib import Path
from typing import Any, Callable

import httpx

from chathub.assistants import AssistantRegistry
from chathub.catalog import ModelCatalog, ModelSpec, check_api_key, fetch_ollama_models
from chathub.config import ChatConfig
from chathub.coordinator import CompletionFn, ResponseCoordinator
from chathub.logging_utils import setup_logging
from chathub.preferences import PreferencesStore
from chathub.runtime.hooks import CoordinatorHooks
from chathub.sessions import Assistant, LLMInputProps, Message, SessionStore
from chathub.storage import JsonFileStore, KeyValueStore
from chathub.tools import build_default_registry

logger = logging.getLogger(__name__)


class ChatHub:
    """Wires stores, registries and the coordinator over one storage backend."""

    def __init__(
        self,
        config: ChatConfig | None = None,
        storage: KeyValueStore | None = None,
        root_path: str | Path | None = None,
        on_redirect: Callable[[str], None] | None = None,
        completion_fn: CompletionFn | None = None,
        env_api_keys: dict[str, str] | None = None,
    ):
        self.config = config or ChatConfig()
        self.config.validate()
        self.storage = storage or JsonFileStore(self.config.data_dir)
        self.completion_fn = completion_fn
        self.hooks = CoordinatorHooks()

        self.catalog = ModelCatalog()
        self.preferences = PreferencesStore(self.storage, env_api_keys=env_api_keys)
        self.sessions = SessionStore(self.storage, on_redirect=on_redirect)
        self.assistants = AssistantRegistry(
            self.catalog, self.preferences, self.storage, root_path=root_path
        )
        self.assistants.reload()
        self.tools = build_default_registry(
            self.preferences, open_settings=self.hooks.fire_settings_requested
        )
        self.coordinator = ResponseCoordinator(
            sessions=self.sessions,
            preferences=self.preferences,
            tools=self.tools,
            assistants=self.assistants,
            catalog=self.catalog,
            config=self.config,
            completion_fn=completion_fn,
            hooks=self.hooks,
        )

    @classmethod
    def from_env(cls, dotenv_path: str | None = None, **kwargs: Any) -> "ChatHub":
        """Build a hub from ``CHATHUB_*`` environment settings and set up logging."""
        config = ChatConfig.from_env(dotenv_path)
        config.validate()
        setup_logging(config.log_level, config.log_format)
        return cls(config=config, **kwargs)

    async def refresh_ollama_models(self, client: httpx.AsyncClient | None = None) -> list[ModelSpec]:
        """Replace the catalog's Ollama models with the ones the server reports."""
        base_url = self.preferences.preferences.ollama_base_url
        try:
            names = await fetch_ollama_models(base_url, client=client)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not load Ollama models from {base_url}: {e}")
            names = []
        added = self.catalog.register_ollama_models(names)
        logger.info(f"Registered {len(added)} Ollama models")
        return added

    async def check_api_key(self, base_model: str, api_key: str | None) -> bool:
        api_base = self.preferences.preferences.ollama_base_url if base_model == "ollama" else None
        return await check_api_key(
            base_model,
            api_key,
            completion_fn=self.completion_fn,
            api_base=api_base,
            timeout=self.config.request_timeout_s,
        )

    async def send(
        self,
        input: str,
        session_id: str | None = None,
        context: str | None = None,
        image: str | None = None,
        assistant_key: str | None = None,
    ) -> Message | None:
        """Submit user input, creating a session first when none is given.

        An assistant that cannot be resolved still produces a turn; it ends
        at once with ``stop_reason="apikey"``.
        """
        if assistant_key is not None:
            found = self.assistants.get_assistant_by_key(assistant_key)
        else:
            found = self.assistants.default_assistant()
        if found is not None:
            assistant = found[0]
        else:
            key = assistant_key or self.preferences.preferences.default_assistant
            logger.warning(f"No assistant available (key={key})")
            assistant = Assistant(
                name=key,
                key=key,
                base_model=key,
                system_prompt=self.preferences.preferences.system_prompt,
            )

        if session_id is None:
            session_id = self.sessions.create_session(redirect=True).id

        props = LLMInputProps(
            session_id=session_id,
            input=input,
            context=context,
            image=image,
            assistant=assistant,
        )
        return await self.coordinator.run_turn(props)
