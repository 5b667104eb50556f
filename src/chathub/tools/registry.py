import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from chathub.catalog import ModelSpec
from chathub.config import ChatConfig
from chathub.preferences import Preferences, PreferencesStore
from chathub.sessions.schema import ToolInvocation
from common.cancellation import CancellationToken, TurnCancelled

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK = "The tool failed to run. Continue without it."

SendToolResponse = Callable[[ToolInvocation], None]
ToolFn = Callable[..., Awaitable[Any]]
Validator = Callable[[Preferences, dict[str, str]], Awaitable[bool]]
MessageSpec = str | Callable[[Preferences], str] | None


@dataclass
class ToolContext:
    preferences: Preferences
    api_keys: dict[str, str]
    update_preferences: Callable[..., Preferences]
    send_tool_response: SendToolResponse
    cancel_token: CancellationToken | None = None
    config: ChatConfig = field(default_factory=ChatConfig)
    http_client: httpx.AsyncClient | None = None
    completion_fn: Callable[..., Awaitable[Any]] | None = None

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    implementation: ToolFn
    fallback_message: str = DEFAULT_FALLBACK

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def invoke(self, arguments: dict[str, Any]) -> str:
        try:
            result = self.implementation(**arguments)
            if inspect.isawaitable(result):
                result = await result
        except TurnCancelled:
            raise
        except Exception:
            logger.exception(f"Tool {self.name} failed")
            return self.fallback_message

        if result is None:
            return ""
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)


@dataclass
class ToolDescriptor:
    key: str
    name: str
    description: str
    factory: Callable[[ToolContext], Tool]
    validator: Validator | None = None
    validation_failed_action: Callable[[], None] | None = None
    loading_message: MessageSpec = None
    result_message: MessageSpec = None
    show_in_menu: bool = True
    render_hint: str | None = None


def _resolve_message(spec: MessageSpec, preferences: Preferences) -> str | None:
    if callable(spec):
        return spec(preferences)
    return spec


class ToolRegistry:
    """Closed mapping from tool key to descriptor."""

    def __init__(self, preferences: PreferencesStore):
        self.preferences = preferences
        self._descriptors: dict[str, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor) -> None:
        self._descriptors[descriptor.key] = descriptor

    @property
    def tools(self) -> list[ToolDescriptor]:
        return list(self._descriptors.values())

    def menu_tools(self) -> list[ToolDescriptor]:
        return [d for d in self._descriptors.values() if d.show_in_menu]

    def get_tool_by_key(self, key: str) -> ToolDescriptor | None:
        return self._descriptors.get(key)

    def loading_message(self, descriptor: ToolDescriptor) -> str | None:
        return _resolve_message(descriptor.loading_message, self.preferences.preferences)

    def result_message(self, descriptor: ToolDescriptor) -> str | None:
        return _resolve_message(descriptor.result_message, self.preferences.preferences)

    async def validate(self, descriptor: ToolDescriptor) -> bool:
        if descriptor.validator is None:
            return True
        ok = await descriptor.validator(self.preferences.preferences, self.preferences.api_keys)
        if not ok:
            logger.info(f"Tool {descriptor.key} failed validation")
            if descriptor.validation_failed_action is not None:
                descriptor.validation_failed_action()
        return ok

    def instantiate(self, descriptor: ToolDescriptor, context: ToolContext) -> Tool:
        return descriptor.factory(context)

    def tools_for_model(self, model: ModelSpec, enabled_plugins: list[str]) -> list[ToolDescriptor]:
        selected = []
        for key in model.plugins:
            if key not in enabled_plugins:
                continue
            descriptor = self.get_tool_by_key(key)
            if descriptor is not None:
                selected.append(descriptor)
        return selected
