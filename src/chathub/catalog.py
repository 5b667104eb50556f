from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

import httpx

from common import llm

logger = logging.getLogger(__name__)

BaseModelName = Literal["openai", "anthropic", "gemini", "grok", "deepseek", "ollama"]

LITELLM_PREFIXES: dict[str, str] = {
    "openai": "",
    "anthropic": "anthropic/",
    "gemini": "gemini/",
    "grok": "xai/",
    "deepseek": "deepseek/",
    "ollama": "ollama/",
}

KEYLESS_BASE_MODELS = {"ollama"}

PROBE_MODEL_KEYS: dict[str, str] = {
    "openai": "gpt-3.5-turbo",
    "anthropic": "claude-3-haiku-20240307",
    "gemini": "gemini-pro",
    "ollama": "phi3:latest",
    "deepseek": "deepseek-chat",
}

ALL_PLUGINS = ["web_search", "image_generation", "memory"]


@dataclass(frozen=True)
class ModelSpec:
    key: str
    name: str
    base_model: BaseModelName
    tokens: int
    max_output_tokens: int
    plugins: list[str] = field(default_factory=list)
    input_price: float | None = None
    output_price: float | None = None
    is_new: bool = False


MODELS: list[ModelSpec] = [
    ModelSpec("gpt-4o", "GPT 4o", "openai", 128000, 2048, ALL_PLUGINS, 5, 15, is_new=True),
    ModelSpec("gpt-4-turbo", "GPT4 Turbo", "openai", 128000, 4095, ALL_PLUGINS, 10, 30),
    ModelSpec("gpt-4", "GPT4", "openai", 128000, 4095, ALL_PLUGINS, 30, 60),
    ModelSpec("gpt-3.5-turbo", "GPT3.5 Turbo", "openai", 16385, 4095, ALL_PLUGINS, 0.5, 1.5),
    ModelSpec("gpt-3.5-turbo-0125", "GPT3.5 Turbo 0125", "openai", 16385, 4095, ALL_PLUGINS),
    ModelSpec(
        "gpt-3.5-turbo-instruct", "GPT3.5 Turbo Instruct", "openai", 4000, 4095, ["web_search"], 1.5, 2
    ),
    ModelSpec("claude-3-opus-20240229", "Claude 3 Opus", "anthropic", 200000, 4095, [], 15, 75),
    ModelSpec("claude-3-sonnet-20240229", "Claude 3 Sonnet", "anthropic", 200000, 4095, [], 3, 15),
    ModelSpec("claude-3-haiku-20240307", "Claude 3 Haiku", "anthropic", 200000, 4095, [], 0.25, 1.5),
    ModelSpec("gemini-1.5-pro-latest", "Gemini Pro 1.5", "gemini", 200000, 8190, [], 3.5, 10.5, is_new=True),
    ModelSpec(
        "gemini-1.5-flash-latest", "Gemini Flash 1.5", "gemini", 200000, 8190, [], 0.35, 1.05, is_new=True
    ),
    ModelSpec("gemini-pro", "Gemini Pro", "gemini", 200000, 4095, [], 0.5, 1.5),
    ModelSpec(
        "deepseek-coder", "DeepSeek-Coder", "deepseek", 32768, 4096,
        ["web_search", "image_generation"], 1.0, 2.5, is_new=True,
    ),
    ModelSpec("deepseek-chat", "DeepSeek Chat", "deepseek", 32000, 4096, ["web_search"], 0.8, 2.0),
]


class ModelCatalog:
    def __init__(self, models: list[ModelSpec] | None = None):
        self._models = list(models if models is not None else MODELS)

    def list(self) -> list[ModelSpec]:
        return list(self._models)

    def get_model_by_key(self, key: str) -> ModelSpec | None:
        for model in self._models:
            if model.key == key:
                return model
        return None

    def register_ollama_models(self, names: list[str]) -> list[ModelSpec]:
        self._models = [m for m in self._models if m.base_model != "ollama"]
        added = [
            ModelSpec(key=name, name=name, base_model="ollama", tokens=128000, max_output_tokens=2048)
            for name in names
        ]
        self._models.extend(added)
        return added


def litellm_model_name(model: ModelSpec) -> str:
    return f"{LITELLM_PREFIXES.get(model.base_model, '')}{model.key}"


def requires_api_key(model: ModelSpec) -> bool:
    return model.base_model not in KEYLESS_BASE_MODELS


def probe_model_key(base_model: str) -> str:
    return PROBE_MODEL_KEYS.get(base_model, "gpt-3.5-turbo")


async def fetch_ollama_models(
    base_url: str,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = 5.0,
) -> list[str]:
    """Names of the models a local Ollama server has pulled (``/api/tags``)."""
    url = f"{base_url.rstrip('/')}/api/tags"
    if client is not None:
        resp = await client.get(url)
    else:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            resp = await own_client.get(url)
    resp.raise_for_status()
    data = resp.json()
    models = data.get("models") if isinstance(data, dict) else None
    if not isinstance(models, list):
        return []
    return [str(m["name"]) for m in models if isinstance(m, dict) and m.get("name")]


async def check_api_key(
    base_model: str,
    api_key: str | None,
    completion_fn: Callable[..., Awaitable[Any]] | None = None,
    api_base: str | None = None,
    timeout: float | None = 30.0,
) -> bool:
    """Send one short request with ``api_key`` and report whether it went through."""
    if base_model not in KEYLESS_BASE_MODELS and not api_key:
        return False
    completion_fn = completion_fn or llm.acompletion
    model = ModelSpec(
        key=probe_model_key(base_model),
        name=base_model,
        base_model=base_model,
        tokens=0,
        max_output_tokens=1,
    )
    try:
        await completion_fn(
            model=litellm_model_name(model),
            messages=[{"role": "user", "content": "This is a test message"}],
            stream=False,
            max_tokens=1,
            api_key=api_key,
            api_base=api_base,
            timeout=timeout,
        )
    except Exception as e:
        logger.info(f"API key check for {base_model} failed: {e}")
        return False
    return True
