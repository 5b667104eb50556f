import warnings
from typing import Any

import litellm
from litellm import acompletion as litellm_acompletion

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True


class LLMError(RuntimeError):
    pass


class LLMAuthenticationError(LLMError):
    pass


async def acompletion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    tools: list[dict] | None = None,
    tool_choice: str | None = None,
    temperature: float = 0.0,
    max_tokens: int = 4096,
    **kwargs,
) -> Any:
    params = {
        "model": model,
        "messages": messages,
        "stream": stream,
        "temperature": temperature,
        "max_tokens": max_tokens,
        **{k: v for k, v in kwargs.items() if v is not None},
    }

    if tools:
        params["tools"] = tools
        params["tool_choice"] = tool_choice or "auto"

    try:
        return await litellm_acompletion(**params)
    except litellm.AuthenticationError as e:
        raise LLMAuthenticationError(str(e)) from e
