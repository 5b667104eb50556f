from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from common import llm
from common.cancellation import CancellationToken
from common.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    AssistantResponseStartEvent,
    EventEmitter,
    ToolCallEvent,
    ToolResultEvent,
)

logger = logging.getLogger(__name__)

CompletionFn = Callable[..., Awaitable[Any]]
ExecuteTool = Callable[[str, dict], Awaitable[str]]


class ToolRecursionError(RuntimeError):
    def __init__(self, message: str, tool_name: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name


@dataclass(frozen=True, slots=True)
class LoopConfig:
    model: str
    system_prompt: str | None = None
    max_iterations: int = 10
    max_tool_calls_per_tool: int = 3
    temperature: float = 0.0
    max_tokens: int = 4096
    top_p: float | None = None
    top_k: int | None = None
    stream: bool = True
    use_tools: bool = True
    api_key: str | None = None
    api_base: str | None = None
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class LoopResult:
    iterations: int
    final_response: str
    tool_calls: int = 0


@dataclass(slots=True)
class _ToolCall:
    id: str
    name: str
    arguments: str


@dataclass(slots=True)
class _Response:
    content: str
    tool_calls: list[_ToolCall] = field(default_factory=list)


def _parse_arguments(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Could not decode tool arguments: {raw[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _response_from_message(message: Any) -> _Response:
    calls = []
    for tc in getattr(message, "tool_calls", None) or []:
        calls.append(
            _ToolCall(
                id=tc.id or "",
                name=tc.function.name or "",
                arguments=tc.function.arguments or "",
            )
        )
    return _Response(content=getattr(message, "content", None) or "", tool_calls=calls)


async def _stream_to_message(
    *,
    completion_fn: CompletionFn,
    params: dict[str, Any],
    emitter: EventEmitter | None,
    cancel_token: CancellationToken | None,
) -> _Response:
    stream = await completion_fn(stream=True, **params)

    accumulated_content = ""
    accumulated_tool_calls: dict[int, dict[str, str]] = {}

    async for chunk in stream:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta

        content = getattr(delta, "content", None)
        if content:
            accumulated_content += content
            if emitter is not None:
                emitter.emit(AssistantDeltaEvent(text=content))

        for tc in getattr(delta, "tool_calls", None) or []:
            idx = getattr(tc, "index", 0) or 0
            slot = accumulated_tool_calls.setdefault(idx, {"id": "", "name": "", "arguments": ""})
            if getattr(tc, "id", None):
                slot["id"] = tc.id
            function = getattr(tc, "function", None)
            if function is not None:
                if function.name:
                    slot["name"] = function.name
                if function.arguments:
                    slot["arguments"] += function.arguments

    return _Response(
        content=accumulated_content,
        tool_calls=[_ToolCall(**data) for _, data in sorted(accumulated_tool_calls.items())],
    )


async def run_loop(
    messages: list[dict],
    tools: list[dict],
    execute_tool: ExecuteTool,
    config: LoopConfig,
    emitter: EventEmitter | None = None,
    cancel_token: CancellationToken | None = None,
    completion_fn: CompletionFn | None = None,
) -> LoopResult:
    """Run model rounds until the model answers without requesting tools.

    ``messages`` is extended in place with assistant and tool messages.
    Raises ``ToolRecursionError`` when one tool is requested more than
    ``max_tool_calls_per_tool`` times, or when ``max_iterations`` rounds
    all end in tool calls.
    """
    completion_fn = completion_fn or llm.acompletion
    tools_arg = tools if (config.use_tools and tools) else None
    calls_per_tool: Counter[str] = Counter()
    total_calls = 0

    for iteration in range(1, config.max_iterations + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        api_messages = (
            ([{"role": "system", "content": config.system_prompt}] if config.system_prompt else [])
            + messages
        )
        params: dict[str, Any] = {
            "model": config.model,
            "messages": api_messages,
            "tools": tools_arg,
            "tool_choice": "auto" if tools_arg else None,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "top_p": config.top_p,
            "top_k": config.top_k,
            "api_key": config.api_key,
            "api_base": config.api_base,
            "timeout": config.timeout,
        }

        if emitter is not None:
            emitter.emit(AssistantResponseStartEvent(iteration=iteration))

        if config.stream:
            response = await _stream_to_message(
                completion_fn=completion_fn,
                params=params,
                emitter=emitter,
                cancel_token=cancel_token,
            )
        else:
            completion = await completion_fn(stream=False, **params)
            response = _response_from_message(completion.choices[0].message)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if not response.tool_calls:
            messages.append({"role": "assistant", "content": response.content})
            if emitter is not None:
                emitter.emit(AssistantMessageEvent(content=response.content))
            return LoopResult(
                iterations=iteration,
                final_response=response.content,
                tool_calls=total_calls,
            )

        messages.append(
            {
                "role": "assistant",
                "content": response.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in response.tool_calls
                ],
            }
        )

        for tool_call in response.tool_calls:
            calls_per_tool[tool_call.name] += 1
            total_calls += 1
            if calls_per_tool[tool_call.name] > config.max_tool_calls_per_tool:
                raise ToolRecursionError(
                    f"Tool {tool_call.name} called more than "
                    f"{config.max_tool_calls_per_tool} times in one turn",
                    tool_name=tool_call.name,
                )

            tool_args = _parse_arguments(tool_call.arguments)
            if emitter is not None:
                emitter.emit(
                    ToolCallEvent(
                        tool_call_id=tool_call.id,
                        tool_name=tool_call.name,
                        args=tool_args,
                    )
                )

            result = await execute_tool(tool_call.name, tool_args)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            if emitter is not None:
                emitter.emit(
                    ToolResultEvent(
                        tool_call_id=tool_call.id,
                        tool_name=tool_call.name,
                        result=result,
                    )
                )
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": tool_call.id,
                    "name": tool_call.name,
                    "content": result,
                }
            )

    raise ToolRecursionError(
        f"Model kept requesting tools after {config.max_iterations} iterations"
    )
