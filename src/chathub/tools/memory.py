import json
import logging
import re
from typing import Any

from chathub.catalog import LITELLM_PREFIXES
from chathub.preferences import Preferences
from chathub.prompts import MEMORY_MERGE_TEMPLATE
from chathub.sessions.schema import ToolInvocation
from chathub.tools.registry import Tool, ToolContext
from common import llm

logger = logging.getLogger(__name__)

MEMORY_DESCRIPTION = (
    "Useful when the user shares personal information, preferences or facts "
    "worth remembering for future conversations."
)

MEMORY_FALLBACK = "Saving to memory failed. Answer the user's question without it."

MEMORY_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "memory": {
            "type": "string",
            "description": "Key information to remember, in short form.",
        },
        "question": {
            "type": "string",
            "description": "The question the user asked.",
        },
    },
    "required": ["memory", "question"],
}

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class MemoryUpdateError(RuntimeError):
    pass


def parse_memories(text: str) -> list[str]:
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise MemoryUpdateError(f"Model did not return JSON: {text[:200]!r}")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MemoryUpdateError(f"Invalid JSON from model: {e}") from e

    memories = data.get("memories") if isinstance(data, dict) else None
    if not isinstance(memories, list):
        raise MemoryUpdateError("Model response has no 'memories' list")
    return [str(m).strip() for m in memories if str(m).strip()]


async def merge_memories(
    *,
    new_memory: str,
    existing: list[str],
    model: str,
    api_key: str | None,
    completion_fn=None,
    timeout: float | None = None,
) -> list[str]:
    completion_fn = completion_fn or llm.acompletion
    prompt = MEMORY_MERGE_TEMPLATE.format(
        new_memory=new_memory,
        existing_memory="\n".join(existing),
    )
    response = await completion_fn(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        stream=False,
        temperature=0.0,
        api_key=api_key,
        timeout=timeout,
    )
    content = getattr(response.choices[0].message, "content", None) or ""
    return parse_memories(content)


async def validate_memory(preferences: Preferences, api_keys: dict[str, str]) -> bool:
    return bool(api_keys.get("openai"))


def make_memory_tool(context: ToolContext) -> Tool:
    model = f"{LITELLM_PREFIXES['openai']}{context.config.memory_model}"

    async def _run(memory: str, question: str = "") -> str:
        context.check_cancelled()
        memories = await merge_memories(
            new_memory=memory,
            existing=context.preferences.memories,
            model=model,
            api_key=context.api_keys.get("openai"),
            completion_fn=context.completion_fn,
            timeout=context.config.request_timeout_s,
        )
        context.check_cancelled()

        context.preferences = context.update_preferences(memories=memories)
        logger.info(f"Memory updated, {len(memories)} facts stored")
        context.send_tool_response(
            ToolInvocation(
                tool_name="memory",
                tool_args={"memory": memory},
                tool_response={"memories": memories},
            )
        )
        return question

    return Tool(
        name="memory",
        description=MEMORY_DESCRIPTION,
        parameters=MEMORY_TOOL_SCHEMA,
        implementation=_run,
        fallback_message=MEMORY_FALLBACK,
    )
