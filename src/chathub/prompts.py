from typing import Any

from chathub.preferences import Preferences
from chathub.sessions.schema import Assistant, Message

CONTEXT_TEMPLATE = 'Answer user\'s question based on the following context: """{context}"""'

TITLE_INSTRUCTION = (
    "Make this prompt clear and consise? You must strictly answer with only the title, "
    "no other text is allowed.\n\nAnswer in English."
)

MEMORY_MERGE_TEMPLATE = """Here is a new piece of information: {new_memory}
Update the following list of facts if needed, otherwise add the new information: \"\"\"{existing_memory}\"\"\"
Respond with only a JSON object of the form {{"memories": ["fact", "..."]}}."""


def build_system_prompt(
    assistant: Assistant,
    memories: list[str],
    has_history: bool,
) -> str:
    parts = [assistant.system_prompt.strip()]
    if memories:
        parts.append("Things to remember:\n" + "\n".join(f"- {m}" for m in memories))
    if has_history:
        parts.append("You can also refer to these previous conversations")
    return "\n\n".join(p for p in parts if p)


def select_history(history: list[Message], message_limit: int, exclude_id: str | None = None) -> list[Message]:
    completed = [
        m
        for m in history
        if m.id != exclude_id and m.raw_human and m.raw_ai
    ]
    completed.sort(key=lambda m: m.created_at)
    return completed[-message_limit:] if message_limit > 0 else []


def build_history_messages(history: list[Message]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for message in history:
        messages.append({"role": "user", "content": message.raw_human})
        messages.append({"role": "assistant", "content": message.raw_ai})
    return messages


def build_user_content(input: str, context: str | None = None, image: str | None = None) -> str | list[dict]:
    text = input.strip()
    if context:
        text = f"{text}\n\n{CONTEXT_TEMPLATE.format(context=context.strip())}"
    if not image:
        return text
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": image}},
    ]


def build_messages(
    *,
    assistant: Assistant,
    preferences: Preferences,
    history: list[Message],
    input: str,
    context: str | None = None,
    image: str | None = None,
    exclude_id: str | None = None,
) -> list[dict[str, Any]]:
    """Build the full chat-completions message list for one turn."""
    selected = select_history(history, preferences.message_limit, exclude_id=exclude_id)
    system = build_system_prompt(assistant, preferences.memories, has_history=bool(selected))
    return [
        {"role": "system", "content": system},
        *build_history_messages(selected),
        {"role": "user", "content": build_user_content(input, context=context, image=image)},
    ]


def build_title_messages(first_human_message: str) -> list[dict[str, str]]:
    return [
        {"role": "user", "content": first_human_message},
        {"role": "user", "content": TITLE_INSTRUCTION},
    ]
