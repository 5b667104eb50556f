from pathlib import Path

import pytest

from chathub.assistants import AssistantRegistry
from chathub.catalog import ModelCatalog
from chathub.errors import AssistantError


@pytest.fixture
def registry(store, preferences, tmp_path):
    return AssistantRegistry(ModelCatalog(), preferences, store, root_path=tmp_path)


def test_base_assistants_follow_catalog(registry, preferences):
    base = registry.get_assistants_by_type("base")

    assert [a.key for a in base] == [m.key for m in ModelCatalog().list()]
    assert all(a.system_prompt == preferences.preferences.system_prompt for a in base)


def test_get_assistant_by_key_returns_model(registry):
    assistant, model = registry.get_assistant_by_key("gpt-4o")
    assert assistant.type == "base"
    assert model.base_model == "openai"
    assert registry.get_assistant_by_key("nope") is None


def test_create_update_delete_custom(registry, store):
    created = registry.create_assistant("Poet", "Answer in verse.", "gpt-4o")
    assert registry.get_assistants_by_type("custom") == [created]
    assert store.get("assistants")[0]["systemPrompt"] == "Answer in verse."

    updated = registry.update_assistant(created.key, name="Bard", type="base")
    assert updated.name == "Bard"
    assert updated.type == "custom"

    registry.delete_assistant(created.key)
    assert registry.get_assistants_by_type("custom") == []
    assert store.get("assistants") == []


def test_create_with_unknown_model_fails(registry):
    with pytest.raises(AssistantError):
        registry.create_assistant("Ghost", "Boo.", "gpt-99")


def test_base_assistant_cannot_be_deleted(registry):
    with pytest.raises(AssistantError):
        registry.delete_assistant("gpt-4o")


def test_deleting_default_assistant_resets_preference(registry, preferences):
    created = registry.create_assistant("Poet", "Answer in verse.", "gpt-4o")
    registry.select_assistant(created.key)
    assert preferences.preferences.default_assistant == created.key

    registry.delete_assistant(created.key)

    assert preferences.preferences.default_assistant == "gpt-3.5-turbo"


def test_default_assistant_recovers_from_missing_key(registry, preferences):
    preferences.update_preferences(default_assistant="deleted-elsewhere")

    assistant, _ = registry.default_assistant()

    assert assistant.key == "gpt-3.5-turbo"
    assert preferences.preferences.default_assistant == "gpt-3.5-turbo"


def test_reload_reads_markdown_assistants(registry, tmp_path: Path):
    assistants_dir = tmp_path / ".chathub" / "assistants"
    assistants_dir.mkdir(parents=True)
    (assistants_dir / "reviewer.md").write_text(
        "---\nname: Reviewer\nbase_model: claude-3-haiku-20240307\n---\nReview code carefully.\n",
        encoding="utf-8",
    )
    (assistants_dir / "broken.md").write_text("---\nname: Broken\n---\nNo model.\n", encoding="utf-8")

    registry.reload()

    assistant, model = registry.get_assistant_by_key("file:reviewer")
    assert assistant.name == "Reviewer"
    assert assistant.system_prompt == "Review code carefully."
    assert model.base_model == "anthropic"
    assert registry.get_assistant_by_key("file:broken") is None


def test_file_assistants_cannot_be_edited_or_deleted(registry, tmp_path: Path):
    assistants_dir = tmp_path / ".chathub" / "assistants"
    assistants_dir.mkdir(parents=True)
    (assistants_dir / "writer.md").write_text(
        "---\nname: Writer\nbase_model: gpt-4o\n---\nWrite clearly.\n", encoding="utf-8"
    )
    registry.reload()

    with pytest.raises(AssistantError, match="defined in a file"):
        registry.delete_assistant("file:writer")
    with pytest.raises(AssistantError, match="defined in a file"):
        registry.update_assistant("file:writer", name="Editor")
    assert registry.get_assistant_by_key("file:writer") is not None
