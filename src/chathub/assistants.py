import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from chathub.catalog import ModelCatalog, ModelSpec
from chathub.errors import AssistantError
from chathub.preferences import Preferences, PreferencesStore
from chathub.sessions.schema import Assistant
from chathub.storage import KeyValueStore
from common.ids import generate_id

logger = logging.getLogger(__name__)

ASSISTANTS_KEY = "assistants"


def _parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text

    for idx in range(1, len(lines)):
        if lines[idx].strip() == "---":
            header = "\n".join(lines[1:idx])
            body = "\n".join(lines[idx + 1 :]).strip()
            data = yaml.safe_load(header) or {}
            return data, body

    return {}, text


class AssistantRegistry:
    """Base assistants (one per catalog model) plus user-defined ones.

    Custom assistants come from storage and from Markdown files under
    ``<root>/.chathub/assistants``; a file's YAML front-matter carries
    ``name`` and ``base_model`` and its body is the system prompt.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        preferences: PreferencesStore,
        storage: KeyValueStore,
        root_path: str | Path | None = None,
    ):
        self.catalog = catalog
        self.preferences = preferences
        self.storage = storage
        self.root_path = Path(root_path) if root_path is not None else None
        self._custom: list[Assistant] = self._load_stored()
        self._file_assistants: list[Assistant] = []

    def _load_stored(self) -> list[Assistant]:
        assistants = []
        for item in self.storage.get(ASSISTANTS_KEY, []) or []:
            try:
                assistants.append(Assistant.model_validate({**item, "type": "custom"}))
            except ValidationError as e:
                logger.error(f"Skipping invalid stored assistant: {e}")
        return assistants

    def _save(self) -> None:
        self.storage.set(
            ASSISTANTS_KEY,
            [a.model_dump(mode="json", by_alias=True) for a in self._custom],
        )

    def reload(self) -> None:
        assistants: list[Assistant] = []
        if self.root_path is not None:
            base_dir = self.root_path / ".chathub" / "assistants"
            if base_dir.exists():
                for path in sorted(base_dir.rglob("*.md")):
                    frontmatter, body = _parse_frontmatter(path.read_text(encoding="utf-8"))
                    base_model = frontmatter.get("base_model") or frontmatter.get("baseModel")
                    if not base_model:
                        logger.warning(f"Assistant file {path} has no base_model, skipping")
                        continue
                    name = frontmatter.get("name") or path.stem
                    assistants.append(
                        Assistant(
                            name=name,
                            key=frontmatter.get("key") or f"file:{path.stem}",
                            base_model=base_model,
                            system_prompt=body,
                            type="custom",
                        )
                    )
        self._file_assistants = assistants
        logger.info(f"Loaded {len(assistants)} assistants from files")

    def _base_assistants(self, preferences: Preferences) -> list[Assistant]:
        return [
            Assistant(
                name=model.name,
                key=model.key,
                base_model=model.key,
                system_prompt=preferences.system_prompt,
                type="base",
            )
            for model in self.catalog.list()
        ]

    @property
    def assistants(self) -> list[Assistant]:
        return [
            *self._base_assistants(self.preferences.preferences),
            *self._custom,
            *self._file_assistants,
        ]

    def get_assistants_by_type(self, type: str) -> list[Assistant]:
        return [a for a in self.assistants if a.type == type]

    def get_assistant_by_key(self, key: str) -> tuple[Assistant, ModelSpec] | None:
        assistant = next((a for a in self.assistants if a.key == key), None)
        if assistant is None:
            return None
        model = self.catalog.get_model_by_key(assistant.base_model)
        if model is None:
            return None
        return assistant, model

    def create_assistant(self, name: str, system_prompt: str, base_model: str) -> Assistant:
        if self.catalog.get_model_by_key(base_model) is None:
            raise AssistantError(f"Unknown base model: {base_model}")
        assistant = Assistant(
            name=name,
            system_prompt=system_prompt,
            base_model=base_model,
            key=generate_id(),
            type="custom",
        )
        self._custom.append(assistant)
        self._save()
        logger.info(f"Created assistant {assistant.key} ({name})")
        return assistant

    def _reject_file_assistant(self, key: str) -> None:
        if any(a.key == key for a in self._file_assistants):
            raise AssistantError(f"Assistant {key} is defined in a file; edit or remove the file instead")

    def update_assistant(self, key: str, **changes: Any) -> Assistant:
        self._reject_file_assistant(key)
        for idx, assistant in enumerate(self._custom):
            if assistant.key == key:
                changes.pop("key", None)
                changes.pop("type", None)
                updated = assistant.model_copy(update=changes)
                self._custom[idx] = updated
                self._save()
                return updated
        raise AssistantError(f"Custom assistant {key} not found")

    def delete_assistant(self, key: str) -> None:
        if any(a.key == key for a in self._base_assistants(self.preferences.preferences)):
            raise AssistantError(f"Base assistant {key} cannot be deleted")
        self._reject_file_assistant(key)
        if not any(a.key == key for a in self._custom):
            raise AssistantError(f"Custom assistant {key} not found")

        self._custom = [a for a in self._custom if a.key != key]
        self._save()
        logger.info(f"Deleted assistant {key}")

        if self.preferences.preferences.default_assistant == key:
            self.preferences.update_preferences(
                default_assistant=Preferences.model_fields["default_assistant"].default
            )

    def select_assistant(self, key: str) -> Assistant:
        found = self.get_assistant_by_key(key)
        if found is None:
            raise AssistantError(f"Assistant {key} not found")
        self.preferences.update_preferences(default_assistant=key)
        return found[0]

    def default_assistant(self) -> tuple[Assistant, ModelSpec] | None:
        key = self.preferences.preferences.default_assistant
        found = self.get_assistant_by_key(key)
        if found is None and key != Preferences.model_fields["default_assistant"].default:
            logger.warning(f"Default assistant {key} not found, resetting")
            self.preferences.update_preferences(
                default_assistant=Preferences.model_fields["default_assistant"].default
            )
            found = self.get_assistant_by_key(self.preferences.preferences.default_assistant)
        return found
