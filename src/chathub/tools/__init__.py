from typing import Callable

from chathub.preferences import PreferencesStore
from chathub.tools.calculator import make_calculator_tool
from chathub.tools.image import (
    IMAGE_DESCRIPTION,
    make_image_generation_tool,
    validate_image_generation,
)
from chathub.tools.memory import MEMORY_DESCRIPTION, make_memory_tool, validate_memory
from chathub.tools.registry import (
    Tool,
    ToolContext,
    ToolDescriptor,
    ToolRegistry,
)
from chathub.tools.search import (
    SEARCH_DESCRIPTION,
    engine_label,
    make_web_search_tool,
    validate_web_search,
)

OpenSettings = Callable[[str], None]


def build_default_registry(
    preferences: PreferencesStore,
    open_settings: OpenSettings | None = None,
) -> ToolRegistry:
    """Registry with web_search, image_generation, memory and calculator."""

    def _opener(section: str) -> Callable[[], None] | None:
        if open_settings is None:
            return None
        return lambda: open_settings(section)

    registry = ToolRegistry(preferences)
    registry.register(
        ToolDescriptor(
            key="web_search",
            name="Web Search",
            description=SEARCH_DESCRIPTION,
            factory=make_web_search_tool,
            validator=validate_web_search,
            validation_failed_action=_opener("web-search"),
            loading_message=lambda p: f"Searching {engine_label(p)}...",
            result_message=lambda p: f"Results from {engine_label(p)} search",
            render_hint="search_results",
        )
    )
    registry.register(
        ToolDescriptor(
            key="image_generation",
            name="Image Generation",
            description=IMAGE_DESCRIPTION,
            factory=make_image_generation_tool,
            validator=validate_image_generation,
            validation_failed_action=_opener("open-ai"),
            loading_message="Generating image...",
            result_message="Generated image",
            render_hint="image",
        )
    )
    registry.register(
        ToolDescriptor(
            key="memory",
            name="Memory",
            description=MEMORY_DESCRIPTION,
            factory=make_memory_tool,
            validator=validate_memory,
            validation_failed_action=_opener("open-ai"),
            loading_message="Saving to memory...",
            result_message="Updated memory",
            render_hint="memories",
        )
    )
    registry.register(
        ToolDescriptor(
            key="calculator",
            name="Calculator",
            description="Can perform mathematical operations.",
            factory=make_calculator_tool,
            show_in_menu=False,
        )
    )
    return registry


__all__ = [
    "Tool",
    "ToolContext",
    "ToolDescriptor",
    "ToolRegistry",
    "build_default_registry",
]
