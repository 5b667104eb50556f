import logging
from typing import Any

from openai import AsyncOpenAI

from chathub.preferences import Preferences
from chathub.sessions.schema import ToolInvocation
from chathub.tools.registry import Tool, ToolContext

logger = logging.getLogger(__name__)

IMAGE_DESCRIPTION = (
    "Useful for when you need to generate an image. "
    "Input should be a detailed description of the image."
)

IMAGE_FALLBACK = "Image generation failed. Tell the user the image could not be created."

IMAGE_GENERATION_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "imageDescription": {
            "type": "string",
            "description": "A detailed description of the desired image.",
        },
    },
    "required": ["imageDescription"],
}


async def validate_image_generation(preferences: Preferences, api_keys: dict[str, str]) -> bool:
    return bool(api_keys.get("openai"))


def make_image_generation_tool(context: ToolContext) -> Tool:
    model = context.config.image_model

    async def _run(imageDescription: str) -> str:
        context.check_cancelled()
        client = AsyncOpenAI(
            api_key=context.api_keys.get("openai"),
            timeout=context.config.request_timeout_s,
        )
        response = await client.images.generate(
            model=model,
            prompt=imageDescription,
            n=1,
            size="1024x1024",
        )
        context.check_cancelled()

        url = response.data[0].url if response.data else None
        if not url:
            raise RuntimeError("Image API returned no image")

        logger.info(f"Generated image with {model}")
        context.send_tool_response(
            ToolInvocation(
                tool_name="image_generation",
                tool_args={"imageDescription": imageDescription},
                tool_render_args={"image": url},
                tool_response=url,
            )
        )
        return "The image has been generated and shown to the user. Do not repeat the URL."

    return Tool(
        name="image_generation",
        description=IMAGE_DESCRIPTION,
        parameters=IMAGE_GENERATION_TOOL_SCHEMA,
        implementation=_run,
        fallback_message=IMAGE_FALLBACK,
    )
