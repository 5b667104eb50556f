from __future__ import annotations

import logging
from typing import Any

import httpx

from chathub.preferences import Preferences
from chathub.sessions.schema import ToolInvocation
from chathub.tools.registry import Tool, ToolContext

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"

SEARCH_PROMPT = (
    "Information:\n\n{results}\n\n"
    "Based on the above, answer the given question and cite sources where appropriate. "
    "Remove any XML tags. Do not use the web_search tool again for this question. "
    "Question: {question}"
)

SEARCH_DESCRIPTION = (
    "A search engine optimized for comprehensive, accurate and trusted results. "
    "Useful when you need to answer questions about current events. "
    "Input should be a search query. If you already used this tool for the question, "
    "do not use it again."
)

GOOGLE_FALLBACK = "Google search failed. Ask the user to check the Google search API key."
DUCKDUCKGO_FALLBACK = (
    "Search failed. Do not use the web_search tool now. Ask the user to try again later."
)

WEB_SEARCH_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "input": {"type": "string", "description": "Search query"},
    },
    "required": ["input"],
}


class WebSearchError(RuntimeError):
    pass


async def _get_json(
    url: str,
    params: dict[str, Any],
    client: httpx.AsyncClient | None,
    timeout: float | None,
) -> Any:
    if client is not None:
        resp = await client.get(url, params=params)
    else:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            resp = await own_client.get(url, params=params)
    resp.raise_for_status()
    return resp.json()


async def google_search(
    *,
    query: str,
    api_key: str | None,
    engine_id: str | None,
    num: int = 5,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = 30.0,
) -> list[dict[str, str]]:
    query = (query or "").strip()
    if not query:
        raise WebSearchError("query is required")
    if not api_key or not engine_id:
        raise WebSearchError("Google search API key and engine id are required")

    data = await _get_json(
        GOOGLE_SEARCH_URL,
        {"key": api_key, "cx": engine_id, "q": query, "num": max(1, min(10, num))},
        client,
        timeout,
    )
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []
    return [
        {
            "title": str(item.get("title") or ""),
            "snippet": str(item.get("snippet") or ""),
            "url": str(item.get("link") or ""),
        }
        for item in items
        if isinstance(item, dict)
    ]


def _flatten_topics(topics: list[Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for topic in topics:
        if not isinstance(topic, dict):
            continue
        if "Topics" in topic:
            out.extend(_flatten_topics(topic.get("Topics") or []))
        elif topic.get("FirstURL"):
            out.append(topic)
    return out


async def duckduckgo_search(
    *,
    query: str,
    max_results: int = 5,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = 30.0,
) -> list[dict[str, str]]:
    query = (query or "").strip()
    if not query:
        raise WebSearchError("query is required")

    data = await _get_json(
        DUCKDUCKGO_URL,
        {"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
        client,
        timeout,
    )
    if not isinstance(data, dict):
        return []

    results: list[dict[str, str]] = []
    if data.get("AbstractText") and data.get("AbstractURL"):
        results.append(
            {
                "title": str(data.get("Heading") or query),
                "snippet": str(data["AbstractText"]),
                "url": str(data["AbstractURL"]),
            }
        )
    for topic in _flatten_topics(data.get("RelatedTopics") or []):
        text = str(topic.get("Text") or "")
        results.append(
            {
                "title": text.split(" - ")[0][:120],
                "snippet": text,
                "url": str(topic.get("FirstURL")),
            }
        )
    return results[: max(1, max_results)]


def format_results(results: list[dict[str, str]]) -> str:
    return "\n\n".join(
        f'{idx}. Title: """{r["title"]}"""\n URL: """{r["url"]}"""\n Snippet: """{r["snippet"]}"""'
        for idx, r in enumerate(results, start=1)
    )


async def validate_web_search(preferences: Preferences, api_keys: dict[str, str]) -> bool:
    if preferences.default_web_search_engine == "google" and (
        not preferences.google_search_api_key or not preferences.google_search_engine_id
    ):
        return False
    return True


def engine_label(preferences: Preferences) -> str:
    return "Google" if preferences.default_web_search_engine == "google" else "DuckDuckGo"


def make_web_search_tool(context: ToolContext) -> Tool:
    preferences = context.preferences
    engine = preferences.default_web_search_engine
    timeout = context.config.request_timeout_s

    async def _run(input: str) -> str:
        context.check_cancelled()
        if engine == "google":
            results = await google_search(
                query=input,
                api_key=preferences.google_search_api_key,
                engine_id=preferences.google_search_engine_id,
                client=context.http_client,
                timeout=timeout,
            )
        else:
            results = await duckduckgo_search(
                query=input,
                client=context.http_client,
                timeout=timeout,
            )
        context.check_cancelled()
        if not results:
            raise WebSearchError(f"No results for {input!r}")

        text = format_results(results)
        logger.info(f"web_search ({engine}) returned {len(results)} results")
        context.send_tool_response(
            ToolInvocation(
                tool_name="web_search",
                tool_args={"input": input},
                tool_render_args={"searchResult": text},
                tool_response=text,
            )
        )
        return SEARCH_PROMPT.format(results=text, question=input)

    return Tool(
        name="web_search",
        description=SEARCH_DESCRIPTION,
        parameters=WEB_SEARCH_TOOL_SCHEMA,
        implementation=_run,
        fallback_message=GOOGLE_FALLBACK if engine == "google" else DUCKDUCKGO_FALLBACK,
    )
