import asyncio

import pytest

from chathub.errors import MessageNotFoundError, SessionNotFoundError, TurnInProgressError
from chathub.sessions import LLMInputProps, StopReason, ToolInvocation
from chathub.tools import search
from chathub.tools.registry import Tool, ToolDescriptor
from common.llm import LLMAuthenticationError
from fakes import Stall


def _props(hub, session_id, text):
    assistant, _ = hub.assistants.default_assistant()
    return LLMInputProps(session_id=session_id, input=text, assistant=assistant)


@pytest.fixture
def fake_duckduckgo(monkeypatch):
    queries = []

    async def _search(*, query, client=None, timeout=None, max_results=5):
        queries.append(query)
        return [{"title": "Forecast", "snippet": "Sunny all day", "url": "https://weather.example"}]

    monkeypatch.setattr(search, "duckduckgo_search", _search)
    return queries


def test_hello_without_tools_finishes(make_hub):
    hub, fake = make_hub(["Hello there, how can I help?"])
    ended = []
    hub.hooks.on_turn_end.append(ended.append)

    message = asyncio.run(hub.send("Hello"))

    assert message.stop is True
    assert message.stop_reason == StopReason.FINISH
    assert message.raw_ai == "Hello there, how can I help?"
    assert message.tools == []
    assert message.is_loading is False
    assert fake.calls[0]["tools"] is None
    assert [m.id for m in ended] == [message.id]

    session = hub.sessions.list_sessions()[0]
    assert [m.id for m in session.messages] == [message.id]
    assert session.title == "Hello"
    stored = hub.storage.get("chat-sessions")
    assert stored[0]["messages"][0]["stopReason"] == "finish"


def test_empty_input_starts_no_turn(make_hub):
    hub, fake = make_hub()
    session_id = hub.sessions.create_session().id

    result = asyncio.run(hub.coordinator.run_turn(_props(hub, session_id, "   ")))

    assert result is None
    assert hub.sessions.get_session(session_id).messages == []
    assert fake.calls == []


def test_unknown_session_raises(make_hub):
    hub, _ = make_hub()
    with pytest.raises(SessionNotFoundError):
        asyncio.run(hub.coordinator.run_turn(_props(hub, "missing", "Hello")))


def test_google_search_without_key_fails_before_model_call(make_hub):
    hub, fake = make_hub(["unused"])
    opened = []
    hub.hooks.on_settings_requested.append(opened.append)
    hub.preferences.update_preferences(
        default_plugins=["web_search"], default_web_search_engine="google"
    )

    message = asyncio.run(hub.send("latest news"))

    assert message.stop_reason == StopReason.APIKEY
    assert fake.calls == []
    assert opened == ["web-search"]


def test_missing_provider_key_fails_with_apikey(make_hub):
    hub, fake = make_hub(["unused"], env_api_keys={})

    message = asyncio.run(hub.send("Hello"))

    assert message.stop_reason == StopReason.APIKEY
    assert fake.calls == []


def test_provider_auth_error_maps_to_apikey(make_hub):
    hub, _ = make_hub([LLMAuthenticationError("invalid key")])
    message = asyncio.run(hub.send("Hello"))
    assert message.stop_reason == StopReason.APIKEY


def test_model_error_maps_to_error(make_hub):
    hub, _ = make_hub([RuntimeError("upstream exploded")])
    message = asyncio.run(hub.send("Hello"))
    assert message.stop_reason == StopReason.ERROR
    assert message.is_loading is False


def test_stop_generation_cancels_turn(make_hub):
    hub, fake = make_hub([Stall()])
    session_id = hub.sessions.create_session().id

    async def scenario():
        task = asyncio.create_task(hub.send("Hello", session_id=session_id))
        await fake.started.wait()
        assert hub.coordinator.is_generating(session_id)
        assert hub.coordinator.stop_generation() is True
        return await task

    message = asyncio.run(scenario())

    assert message.stop_reason == StopReason.CANCEL
    assert message.tools == []
    assert not hub.coordinator.is_generating()
    assert hub.sessions.get_session(session_id).messages[0].stop_reason == StopReason.CANCEL


def test_cancel_keeps_partial_text(make_hub):
    hub, fake = make_hub([Stall("Partial answer")])
    session_id = hub.sessions.create_session().id

    async def scenario():
        task = asyncio.create_task(hub.send("Hello", session_id=session_id))
        await fake.started.wait()
        live = hub.coordinator.current_message(session_id)
        hub.coordinator.stop_generation(session_id)
        return live, await task

    live, message = asyncio.run(scenario())

    assert live.is_loading is True
    assert live.raw_ai == "Partial answer"
    assert message.raw_ai == "Partial answer"
    assert message.stop_reason == StopReason.CANCEL


def test_stop_generation_without_turn_returns_false(make_hub):
    hub, _ = make_hub()
    assert hub.coordinator.stop_generation() is False


def test_turn_timeout_ends_with_error(make_hub):
    hub, _ = make_hub([Stall("Thinking")], turn_timeout_s=0.05)

    message = asyncio.run(hub.send("Hello"))

    assert message.stop_reason == StopReason.ERROR
    assert message.raw_ai == "Thinking"


def test_second_turn_on_busy_session_is_rejected(make_hub):
    hub, fake = make_hub([Stall()])
    session_id = hub.sessions.create_session().id

    async def scenario():
        task = asyncio.create_task(hub.coordinator.run_turn(_props(hub, session_id, "first")))
        await fake.started.wait()
        with pytest.raises(TurnInProgressError):
            await hub.coordinator.run_turn(_props(hub, session_id, "second"))
        loading = [m for m in hub.sessions.get_session(session_id).messages if m.is_loading]
        hub.coordinator.stop_generation(session_id)
        return loading, await task

    loading, message = asyncio.run(scenario())

    assert len(loading) == 1
    assert len(hub.sessions.get_session(session_id).messages) == 1
    assert message.raw_human == "first"


def test_web_search_result_merged_into_message(make_hub, fake_duckduckgo):
    hub, fake = make_hub([[("web_search", {"input": "weather today"})], "It is sunny."])
    hub.preferences.update_preferences(default_plugins=["web_search"])

    message = asyncio.run(hub.send("What's the weather?"))

    assert message.stop_reason == StopReason.FINISH
    assert message.raw_ai == "It is sunny."
    assert fake_duckduckgo == ["weather today"]
    assert len(message.tools) == 1
    tool = message.tools[0]
    assert tool.tool_name == "web_search"
    assert tool.tool_loading is False
    assert tool.tool_args == {"input": "weather today"}
    assert "Sunny all day" in tool.tool_render_args["searchResult"]

    assert fake.calls[0]["tools"][0]["function"]["name"] == "web_search"
    followup = fake.calls[1]["messages"]
    assert followup[-1]["role"] == "tool"
    assert "Sunny all day" in followup[-1]["content"]


def test_repeated_tool_calls_stop_with_recursion(make_hub, fake_duckduckgo):
    hub, _ = make_hub(
        [[("web_search", {"input": "a"})], [("web_search", {"input": "b"})]],
        max_tool_calls_per_tool=1,
    )
    hub.preferences.update_preferences(default_plugins=["web_search"])

    message = asyncio.run(hub.send("search twice"))

    assert message.stop_reason == StopReason.RECURSION
    assert [t.tool_name for t in message.tools] == ["web_search"]
    assert all(not t.tool_loading for t in message.tools)


def test_iteration_limit_stops_with_recursion(make_hub, fake_duckduckgo):
    hub, _ = make_hub([[("web_search", {"input": "a"})]], max_iterations=1)
    hub.preferences.update_preferences(default_plugins=["web_search"])

    message = asyncio.run(hub.send("keep searching"))

    assert message.stop_reason == StopReason.RECURSION


def test_duplicate_tool_names_are_last_write_wins(make_hub):
    hub, fake = make_hub()
    session_id = hub.sessions.create_session().id
    seen = {}

    async def round(**params):
        coordinator = hub.coordinator
        generation = coordinator.active_generation(session_id)
        coordinator.add_tool(generation, "web_search")
        coordinator.add_tool(generation, "memory")
        coordinator.handle_tool_response(generation, {"toolName": "web_search", "toolResponse": "first"})
        coordinator.handle_tool_response(generation, {"toolName": "web_search", "toolResponse": "second"})
        seen["live"] = coordinator.current_message(session_id).tools
        return "ok"

    fake.rounds.append(round)
    message = asyncio.run(hub.send("hi", session_id=session_id))

    assert [t.tool_name for t in seen["live"]] == ["web_search", "memory"]
    assert seen["live"][0].tool_loading is False
    assert seen["live"][1].tool_loading is True
    assert [t.tool_name for t in message.tools] == ["web_search", "memory"]
    assert message.tools[0].tool_response == "second"
    assert all(not t.tool_loading for t in message.tools)


def test_tool_callbacks_after_finish_are_ignored(make_hub):
    hub, _ = make_hub(["Done."])
    captured = {}

    def factory_for(key):
        def factory(context):
            captured[key] = context.send_tool_response
            return Tool(
                name=key,
                description=key,
                parameters={"type": "object", "properties": {}},
                implementation=lambda: "ok",
            )

        return factory

    for key in ("web_search", "memory"):
        hub.tools.register(
            ToolDescriptor(key=key, name=key, description=key, factory=factory_for(key))
        )
    hub.preferences.update_preferences(default_plugins=["web_search", "memory"])

    message = asyncio.run(hub.send("Remember that I like tea"))
    before = hub.storage.get("chat-sessions")

    captured["web_search"](ToolInvocation(tool_name="web_search", tool_response="late"))
    captured["memory"](ToolInvocation(tool_name="memory", tool_response={"memories": ["tea"]}))

    assert hub.sessions.get_session(message.session_id).messages[0].tools == []
    assert hub.storage.get("chat-sessions") == before


def test_history_and_memories_reach_the_model(make_hub):
    hub, fake = make_hub(["Hi!", "Fine, thanks."])
    hub.preferences.set_memories(["Likes tea"])

    first = asyncio.run(hub.send("Hello"))
    asyncio.run(hub.send("How are you?", session_id=first.session_id))

    messages = fake.calls[1]["messages"]
    assert "Likes tea" in messages[0]["content"]
    assert "previous conversations" in messages[0]["content"]
    assert messages[1:] == [
        {"role": "user", "content": "Hello"},
        {"role": "assistant", "content": "Hi!"},
        {"role": "user", "content": "How are you?"},
    ]


def test_regenerate_replaces_message_in_place(make_hub):
    hub, fake = make_hub(["First answer", "Second answer"])

    first = asyncio.run(hub.send("Tell me a joke"))
    second = asyncio.run(hub.coordinator.regenerate(first.session_id, first.id))

    session = hub.sessions.get_session(first.session_id)
    assert second.id == first.id
    assert [m.id for m in session.messages] == [first.id]
    assert session.messages[0].raw_ai == "Second answer"
    assert session.messages[0].created_at == first.created_at
    assert len(fake.calls[1]["messages"]) == 2


def test_regenerate_unknown_message_raises(make_hub):
    hub, _ = make_hub()
    session_id = hub.sessions.create_session().id
    with pytest.raises(MessageNotFoundError):
        asyncio.run(hub.coordinator.regenerate(session_id, "nope"))


def test_generate_title_for_session(make_hub):
    hub, fake = make_hub(["Mix flour, eggs and milk.", '"Pancake Recipe"'])
    message = asyncio.run(hub.send("How do I make pancakes?"))

    title = asyncio.run(hub.coordinator.generate_title_for_session(message.session_id))

    assert title == "Pancake Recipe"
    assert hub.sessions.get_session(message.session_id).title == "Pancake Recipe"
    assert fake.calls[1]["stream"] is False


def test_title_generation_errors_are_ignored(make_hub):
    hub, _ = make_hub(["Mix flour, eggs and milk.", RuntimeError("rate limited")])
    message = asyncio.run(hub.send("How do I make pancakes?"))

    title = asyncio.run(hub.coordinator.generate_title_for_session(message.session_id))

    assert title is None
    assert hub.sessions.get_session(message.session_id).title == "How do I make pancakes?"


def _enable_tool(hub, factory, validator=None):
    hub.tools.register(
        ToolDescriptor(
            key="web_search",
            name="web_search",
            description="search",
            factory=factory,
            validator=validator,
        )
    )
    hub.preferences.update_preferences(default_plugins=["web_search"])


def test_raising_validator_fails_turn_and_frees_session(make_hub):
    hub, fake = make_hub(["Back again."])
    session_id = hub.sessions.create_session().id

    async def explode(preferences, api_keys):
        raise RuntimeError("validator exploded")

    _enable_tool(hub, factory=lambda context: None, validator=explode)

    message = asyncio.run(hub.send("Hello", session_id=session_id))

    assert message.stop_reason == StopReason.ERROR
    assert message.stop is True
    assert message.is_loading is False
    assert fake.calls == []
    assert not hub.coordinator.is_generating(session_id)
    stored = hub.sessions.get_session(session_id).messages[0]
    assert (stored.is_loading, stored.stop, stored.stop_reason) == (False, True, StopReason.ERROR)

    hub.preferences.update_preferences(default_plugins=[])
    second = asyncio.run(hub.send("Hello again", session_id=session_id))
    assert second.stop_reason == StopReason.FINISH


def test_caller_cancel_during_validation_ends_turn(make_hub):
    hub, fake = make_hub()
    session_id = hub.sessions.create_session().id
    state = {}

    async def slow_validator(preferences, api_keys):
        state["entered"].set()
        await asyncio.Event().wait()
        return True

    _enable_tool(hub, factory=lambda context: None, validator=slow_validator)

    async def scenario():
        state["entered"] = asyncio.Event()
        task = asyncio.create_task(hub.send("Hello", session_id=session_id))
        await state["entered"].wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert not hub.coordinator.is_generating(session_id)
    stored = hub.sessions.get_session(session_id).messages[0]
    assert (stored.is_loading, stored.stop, stored.stop_reason) == (False, True, StopReason.CANCEL)
    assert fake.calls == []


def test_stop_closes_tool_whose_callback_never_arrives(make_hub):
    hub, _ = make_hub([[("web_search", {"input": "weather"})]])
    session_id = hub.sessions.create_session().id
    state = {}

    def factory(context):
        async def _run(input):
            state["send"] = context.send_tool_response
            state["entered"].set()
            await asyncio.Event().wait()

        return Tool(
            name="web_search",
            description="search",
            parameters=search.WEB_SEARCH_TOOL_SCHEMA,
            implementation=_run,
        )

    _enable_tool(hub, factory=factory)

    async def scenario():
        state["entered"] = asyncio.Event()
        task = asyncio.create_task(hub.send("Weather?", session_id=session_id))
        await state["entered"].wait()
        live = hub.coordinator.current_message(session_id)
        hub.coordinator.stop_generation(session_id)
        return live, await task

    live, message = asyncio.run(scenario())

    assert [(t.tool_name, t.tool_loading) for t in live.tools] == [("web_search", True)]
    assert message.stop_reason == StopReason.CANCEL
    assert [(t.tool_name, t.tool_loading, t.tool_response) for t in message.tools] == [
        ("web_search", False, None)
    ]

    state["send"](ToolInvocation(tool_name="web_search", tool_response="late"))

    stored = hub.sessions.get_session(session_id).messages[0]
    assert [(t.tool_name, t.tool_loading, t.tool_response) for t in stored.tools] == [
        ("web_search", False, None)
    ]


def test_unresolvable_assistant_fails_with_apikey(make_hub):
    hub, fake = make_hub(["unused"])

    message = asyncio.run(hub.send("Hello", assistant_key="no-such-assistant"))

    assert message.stop_reason == StopReason.APIKEY
    assert message.is_loading is False
    assert fake.calls == []
    session = hub.sessions.get_session(message.session_id)
    assert [m.id for m in session.messages] == [message.id]
