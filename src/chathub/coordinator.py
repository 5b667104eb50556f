"""Drives one assistant turn from user input to a finalized message.

A turn moves Preparing -> Streaming -> Finished/Cancelled/Failed. Every turn
gets a generation number; tool callbacks carry it and are dropped once the
turn they belong to is terminal.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chathub.assistants import AssistantRegistry
from chathub.catalog import ModelCatalog, ModelSpec, litellm_model_name, requires_api_key
from chathub.config import ChatConfig
from chathub.errors import MessageNotFoundError, SessionNotFoundError, TurnInProgressError
from chathub.preferences import PreferencesStore
from chathub.prompts import build_messages, build_title_messages
from chathub.runtime.hooks import CoordinatorHooks
from chathub.sessions import Assistant, LLMInputProps, Message, SessionStore, StopReason, ToolInvocation
from chathub.tools.registry import Tool, ToolContext, ToolRegistry
from common import llm
from common.agent_loop import LoopConfig, ToolRecursionError, run_loop
from common.cancellation import CancellationToken, TurnCancelled
from common.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    AssistantResponseStartEvent,
    Event,
    EventEmitter,
    ToolCallEvent,
)
from common.ids import generate_id

logger = logging.getLogger(__name__)

CompletionFn = Callable[..., Awaitable[Any]]

TITLE_MAX_TOKENS = 50


@dataclass
class ActiveTurn:
    generation: int
    session_id: str
    message: Message
    token: CancellationToken
    task: asyncio.Task | None = None
    timer: asyncio.TimerHandle | None = None
    finished: bool = False
    round_text: str = ""


class ResponseCoordinator:
    def __init__(
        self,
        sessions: SessionStore,
        preferences: PreferencesStore,
        tools: ToolRegistry,
        assistants: AssistantRegistry,
        catalog: ModelCatalog | None = None,
        config: ChatConfig | None = None,
        completion_fn: CompletionFn | None = None,
        hooks: CoordinatorHooks | None = None,
    ):
        self.sessions = sessions
        self.preferences = preferences
        self.tools = tools
        self.assistants = assistants
        self.catalog = catalog or assistants.catalog
        self.config = config or ChatConfig()
        self.completion_fn = completion_fn or llm.acompletion
        self.hooks = hooks or CoordinatorHooks()
        self._generations = itertools.count(1)
        self._active: dict[str, ActiveTurn] = {}

    # -- queries ---------------------------------------------------------

    def is_generating(self, session_id: str | None = None) -> bool:
        if session_id is None:
            return bool(self._active)
        return session_id in self._active

    def current_message(self, session_id: str) -> Message | None:
        turn = self._active.get(session_id)
        if turn is None:
            return None
        return turn.message.model_copy(deep=True)

    def active_generation(self, session_id: str) -> int | None:
        turn = self._active.get(session_id)
        return turn.generation if turn is not None else None

    def _turn_for(self, generation: int) -> ActiveTurn | None:
        for turn in self._active.values():
            if turn.generation == generation:
                return turn
        return None

    # -- live updates ----------------------------------------------------

    def _publish(self, turn: ActiveTurn) -> None:
        self.sessions.upsert_message(turn.session_id, turn.message, persist=False)
        self.hooks.fire_message_update(turn.message.model_copy(deep=True))

    def add_tool(
        self,
        generation: int,
        tool_name: str,
        tool_args: Any = None,
        loading: bool = True,
    ) -> None:
        turn = self._turn_for(generation)
        if turn is None or turn.finished:
            logger.debug(f"Ignoring add_tool({tool_name}) for finished turn {generation}")
            return
        entry = ToolInvocation(tool_name=tool_name, tool_loading=loading, tool_args=tool_args)
        self._merge_tool(turn, entry)
        self._publish(turn)

    def handle_tool_response(self, generation: int, payload: ToolInvocation | dict) -> None:
        turn = self._turn_for(generation)
        if turn is None or turn.finished:
            logger.debug(f"Ignoring tool response for finished turn {generation}")
            return
        tool = payload if isinstance(payload, ToolInvocation) else ToolInvocation.model_validate(payload)
        tool = tool.model_copy(update={"tool_loading": False})
        self._merge_tool(turn, tool)
        self._publish(turn)
        self.hooks.fire_tool_response(turn.session_id, tool.model_copy(deep=True))

    @staticmethod
    def _merge_tool(turn: ActiveTurn, tool: ToolInvocation) -> None:
        tools = turn.message.tools
        for idx, existing in enumerate(tools):
            if existing.tool_name == tool.tool_name:
                tools[idx] = tool
                return
        tools.append(tool)

    def _on_event(self, turn: ActiveTurn, event: Event) -> None:
        if turn.finished:
            return
        if isinstance(event, AssistantResponseStartEvent):
            turn.round_text = ""
        elif isinstance(event, AssistantDeltaEvent):
            turn.round_text += event.text
            turn.message.raw_ai = turn.round_text
            self._publish(turn)
        elif isinstance(event, AssistantMessageEvent):
            turn.message.raw_ai = event.content
        elif isinstance(event, ToolCallEvent):
            self.add_tool(turn.generation, event.tool_name, tool_args=event.args)

    # -- terminal transitions --------------------------------------------

    def _finalize(self, turn: ActiveTurn, reason: StopReason) -> Message:
        if turn.finished:
            return turn.message
        turn.finished = True
        if turn.timer is not None:
            turn.timer.cancel()

        message = turn.message
        message.is_loading = False
        message.stop = True
        message.stop_reason = reason
        for tool in message.tools:
            tool.tool_loading = False

        if self._active.get(turn.session_id) is turn:
            del self._active[turn.session_id]

        try:
            self.sessions.upsert_message(turn.session_id, message, persist=True)
        except SessionNotFoundError:
            logger.warning(f"Session {turn.session_id} was removed during turn {turn.generation}")

        logger.info(
            f"Turn {turn.generation} in session {turn.session_id} ended: {reason.value}"
        )
        final = message.model_copy(deep=True)
        self.hooks.fire_message_update(final)
        self.hooks.fire_turn_end(final)
        return message

    def _abort(self, turn: ActiveTurn, reason: StopReason) -> None:
        turn.token.cancel(reason.value)
        if turn.task is not None and not turn.task.done():
            turn.task.cancel()
        self._finalize(turn, reason)

    def _expire(self, turn: ActiveTurn) -> None:
        if turn.finished:
            return
        logger.warning(
            f"Turn {turn.generation} timed out after {self.config.turn_timeout_s}s"
        )
        self._abort(turn, StopReason.ERROR)

    def stop_generation(self, session_id: str | None = None) -> bool:
        """Cancel the in-flight turn of one session, or of every session."""
        if session_id is None:
            turns = list(self._active.values())
        else:
            turn = self._active.get(session_id)
            turns = [turn] if turn is not None else []

        for turn in turns:
            logger.info(f"Stopping turn {turn.generation} in session {turn.session_id}")
            self._abort(turn, StopReason.CANCEL)
        return bool(turns)

    # -- turn execution --------------------------------------------------

    def _check_credentials(self, turn: ActiveTurn) -> tuple[ModelSpec, str | None] | None:
        props = turn.message.input_props
        model = self.catalog.get_model_by_key(props.assistant.base_model)
        if model is None:
            logger.warning(f"Unknown model {props.assistant.base_model} for assistant {props.assistant.key}")
            return None
        api_key = self.preferences.get_api_key(model.base_model)
        if requires_api_key(model) and not api_key:
            logger.warning(f"No API key configured for {model.base_model}")
            return None
        return model, api_key

    async def _prepare_tools(self, turn: ActiveTurn, model: ModelSpec) -> dict[str, Tool] | None:
        preferences = self.preferences.preferences
        descriptors = self.tools.tools_for_model(model, preferences.default_plugins)
        tools: dict[str, Tool] = {}
        for descriptor in descriptors:
            if not await self.tools.validate(descriptor):
                return None
            context = ToolContext(
                preferences=preferences,
                api_keys=self.preferences.api_keys,
                update_preferences=self.preferences.update_preferences,
                send_tool_response=functools.partial(self.handle_tool_response, turn.generation),
                cancel_token=turn.token,
                config=self.config,
                completion_fn=self.completion_fn,
            )
            tool = self.tools.instantiate(descriptor, context)
            tools[tool.name] = tool
        return tools

    def _loop_config(self, model: ModelSpec, api_key: str | None, use_tools: bool) -> LoopConfig:
        preferences = self.preferences.preferences
        return LoopConfig(
            model=litellm_model_name(model),
            max_iterations=self.config.max_iterations,
            max_tool_calls_per_tool=self.config.max_tool_calls_per_tool,
            temperature=preferences.temperature,
            max_tokens=min(preferences.max_tokens, model.max_output_tokens),
            top_p=preferences.top_p,
            top_k=preferences.top_k if model.base_model in ("anthropic", "gemini", "ollama") else None,
            stream=self.config.stream,
            use_tools=use_tools,
            api_key=api_key,
            api_base=preferences.ollama_base_url if model.base_model == "ollama" else None,
            timeout=self.config.request_timeout_s,
        )

    async def _run_model(
        self,
        turn: ActiveTurn,
        messages: list[dict],
        tools: dict[str, Tool],
        loop_config: LoopConfig,
    ) -> StopReason:
        async def execute_tool(name: str, args: dict) -> str:
            tool = tools.get(name)
            if tool is None:
                logger.warning(f"Model requested unknown tool {name}")
                return f"Unknown tool: {name}"
            return await tool.invoke(args)

        try:
            result = await run_loop(
                messages,
                [tool.schema() for tool in tools.values()],
                execute_tool,
                loop_config,
                emitter=EventEmitter(functools.partial(self._on_event, turn)),
                cancel_token=turn.token,
                completion_fn=self.completion_fn,
            )
        except TurnCancelled as e:
            return StopReason(e.reason)
        except ToolRecursionError as e:
            logger.warning(f"Turn {turn.generation} stopped: {e}")
            return StopReason.RECURSION
        except llm.LLMAuthenticationError as e:
            logger.warning(f"Provider rejected credentials: {e}")
            return StopReason.APIKEY
        except Exception as e:
            logger.exception(f"Turn {turn.generation} failed: {e}")
            return StopReason.ERROR

        if not turn.finished:
            turn.message.raw_ai = result.final_response
        return StopReason.FINISH

    def _start_turn(self, props: LLMInputProps, input: str) -> ActiveTurn:
        session = self.sessions.require_session(props.session_id)
        if props.session_id in self._active or any(m.is_loading for m in session.messages):
            raise TurnInProgressError(props.session_id)

        message_id = props.message_id or generate_id()
        previous = next((m for m in session.messages if m.id == message_id), None)
        message = Message(
            id=message_id,
            session_id=props.session_id,
            raw_human=input,
            is_loading=True,
            image=props.image,
            input_props=props.model_copy(update={"message_id": message_id}),
            tools=[],
        )
        if previous is not None:
            message.created_at = previous.created_at

        turn = ActiveTurn(
            generation=next(self._generations),
            session_id=props.session_id,
            message=message,
            token=CancellationToken(),
        )
        self._active[props.session_id] = turn
        logger.info(f"Turn {turn.generation} started in session {props.session_id}")
        self._publish(turn)
        return turn

    async def run_turn(self, props: LLMInputProps) -> Message | None:
        """Run one turn to completion and return the finalized message.

        Returns None without starting a turn when the input is empty.
        Turn-level failures are recorded as ``stop_reason`` on the message.
        """
        input = (props.input or "").strip()
        if not input:
            return None

        turn = self._start_turn(props, input)
        try:
            return await self._drive(turn, props, input)
        except asyncio.CancelledError:
            # run_turn itself was cancelled by its caller
            self._abort(turn, StopReason.CANCEL)
            raise
        except Exception as e:
            logger.exception(f"Turn {turn.generation} failed before completion: {e}")
            return self._finalize(turn, StopReason.ERROR)

    async def _drive(self, turn: ActiveTurn, props: LLMInputProps, input: str) -> Message:
        if self.config.turn_timeout_s:
            turn.timer = asyncio.get_running_loop().call_later(
                self.config.turn_timeout_s, self._expire, turn
            )

        credentials = self._check_credentials(turn)
        if credentials is None:
            return self._finalize(turn, StopReason.APIKEY)
        model, api_key = credentials

        tools = await self._prepare_tools(turn, model)
        if turn.finished:
            return turn.message
        if tools is None:
            return self._finalize(turn, StopReason.APIKEY)

        session = self.sessions.require_session(turn.session_id)
        messages = build_messages(
            assistant=props.assistant,
            preferences=self.preferences.preferences,
            history=session.messages,
            input=input,
            context=props.context,
            image=props.image,
            exclude_id=turn.message.id,
        )
        loop_config = self._loop_config(model, api_key, use_tools=bool(tools))

        turn.task = asyncio.create_task(self._run_model(turn, messages, tools, loop_config))
        try:
            reason = await turn.task
        except asyncio.CancelledError:
            if not turn.token.cancelled:
                raise
            reason = StopReason(turn.token.reason)

        return self._finalize(turn, reason)

    async def regenerate(
        self,
        session_id: str,
        message_id: str,
        assistant: Assistant | None = None,
    ) -> Message | None:
        session = self.sessions.require_session(session_id)
        message = next((m for m in session.messages if m.id == message_id), None)
        if message is None:
            raise MessageNotFoundError(session_id, message_id)

        if message.input_props is not None:
            props = message.input_props.model_copy(update={"message_id": message_id})
        else:
            found = self.assistants.default_assistant()
            if found is None:
                logger.warning(f"No assistant available to regenerate message {message_id}")
                return None
            props = LLMInputProps(
                session_id=session_id,
                message_id=message_id,
                input=message.raw_human,
                image=message.image,
                assistant=found[0],
            )
        if assistant is not None:
            props = props.model_copy(update={"assistant": assistant})
        return await self.run_turn(props)

    async def generate_title_for_session(self, session_id: str) -> str | None:
        session = self.sessions.require_session(session_id)
        if not session.messages or len(session.messages) > 2:
            return None
        first = session.messages[0]
        if not (first.raw_human and first.raw_ai):
            return None

        found = self.assistants.default_assistant()
        if found is None:
            return None
        _, model = found

        if self.config.title_model:
            model_name, api_key = self.config.title_model, None
        else:
            model_name = litellm_model_name(model)
            api_key = self.preferences.get_api_key(model.base_model)

        try:
            response = await self.completion_fn(
                model=model_name,
                messages=build_title_messages(first.raw_human),
                stream=False,
                temperature=0.0,
                max_tokens=TITLE_MAX_TOKENS,
                api_key=api_key,
                timeout=self.config.request_timeout_s,
            )
            title = (getattr(response.choices[0].message, "content", None) or "").strip().strip('"')
        except Exception as e:
            logger.warning(f"Title generation failed for session {session_id}: {e}")
            return None

        if not title:
            return None
        self.sessions.update_session(session_id, title=title)
        logger.info(f"Session {session_id} titled {title!r}")
        return title

