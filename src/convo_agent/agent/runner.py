"""Conversation runner driving the tool-invocation loop."""

from __future__ import annotations

import enum
import inspect
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from convo_agent.agent.abort import AbortSignal, guarded
from convo_agent.agent.errors import (
    EmptyResponseError,
    MalformedFragmentError,
    MaxToolCallsExceededError,
    ToolInvocationError,
)
from convo_agent.agent.history import MessageHistory
from convo_agent.agent.limits import (
    DEFAULT_TOKEN_LIMIT,
    SUMMARY_REQUEST,
    HistoryLimitModule,
    TokenCounter,
    count_tokens,
    tokens_in_conversation,
)
from convo_agent.agent.modules import ConversationModule, module_system_message
from convo_agent.agent.stream import (
    ChunkReassembler,
    FinishSignal,
    StreamComplete,
    TextDelta,
    ToolRoundReady,
)
from convo_agent.agent.types import (
    ChatMessage,
    ChatTransport,
    GenerateResult,
    MessageModerator,
    ResponseChunk,
    ToolCall,
    ToolInvocationRecord,
)
from convo_agent.agent.usage import UsageAccumulator, UsageData
from convo_agent.agent.usage_context import usage_context
from convo_agent.tools.executor import ToolExecutor
from convo_agent.tools.ledger import InvocationLedger, ToolInvocationCallback
from convo_agent.tools.registry import ToolRegistry

LOGGER = structlog.get_logger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOOL_CALLS = 50

MessageInput = str | ChatMessage
UsageCallback = Callable[[UsageData, list[ToolInvocationRecord]], Awaitable[None] | None]


class Phase(enum.Enum):
    AWAITING_RESPONSE = "awaiting-response"
    EXECUTING_TOOLS = "executing-tools"
    TERMINAL = "terminal"


@dataclass(slots=True)
class _CallState:
    """Mutable state of one top-level call, owned by the runner."""

    usage: UsageAccumulator
    ledger: InvocationLedger
    max_tool_calls: int
    abort_signal: AbortSignal | None
    executed: int = 0
    phase: Phase = Phase.AWAITING_RESPONSE
    pending_calls: list[ToolCall] = field(default_factory=list)
    pending_text: str = ""

    def check_abort(self) -> None:
        if self.abort_signal is not None:
            self.abort_signal.raise_if_aborted()


def normalize_messages(messages: Sequence[MessageInput]) -> list[ChatMessage]:
    return [ChatMessage.user(message) if isinstance(message, str) else message for message in messages]


@dataclass(slots=True)
class ConversationRunner:
    """Run a tool-enabled conversation until the model answers without tools.

    Every call to :meth:`generate_response` or :meth:`generate_streaming_response`
    gets its own usage accumulator and invocation ledger; the history is shared
    across calls and may be supplied by the caller.
    """

    client: ChatTransport
    registry: ToolRegistry = field(default_factory=ToolRegistry)
    history: MessageHistory = field(default_factory=MessageHistory)
    moderators: list[MessageModerator] = field(default_factory=list)
    model: str = DEFAULT_MODEL
    max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS
    on_tool_invocation: ToolInvocationCallback | None = None
    modules: list[ConversationModule] = field(default_factory=list)
    enforce_limits: bool = False
    token_limit: int = DEFAULT_TOKEN_LIMIT
    token_counter: TokenCounter = count_tokens
    executor: ToolExecutor = field(init=False)
    _summarizing: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        self.executor = ToolExecutor(self.registry)
        instructions = self.registry.instructions_message()
        if instructions:
            self.history.push([ChatMessage.system(instructions)])
        modules = list(self.modules)
        if self.enforce_limits:
            modules.append(HistoryLimitModule(self.history))
        for module in modules:
            self._add_module(module)

    def _add_module(self, module: ConversationModule) -> None:
        message = module_system_message(module)
        if message:
            self.history.push([ChatMessage.system(message)])
        tools = list(module.tools())
        self.registry.register_all(tools)
        instructions = self.registry.instructions_message(module.name, [tool.spec for tool in tools])
        if instructions:
            self.history.push([ChatMessage.system(instructions)])
        self.moderators.extend(module.moderators())
        LOGGER.debug("runner.module_added", module=module.name, tools=len(tools))

    async def generate_response(
        self,
        messages: Sequence[MessageInput],
        *,
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
        max_tool_calls: int | None = None,
    ) -> GenerateResult:
        """Blocking mode: tool calls of a round run concurrently."""
        resolved_model = model or self.model
        pending = normalize_messages(messages)
        await self._enforce_token_limit(pending, resolved_model, abort_signal)
        state = self._new_call_state(resolved_model, abort_signal, max_tool_calls)
        self.history.push(pending)

        while True:
            if state.phase is Phase.AWAITING_RESPONSE:
                state.check_abort()
                self._moderate()
                response = await guarded(
                    self.client.complete(
                        self.history.get_messages(),
                        self.registry.list_specs(),
                        model=resolved_model,
                        abort_signal=abort_signal,
                    ),
                    abort_signal,
                )
                if response.usage is not None:
                    state.usage.add_usage(response.usage)
                if response.tool_calls:
                    state.pending_calls = response.tool_calls
                    state.pending_text = response.text
                    state.phase = Phase.EXECUTING_TOOLS
                    continue
                if not response.text:
                    raise EmptyResponseError(
                        f"Response was empty after {state.usage.request_count} request(s)"
                    )
                self.history.push([ChatMessage(role="assistant", content=response.text)])
                state.phase = Phase.TERMINAL
                return GenerateResult(
                    message=response.text,
                    usage=state.usage.usage_data,
                    tool_invocations=state.ledger.snapshot(),
                )

            await self._run_tool_round(state, concurrent=True)

    async def generate_streaming_response(
        self,
        messages: Sequence[MessageInput],
        *,
        model: str | None = None,
        abort_signal: AbortSignal | None = None,
        on_usage: UsageCallback | None = None,
        max_tool_calls: int | None = None,
    ) -> AsyncGenerator[ResponseChunk, None]:
        """Streaming mode: yields content deltas and finish markers.

        Tool calls of a round run sequentially. ``on_usage`` receives the usage
        and the invocation ledger once the stream completes. Closing the
        returned generator early closes the provider stream and stops the call.
        """
        resolved_model = model or self.model
        pending = normalize_messages(messages)
        await self._enforce_token_limit(pending, resolved_model, abort_signal)
        state = self._new_call_state(resolved_model, abort_signal, max_tool_calls)
        self.history.push(pending)
        source: Any = None

        try:
            while state.phase is not Phase.TERMINAL:
                if state.phase is Phase.EXECUTING_TOOLS:
                    await self._run_tool_round(state, concurrent=False)
                    continue

                state.check_abort()
                self._moderate()
                LOGGER.info("stream.processing", request=state.usage.request_count + 1)
                source = await guarded(
                    self.client.stream(
                        self.history.get_messages(),
                        self.registry.list_specs(),
                        model=resolved_model,
                        abort_signal=abort_signal,
                    ),
                    abort_signal,
                )
                reassembler = ChunkReassembler(state.usage)
                iterator = aiter(source)
                while not reassembler.done:
                    try:
                        fragment = await guarded(anext(iterator), abort_signal)
                    except StopAsyncIteration:
                        events = reassembler.close()
                    else:
                        events = reassembler.process(fragment)
                    for event in events:
                        if isinstance(event, TextDelta):
                            yield ResponseChunk(content=event.content)
                        elif isinstance(event, FinishSignal):
                            yield ResponseChunk(finish_reason=event.reason)
                        elif isinstance(event, ToolRoundReady):
                            state.pending_calls = event.calls
                            state.pending_text = event.text
                            state.phase = Phase.EXECUTING_TOOLS
                        elif isinstance(event, StreamComplete):
                            if event.text:
                                self.history.push([ChatMessage(role="assistant", content=event.text)])
                            state.phase = Phase.TERMINAL

                await _close_source(source)
                source = None
                if state.phase is Phase.EXECUTING_TOOLS and not state.pending_calls:
                    raise MalformedFragmentError("Tool-call phase finished without any complete tool call")

            if on_usage is not None:
                delivered = on_usage(state.usage.usage_data, state.ledger.snapshot())
                if inspect.isawaitable(delivered):
                    await delivered
        except GeneratorExit:
            LOGGER.warning("stream.consumer_closed", requests=state.usage.request_count)
            raise
        except Exception as exc:
            if abort_signal is None or not abort_signal.aborted:
                LOGGER.error("stream.failed", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            if source is not None:
                await _close_source(source)

    def _new_call_state(
        self,
        model: str,
        abort_signal: AbortSignal | None,
        max_tool_calls: int | None,
    ) -> _CallState:
        return _CallState(
            usage=UsageAccumulator(model),
            ledger=InvocationLedger(on_event=self.on_tool_invocation),
            max_tool_calls=self.max_tool_calls if max_tool_calls is None else max_tool_calls,
            abort_signal=abort_signal,
        )

    async def _enforce_token_limit(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        abort_signal: AbortSignal | None,
    ) -> None:
        """Have the model summarize the history first when the request would not fit."""
        if not self.enforce_limits or self._summarizing:
            return
        tokens = tokens_in_conversation(self.history, messages, model=model, counter=self.token_counter)
        if tokens < self.token_limit:
            return

        LOGGER.info("runner.token_limit_reached", tokens=tokens, token_limit=self.token_limit)
        self._summarizing = True
        try:
            await self.generate_response([SUMMARY_REQUEST], model=model, abort_signal=abort_signal)
        finally:
            self._summarizing = False

    def _moderate(self) -> None:
        for moderator in self.moderators:
            self.history.set_messages(moderator.observe(self.history.get_messages()))

    async def _run_tool_round(self, state: _CallState, *, concurrent: bool) -> None:
        calls = state.pending_calls
        requested = state.executed + len(calls)
        if requested > state.max_tool_calls:
            raise MaxToolCallsExceededError(state.max_tool_calls, requested)
        state.check_abort()

        tool_call_message = ChatMessage(
            role="assistant",
            content=state.pending_text or None,
            tool_calls=list(calls),
        )
        self.history.push([tool_call_message])
        LOGGER.info(
            "tool.round_start",
            calls=[call.name for call in calls],
            executed=state.executed,
            concurrent=concurrent,
        )

        with usage_context(state.usage):
            if concurrent:
                outcomes = await self.executor.execute_concurrently(calls, on_started=state.ledger.started)
            else:
                outcomes = await self.executor.execute_sequentially(calls, on_started=state.ledger.started)

        failure = None
        results: list[ChatMessage] = []
        for outcome in outcomes:
            if outcome.counted_tool is not None:
                state.usage.record_tool_call(outcome.counted_tool)
            state.ledger.append(outcome.record)
            if outcome.error is not None and failure is None:
                failure = outcome
            results.extend(outcome.messages)

        if failure is not None:
            self.history.remove(tool_call_message)
            raise ToolInvocationError(
                failure.record.name,
                failure.call.id,
                tool_invocations=state.ledger.snapshot(),
                usage=state.usage.usage_data,
            ) from failure.error

        self.history.push(results)
        state.executed = requested
        state.pending_calls = []
        state.pending_text = ""
        state.phase = Phase.AWAITING_RESPONSE


async def _close_source(source: Any) -> None:
    closer = getattr(source, "aclose", None)
    if closer is None:
        closer = getattr(source, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result
