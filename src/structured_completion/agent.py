"""
Tool-calling agent loop.

One turn is at most two model requests: a non-streaming decision request that
may ask for tools, and (only when tools ran) a narration request that turns
the tool results into a reply, streamed to the caller when a token sink is
given.

    BUILD_REQUEST -> AWAIT_DECISION -> EXECUTE_TOOLS -> AWAIT_NARRATION -> EMIT_FINAL -> DONE
                                    \\______________ no tool calls ______/
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from enum import Enum
from typing import TypeVar

import structlog

from .client import CompletionClient
from .collaborators import PromptBuilder, SessionStore, ToolExecutor
from .contracts import CompletionResponse, ToolCall, ToolResult, TurnResult
from .errors import PipelineError, RequestTimeoutError, ToolExecutionError, TurnCancelledError
from .metrics import agent_turn_latency_seconds, agent_turns_total, tool_executions_total
from .schemas import ChatMessage, CompletionRequest, ToolSchema

log = structlog.get_logger()

T = TypeVar("T")

TokenSink = Callable[[str], None]

SYSTEM_PROMPT = (
    "You are a concise assistant embedded in a command-line tool. "
    "When a request maps to one of the available tools, call the tool instead of guessing. "
    "After tools have run, summarize their results in one or two short sentences. "
    "Never invent data that a tool did not return."
)


class TurnState(str, Enum):
    BUILD_REQUEST = "build_request"
    AWAIT_DECISION = "await_decision"
    EXECUTE_TOOLS = "execute_tools"
    AWAIT_NARRATION = "await_narration"
    EMIT_FINAL = "emit_final"
    DONE = "done"


def trim_history(history: list[ChatMessage], *, max_messages: int, max_chars: int) -> list[ChatMessage]:
    """Drop the oldest history until both budgets hold."""
    kept = list(history[-max_messages:]) if max_messages > 0 else []
    total = sum(len(m.content) for m in kept)
    while kept and total > max_chars:
        total -= len(kept.pop(0).content)
    # A tool message whose call was trimmed away cannot be correlated.
    while kept and kept[0].role == "tool":
        kept.pop(0)
    return kept


def _tool_message_content(result: ToolResult) -> str:
    return json.dumps(result.payload(), default=str)


class AgentLoop:
    def __init__(
        self,
        client: CompletionClient,
        *,
        tools: list[ToolSchema] | None = None,
        executor: ToolExecutor | None = None,
        store: SessionStore | None = None,
        prompts: PromptBuilder | None = None,
        system_prompt: str = SYSTEM_PROMPT,
        rate_limited: bool = False,
    ):
        self.client = client
        self.config = client.config
        self.tools = list(tools or [])
        self.executor = executor
        self.store = store
        self.prompts = prompts
        self.system_prompt = system_prompt
        # Model calls count against the context's limiter; a started turn is never blocked.
        self.rate_limited = rate_limited
        self._persist_tasks: set[asyncio.Task] = set()

    def _enter(self, state: TurnState, **kw) -> None:
        log.debug("agent_state", state=state.value, **kw)

    def _complete(self, request: CompletionRequest) -> Awaitable[CompletionResponse]:
        return self.client.complete(
            request, self.config.agent_feature, rate_limited=self.rate_limited, essential=self.rate_limited
        )

    async def _guard(self, aw: Awaitable[T], cancel: asyncio.Event | None, *, timeout: float | None) -> T:
        """Await ``aw`` unless the caller cancels or the step deadline passes first."""
        task = asyncio.ensure_future(aw)
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()
        task.cancel()
        await asyncio.wait({task})
        if cancel is not None and cancel.is_set():
            raise TurnCancelledError("Turn cancelled.")
        raise RequestTimeoutError(f"Agent step exceeded {timeout}s.")

    def _build_transcript(self, user_message: str, history: list[ChatMessage], session_id: str | None) -> list[ChatMessage]:
        prompt = self.prompts.system_prompt(session_id) if self.prompts is not None else self.system_prompt
        trimmed = trim_history(
            history,
            max_messages=self.config.agent_max_history_messages,
            max_chars=self.config.agent_max_transcript_chars,
        )
        if len(trimmed) < len(history):
            log.info("agent_history_trimmed", kept=len(trimmed), dropped=len(history) - len(trimmed))
        return [ChatMessage.system(prompt), *trimmed, ChatMessage.user(user_message)]

    async def _execute_one(self, call: ToolCall, cancel: asyncio.Event | None) -> ToolResult:
        if call.argument_error is not None:
            tool_executions_total.labels(tool=call.name, status="invalid_arguments").inc()
            return ToolResult(name=call.name, error=f"Invalid tool arguments: {call.argument_error}")
        if self.executor is None:
            tool_executions_total.labels(tool=call.name, status="error").inc()
            return ToolResult(name=call.name, error="No tool executor configured")
        try:
            result = await self._guard(self.executor.execute_tool(call.name, call.arguments), cancel, timeout=None)
        except TurnCancelledError:
            raise
        except Exception as e:
            err = ToolExecutionError(call.name, str(e) or type(e).__name__)
            log.warning("tool_execution_failed", tool=call.name, call_id=call.id, error=str(err))
            tool_executions_total.labels(tool=call.name, status="error").inc()
            return ToolResult(name=call.name, error=str(err))
        tool_executions_total.labels(tool=call.name, status="ok" if result.ok else "error").inc()
        return result

    async def _stream_narration(self, request: CompletionRequest, on_token: TokenSink, parts: list[str]) -> None:
        if self.rate_limited:
            self.client.context.rate_limiter.record(f"completion:{self.config.agent_feature}")
        async with aclosing(self.client.stream(request, self.config.agent_feature)) as chunks:
            async for chunk in chunks:
                if chunk.done:
                    break
                if chunk.content:
                    on_token(chunk.content)
                    parts.append(chunk.content)

    async def run_turn(
        self,
        user_message: str,
        history: list[ChatMessage] | None = None,
        *,
        session_id: str | None = None,
        on_token: TokenSink | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        start = time.monotonic()
        try:
            result = await self._run(user_message, list(history or []), session_id, on_token, cancel)
        except TurnCancelledError:
            agent_turns_total.labels(outcome="cancelled").inc()
            log.info("agent_turn_cancelled", session_id=session_id)
            raise
        except Exception:
            agent_turns_total.labels(outcome="error").inc()
            raise
        agent_turns_total.labels(outcome="degraded" if result.degraded else "ok").inc()
        agent_turn_latency_seconds.observe(time.monotonic() - start)

        self._schedule_persist(session_id, user_message, result)
        self._enter(TurnState.DONE, session_id=session_id)
        return result

    async def _run(
        self,
        user_message: str,
        history: list[ChatMessage],
        session_id: str | None,
        on_token: TokenSink | None,
        cancel: asyncio.Event | None,
    ) -> TurnResult:
        step_timeout = self.config.agent_step_timeout_seconds

        self._enter(TurnState.BUILD_REQUEST, session_id=session_id)
        if session_id is not None:
            self.client.context.active_session_id = session_id
        transcript = self._build_transcript(user_message, history, session_id)

        if cancel is not None and cancel.is_set():
            raise TurnCancelledError("Turn cancelled.")

        self._enter(TurnState.AWAIT_DECISION)
        decision_request = CompletionRequest(
            messages=transcript,
            tools=self.tools or None,
            tool_choice="auto" if self.tools else None,
            max_tokens=self.config.agent_decision_max_tokens,
        )
        decision: CompletionResponse = await self._guard(
            self._complete(decision_request), cancel, timeout=step_timeout
        )
        usage = decision.usage

        if not decision.tool_calls:
            message = decision.content or ""
            if on_token is not None and message:
                on_token(message)
            self._enter(TurnState.EMIT_FINAL, tool_calls=0)
            return TurnResult(
                message=message,
                tool_results=[],
                usage=usage,
                provider=decision.provider,
                model=decision.model,
            )

        self._enter(TurnState.EXECUTE_TOOLS, tool_calls=len(decision.tool_calls))
        transcript.append(ChatMessage.assistant(decision.content, decision.tool_calls))
        tool_results: list[ToolResult] = []
        for call in decision.tool_calls:
            result = await self._execute_one(call, cancel)
            tool_results.append(result)
            transcript.append(ChatMessage.tool(call.id, _tool_message_content(result)))

        if cancel is not None and cancel.is_set():
            raise TurnCancelledError("Turn cancelled.")

        self._enter(TurnState.AWAIT_NARRATION, streaming=on_token is not None)
        narration_request = CompletionRequest(messages=transcript, max_tokens=self.config.agent_narration_max_tokens)
        degraded = False
        error: str | None = None

        if on_token is None:
            narration: CompletionResponse = await self._guard(
                self._complete(narration_request), cancel, timeout=step_timeout
            )
            message = narration.content or ""
            usage = usage + narration.usage
        else:
            parts: list[str] = []
            try:
                await self._guard(self._stream_narration(narration_request, on_token, parts), cancel, timeout=step_timeout)
            except TurnCancelledError:
                raise
            except PipelineError as e:
                if not parts:
                    raise
                degraded = True
                error = str(e)
                log.warning("agent_narration_degraded", error=error, streamed_chars=sum(len(p) for p in parts))
            message = "".join(parts)

        if cancel is not None and cancel.is_set():
            raise TurnCancelledError("Turn cancelled.")

        self._enter(TurnState.EMIT_FINAL, tool_calls=len(tool_results), degraded=degraded)
        return TurnResult(
            message=message,
            tool_results=tool_results,
            usage=usage,
            provider=decision.provider,
            model=decision.model,
            degraded=degraded,
            error=error,
            tool_calls=list(decision.tool_calls),
        )

    def _schedule_persist(self, session_id: str | None, user_message: str, result: TurnResult) -> None:
        """Write the turn in the background; a slow store never delays the caller."""
        if self.store is None or session_id is None:
            return
        task = asyncio.ensure_future(self._persist(self.store, session_id, user_message, result))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_finished)

    def _persist_finished(self, task: asyncio.Task) -> None:
        self._persist_tasks.discard(task)
        if task.cancelled():
            log.warning("session_persist_cancelled")

    async def wait_persisted(self) -> None:
        """Wait for background session writes started by earlier turns."""
        while self._persist_tasks:
            await asyncio.wait(set(self._persist_tasks))

    async def _persist(self, store: SessionStore, session_id: str, user_message: str, result: TurnResult) -> None:
        try:
            await store.append(session_id, "user", user_message)
            await store.append(
                session_id,
                "assistant",
                result.message,
                tool_calls=result.tool_calls or None,
                tool_results=result.tool_results or None,
            )
        except Exception as e:
            log.warning("session_persist_failed", session_id=session_id, error=str(e), error_type=type(e).__name__)
