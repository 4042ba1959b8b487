"""The agent client: conversation history, model turns and the action loop.

One AgentClient owns one conversation. ``chat`` runs the interactive loop
with streamed output and no iteration cap; ``chat_with_response`` runs the
same loop for remote message sources with an iteration cap and a wall-clock
timeout, and returns a short plain-text summary.
"""

import asyncio
import dataclasses
import time
from dataclasses import dataclass, field

from . import fmt
from .executor import execute_actions
from .guards import (
    CODE_BLOCK_CORRECTION,
    CONTINUE_DIRECTIVE,
    DUPLICATE_READ_CORRECTION,
    DUPLICATE_READ_LIMIT,
    DUPLICATE_READ_NOTE,
    EMPTY_RESPONSE_LIMIT,
    EMPTY_TURN_CORRECTION,
    EMPTY_TURN_PLACEHOLDER,
    ERROR_DIRECTIVE,
    FAIL_FAST_LIMIT,
    HALLUCINATION_CORRECTION,
    find_fenced_action_tags,
    is_empty_turn,
    looks_like_hallucinated_code,
    platform_hint,
    split_duplicate_reads,
)
from .handlers import ActionHandlers
from .history import (
    DEFAULT_MAX_CONTEXT_MESSAGES,
    compress_action_results,
    compress_history,
    estimate_tokens,
    has_images,
)
from .parser import clean_action_tags, clean_self_dialogue, parse_actions
from .prompts import PERSONALITIES, build_system_prompt, load_base_prompt
from .report import AbortedError, AgentBusyError, ConfigError, ReportCollector
from .streaming import StreamAssembler, displayable
from .transport import DEFAULT_MODEL, ModelReply, ModelRequest, TransportError

CONNECTOR_MAX_ITERATIONS = 15
CONNECTOR_TIMEOUT = 120.0
CONNECTOR_REQUEST_TIMEOUT = 60.0

DONE = "done"
FAIL_FAST = "fail_fast"
TIMEOUT = "timeout"
ITERATION_CAP = "iteration_cap"
EMPTY = "empty"


@dataclass
class UsageStats:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    requests: int = 0

    def add(self, usage: dict) -> None:
        self.prompt_tokens += usage.get("prompt_tokens") or 0
        self.completion_tokens += usage.get("completion_tokens") or 0
        self.total_tokens += usage.get("total_tokens") or 0


@dataclass
class TurnState:
    """Bookkeeping for the handling of one user message."""

    files_read: set[str] = field(default_factory=set)
    duplicate_read_count: int = 0
    consecutive_error_count: int = 0
    empty_response_retries: int = 0
    iteration_budget: int | None = None


@dataclass
class RequestContext:
    """Per-request inputs supplied by the caller.

    ``images`` holds data URLs. They go out with the first model request of
    the turn and the list is cleared right after.
    """

    images: list[str] = field(default_factory=list)


@dataclass
class TurnOutcome:
    response: str
    thinking: str = ""
    status: str = DONE
    turns: int = 0


def _summary_entry(result) -> str:
    mark = "\u2713" if result.success else "\u2717"
    return f"{mark} {result.action}"


class AgentClient:
    def __init__(
        self,
        transport,
        *,
        handlers: ActionHandlers | None = None,
        model: str = DEFAULT_MODEL,
        vision_model: str | None = None,
        max_tokens: int | None = 16384,
        temperature: float | None = 0.7,
        stream: bool = True,
        work_dir: str | None = None,
        personality: str = "normal",
        project_context: str = "",
        system_prompt: str | None = None,
        context_compression: bool = True,
        max_context_messages: int = DEFAULT_MAX_CONTEXT_MESSAGES,
        subtasks: bool = True,
        verbose: bool = False,
        report: ReportCollector | None = None,
    ):
        if personality not in PERSONALITIES:
            raise ConfigError(f"unknown personality {personality!r}")
        self.transport = transport
        self.model = model
        self.vision_model = vision_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.stream = stream
        self.verbose = verbose
        self.report = report
        self.context_compression = context_compression
        self.max_context_messages = max_context_messages

        self._host_handlers = handlers or ActionHandlers()
        if subtasks and self._host_handlers.on_task is None:
            self.handlers = dataclasses.replace(self._host_handlers, on_task=self.spawn_subtask)
        else:
            self.handlers = self._host_handlers

        self.work_dir = work_dir
        self.personality = personality
        self.project_context = project_context
        self._base_prompt = system_prompt if system_prompt is not None else load_base_prompt()
        self.messages: list[dict] = [{"role": "system", "content": ""}]
        self._rebuild_system_prompt()

        self.usage = UsageStats()
        self._busy = False
        self._abort_requested = False
        self._model_task: asyncio.Future | None = None
        self._spinner = None

    # -- System prompt -------------------------------------------------------

    def _rebuild_system_prompt(self) -> None:
        content = build_system_prompt(
            self._base_prompt, self.work_dir, self.personality, self.project_context
        )
        self.messages[0] = {"role": "system", "content": content}

    def set_project_context(self, context: str, work_dir: str | None = None) -> None:
        self.project_context = context
        if work_dir:
            self.work_dir = work_dir
        self._rebuild_system_prompt()

    def set_work_dir(self, work_dir: str) -> None:
        self.work_dir = work_dir
        self._rebuild_system_prompt()

    def set_personality(self, personality: str) -> None:
        if personality not in PERSONALITIES:
            raise ConfigError(
                f"unknown personality {personality!r}, "
                f"expected one of: {', '.join(PERSONALITIES)}"
            )
        self.personality = personality
        self._rebuild_system_prompt()

    # -- History and usage ---------------------------------------------------

    def clear_history(self) -> None:
        self.messages = [self.messages[0]]

    def get_history(self) -> list[dict]:
        return [dict(m) for m in self.messages]

    def get_usage(self) -> UsageStats:
        return dataclasses.replace(self.usage)

    def reset_usage(self) -> None:
        self.usage = UsageStats()

    def estimate_tokens(self) -> int:
        return estimate_tokens(self.messages)

    def set_context_compression(self, enabled: bool, max_messages: int | None = None) -> None:
        self.context_compression = enabled
        if max_messages:
            self.max_context_messages = max_messages

    def compress_context(self, max_messages: int | None = None) -> bool:
        """Drop all but the newest max_messages non-system messages.

        Defaults to the configured limit. Returns True if anything was dropped.
        """
        compressed = compress_history(self.messages, max_messages or self.max_context_messages)
        if compressed is None:
            return False
        self.messages, before = compressed
        after = len(self.messages) - 1
        if self.verbose:
            fmt.context_compressed(before, after)
        if self.report:
            self.report.record_compression(before, after)
        return True

    def _compress_context(self) -> None:
        if self.context_compression:
            self.compress_context()

    def _append(self, role: str, content) -> None:
        self.messages.append({"role": role, "content": content})

    def _user_message(self, text: str, ctx: RequestContext) -> dict:
        if not ctx.images:
            return {"role": "user", "content": text}
        parts: list[dict] = [{"type": "text", "text": text}]
        for url in ctx.images:
            parts.append({"type": "image_url", "image_url": {"url": url}})
        return {"role": "user", "content": parts}

    def _select_model(self, ctx: RequestContext) -> str:
        if ctx.images or any(has_images(m) for m in self.messages):
            return self.vision_model or self.model
        return self.model

    # -- Cancellation --------------------------------------------------------

    def abort(self) -> None:
        """Cancel the in-flight model request; the pending chat raises AbortedError."""
        if not self._busy:
            return
        self._abort_requested = True
        if self._model_task is not None and not self._model_task.done():
            self._model_task.cancel()
        self._stop_spinner()

    def is_busy(self) -> bool:
        return self._busy

    def _start_spinner(self) -> None:
        if self.verbose:
            self._spinner = fmt.thinking_spinner()
            self._spinner.start()

    def _stop_spinner(self) -> None:
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None

    # -- Model turns ---------------------------------------------------------

    async def _consume_stream(self, request: ModelRequest, on_text) -> ModelReply:
        assembler = StreamAssembler()
        reasoning: list[str] = []
        finish_reason = None
        async for chunk in self.transport.stream(request):
            if chunk.usage:
                self.usage.add(chunk.usage)
            if chunk.reasoning:
                reasoning.append(chunk.reasoning)
            if chunk.content:
                delta = assembler.feed(chunk.content)
                if delta:
                    self._stop_spinner()
                    if on_text is not None:
                        on_text(delta)
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason
        tail = assembler.flush()
        if tail and on_text is not None:
            on_text(tail)
        return ModelReply(
            content=assembler.text, reasoning="".join(reasoning), finish_reason=finish_reason
        )

    async def _complete(self, request: ModelRequest, timeout: float | None, on_text) -> ModelReply:
        try:
            if timeout is None:
                reply = await self.transport.complete(request)
            else:
                reply = await asyncio.wait_for(self.transport.complete(request), timeout)
        except TimeoutError as e:
            raise TransportError(f"model request timed out after {timeout:g}s") from e
        if reply.usage:
            self.usage.add(reply.usage)
        if on_text is not None:
            text = displayable(reply.content)
            if text:
                on_text(text)
        return reply

    async def _request_turn(
        self,
        ctx: RequestContext,
        turn: int,
        *,
        streamed: bool,
        on_text,
        request_timeout: float | None,
        max_turns: int | None,
    ) -> ModelReply:
        request = ModelRequest(
            messages=list(self.messages),
            model=self._select_model(ctx),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            stream=streamed,
        )
        self.usage.requests += 1
        token_est = self.estimate_tokens()
        if self.verbose:
            fmt.turn_header(turn, token_est, max_turns)

        if streamed:
            coro = self._consume_stream(request, on_text)
        else:
            coro = self._complete(request, request_timeout, on_text)
        self._start_spinner()
        t0 = time.monotonic()
        self._model_task = asyncio.ensure_future(coro)
        try:
            reply = await self._model_task
        finally:
            self._model_task = None
            self._stop_spinner()
        elapsed = time.monotonic() - t0

        if self.verbose:
            fmt.llm_timing(elapsed, reply.finish_reason or "stop")
            if reply.reasoning:
                fmt.thinking(reply.reasoning)
        if self.report:
            self.report.record_llm_call(turn, elapsed, token_est, reply.finish_reason)
        return reply

    # -- Loop ----------------------------------------------------------------

    def _correct(self, turn: int, kind: str, assistant: str, correction: str, detail: str) -> None:
        if self.verbose:
            fmt.correction(kind, detail)
        if self.report:
            self.report.record_correction(turn, kind)
        self._append("assistant", assistant)
        self._append("user", correction)

    async def _run_loop(
        self,
        state: TurnState,
        ctx: RequestContext,
        *,
        streamed: bool,
        on_text=None,
        timeout: float | None = None,
        request_timeout: float | None = None,
    ) -> tuple[TurnOutcome, list[str]]:
        """Run model turns until a final answer or a stop condition.

        Returns the outcome and the per-action summary entries collected.
        """
        started = time.monotonic()
        max_turns = state.iteration_budget
        thinking: list[str] = []
        summary: list[str] = []
        final = ""
        turn = 0

        while True:
            if self._abort_requested:
                raise AbortedError("request aborted")
            if state.iteration_budget is not None:
                if state.iteration_budget <= 0:
                    return TurnOutcome(final, "".join(thinking), ITERATION_CAP, turn), summary
                state.iteration_budget -= 1
            if timeout is not None and time.monotonic() - started > timeout:
                text = f"Timeout after {round(timeout)}s"
                if summary:
                    text += f". Completed: {', '.join(summary)}"
                if self.verbose:
                    fmt.warning(text)
                return TurnOutcome(text, "".join(thinking), TIMEOUT, turn), summary

            turn += 1
            reply = await self._request_turn(
                ctx,
                turn,
                streamed=streamed,
                on_text=on_text,
                request_timeout=request_timeout,
                max_turns=max_turns,
            )
            content = reply.content
            final = content
            thinking.append(reply.reasoning)
            ctx.images.clear()

            actions = parse_actions(content)
            if not actions and reply.reasoning:
                # Some models emit their action tags inside the reasoning stream.
                actions = parse_actions(reply.reasoning)
                if actions and not content.strip():
                    content = reply.reasoning
            actions, duplicates = split_duplicate_reads(actions, state.files_read)
            if duplicates:
                state.duplicate_read_count += len(duplicates)
                if state.duplicate_read_count >= DUPLICATE_READ_LIMIT:
                    self._correct(
                        turn,
                        "duplicate_read",
                        content,
                        DUPLICATE_READ_CORRECTION,
                        f"re-read {', '.join(duplicates)}",
                    )
                    continue

            if not actions:
                if duplicates:
                    self._append("assistant", content)
                    note = DUPLICATE_READ_NOTE.format(paths=", ".join(duplicates))
                    self._append("user", f"{note}\n\n{CONTINUE_DIRECTIVE}")
                    continue
                fenced = find_fenced_action_tags(content)
                if fenced:
                    self._correct(turn, "code_block", content, CODE_BLOCK_CORRECTION, fenced[0])
                    continue
                if is_empty_turn(content, reply.reasoning):
                    state.empty_response_retries += 1
                    if state.empty_response_retries >= EMPTY_RESPONSE_LIMIT:
                        if self.verbose:
                            fmt.warning("Model not producing responses after retries")
                        self._append("assistant", EMPTY_TURN_PLACEHOLDER)
                        return TurnOutcome("", "".join(thinking), EMPTY, turn), summary
                    self._correct(
                        turn,
                        "empty_turn",
                        EMPTY_TURN_PLACEHOLDER,
                        EMPTY_TURN_CORRECTION,
                        "thinking without a reply",
                    )
                    continue
                if looks_like_hallucinated_code(content):
                    self._correct(
                        turn,
                        "hallucination",
                        content,
                        HALLUCINATION_CORRECTION,
                        "code written without an action",
                    )
                    continue
                self._append("assistant", content)
                return TurnOutcome(content, "".join(thinking), DONE, turn), summary

            results = await execute_actions(actions, self.handlers, verbose=self.verbose)
            if self.report:
                for action, r in zip(actions, results):
                    self.report.record_action(
                        turn, action.type, r.action, r.success, len(r.result or ""), r.error
                    )
            summary.extend(_summary_entry(r) for r in results)

            if all(not r.success for r in results):
                state.consecutive_error_count += 1
                if state.consecutive_error_count >= FAIL_FAST_LIMIT:
                    labels = ", ".join(r.action for r in results)
                    text = (
                        f"Stopped after {FAIL_FAST_LIMIT} consecutive failures. "
                        f"Last errors: {labels}"
                    )
                    if self.verbose:
                        fmt.fail_fast(labels)
                    if self.report:
                        self.report.record_fail_fast(turn, text)
                    self._append("assistant", content)
                    return TurnOutcome(text, "".join(thinking), FAIL_FAST, turn), summary
            else:
                state.consecutive_error_count = 0

            directive = CONTINUE_DIRECTIVE
            if any(not r.success for r in results):
                directive = ERROR_DIRECTIVE
            self._append("assistant", content)
            self._append("user", f"{compress_action_results(results)}\n\n{directive}")

    async def _guarded(self, run):
        """Run one message through the loop with single-flight and rollback on abort."""
        if self._busy:
            raise AgentBusyError("a message is already being processed")
        self._busy = True
        self._abort_requested = False
        snapshot = list(self.messages)
        try:
            return await run()
        except asyncio.CancelledError:
            self.messages = snapshot
            if self._abort_requested:
                raise AbortedError("request aborted") from None
            raise
        except (AbortedError, TransportError):
            self.messages = snapshot
            raise
        finally:
            self._busy = False
            self._abort_requested = False
            self._stop_spinner()

    async def chat(
        self,
        message: str,
        request_context: RequestContext | None = None,
        on_text=None,
    ) -> TurnOutcome:
        """Handle one user message interactively; returns the cleaned final answer."""
        ctx = request_context or RequestContext()

        async def run():
            self._compress_context()
            self.messages.append(self._user_message(message, ctx))
            outcome, _ = await self._run_loop(TurnState(), ctx, streamed=self.stream, on_text=on_text)
            if outcome.status in (DONE, EMPTY):
                outcome.response = clean_action_tags(outcome.response)
            if self.verbose:
                fmt.completion(outcome.turns, outcome.status)
            return outcome

        return await self._guarded(run)

    async def chat_with_response(
        self,
        message: str,
        source: str | None = None,
        timeout: float = CONNECTOR_TIMEOUT,
        request_context: RequestContext | None = None,
    ) -> str:
        """Handle a message from a remote source and return a short summary.

        Runs non-streamed with an iteration cap and a wall-clock timeout.
        """
        ctx = request_context or RequestContext()

        async def run():
            self._compress_context()
            self.messages.append(self._user_message(message + platform_hint(source), ctx))
            state = TurnState(iteration_budget=CONNECTOR_MAX_ITERATIONS)
            outcome, summary = await self._run_loop(
                state,
                ctx,
                streamed=False,
                timeout=timeout,
                request_timeout=CONNECTOR_REQUEST_TIMEOUT,
            )
            if outcome.status in (FAIL_FAST, TIMEOUT):
                return outcome.response
            clean = clean_self_dialogue(clean_action_tags(outcome.response)).strip()
            if clean:
                return clean
            if summary:
                return f"Done: {', '.join(summary)}"
            return "Done."

        return await self._guarded(run)

    # -- Sub-tasks -----------------------------------------------------------

    async def spawn_subtask(self, prompt: str, description: str | None = None) -> str:
        """Run prompt in a child client with a fresh history; returns its summary."""
        child = AgentClient(
            self.transport,
            handlers=dataclasses.replace(self._host_handlers, on_task=None),
            model=self.model,
            vision_model=self.vision_model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            stream=False,
            work_dir=self.work_dir,
            project_context=self.project_context,
            system_prompt=self._base_prompt,
            context_compression=self.context_compression,
            max_context_messages=self.max_context_messages,
            subtasks=False,
            verbose=self.verbose,
        )
        if self.verbose:
            fmt.info(f"Sub-task: {description or prompt[:60]}")
        try:
            return await child.chat_with_response(prompt)
        finally:
            self.usage.prompt_tokens += child.usage.prompt_tokens
            self.usage.completion_tokens += child.usage.completion_tokens
            self.usage.total_tokens += child.usage.total_tokens
            self.usage.requests += child.usage.requests
