"""
Agent Loop Controller

Drives one instruction through the provider/tool cycle:

    Idle -> SendingTurn -> AwaitingStream
         -> (ToolsPending -> ExecutingTools -> SendingTurn) | Completed | Aborted

Each provider call is streamed through the Context Manager's prepared
payload; tool calls of a turn are dispatched as one concurrent batch and
their results fed back as a single message. Frames describing progress
are yielded to the caller as they happen.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from codeagent.config.settings import AgentSettings
from codeagent.core.ai.base import (
    BaseAIProvider,
    StreamError,
    TextDelta,
    TokenUsage,
    ToolCallArgsDelta,
    ToolCallReady,
    TurnFinished,
)
from codeagent.core.context_manager import ContextManager, PreparedTurn
from codeagent.core.errors import (
    ErrorKind,
    FatalConfigError,
    ProviderError,
    StreamTransportError,
    TransientProviderError,
)
from codeagent.core.messages import Message, ToolCall, ToolResult
from codeagent.core.request_guard import RequestDeduplicator
from codeagent.core.stream_frames import (
    ABORTED,
    BUDGET_EXCEEDED,
    COMPLETED,
    LOOP_DETECTED,
    MAX_TURNS_EXCEEDED,
    REJECTED,
    Frame,
    complete_frame,
    error_frame,
    function_call_frame,
    retrying_frame,
    text_frame,
    tool_input_frame,
    tool_result_frame,
    tool_results_batch_frame,
)
from codeagent.core.supervisor import ToolSupervisor
from codeagent.core.tools import FILE_WRITE_TOOLS, TOOL_DEFINITIONS
from codeagent.core.usage import UsageTracker

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class AgentOutcome:
    status: str
    text: str
    conversation: List[Message]
    turns: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    files_created: List[str] = field(default_factory=list)
    files_modified: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == COMPLETED


@dataclass
class TurnState:
    """What one provider call produced. Reset on every retry attempt."""

    text_parts: List[str] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    reason: Optional[str] = None
    attempts: int = 0

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def reset(self) -> None:
        self.text_parts = []
        self.tool_calls = []
        self.usage = TokenUsage()
        self.reason = None


@dataclass
class _RunState:
    outcome: Optional[AgentOutcome] = None


class AgentLoop:
    """
    Agent Loop Controller.

    All collaborators are injected; the defaults build fresh, private
    instances so separate loops share no state.
    """

    def __init__(
        self,
        provider: BaseAIProvider,
        supervisor: ToolSupervisor,
        settings: Optional[AgentSettings] = None,
        context_manager: Optional[ContextManager] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        usage_tracker: Optional[UsageTracker] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.provider = provider
        self.supervisor = supervisor
        self.settings = settings or AgentSettings()
        self.context_manager = context_manager or ContextManager(
            enable_prompt_cache=self.settings.enable_prompt_cache
        )
        self.deduplicator = deduplicator or RequestDeduplicator(
            window_seconds=self.settings.dedup_window_seconds
        )
        self.usage_tracker = usage_tracker or UsageTracker()
        self.tools = list(TOOL_DEFINITIONS)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(
        self,
        instruction: str,
        conversation: Optional[List[Message]] = None,
        session_id: str = "default",
    ) -> AsyncIterator[Frame]:
        """Stream the frames of one run. The last frame is always ``complete``."""
        return self._run(instruction, conversation, session_id, _RunState())

    async def run_to_completion(
        self,
        instruction: str,
        conversation: Optional[List[Message]] = None,
        session_id: str = "default",
        on_frame: Optional[Callable[[Frame], None]] = None,
    ) -> AgentOutcome:
        state = _RunState()
        async for frame in self._run(instruction, conversation, session_id, state):
            if on_frame is not None:
                on_frame(frame)
        return state.outcome

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def _run(
        self,
        instruction: str,
        conversation: Optional[List[Message]],
        session_id: str,
        state: _RunState,
    ) -> AsyncIterator[Frame]:
        history = list(conversation or [])

        if not self.deduplicator.accept(session_id, instruction):
            state.outcome = AgentOutcome(
                status=REJECTED,
                text="",
                conversation=history,
                error="Duplicate request ignored",
            )
            yield error_frame(state.outcome.error)
            yield self._complete(state.outcome, session_id)
            return

        budget = self.settings.session_budget_eur
        if self.usage_tracker.is_over_budget(session_id, budget):
            state.outcome = AgentOutcome(
                status=BUDGET_EXCEEDED,
                text="",
                conversation=history,
                error=f"Session budget of {budget:.2f} EUR exhausted",
            )
            yield error_frame(state.outcome.error)
            yield self._complete(state.outcome, session_id)
            return

        current: List[Message] = [Message.user(instruction)]
        answer_parts: List[str] = []
        files_created: List[str] = []
        files_modified: List[str] = []
        last_batch: Optional[Tuple[str, ...]] = None
        repeats = 0
        turns = 0
        status = MAX_TURNS_EXCEEDED
        error: Optional[str] = None
        error_kind: Optional[ErrorKind] = None

        while turns < self.settings.max_turns:
            turns += 1
            logger.debug(f"Turn {turns}/{self.settings.max_turns} for session {session_id}")
            prepared = self.context_manager.prepare(history, current, instruction)
            turn = TurnState()

            try:
                async for frame in self._stream_turn(prepared, turn):
                    yield frame
            except StreamTransportError as e:
                if e.partial_text:
                    answer_parts.append(e.partial_text)
                    current.append(Message.assistant(e.partial_text))
                status, error, error_kind = ABORTED, str(e), e.kind
                logger.warning(f"Turn {turns} aborted mid-stream: {e}")
                yield error_frame(error, e.kind.value)
                break
            except ProviderError as e:
                status, error, error_kind = ABORTED, str(e), e.kind
                logger.error(f"Turn {turns} failed: {e}")
                yield error_frame(error, e.kind.value)
                break

            self.usage_tracker.record(session_id, self.provider.model, turn.usage)

            if turn.text or turn.tool_calls:
                current.append(Message.assistant(turn.text, turn.tool_calls))
            if turn.text:
                answer_parts.append(turn.text)

            if not turn.tool_calls:
                status = COMPLETED
                break

            batch = tuple(call.fingerprint() for call in turn.tool_calls)
            repeats = repeats + 1 if batch == last_batch else 1
            last_batch = batch
            if repeats >= self.settings.max_repeated_tool_calls:
                logger.warning(
                    f"Identical tool calls repeated {repeats} times, stopping: {batch}"
                )
                current.append(Message.tool_results([
                    ToolResult(
                        call_id=call.id,
                        name=call.name,
                        content="Error: not executed, the same call was repeated too many times",
                        success=False,
                    )
                    for call in turn.tool_calls
                ]))
                status = LOOP_DETECTED
                error = f"The same tool calls were requested {repeats} turns in a row"
                yield error_frame(error)
                break

            results = await self.supervisor.dispatch_batch(turn.tool_calls)
            self._track_files(results, files_created, files_modified)
            if len(results) == 1:
                yield tool_result_frame(results[0])
            else:
                yield tool_results_batch_frame(results)
            current.append(Message.tool_results(results))

        if status == MAX_TURNS_EXCEEDED:
            error = f"Maximum turns ({self.settings.max_turns}) exceeded"
            logger.warning(f"{error} for session {session_id}")
            yield error_frame(error)

        state.outcome = AgentOutcome(
            status=status,
            text="\n\n".join(answer_parts),
            conversation=history + current,
            turns=turns,
            error=error,
            error_kind=error_kind,
            files_created=files_created,
            files_modified=files_modified,
        )
        yield self._complete(state.outcome, session_id)

    async def _stream_turn(self, prepared: PreparedTurn, turn: TurnState) -> AsyncIterator[Frame]:
        """
        Stream one provider call into ``turn``, relaying frames.

        Transient errors are retried with exponential backoff as long as
        nothing from the failing attempt has reached the caller.

        Raises:
            StreamTransportError: The stream failed after output was relayed,
                or carried malformed tool arguments
            TransientProviderError: Retries exhausted
            FatalConfigError: Credentials or request rejected
            ProviderError: Any other failure
        """
        max_retries = self.settings.max_retries
        while True:
            turn.attempts += 1
            turn.reset()
            relayed = False
            failure: Optional[StreamError] = None

            events = self.provider.stream_turn(prepared.messages, prepared.system, self.tools)
            async with aclosing(events):
                async for event in events:
                    if isinstance(event, TextDelta):
                        turn.text_parts.append(event.text)
                        relayed = True
                        yield text_frame(event.text)
                    elif isinstance(event, ToolCallArgsDelta):
                        relayed = True
                        yield tool_input_frame(event.id, event.partial)
                    elif isinstance(event, ToolCallReady):
                        call = ToolCall(id=event.id, name=event.name, input=event.input)
                        turn.tool_calls.append(call)
                        relayed = True
                        yield function_call_frame(call)
                    elif isinstance(event, TurnFinished):
                        turn.reason = event.reason
                        turn.usage = event.usage
                    elif isinstance(event, StreamError):
                        failure = event
                        break

            if failure is None:
                return

            kind = failure.kind
            if kind.transient and not relayed and turn.attempts <= max_retries:
                delay = min(
                    self.settings.retry_base_delay * (2 ** (turn.attempts - 1)),
                    self.settings.retry_max_delay,
                )
                logger.warning(
                    f"Transient {kind.value} error, retry {turn.attempts}/{max_retries} "
                    f"in {delay:.1f}s: {failure.detail}"
                )
                yield retrying_frame(turn.attempts, max_retries, delay, failure.detail)
                await self._sleep(delay)
                continue

            if relayed or kind == ErrorKind.MALFORMED_TOOL_ARGS:
                raise StreamTransportError(failure.detail, kind, partial_text=turn.text)
            if kind.transient:
                raise TransientProviderError(
                    f"{failure.detail} (gave up after {max_retries} retries)", kind
                )
            if kind in (ErrorKind.AUTH, ErrorKind.INVALID_REQUEST):
                raise FatalConfigError(failure.detail, kind)
            raise ProviderError(failure.detail, kind)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _track_files(
        results: List[ToolResult],
        files_created: List[str],
        files_modified: List[str],
    ) -> None:
        for result in results:
            if result.name not in FILE_WRITE_TOOLS or not result.success or not result.data:
                continue
            path = result.data.get("path")
            if not path:
                continue
            if result.data.get("created"):
                if path not in files_created:
                    files_created.append(path)
            elif path not in files_created and path not in files_modified:
                files_modified.append(path)

    def _complete(self, outcome: AgentOutcome, session_id: str) -> Frame:
        outcome.usage = self.usage_tracker.summary(session_id)
        return complete_frame(
            status=outcome.status,
            text=outcome.text,
            turns=outcome.turns,
            usage=outcome.usage,
            files_created=outcome.files_created,
            files_modified=outcome.files_modified,
        )
