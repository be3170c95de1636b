"""
Agent loop tests. The provider is a scripted fake that replays canonical
events; tools run either through a recording fake or the real dispatcher
against tmp_path.
"""

import asyncio

import pytest

from codeagent.config.settings import AgentSettings
from codeagent.core.agent_loop import AgentLoop
from codeagent.core.ai.base import (
    END_TURN,
    TOOL_USE,
    ProviderType,
    StreamError,
    TextDelta,
    TokenUsage,
    ToolCallArgsDelta,
    ToolCallReady,
    ToolCallStarted,
    TurnFinished,
)
from codeagent.core.errors import ErrorKind
from codeagent.core.messages import Message, ToolResult
from codeagent.core.request_guard import RequestDeduplicator
from codeagent.core.supervisor import ToolSupervisor


def run_async(coro):
    """Helper to run async coroutines inside plain pytest tests."""
    return asyncio.run(coro)


class FakeProvider:
    """Replays one scripted list of events per provider call."""

    provider_type = ProviderType.OPENAI

    def __init__(self, scripts, model="gpt-4o-mini"):
        self._scripts = scripts
        self._model = model
        self.calls = []

    @property
    def model(self):
        return self._model

    async def stream_turn(self, messages, system, tools):
        self.calls.append(list(messages))
        if callable(self._scripts):
            events = self._scripts(len(self.calls))
        else:
            events = self._scripts[len(self.calls) - 1]
        for event in events:
            yield event


class FakeSupervisor:
    def __init__(self):
        self.batches = []

    async def dispatch_batch(self, calls):
        self.batches.append(list(calls))
        return [
            ToolResult(call_id=c.id, name=c.name, content=f"ok {c.name}")
            for c in calls
        ]


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def tool_turn(call_id, name, args, usage=None):
    return [
        ToolCallStarted(id=call_id, name=name),
        ToolCallArgsDelta(id=call_id, partial="{}"),
        ToolCallReady(id=call_id, name=name, input=args),
        TurnFinished(reason=TOOL_USE, usage=usage or TokenUsage()),
    ]


def text_turn(text, usage=None):
    return [TextDelta(text), TurnFinished(reason=END_TURN, usage=usage or TokenUsage())]


def make_loop(provider, supervisor=None, sleeps=None, **settings):
    recorded = [] if sleeps is None else sleeps

    async def fake_sleep(delay):
        recorded.append(delay)

    return AgentLoop(
        provider,
        supervisor or FakeSupervisor(),
        settings=AgentSettings(**settings),
        sleep=fake_sleep,
    )


async def collect_frames(loop, instruction, **kwargs):
    return [frame async for frame in loop.run(instruction, **kwargs)]


# ---------------------------------------------------------------------------
# Completion and turn bounds
# ---------------------------------------------------------------------------

def test_text_only_turn_completes():
    provider = FakeProvider([text_turn("Hello there")])
    loop = make_loop(provider)

    frames = run_async(collect_frames(loop, "say hi"))

    assert [f["type"] for f in frames] == ["text", "complete"]
    assert frames[-1]["status"] == "completed"
    assert frames[-1]["text"] == "Hello there"
    assert frames[-1]["turns"] == 1


def test_turn_limit_bounds_an_endless_tool_caller():
    provider = FakeProvider(
        lambda n: tool_turn(f"call_{n}", "read_file", {"filePath": f"f{n}.txt"})
    )
    supervisor = FakeSupervisor()
    loop = make_loop(provider, supervisor, max_turns=4)

    outcome = run_async(loop.run_to_completion("keep reading"))

    assert outcome.status == "max_turns_exceeded"
    assert outcome.turns == 4
    assert len(provider.calls) == 4
    assert len(supervisor.batches) == 4
    assert "Maximum turns (4) exceeded" in outcome.error


def test_final_frame_is_always_complete():
    provider = FakeProvider(
        lambda n: tool_turn(f"call_{n}", "read_file", {"filePath": f"f{n}.txt"})
    )
    loop = make_loop(provider, max_turns=2)

    frames = run_async(collect_frames(loop, "loop forever"))

    assert frames[-1]["type"] == "complete"
    assert frames[-2] == {"type": "error", "message": "Maximum turns (2) exceeded"}


def test_identical_tool_batches_stop_the_loop():
    provider = FakeProvider(
        lambda n: tool_turn(f"call_{n}", "read_file", {"filePath": "same.txt"})
    )
    supervisor = FakeSupervisor()
    loop = make_loop(provider, supervisor, max_turns=10, max_repeated_tool_calls=3)

    outcome = run_async(loop.run_to_completion("read it"))

    assert outcome.status == "loop_detected"
    assert len(provider.calls) == 3
    assert len(supervisor.batches) == 2

    # the unanswered tool_use of the last turn still gets a result
    last = outcome.conversation[-1]
    assert last.role == "tool"
    assert last.tool_results_blocks[0].tool_use_id == "call_3"
    assert last.tool_results_blocks[0].success is False


# ---------------------------------------------------------------------------
# Retry and failure classification
# ---------------------------------------------------------------------------

def test_transient_errors_retry_with_exponential_backoff():
    provider = FakeProvider([
        [StreamError(ErrorKind.RATE_LIMIT, "429 Too Many Requests")],
        [StreamError(ErrorKind.NETWORK, "connection reset")],
        text_turn("done"),
    ])
    sleeps = []
    loop = make_loop(provider, sleeps=sleeps)

    frames = run_async(collect_frames(loop, "do it"))

    assert sleeps == [1.0, 2.0]
    retrying = [f for f in frames if f["type"] == "retrying"]
    assert [(f["attempt"], f["delay"]) for f in retrying] == [(1, 1.0), (2, 2.0)]
    assert retrying[0]["maxRetries"] == 3
    assert frames[-1]["status"] == "completed"
    assert frames[-1]["text"] == "done"


def test_backoff_delay_is_capped():
    provider = FakeProvider(lambda n: [StreamError(ErrorKind.SERVER, "503")])
    sleeps = []
    loop = make_loop(provider, sleeps=sleeps, max_retries=4, retry_max_delay=3.0)

    outcome = run_async(loop.run_to_completion("do it"))

    assert sleeps == [1.0, 2.0, 3.0, 3.0]
    assert len(provider.calls) == 5
    assert outcome.status == "aborted"
    assert outcome.error_kind == ErrorKind.SERVER


def test_auth_errors_are_not_retried():
    provider = FakeProvider(lambda n: [StreamError(ErrorKind.AUTH, "invalid x-api-key")])
    sleeps = []
    loop = make_loop(provider, sleeps=sleeps)

    frames = run_async(collect_frames(loop, "do it"))

    assert sleeps == []
    assert len(provider.calls) == 1
    assert frames[-2] == {"type": "error", "message": "invalid x-api-key", "kind": "auth"}
    assert frames[-1]["status"] == "aborted"


def test_failure_after_relayed_text_aborts_and_keeps_partial_text():
    provider = FakeProvider([
        [TextDelta("Working on "), StreamError(ErrorKind.NETWORK, "connection reset")],
        text_turn("should never be requested"),
    ])
    sleeps = []
    loop = make_loop(provider, sleeps=sleeps)

    outcome = run_async(loop.run_to_completion("do it"))

    assert sleeps == []
    assert len(provider.calls) == 1
    assert outcome.status == "aborted"
    assert outcome.text == "Working on "
    assert outcome.conversation[-1].role == "assistant"
    assert outcome.conversation[-1].text == "Working on "


def test_malformed_tool_arguments_abort_without_running_tools():
    provider = FakeProvider([
        [
            ToolCallStarted(id="call_1", name="write_file"),
            ToolCallArgsDelta(id="call_1", partial='{"filePath": '),
            StreamError(ErrorKind.MALFORMED_TOOL_ARGS, "Invalid JSON arguments"),
        ],
    ])
    supervisor = FakeSupervisor()
    loop = make_loop(provider, supervisor)

    outcome = run_async(loop.run_to_completion("write it"))

    assert outcome.status == "aborted"
    assert outcome.error_kind == ErrorKind.MALFORMED_TOOL_ARGS
    assert supervisor.batches == []


# ---------------------------------------------------------------------------
# Admission: deduplication and budget
# ---------------------------------------------------------------------------

def test_duplicate_instruction_is_rejected_within_window():
    provider = FakeProvider(lambda n: text_turn("ok"))
    clock = FakeClock()
    loop = AgentLoop(provider, FakeSupervisor(), deduplicator=RequestDeduplicator(clock=clock))

    first = run_async(loop.run_to_completion("fix the bug", session_id="s1"))
    clock.now += 0.5
    second = run_async(loop.run_to_completion("fix the bug", session_id="s1"))
    other_session = run_async(loop.run_to_completion("fix the bug", session_id="s2"))
    clock.now += 2.5
    third = run_async(loop.run_to_completion("fix the bug", session_id="s1"))

    assert first.status == "completed"
    assert second.status == "rejected"
    assert other_session.status == "completed"
    assert third.status == "completed"
    assert len(provider.calls) == 3


def test_rejected_request_emits_error_then_complete():
    provider = FakeProvider(lambda n: text_turn("ok"))
    loop = make_loop(provider)

    run_async(collect_frames(loop, "same words"))
    frames = run_async(collect_frames(loop, "same words"))

    assert [f["type"] for f in frames] == ["error", "complete"]
    assert frames[-1]["status"] == "rejected"


def test_session_budget_blocks_new_runs():
    usage = TokenUsage(input_tokens=100_000, output_tokens=10_000)
    provider = FakeProvider(lambda n: text_turn("ok", usage), model="gpt-4o")
    loop = make_loop(provider, session_budget_eur=0.01)

    first = run_async(loop.run_to_completion("first task", session_id="s"))
    second = run_async(loop.run_to_completion("second task", session_id="s"))

    assert first.status == "completed"
    assert first.usage["costEur"] > 0.01
    assert second.status == "budget_exceeded"
    assert len(provider.calls) == 1


# ---------------------------------------------------------------------------
# Tool flow
# ---------------------------------------------------------------------------

def test_write_then_edit_flow_against_real_dispatcher(tmp_path):
    provider = FakeProvider([
        tool_turn("call_1", "write_file", {"filePath": "hello.py", "content": "print(1)\n"}),
        tool_turn("call_2", "edit_file", {
            "filePath": "hello.py", "oldString": "print(1)", "newString": "print(2)",
        }),
        text_turn("Done"),
    ])
    loop = make_loop(provider, ToolSupervisor(tmp_path))

    frames = run_async(collect_frames(loop, "create hello.py"))

    assert [f["type"] for f in frames] == [
        "tool_input", "functionCall", "toolResult",
        "tool_input", "functionCall", "toolResult",
        "text", "complete",
    ]
    assert (tmp_path / "hello.py").read_text(encoding="utf-8") == "print(2)\n"
    complete = frames[-1]
    assert complete["filesCreated"] == ["hello.py"]
    assert complete["filesModified"] == []
    assert frames[2]["id"] == "call_1"
    assert frames[2]["success"] is True


def test_edit_of_existing_file_is_reported_as_modified(tmp_path):
    (tmp_path / "app.py").write_text("x = 1\n", encoding="utf-8")
    provider = FakeProvider([
        tool_turn("call_1", "edit_file", {"filePath": "app.py", "oldString": "x = 1", "newString": "x = 2"}),
        text_turn("Updated"),
    ])
    loop = make_loop(provider, ToolSupervisor(tmp_path))

    outcome = run_async(loop.run_to_completion("change x"))

    assert outcome.files_created == []
    assert outcome.files_modified == ["app.py"]


def test_tool_results_are_fed_back_as_one_message():
    provider = FakeProvider([
        [
            ToolCallReady(id="a", name="read_file", input={"filePath": "a"}),
            ToolCallReady(id="b", name="read_file", input={"filePath": "b"}),
            TurnFinished(reason=TOOL_USE),
        ],
        text_turn("Both read"),
    ])
    loop = make_loop(provider)

    frames = run_async(collect_frames(loop, "read a and b"))
    outcome_messages = provider.calls[1]

    batch = next(f for f in frames if f["type"] == "toolResultsBatch")
    assert [r["id"] for r in batch["results"]] == ["a", "b"]
    assert [m.role for m in outcome_messages] == ["user", "assistant", "tool"]
    assert [b.tool_use_id for b in outcome_messages[-1].tool_results_blocks] == ["a", "b"]


def test_empty_turn_adds_no_assistant_message():
    provider = FakeProvider([[TurnFinished(reason=END_TURN, usage=TokenUsage())]])
    loop = make_loop(provider)

    outcome = run_async(loop.run_to_completion("anything?"))

    assert outcome.status == "completed"
    assert [m.role for m in outcome.conversation] == ["user"]


def test_final_text_joins_text_of_every_turn():
    provider = FakeProvider([
        [TextDelta("Looking."), *tool_turn("a", "list_files", {})],
        text_turn("All set."),
    ])
    loop = make_loop(provider)

    outcome = run_async(loop.run_to_completion("check"))

    assert outcome.text == "Looking.\n\nAll set."


def test_prior_conversation_is_sent_before_the_new_instruction():
    provider = FakeProvider(lambda n: text_turn("ok"))
    loop = make_loop(provider)
    history = [Message.user("earlier question"), Message.assistant("earlier answer")]

    outcome = run_async(loop.run_to_completion("next", conversation=history))

    sent = provider.calls[0]
    assert [m.text for m in sent] == ["earlier question", "earlier answer", "next"]
    assert len(outcome.conversation) == 4


def test_usage_is_accumulated_per_session():
    usage = TokenUsage(input_tokens=10, output_tokens=5, cached_input_tokens=4)
    provider = FakeProvider([
        tool_turn("a", "list_files", {}, usage),
        text_turn("done", usage),
    ])
    loop = make_loop(provider)

    outcome = run_async(loop.run_to_completion("list", session_id="u"))

    assert outcome.usage["inputTokens"] == 20
    assert outcome.usage["outputTokens"] == 10
    assert outcome.usage["cachedInputTokens"] == 8
    assert outcome.usage["calls"] == 2


@pytest.mark.parametrize("turns,expected", [(0, 1), (8, 8), (500, 50)])
def test_max_turns_setting_is_clamped(turns, expected):
    assert AgentSettings(max_turns=turns).max_turns == expected
