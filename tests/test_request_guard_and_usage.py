import pytest

from codeagent.core.ai.base import TokenUsage
from codeagent.core.request_guard import RequestDeduplicator
from codeagent.core.usage import (
    PRICING,
    UsageTracker,
    calculate_cost_eur,
    pricing_for,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def test_same_instruction_within_window_is_rejected():
    clock = FakeClock()
    guard = RequestDeduplicator(window_seconds=2.0, clock=clock)

    assert guard.accept("s1", "fix it") is True
    clock.now = 1.9
    assert guard.accept("s1", "fix it") is False
    clock.now = 2.5
    assert guard.accept("s1", "fix it") is True


def test_rejection_does_not_extend_the_window():
    clock = FakeClock()
    guard = RequestDeduplicator(window_seconds=2.0, clock=clock)

    guard.accept("s1", "fix it")
    clock.now = 1.5
    guard.accept("s1", "fix it")
    clock.now = 2.0

    assert guard.accept("s1", "fix it") is True


def test_fingerprint_separates_sessions_and_text():
    guard = RequestDeduplicator(clock=FakeClock())

    assert guard.accept("s1", "fix it")
    assert guard.accept("s2", "fix it")
    assert guard.accept("s1", "fix it now")
    assert RequestDeduplicator.fingerprint("a", "bc") != RequestDeduplicator.fingerprint("ab", "c")


def test_expired_fingerprints_are_cleaned_up():
    clock = FakeClock()
    guard = RequestDeduplicator(window_seconds=1.0, clock=clock)

    for i in range(RequestDeduplicator.CLEANUP_THRESHOLD):
        guard.accept("s", f"instruction {i}")
    clock.now = 5.0
    guard.accept("s", "one more")
    guard.accept("s", "and another")

    assert len(guard._accepted) == 2


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def test_longest_prefix_wins():
    assert pricing_for("gpt-4o-mini-2024-07-18") is PRICING["gpt-4o-mini"]
    assert pricing_for("gpt-4o-2024-08-06") is PRICING["gpt-4o"]


def test_dotted_version_numbers_match_dashed_entries():
    assert pricing_for("claude-3.5-sonnet-latest") is PRICING["claude-3-5-sonnet"]
    assert pricing_for("gemini-2.5-flash") is PRICING["gemini-2.5-flash"]


def test_unknown_model_uses_default_pricing():
    assert pricing_for("some-new-model") is PRICING["gemini-3-flash"]
    assert pricing_for("") is PRICING["gemini-3-flash"]


def test_cost_splits_cached_and_fresh_input():
    usage = TokenUsage(input_tokens=1_000_000, output_tokens=1_000_000, cached_input_tokens=400_000)

    cost = calculate_cost_eur("claude-sonnet-4", usage)

    # 0.6M fresh at 3.00 + 0.4M cached at 0.30 + 1M output at 15.00 USD
    assert cost == pytest.approx((1.80 + 0.12 + 15.00) * 0.92)


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------

def test_tracker_accumulates_per_session():
    tracker = UsageTracker()
    tracker.record("a", "gpt-4o", TokenUsage(input_tokens=10, output_tokens=2))
    tracker.record("a", "gpt-4o", TokenUsage(input_tokens=5, output_tokens=1))
    tracker.record("b", "gpt-4o", TokenUsage(input_tokens=1))

    summary = tracker.summary("a")

    assert summary["inputTokens"] == 15
    assert summary["outputTokens"] == 3
    assert summary["calls"] == 2
    assert tracker.summary("b")["calls"] == 1
    assert tracker.summary("unknown") == {
        "inputTokens": 0,
        "outputTokens": 0,
        "cachedInputTokens": 0,
        "costEur": 0.0,
        "calls": 0,
    }


def test_record_never_raises():
    tracker = UsageTracker()

    tracker.record("a", "gpt-4o", None)

    assert tracker.summary("a")["calls"] == 0


def test_budget_check():
    tracker = UsageTracker()
    tracker.record("a", "gpt-4o", TokenUsage(input_tokens=1_000_000))

    assert tracker.is_over_budget("a", None) is False
    assert tracker.is_over_budget("a", 1.0) is True
    assert tracker.is_over_budget("a", 5.0) is False
    assert tracker.is_over_budget("fresh", 0.5) is False
