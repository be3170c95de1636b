"""
Token usage and cost accounting, per session.

Recording is observational: UsageTracker.record never raises, so a
pricing or bookkeeping problem cannot break the agent loop.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from codeagent.core.ai.base import TokenUsage

logger = logging.getLogger(__name__)

USD_TO_EUR = 0.92


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1M tokens."""

    input: float
    output: float
    cached_input: float


PRICING: Dict[str, ModelPricing] = {
    "gemini-3-flash": ModelPricing(0.10, 0.40, 0.025),
    "gemini-3-pro": ModelPricing(1.25, 5.00, 0.3125),
    "gemini-2.5-flash": ModelPricing(0.15, 0.60, 0.04),
    "claude-sonnet-4": ModelPricing(3.00, 15.00, 0.30),
    "claude-3-5-sonnet": ModelPricing(3.00, 15.00, 0.30),
    "claude-opus-4": ModelPricing(15.00, 75.00, 1.50),
    "claude-4-5-opus": ModelPricing(15.00, 75.00, 1.50),
    "claude-3-5-haiku": ModelPricing(0.80, 4.00, 0.08),
    "gpt-4o-mini": ModelPricing(0.15, 0.60, 0.075),
    "gpt-4o": ModelPricing(2.50, 10.00, 1.25),
    "llama-3.3-70b": ModelPricing(0.59, 0.79, 0.15),
    "llama-3.1-8b": ModelPricing(0.05, 0.08, 0.01),
}

DEFAULT_PRICING_MODEL = "gemini-3-flash"


def pricing_for(model: str) -> ModelPricing:
    """
    Longest-prefix lookup, ignoring the dot/dash spelling differences
    vendors use in version numbers (claude-3.5-sonnet vs claude-3-5-sonnet).
    """
    normalized = (model or "").lower().replace(".", "-")
    best: Optional[str] = None
    for name in PRICING:
        if normalized.startswith(name.replace(".", "-")):
            if best is None or len(name) > len(best):
                best = name
    return PRICING[best or DEFAULT_PRICING_MODEL]


def calculate_cost_eur(model: str, usage: TokenUsage) -> float:
    pricing = pricing_for(model)
    cached = min(usage.cached_input_tokens, usage.input_tokens)
    fresh = usage.input_tokens - cached
    usd = (
        fresh * pricing.input
        + cached * pricing.cached_input
        + usage.output_tokens * pricing.output
    ) / 1_000_000
    return usd * USD_TO_EUR


@dataclass
class SessionUsage:
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_eur: float = 0.0
    calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.usage.input_tokens,
            "outputTokens": self.usage.output_tokens,
            "cachedInputTokens": self.usage.cached_input_tokens,
            "costEur": round(self.cost_eur, 6),
            "calls": self.calls,
        }


class UsageTracker:
    def __init__(self):
        self._sessions: Dict[str, SessionUsage] = {}

    def record(self, session_id: str, model: str, usage: TokenUsage) -> None:
        try:
            entry = self._sessions.setdefault(session_id, SessionUsage())
            entry.usage = entry.usage + usage
            entry.cost_eur += calculate_cost_eur(model, usage)
            entry.calls += 1
        except Exception as e:
            logger.warning(f"Failed to record usage for session {session_id}: {e}")

    def get(self, session_id: str) -> SessionUsage:
        return self._sessions.get(session_id) or SessionUsage()

    def summary(self, session_id: str) -> Dict[str, Any]:
        return self.get(session_id).to_dict()

    def is_over_budget(self, session_id: str, budget_eur: Optional[float]) -> bool:
        if budget_eur is None:
            return False
        return self.get(session_id).cost_eur >= budget_eur
