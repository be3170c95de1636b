"""
AI Provider Abstraction Layer

Provides a unified streaming interface over the Anthropic, OpenAI/Groq
and Gemini wire protocols. Every adapter emits the same canonical events.
"""

from codeagent.core.ai.base import (
    AIProviderConfig,
    BaseAIProvider,
    ProviderType,
    StreamError,
    SystemPrompt,
    TextDelta,
    TokenUsage,
    ToolCallArgsDelta,
    ToolCallReady,
    ToolCallStarted,
    TurnFinished,
)
from codeagent.core.ai.anthropic_provider import AnthropicProvider
from codeagent.core.ai.openai_provider import OpenAIProvider
from codeagent.core.ai.gemini_provider import GeminiProvider
from codeagent.core.ai.factory import AIProviderFactory

__all__ = [
    "AIProviderConfig",
    "BaseAIProvider",
    "ProviderType",
    "StreamError",
    "SystemPrompt",
    "TextDelta",
    "TokenUsage",
    "ToolCallArgsDelta",
    "ToolCallReady",
    "ToolCallStarted",
    "TurnFinished",
    "AnthropicProvider",
    "OpenAIProvider",
    "GeminiProvider",
    "AIProviderFactory",
]
