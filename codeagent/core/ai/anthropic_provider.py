"""
Anthropic Provider Implementation

Block-streaming protocol: a tool_use content block opens with the tool
name and an empty input object, its arguments then arrive as
``input_json_delta`` fragments, and the JSON is only complete once the
matching ``content_block_stop`` fires. Arguments are buffered per block
index and parsed exactly once, at block close.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import anthropic

from codeagent.core.ai.base import (
    END_TURN,
    MAX_TOKENS,
    OTHER,
    TOOL_USE,
    AIProviderConfig,
    BaseAIProvider,
    StreamAssembler,
    StreamError,
    StreamEvent,
    SystemPrompt,
    TextDelta,
    TokenUsage,
    ToolCallArgsDelta,
    ToolCallReady,
    ToolCallStarted,
    TurnFinished,
    _field,
    classify_http_sdk_error,
)
from codeagent.core.errors import ErrorKind
from codeagent.core.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock
from codeagent.core.tools import ToolDefinition

logger = logging.getLogger(__name__)

_STOP_REASONS = {
    "end_turn": END_TURN,
    "stop_sequence": END_TURN,
    "tool_use": TOOL_USE,
    "max_tokens": MAX_TOKENS,
}

# Error event types sent inside an otherwise healthy stream.
_STREAM_ERROR_KINDS = {
    "overloaded_error": ErrorKind.SERVER,
    "api_error": ErrorKind.SERVER,
    "rate_limit_error": ErrorKind.RATE_LIMIT,
    "authentication_error": ErrorKind.AUTH,
    "permission_error": ErrorKind.AUTH,
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
}


@dataclass
class _PendingToolUse:
    id: str
    name: str
    fragments: List[str] = field(default_factory=list)
    initial_input: Optional[Dict[str, Any]] = None


class BlockStreamAssembler(StreamAssembler):
    """Assembles Anthropic raw message-stream events into canonical events."""

    def __init__(self):
        super().__init__()
        self._pending: Dict[int, _PendingToolUse] = {}
        self._usage = TokenUsage()
        self._stop_reason: Optional[str] = None

    def feed(self, raw: Any) -> List[StreamEvent]:
        event_type = _field(raw, "type")

        if event_type == "message_start":
            usage = _field(_field(raw, "message"), "usage")
            cached = _field(usage, "cache_read_input_tokens", 0) or 0
            created = _field(usage, "cache_creation_input_tokens", 0) or 0
            self._usage.input_tokens = (_field(usage, "input_tokens", 0) or 0) + cached + created
            self._usage.cached_input_tokens = cached
            return []

        if event_type == "content_block_start":
            return self._on_block_start(_field(raw, "index"), _field(raw, "content_block"))

        if event_type == "content_block_delta":
            return self._on_block_delta(_field(raw, "index"), _field(raw, "delta"))

        if event_type == "content_block_stop":
            return self._on_block_stop(_field(raw, "index"))

        if event_type == "message_delta":
            self._stop_reason = _field(_field(raw, "delta"), "stop_reason") or self._stop_reason
            output = _field(_field(raw, "usage"), "output_tokens")
            if output is not None:
                self._usage.output_tokens = output
            return []

        if event_type == "message_stop":
            if self._pending:
                names = ", ".join(p.name for p in self._pending.values())
                return [StreamError(
                    ErrorKind.MALFORMED_TOOL_ARGS,
                    f"Message ended with unclosed tool_use blocks: {names}",
                )]
            self.finished = True
            reason = _STOP_REASONS.get(self._stop_reason or "end_turn", OTHER)
            return [TurnFinished(reason=reason, usage=self._usage)]

        if event_type == "error":
            error = _field(raw, "error")
            kind = _STREAM_ERROR_KINDS.get(_field(error, "type"), ErrorKind.UNKNOWN)
            return [StreamError(kind, _field(error, "message") or "stream error event")]

        # ping and unknown event types carry nothing canonical
        return []

    def _on_block_start(self, index: int, block: Any) -> List[StreamEvent]:
        block_type = _field(block, "type")
        if block_type == "tool_use":
            initial = _field(block, "input")
            pending = _PendingToolUse(
                id=_field(block, "id"),
                name=_field(block, "name"),
                initial_input=dict(initial) if initial else None,
            )
            self._pending[index] = pending
            return [ToolCallStarted(id=pending.id, name=pending.name)]
        if block_type == "text":
            text = _field(block, "text")
            return [TextDelta(text)] if text else []
        return []

    def _on_block_delta(self, index: int, delta: Any) -> List[StreamEvent]:
        delta_type = _field(delta, "type")
        if delta_type == "text_delta":
            text = _field(delta, "text")
            return [TextDelta(text)] if text else []
        if delta_type == "input_json_delta":
            pending = self._pending.get(index)
            if pending is None:
                logger.debug(f"input_json_delta for unknown block index {index}")
                return []
            partial = _field(delta, "partial_json") or ""
            if not partial:
                return []
            pending.fragments.append(partial)
            return [ToolCallArgsDelta(id=pending.id, partial=partial)]
        return []

    def _on_block_stop(self, index: int) -> List[StreamEvent]:
        pending = self._pending.pop(index, None)
        if pending is None:
            return []

        payload = "".join(pending.fragments)
        if not payload.strip():
            arguments = pending.initial_input or {}
        else:
            try:
                arguments = json.loads(payload)
            except ValueError as e:
                return [StreamError(
                    ErrorKind.MALFORMED_TOOL_ARGS,
                    f"Invalid JSON arguments for tool '{pending.name}': {e}",
                )]
            if not isinstance(arguments, dict):
                return [StreamError(
                    ErrorKind.MALFORMED_TOOL_ARGS,
                    f"Arguments for tool '{pending.name}' are not a JSON object",
                )]
        return [ToolCallReady(id=pending.id, name=pending.name, input=arguments)]


class AnthropicProvider(BaseAIProvider):
    """Anthropic Messages API provider implementation."""

    def __init__(self, config: AIProviderConfig):
        """Initialize Anthropic provider."""
        super().__init__(config)
        # Retries are owned by the agent loop, not the SDK.
        self.client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )
        self.prompt_cache_enabled = True
        logger.info(f"AnthropicProvider initialized with model: {config.default_model}")

    def _new_assembler(self) -> StreamAssembler:
        return BlockStreamAssembler()

    def classify_error(self, error: Exception) -> ErrorKind:
        return classify_http_sdk_error(anthropic, error)

    def format_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.json_schema()}
            for t in tools
        ]

    def format_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []
        for msg in messages:
            content: List[Dict[str, Any]] = []
            for block in msg.blocks:
                if isinstance(block, TextBlock):
                    if block.text:
                        content.append({"type": "text", "text": block.text})
                elif isinstance(block, ToolUseBlock):
                    content.append({
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": block.input,
                    })
                elif isinstance(block, ToolResultBlock):
                    content.append({
                        "type": "tool_result",
                        "tool_use_id": block.tool_use_id,
                        "content": block.content,
                        "is_error": not block.success,
                    })
            if not content:
                continue
            role = "assistant" if msg.role == "assistant" else "user"
            formatted.append({"role": role, "content": content})
        return formatted

    @staticmethod
    def cached_system_blocks(text: str) -> List[Dict[str, Any]]:
        """System prompt as one text block marked for ephemeral prompt caching."""
        return [{"type": "text", "text": text, "cache_control": {"type": "ephemeral"}}]

    @staticmethod
    def is_cache_rejection(error: Exception) -> bool:
        """True when a 400 names prompt caching rather than the request itself."""
        text = f"{error} {getattr(error, 'body', None) or ''}".lower()
        return "cache_control" in text or "prompt caching" in text

    async def _open_stream(
        self,
        messages: List[Message],
        system: SystemPrompt,
        tools: List[ToolDefinition],
    ) -> AsyncIterator[Any]:
        params: Dict[str, Any] = {
            "model": self.config.default_model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": self.format_messages(messages),
            "stream": True,
        }
        if tools:
            params["tools"] = self.format_tools(tools)
        if self.config.extra_params:
            params.update(self.config.extra_params)

        if system.text and system.cacheable and self.prompt_cache_enabled:
            try:
                return await self.client.messages.create(
                    system=self.cached_system_blocks(system.text), **params
                )
            except anthropic.BadRequestError as e:
                if not self.is_cache_rejection(e):
                    raise
                logger.warning(
                    f"Prompt caching rejected, retrying with a plain system prompt: {e}"
                )
                self.prompt_cache_enabled = False

        if system.text:
            params["system"] = system.text
        return await self.client.messages.create(**params)
