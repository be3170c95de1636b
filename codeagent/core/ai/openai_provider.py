"""
OpenAI Provider Implementation

Delta-accumulation protocol: tool calls are addressed by their position
index within the turn, and each chunk may carry a fragment of a call's
name and/or of its serialized arguments. Fragments are concatenated per
index in arrival order and parsed once, after the stream ends.

Groq exposes the same wire protocol through an OpenAI-compatible
endpoint and is served by this provider with a different base URL.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI
import openai

from codeagent.core.ai.base import (
    END_TURN,
    MAX_TOKENS,
    OTHER,
    TOOL_USE,
    AIProviderConfig,
    BaseAIProvider,
    ProviderType,
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
from codeagent.core.messages import Message, TextBlock, ToolUseBlock
from codeagent.core.tools import ToolDefinition

logger = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

_FINISH_REASONS = {
    "stop": END_TURN,
    "tool_calls": TOOL_USE,
    "function_call": TOOL_USE,
    "length": MAX_TOKENS,
}


@dataclass
class _ToolSlot:
    index: int
    id: Optional[str] = None
    name_parts: List[str] = field(default_factory=list)
    arg_parts: List[str] = field(default_factory=list)
    started: bool = False

    @property
    def name(self) -> str:
        return "".join(self.name_parts)


class DeltaAccumulator(StreamAssembler):
    """Accumulates chat-completion chunks into canonical events."""

    def __init__(self):
        super().__init__()
        self._slots: Dict[int, _ToolSlot] = {}
        self._usage = TokenUsage()
        self._finish_reason: Optional[str] = None

    def feed(self, raw: Any) -> List[StreamEvent]:
        events: List[StreamEvent] = []

        usage = _field(raw, "usage") or _field(_field(raw, "x_groq"), "usage")
        if usage:
            self._record_usage(usage)

        choices = _field(raw, "choices") or []
        if not choices:
            return events
        choice = choices[0]
        delta = _field(choice, "delta")

        content = _field(delta, "content")
        if content:
            events.append(TextDelta(content))

        for tool_delta in _field(delta, "tool_calls") or []:
            events.extend(self._on_tool_delta(tool_delta))

        finish_reason = _field(choice, "finish_reason")
        if finish_reason:
            self._finish_reason = finish_reason
        return events

    def _on_tool_delta(self, tool_delta: Any) -> List[StreamEvent]:
        index = _field(tool_delta, "index", 0) or 0
        slot = self._slots.get(index)
        if slot is None:
            slot = self._slots[index] = _ToolSlot(index=index)

        call_id = _field(tool_delta, "id")
        if call_id and not slot.id:
            slot.id = call_id

        function = _field(tool_delta, "function")
        name_part = _field(function, "name")
        if name_part:
            slot.name_parts.append(name_part)
        arg_part = _field(function, "arguments")
        if arg_part:
            slot.arg_parts.append(arg_part)

        events: List[StreamEvent] = []
        if not slot.started:
            if not slot.name:
                return events
            slot.id = slot.id or f"call_{uuid.uuid4().hex[:24]}"
            slot.started = True
            events.append(ToolCallStarted(id=slot.id, name=slot.name))
            buffered = "".join(slot.arg_parts)
            if buffered:
                events.append(ToolCallArgsDelta(id=slot.id, partial=buffered))
        elif arg_part:
            events.append(ToolCallArgsDelta(id=slot.id, partial=arg_part))
        return events

    def _record_usage(self, usage: Any) -> None:
        self._usage.input_tokens = _field(usage, "prompt_tokens", 0) or 0
        self._usage.output_tokens = _field(usage, "completion_tokens", 0) or 0
        details = _field(usage, "prompt_tokens_details")
        self._usage.cached_input_tokens = _field(details, "cached_tokens", 0) or 0

    def finish(self) -> List[StreamEvent]:
        if self._finish_reason is None:
            return [StreamError(ErrorKind.NETWORK, "Stream closed before a finish_reason was sent")]

        events: List[StreamEvent] = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            if not slot.name:
                return [StreamError(
                    ErrorKind.MALFORMED_TOOL_ARGS,
                    f"Tool call at index {index} never received a name",
                )]
            payload = "".join(slot.arg_parts)
            try:
                arguments = json.loads(payload) if payload.strip() else {}
            except ValueError as e:
                return [StreamError(
                    ErrorKind.MALFORMED_TOOL_ARGS,
                    f"Invalid JSON arguments for tool '{slot.name}': {e}",
                )]
            if not isinstance(arguments, dict):
                return [StreamError(
                    ErrorKind.MALFORMED_TOOL_ARGS,
                    f"Arguments for tool '{slot.name}' are not a JSON object",
                )]
            events.append(ToolCallReady(id=slot.id, name=slot.name, input=arguments))

        self.finished = True
        reason = _FINISH_REASONS.get(self._finish_reason, OTHER)
        events.append(TurnFinished(reason=reason, usage=self._usage))
        return events


class OpenAIProvider(BaseAIProvider):
    """OpenAI (and OpenAI-compatible) chat completions provider."""

    def __init__(self, config: AIProviderConfig):
        """Initialize OpenAI provider."""
        super().__init__(config)
        base_url = config.base_url
        if base_url is None and config.provider_type == ProviderType.GROQ:
            base_url = GROQ_BASE_URL
        self.client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=base_url,
            timeout=config.timeout,
            max_retries=0,
        )
        logger.info(
            f"OpenAIProvider ({config.provider_type.value}) initialized with model: "
            f"{config.default_model}"
        )

    def _new_assembler(self) -> StreamAssembler:
        return DeltaAccumulator()

    def classify_error(self, error: Exception) -> ErrorKind:
        return classify_http_sdk_error(openai, error)

    def format_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.json_schema(),
                },
            }
            for t in tools
        ]

    def format_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                for block in msg.tool_results_blocks:
                    formatted.append({
                        "role": "tool",
                        "tool_call_id": block.tool_use_id,
                        "content": block.content,
                    })
                continue

            text = "".join(b.text for b in msg.blocks if isinstance(b, TextBlock))
            if msg.role == "assistant":
                tool_uses = [b for b in msg.blocks if isinstance(b, ToolUseBlock)]
                if not text and not tool_uses:
                    continue
                m: Dict[str, Any] = {"role": "assistant", "content": text or None}
                if tool_uses:
                    m["tool_calls"] = [
                        {
                            "id": b.id,
                            "type": "function",
                            "function": {"name": b.name, "arguments": json.dumps(b.input)},
                        }
                        for b in tool_uses
                    ]
                formatted.append(m)
            else:
                formatted.append({"role": "user", "content": text})
        return formatted

    async def _open_stream(
        self,
        messages: List[Message],
        system: SystemPrompt,
        tools: List[ToolDefinition],
    ) -> AsyncIterator[Any]:
        payload = self.format_messages(messages)
        if system.text:
            # Prefix caching is automatic on this API; the plain string is enough.
            payload.insert(0, {"role": "system", "content": system.text})

        params: Dict[str, Any] = {
            "model": self.config.default_model,
            "messages": payload,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "stream": True,
        }
        if tools:
            params["tools"] = self.format_tools(tools)
        if self.provider_type == ProviderType.OPENAI:
            params["stream_options"] = {"include_usage": True}
        if self.config.extra_params:
            params.update(self.config.extra_params)

        return await self.client.chat.completions.create(**params)
