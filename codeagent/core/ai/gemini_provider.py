"""
Gemini Provider Implementation

Whole-call protocol: a function call arrives complete inside a single
response part, with its arguments already decoded. No buffering is
needed, but the call is still relayed as started / args / ready so the
agent loop sees the same event sequence as for the streaming vendors.
Gemini does not assign call ids, so one is generated per call.
"""

import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

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
)
from codeagent.core.errors import ErrorKind
from codeagent.core.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock
from codeagent.core.tools import ToolDefinition

logger = logging.getLogger(__name__)

SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


def _to_plain(value: Any) -> Any:
    """Convert proto map/repeated composites into plain dicts and lists."""
    if isinstance(value, (str, bytes)):
        return value
    if isinstance(value, Mapping):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, Sequence):
        return [_to_plain(v) for v in value]
    return value


def _gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Gemini expects upper-case OpenAPI type names."""
    converted: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties":
            converted[key] = {name: _gemini_schema(prop) for name, prop in value.items()}
        elif key == "required" and not value:
            continue
        else:
            converted[key] = value
    return converted


def _new_call_id() -> str:
    return f"gemini_{uuid.uuid4().hex[:16]}"


class WholeCallAssembler(StreamAssembler):
    """Relays complete Gemini function calls as canonical events."""

    def __init__(self, id_factory: Callable[[], str] = _new_call_id):
        super().__init__()
        self._id_factory = id_factory
        self._usage = TokenUsage()
        self._finish_reason: Optional[str] = None
        self._saw_tool_call = False

    def feed(self, raw: Any) -> List[StreamEvent]:
        usage = _field(raw, "usage_metadata")
        if usage:
            self._usage.input_tokens = _field(usage, "prompt_token_count", 0) or 0
            self._usage.output_tokens = _field(usage, "candidates_token_count", 0) or 0
            self._usage.cached_input_tokens = _field(usage, "cached_content_token_count", 0) or 0

        candidates = _field(raw, "candidates") or []
        if not candidates:
            block_reason = _field(_field(raw, "prompt_feedback"), "block_reason")
            if block_reason:
                reason = getattr(block_reason, "name", None) or str(block_reason)
                return [StreamError(ErrorKind.INVALID_REQUEST, f"Prompt blocked: {reason}")]
            return []

        candidate = candidates[0]
        events: List[StreamEvent] = []
        for part in _field(_field(candidate, "content"), "parts") or []:
            function_call = _field(part, "function_call")
            name = _field(function_call, "name")
            if name:
                events.extend(self._relay_call(name, _field(function_call, "args")))
                if isinstance(events[-1], StreamError):
                    return events
                continue
            text = _field(part, "text")
            if text:
                events.append(TextDelta(text))

        finish_reason = _field(candidate, "finish_reason")
        if finish_reason:
            self._finish_reason = getattr(finish_reason, "name", None) or str(finish_reason)
        return events

    def _relay_call(self, name: str, raw_args: Any) -> List[StreamEvent]:
        arguments = _to_plain(raw_args) if raw_args is not None else {}
        if not isinstance(arguments, dict):
            return [StreamError(
                ErrorKind.MALFORMED_TOOL_ARGS,
                f"Arguments for tool '{name}' are not an object",
            )]
        call_id = self._id_factory()
        self._saw_tool_call = True
        return [
            ToolCallStarted(id=call_id, name=name),
            ToolCallArgsDelta(id=call_id, partial=json.dumps(arguments)),
            ToolCallReady(id=call_id, name=name, input=arguments),
        ]

    def finish(self) -> List[StreamEvent]:
        if self._finish_reason is None:
            return [StreamError(ErrorKind.NETWORK, "Stream closed before a finish_reason was sent")]
        self.finished = True
        if self._saw_tool_call:
            reason = TOOL_USE
        elif self._finish_reason == "MAX_TOKENS":
            reason = MAX_TOKENS
        elif self._finish_reason == "STOP":
            reason = END_TURN
        else:
            reason = OTHER
        return [TurnFinished(reason=reason, usage=self._usage)]


class GeminiProvider(BaseAIProvider):
    """Google Generative AI provider implementation."""

    def __init__(self, config: AIProviderConfig):
        """Initialize Gemini provider."""
        super().__init__(config)
        genai.configure(api_key=config.api_key)
        logger.info(f"GeminiProvider initialized with model: {config.default_model}")

    def _new_assembler(self) -> StreamAssembler:
        return WholeCallAssembler()

    def classify_error(self, error: Exception) -> ErrorKind:
        if isinstance(error, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
            return ErrorKind.RATE_LIMIT
        if isinstance(error, (google_exceptions.DeadlineExceeded, TimeoutError)):
            return ErrorKind.TIMEOUT
        if isinstance(error, google_exceptions.ServerError):
            return ErrorKind.SERVER
        if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
            return ErrorKind.AUTH
        if isinstance(error, google_exceptions.ClientError):
            return ErrorKind.INVALID_REQUEST
        if isinstance(error, ConnectionError):
            return ErrorKind.NETWORK
        return ErrorKind.UNKNOWN

    def format_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        if not tools:
            return []
        return [{
            "function_declarations": [
                {
                    "name": t.name,
                    "description": t.description,
                    "parameters": _gemini_schema(t.json_schema()),
                }
                for t in tools
            ]
        }]

    def format_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        # functionResponse is keyed by function name, not by call id
        names_by_id: Dict[str, str] = {}
        contents: List[Dict[str, Any]] = []
        for msg in messages:
            parts: List[Dict[str, Any]] = []
            for block in msg.blocks:
                if isinstance(block, TextBlock):
                    if block.text:
                        parts.append({"text": block.text})
                elif isinstance(block, ToolUseBlock):
                    names_by_id[block.id] = block.name
                    parts.append({"function_call": {"name": block.name, "args": block.input}})
                elif isinstance(block, ToolResultBlock):
                    name = block.name or names_by_id.get(block.tool_use_id, "unknown_tool")
                    parts.append({
                        "function_response": {
                            "name": name,
                            "response": {"content": block.content, "success": block.success},
                        }
                    })
            if parts:
                role = "model" if msg.role == "assistant" else "user"
                contents.append({"role": role, "parts": parts})
        return contents

    async def _open_stream(
        self,
        messages: List[Message],
        system: SystemPrompt,
        tools: List[ToolDefinition],
    ) -> AsyncIterator[Any]:
        model = genai.GenerativeModel(
            self.config.default_model,
            system_instruction=system.text or None,
            tools=self.format_tools(tools) or None,
        )
        generation_config = {
            "temperature": float(self.config.temperature),
            "max_output_tokens": int(self.config.max_tokens),
        }
        if self.config.extra_params:
            generation_config.update(self.config.extra_params)
        return await model.generate_content_async(
            self.format_messages(messages),
            generation_config=generation_config,
            safety_settings=SAFETY_SETTINGS,
            stream=True,
            request_options={"timeout": self.config.timeout},
        )
