"""
Base AI Provider Interface

Abstract base class for all AI providers plus the canonical event
vocabulary every adapter emits. Each vendor wire protocol is converted
into the same sequence of events so the agent loop never branches on
vendor identity:

    TextDelta | ToolCallStarted | ToolCallArgsDelta | ToolCallReady
    | TurnFinished | StreamError
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Union

from codeagent.core.errors import ErrorKind, FatalConfigError
from codeagent.core.messages import Message
from codeagent.core.tools import ToolDefinition

logger = logging.getLogger(__name__)


class ProviderType(Enum):
    """Supported AI provider types."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GROQ = "groq"
    GOOGLE = "gemini"


@dataclass
class AIProviderConfig:
    """Configuration for an AI provider."""
    provider_type: ProviderType
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    default_model: str = "claude-sonnet-4"
    temperature: float = 0.2
    max_tokens: int = 8192
    timeout: int = 120
    extra_params: Optional[Dict[str, Any]] = None


@dataclass
class SystemPrompt:
    """
    System prompt segment for one turn.

    ``cacheable`` marks the text as a stable prefix that providers with
    prompt-level caching may reuse across calls.
    """
    text: str
    cacheable: bool = False


# ----------------------------------------------------------------------
# Canonical events
# ----------------------------------------------------------------------

END_TURN = "end_turn"
TOOL_USE = "tool_use"
MAX_TOKENS = "max_tokens"
OTHER = "other"


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
        )


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgsDelta:
    id: str
    partial: str


@dataclass(frozen=True)
class ToolCallReady:
    id: str
    name: str
    input: Dict[str, Any]


@dataclass(frozen=True)
class TurnFinished:
    reason: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class StreamError:
    kind: ErrorKind
    detail: str


StreamEvent = Union[
    TextDelta, ToolCallStarted, ToolCallArgsDelta, ToolCallReady, TurnFinished, StreamError
]


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an SDK object or from a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StreamAssembler(ABC):
    """
    Stateful converter from one vendor's raw stream items to canonical
    events. A fresh assembler is created for every turn.
    """

    def __init__(self):
        self.finished = False

    @abstractmethod
    def feed(self, raw: Any) -> List[StreamEvent]:
        """Consume one raw stream item and return the events it completes."""

    def finish(self) -> List[StreamEvent]:
        """Called once the raw stream is exhausted."""
        if self.finished:
            return []
        return [StreamError(ErrorKind.NETWORK, "Stream closed before the turn finished")]


async def _close_stream(stream: Any) -> None:
    closer = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


class BaseAIProvider(ABC):
    """
    Abstract base class for all AI providers.

    Subclasses supply three pieces: how to open the vendor stream, how to
    assemble its raw items into canonical events, and how to classify the
    vendor SDK's exceptions. ``stream_turn`` ties them together and turns
    any transport failure into a ``StreamError`` event.
    """

    def __init__(self, config: AIProviderConfig):
        """
        Initialize the AI provider.

        Args:
            config: Provider configuration

        Raises:
            FatalConfigError: If no API key is configured
        """
        self.config = config
        self.provider_type = config.provider_type
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate provider configuration."""
        if not self.config.api_key:
            raise FatalConfigError(
                f"API key required for {self.provider_type.value}", ErrorKind.AUTH
            )

    @property
    def model(self) -> str:
        return self.config.default_model

    async def stream_turn(
        self,
        messages: List[Message],
        system: SystemPrompt,
        tools: List[ToolDefinition],
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Stream one turn as canonical events.

        Args:
            messages: Conversation to send (already pruned)
            system: System prompt segment
            tools: Tool definitions to declare

        Yields:
            Canonical events, ending with TurnFinished or StreamError
        """
        assembler = self._new_assembler()
        stream = None
        try:
            stream = await self._open_stream(messages, system, tools)
            async for raw in stream:
                for event in assembler.feed(raw):
                    yield event
                    if isinstance(event, StreamError):
                        return
            for event in assembler.finish():
                yield event
        except Exception as e:
            kind = self.classify_error(e)
            logger.warning(
                f"{self.provider_type.value} stream failed ({kind.value}): {e}"
            )
            yield StreamError(kind=kind, detail=str(e) or e.__class__.__name__)
        finally:
            if stream is not None:
                try:
                    await _close_stream(stream)
                except Exception as e:
                    logger.debug(f"Closing {self.provider_type.value} stream failed: {e}")

    @abstractmethod
    def _new_assembler(self) -> StreamAssembler:
        """Create the per-turn assembler for this vendor's protocol."""

    @abstractmethod
    async def _open_stream(
        self,
        messages: List[Message],
        system: SystemPrompt,
        tools: List[ToolDefinition],
    ) -> AsyncIterator[Any]:
        """Issue the streaming request and return the raw async iterator."""

    @abstractmethod
    def classify_error(self, error: Exception) -> ErrorKind:
        """Map a vendor SDK exception to an ErrorKind."""

    @abstractmethod
    def format_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        """Render tool definitions in the vendor's declaration format."""

    @abstractmethod
    def format_messages(self, messages: List[Message]) -> List[Dict[str, Any]]:
        """Render the conversation in the vendor's message format."""


def classify_http_sdk_error(sdk: Any, error: Exception) -> ErrorKind:
    """
    Classify an exception raised by an HTTP-based vendor SDK.

    The anthropic and openai SDKs expose the same exception hierarchy
    (RateLimitError, APITimeoutError, APIConnectionError, APIStatusError
    and its status-specific subclasses), so one mapping serves both.
    """
    if isinstance(error, sdk.RateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(error, sdk.APITimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, sdk.APIConnectionError):
        return ErrorKind.NETWORK
    if isinstance(error, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
        return ErrorKind.AUTH
    if isinstance(
        error, (sdk.BadRequestError, sdk.NotFoundError, sdk.UnprocessableEntityError)
    ):
        return ErrorKind.INVALID_REQUEST
    if isinstance(error, sdk.APIStatusError):
        status = getattr(error, "status_code", 0) or 0
        if status >= 500:
            return ErrorKind.SERVER
        if status == 408:
            return ErrorKind.TIMEOUT
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN
