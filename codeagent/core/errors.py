"""
Error taxonomy shared across the agent loop, provider adapters and tools.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification decided once by a provider adapter."""

    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    MALFORMED_TOOL_ARGS = "malformed_tool_args"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER}
)


class CodeAgentError(Exception):
    """Base class for all codeagent errors."""


class ProviderError(CodeAgentError):
    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind


class TransientProviderError(ProviderError):
    """Rate limiting or a momentary network failure; retried with backoff."""


class FatalConfigError(ProviderError):
    """Missing credentials or a malformed request; never retried."""


class StreamTransportError(ProviderError):
    """The stream broke mid-turn. Text relayed before the failure is kept."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.NETWORK, partial_text: str = ""):
        super().__init__(message, kind)
        self.partial_text = partial_text


class ToolExecutionError(CodeAgentError):
    """A tool could not run (file not found, sandbox violation, command failure)."""


class EditConflictError(ToolExecutionError):
    """Neither an exact nor a fuzzy match was found for an edit."""

    def __init__(self, message: str, *, preview: str = "", searched: str = ""):
        super().__init__(message)
        self.preview = preview
        self.searched = searched

    def __str__(self) -> str:
        text = super().__str__()
        if self.searched:
            text += f"\nSearched for:\n{self.searched}"
        if self.preview:
            text += f"\nFile preview:\n{self.preview}"
        return text


class TransactionRollbackError(CodeAgentError):
    """Restoring the pre-transaction snapshots failed for at least one path."""

    def __init__(self, message: str, failed_paths: Optional[list] = None):
        super().__init__(message)
        self.failed_paths = failed_paths or []


class MissingFileError(ToolExecutionError):
    """edit_file target does not exist; write_file should be used instead."""
