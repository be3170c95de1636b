# codeagent/core/messages.py
"""
Conversation data model shared by the agent loop, the context manager,
the provider adapters and the tool dispatcher.

A Message is a role plus an ordered list of content blocks. Roles are
``user``, ``assistant`` and ``tool`` (the carrier of tool results, which
each adapter maps onto its vendor's wire shape).
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: Dict[str, Any]
    type: str = field(default="tool_use", init=False)


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    success: bool = True
    name: Optional[str] = None
    type: str = field(default="tool_result", init=False)


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class ToolCall:
    """A model-initiated request to run one named tool."""

    id: str
    name: str
    input: Dict[str, Any]

    def fingerprint(self) -> str:
        return f"{self.name}:{json.dumps(self.input, sort_keys=True, separators=(',', ':'))}"


@dataclass
class ToolResult:
    """Outcome of one ToolCall; ``call_id`` ties it back to the call."""

    call_id: str
    name: str
    content: str
    success: bool = True
    data: Optional[Dict[str, Any]] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.call_id,
            "name": self.name,
            "success": self.success,
            "content": self.content,
        }
        if self.data is not None:
            result["data"] = self.data
        if self.cached:
            result["cached"] = True
        return result


@dataclass
class Message:
    role: str
    blocks: List[ContentBlock] = field(default_factory=list)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", blocks=[TextBlock(text)])

    @classmethod
    def assistant(cls, text: str, tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        blocks: List[ContentBlock] = []
        if text:
            blocks.append(TextBlock(text))
        for call in tool_calls or []:
            blocks.append(ToolUseBlock(id=call.id, name=call.name, input=call.input))
        return cls(role="assistant", blocks=blocks)

    @classmethod
    def tool_results(cls, results: List[ToolResult]) -> "Message":
        return cls(
            role="tool",
            blocks=[
                ToolResultBlock(
                    tool_use_id=r.call_id,
                    content=r.content,
                    success=r.success,
                    name=r.name,
                )
                for r in results
            ],
        )

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]

    @property
    def tool_results_blocks(self) -> List[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    def is_instruction(self) -> bool:
        """True for a user message carrying text, i.e. the start of an exchange."""
        return self.role == "user" and any(isinstance(b, TextBlock) for b in self.blocks)

    def plain_text(self) -> str:
        """All textual content of the message, used for relevance scoring."""
        parts: List[str] = []
        for block in self.blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                parts.append(f"{block.name} {json.dumps(block.input)}")
            else:
                parts.append(block.content)
        return "\n".join(parts)
