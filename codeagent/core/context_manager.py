"""
Context Manager

Prepares the conversation payload for each provider call:

- Bounds prior history to an adaptive message count chosen from the
  phrasing of the new instruction
- Prunes by relevance to the instruction rather than by recency alone
- Truncates long tool outputs carried over from earlier runs
- Builds the system prompt segment, marked cacheable when enabled

History is pruned in whole exchanges (a user instruction and everything
up to the next instruction), so a tool_use block is never separated from
its tool_result. Messages of the current run are never pruned.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from codeagent.core.ai.base import SystemPrompt
from codeagent.core.messages import Message, ToolResultBlock, ToolUseBlock

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a coding agent working inside a single project directory.

Use the provided tools to inspect and change the project:
- read_file before editing a file, so oldString matches the file exactly
- edit_file for targeted changes, write_file to create files or rewrite them
- list_files, glob_files and search_in_files to find your way around
- execute_command to run builds, tests and other shell commands

All paths are relative to the project root. When a tool returns an error,
read it and adjust your next call instead of repeating the same call.
When the task is done, reply with a short summary of what you changed."""

SHORT_CONTEXT = 5
DEFAULT_CONTEXT = 8
LONG_CONTEXT = 12

_LARGE_OUTPUT_HINTS = re.compile(r"\b(write|create|implement|generate|build)")
_QUESTION_HINTS = re.compile(r"\b(what|explain|why|how|describe)")

HISTORY_TOOL_OUTPUT_CHARS = 500


@dataclass
class PreparedTurn:
    messages: List[Message]
    system: SystemPrompt
    history_limit: int


class ContextManager:
    def __init__(
        self,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        enable_prompt_cache: bool = True,
        project_summary: Optional[str] = None,
    ):
        self.system_prompt = system_prompt
        self.enable_prompt_cache = enable_prompt_cache
        self.project_summary = project_summary

    # ------------------------------------------------------------------
    # System prompt
    # ------------------------------------------------------------------
    def build_system_prompt(self) -> SystemPrompt:
        text = self.system_prompt
        if self.project_summary:
            text += f"\n\nProject:\n{self.project_summary}"
        return SystemPrompt(text=text, cacheable=self.enable_prompt_cache)

    # ------------------------------------------------------------------
    # History bounds
    # ------------------------------------------------------------------
    @staticmethod
    def history_limit(instruction: str) -> int:
        """
        Pick how many prior messages to keep.

        Instructions that ask for new code leave room for a long answer
        and get less history; questions about existing work get more.
        """
        lowered = instruction.lower()
        if _LARGE_OUTPUT_HINTS.search(lowered):
            return SHORT_CONTEXT
        if _QUESTION_HINTS.search(lowered):
            return LONG_CONTEXT
        return DEFAULT_CONTEXT

    @staticmethod
    def score_message(message: Message, instruction: str) -> int:
        """Lexical relevance of one message to the new instruction."""
        content = message.plain_text().lower()
        words = {w for w in instruction.lower().split() if len(w) > 3}

        score = sum(2 for word in words if word in content)
        score += 3 * sum(
            1 for b in message.blocks if isinstance(b, (ToolUseBlock, ToolResultBlock))
        )
        if "error" in content:
            score += 2
        return score

    @staticmethod
    def group_exchanges(history: List[Message]) -> List[List[Message]]:
        exchanges: List[List[Message]] = []
        for message in history:
            if message.is_instruction() or not exchanges:
                exchanges.append([message])
            else:
                exchanges[-1].append(message)
        return exchanges

    @staticmethod
    def compact_exchange(exchange: List[Message]) -> List[Message]:
        """
        Reduce an exchange to its instruction and final assistant text,
        dropping the intermediate tool traffic.
        """
        head = exchange[0]
        if not head.is_instruction():
            return []
        answer = next(
            (m for m in reversed(exchange[1:]) if m.role == "assistant" and m.text),
            None,
        )
        compacted = [head]
        if answer is not None:
            compacted.append(Message.assistant(answer.text))
        return compacted

    def prune(self, history: List[Message], instruction: str, limit: int) -> List[Message]:
        """
        Keep at most ``limit`` messages of prior history.

        The most recent exchange is always kept (compacted if it alone is
        over the limit). Older exchanges are admitted by descending
        relevance score, newest first on ties, in full when they fit and
        compacted when only that fits. Original order is preserved.
        """
        if len(history) <= limit:
            return list(history)

        exchanges = self.group_exchanges(history)
        chosen: List[Tuple[int, List[Message]]] = []

        latest = exchanges[-1]
        if len(latest) > limit:
            latest = self.compact_exchange(latest)[:limit]
        chosen.append((len(exchanges) - 1, latest))
        budget = limit - len(latest)

        ranked = sorted(
            range(len(exchanges) - 1),
            key=lambda i: (
                sum(self.score_message(m, instruction) for m in exchanges[i]),
                i,
            ),
            reverse=True,
        )
        for index in ranked:
            if budget <= 0:
                break
            exchange = exchanges[index]
            if len(exchange) > budget:
                exchange = self.compact_exchange(exchange)
                if not exchange or len(exchange) > budget:
                    continue
            chosen.append((index, exchange))
            budget -= len(exchange)

        kept = [m for _, exchange in sorted(chosen, key=lambda c: c[0]) for m in exchange]
        logger.debug(f"Pruned history from {len(history)} to {len(kept)} messages")
        return kept

    @staticmethod
    def truncate_tool_outputs(history: List[Message]) -> List[Message]:
        truncated: List[Message] = []
        for message in history:
            if not any(
                isinstance(b, ToolResultBlock) and len(b.content) > HISTORY_TOOL_OUTPUT_CHARS
                for b in message.blocks
            ):
                truncated.append(message)
                continue

            blocks = []
            for block in message.blocks:
                if isinstance(block, ToolResultBlock) and len(block.content) > HISTORY_TOOL_OUTPUT_CHARS:
                    block = ToolResultBlock(
                        tool_use_id=block.tool_use_id,
                        content=block.content[:HISTORY_TOOL_OUTPUT_CHARS] + "\n... [truncated]",
                        success=block.success,
                        name=block.name,
                    )
                blocks.append(block)
            truncated.append(Message(role=message.role, blocks=blocks))
        return truncated

    # ------------------------------------------------------------------
    # Turn preparation
    # ------------------------------------------------------------------
    def prepare(
        self,
        history: List[Message],
        current: List[Message],
        instruction: str,
    ) -> PreparedTurn:
        """
        Build the payload for one provider call.

        Args:
            history: Conversation from earlier runs
            current: Messages of the run in progress, starting with the
                instruction; sent unchanged
            instruction: The instruction of the current run
        """
        limit = self.history_limit(instruction)
        kept = self.prune(history, instruction, limit)
        messages = self.truncate_tool_outputs(kept) + list(current)
        return PreparedTurn(
            messages=messages,
            system=self.build_system_prompt(),
            history_limit=limit,
        )
