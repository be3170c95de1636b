"""
Editing Engine for codeagent.

This module centralizes the text semantics of the file-mutation tools so that:
  - Search-and-replace edits replace exactly one occurrence (first match wins).
  - A missing exact match falls back to a case- and whitespace-insensitive
    search over sliding windows of lines, and the matched original text is
    what gets replaced.
  - A failed edit raises EditConflictError carrying a preview of the file so
    the model can retry with corrected input.
  - Diffs are position-aligned line comparisons with bounded context, meant
    as an audit aid rather than a general LCS diff.

It is intentionally content-centric: it operates on strings and returns
new strings, leaving filesystem I/O, sandbox enforcement, and transactional
rollback to SafePatchEngine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from codeagent.core.errors import EditConflictError, ToolExecutionError

logger = logging.getLogger(__name__)


class EditingError(ToolExecutionError):
    """Invalid edit request (empty search string and the like)."""


@dataclass
class EditOperationResult:
    """Structured result for a single in-memory edit operation."""

    content: str
    summary: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiffSummary:
    added: int
    removed: int
    diff: str

    def to_dict(self) -> Dict[str, Any]:
        return {"added": self.added, "removed": self.removed, "diff": self.diff}


class EditingEngine:
    """
    Pure in-memory editing engine.

    All methods take a ``content`` string and return a new content string,
    never mutating in place. Callers are responsible for reading/writing
    files and coordinating transactions / backups.
    """

    FUZZY_WINDOW_LINES = 10
    DIFF_CONTEXT_LINES = 5
    DIFF_GAP_LINES = 11
    DIFF_MAX_LINES = 30
    NEW_FILE_PREVIEW_LINES = 10
    FILE_PREVIEW_CHARS = 500
    SEARCH_PREVIEW_CHARS = 200

    # ------------------------------------------------------------------
    # Core helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _normalize_for_match(text: str) -> Tuple[str, List[int]]:
        """
        Lower-case ``text``, collapse whitespace runs to one space and strip
        both ends. Returns the normalized string together with, for every
        normalized character, the index of the original character it came
        from, so a normalized match can be mapped back to original text.
        """
        chars: List[str] = []
        index_map: List[int] = []
        pending_space: Optional[int] = None

        for i, ch in enumerate(text):
            if ch.isspace():
                if chars and pending_space is None:
                    pending_space = i
                continue
            if pending_space is not None:
                chars.append(" ")
                index_map.append(pending_space)
                pending_space = None
            for lowered in ch.lower():
                chars.append(lowered)
                index_map.append(i)

        return "".join(chars), index_map

    @staticmethod
    def _preview(text: str, limit: int) -> str:
        if len(text) <= limit:
            return text
        return text[:limit] + "..."

    # ------------------------------------------------------------------
    # Search and replace
    # ------------------------------------------------------------------
    def replace_first_exact(self, content: str, *, old: str, new: str) -> EditOperationResult:
        """
        Replace the first occurrence of ``old`` with ``new``.

        Raises EditingError if ``old`` is empty or absent.
        """
        if not old:
            raise EditingError("oldString cannot be empty")

        index = content.find(old)
        if index < 0:
            raise EditingError("Exact match string not found in content")

        new_content = content[:index] + new + content[index + len(old):]
        return EditOperationResult(
            content=new_content,
            summary="Replaced exact match",
            details={"match": "exact", "offset": index, "occurrences": content.count(old)},
        )

    def find_fuzzy_span(self, content: str, target: str) -> Optional[Tuple[int, int]]:
        """
        Locate ``target`` ignoring case and whitespace differences.

        Slides a window of FUZZY_WINDOW_LINES lines over the content; the
        first window whose normalized text contains the normalized target
        wins. Returns the (start, end) character span of the matching
        original text, or None.
        """
        needle, _ = self._normalize_for_match(target)
        if not needle:
            return None

        lines = content.split("\n")
        offsets: List[int] = []
        position = 0
        for line in lines:
            offsets.append(position)
            position += len(line) + 1

        for i in range(len(lines)):
            last = min(i + self.FUZZY_WINDOW_LINES, len(lines)) - 1
            start = offsets[i]
            end = offsets[last] + len(lines[last])
            normalized, index_map = self._normalize_for_match(content[start:end])
            pos = normalized.find(needle)
            if pos < 0:
                continue
            span_start = start + index_map[pos]
            span_end = start + index_map[pos + len(needle) - 1] + 1
            return span_start, span_end

        return None

    def replace_with_fallback(self, content: str, *, old: str, new: str) -> EditOperationResult:
        """
        Exact replace first, fuzzy replace second.

        Raises:
            EditingError: If ``old`` is empty
            EditConflictError: If neither strategy finds a match
        """
        if not old:
            raise EditingError("oldString cannot be empty")

        if old in content:
            return self.replace_first_exact(content, old=old, new=new)

        span = self.find_fuzzy_span(content, old)
        if span is None:
            raise EditConflictError(
                "String not found in file. Read the file first with read_file "
                "to see the exact content.",
                preview=self._preview(content, self.FILE_PREVIEW_CHARS),
                searched=self._preview(old, self.SEARCH_PREVIEW_CHARS),
            )

        start, end = span
        matched = content[start:end]
        logger.info(f"Using fuzzy match instead of exact match: {matched[:80]!r}")
        return EditOperationResult(
            content=content[:start] + new + content[end:],
            summary="Replaced fuzzy match",
            details={"match": "fuzzy", "offset": start, "matched_text": matched},
        )

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------
    def compute_diff(self, old: str, new: str) -> DiffSummary:
        """
        Position-aligned line diff.

        Lines are compared index by index. Each differing index emits a
        removed and/or added line, preceded by up to DIFF_CONTEXT_LINES
        unchanged lines and followed by unchanged lines up to the next
        change. Changes more than DIFF_GAP_LINES apart are separated by
        "...". Output is capped at DIFF_MAX_LINES lines.
        """
        old_lines = old.split("\n")
        new_lines = new.split("\n")
        total = max(len(old_lines), len(new_lines))

        def at(lines: List[str], i: int) -> Optional[str]:
            return lines[i] if i < len(lines) else None

        out: List[str] = []
        shown: set = set()
        added = removed = 0
        last_change = -self.DIFF_GAP_LINES

        for i in range(total):
            old_line, new_line = at(old_lines, i), at(new_lines, i)
            if old_line == new_line:
                continue

            if i - last_change > self.DIFF_GAP_LINES and out:
                out.append("...")

            for j in range(max(0, i - self.DIFF_CONTEXT_LINES), i):
                if j not in shown and at(old_lines, j) == at(new_lines, j):
                    out.append(f"  {new_lines[j]}")
                    shown.add(j)

            if old_line is not None:
                out.append(f"- {old_line}")
                removed += 1
            if new_line is not None:
                out.append(f"+ {new_line}")
                added += 1
            shown.add(i)

            for j in range(i + 1, min(i + 1 + self.DIFF_CONTEXT_LINES, total)):
                if at(old_lines, j) != at(new_lines, j):
                    break
                if j not in shown:
                    out.append(f"  {new_lines[j]}")
                    shown.add(j)

            last_change = i

        if len(out) > self.DIFF_MAX_LINES:
            hidden = len(out) - self.DIFF_MAX_LINES
            out = out[: self.DIFF_MAX_LINES] + ["...", f"({hidden} more lines)"]

        return DiffSummary(added=added, removed=removed, diff="\n".join(out))

    def new_file_diff(self, content: str) -> DiffSummary:
        """All lines added; previews the first NEW_FILE_PREVIEW_LINES lines."""
        lines = content.split("\n") if content else []
        if lines and content.endswith("\n"):
            lines = lines[:-1]

        preview = [f"+ {line}" for line in lines[: self.NEW_FILE_PREVIEW_LINES]]
        if len(lines) > self.NEW_FILE_PREVIEW_LINES:
            preview += ["...", f"({len(lines) - self.NEW_FILE_PREVIEW_LINES} more lines)"]
        return DiffSummary(added=len(lines), removed=0, diff="\n".join(preview))
