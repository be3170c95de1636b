"""
Tool Supervisor

Routes model-issued tool calls to their handlers and turns every outcome
(including handler failures) into a ToolResult the model can read.

- Read-only tools go through the injected ToolResultCache
- write_file / edit_file go through SafePatchEngine
- All calls of one turn run concurrently; writes to the same path within
  a batch are serialized in call order
- Every path argument is confined to the project root
"""

import asyncio
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from codeagent.core.errors import ToolExecutionError
from codeagent.core.messages import ToolCall, ToolResult
from codeagent.core.safe_patch_engine import FileEdit, MutationResult, SafePatchEngine
from codeagent.core.tool_cache import ToolResultCache
from codeagent.core.tools import (
    EDIT_FILE,
    EXECUTE_COMMAND,
    FILE_WRITE_TOOLS,
    GLOB_FILES,
    LIST_FILES,
    READ_FILE,
    READ_ONLY_TOOLS,
    SEARCH_IN_FILES,
    WRITE_FILE,
)

logger = logging.getLogger(__name__)

IGNORED_DIRS = [
    ".git",
    "node_modules",
    "__pycache__",
    ".venv",
    "venv",
    "dist",
    "build",
    ".next",
    ".pytest_cache",
    ".cache",
    "coverage",
]

MAX_READ_CHARS = 50000
MAX_SEARCH_RESULTS = 30
MAX_GLOB_RESULTS = 100
TRUNCATION_MARKER = "\n... [Truncated]"


@dataclass
class HandlerOutput:
    """What a handler produced, before it is tied to a call id."""

    content: str
    success: bool = True
    data: Optional[Dict[str, Any]] = None


@dataclass
class SecurityPolicy:
    base_dir: Path
    ignored_directories: List[str] = field(default_factory=lambda: list(IGNORED_DIRS))
    max_file_size_mb: int = 10

    def resolve(self, rel_path: Optional[str], default: Optional[str] = None) -> Path:
        """
        Resolve a tool path argument against the project root.

        Raises:
            ToolExecutionError: If the argument is missing or the resolved
                path escapes the root (symlinks included)
        """
        raw = str(rel_path).strip() if rel_path is not None else ""
        if not raw:
            if default is None:
                raise ToolExecutionError("filePath is required")
            raw = default

        base_abs = self.base_dir.resolve()
        abs_path = (base_abs / raw).resolve()
        if not self.is_within(abs_path):
            raise ToolExecutionError(
                f"Sandbox Violation: {raw} is outside the project root"
            )
        return abs_path

    def is_within(self, path: Path) -> bool:
        base_abs = self.base_dir.resolve()
        return path == base_abs or base_abs in path.parents

    def is_ignored(self, path: Path) -> bool:
        try:
            parts = path.relative_to(self.base_dir.resolve()).parts
        except ValueError:
            return True
        return any(part in self.ignored_directories for part in parts)

    def validate_file_size(self, path: Path) -> Tuple[bool, Optional[str]]:
        if path.is_file():
            size_mb = path.stat().st_size / (1024 * 1024)
            if size_mb > self.max_file_size_mb:
                return False, f"File too large: {size_mb:.1f}MB (max {self.max_file_size_mb}MB)"
        return True, None


class CommandPolicy:
    """Refuses shell commands matching known-dangerous patterns."""

    SHELL_OPERATORS = frozenset(";&|()")

    def __init__(self, base_dir: Path, security_policy: Optional[SecurityPolicy] = None):
        self.security_policy = security_policy or SecurityPolicy(base_dir=Path(base_dir))
        self.patterns = [
            re.compile(r"\bcurl\s.*\|\s*(sudo\s+)?(sh|bash)\b"),
            re.compile(r"\bwget\s.*\|\s*(sudo\s+)?(sh|bash)\b"),
            re.compile(r">\s*/etc/"),
            re.compile(r"\bcurl\s+.*-d\s+.*\$\("),
            re.compile(r"169\.254\.169\.254"),
            re.compile(r"/proc/|/sys/"),
        ]

    def check(self, command: str) -> None:
        for pattern in self.patterns:
            if pattern.search(command):
                raise ToolExecutionError(
                    f"Command blocked by security policy: matches {pattern.pattern}"
                )
        for target in self._rm_targets(command):
            self._check_rm_target(target)

    def _tokenize(self, command: str) -> List[str]:
        lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        try:
            return list(lexer)
        except ValueError as e:
            raise ToolExecutionError(
                f"Command blocked by security policy: cannot parse command ({e})"
            ) from e

    def _rm_targets(self, command: str) -> List[str]:
        """Every non-option argument of every ``rm`` invocation in the command."""
        targets: List[str] = []
        in_rm = False
        options_done = False
        for token in self._tokenize(command):
            if token and set(token) <= self.SHELL_OPERATORS:
                in_rm = False
                continue
            if not in_rm:
                if token == "rm" or token.endswith("/rm"):
                    in_rm, options_done = True, False
                continue
            if not options_done and token == "--":
                options_done = True
            elif not options_done and token.startswith("-"):
                continue
            else:
                targets.append(token)
        return targets

    def _check_rm_target(self, target: str) -> None:
        if "$" in target or "`" in target:
            raise ToolExecutionError(
                f"Command blocked by security policy: rm target {target} is not a literal path"
            )
        base = self.security_policy.base_dir.resolve()
        resolved = (base / Path(target).expanduser()).resolve()
        if not self.security_policy.is_within(resolved):
            raise ToolExecutionError(
                f"Command blocked by security policy: rm target {target} is outside the project root"
            )


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class ToolSupervisor:
    """
    Tool dispatcher for one project root.

    The cache is injected so each agent (and each test) owns its own.
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        cache: Optional[ToolResultCache] = None,
        command_timeout: float = 30,
        max_command_output: int = 10000,
    ):
        self.base_dir = Path(project_root).resolve()
        if not self.base_dir.is_dir():
            raise ToolExecutionError(f"Project root does not exist: {self.base_dir}")

        self.security_policy = SecurityPolicy(base_dir=self.base_dir)
        self.command_policy = CommandPolicy(self.base_dir, self.security_policy)
        self.patch_engine = SafePatchEngine(self.base_dir)
        self.cache = cache if cache is not None else ToolResultCache()
        self.command_timeout = command_timeout
        self.max_command_output = max_command_output

        self.handlers: Dict[str, Callable[[Dict[str, Any]], HandlerOutput]] = {
            READ_FILE: self._handle_read_file,
            WRITE_FILE: self._handle_write_file,
            EDIT_FILE: self._handle_edit_file,
            LIST_FILES: self._handle_list_files,
            GLOB_FILES: self._handle_glob_files,
            SEARCH_IN_FILES: self._handle_search_in_files,
            EXECUTE_COMMAND: self._handle_execute_command,
        }

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def dispatch(
        self,
        call: ToolCall,
        path_locks: Optional[Dict[Path, asyncio.Lock]] = None,
    ) -> ToolResult:
        """
        Run one tool call. Never raises: every failure becomes an error
        ToolResult keyed to ``call.id``.
        """
        handler = self.handlers.get(call.name)
        if not handler:
            return ToolResult(
                call_id=call.id,
                name=call.name,
                content=f"Error: Unknown tool: {call.name}",
                success=False,
            )

        arguments = call.input if isinstance(call.input, dict) else {}

        if call.name in READ_ONLY_TOOLS:
            cached = self.cache.get(call.name, arguments)
            if cached is not None:
                return self._to_result(call, cached, cached_hit=True)

        generation = self.cache.generation
        logger.info(f"Executing tool: {call.name} with args: {arguments}")
        try:
            if call.name in FILE_WRITE_TOOLS:
                output = await self._run_locked(handler, arguments, path_locks)
            else:
                output = await asyncio.to_thread(handler, arguments)
        except ToolExecutionError as e:
            logger.info(f"Tool {call.name} failed: {e}")
            return ToolResult(
                call_id=call.id, name=call.name, content=f"Error: {e}", success=False
            )
        except Exception as e:
            logger.exception(f"Tool failed unexpectedly: {call.name}")
            return ToolResult(
                call_id=call.id, name=call.name, content=f"Error: {e}", success=False
            )

        if call.name in READ_ONLY_TOOLS:
            if output.success:
                self.cache.put(call.name, arguments, output, generation=generation)
        elif call.name == EXECUTE_COMMAND:
            self.cache.clear()
        elif output.success:
            self._invalidate_for_write(arguments.get("filePath"))

        return self._to_result(call, output)

    async def dispatch_batch(self, calls: List[ToolCall]) -> List[ToolResult]:
        """
        Run all calls of one turn concurrently. Results come back in call
        order; a failing call never affects its siblings.
        """
        if not calls:
            return []
        path_locks: Dict[Path, asyncio.Lock] = {}
        return list(
            await asyncio.gather(*(self.dispatch(call, path_locks) for call in calls))
        )

    async def _run_locked(
        self,
        handler: Callable[[Dict[str, Any]], HandlerOutput],
        arguments: Dict[str, Any],
        path_locks: Optional[Dict[Path, asyncio.Lock]],
    ) -> HandlerOutput:
        if path_locks is None:
            return await asyncio.to_thread(handler, arguments)
        path = self.security_policy.resolve(arguments.get("filePath"))
        lock = path_locks.setdefault(path, asyncio.Lock())
        async with lock:
            return await asyncio.to_thread(handler, arguments)

    @staticmethod
    def _to_result(call: ToolCall, output: HandlerOutput, cached_hit: bool = False) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            name=call.name,
            content=output.content,
            success=output.success,
            data=output.data,
            cached=cached_hit,
        )

    def _invalidate_for_write(self, file_path: Optional[str]) -> None:
        try:
            written = self.security_policy.resolve(file_path)
        except ToolExecutionError:
            return

        def stale(name: str, args: Dict[str, Any]) -> bool:
            if name in (LIST_FILES, GLOB_FILES, SEARCH_IN_FILES):
                return True
            if name == READ_FILE:
                try:
                    return self.security_policy.resolve(args.get("filePath")) == written
                except ToolExecutionError:
                    return False
            return False

        self.cache.invalidate(stale)

    async def edit_multiple_files(self, edits: List[Dict[str, Any]]) -> List[MutationResult]:
        """
        All-or-nothing multi-file edit.

        Raises:
            ToolExecutionError: If an edit fails (every file is restored first)
            TransactionRollbackError: If the restore itself fails
        """
        file_edits = [FileEdit.from_dict(edit) for edit in edits]
        try:
            results = await asyncio.to_thread(self.patch_engine.edit_multiple_files, file_edits)
        finally:
            # a failed transaction may still have touched files before rollback
            self.cache.clear()
        return results

    # ------------------------------------------------------------------ #
    # File handlers
    # ------------------------------------------------------------------ #

    def _handle_read_file(self, params: Dict[str, Any]) -> HandlerOutput:
        file_path = params.get("filePath")
        path = self.security_policy.resolve(file_path)
        if path.is_dir():
            raise ToolExecutionError(f"{file_path} is a directory. Use list_files instead.")
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {file_path}")

        valid, error = self.security_policy.validate_file_size(path)
        if not valid:
            raise ToolExecutionError(error)

        content = path.read_text(encoding="utf-8", errors="replace")
        rel_path = path.relative_to(self.base_dir).as_posix()
        return HandlerOutput(
            content=_truncate(content, MAX_READ_CHARS),
            data={"path": rel_path, "size": len(content)},
        )

    def _handle_write_file(self, params: Dict[str, Any]) -> HandlerOutput:
        if "content" not in params:
            raise ToolExecutionError("content is required")
        result = self.patch_engine.write_file(params.get("filePath"), params["content"])
        return self._mutation_output(result)

    def _handle_edit_file(self, params: Dict[str, Any]) -> HandlerOutput:
        result = self.patch_engine.edit_file(
            params.get("filePath"),
            params.get("oldString"),
            params.get("newString", ""),
        )
        return self._mutation_output(result)

    @staticmethod
    def _mutation_output(result: MutationResult) -> HandlerOutput:
        content = result.summary()
        if result.diff.diff:
            content += "\n" + result.diff.diff
        return HandlerOutput(content=content, data=result.to_dict())

    def _handle_list_files(self, params: Dict[str, Any]) -> HandlerOutput:
        directory = params.get("directory")
        path = self.security_policy.resolve(directory, default=".")
        if not path.is_dir():
            raise ToolExecutionError(f"Directory not found: {directory}")

        entries: List[Dict[str, str]] = []
        for child in sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())):
            if child.name in self.security_policy.ignored_directories:
                continue
            entries.append({
                "name": child.name,
                "type": "directory" if child.is_dir() else "file",
                "path": child.relative_to(self.base_dir).as_posix(),
            })

        if not entries:
            return HandlerOutput(content="(empty directory)", data={"entries": []})
        lines = [
            f"{e['name']}/" if e["type"] == "directory" else e["name"] for e in entries
        ]
        return HandlerOutput(content="\n".join(lines), data={"entries": entries})

    def _handle_glob_files(self, params: Dict[str, Any]) -> HandlerOutput:
        pattern = params.get("pattern")
        if not pattern:
            raise ToolExecutionError("pattern is required")
        if Path(pattern).is_absolute():
            raise ToolExecutionError("pattern must be relative to the project root")

        matches = sorted(
            p.relative_to(self.base_dir).as_posix()
            for p in self._iter_files(pattern)
        )
        truncated = len(matches) > MAX_GLOB_RESULTS
        matches = matches[:MAX_GLOB_RESULTS]

        if not matches:
            return HandlerOutput(content=f"No files match {pattern}", data={"files": []})
        content = "\n".join(matches)
        if truncated:
            content += f"\n... (showing first {MAX_GLOB_RESULTS})"
        return HandlerOutput(content=content, data={"files": matches})

    def _handle_search_in_files(self, params: Dict[str, Any]) -> HandlerOutput:
        query = params.get("pattern")
        if not query:
            raise ToolExecutionError("pattern is required")
        try:
            regex = re.compile(query)
        except re.error as e:
            raise ToolExecutionError(f"Invalid regular expression: {e}") from e

        file_pattern = params.get("filePattern") or "**/*"
        results: List[Dict[str, Any]] = []

        for file_path in sorted(self._iter_files(file_pattern)):
            valid, error = self.security_policy.validate_file_size(file_path)
            if not valid:
                logger.warning(f"Skipping search on large file: {file_path.name} ({error})")
                continue
            if self._is_binary_file(file_path):
                continue

            rel_path = file_path.relative_to(self.base_dir).as_posix()
            text = file_path.read_text(encoding="utf-8", errors="ignore")
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    results.append({"file": rel_path, "line": line_no, "text": line.strip()[:200]})
                    if len(results) >= MAX_SEARCH_RESULTS:
                        break
            if len(results) >= MAX_SEARCH_RESULTS:
                break

        if not results:
            return HandlerOutput(content=f"No matches for {query}", data={"matches": []})
        lines = [f"{r['file']}:{r['line']}: {r['text']}" for r in results]
        return HandlerOutput(content="\n".join(lines), data={"matches": results})

    def _iter_files(self, pattern: str):
        for path in self.base_dir.glob(pattern):
            if not path.is_file():
                continue
            resolved = path.resolve()
            if not self.security_policy.is_within(resolved):
                continue
            if self.security_policy.is_ignored(path):
                continue
            yield path

    def _is_binary_file(self, file_path: Path) -> bool:
        """
        Simple binary detection: look for NULL bytes in the first 8KB.
        """
        try:
            with open(file_path, "rb") as f:
                return b"\x00" in f.read(8192)
        except OSError:
            return True

    # ------------------------------------------------------------------ #
    # Shell
    # ------------------------------------------------------------------ #

    def _handle_execute_command(self, params: Dict[str, Any]) -> HandlerOutput:
        command = (params.get("command") or "").strip()
        if not command:
            raise ToolExecutionError("command is required")
        self.command_policy.check(command)

        try:
            result = subprocess.run(
                command,
                cwd=str(self.base_dir),
                shell=True,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolExecutionError(
                f"Command timed out after {self.command_timeout}s: {command}"
            ) from e

        stdout = _truncate(result.stdout or "", self.max_command_output)
        stderr = _truncate(result.stderr or "", self.max_command_output)
        data = {"stdout": stdout, "stderr": stderr, "exitCode": result.returncode}

        if result.returncode == 0:
            body = stdout or "(no output)"
            return HandlerOutput(content=f"Command completed\n{body}", data=data)

        body = "\n".join(part for part in (stdout, stderr) if part) or "(no output)"
        return HandlerOutput(
            content=f"Command failed (exit {result.returncode})\n{body}",
            success=False,
            data=data,
        )
