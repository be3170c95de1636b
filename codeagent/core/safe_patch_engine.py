import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from codeagent.core.editing_engine import DiffSummary, EditingEngine
from codeagent.core.errors import (
    MissingFileError,
    ToolExecutionError,
    TransactionRollbackError,
)

logger = logging.getLogger(__name__)


@dataclass
class FileEdit:
    """One entry of a multi-file edit: a full write or a search/replace."""

    path: str
    kind: str = "edit"
    content: Optional[str] = None
    old_string: Optional[str] = None
    new_string: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileEdit":
        path = data.get("filePath") or data.get("path")
        if not path:
            raise ToolExecutionError("Each edit needs a filePath")
        if "content" in data and "oldString" not in data:
            return cls(path=path, kind="write", content=data["content"])
        return cls(
            path=path,
            kind="edit",
            old_string=data.get("oldString"),
            new_string=data.get("newString", ""),
        )


@dataclass
class MutationResult:
    path: str
    created: bool
    diff: DiffSummary
    match: Optional[str] = None

    def summary(self) -> str:
        verb = "Created" if self.created else ("Edited" if self.match else "Wrote")
        text = f"{verb} {self.path} (+{self.diff.added} -{self.diff.removed})"
        if self.match == "fuzzy":
            text += " using a whitespace/case-insensitive match"
        return text

    def to_dict(self) -> Dict[str, Any]:
        result = {"path": self.path, "created": self.created, **self.diff.to_dict()}
        if self.match:
            result["match"] = self.match
        return result


class EditTransaction:
    """
    Snapshot-based transaction for multi-file edits.

    Every target path is snapshotted (raw bytes, or None when it did not
    exist) before anything is applied; restore() puts every path back,
    deletes files the transaction created and removes directories it had
    to create for them.
    """

    def __init__(self, project_root: Path):
        self.project_root = project_root
        self.snapshots: Dict[Path, Optional[bytes]] = {}
        self.created_dirs: List[Path] = []

    def snapshot(self, path: Path) -> None:
        if path in self.snapshots:
            return
        self.snapshots[path] = path.read_bytes() if path.is_file() else None

        parent = path.parent
        while parent != self.project_root and not parent.exists():
            if parent not in self.created_dirs:
                self.created_dirs.append(parent)
            parent = parent.parent

    def restore(self) -> List[str]:
        """Restore all snapshots. Returns the paths that could not be restored."""
        failed: List[str] = []
        for path, data in reversed(list(self.snapshots.items())):
            try:
                if data is None:
                    if path.is_file():
                        path.unlink()
                        logger.info(f"Rollback: deleted {path}")
                else:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(data)
                    logger.info(f"Rollback: restored {path}")
            except OSError as e:
                logger.error(f"Rollback error for {path}: {e}")
                failed.append(str(path))

        for directory in sorted(self.created_dirs, key=lambda p: len(p.parts), reverse=True):
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()
        return failed


class SafePatchEngine:
    """
    File mutation engine behind write_file, edit_file and
    edit_multiple_files.

    - All paths are resolved against the project root and never leave it
    - Content is written as UTF-8, atomically via a temp file
    - Multi-file edits are all-or-nothing
    """

    def __init__(self, project_root: Union[str, Path]):
        self.project_root = Path(project_root).resolve()
        self._engine = EditingEngine()

    # -----------------------------------------------------------
    # PATH VALIDATION (CRITICAL)
    # -----------------------------------------------------------

    def _validate_path(self, file_path: Union[str, Path]) -> Path:
        """
        Ensures file_path is always inside the project root.
        """
        if not file_path or not str(file_path).strip():
            raise ToolExecutionError("filePath is required")

        path = (self.project_root / str(file_path).strip()).resolve()
        if self.project_root not in path.parents and path != self.project_root:
            raise ToolExecutionError(f"Sandbox Violation: {file_path} is outside the project root")
        return path

    def relative(self, path: Path) -> str:
        return path.relative_to(self.project_root).as_posix()

    # -----------------------------------------------------------
    # READ / WRITE
    # -----------------------------------------------------------

    def _read_content(self, file_path: Path) -> str:
        data = file_path.read_bytes()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1")

    def _write_safe(self, path: Path, content: str) -> None:
        """
        Atomic write helper.
        Writes to a temp file then renames to ensure atomicity.
        Ensures parent directories exist.
        """
        temp_path = path.with_suffix(f"{path.suffix}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(content, encoding="utf-8", newline="")
            temp_path.replace(path)
        except OSError as e:
            logger.error(f"Write failed for {path}: {e}")
            if temp_path.exists():
                temp_path.unlink()
            raise ToolExecutionError(f"Failed to write {self.relative(path)}: {e}") from e

    # -----------------------------------------------------------
    # OPERATIONS
    # -----------------------------------------------------------

    def write_file(self, file_path: Union[str, Path], content: str) -> MutationResult:
        path = self._validate_path(file_path)
        return self._write(path, content)

    def _write(self, path: Path, content: str) -> MutationResult:
        if path.is_dir():
            raise ToolExecutionError(f"{self.relative(path)} is a directory")
        if not isinstance(content, str):
            raise ToolExecutionError("content must be a string")

        if path.exists():
            diff = self._engine.compute_diff(self._read_content(path), content)
            created = False
        else:
            diff = self._engine.new_file_diff(content)
            created = True

        self._write_safe(path, content)
        logger.info(f"Wrote {path} (+{diff.added} -{diff.removed})")
        return MutationResult(path=self.relative(path), created=created, diff=diff)

    def edit_file(
        self,
        file_path: Union[str, Path],
        old_string: str,
        new_string: str,
    ) -> MutationResult:
        path = self._validate_path(file_path)
        return self._edit(path, old_string, new_string)

    def _edit(self, path: Path, old_string: Optional[str], new_string: Optional[str]) -> MutationResult:
        if not path.is_file():
            raise MissingFileError(
                f"File not found: {self.relative(path)}. Use write_file to create new files."
            )

        original = self._read_content(path)
        result = self._engine.replace_with_fallback(
            original, old=old_string or "", new=new_string or ""
        )
        diff = self._engine.compute_diff(original, result.content)
        self._write_safe(path, result.content)
        return MutationResult(
            path=self.relative(path),
            created=False,
            diff=diff,
            match=result.details.get("match"),
        )

    def edit_multiple_files(self, edits: List[FileEdit]) -> List[MutationResult]:
        """
        Apply edits in order, all-or-nothing.

        Every target is snapshotted before the first edit runs. If any edit
        fails, all snapshots are restored and the original error is
        re-raised; TransactionRollbackError is raised instead only when the
        restore itself fails.
        """
        targets = [(self._validate_path(edit.path), edit) for edit in edits]

        transaction = EditTransaction(self.project_root)
        for path, _ in targets:
            transaction.snapshot(path)

        results: List[MutationResult] = []
        try:
            for path, edit in targets:
                if edit.kind == "write":
                    results.append(self._write(path, edit.content))
                else:
                    results.append(self._edit(path, edit.old_string, edit.new_string))
        except Exception as e:
            logger.warning(
                f"Multi-file edit failed after {len(results)}/{len(targets)} edits, "
                f"rolling back: {e}"
            )
            failed = transaction.restore()
            if failed:
                raise TransactionRollbackError(
                    f"Rollback incomplete for: {', '.join(failed)}", failed
                ) from e
            raise

        return results
