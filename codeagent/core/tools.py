"""
Tool contract

The closed set of tools the model may call, with their argument schemas.
Each provider adapter renders these definitions into its own declaration
format; the dispatcher uses the read-only classification for caching.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple


READ_FILE = "read_file"
WRITE_FILE = "write_file"
EDIT_FILE = "edit_file"
LIST_FILES = "list_files"
GLOB_FILES = "glob_files"
SEARCH_IN_FILES = "search_in_files"
EXECUTE_COMMAND = "execute_command"

READ_ONLY_TOOLS = frozenset({READ_FILE, LIST_FILES, GLOB_FILES, SEARCH_IN_FILES})
FILE_WRITE_TOOLS = frozenset({WRITE_FILE, EDIT_FILE})


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    properties: Tuple[Tuple[str, str, str], ...]  # (name, json type, description)
    required: Tuple[str, ...]

    @property
    def read_only(self) -> bool:
        return self.name in READ_ONLY_TOOLS

    def json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                prop: {"type": json_type, "description": desc}
                for prop, json_type, desc in self.properties
            },
            "required": list(self.required),
        }


TOOL_DEFINITIONS: List[ToolDefinition] = [
    ToolDefinition(
        name=READ_FILE,
        description="Read the full content of a file in the project.",
        properties=(("filePath", "string", "Path relative to the project root"),),
        required=("filePath",),
    ),
    ToolDefinition(
        name=WRITE_FILE,
        description=(
            "Create a file or overwrite it entirely. Parent directories are "
            "created as needed. Prefer edit_file for changes to existing files."
        ),
        properties=(
            ("filePath", "string", "Path relative to the project root"),
            ("content", "string", "Complete new file content"),
        ),
        required=("filePath", "content"),
    ),
    ToolDefinition(
        name=EDIT_FILE,
        description=(
            "Replace the first occurrence of oldString with newString in an "
            "existing file. Read the file first so oldString matches exactly."
        ),
        properties=(
            ("filePath", "string", "Path relative to the project root"),
            ("oldString", "string", "Text to find"),
            ("newString", "string", "Replacement text"),
        ),
        required=("filePath", "oldString", "newString"),
    ),
    ToolDefinition(
        name=LIST_FILES,
        description="List the entries of a directory with their type.",
        properties=(("directory", "string", "Directory relative to the project root"),),
        required=(),
    ),
    ToolDefinition(
        name=GLOB_FILES,
        description="Find files matching a glob pattern such as src/**/*.py.",
        properties=(("pattern", "string", "Glob pattern relative to the project root"),),
        required=("pattern",),
    ),
    ToolDefinition(
        name=SEARCH_IN_FILES,
        description="Search file contents with a regular expression.",
        properties=(
            ("pattern", "string", "Regular expression to search for"),
            ("filePattern", "string", "Optional glob restricting the files searched"),
        ),
        required=("pattern",),
    ),
    ToolDefinition(
        name=EXECUTE_COMMAND,
        description="Run a shell command in the project root and return its output.",
        properties=(("command", "string", "Shell command to execute"),),
        required=("command",),
    ),
]

TOOLS_BY_NAME: Dict[str, ToolDefinition] = {t.name: t for t in TOOL_DEFINITIONS}
