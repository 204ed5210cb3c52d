"""
Tool executors for AI runs.

Every tool shares one contract, ``execute(project_id, tool_name, args) ->
ToolResult``. A tool that cannot do its job returns ``ok=False``; raising is
reserved for failures that should abort the whole run.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from appforge.sdk.base import ToolDefinition
from appforge.storage.workspace import WorkspaceStore


@dataclass(frozen=True)
class ToolResult:
    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok}
        if self.message is not None:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = self.error
        if self.data:
            payload["data"] = self.data
        return payload


ToolExecutor = Callable[[str, Dict[str, Any]], ToolResult]


class ToolRegistry:
    """Dispatches tool calls by name to registered executors."""

    def __init__(self):
        self._executors: Dict[str, ToolExecutor] = {}
        self._definitions: Dict[str, ToolDefinition] = {}

    def register(self, definition: ToolDefinition, executor: ToolExecutor) -> None:
        if definition.name in self._executors:
            raise ValueError(f"Tool already registered: {definition.name}")
        self._executors[definition.name] = executor
        self._definitions[definition.name] = definition

    @property
    def definitions(self) -> List[ToolDefinition]:
        return list(self._definitions.values())

    def execute(self, project_id: str, tool_name: str, args: Any) -> ToolResult:
        executor = self._executors.get(tool_name)
        if executor is None:
            return ToolResult(ok=False, error=f"Unknown tool: {tool_name}")
        if not isinstance(args, dict):
            return ToolResult(ok=False, error="Tool arguments must be a JSON object")
        return executor(project_id, args)


def _require_str(args: Dict[str, Any], key: str) -> Optional[str]:
    value = args.get(key)
    if not isinstance(value, str) or (key != "content" and not value.strip()):
        return None
    return value


def _path_schema(extra: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    properties = {"path": {"type": "string", "description": "Project-relative file path"}}
    properties.update(extra)
    return {"type": "object", "properties": properties, "required": required}


_CONTENT = {"content": {"type": "string", "description": "Full file content"}}

CREATE_FILE = ToolDefinition(
    name="create_file",
    description="Create a new file. Fails if the file already exists.",
    input_schema=_path_schema(_CONTENT, ["path", "content"]),
)
UPDATE_FILE = ToolDefinition(
    name="update_file",
    description="Replace the full content of an existing file.",
    input_schema=_path_schema(_CONTENT, ["path", "content"]),
)
DELETE_FILE = ToolDefinition(
    name="delete_file",
    description="Delete an existing file.",
    input_schema=_path_schema({}, ["path"]),
)
RENAME_FILE = ToolDefinition(
    name="rename_file",
    description="Rename or move an existing file.",
    input_schema=_path_schema(
        {"new_path": {"type": "string", "description": "Destination path"}},
        ["path", "new_path"],
    ),
)
APPLY_PATCH = ToolDefinition(
    name="apply_patch",
    description=(
        "Apply search/replace edits to an existing file. Each search string "
        "must occur exactly once in the current content."
    ),
    input_schema=_path_schema(
        {
            "edits": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "search": {"type": "string"},
                        "replace": {"type": "string"},
                    },
                    "required": ["search", "replace"],
                },
            }
        },
        ["path", "edits"],
    ),
)


class FileTools:
    """File-store executors bound to a workspace."""

    def __init__(self, store: WorkspaceStore):
        self.store = store

    def create_file(self, project_id: str, args: Dict[str, Any]) -> ToolResult:
        path, content = _require_str(args, "path"), _require_str(args, "content")
        if path is None or content is None:
            return ToolResult(ok=False, error="create_file requires 'path' and 'content'")
        if self.store.get_file(project_id, path) is not None:
            return ToolResult(ok=False, error=f"File already exists: {path}")
        self.store.write_file(project_id, path, content)
        return ToolResult(ok=True, message=f"Created {path}")

    def update_file(self, project_id: str, args: Dict[str, Any]) -> ToolResult:
        path, content = _require_str(args, "path"), _require_str(args, "content")
        if path is None or content is None:
            return ToolResult(ok=False, error="update_file requires 'path' and 'content'")
        if self.store.get_file(project_id, path) is None:
            return ToolResult(ok=False, error=f"File not found: {path}")
        self.store.write_file(project_id, path, content)
        return ToolResult(ok=True, message=f"Updated {path}")

    def delete_file(self, project_id: str, args: Dict[str, Any]) -> ToolResult:
        path = _require_str(args, "path")
        if path is None:
            return ToolResult(ok=False, error="delete_file requires 'path'")
        if not self.store.delete_file(project_id, path):
            return ToolResult(ok=False, error=f"File not found: {path}")
        return ToolResult(ok=True, message=f"Deleted {path}")

    def rename_file(self, project_id: str, args: Dict[str, Any]) -> ToolResult:
        path, new_path = _require_str(args, "path"), _require_str(args, "new_path")
        if path is None or new_path is None:
            return ToolResult(ok=False, error="rename_file requires 'path' and 'new_path'")
        if self.store.get_file(project_id, new_path) is not None:
            return ToolResult(ok=False, error=f"File already exists: {new_path}")
        if not self.store.rename_file(project_id, path, new_path):
            return ToolResult(ok=False, error=f"File not found: {path}")
        return ToolResult(ok=True, message=f"Renamed {path} to {new_path}")

    def apply_patch(self, project_id: str, args: Dict[str, Any]) -> ToolResult:
        """Apply every edit or none of them."""
        path = _require_str(args, "path")
        edits = args.get("edits")
        if path is None or not isinstance(edits, list) or not edits:
            return ToolResult(ok=False, error="apply_patch requires 'path' and a non-empty 'edits' list")

        existing = self.store.get_file(project_id, path)
        if existing is None:
            return ToolResult(ok=False, error=f"File not found: {path}")

        content = existing.content
        for index, edit in enumerate(edits):
            if not isinstance(edit, dict):
                return ToolResult(ok=False, error=f"Edit {index} must be an object")
            search, replace = edit.get("search"), edit.get("replace")
            if not isinstance(search, str) or not search or not isinstance(replace, str):
                return ToolResult(ok=False, error=f"Edit {index} requires 'search' and 'replace'")
            occurrences = content.count(search)
            if occurrences != 1:
                return ToolResult(
                    ok=False,
                    error=f"Edit {index}: search text found {occurrences} times in {path}, expected 1",
                )
            content = content.replace(search, replace, 1)

        self.store.write_file(project_id, path, content)
        return ToolResult(
            ok=True,
            message=f"Patched {path}",
            data={"edits_applied": len(edits)},
        )


def build_file_tool_registry(store: WorkspaceStore) -> ToolRegistry:
    """Registry with the built-in file tools."""
    tools = FileTools(store)
    registry = ToolRegistry()
    registry.register(CREATE_FILE, tools.create_file)
    registry.register(UPDATE_FILE, tools.update_file)
    registry.register(DELETE_FILE, tools.delete_file)
    registry.register(RENAME_FILE, tools.rename_file)
    registry.register(APPLY_PATCH, tools.apply_patch)
    return registry
