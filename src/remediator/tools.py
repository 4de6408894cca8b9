"""File tools exposed to fixer handlers.

Reads go through the session file cache before touching disk. Writes only
update the cache and surface a ``modified_file`` event; nothing is written to
the workspace until the change is applied.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

from remediator.backends.base import ToolCallRequest
from remediator.events import QueuedEvent
from remediator.session import FileCache

logger = logging.getLogger(__name__)

TOOL_POLICY_ALLOWLIST = {"read_file", "write_file", "search_files"}
MAX_SEARCH_RESULTS = 200
SKIPPED_DIRECTORIES = {".git", "node_modules", "target", "build", ".venv", "__pycache__"}

TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    "read_file": {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read the content of a file in the workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path relative to the workspace."}
                },
                "required": ["path"],
            },
        },
    },
    "write_file": {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Replace the full content of a file in the workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path relative to the workspace."},
                    "content": {"type": "string", "description": "New file content."},
                },
                "required": ["path", "content"],
            },
        },
    },
    "search_files": {
        "type": "function",
        "function": {
            "name": "search_files",
            "description": "List workspace files whose path matches a glob pattern.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Glob such as **/*.java"}
                },
                "required": ["pattern"],
            },
        },
    },
}


class ToolError(RuntimeError):
    """Raised when a tool call cannot be carried out."""


def normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str]:
    if not allowed_tools:
        return sorted(TOOL_POLICY_ALLOWLIST)
    normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
    unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
    if unknown:
        raise ToolError("Tool policy rejected unknown tools: " + ", ".join(unknown))
    return normalized


class WorkspaceTools:
    def __init__(
        self,
        workspace_root: Path,
        file_cache: FileCache,
        emit: Callable[[QueuedEvent], None],
        *,
        allowed_tools: list[str] | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root).resolve()
        self.file_cache = file_cache
        self.emit = emit
        self.allowed_tools = normalize_allowed_tools(allowed_tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [TOOL_SCHEMAS[name] for name in self.allowed_tools]

    def _resolve(self, path: str) -> tuple[Path, str]:
        if not path:
            raise ToolError("A path is required.")
        candidate = Path(path)
        target = candidate if candidate.is_absolute() else self.workspace_root / candidate
        target = target.resolve()
        if target != self.workspace_root and self.workspace_root not in target.parents:
            raise ToolError(f"Path escapes the workspace: {path}")
        return target, target.relative_to(self.workspace_root).as_posix()

    def read_file(self, path: str) -> str:
        target, relative = self._resolve(path)
        cached = self.file_cache.get(relative)
        if cached is not None:
            return cached
        if not target.is_file():
            raise ToolError(f"File not found: {relative}")
        return target.read_text(encoding="utf-8")

    def write_file(self, path: str, content: str) -> str:
        _, relative = self._resolve(path)
        self.file_cache.set(relative, content)
        self.emit(QueuedEvent.modified_file(f"file-{uuid4().hex[:12]}", relative, content))
        return f"Wrote {len(content)} characters to {relative}"

    def search_files(self, pattern: str) -> str:
        if not pattern:
            raise ToolError("A glob pattern is required.")
        matches: list[str] = []
        for root, dirs, files in os.walk(self.workspace_root):
            dirs[:] = sorted(name for name in dirs if name not in SKIPPED_DIRECTORIES)
            for name in sorted(files):
                relative = Path(root, name).relative_to(self.workspace_root).as_posix()
                if fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(name, pattern):
                    matches.append(relative)
                    if len(matches) >= MAX_SEARCH_RESULTS:
                        return "\n".join(matches)
        return "\n".join(matches) if matches else "No matching files."

    def _call(self, request: ToolCallRequest) -> str:
        args = request.args
        if request.name == "read_file":
            return self.read_file(str(args.get("path", "")))
        if request.name == "write_file":
            return self.write_file(str(args.get("path", "")), str(args.get("content", "")))
        if request.name == "search_files":
            return self.search_files(str(args.get("pattern", "")))
        raise ToolError(f"Unknown tool: {request.name}")

    async def execute(self, request: ToolCallRequest) -> str:
        """Run one tool call, reporting it as running then succeeded or failed."""
        event_id = request.id or f"tool-{uuid4().hex[:12]}"
        rendered_args = json.dumps(request.args, ensure_ascii=False, sort_keys=True)
        self.emit(QueuedEvent.tool_call(event_id, request.name, "running", rendered_args))
        if request.name not in self.allowed_tools:
            self.emit(QueuedEvent.tool_call(event_id, request.name, "failed", rendered_args))
            return f"Error: tool {request.name} is not allowed"
        try:
            output = self._call(request)
        except (ToolError, OSError, UnicodeDecodeError) as exc:
            logger.warning("Tool %s failed: %s", request.name, exc)
            self.emit(QueuedEvent.tool_call(event_id, request.name, "failed", rendered_args))
            return f"Error: {exc}"
        self.emit(QueuedEvent.tool_call(event_id, request.name, "succeeded", rendered_args))
        return output
