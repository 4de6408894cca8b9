import asyncio
from pathlib import Path

import pytest

from remediator.backends.base import ToolCallRequest
from remediator.events import EventKind, QueuedEvent
from remediator.session import FileCache
from remediator.tools import ToolError, WorkspaceTools, normalize_allowed_tools


def _tools(tmp_path: Path, events: list[QueuedEvent], **kwargs) -> WorkspaceTools:
    return WorkspaceTools(tmp_path, FileCache(), events.append, **kwargs)


def test_write_goes_to_cache_and_reads_see_it(tmp_path: Path) -> None:
    (tmp_path / "pom.xml").write_text("<project/>", encoding="utf-8")
    events: list[QueuedEvent] = []
    tools = _tools(tmp_path, events)

    message = tools.write_file("pom.xml", "<project><version>2</version></project>")

    assert message == "Wrote 39 characters to pom.xml"
    assert tools.read_file("pom.xml") == "<project><version>2</version></project>"
    assert (tmp_path / "pom.xml").read_text(encoding="utf-8") == "<project/>"
    assert events[0].kind is EventKind.MODIFIED_FILE
    assert events[0].data.path == "pom.xml"


def test_paths_outside_workspace_are_rejected(tmp_path: Path) -> None:
    tools = _tools(tmp_path, [])

    with pytest.raises(ToolError, match="escapes the workspace"):
        tools.read_file("../secrets.txt")
    with pytest.raises(ToolError, match="escapes the workspace"):
        tools.write_file("/etc/passwd", "x")


def test_search_files_matches_glob_and_skips_build_dirs(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "App.java").write_text("", encoding="utf-8")
    (tmp_path / "target").mkdir()
    (tmp_path / "target" / "Gen.java").write_text("", encoding="utf-8")
    tools = _tools(tmp_path, [])

    assert tools.search_files("*.java") == "src/App.java"
    assert tools.search_files("*.kt") == "No matching files."


def test_execute_reports_running_and_outcome(tmp_path: Path) -> None:
    events: list[QueuedEvent] = []
    tools = _tools(tmp_path, events)

    output = asyncio.run(
        tools.execute(ToolCallRequest(id="call-1", name="read_file", args={"path": "missing.txt"}))
    )

    assert output.startswith("Error: File not found")
    assert [event.data.status for event in events] == ["running", "failed"]
    assert all(event.id == "call-1" for event in events)


def test_execute_refuses_tools_outside_allowlist(tmp_path: Path) -> None:
    events: list[QueuedEvent] = []
    tools = _tools(tmp_path, events, allowed_tools=["read_file"])

    output = asyncio.run(
        tools.execute(
            ToolCallRequest(id="call-2", name="write_file", args={"path": "a", "content": "b"})
        )
    )

    assert output == "Error: tool write_file is not allowed"
    assert [schema["function"]["name"] for schema in tools.schemas()] == ["read_file"]
    assert [event.data.status for event in events] == ["running", "failed"]


def test_normalize_allowed_tools() -> None:
    assert normalize_allowed_tools(None) == ["read_file", "search_files", "write_file"]
    with pytest.raises(ToolError, match="unknown tools: shell"):
        normalize_allowed_tools(["read_file", "shell"])
