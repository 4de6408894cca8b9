import asyncio
from pathlib import Path

from remediator.dispatch import EventDispatcher, file_diff, should_process
from remediator.events import InteractionReply, QueuedEvent, TaskRef, UIEventStream
from remediator.gateway import InteractionGateway
from remediator.session import ModifiedFileState, Session


class Harness:
    def __init__(self, tmp_path: Path, *, agent_mode: bool = False, task_provider=None) -> None:
        self.session = Session(
            workspace_root=tmp_path, agent_mode=agent_mode, task_provider=task_provider
        )
        self.gateway = InteractionGateway()
        self.ui = UIEventStream()
        self.resolved: list[tuple[str, InteractionReply]] = []
        self.dispatcher = EventDispatcher(
            self.session, self.gateway, self.ui, self._resolve, max_task_iterations=2
        )

    def _resolve(self, interaction_id: str, reply: InteractionReply) -> bool:
        self.resolved.append((interaction_id, reply))
        return True

    def deliver(self, *events: QueuedEvent) -> None:
        async def scenario() -> None:
            for event in events:
                await self.dispatcher(event)

        asyncio.run(scenario())


def test_should_process_skips_duplicates() -> None:
    processed: set[str] = set()
    change = QueuedEvent.modified_file("file-1", "pom.xml", "<project/>")
    chunk = QueuedEvent.llm_chunk("msg-1", "a")

    assert should_process(change, None, processed) is True
    assert should_process(change, None, processed) is False
    assert should_process(chunk, None, processed) is True
    assert should_process(chunk, "msg-1", processed) is True
    assert should_process(chunk, None, processed) is False
    assert "file:pom.xml:file-1" in processed


def test_chunks_with_same_id_extend_one_entry(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.deliver(
        QueuedEvent.llm_chunk("msg-1", "Updating "),
        QueuedEvent.llm_chunk("msg-1", "imports"),
        QueuedEvent.full_response("msg-1", "Updated imports"),
    )

    assert [entry.message for entry in harness.session.transcript] == ["Updated imports"]
    assert len(harness.ui.history) == 3
    assert harness.ui.history[1].payload["message"] == "Updating imports"
    assert harness.ui.history[-1].payload["complete"] is True


def test_tool_call_updates_progress_entry(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.deliver(
        QueuedEvent.tool_call("call-1", "read_file", "running"),
        QueuedEvent.tool_call("call-1", "read_file", "succeeded"),
    )

    assert len(harness.session.transcript) == 1
    assert harness.session.transcript[0].data["tool_status"] == "succeeded"
    assert [event.kind for event in harness.ui.history] == ["progress", "progress"]
    assert harness.ui.history[-1].payload["tool_name"] == "read_file"


def test_modified_file_without_review_is_stored(tmp_path: Path) -> None:
    (tmp_path / "App.java").write_text("import javax.inject.Inject;\n", encoding="utf-8")
    harness = Harness(tmp_path)

    harness.deliver(
        QueuedEvent.modified_file("file-1", "App.java", "import jakarta.inject.Inject;\n")
    )

    state = harness.session.modified_files["App.java"]
    assert state.original_content == "import javax.inject.Inject;\n"
    assert harness.session.file_cache.get("App.java") == "import jakarta.inject.Inject;\n"
    assert harness.session.waiting_for_interaction is False
    assert harness.session.transcript == []
    (event,) = harness.ui.history
    assert event.kind == "modified_file"
    assert "+import jakarta.inject.Inject;" in event.payload["diff"]
    assert event.payload["is_new"] is False


def test_modified_file_in_agent_mode_waits_for_review(tmp_path: Path) -> None:
    harness = Harness(tmp_path, agent_mode=True)

    async def scenario() -> None:
        await harness.dispatcher(QueuedEvent.modified_file("file-2", "New.java", "class New {}\n"))
        assert "file-2" in harness.gateway
        harness.gateway.dispose()

    asyncio.run(scenario())

    assert harness.session.waiting_for_interaction is True
    entry = harness.session.transcript[-1]
    assert entry.kind == "modified_file"
    assert [response.content for response in entry.quick_responses] == ["Apply", "Reject"]
    assert harness.ui.history[-1].payload["is_new"] is True


def test_choice_interaction_offers_indexed_responses(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    async def scenario() -> None:
        await harness.dispatcher(
            QueuedEvent.interaction("req-1", "choice", message="Pick", choices=("Keep", "Drop"))
        )
        harness.gateway.dispose()

    asyncio.run(scenario())

    payload = harness.ui.history[-1].payload
    assert payload["interaction"] == "choice"
    assert payload["quick_responses"] == [
        {"id": "choice-0", "content": "Keep"},
        {"id": "choice-1", "content": "Drop"},
    ]
    assert harness.session.waiting_for_interaction is True


def test_tasks_request_without_candidates_is_answered_no(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.deliver(QueuedEvent.interaction("req-tasks-1", "tasks"))

    assert harness.resolved == [("req-tasks-1", InteractionReply(id="req-tasks-1", yes_no=False))]
    assert harness.session.waiting_for_interaction is False
    assert harness.session.transcript == []
    payload = harness.ui.history[-1].payload
    assert payload["message"] == "No further issues found."
    assert payload["answered"] is True


def test_tasks_request_lists_candidates_until_iteration_limit(tmp_path: Path) -> None:
    long_task = "Replace " + "x" * 120
    harness = Harness(
        tmp_path,
        agent_mode=True,
        task_provider=lambda: [
            TaskRef(uri="pom.xml", task="Update jakarta dependency"),
            TaskRef(uri="App.java", task=long_task),
        ],
    )

    async def scenario() -> None:
        await harness.dispatcher(QueuedEvent.interaction("req-tasks-1", "tasks"))
        assert "req-tasks-1" in harness.gateway
        harness.session.waiting_for_interaction = False
        await harness.dispatcher(QueuedEvent.interaction("req-tasks-2", "tasks"))
        harness.session.waiting_for_interaction = False
        await harness.dispatcher(QueuedEvent.interaction("req-tasks-3", "tasks"))
        harness.gateway.dispose()

    asyncio.run(scenario())

    first = harness.session.transcript[0]
    assert first.message.startswith("It appears that my fixes caused following issues:")
    assert "Update jakarta dependency" in first.message
    assert first.data["tasks"][1]["task"].endswith("...")
    assert len(first.data["tasks"][1]["task"]) == 103
    assert harness.session.task_iterations == 2
    assert [item[0] for item in harness.resolved] == ["req-tasks-3"]


def test_error_event_is_shown_in_transcript(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.deliver(QueuedEvent.error("error-1", "model unavailable"))

    assert harness.session.transcript[-1].message == "Error: model unavailable"
    assert harness.ui.history[-1].payload["error"] is True


def test_file_diff_for_deleted_file() -> None:
    diff = file_diff(ModifiedFileState("Old.java", "", original_content="class Old {}\n"))

    assert "+++ /dev/null" in diff
    assert "-class Old {}" in diff
