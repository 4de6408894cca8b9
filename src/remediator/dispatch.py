from __future__ import annotations

import difflib
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from remediator.events import (
    EventKind,
    InteractionReply,
    ModifiedFile,
    QueuedEvent,
    QuickResponse,
    TaskRef,
    ToolCall,
    TranscriptEntry,
    UIEvent,
    UIEventStream,
    UserInteraction,
)
from remediator.gateway import InteractionGateway
from remediator.session import ModifiedFileState, Session

logger = logging.getLogger(__name__)

Resolver = Callable[[str, InteractionReply], bool]

YES_NO_RESPONSES = [QuickResponse("yes", "Yes"), QuickResponse("no", "No")]
APPLY_REJECT_RESPONSES = [QuickResponse("apply", "Apply"), QuickResponse("reject", "Reject")]
TASK_PREVIEW_LIMIT = 100


def should_process(event: QueuedEvent, last_message_id: str | None, processed: set[str]) -> bool:
    """Return False for duplicates of an already delivered event."""
    if event.kind == EventKind.LLM_CHUNK:
        if event.id == last_message_id:
            return True
        key = f"llm-start:{event.id}"
    elif event.kind == EventKind.MODIFIED_FILE:
        key = f"file:{event.data.path}:{event.id}"
    elif event.kind == EventKind.TOOL_CALL:
        key = f"tool:{event.data.name}:{event.data.status}:{event.id}"
    elif event.kind == EventKind.USER_INTERACTION:
        key = f"interaction:{event.data.type}:{event.id}"
    else:
        key = f"{event.kind}:{event.id}"
    if key in processed:
        logger.debug("Skipping duplicate event %s", key)
        return False
    processed.add(key)
    return True


def file_diff(state: ModifiedFileState) -> str:
    if state.is_new:
        before, from_name, to_name = "", "/dev/null", state.path
    else:
        before, from_name, to_name = state.original_content or "", state.path, state.path
    after = "" if state.is_deleted else state.modified_content
    if state.is_deleted:
        to_name = "/dev/null"
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=from_name,
            tofile=to_name,
        )
    )


def _preview_task(task: str) -> str:
    if len(task) <= TASK_PREVIEW_LIMIT:
        return task
    return task[:TASK_PREVIEW_LIMIT].replace("`", "'").replace(">", "") + "..."


class EventDispatcher:
    """Delivers drained events to the session transcript and the UI stream.

    Each delivered event produces exactly one UI event. Events that need a
    human decision register a pending interaction (unless the producer
    already did) and set ``session.waiting_for_interaction`` so the drain
    pass stops.
    """

    def __init__(
        self,
        session: Session,
        gateway: InteractionGateway,
        ui: UIEventStream,
        resolver: Resolver,
        *,
        max_task_iterations: int = 3,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.ui = ui
        self.resolver = resolver
        self.max_task_iterations = max_task_iterations

    async def __call__(self, event: QueuedEvent) -> None:
        if not should_process(event, self.session.last_message_id, self.session.processed_tokens):
            return
        if event.kind == EventKind.LLM_CHUNK:
            self._on_chunk(event)
        elif event.kind == EventKind.FULL_RESPONSE:
            self._on_full_response(event)
        elif event.kind == EventKind.TOOL_CALL:
            self._on_tool_call(event, event.data)
        elif event.kind == EventKind.MODIFIED_FILE:
            self._on_modified_file(event, event.data)
        elif event.kind == EventKind.USER_INTERACTION:
            self._on_interaction(event, event.data)
        elif event.kind == EventKind.ERROR:
            self._on_error(event)
        else:
            raise ValueError(f"Unsupported event kind: {event.kind}")

    def _publish(self, kind: str, entry: TranscriptEntry, **extra: Any) -> None:
        payload: dict[str, Any] = {
            "message": entry.message,
            "entry_kind": entry.kind,
            "quick_responses": [
                {"id": response.id, "content": response.content}
                for response in entry.quick_responses
            ],
        }
        payload.update(entry.data)
        payload.update(extra)
        event = UIEvent(kind=kind, token=entry.token, payload=payload)  # type: ignore[arg-type]
        self.ui.emit(event)

    def _suspend(self, event_id: str) -> None:
        if event_id not in self.gateway:
            self.gateway.register(event_id)
        self.session.waiting_for_interaction = True

    @staticmethod
    def _text(content: Any) -> str:
        if isinstance(content, str):
            return content
        try:
            return json.dumps(content, ensure_ascii=False)
        except (TypeError, ValueError):
            return "[Error: Unable to serialize content]"

    def _on_chunk(self, event: QueuedEvent) -> None:
        content = self._text(event.data)
        transcript = self.session.transcript
        if event.id == self.session.last_message_id and transcript:
            entry = transcript[-1]
            entry.message += content
        else:
            entry = self.session.append_entry(
                TranscriptEntry(token=event.id, kind="string", message=content)
            )
            self.session.last_message_id = event.id
        self._publish("transcript", entry)

    def _on_full_response(self, event: QueuedEvent) -> None:
        content = self._text(event.data)
        transcript = self.session.transcript
        if transcript and transcript[-1].token == event.id:
            entry = transcript[-1]
            entry.message = content
        else:
            entry = self.session.append_entry(
                TranscriptEntry(token=event.id, kind="string", message=content)
            )
        self.session.last_message_id = event.id
        self._publish("transcript", entry, complete=True)

    def _on_tool_call(self, event: QueuedEvent, call: ToolCall) -> None:
        transcript = self.session.transcript
        last = transcript[-1] if transcript else None
        if last is not None and last.kind == "tool" and last.data.get("tool_name") == call.name:
            last.data["tool_status"] = call.status
            entry = last
        else:
            entry = self.session.append_entry(
                TranscriptEntry(
                    token=event.id,
                    kind="tool",
                    data={"tool_name": call.name, "tool_status": call.status},
                )
            )
        self._publish("progress", entry)

    def _read_original(self, path: str) -> str | None:
        target = Path(self.session.workspace_root) / path
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read original content of %s: %s", path, exc)
            return None

    def _on_modified_file(self, event: QueuedEvent, change: ModifiedFile) -> None:
        previous = self.session.modified_files.get(change.path)
        if previous is not None:
            original = previous.original_content
        else:
            original = self._read_original(change.path)
        state = ModifiedFileState(
            path=change.path,
            modified_content=change.content,
            original_content=original,
        )
        self.session.modified_files[change.path] = state
        self.session.file_cache.set(change.path, change.content)

        data = {
            "path": change.path,
            "is_new": state.is_new,
            "is_deleted": state.is_deleted,
            "diff": file_diff(state),
        }
        if not self.session.agent_mode:
            logger.debug("Stored modification of %s without review", change.path)
            self.ui.emit(UIEvent(kind="modified_file", token=event.id, payload=data))
            return

        entry = self.session.append_entry(
            TranscriptEntry(
                token=event.id,
                kind="modified_file",
                message=f"Modified {change.path}",
                quick_responses=list(APPLY_REJECT_RESPONSES),
                data=data,
            )
        )
        self._suspend(event.id)
        self._publish("modified_file", entry)

    def _on_interaction(self, event: QueuedEvent, interaction: UserInteraction) -> None:
        if interaction.type == "yesNo":
            entry = self.session.append_entry(
                TranscriptEntry(
                    token=event.id,
                    kind="string",
                    message=interaction.message or "Would you like to proceed?",
                    quick_responses=list(YES_NO_RESPONSES),
                )
            )
            self._suspend(event.id)
            self._publish("transcript", entry, interaction="yesNo")
            return

        if interaction.type == "choice":
            entry = self.session.append_entry(
                TranscriptEntry(
                    token=event.id,
                    kind="string",
                    message=interaction.message or "Please select an option:",
                    quick_responses=[
                        QuickResponse(f"choice-{index}", choice)
                        for index, choice in enumerate(interaction.choices)
                    ],
                )
            )
            self._suspend(event.id)
            self._publish("transcript", entry, interaction="choice")
            return

        self._on_tasks_request(event)

    def _collect_tasks(self) -> list[TaskRef]:
        provider = self.session.task_provider
        if provider is None:
            return []
        return [TaskRef(uri=item.uri, task=_preview_task(item.task)) for item in provider()]

    def _on_tasks_request(self, event: QueuedEvent) -> None:
        tasks: list[TaskRef] = []
        if self.session.task_iterations < self.max_task_iterations:
            self.session.task_iterations += 1
            tasks = self._collect_tasks()
            logger.info(
                "Tasks requested (iteration %d/%d): %d candidate(s)",
                self.session.task_iterations,
                self.max_task_iterations,
                len(tasks),
            )

        if not tasks:
            entry = TranscriptEntry(
                token=event.id, kind="string", message="No further issues found."
            )
            self.resolver(event.id, InteractionReply(id=event.id, yes_no=False))
            self._publish("transcript", entry, interaction="tasks", answered=True)
            return

        unique = list(dict.fromkeys(task.task for task in tasks))
        message = (
            "It appears that my fixes caused following issues:\n\n - "
            + "\n - ".join(unique)
            + "\n\nDo you want me to continue fixing them?"
        )
        entry = self.session.append_entry(
            TranscriptEntry(
                token=event.id,
                kind="string",
                message=message,
                quick_responses=list(YES_NO_RESPONSES),
                data={"tasks": [{"uri": task.uri, "task": task.task} for task in tasks]},
            )
        )
        self._suspend(event.id)
        self._publish("transcript", entry, interaction="tasks")

    def _on_error(self, event: QueuedEvent) -> None:
        message = self._text(event.data)
        logger.error("Workflow reported error: %s", message)
        entry = self.session.append_entry(
            TranscriptEntry(token=event.id, kind="string", message=f"Error: {message}")
        )
        self._publish("transcript", entry, error=True)
