from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

logger = logging.getLogger(__name__)

InteractionType = Literal["yesNo", "choice", "tasks"]
ToolStatus = Literal["generating", "running", "succeeded", "failed"]


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class EventKind(StrEnum):
    LLM_CHUNK = "llm_chunk"
    FULL_RESPONSE = "full_response"
    MODIFIED_FILE = "modified_file"
    TOOL_CALL = "tool_call"
    USER_INTERACTION = "user_interaction"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class DetectedIssue:
    uri: str
    message: str
    profile_name: str | None = None
    rule_id: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DetectedIssue:
        return cls(
            uri=str(payload.get("uri", "")),
            message=str(payload.get("message", "")),
            profile_name=payload.get("profile_name") or payload.get("activeProfileName"),
            rule_id=payload.get("rule_id") or payload.get("ruleId"),
        )


@dataclass(frozen=True, slots=True)
class TaskRef:
    uri: str
    task: str


@dataclass(frozen=True, slots=True)
class ModifiedFile:
    path: str
    content: str


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    status: ToolStatus
    args: str = ""


@dataclass(frozen=True, slots=True)
class UserInteraction:
    type: InteractionType
    message: str | None = None
    choices: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class QueuedEvent:
    """One workflow output, consumed exactly once by the drain loop."""

    kind: EventKind
    id: str
    data: Any = None

    @classmethod
    def llm_chunk(cls, event_id: str, content: str) -> QueuedEvent:
        return cls(EventKind.LLM_CHUNK, event_id, content)

    @classmethod
    def full_response(cls, event_id: str, content: str) -> QueuedEvent:
        return cls(EventKind.FULL_RESPONSE, event_id, content)

    @classmethod
    def modified_file(cls, event_id: str, path: str, content: str) -> QueuedEvent:
        return cls(EventKind.MODIFIED_FILE, event_id, ModifiedFile(path=path, content=content))

    @classmethod
    def tool_call(
        cls, event_id: str, name: str, status: ToolStatus, args: str = ""
    ) -> QueuedEvent:
        return cls(
            EventKind.TOOL_CALL,
            event_id,
            ToolCall(id=event_id, name=name, status=status, args=args),
        )

    @classmethod
    def interaction(
        cls,
        event_id: str,
        interaction_type: InteractionType,
        message: str | None = None,
        choices: tuple[str, ...] = (),
    ) -> QueuedEvent:
        return cls(
            EventKind.USER_INTERACTION,
            event_id,
            UserInteraction(type=interaction_type, message=message, choices=choices),
        )

    @classmethod
    def error(cls, event_id: str, message: str) -> QueuedEvent:
        return cls(EventKind.ERROR, event_id, message)


@dataclass(frozen=True, slots=True)
class InteractionReply:
    """A human answer to a pending interaction.

    Wire shape: ``{"id": ..., "data": {"response": {"choice": int?,
    "yesNo": bool?, "tasks": [{"uri": ..., "task": ...}]?}}}``.
    """

    id: str
    choice: int | None = None
    yes_no: bool | None = None
    tasks: tuple[TaskRef, ...] = ()

    @property
    def is_valid(self) -> bool:
        return self.choice is not None or self.yes_no is not None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> InteractionReply:
        data = payload.get("data")
        response = data.get("response") if isinstance(data, dict) else None
        if not isinstance(response, dict):
            response = {}
        choice = response.get("choice")
        yes_no = response.get("yesNo")
        tasks: list[TaskRef] = []
        raw_tasks = response.get("tasks")
        if isinstance(raw_tasks, list):
            for item in raw_tasks:
                if isinstance(item, dict) and "uri" in item and "task" in item:
                    tasks.append(TaskRef(uri=str(item["uri"]), task=str(item["task"])))
        return cls(
            id=str(payload.get("id", "")),
            choice=choice if isinstance(choice, int) and not isinstance(choice, bool) else None,
            yes_no=yes_no if isinstance(yes_no, bool) else None,
            tasks=tuple(tasks),
        )


@dataclass(frozen=True, slots=True)
class QuickResponse:
    id: str
    content: str


@dataclass(slots=True)
class TranscriptEntry:
    token: str
    kind: Literal["string", "tool", "modified_file"]
    message: str = ""
    quick_responses: list[QuickResponse] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)


UIEventKind = Literal["progress", "modified_file", "transcript"]


@dataclass(frozen=True, slots=True)
class UIEvent:
    kind: UIEventKind
    token: str
    payload: dict[str, Any] = field(default_factory=dict)


class UIEventStream:
    """Fan-out of UI events to subscribers, keeping a history for late readers."""

    def __init__(self) -> None:
        self.history: list[UIEvent] = []
        self._subscribers: list[Callable[[UIEvent], None]] = []

    def subscribe(self, listener: Callable[[UIEvent], None]) -> Callable[[], None]:
        self._subscribers.append(listener)

        def _unsubscribe() -> None:
            if listener in self._subscribers:
                self._subscribers.remove(listener)

        return _unsubscribe

    def emit(self, event: UIEvent) -> None:
        self.history.append(event)
        for listener in list(self._subscribers):
            try:
                listener(event)
            except Exception:
                logger.exception("UI listener failed for %s event %s", event.kind, event.token)
