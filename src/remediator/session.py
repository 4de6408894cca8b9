from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal
from uuid import uuid4

from remediator.backends.base import ModelBackend
from remediator.events import TaskRef, TranscriptEntry

if TYPE_CHECKING:
    from remediator.gateway import InteractionGateway
    from remediator.queue import MessageQueue

logger = logging.getLogger(__name__)

SolutionState = Literal["none", "started", "received", "failedOnSending"]


class FileCache:
    """In-memory view of files written by handlers, keyed by path.

    Handlers write here instead of to disk; callers invalidate entries when
    the file changes on disk.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self.invalidations = 0

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str) -> str | None:
        return self._entries.get(path)

    def set(self, path: str, content: str) -> None:
        self._entries[path] = content

    def invalidate(self, path: str) -> None:
        if self._entries.pop(path, None) is not None:
            self.invalidations += 1

    def reset(self) -> None:
        self._entries.clear()
        self.invalidations = 0


@dataclass(slots=True)
class ModifiedFileState:
    path: str
    modified_content: str
    original_content: str | None = None

    @property
    def is_new(self) -> bool:
        return self.original_content is None

    @property
    def is_deleted(self) -> bool:
        return not self.is_new and not self.modified_content.strip()


@dataclass(slots=True)
class Session:
    """State owned by one remediation session.

    The queue and gateway hold a reference to this object and read the
    interaction flags from it; nothing here is module-global.
    """

    workspace_root: Path
    model: ModelBackend | None = None
    agent_mode: bool = False
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    queue: MessageQueue | None = None
    gateway: InteractionGateway | None = None
    fetching_solution: bool = False
    waiting_for_interaction: bool = False
    processing_queued_messages: bool = False
    run_phase_complete: bool = False
    failed: bool = False
    closed: bool = False
    solution_state: SolutionState = "none"
    transcript: list[TranscriptEntry] = field(default_factory=list)
    modified_files: dict[str, ModifiedFileState] = field(default_factory=dict)
    processed_tokens: set[str] = field(default_factory=set)
    last_message_id: str | None = None
    task_iterations: int = 0
    task_provider: Callable[[], list[TaskRef]] | None = None
    file_cache: FileCache = field(default_factory=FileCache)

    def append_entry(self, entry: TranscriptEntry) -> TranscriptEntry:
        self.transcript.append(entry)
        return entry

    def reset_transient(self) -> None:
        self.waiting_for_interaction = False
        self.processing_queued_messages = False
        self.transcript.clear()
        self.modified_files.clear()
        self.processed_tokens.clear()
        self.last_message_id = None
        self.task_iterations = 0
