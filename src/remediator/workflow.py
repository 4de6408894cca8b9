from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from remediator.backends.base import BackendExecutionError, ModelBackend
from remediator.config import RemediatorConfig
from remediator.events import DetectedIssue, QueuedEvent
from remediator.gateway import FollowUpPrompt, InteractionGateway
from remediator.handlers import HANDLERS, Handler, Planner
from remediator.router import RouterResult, RouterState, TaskRouter, group_detected_issues
from remediator.session import FileCache
from remediator.tools import WorkspaceTools

logger = logging.getLogger(__name__)

EventListener = Callable[[QueuedEvent], None]
ErrorListener = Callable[[Exception], None]


class WorkflowNotBound(RuntimeError):
    """Raised when a workflow runs before an interaction gateway is bound."""


@dataclass(slots=True)
class RunInput:
    issues: list[DetectedIssue] = field(default_factory=list)
    migration_hint: str = ""
    programming_language: str = "Java"
    agent_mode: bool = False


class RemediationWorkflow:
    """Plans and fixes a batch of issues, publishing progress as queued events."""

    def __init__(
        self,
        backend: ModelBackend,
        config: RemediatorConfig,
        *,
        workspace_root: Path,
        planner_backend: ModelBackend | None = None,
    ) -> None:
        self.backend = backend
        self.planner_backend = planner_backend or backend
        self.config = config
        self.workspace_root = Path(workspace_root)
        self.gateway: InteractionGateway | None = None
        self.file_cache = FileCache()
        self._event_listeners: list[EventListener] = []
        self._error_listeners: list[ErrorListener] = []

    def on_event(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def remove_all_listeners(self) -> None:
        self._event_listeners.clear()
        self._error_listeners.clear()

    def bind_gateway(self, gateway: InteractionGateway) -> None:
        self.gateway = gateway

    def bind_file_cache(self, file_cache: FileCache) -> None:
        self.file_cache = file_cache

    def emit(self, event: QueuedEvent) -> None:
        if not self._event_listeners:
            logger.debug("No listener for %s event %s", event.kind, event.id)
        for listener in list(self._event_listeners):
            listener(event)

    def _report_error(self, exc: Exception) -> None:
        self.emit(QueuedEvent.error(f"error-{uuid4().hex[:12]}", str(exc)))
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Workflow error listener failed")

    def _on_handler_error(self, exc: Exception) -> None:
        if isinstance(exc, BackendExecutionError):
            logger.error("Handler backend failed: %s", exc)
            self._report_error(exc)

    def build_handlers(self, run_input: RunInput) -> dict[str, Handler]:
        return {
            name: handler_cls(
                self.backend,
                programming_language=run_input.programming_language,
                migration_hint=run_input.migration_hint,
            )
            for name, handler_cls in HANDLERS.items()
        }

    def build_router(self, run_input: RunInput) -> TaskRouter:
        if self.gateway is None:
            raise WorkflowNotBound("Bind an interaction gateway before running the workflow.")
        planner = Planner(
            self.planner_backend,
            programming_language=run_input.programming_language,
            migration_hint=run_input.migration_hint,
        )
        tools = WorkspaceTools(self.workspace_root, self.file_cache, self.emit)
        return TaskRouter(
            planner,
            self.build_handlers(run_input),
            self.gateway,
            self.emit,
            workspace_root=self.workspace_root,
            tools=tools,
            follow_up=FollowUpPrompt(self.gateway, self.emit),
            max_steps=self.config.workflow.max_router_steps,
            max_tool_rounds=self.config.workflow.max_tool_rounds,
            on_handler_error=self._on_handler_error,
        )

    async def run(self, run_input: RunInput) -> RouterResult:
        router = self.build_router(run_input)
        state = RouterState(
            tasks=deque(group_detected_issues(run_input.issues)),
            interactive=run_input.agent_mode,
        )
        logger.info(
            "Starting remediation of %d issue(s) across %d file(s)",
            len(run_input.issues),
            len(state.tasks),
        )
        return await router.run(state)
