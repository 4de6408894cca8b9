"""Session lifecycle: start a run, route human answers, tear down exactly once.

Teardown waits for all of: the workflow run has returned (or raised), the
queue is empty, no interaction is pending and the session is not waiting for
one. The condition is checked from the resolve path, from the queue's drain
callback and once more right after the run phase completes, and
:meth:`Orchestrator.cleanup` is idempotent so overlapping triggers are safe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from remediator.backends.base import ModelBackend
from remediator.config import RemediatorConfig
from remediator.dispatch import EventDispatcher
from remediator.events import (
    DetectedIssue,
    InteractionReply,
    TaskRef,
    TranscriptEntry,
    UIEvent,
    UIEventStream,
)
from remediator.gateway import InteractionGateway
from remediator.queue import MessageQueue
from remediator.router import RouterResult
from remediator.session import Session
from remediator.workflow import RemediationWorkflow, RunInput

logger = logging.getLogger(__name__)


class SessionRejected(RuntimeError):
    """Raised when a remediation session cannot start."""


class Orchestrator:
    def __init__(
        self,
        config: RemediatorConfig,
        workflow: RemediationWorkflow,
        *,
        model: ModelBackend | None,
        workspace_root: Path,
        ui: UIEventStream | None = None,
        task_provider: Callable[[], list[TaskRef]] | None = None,
    ) -> None:
        self.config = config
        self.workflow = workflow
        self.ui = ui or UIEventStream()
        self.session = Session(
            workspace_root=Path(workspace_root),
            model=model,
            agent_mode=config.workflow.agent_mode,
            task_provider=task_provider,
        )
        self.last_error: Exception | None = None
        self._closed = asyncio.Event()

    def validate_preconditions(self, issues: list[DetectedIssue]) -> None:
        if self.session.fetching_solution:
            raise SessionRejected("Solution already being fetched.")
        if not self.config.workflow.enabled:
            raise SessionRejected("Remediation is disabled by configuration.")
        if self.session.model is None:
            raise SessionRejected("No model is bound to the session.")
        if not issues:
            raise SessionRejected("No issues to remediate.")
        if not issues[0].profile_name:
            raise SessionRejected("No active analysis profile for the issues.")

    def reset_stale_state(self) -> None:
        session = self.session
        if session.queue is not None:
            session.queue.dispose()
            session.queue = None
        if session.gateway is not None:
            session.gateway.dispose()
            session.gateway = None
        session.reset_transient()

    def _wire(self) -> MessageQueue:
        session = self.session
        gateway = InteractionGateway()
        dispatcher = EventDispatcher(
            session,
            gateway,
            self.ui,
            self.resolve_interaction,
            max_task_iterations=self.config.workflow.max_task_iterations,
        )
        queue = MessageQueue(
            session,
            dispatcher,
            interval_seconds=self.config.workflow.drain_interval_seconds,
        )
        queue.on_drain(self._handle_queue_drained)
        session.gateway = gateway
        session.queue = queue

        self.workflow.remove_all_listeners()
        self.workflow.bind_gateway(gateway)
        self.workflow.bind_file_cache(session.file_cache)
        self.workflow.on_event(queue.enqueue)
        self.workflow.on_error(self._handle_workflow_error)
        return queue

    async def run(self, issues: list[DetectedIssue]) -> RouterResult | None:
        self.validate_preconditions(issues)
        self.reset_stale_state()

        session = self.session
        session.fetching_solution = True
        session.solution_state = "started"
        session.failed = False
        session.closed = False
        session.run_phase_complete = False
        self.last_error = None
        self._closed = asyncio.Event()
        self._wire().start()

        project = self.config.project
        run_input = RunInput(
            issues=list(issues),
            migration_hint=project.migration_hint,
            programming_language=project.programming_language,
            agent_mode=session.agent_mode,
        )
        result: RouterResult | None = None
        try:
            result = await self.workflow.run(run_input)
            settle = float(self.config.workflow.settle_seconds)
            if settle > 0:
                await asyncio.sleep(settle)
            if not session.agent_mode and self.get_queue_length() > 0:
                session.processing_queued_messages = True
        except Exception as exc:
            self._handle_run_error(exc)
        finally:
            session.run_phase_complete = True
        self._maybe_teardown("run_complete")
        return result

    def resolve_interaction(
        self, interaction_id: str, response: dict[str, Any] | InteractionReply
    ) -> bool:
        """Deliver a human answer. Returns False when nothing was waiting on ``interaction_id``."""
        if isinstance(response, InteractionReply):
            reply = response
        else:
            reply = InteractionReply.from_payload(response)
        gateway = self.session.gateway
        if gateway is None:
            logger.error("No active session for interaction %s", interaction_id)
            return False
        if not gateway.resolve(interaction_id, reply):
            return False

        self._apply_file_decision(interaction_id, reply)
        self.session.waiting_for_interaction = False
        queue = self.session.queue
        if queue is not None and not queue.disposed:
            queue.kick()
        self._maybe_teardown("resolve")
        return True

    def get_queue_length(self) -> int:
        queue = self.session.queue
        return queue.length if queue is not None else 0

    def _entry_for(self, token: str) -> TranscriptEntry | None:
        for entry in reversed(self.session.transcript):
            if entry.token == token:
                return entry
        return None

    def _apply_file_decision(self, interaction_id: str, reply: InteractionReply) -> None:
        if not reply.is_valid:
            return
        entry = self._entry_for(interaction_id)
        if entry is None or entry.kind != "modified_file":
            return
        path = str(entry.data.get("path", ""))
        state = self.session.modified_files.get(path)
        if state is None:
            return
        approved = reply.yes_no is True or reply.choice == 0
        if approved:
            self.write_modified_file(path)
        else:
            logger.info("Rejected change to %s", path)
            self.session.modified_files.pop(path, None)
            self.session.file_cache.invalidate(path)
        entry.data["decision"] = "applied" if approved else "rejected"

    def write_modified_file(self, path: str) -> Path:
        state = self.session.modified_files[path]
        target = self.session.workspace_root / path
        if state.is_deleted:
            target.unlink(missing_ok=True)
            logger.info("Deleted %s", path)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(state.modified_content, encoding="utf-8")
            logger.info("Applied change to %s", path)
        return target

    def apply_modified_files(self) -> list[Path]:
        return [self.write_modified_file(path) for path in list(self.session.modified_files)]

    def _handle_queue_drained(self) -> None:
        self.session.processing_queued_messages = False
        self._maybe_teardown("drain")

    def _maybe_teardown(self, trigger: str) -> bool:
        session = self.session
        if session.closed:
            return False
        pending = len(session.gateway) if session.gateway is not None else 0
        queued = self.get_queue_length()
        if pending or session.waiting_for_interaction or queued or not session.run_phase_complete:
            logger.debug(
                "Teardown deferred (%s): pending=%d waiting=%s queued=%d run_complete=%s",
                trigger,
                pending,
                session.waiting_for_interaction,
                queued,
                session.run_phase_complete,
            )
            return False
        logger.debug("Teardown triggered by %s", trigger)
        self.cleanup()
        return True

    def cleanup(self) -> None:
        session = self.session
        if session.closed:
            return
        session.closed = True
        session.fetching_solution = False
        session.solution_state = "received"
        session.waiting_for_interaction = False
        session.processing_queued_messages = False
        if session.queue is not None:
            session.queue.dispose()
        if session.gateway is not None:
            session.gateway.dispose()
        session.file_cache.reset()
        self.workflow.remove_all_listeners()
        self._closed.set()
        logger.info(
            "Session %s closed (failed=%s, %d modified file(s))",
            session.id,
            session.failed,
            len(session.modified_files),
        )

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _schedule_cleanup(self) -> None:
        asyncio.get_running_loop().call_soon(self.cleanup)

    def _handle_workflow_error(self, exc: Exception) -> None:
        logger.error("Workflow reported an error: %s", exc)
        self.session.failed = True
        self.last_error = exc
        self._schedule_cleanup()

    def _handle_run_error(self, exc: Exception) -> None:
        logger.error("Remediation run failed: %s", exc, exc_info=exc)
        session = self.session
        session.failed = True
        session.solution_state = "failedOnSending"
        self.last_error = exc
        entry = session.append_entry(
            TranscriptEntry(
                token=f"error-{time.time_ns() // 1_000_000}",
                kind="string",
                message=f"Error: {exc}",
            )
        )
        self.ui.emit(
            UIEvent(
                kind="transcript",
                token=entry.token,
                payload={"message": entry.message, "error": True},
            )
        )
        self._schedule_cleanup()
