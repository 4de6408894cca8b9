"""Step-wise router that plans issues and delegates them to handlers.

Each :meth:`TaskRouter.orchestrate` call applies the first matching rule:

1. nothing left to do: ask for more tasks (interactive runs only) or end;
2. a handler just finished: reset it;
3. nominations remain: activate the most recently nominated handler;
4. otherwise: hand the next task, or pending follow-up context, to the planner.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlparse
from uuid import uuid4

from remediator.events import DetectedIssue, QueuedEvent, TaskRef
from remediator.gateway import FollowUpPrompt, InteractionGateway
from remediator.handlers.base import Handler
from remediator.handlers.planner import NominatedAssignment, Planner
from remediator.tools import WorkspaceTools

logger = logging.getLogger(__name__)

ADDITIONAL_INFO_HEADER = re.compile(r"^[#*\s]*additional information[*\s:]*$", re.IGNORECASE)
EMPTY_FOLLOW_UP = {"", "none", "n/a", "no", "none."}
BACKGROUND_ENTRY_LIMIT = 500


class RouterError(RuntimeError):
    """Raised when the router exceeds its step ceiling."""


@dataclass(slots=True)
class Task:
    uri: str
    issues: list[str] = field(default_factory=list)


def group_issues(pairs: Iterable[tuple[str, str]]) -> list[Task]:
    """Merge ``(uri, issue)`` pairs per uri, keeping first-seen order."""
    grouped: dict[str, Task] = {}
    for uri, issue in pairs:
        if not issue:
            continue
        task = grouped.get(uri)
        if task is None:
            grouped[uri] = Task(uri=uri, issues=[issue])
        else:
            task.issues.append(issue)
    return list(grouped.values())


def group_detected_issues(issues: Iterable[DetectedIssue]) -> list[Task]:
    return group_issues((issue.uri, issue.message) for issue in issues)


def group_task_refs(refs: Iterable[TaskRef]) -> list[Task]:
    return group_issues((ref.uri, ref.task) for ref in refs)


def uri_to_path(uri: str) -> str:
    if uri.startswith("file://"):
        return unquote(urlparse(uri).path)
    return uri


def relative_to_workspace(workspace_root: Path, uri: str) -> str:
    path = uri_to_path(uri)
    if not os.path.isabs(path):
        return path
    return os.path.relpath(path, workspace_root)


def extract_additional_information(content: str) -> str | None:
    """Return the body of an ``Additional Information`` section, if any."""
    lines = content.splitlines()
    for index, line in enumerate(lines):
        if not ADDITIONAL_INFO_HEADER.match(line.strip()):
            continue
        body: list[str] = []
        for follow in lines[index + 1 :]:
            if follow.lstrip().startswith("#"):
                break
            body.append(follow)
        text = "\n".join(body).strip()
        if text.lower() in EMPTY_FOLLOW_UP:
            return None
        return text
    return None


@dataclass(slots=True)
class RouterState:
    tasks: deque[Task] = field(default_factory=deque)
    summarized_context: str | None = None
    nominations: list[NominatedAssignment] = field(default_factory=list)
    active_handler: Handler | None = None
    active_task: Task | None = None
    planner_input: Task | None = None
    should_end: bool = False
    interactive: bool = False
    background: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RouterResult:
    steps: int = 0
    planned_tasks: int = 0
    assignments: int = 0


class TaskRouter:
    def __init__(
        self,
        planner: Planner,
        handlers: dict[str, Handler],
        gateway: InteractionGateway,
        emit: Callable[[QueuedEvent], None],
        *,
        workspace_root: Path,
        tools: WorkspaceTools | None = None,
        follow_up: FollowUpPrompt | None = None,
        max_steps: int = 200,
        max_tool_rounds: int = 10,
        on_handler_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self.planner = planner
        self.handlers = handlers
        self.gateway = gateway
        self.emit = emit
        self.workspace_root = Path(workspace_root)
        self.tools = tools
        self.follow_up = follow_up
        self.max_steps = max(1, int(max_steps))
        self.max_tool_rounds = max(0, int(max_tool_rounds))
        self.on_handler_error = on_handler_error
        self._last_request_ms = 0

    @property
    def roster(self) -> list[tuple[str, str]]:
        return [(name, handler.description) for name, handler in self.handlers.items()]

    def _next_request_id(self) -> str:
        now_ms = time.time_ns() // 1_000_000
        self._last_request_ms = max(now_ms, self._last_request_ms + 1)
        return f"req-tasks-{self._last_request_ms}"

    async def _request_tasks(self, state: RouterState) -> None:
        request_id = self._next_request_id()
        try:
            pending = self.gateway.register(request_id)
            self.emit(QueuedEvent.interaction(request_id, "tasks"))
            reply = await pending.wait()
            if reply.yes_no and reply.tasks:
                grouped = group_task_refs(reply.tasks)
                state.tasks.extend(grouped)
                state.should_end = not grouped
                logger.info("Received %d new task group(s)", len(grouped))
        except Exception as exc:
            logger.warning("Failed to wait for user response - %s", exc)
        finally:
            self.gateway.discard(request_id)

    @staticmethod
    def _release_handler(state: RouterState) -> None:
        if state.active_handler is None:
            return
        state.active_handler.reset()
        state.active_handler = None
        state.active_task = None

    async def orchestrate(self, state: RouterState) -> RouterState:
        state.should_end = False
        if not state.tasks and not state.summarized_context and not state.nominations:
            state.should_end = True
            self._release_handler(state)
            if state.interactive:
                await self._request_tasks(state)
            return state

        planned_task = state.active_task
        self._release_handler(state)

        if state.nominations:
            assignment = state.nominations.pop()
            state.active_task = planned_task
            handler = self.handlers.get(assignment.handler_name)
            if handler is None:
                logger.warning("Planner nominated unknown handler %r", assignment.handler_name)
                return state
            uris: list[str] = []
            if planned_task is not None and planned_task.uri:
                uris = [relative_to_workspace(self.workspace_root, planned_task.uri)]
            handler.assign(assignment.instructions, uris)
            state.active_handler = handler
            return state

        if state.summarized_context:
            state.active_task = Task(uri="", issues=[state.summarized_context])
            state.summarized_context = None
        elif state.tasks:
            state.active_task = state.tasks.popleft()
        state.planner_input = state.active_task
        return state

    async def run(self, state: RouterState) -> RouterResult:
        result = RouterResult()
        for step in range(1, self.max_steps + 1):
            result.steps = step
            await self.orchestrate(state)
            if state.active_handler is not None:
                await self._run_handler(state, state.active_handler)
                result.assignments += 1
            elif state.planner_input is not None:
                task, state.planner_input = state.planner_input, None
                state.nominations = await self.planner.plan(
                    task, self.roster, "\n".join(state.background)
                )
                result.planned_tasks += 1
            elif state.should_end:
                logger.info(
                    "Router finished after %d step(s): %d planned, %d assignment(s)",
                    result.steps,
                    result.planned_tasks,
                    result.assignments,
                )
                return result
        raise RouterError(f"Router exceeded {self.max_steps} steps without finishing.")

    async def _run_handler(self, state: RouterState, handler: Handler) -> None:
        logger.info("Running handler %s", handler.name)
        try:
            outcome = await handler.run(tools=self.tools, max_tool_rounds=self.max_tool_rounds)
        except Exception as exc:
            if self.on_handler_error is not None:
                self.on_handler_error(exc)
            raise
        response_id = f"res-{handler.name}-{uuid4().hex[:12]}"
        self.emit(QueuedEvent.full_response(response_id, outcome.content))
        state.background.append(f"- {handler.name}: {outcome.content[:BACKGROUND_ENTRY_LIMIT]}")

        follow_up = extract_additional_information(outcome.content)
        if follow_up and self.follow_up is not None:
            decision = await self.follow_up.submit(follow_up)
            if decision.approved:
                extra = "\n".join(decision.issues)
                if state.summarized_context:
                    extra = f"{state.summarized_context}\n{extra}"
                state.summarized_context = extra
