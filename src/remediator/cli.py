from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import click

from remediator import __version__
from remediator.backends import (
    ClaudeCodeBackend,
    ModelBackend,
    OpenAIChatBackend,
    ResilientBackend,
    RetryPolicy,
)
from remediator.config import BackendName, ConfigError, RemediatorConfig, load_config, save_config
from remediator.controller import Orchestrator, SessionRejected
from remediator.events import DetectedIssue, InteractionReply, TaskRef, UIEvent, UIEventStream
from remediator.logs import configure_logging
from remediator.router import RouterResult
from remediator.workflow import RemediationWorkflow

logger = logging.getLogger(__name__)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(backend_name: BackendName, model: str, repo_root: Path) -> ModelBackend:
    if backend_name == "openai":
        return OpenAIChatBackend(model=model)
    return ClaudeCodeBackend(working_directory=repo_root)


def _log_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name in {"backend_retry", "backend_attempt_failed", "backend_failover_start"}:
        logger.warning("Backend event %s: %s", name, event)
    else:
        logger.info("Backend event %s: %s", name, event)


def _build_backend(config: RemediatorConfig, repo_root: Path, model: str) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, model, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, model, repo_root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _load_issues(path: Path) -> list[DetectedIssue]:
    """Read issues from a JSON list, or an object with ``issues`` and an optional ``profile``."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid issues file {path}: {exc}") from exc

    profile: str | None = None
    if isinstance(payload, dict):
        profile = payload.get("profile") or None
        payload = payload.get("issues", [])
    if not isinstance(payload, list):
        raise click.ClickException(f"Issues file must contain a list of issues: {path}")

    issues: list[DetectedIssue] = []
    for item in payload:
        if not isinstance(item, dict):
            raise click.ClickException(f"Issue entries must be objects, got: {item!r}")
        issue = DetectedIssue.from_dict(item)
        if profile and not issue.profile_name:
            issue = dataclasses.replace(issue, profile_name=profile)
        issues.append(issue)
    return issues


class ConsolePrompter:
    """Echoes UI events and answers interactions from the terminal."""

    def __init__(self, orchestrator: Orchestrator, *, assume_yes: bool = False) -> None:
        self.orchestrator = orchestrator
        self.assume_yes = assume_yes
        self._pending: set[asyncio.Task[None]] = set()

    def __call__(self, event: UIEvent) -> None:
        payload = event.payload
        if event.kind == "progress":
            click.echo(f"[tool] {payload.get('tool_name')} {payload.get('tool_status')}")
        elif event.kind == "modified_file":
            click.echo(f"[file] {payload.get('path')}")
        elif payload.get("message"):
            click.echo(str(payload["message"]))

        if payload.get("quick_responses") and not payload.get("answered"):
            task = asyncio.get_running_loop().create_task(self._answer(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _answer(self, event: UIEvent) -> None:
        payload = event.payload
        if payload.get("interaction") == "choice":
            choices = payload["quick_responses"]
            for index, choice in enumerate(choices):
                click.echo(f"  {index}: {choice['content']}")
            index = 0
            if not self.assume_yes:
                index = await asyncio.to_thread(
                    click.prompt,
                    "Select an option",
                    type=click.IntRange(0, len(choices) - 1),
                    default=0,
                )
            reply = InteractionReply(id=event.token, choice=index)
        else:
            if event.kind == "modified_file":
                question = f"Apply changes to {payload.get('path')}?"
            else:
                question = "Continue?"
            approved = True
            if not self.assume_yes:
                approved = await asyncio.to_thread(click.confirm, question, default=True)
            tasks = tuple(
                TaskRef(uri=str(item["uri"]), task=str(item["task"]))
                for item in payload.get("tasks", [])
            )
            reply = InteractionReply(
                id=event.token, yes_no=approved, tasks=tasks if approved else ()
            )
        self.orchestrator.resolve_interaction(event.token, reply)


async def _run_session(
    orchestrator: Orchestrator, issues: list[DetectedIssue]
) -> RouterResult | None:
    result = await orchestrator.run(issues)
    await orchestrator.wait_closed()
    return result


@click.group()
@click.version_option(__version__, prog_name="remediate")
def cli() -> None:
    """Remediator CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["openai", "claude"]), default=None)
@click.option("--config", "config_value", default="remediator.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        if config.backend.fallback == backend:
            config.backend.fallback = "claude" if backend == "openai" else "openai"
    save_config(config_path, config)

    click.echo(f"Initialized remediator in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")


@cli.command("run")
@click.argument("issues_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="remediator.toml", show_default=True)
@click.option(
    "--agent/--no-agent", "agent_mode", default=None, help="Review each change as it is made."
)
@click.option("--yes", "assume_yes", is_flag=True, default=False, help="Accept every prompt.")
@click.option(
    "--apply", "apply_changes", is_flag=True, default=False, help="Write changes after the run."
)
def run_command(
    issues_file: Path,
    config_value: str,
    agent_mode: bool | None,
    assume_yes: bool,
    apply_changes: bool,
) -> None:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if agent_mode is not None:
        config.workflow.agent_mode = agent_mode

    log_file = Path(config.logging.file) if config.logging.file else None
    if log_file is not None and not log_file.is_absolute():
        log_file = repo_root / log_file
    try:
        configure_logging(config.logging.level, log_file)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    issues = _load_issues(issues_file)
    workspace_root = (repo_root / config.project.workspace_root).resolve()
    backend = _build_backend(config, repo_root, config.agents.handler_model)
    planner_backend = _build_backend(config, repo_root, config.agents.planner_model)
    workflow = RemediationWorkflow(
        backend,
        config,
        workspace_root=workspace_root,
        planner_backend=planner_backend,
    )
    ui = UIEventStream()
    orchestrator = Orchestrator(
        config,
        workflow,
        model=backend,
        workspace_root=workspace_root,
        ui=ui,
    )
    ui.subscribe(ConsolePrompter(orchestrator, assume_yes=assume_yes))

    try:
        result = asyncio.run(_run_session(orchestrator, issues))
    except SessionRejected as exc:
        raise click.ClickException(str(exc)) from exc

    session = orchestrator.session
    if session.failed:
        raise click.ClickException(f"Remediation failed: {orchestrator.last_error}")

    if apply_changes and not session.agent_mode:
        for path in orchestrator.apply_modified_files():
            click.echo(f"Wrote {path}")

    click.echo(f"Session: {session.id}")
    if result is not None:
        click.echo(f"Planned: {result.planned_tasks}  Assignments: {result.assignments}")
    click.echo(f"Modified files: {len(session.modified_files)}")
    for path in sorted(session.modified_files):
        click.echo(f"  {path}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["openai", "claude"]))
@click.option("--config", "config_value", default="remediator.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
