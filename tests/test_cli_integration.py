import json
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from remediator.backends.base import ChatMessage, ModelBackend, ModelReply, ToolCallRequest
from remediator.cli import cli
from remediator.config import load_config, save_config

NEW_SOURCE = "import jakarta.inject.Inject;\n"


class FakeBackend(ModelBackend):
    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool = False,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelReply:
        _ = tools, model
        if not enable_tools:
            return ModelReply(content="* Name\ngeneralFix\n* Instructions\nReplace javax imports")
        if any(message.role == "tool" for message in messages):
            return ModelReply(content="DONE")
        return ModelReply(
            content="",
            tool_calls=[
                ToolCallRequest(
                    id="call-1",
                    name="write_file",
                    args={"path": "src/App.java", "content": NEW_SOURCE},
                )
            ],
        )


def _prepare_repo(tmp_path: Path) -> tuple[Path, Path]:
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    source = repo / "src" / "App.java"
    source.write_text("import javax.inject.Inject;\n", encoding="utf-8")
    issues_file = repo / "issues.json"
    issues_file.write_text(
        json.dumps(
            {
                "profile": "quarkus",
                "issues": [
                    {
                        "uri": source.as_uri(),
                        "message": "javax.inject has been replaced by jakarta.inject",
                        "ruleId": "javax-to-jakarta-00010",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    return repo, issues_file


def _fast_workflow(config_path: Path) -> None:
    config = load_config(config_path)
    config.workflow.settle_seconds = 0.0
    config.workflow.drain_interval_seconds = 0.01
    save_config(config_path, config)


def test_init_writes_config_and_switches_backend(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "claude"])

    assert init_result.exit_code == 0
    assert "Backend: claude (fallback openai)" in init_result.output
    config = load_config(tmp_path / "remediator.toml")
    assert config.backend.primary == "claude"
    assert config.backend.fallback == "openai"

    backend_result = runner.invoke(cli, ["backend", "openai"])

    assert backend_result.exit_code == 0
    assert load_config(tmp_path / "remediator.toml").backend.primary == "openai"


def test_cli_run_collects_and_applies_changes(tmp_path: Path, monkeypatch) -> None:
    repo, issues_file = _prepare_repo(tmp_path)
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        "remediator.cli._build_backend", lambda config, repo_root, model: FakeBackend()
    )
    runner = CliRunner()

    assert runner.invoke(cli, ["init"]).exit_code == 0
    _fast_workflow(repo / "remediator.toml")

    run_result = runner.invoke(cli, ["run", str(issues_file), "--no-agent", "--apply"])

    assert run_result.exit_code == 0, run_result.output
    assert "Session:" in run_result.output
    assert "Planned: 1  Assignments: 1" in run_result.output
    assert "Modified files: 1" in run_result.output
    assert "src/App.java" in run_result.output
    assert (repo / "src" / "App.java").read_text(encoding="utf-8") == NEW_SOURCE


def test_cli_agent_run_accepts_changes_with_yes(tmp_path: Path, monkeypatch) -> None:
    repo, issues_file = _prepare_repo(tmp_path)
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        "remediator.cli._build_backend", lambda config, repo_root, model: FakeBackend()
    )
    runner = CliRunner()

    assert runner.invoke(cli, ["init"]).exit_code == 0
    _fast_workflow(repo / "remediator.toml")

    run_result = runner.invoke(cli, ["run", str(issues_file), "--agent", "--yes"])

    assert run_result.exit_code == 0, run_result.output
    assert "[file] src/App.java" in run_result.output
    assert "No further issues found." in run_result.output
    assert (repo / "src" / "App.java").read_text(encoding="utf-8") == NEW_SOURCE


def test_cli_run_rejects_issues_without_profile(tmp_path: Path, monkeypatch) -> None:
    repo, _ = _prepare_repo(tmp_path)
    issues_file = repo / "bare.json"
    issues_file.write_text(json.dumps([{"uri": "a.java", "message": "x"}]), encoding="utf-8")
    monkeypatch.chdir(repo)
    monkeypatch.setattr(
        "remediator.cli._build_backend", lambda config, repo_root, model: FakeBackend()
    )

    result = CliRunner().invoke(cli, ["run", str(issues_file)])

    assert result.exit_code != 0
    assert "No active analysis profile" in result.output


def test_cli_run_reports_invalid_issues_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    issues_file = tmp_path / "issues.json"
    issues_file.write_text("{not json", encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", str(issues_file)])

    assert result.exit_code != 0
    assert "Invalid issues file" in result.output
