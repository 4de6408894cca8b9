import asyncio
from pathlib import Path
from typing import Any

import pytest

from remediator.backends import RetryPolicy
from remediator.backends.base import (
    BackendExecutionError,
    ChatMessage,
    ModelBackend,
    ModelReply,
    ToolCallRequest,
    split_system_prompt,
)
from remediator.backends.claude import ClaudeCodeBackend
from remediator.backends.openai_chat import OpenAIChatBackend
from remediator.backends.resilient import ResilientBackend


class AlwaysFailBackend(ModelBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool = False,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelReply:
        _ = messages, enable_tools, tools, model
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)


class SuccessBackend(ModelBackend):
    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool = False,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelReply:
        _ = messages, enable_tools, tools, model
        return ModelReply(content="ok")


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("fix imports", model="claude-sonnet")

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[-2:] == ["--model", "claude-sonnet"]


def test_claude_renders_multi_turn_conversation() -> None:
    rendered = ClaudeCodeBackend.render_conversation(
        [
            ChatMessage(role="human", content="Here are the notes"),
            ChatMessage(role="ai", content="DONE"),
        ]
    )

    assert "User:\nHere are the notes" in rendered
    assert "Assistant:\nDONE" in rendered


def test_split_system_prompt_separates_system_messages() -> None:
    system, rest = split_system_prompt(
        [
            ChatMessage(role="system", content="be careful"),
            ChatMessage(role="human", content="fix it"),
        ]
    )

    assert system == "be careful"
    assert [message.content for message in rest] == ["fix it"]


def test_claude_backend_collects_stream_json(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"assistant\",\"message\":"
                    b"{\"content\":[{\"text\":\"Updated \"}]}}\n",
                    b"{\"type\":\"assistant\",\"message\":{\"content\":\"imports\"}}\n",
                    b"{\"type\":\"result\",\"result\":\"Updated imports\"}\n",
                ]
            )
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return 0

    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["env"] = kwargs.get("env", {})
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = ClaudeCodeBackend()
    reply = asyncio.run(
        backend.invoke(
            [
                ChatMessage(role="system", content="system"),
                ChatMessage(role="human", content="fix it"),
            ]
        )
    )

    assert reply.content == "Updated imports"
    assert captured["args"][2] == "fix it"
    assert "CLAUDE_MD" in captured["env"]


def test_claude_backend_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeStdout:
        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            raise StopAsyncIteration

    class FakeStderr:
        async def read(self) -> bytes:
            return b"not logged in"

    class FakeProcess:
        stdout = FakeStdout()
        stderr = FakeStderr()

        async def wait(self) -> int:
            return 2

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(ClaudeCodeBackend().invoke([ChatMessage(role="human", content="x")]))

    assert excinfo.value.exit_code == 2
    assert "not logged in" in str(excinfo.value)


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []

    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    reply = asyncio.run(backend.invoke([ChatMessage(role="human", content="user")]))

    assert reply.content == "ok"
    event_names = [event["event"] for event in events]
    assert "backend_failover_start" in event_names
    assert "backend_retry" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    reply = asyncio.run(backend.invoke([ChatMessage(role="human", content="user")]))

    assert reply.content == "ok"
    assert primary.calls == 1


def test_resilient_backend_raises_when_all_attempts_fail() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="fallback",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        asyncio.run(backend.invoke([ChatMessage(role="human", content="user")]))


def test_openai_backend_sends_tools_and_parses_tool_calls() -> None:
    captured: dict[str, Any] = {}

    class FakeCompletions:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call-1",
                                    "function": {
                                        "name": "read_file",
                                        "arguments": "{\"path\": \"src/App.java\"}",
                                    },
                                }
                            ],
                        }
                    }
                ]
            }

    class FakeChat:
        def __init__(self) -> None:
            self.completions = FakeCompletions()

    class FakeClient:
        def __init__(self) -> None:
            self.chat = FakeChat()

    backend = OpenAIChatBackend(model="gpt-4o", client=FakeClient())
    schema = {"type": "function", "function": {"name": "read_file"}}
    reply = asyncio.run(
        backend.invoke(
            [
                ChatMessage(role="system", content="system"),
                ChatMessage(role="human", content="fix it"),
            ],
            enable_tools=True,
            tools=[schema],
        )
    )

    assert captured["model"] == "gpt-4o"
    assert captured["tools"] == [schema]
    assert [item["role"] for item in captured["messages"]] == ["system", "user"]
    assert reply.content == ""
    assert reply.tool_calls == [
        ToolCallRequest(id="call-1", name="read_file", args={"path": "src/App.java"})
    ]


def test_openai_backend_omits_tools_when_disabled() -> None:
    captured: dict[str, Any] = {}

    class FakeCompletions:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"choices": [{"message": {"content": "* Name\ngeneralFix"}}]}

    class FakeClient:
        def __init__(self) -> None:
            self.chat = type("Chat", (), {"completions": FakeCompletions()})()

    backend = OpenAIChatBackend(client=FakeClient())
    reply = asyncio.run(
        backend.invoke(
            [ChatMessage(role="human", content="plan")],
            enable_tools=False,
            tools=[{"type": "function"}],
            model="gpt-4o-mini",
        )
    )

    assert "tools" not in captured
    assert captured["model"] == "gpt-4o-mini"
    assert reply.content == "* Name\ngeneralFix"


def test_openai_messages_carry_tool_call_ids() -> None:
    rendered = OpenAIChatBackend.to_openai_messages(
        [
            ChatMessage(
                role="ai",
                content="",
                tool_calls=[ToolCallRequest(id="call-1", name="read_file", args={"path": "a"})],
            ),
            ChatMessage(role="tool", content="contents", tool_call_id="call-1"),
        ]
    )

    assert rendered[0]["role"] == "assistant"
    assert rendered[0]["tool_calls"][0]["function"]["name"] == "read_file"
    assert rendered[1] == {"role": "tool", "content": "contents", "tool_call_id": "call-1"}
