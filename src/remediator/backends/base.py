from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "human", "ai", "tool"]


class BackendExecutionError(RuntimeError):
    """Raised when a model invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a model invocation exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when a backend process cannot be started or read."""


@dataclass(slots=True)
class ToolCallRequest:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChatMessage:
    role: Role
    content: str
    tool_call_id: str | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


@dataclass(slots=True)
class ModelReply:
    content: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)

    def as_message(self) -> ChatMessage:
        return ChatMessage(role="ai", content=self.content, tool_calls=list(self.tool_calls))


class ModelBackend(ABC):
    @abstractmethod
    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool = False,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelReply:
        """Run one non-streaming completion over ``messages``."""


def split_system_prompt(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    system_parts = [message.content for message in messages if message.role == "system"]
    rest = [message for message in messages if message.role != "system"]
    return "\n\n".join(system_parts), rest
