from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from remediator.backends.base import ChatMessage, ModelBackend, ModelReply

if TYPE_CHECKING:
    from remediator.tools import WorkspaceTools


@dataclass(slots=True)
class HandlerResult:
    name: str
    content: str
    tool_rounds: int = 0


class ModelAgent:
    """Shared prompt and backend plumbing for the planner and the fixers."""

    name: str = "agent"
    description: str = ""
    fallback_prompt: str = "You are an experienced {language} programmer."

    def __init__(
        self,
        backend: ModelBackend,
        *,
        model: str | None = None,
        programming_language: str = "Java",
        migration_hint: str = "",
    ) -> None:
        self.backend = backend
        self.model = model
        self.programming_language = programming_language
        self.migration_hint = migration_hint

    @property
    def system_prompt(self) -> str:
        return self.fallback_prompt.format(
            language=self.programming_language,
            migration_hint=self.migration_hint or "an older technology stack",
        ).strip()

    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelReply:
        return await self.backend.invoke(
            messages,
            enable_tools=enable_tools,
            tools=tools,
            model=self.model,
        )


class Handler(ModelAgent, ABC):
    """A fixer the router can delegate an assignment to.

    Handlers keep a conversation across tool rounds; :meth:`reset` drops it
    together with the assignment inputs once the router moves on.
    """

    name: str = "handler"

    def __init__(self, backend: ModelBackend, **kwargs: Any) -> None:
        super().__init__(backend, **kwargs)
        self.instructions: str | None = None
        self.uris: list[str] = []
        self.conversation: list[ChatMessage] = []

    def assign(self, instructions: str, uris: list[str] | None = None) -> None:
        self.instructions = instructions
        self.uris = list(uris or [])

    def reset(self) -> None:
        self.instructions = None
        self.uris = []
        self.conversation = []

    @abstractmethod
    async def run(
        self,
        *,
        tools: WorkspaceTools | None = None,
        max_tool_rounds: int = 10,
    ) -> HandlerResult:
        """Work the current assignment, using ``tools`` when given."""
