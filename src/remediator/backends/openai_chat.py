from __future__ import annotations

import asyncio
import json
from typing import Any

from openai import OpenAI, OpenAIError

from remediator.backends.base import (
    BackendExecutionError,
    ChatMessage,
    ModelBackend,
    ModelReply,
    ToolCallRequest,
)

OPENAI_ROLES = {"system": "system", "human": "user", "ai": "assistant", "tool": "tool"}


def _field(payload: Any, name: str) -> Any:
    if isinstance(payload, dict):
        return payload.get(name)
    return getattr(payload, name, None)


class OpenAIChatBackend(ModelBackend):
    """Chat Completions backend with native tool calling."""

    def __init__(self, *, model: str = "gpt-4o", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                raise BackendExecutionError(
                    f"OpenAI client could not be created: {exc}",
                    backend="openai",
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def to_openai_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
        rendered: list[dict[str, Any]] = []
        for message in messages:
            item: dict[str, Any] = {
                "role": OPENAI_ROLES[message.role],
                "content": message.content,
            }
            if message.role == "tool":
                item["tool_call_id"] = message.tool_call_id
            if message.role == "ai" and message.tool_calls:
                item["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.args, ensure_ascii=False),
                        },
                    }
                    for call in message.tool_calls
                ]
            rendered.append(item)
        return rendered

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if not isinstance(raw, str) or not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    @classmethod
    def parse_reply(cls, payload: Any) -> ModelReply:
        choices = _field(payload, "choices") or []
        if not choices:
            return ModelReply(content="")
        message = _field(choices[0], "message") or {}
        content = _field(message, "content")
        tool_calls: list[ToolCallRequest] = []
        for raw_call in _field(message, "tool_calls") or []:
            function = _field(raw_call, "function") or {}
            name = _field(function, "name")
            if not isinstance(name, str) or not name:
                continue
            tool_calls.append(
                ToolCallRequest(
                    id=str(_field(raw_call, "id") or name),
                    name=name,
                    args=cls._parse_arguments(_field(function, "arguments")),
                )
            )
        return ModelReply(
            content=content if isinstance(content, str) else "",
            tool_calls=tool_calls,
        )

    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool = False,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelReply:
        client = self._get_client()
        request: dict[str, Any] = {
            "model": model.strip() if model and model.strip() else self.model,
            "messages": self.to_openai_messages(messages),
        }
        if enable_tools and tools:
            request["tools"] = tools

        def _request() -> Any:
            return client.chat.completions.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"OpenAI request failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc

        return self.parse_reply(payload)
