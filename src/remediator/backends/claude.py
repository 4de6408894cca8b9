from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from remediator.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    ChatMessage,
    ModelBackend,
    ModelReply,
    split_system_prompt,
)

logger = logging.getLogger(__name__)

ROLE_LABELS = {"human": "User", "ai": "Assistant", "tool": "Tool result"}


class ClaudeCodeBackend(ModelBackend):
    """Runs the ``claude`` CLI in print mode. Tool calls are not surfaced."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, user_prompt: str, model: str | None = None) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def render_conversation(messages: list[ChatMessage]) -> str:
        if len(messages) == 1:
            return messages[0].content
        blocks: list[str] = []
        for message in messages:
            label = ROLE_LABELS.get(message.role, message.role)
            blocks.append(f"{label}:\n{message.content}")
        return "\n\n".join(blocks)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result":
            return ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def invoke(
        self,
        messages: list[ChatMessage],
        *,
        enable_tools: bool = False,
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> ModelReply:
        if enable_tools and tools:
            logger.debug("claude CLI backend ignores %d tool schemas", len(tools))
        system_prompt, conversation = split_system_prompt(messages)
        user_prompt = self.render_conversation(conversation)

        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()

            env = os.environ.copy()
            env["CLAUDE_MD"] = temp_file.name

            command = self.build_command(user_prompt, model=model)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory) if self.working_directory else None,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"Claude binary not found: {self.binary}",
                    backend="claude",
                    retriable=False,
                ) from exc

            if process.stdout is None:
                raise BackendProcessError(
                    "Claude backend did not expose stdout.", backend="claude", retriable=False
                )

            chunks: list[str] = []
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    chunks.append(line)
                    continue

                if isinstance(event, dict):
                    content = self._extract_content(event)
                    if content:
                        chunks.append(content)

            if parse_buffer:
                chunks.append(parse_buffer)

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                raise BackendExecutionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend="claude",
                    exit_code=return_code,
                    retriable=True,
                )

        return ModelReply(content="".join(chunks).strip())
