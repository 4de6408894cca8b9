from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from remediator.backends.base import ChatMessage
from remediator.handlers.base import Handler, HandlerResult

if TYPE_CHECKING:
    from remediator.tools import WorkspaceTools

logger = logging.getLogger(__name__)


class GeneralFixHandler(Handler):
    name = "generalFix"
    description = "Fixes general issues, use when no other specialized agent is available"
    fallback_prompt = """
You are an experienced {language} programmer, specializing in migrating source code from {migration_hint}.
We updated a source code file to migrate the source code. There may be more changes needed elsewhere in the project.
You are given notes detailing additional changes that need to happen.
Carefully analyze the changes and understand what files in the project need to be changed.
The notes may contain details about changes already made. Please do not act on any of the changes already made. Assume they are correct and only focus on any additional changes needed.
You have access to a set of tools to search for files, read a file and write to a file.
Work on one file at a time. Completely address changes in one file before moving onto to next file.
Respond with DONE when you're done addressing all the changes or there are no additional changes.
""".strip()

    def seed(self) -> None:
        if self.conversation:
            return
        notes = f"Here are the notes:\n{self.instructions or ''}"
        if self.uris:
            notes += "\nThe above issues were found in following files:\n" + "\n".join(self.uris)
        self.conversation.append(ChatMessage(role="system", content=self.system_prompt))
        self.conversation.append(ChatMessage(role="human", content=notes))

    async def run(
        self,
        *,
        tools: WorkspaceTools | None = None,
        max_tool_rounds: int = 10,
    ) -> HandlerResult:
        self.seed()
        schemas = tools.schemas() if tools is not None else None
        rounds = 0
        while True:
            reply = await self.invoke(self.conversation, enable_tools=True, tools=schemas)
            self.conversation.append(reply.as_message())
            if not reply.tool_calls or tools is None:
                break
            if rounds >= max_tool_rounds:
                logger.warning(
                    "%s reached the tool round limit (%d); stopping", self.name, max_tool_rounds
                )
                break
            rounds += 1
            for call in reply.tool_calls:
                output = await tools.execute(call)
                self.conversation.append(
                    ChatMessage(role="tool", content=output, tool_call_id=call.id)
                )

        return HandlerResult(
            name=self.name,
            content=reply.content,
            tool_rounds=rounds,
        )
