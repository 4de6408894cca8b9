from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from remediator.backends.base import ChatMessage
from remediator.handlers.base import ModelAgent

if TYPE_CHECKING:
    from remediator.router import Task

logger = logging.getLogger(__name__)

NAME_HEADER = re.compile(r"^[*#]* *name", re.IGNORECASE)
INSTRUCTIONS_HEADER = re.compile(r"^[*#]* *instructions", re.IGNORECASE)


@dataclass(slots=True)
class NominatedAssignment:
    handler_name: str
    instructions: str = ""


def _section(line: str) -> str | None:
    if NAME_HEADER.match(line):
        return "name"
    if INSTRUCTIONS_HEADER.match(line):
        return "instructions"
    return None


def parse_planner_response(content: str) -> list[NominatedAssignment]:
    """Split a planner reply into ``Name`` / ``Instructions`` sections."""
    assignments: list[NominatedAssignment] = []
    if not content:
        return assignments

    state: str | None = None
    buffer: list[str] = []
    for raw_line in content.split("\n"):
        line = raw_line.strip()
        next_state = _section(line)
        if next_state is None:
            buffer.append(line)
            continue
        if state is not None and buffer:
            text = "\n".join(buffer).strip()
            if state == "name":
                assignments.append(NominatedAssignment(handler_name=text))
            elif assignments:
                assignments[-1].instructions = text
        buffer = []
        state = next_state

    if state == "instructions" and buffer and assignments:
        assignments[-1].instructions = "\n".join(buffer).strip()
    return assignments


class Planner(ModelAgent):
    name = "planner"
    description = "Routes issues to the most suitable handler"
    fallback_prompt = (
        "You are an experienced architect overlooking migration of a {language} "
        "application from {migration_hint}."
    )

    @staticmethod
    def build_request(
        task: Task,
        roster: Sequence[tuple[str, str]],
        background: str,
    ) -> str:
        descriptions = "".join(f"\n-\tName: {name}\tDescription: {text}" for name, text in roster)
        scope = ""
        if task.uri:
            scope = (
                f"** File in which issues were found: {task.uri}.\n"
                "Make sure your instructions are specific to fixing issues in this file."
            )
        issues = "\n - ".join(task.issues)
        return f"""You are a highly experienced Software Architect, known for your keen analytical skills and deep understanding of various technical domains.
Your expertise lies in efficiently delegating tasks to the most appropriate specialist to ensure optimal problem resolution.
You have a roster of specialized agents at your disposal, each with unique capabilities and areas of focus.
For context, you are also given background information on changes we made so far to migrate the application.

**Here is the list of available agents, along with their descriptions:**
{descriptions}

{scope}

**Here is the list of issues that need to be solved:**
- {issues}

**Previous context about migration**
{background}

Your task is to carefully analyze each issue in the list and determine the most suitable agent to address it.
You will output the **name of the selected agent** on a new line followed by **specific, clear instructions** tailored to that agent's expertise on the next line, each with a section header explained in the format below.
The instructions should detail how each agent should approach and solve the problem.
**Make sure** your instructions take into account previous changes we made for migrating the project. They should align with the overall migration effort.
Consider the nuances of each issue and match it precisely with the described capabilities of the agents.
If no specialized agent is a perfect fit, direct the issue to the generalist agent with comprehensive instructions.
Your response **must** be in following format:

* Name
<agent_name_here_on_newline>
* Instructions
<detailed_instructions_here_on_newline>"""

    async def plan(
        self,
        task: Task,
        roster: Sequence[tuple[str, str]],
        background: str = "",
    ) -> list[NominatedAssignment]:
        if not task.issues:
            return []
        messages = [
            ChatMessage(role="system", content=self.system_prompt),
            ChatMessage(role="human", content=self.build_request(task, roster, background)),
        ]
        reply = await self.invoke(messages, enable_tools=False)
        assignments = parse_planner_response(reply.content)
        logger.info(
            "Planner nominated %d assignment(s) for %s",
            len(assignments),
            task.uri or "additional context",
        )
        return assignments
