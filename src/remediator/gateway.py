"""Registry of human-input requests awaiting an answer.

A producer (the router, a dispatch handler) registers an id, publishes a
question carrying that id, and awaits the returned :class:`PendingInteraction`.
The UI answers through :meth:`InteractionGateway.resolve`. Entries are removed
before they are settled, so an id can be answered at most once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from remediator.events import InteractionReply, QueuedEvent

logger = logging.getLogger(__name__)


class InteractionError(RuntimeError):
    """Raised on misuse of the interaction registry."""


class InvalidInteractionResponse(InteractionError):
    """Raised into a waiter whose answer had neither a choice nor a yes/no."""


class InteractionCancelled(InteractionError):
    """Raised into a waiter whose gateway was disposed."""


@dataclass(slots=True)
class PendingInteraction:
    id: str
    future: asyncio.Future[InteractionReply]

    @property
    def settled(self) -> bool:
        return self.future.done()

    def resolve(self, reply: InteractionReply) -> None:
        if not self.future.done():
            self.future.set_result(reply)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)

    async def wait(self) -> InteractionReply:
        return await self.future


class InteractionGateway:
    def __init__(self) -> None:
        self._pending: dict[str, PendingInteraction] = {}
        self._disposed = False

    def __contains__(self, interaction_id: object) -> bool:
        return interaction_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def ids(self) -> list[str]:
        return list(self._pending)

    def register(self, interaction_id: str) -> PendingInteraction:
        if self._disposed:
            raise InteractionError("Interaction gateway is disposed.")
        if interaction_id in self._pending:
            raise InteractionError(f"Interaction already pending: {interaction_id}")
        loop = asyncio.get_running_loop()
        pending = PendingInteraction(id=interaction_id, future=loop.create_future())
        self._pending[interaction_id] = pending
        logger.debug("Registered interaction %s (%d pending)", interaction_id, len(self._pending))
        return pending

    def resolve(self, interaction_id: str, reply: InteractionReply) -> bool:
        pending = self._pending.pop(interaction_id, None)
        if pending is None:
            logger.error(
                "No pending interaction for id %s; known ids: %s",
                interaction_id,
                list(self._pending),
            )
            return False
        if not reply.is_valid:
            logger.warning("Invalid response for interaction %s", interaction_id)
            pending.reject(InvalidInteractionResponse("Invalid response from user"))
            return True
        pending.resolve(reply)
        logger.debug("Resolved interaction %s (%d pending)", interaction_id, len(self._pending))
        return True

    def reject(self, interaction_id: str, error: BaseException) -> bool:
        pending = self._pending.pop(interaction_id, None)
        if pending is None:
            logger.error("No pending interaction to reject for id %s", interaction_id)
            return False
        pending.reject(error)
        return True

    def discard(self, interaction_id: str) -> None:
        self._pending.pop(interaction_id, None)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        pending = list(self._pending.values())
        self._pending.clear()
        for item in pending:
            item.reject(InteractionCancelled(f"Interaction {item.id} cancelled by disposal"))
            # Review suspensions have no awaiter; mark the error as retrieved.
            item.future.exception()
        if pending:
            logger.info("Cancelled %d in-flight interaction(s) on disposal", len(pending))


@dataclass(slots=True)
class BatchDecision:
    approved: bool
    issues: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return follow_up_question(len(self.issues))


def follow_up_question(count: int) -> str:
    if count > 1:
        return (
            f"We found {count} issues that we think we can fix. "
            "Would you like me to address them?"
        )
    return "We found an issue that we think we can fix. Would you like me to address it?"


class FollowUpPrompt:
    """Single yes/no question covering every follow-up issue raised while it is open."""

    def __init__(
        self,
        gateway: InteractionGateway,
        emit: Callable[[QueuedEvent], None],
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.gateway = gateway
        self.emit = emit
        self.id_factory = id_factory or (lambda: f"res-{time.time_ns()}")
        self._pending_issues: list[str] = []
        self._outstanding: asyncio.Future[BatchDecision] | None = None

    @property
    def is_open(self) -> bool:
        return self._outstanding is not None

    @property
    def pending_issues(self) -> list[str]:
        return list(self._pending_issues)

    async def submit(self, issue: str) -> BatchDecision:
        self._pending_issues.append(issue)
        if self._outstanding is not None:
            logger.debug(
                "Follow-up prompt already open; batching issue (%d)", len(self._pending_issues)
            )
            return await asyncio.shield(self._outstanding)

        loop = asyncio.get_running_loop()
        outstanding: asyncio.Future[BatchDecision] = loop.create_future()
        self._outstanding = outstanding
        interaction_id = self.id_factory()
        approved = False
        try:
            pending = self.gateway.register(interaction_id)
            self.emit(
                QueuedEvent.interaction(
                    interaction_id,
                    "yesNo",
                    message=follow_up_question(len(self._pending_issues)),
                )
            )
            reply = await pending.wait()
            approved = bool(reply.yes_no)
        except InteractionError as exc:
            logger.info("Follow-up prompt %s ended without approval: %s", interaction_id, exc)
        finally:
            self.gateway.discard(interaction_id)
            decision = BatchDecision(approved=approved, issues=list(self._pending_issues))
            self._pending_issues = []
            self._outstanding = None
            outstanding.set_result(decision)
        return decision
