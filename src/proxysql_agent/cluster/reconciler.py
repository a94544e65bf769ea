"""
Membership reconciliation for primary-role (core) members.

Keeps `proxysql_servers` in step with the pods the orchestration platform
reports:

    pod observed (self, not yet registered) ─┐
    pod Pending -> Running ──────────────────┼─► join:  drop placeholder row
                                             │          insert own row (primary)
                                             │          load to runtime (6 steps)
    pod Running -> Failed ───────────────────┴─► leave: delete row (primary)
                                                        load to runtime (6 steps)

Events arrive on an internal queue and are handled one at a time by a single
dispatcher task. Handler failures are logged and never stop the dispatcher.
"""

from __future__ import annotations

import asyncio
import logging

from proxysql_agent.core.errors import CommandError
from proxysql_agent.core.types import (
    Member,
    MemberObserved,
    MemberPhase,
    MembershipEvent,
    MemberTransitioned,
)
from proxysql_agent.observability.tracing import traced
from proxysql_agent.proxysql import commands
from proxysql_agent.proxysql.state import ControlPlane

logger = logging.getLogger(__name__)


class MembershipReconciler:
    """
    Turns membership events into admin statements.

    Usage:
        reconciler = MembershipReconciler(plane, identity="proxysql-core-0", port=6032)
        dispatcher = asyncio.create_task(reconciler.run())

        feed = MembershipFeed(settings, sink=reconciler.submit)
        await feed.sync(timeout=30)
    """

    def __init__(self, plane: ControlPlane, identity: str, port: int):
        self._plane = plane
        self.identity = identity
        self.port = port
        self._queue: asyncio.Queue[MembershipEvent] = asyncio.Queue()
        self.processed = 0
        self.failed = 0

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    def submit(self, event: MembershipEvent) -> None:
        """Queue an event for the dispatcher; never blocks."""
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def run(self) -> None:
        """Consume queued events until cancelled."""
        logger.info("Membership dispatcher started", extra={"extra_fields": {"identity": self.identity}})
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def handle(self, event: MembershipEvent) -> None:
        """Dispatch one event; failures end at the log."""
        try:
            if isinstance(event, MemberObserved):
                await self.on_member_observed(event.member)
            else:
                await self.on_member_transition(event.old, event.new)
        except CommandError as e:
            self.failed += 1
            logger.error(f"Reconciliation failed: {e}", extra={"extra_fields": {"command": e.command}})
        except Exception as e:
            self.failed += 1
            logger.exception(f"Unexpected error handling {type(event).__name__}: {e}")
        else:
            self.processed += 1

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def on_member_observed(self, member: Member) -> None:
        """
        A member became known to the feed.

        Only the member itself registers: peers observing it do nothing, so
        two members never race for the placeholder removal.
        """
        if member.name != self.identity:
            return
        if not member.address:
            logger.debug(f"Member {member.name} has no address yet, waiting for it to start")
            return

        count = await self._plane.aquery_scalar(commands.count_server(member.address))
        if count is None:
            # Skipped: shutdown began.
            return
        if count > 0:
            logger.debug(f"Member {member.name} already registered at {member.address}")
            return

        await self.join(member)

    async def on_member_transition(self, old: Member, new: Member) -> None:
        if old.phase == MemberPhase.PENDING and new.phase == MemberPhase.RUNNING:
            logger.info(f"Member {new.name} started", extra={"extra_fields": {"address": new.address}})
            await self.join(new)
        elif old.phase == MemberPhase.RUNNING and new.phase == MemberPhase.FAILED:
            logger.info(f"Member {old.name} failed", extra={"extra_fields": {"address": old.address}})
            await self.leave(old)

    # ------------------------------------------------------------------
    # Procedures
    # ------------------------------------------------------------------

    @traced("reconcile.join")
    async def join(self, member: Member) -> bool:
        """
        Register `member` with the cluster.

        Returns False if shutdown interrupted the procedure.

        Raises:
            CommandError: on the first failing statement
        """
        batch = [commands.delete_placeholder()]
        if member.is_primary:
            batch.append(commands.insert_server(member.topology_row(self.port)))
        batch.extend(commands.LOAD_TO_RUNTIME)

        completed = await self._run_batch(batch)
        if completed:
            logger.info(
                f"Added member {member.name} to cluster",
                extra={"extra_fields": {"address": member.address, "role": member.role.value}},
            )
        return completed

    @traced("reconcile.leave")
    async def leave(self, member: Member) -> bool:
        """
        Remove `member` from the cluster.

        Returns False if shutdown interrupted the procedure.

        Raises:
            CommandError: on the first failing statement
        """
        batch = []
        if member.is_primary:
            batch.append(commands.delete_server(member.address))
        batch.extend(commands.LOAD_TO_RUNTIME)

        completed = await self._run_batch(batch)
        if completed:
            logger.info(
                f"Removed member {member.name} from cluster",
                extra={"extra_fields": {"address": member.address, "role": member.role.value}},
            )
        return completed

    async def _run_batch(self, batch: list[str]) -> bool:
        # The phase is checked before every statement, not once per batch.
        for statement in batch:
            if not await self._plane.aexecute(statement):
                logger.info(
                    "Shutdown began, abandoning reconciliation",
                    extra={"extra_fields": {"next_command": statement}},
                )
                return False
        logger.debug("Commands ran: " + "; ".join(batch))
        return True
