import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from app.core.clock import Clock
from app.core.errors import ConcurrentModification, PublicationError
from app.database.assignment_repo import AssignmentRepo
from app.database.roster_repo import RosterRepo
from app.schemas.assignment import Assignment
from app.services.publisher_service import NotificationDispatcher, assignment_event
from app.services.stats_aggregator import StatsAggregator

logger = logging.getLogger("assignments.scheduler")


class SchedulePublisher:
    """
    Promotes due scheduled assignments to active.

    Each item is claimed (scheduled -> publishing) before any side effect, so
    two overlapping runs never publish the same assignment twice. A claim
    older than `lease` is considered abandoned and can be taken again.
    Failures are stored on the item as publication_error and never retried.
    """

    def __init__(
        self,
        repo: AssignmentRepo,
        roster: RosterRepo,
        aggregator: StatsAggregator,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        interval: float = 60.0,
        lease: timedelta = timedelta(minutes=5),
    ):
        self.repo = repo
        self.roster = roster
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.clock = clock
        self.interval = interval
        self.lease = lease
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> List[str]:
        now = self.clock.now()
        stale_before = now - self.lease
        due = await self.repo.find_due_scheduled(now, stale_before)
        if not due:
            return []

        logger.debug("%d assignment da pubblicare", len(due))
        published: List[str] = []
        for candidate in due:
            claimed = await self.repo.claim_for_publication(candidate.assignmentId, now, stale_before)
            if claimed is None:
                logger.debug("Assignment %s già preso da un'altra esecuzione", candidate.assignmentId)
                continue
            claimed_at = claimed.claimedAt
            try:
                assignment = await self._publish(claimed, now)
            except Exception as e:
                logger.exception("Pubblicazione fallita per %s", claimed.assignmentId)
                await self._record_failure(claimed.assignmentId, claimed_at, e)
                continue
            published.append(assignment.assignmentId)
            await self._fan_out(assignment, now)

        if published:
            logger.info("Pubblicati %d assignment programmati", len(published))
        return published

    async def _publish(self, assignment: Assignment, now: datetime) -> Assignment:
        expected = assignment.version
        if assignment.isGeneral:
            assignment.assignedTo = await self.roster.list_recipient_ids()
        if not assignment.assignedTo:
            raise PublicationError("No recipients available at publication time")

        assignment.status = "active"
        assignment.publishedAt = now
        assignment.claimedAt = None
        assignment.publicationError = None
        if not await self.repo.save(assignment, expected):
            raise ConcurrentModification(assignment.assignmentId)

        await self.aggregator.recompute_many(assignment.assignedTo)
        return assignment

    async def _record_failure(self, assignment_id: str, claimed_at: datetime, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        try:
            recorded = await self.repo.set_publication_error(assignment_id, message, claimed_at)
        except Exception:
            logger.exception("Impossibile salvare l'errore di pubblicazione per %s", assignment_id)
            return
        if not recorded:
            logger.warning("Assignment %s ripreso da un'altra esecuzione, errore non salvato", assignment_id)

    async def _fan_out(self, assignment: Assignment, now: datetime) -> None:
        try:
            await self.dispatcher.notify(
                assignment.assignedTo, assignment_event("assignment.published", assignment, now)
            )
        except Exception:
            logger.exception("Notifiche di pubblicazione non inviate per %s", assignment.assignmentId)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Errore nel ciclo di pubblicazione")
            # attesa dell'intervallo o uscita se stop_event settato
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler avviato (intervallo %ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Scheduler fermato")
