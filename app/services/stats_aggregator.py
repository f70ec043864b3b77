import asyncio
import logging
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Dict, Iterable

from app.core.clock import Clock
from app.database.assignment_repo import AssignmentFilter, AssignmentRepo
from app.database.stats_repo import StatsRepo
from app.schemas.assignment import VISIBLE_STATUSES
from app.schemas.stats import AdminOverview, RecipientTally, StatsCounters, TeacherStats
from app.services.status_resolver import COMPLETED, OVERDUE, resolve_for

logger = logging.getLogger("assignments.stats")

DUE_SOON_WINDOW = timedelta(hours=24)


def _counters(statuses: Iterable[str]) -> StatsCounters:
    c = StatsCounters()
    for s in statuses:
        c.total += 1
        if s in COMPLETED:
            c.completed += 1
        elif s in OVERDUE:
            c.overdue += 1
        else:
            c.pending += 1
    return c


def _rate(completed: int, total: int) -> float:
    return round(completed / total * 100, 1) if total else 0.0


class StatsAggregator:
    """Derived per-recipient counters. Never patched: every trigger recomputes from scratch."""

    def __init__(self, repo: AssignmentRepo, stats_repo: StatsRepo, clock: Clock):
        self.repo = repo
        self.stats_repo = stats_repo
        self.clock = clock

    async def recompute(self, recipient_id: str) -> TeacherStats:
        now = self.clock.now()
        assignments = await self.repo.find_for_recipient(recipient_id, statuses=VISIBLE_STATUSES)
        counters = _counters(resolve_for(a, recipient_id, now) for a in assignments)
        record = TeacherStats(recipientId=recipient_id, stats=counters, lastUpdated=now)
        await self.stats_repo.upsert(record)
        return record

    async def recompute_many(self, recipient_ids: Iterable[str]) -> None:
        """
        Recompute each distinct recipient once. Failures are logged and do not
        propagate: the cache is derived and the triggering change is already stored.
        """
        distinct = list(dict.fromkeys(recipient_ids))
        if not distinct:
            return
        results = await asyncio.gather(
            *(self.recompute(rid) for rid in distinct), return_exceptions=True
        )
        for rid, r in zip(distinct, results):
            if isinstance(r, Exception):
                logger.error("Aggiornamento statistiche fallito per %s", rid, exc_info=r)

    async def get_or_create(self, recipient_id: str) -> TeacherStats:
        existing = await self.stats_repo.find(recipient_id)
        if existing is not None:
            return existing
        return await self.recompute(recipient_id)

    async def admin_overview(self) -> AdminOverview:
        now = self.clock.now()
        assignments, total = await self.repo.search(AssignmentFilter())

        by_status: Dict[str, int] = Counter(a.status for a in assignments)
        overdue = 0
        due_soon = 0
        per_recipient: Dict[str, list] = defaultdict(list)

        for a in assignments:
            if a.status not in VISIBLE_STATUSES:
                continue
            resolved = [resolve_for(a, rid, now) for rid in a.assignedTo]
            for rid, s in zip(a.assignedTo, resolved):
                per_recipient[rid].append(s)
            if any(s in OVERDUE for s in resolved):
                overdue += 1
            if a.status == "active" and now <= a.dueDate <= now + DUE_SOON_WINDOW:
                due_soon += 1

        recipients = []
        for rid, statuses in per_recipient.items():
            c = _counters(statuses)
            recipients.append(
                RecipientTally(recipientId=rid, **c.model_dump(), completionRate=_rate(c.completed, c.total))
            )
        recipients.sort(key=lambda t: (-t.completionRate, t.recipientId))

        return AdminOverview(
            total=total,
            byStatus=dict(by_status),
            overdue=overdue,
            dueSoon=due_soon,
            completionRate=_rate(by_status.get("completed", 0), total),
            generatedAt=now,
            recipients=recipients,
        )
