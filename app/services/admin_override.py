import logging
from typing import List, Optional, Sequence

from app.core.clock import Clock
from app.core.errors import AuthorizationError, NotFoundError, StateConflict, ValidationError
from app.database.assignment_repo import AssignmentRepo
from app.database.roster_repo import RosterRepo
from app.schemas.assignment import (
    VISIBLE_STATUSES,
    Assignment,
    AssignmentUpdate,
    ForkRequest,
    RecipientStatusRow,
)
from app.schemas.context import UserContext
from app.services.assignment_service import create_assignment_id
from app.services.dates import check_dates
from app.services.publisher_service import NotificationDispatcher, assignment_event
from app.services.response_ledger import ResponseLedger
from app.services.stats_aggregator import StatsAggregator
from app.services.status_resolver import status_rows

logger = logging.getLogger("assignments.admin")

COARSE_TARGETS = ("active", "completed", "cancelled")
# stati che non possono passare direttamente a completed
NOT_COMPLETABLE = ("scheduled", "publishing", "publication_error", "cancelled")


def _require_admin(user: UserContext, action: str) -> None:
    if not user.is_admin:
        raise AuthorizationError(f"Only administrators can {action}")


class AdminOverrideEngine:
    """Out-of-band state changes: completion, direct status injection, fork, content edits."""

    def __init__(
        self,
        repo: AssignmentRepo,
        roster: RosterRepo,
        ledger: ResponseLedger,
        aggregator: StatsAggregator,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        retries: int = 5,
    ):
        self.repo = repo
        self.roster = roster
        self.ledger = ledger
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.clock = clock
        self.retries = retries

    async def _notify(self, recipient_ids: Sequence[str], payload: dict) -> None:
        if not recipient_ids:
            return
        try:
            await self.dispatcher.notify(list(recipient_ids), payload)
        except Exception:
            logger.exception("Notifica %s non inviata", payload.get("event"))

    async def mark_completed(self, assignment_id: str, user: UserContext) -> Assignment:
        now = self.clock.now()

        def apply(a: Assignment):
            if not user.is_admin and not a.is_assigned(user.user_id):
                raise AuthorizationError("You are not allowed to modify this assignment")
            if not user.is_admin and a.status not in VISIBLE_STATUSES:
                raise AuthorizationError("You are not assigned to this assignment")
            if a.status in NOT_COMPLETABLE:
                raise StateConflict(f"Assignment cannot be completed from status {a.status}")
            if a.status == "completed":
                raise StateConflict("Assignment is already completed")
            if now > a.closeDate:
                raise StateConflict("Assignment cannot be completed after its close date")
            a.status = "completed"
            a.completedAt = now
            a.completedBy = user.user_id
            a.touch(now, user.user_id)

        assignment = await self.repo.mutate(assignment_id, apply, self.retries)
        logger.info("Assignment %s completato da %s", assignment_id, user.user_id)

        await self.aggregator.recompute_many(assignment.assignedTo)
        await self._notify(
            assignment.assignedTo,
            assignment_event("assignment.completed", assignment, now, completedBy=user.user_id),
        )
        return assignment

    async def bulk_mark_completed(self, assignment_ids: Sequence[str], user: UserContext) -> int:
        _require_admin(user, "complete assignments in bulk")
        if not assignment_ids:
            raise ValidationError("At least one assignment id is required")

        now = self.clock.now()
        changed = await self.repo.complete_many(assignment_ids, now, user.user_id)
        logger.info("%d/%d assignment completati in blocco", len(changed), len(set(assignment_ids)))

        affected = {rid for a in changed for rid in a.assignedTo}
        await self.aggregator.recompute_many(sorted(affected))
        for a in changed:
            await self._notify(
                a.assignedTo, assignment_event("assignment.completed", a, now, completedBy=user.user_id)
            )
        return len(changed)

    async def fork(self, assignment_id: str, req: ForkRequest, user: UserContext) -> Assignment:
        """
        Split one recipient out of a general assignment into an independent one.
        The recipient's existing response moves with them.
        """
        _require_admin(user, "fork assignments")
        now = self.clock.now()
        rid = req.recipientId

        source = await self.repo.find_one(assignment_id)
        if source is None:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        if not source.isGeneral:
            raise StateConflict("Only general assignments can be forked")
        if not source.is_assigned(rid):
            raise StateConflict(f"Recipient {rid} is not assigned to {assignment_id}")

        due = req.dueDate or source.dueDate
        close = req.closeDate or source.closeDate
        check_dates(due, close)

        previous_response = source.response_for(rid)
        forked = Assignment(
            assignmentId=create_assignment_id(),
            title=req.title or source.title,
            description=req.description or source.description,
            attachments=list(source.attachments),
            dueDate=due,
            closeDate=close,
            isGeneral=False,
            assignedTo=[rid],
            status="active",
            originalAssignmentId=assignment_id,
            createdAt=now,
            createdBy=source.createdBy,
            publishedAt=now,
            updatedAt=now,
            updatedBy=user.user_id,
            responses=[previous_response] if previous_response else [],
        )
        await self.repo.create(forked)

        def detach(a: Assignment):
            if not a.is_assigned(rid):
                raise StateConflict(f"Recipient {rid} is not assigned to {assignment_id}")
            a.assignedTo = [x for x in a.assignedTo if x != rid]
            a.drop_response(rid)
            a.touch(now, user.user_id)

        try:
            await self.repo.mutate(assignment_id, detach, self.retries)
        except Exception:
            # the split did not happen, do not leave an orphan copy behind
            await self.repo.delete(forked.assignmentId)
            raise

        logger.info("Assignment %s separato per %s in %s", assignment_id, rid, forked.assignmentId)
        await self.aggregator.recompute_many([rid])
        await self._notify([rid], assignment_event("assignment.forked", forked, now))
        return forked

    async def update_content(self, assignment_id: str, fields: AssignmentUpdate, user: UserContext) -> Assignment:
        _require_admin(user, "update assignments")
        # null esplicito = campo invariato, come per i campi non inviati
        changes = {k: v for k, v in fields.model_dump(exclude_unset=True).items() if v is not None}
        if not changes:
            raise ValidationError("No fields to update")
        if "assignedTo" in changes:
            recipients = list(dict.fromkeys(changes["assignedTo"]))
            known = await self.roster.existing_ids(recipients)
            unknown = [r for r in recipients if r not in known]
            if unknown:
                raise ValidationError(f"Unknown recipients: {', '.join(unknown)}")
            changes["assignedTo"] = recipients

        now = self.clock.now()
        previous: List[str] = []

        def apply(a: Assignment):
            previous[:] = a.assignedTo
            due = changes.get("dueDate") or a.dueDate
            close = changes.get("closeDate") or a.closeDate
            publish = a.publishDate if a.status == "scheduled" else None
            check_dates(due, close, publish)
            if "assignedTo" in changes and not changes["assignedTo"] and not a.isGeneral:
                raise ValidationError("An individual assignment needs at least one recipient")
            for key, value in changes.items():
                setattr(a, key, value)
            a.touch(now, user.user_id)

        assignment = await self.repo.mutate(assignment_id, apply, self.retries)
        await self.aggregator.recompute_many(list(previous) + assignment.assignedTo)
        return assignment

    async def set_recipient_status(
        self, assignment_id: str, recipient_id: str, target: str, user: UserContext
    ) -> RecipientStatusRow:
        _require_admin(user, "set recipient status")
        now = self.clock.now()
        assignment = await self.ledger.record_direct(assignment_id, recipient_id, target, now)
        logger.info("Stato di %s su %s impostato a %s da %s", recipient_id, assignment_id, target, user.user_id)
        return next(r for r in status_rows(assignment, now) if r.recipientId == recipient_id)

    async def set_coarse_status(self, assignment_id: str, status: str, user: UserContext) -> Assignment:
        """Administrator-level status; recipients' responses are not touched."""
        _require_admin(user, "change assignment status")
        if status not in COARSE_TARGETS:
            raise ValidationError(f"Status must be one of {', '.join(COARSE_TARGETS)}")
        now = self.clock.now()

        def apply(a: Assignment) -> Optional[bool]:
            if a.status == status:
                return False
            if a.status in ("scheduled", "publishing", "publication_error"):
                raise StateConflict("Scheduled assignments are managed through the schedule endpoints")
            a.status = status
            if status == "completed":
                a.completedAt = now
                a.completedBy = user.user_id
            elif status == "cancelled":
                a.cancelledAt = now
                a.cancelledBy = user.user_id
            a.touch(now, user.user_id)
            return None

        assignment = await self.repo.mutate(assignment_id, apply, self.retries)
        await self.aggregator.recompute_many(assignment.assignedTo)
        return assignment
