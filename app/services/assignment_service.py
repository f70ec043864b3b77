import logging
import math
import uuid
from typing import List, Optional, Sequence

from app.core.clock import Clock
from app.core.errors import (
    AssignmentError,
    AuthorizationError,
    NotFoundError,
    StateConflict,
    ValidationError,
)
from app.database.assignment_repo import AssignmentFilter, AssignmentRepo
from app.database.roster_repo import RosterRepo
from app.schemas.assignment import (
    RESOLVED_STATUSES,
    VISIBLE_STATUSES,
    AdminAssignmentView,
    Assignment,
    AssignmentCreate,
    Attachment,
    Page,
    RecipientAssignmentView,
    RecipientStatusRow,
    ScheduledAssignmentCreate,
    ScheduledAssignmentUpdate,
)
from app.schemas.context import UserContext
from app.schemas.stats import TeacherStats
from app.services.dates import check_dates
from app.services.file_store import FileStore
from app.services.publisher_service import NotificationDispatcher, assignment_event
from app.services.stats_aggregator import StatsAggregator
from app.services.status_resolver import resolve_for, status_rows, tally

logger = logging.getLogger("assignments.service")

EDITABLE_SCHEDULE_STATES = ("scheduled", "publication_error")


def create_assignment_id() -> str:
    return f"as-{uuid.uuid4().hex[:12]}"


def paginate(items: Sequence, page: int, limit: int, total: Optional[int] = None) -> Page:
    total = len(items) if total is None else total
    pages = math.ceil(total / limit) if limit else 0
    return Page(
        items=list(items),
        page=page,
        limit=limit,
        total=total,
        pages=pages,
        hasNext=page < pages,
        hasPrev=page > 1,
    )


def _require_admin(user: UserContext, action: str) -> None:
    if not user.is_admin:
        raise AuthorizationError(f"Only administrators can {action}")


def _recipient_view(a: Assignment, recipient_id: str, now) -> RecipientAssignmentView:
    return RecipientAssignmentView(
        assignmentId=a.assignmentId,
        title=a.title,
        description=a.description,
        attachments=a.attachments,
        dueDate=a.dueDate,
        closeDate=a.closeDate,
        isGeneral=a.isGeneral,
        status=a.status,
        originalAssignmentId=a.originalAssignmentId,
        createdAt=a.createdAt,
        resolvedStatus=resolve_for(a, recipient_id, now),
        response=a.response_for(recipient_id),
    )


class AssignmentService:
    def __init__(
        self,
        repo: AssignmentRepo,
        roster: RosterRepo,
        aggregator: StatsAggregator,
        dispatcher: NotificationDispatcher,
        file_store: FileStore,
        clock: Clock,
        retries: int = 5,
    ):
        self.repo = repo
        self.roster = roster
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.file_store = file_store
        self.clock = clock
        self.retries = retries

    async def _resolve_recipients(self, data: AssignmentCreate) -> List[str]:
        if data.isGeneral:
            recipients = await self.roster.list_recipient_ids()
            if not recipients:
                raise ValidationError("No recipients found to assign")
            return recipients

        recipients = list(dict.fromkeys(data.assignedTo))
        if not recipients:
            raise ValidationError("Select at least one recipient for an individual assignment")
        known = await self.roster.existing_ids(recipients)
        unknown = [r for r in recipients if r not in known]
        if unknown:
            raise ValidationError(f"Unknown recipients: {', '.join(unknown)}")
        return recipients

    async def create_assignment(
        self, data: AssignmentCreate, user: UserContext, attachments: Sequence[Attachment] = ()
    ) -> Assignment:
        now = self.clock.now()
        try:
            _require_admin(user, "create assignments")
            check_dates(data.dueDate, data.closeDate)
            recipients = await self._resolve_recipients(data)
        except AssignmentError:
            await self.file_store.discard(attachments)
            raise

        assignment = Assignment(
            assignmentId=create_assignment_id(),
            title=data.title.strip(),
            description=data.description.strip(),
            attachments=list(attachments),
            dueDate=data.dueDate,
            closeDate=data.closeDate,
            isGeneral=data.isGeneral,
            assignedTo=recipients,
            status="active",
            createdAt=now,
            createdBy=user.user_id,
            publishedAt=now,
        )

        inserted_id = await self.repo.create(assignment)
        if not inserted_id:
            raise RuntimeError("Creazione assignment fallita")
        logger.info("Assignment %s creato per %d destinatari", inserted_id, len(recipients))

        await self.aggregator.recompute_many(recipients)
        try:
            await self.dispatcher.notify(recipients, assignment_event("assignment.created", assignment, now))
        except Exception:
            logger.exception("Notifica di creazione non inviata per %s", inserted_id)
        return assignment

    async def schedule_assignment(
        self, data: ScheduledAssignmentCreate, user: UserContext, attachments: Sequence[Attachment] = ()
    ) -> Assignment:
        now = self.clock.now()
        try:
            _require_admin(user, "schedule assignments")
            check_dates(data.dueDate, data.closeDate, data.publishDate)
            if data.publishDate <= now:
                raise ValidationError("publishDate must be in the future")
            # general items snapshot the roster when they are published, not now
            recipients = [] if data.isGeneral else await self._resolve_recipients(data)
        except AssignmentError:
            await self.file_store.discard(attachments)
            raise

        assignment = Assignment(
            assignmentId=create_assignment_id(),
            title=data.title.strip(),
            description=data.description.strip(),
            attachments=list(attachments),
            publishDate=data.publishDate,
            dueDate=data.dueDate,
            closeDate=data.closeDate,
            isGeneral=data.isGeneral,
            assignedTo=recipients,
            status="scheduled",
            createdAt=now,
            createdBy=user.user_id,
        )
        await self.repo.create(assignment)
        logger.info("Assignment %s programmato per %s", assignment.assignmentId, data.publishDate.isoformat())
        return assignment

    async def update_scheduled(
        self, assignment_id: str, fields: ScheduledAssignmentUpdate, user: UserContext
    ) -> Assignment:
        """Edit a future assignment. Editing one that failed to publish puts it back in the queue."""
        _require_admin(user, "update scheduled assignments")
        changes = fields.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("No fields to update")
        if changes.get("assignedTo"):
            changes["assignedTo"] = list(dict.fromkeys(changes["assignedTo"]))
            known = await self.roster.existing_ids(changes["assignedTo"])
            unknown = [r for r in changes["assignedTo"] if r not in known]
            if unknown:
                raise ValidationError(f"Unknown recipients: {', '.join(unknown)}")

        now = self.clock.now()

        def apply(a: Assignment):
            if a.status not in EDITABLE_SCHEDULE_STATES:
                raise StateConflict(f"Only scheduled assignments can be edited here (status: {a.status})")
            publish = changes.get("publishDate") or a.publishDate
            due = changes.get("dueDate") or a.dueDate
            close = changes.get("closeDate") or a.closeDate
            check_dates(due, close, publish)
            if publish <= now:
                raise ValidationError("publishDate must be in the future")
            is_general = changes.get("isGeneral", a.isGeneral)
            if is_general is None:
                is_general = a.isGeneral
            assigned = changes.get("assignedTo") or ([] if is_general else a.assignedTo)
            if not is_general and not assigned:
                raise ValidationError("Select at least one recipient for an individual assignment")

            for key in ("title", "description"):
                if changes.get(key) is not None:
                    setattr(a, key, changes[key].strip())
            a.publishDate, a.dueDate, a.closeDate = publish, due, close
            a.isGeneral = is_general
            a.assignedTo = [] if is_general else assigned
            a.status = "scheduled"
            a.publicationError = None
            a.claimedAt = None
            a.touch(now, user.user_id)

        return await self.repo.mutate(assignment_id, apply, self.retries)

    async def cancel_scheduled(self, assignment_id: str, user: UserContext) -> Assignment:
        _require_admin(user, "cancel scheduled assignments")
        now = self.clock.now()

        def apply(a: Assignment):
            if a.status not in EDITABLE_SCHEDULE_STATES:
                raise StateConflict(f"Only scheduled assignments can be cancelled (status: {a.status})")
            a.status = "cancelled"
            a.cancelledAt = now
            a.cancelledBy = user.user_id
            a.touch(now, user.user_id)

        assignment = await self.repo.mutate(assignment_id, apply, self.retries)
        logger.info("Assignment programmato %s annullato da %s", assignment_id, user.user_id)
        return assignment

    async def list_admin(
        self,
        user: UserContext,
        status: Optional[str] = None,
        search: Optional[str] = None,
        teacher_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        _require_admin(user, "list every assignment")
        now = self.clock.now()
        filt = AssignmentFilter(
            status=None if status in (None, "", "all") else status,
            text=search or None,
            recipient_id=None if teacher_id in (None, "", "all") else teacher_id,
        )
        items, total = await self.repo.search(filt, skip=(page - 1) * limit, limit=limit)
        views = [AdminAssignmentView(**a.model_dump(), resolvedCounts=tally(a, now)) for a in items]
        return paginate(views, page, limit, total)

    async def list_for_recipient(
        self,
        user: UserContext,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        if status not in (None, "", "all") and status not in RESOLVED_STATUSES:
            raise ValidationError(f"Unknown status filter '{status}'")
        now = self.clock.now()
        filt = AssignmentFilter(statuses=VISIBLE_STATUSES, text=search or None, recipient_id=user.user_id)
        items, _ = await self.repo.search(filt)
        views = [_recipient_view(a, user.user_id, now) for a in items]
        if status not in (None, "", "all"):
            views = [v for v in views if v.resolvedStatus == status]
        start = (page - 1) * limit
        return paginate(views[start:start + limit], page, limit, len(views))

    async def get_assignment(self, assignment_id: str, user: UserContext):
        doc = await self.repo.find_one(assignment_id)
        if not doc:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        if user.is_admin or doc.createdBy == user.user_id:
            return AdminAssignmentView(**doc.model_dump(), resolvedCounts=tally(doc, self.clock.now()))
        if not doc.is_assigned(user.user_id) or doc.status not in VISIBLE_STATUSES:
            raise AuthorizationError("You are not assigned to this assignment")
        return _recipient_view(doc, user.user_id, self.clock.now())

    async def recipient_statuses(self, assignment_id: str, user: UserContext) -> List[RecipientStatusRow]:
        _require_admin(user, "inspect recipient statuses")
        doc = await self.repo.find_one(assignment_id)
        if not doc:
            raise NotFoundError(f"Assignment {assignment_id} not found")
        return status_rows(doc, self.clock.now())

    async def get_stats(self, user: UserContext) -> TeacherStats:
        return await self.aggregator.get_or_create(user.user_id)
