import logging
from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

from app.core.clock import Clock
from app.core.errors import (
    AssignmentError,
    NotAssigned,
    StateConflict,
    SubmissionClosed,
    ValidationError,
)
from app.database.assignment_repo import AssignmentRepo
from app.schemas.assignment import VISIBLE_STATUSES, Assignment, Attachment, RecipientResponse
from app.services.file_store import FileStore
from app.services.stats_aggregator import StatsAggregator

logger = logging.getLogger("assignments.ledger")

# target -> (submissionStatus, reviewStatus); None removes the response
DIRECT_TARGETS: Dict[str, Optional[Tuple[str, str]]] = {
    "entregado": ("on-time", "submitted"),
    "entregado_tarde": ("late", "submitted"),
    "no_entregado": ("closed", "reviewed"),
    "pendiente": None,
    "delivered": ("on-time", "submitted"),
    "delivered_late": ("late", "submitted"),
    "not_delivered": ("closed", "reviewed"),
    "pending": None,
}


class ResponseLedger:
    """Owns the per-recipient responses embedded in an assignment: at most one per recipient."""

    def __init__(
        self,
        repo: AssignmentRepo,
        file_store: FileStore,
        aggregator: StatsAggregator,
        clock: Clock,
        retries: int = 5,
    ):
        self.repo = repo
        self.file_store = file_store
        self.aggregator = aggregator
        self.clock = clock
        self.retries = retries

    async def submit(
        self,
        assignment_id: str,
        recipient_id: str,
        files: Sequence[Attachment],
        now: Optional[datetime] = None,
    ) -> RecipientResponse:
        now = now or self.clock.now()

        def apply(a: Assignment):
            if not a.is_assigned(recipient_id):
                raise NotAssigned(recipient_id, assignment_id)
            if a.status not in VISIBLE_STATUSES:
                raise StateConflict(f"Assignment {assignment_id} is not open for submissions ({a.status})")
            if now > a.closeDate:
                raise SubmissionClosed(assignment_id, a.closeDate)
            a.put_response(
                RecipientResponse(
                    recipientId=recipient_id,
                    files=list(files),
                    submittedAt=now,
                    submissionStatus="late" if now > a.dueDate else "on-time",
                    reviewStatus="submitted",
                )
            )

        try:
            assignment = await self.repo.mutate(assignment_id, apply, self.retries)
        except AssignmentError as e:
            logger.info("Consegna rifiutata per %s su %s: %s", recipient_id, assignment_id, e)
            await self.file_store.discard(files)
            raise

        response = assignment.response_for(recipient_id)
        logger.info(
            "Consegna %s registrata per %s su %s", response.submissionStatus, recipient_id, assignment_id
        )
        await self.aggregator.recompute_many([recipient_id])
        return response

    async def record_direct(
        self,
        assignment_id: str,
        recipient_id: str,
        target_status: str,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """
        Inject a recipient's status on behalf of an administrator.
        The coarse assignment status is left as is.
        """
        key = (target_status or "").strip().lower()
        if key not in DIRECT_TARGETS:
            raise ValidationError(
                f"Unknown status '{target_status}', expected one of {sorted(DIRECT_TARGETS)}"
            )
        target = DIRECT_TARGETS[key]
        now = now or self.clock.now()

        def apply(a: Assignment):
            if not a.is_assigned(recipient_id):
                raise StateConflict(f"Recipient {recipient_id} is not assigned to {assignment_id}")
            if target is None:
                a.drop_response(recipient_id)
                return
            submission_status, review_status = target
            previous = a.response_for(recipient_id)
            files = previous.files if previous else []
            if submission_status == "closed":
                submitted_at = None
            else:
                submitted_at = previous.submittedAt if previous and previous.submittedAt else now
            a.put_response(
                RecipientResponse(
                    recipientId=recipient_id,
                    files=files,
                    submittedAt=submitted_at,
                    submissionStatus=submission_status,
                    reviewStatus=review_status,
                )
            )

        assignment = await self.repo.mutate(assignment_id, apply, self.retries)
        await self.aggregator.recompute_many([recipient_id])
        return assignment
