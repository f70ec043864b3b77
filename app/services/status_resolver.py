"""
Canonical mapping from (dates, coarse status, recipient response, now) to the
status a recipient sees. Listings, stats and per-assignment views all go
through here.
"""
from collections import Counter
from datetime import datetime
from typing import Dict, Optional

from app.schemas.assignment import (
    OPEN_STATUSES,
    RESOLVED_STATUSES,
    Assignment,
    RecipientResponse,
    RecipientStatusRow,
    ResolvedStatus,
)

COMPLETED = frozenset({"completed", "completed-late"})
OVERDUE = frozenset({"overdue", "not-delivered"})


def resolve(
    now: datetime,
    due_date: datetime,
    close_date: datetime,
    base_status: str,
    response: Optional[RecipientResponse],
) -> ResolvedStatus:
    if response is not None:
        if response.reviewStatus == "submitted" and response.submissionStatus == "on-time":
            return "completed"
        if response.reviewStatus == "submitted" and response.submissionStatus == "late":
            return "completed-late"
        if response.submissionStatus == "closed" or (
            response.reviewStatus == "reviewed" and response.submittedAt is None
        ):
            return "not-delivered"
        return "pending"

    if now > close_date:
        return "overdue"
    if now <= due_date:
        return "pending"
    # grace window: due date passed, close date not yet
    return "pending" if base_status in OPEN_STATUSES else "overdue"


def resolve_for(assignment: Assignment, recipient_id: str, now: datetime) -> ResolvedStatus:
    return resolve(
        now,
        assignment.dueDate,
        assignment.closeDate,
        assignment.status,
        assignment.response_for(recipient_id),
    )


def status_rows(assignment: Assignment, now: datetime) -> list[RecipientStatusRow]:
    rows = []
    for rid in assignment.assignedTo:
        r = assignment.response_for(rid)
        rows.append(
            RecipientStatusRow(
                recipientId=rid,
                status=resolve_for(assignment, rid, now),
                submissionStatus=r.submissionStatus if r else None,
                reviewStatus=r.reviewStatus if r else None,
                submittedAt=r.submittedAt if r else None,
                files=r.files if r else [],
            )
        )
    return rows


def tally(assignment: Assignment, now: datetime) -> Dict[str, int]:
    counts = Counter(resolve_for(assignment, rid, now) for rid in assignment.assignedTo)
    return {s: counts.get(s, 0) for s in RESOLVED_STATUSES}
