from datetime import datetime
from typing import Annotated, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import AfterValidator, BaseModel, Field, model_validator

from app.core.clock import as_utc

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

AssignmentStatus = Literal[
    "scheduled", "publishing", "active", "completed", "cancelled", "publication_error"
]
ResolvedStatus = Literal["pending", "completed", "completed-late", "not-delivered", "overdue"]
SubmissionStatus = Literal["on-time", "late", "closed"]
ReviewStatus = Literal["submitted", "reviewed"]

# coarse states in which the grace window between dueDate and closeDate still counts as pending
OPEN_STATUSES = frozenset({"scheduled", "publishing", "active"})
# coarse states in which recipients see the assignment and accumulate stats
VISIBLE_STATUSES = ("active", "completed")
RESOLVED_STATUSES = ("pending", "completed", "completed-late", "not-delivered", "overdue")


class Attachment(BaseModel):
    fileName: str
    fileUrl: str
    uploadedAt: UtcDatetime


class RecipientResponse(BaseModel):
    recipientId: str
    files: List[Attachment] = []
    submittedAt: Optional[UtcDatetime] = None
    submissionStatus: Optional[SubmissionStatus] = None
    reviewStatus: Optional[ReviewStatus] = None

    @model_validator(mode="after")
    def _check_combination(self):
        if self.submissionStatus in ("on-time", "late") and self.submittedAt is None:
            raise ValueError("on-time and late responses require submittedAt")
        if self.submissionStatus == "closed" and self.reviewStatus == "submitted":
            raise ValueError("a closed response cannot be in submitted review state")
        return self


class AssignmentCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    dueDate: UtcDatetime
    closeDate: UtcDatetime
    isGeneral: bool = False
    assignedTo: List[str] = []


class ScheduledAssignmentCreate(AssignmentCreate):
    publishDate: UtcDatetime


class AssignmentUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    dueDate: Optional[UtcDatetime] = None
    closeDate: Optional[UtcDatetime] = None
    assignedTo: Optional[List[str]] = None


class ScheduledAssignmentUpdate(AssignmentUpdate):
    publishDate: Optional[UtcDatetime] = None
    isGeneral: Optional[bool] = None


class ForkRequest(BaseModel):
    recipientId: str
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    dueDate: Optional[UtcDatetime] = None
    closeDate: Optional[UtcDatetime] = None


class RecipientStatusUpdate(BaseModel):
    status: str


class CoarseStatusUpdate(BaseModel):
    status: Literal["active", "completed", "cancelled"]


class BulkCompleteRequest(BaseModel):
    assignmentIds: List[str]


class BulkCompleteResult(BaseModel):
    modifiedCount: int


class Assignment(BaseModel):
    assignmentId: str
    title: str
    description: str
    attachments: List[Attachment] = []
    publishDate: Optional[UtcDatetime] = None
    dueDate: UtcDatetime
    closeDate: UtcDatetime
    isGeneral: bool = False
    assignedTo: List[str] = []
    status: AssignmentStatus = "active"
    originalAssignmentId: Optional[str] = None
    createdAt: UtcDatetime
    createdBy: str
    publishedAt: Optional[UtcDatetime] = None
    claimedAt: Optional[UtcDatetime] = None
    publicationError: Optional[str] = None
    completedAt: Optional[UtcDatetime] = None
    completedBy: Optional[str] = None
    cancelledAt: Optional[UtcDatetime] = None
    cancelledBy: Optional[str] = None
    updatedAt: Optional[UtcDatetime] = None
    updatedBy: Optional[str] = None
    version: int = 0
    responses: List[RecipientResponse] = []

    def is_assigned(self, recipient_id: str) -> bool:
        return recipient_id in self.assignedTo

    def response_for(self, recipient_id: str) -> Optional[RecipientResponse]:
        for r in self.responses:
            if r.recipientId == recipient_id:
                return r
        return None

    def put_response(self, response: RecipientResponse) -> None:
        """Replace the recipient's response in place, or append the first one."""
        for i, r in enumerate(self.responses):
            if r.recipientId == response.recipientId:
                self.responses[i] = response
                return
        self.responses.append(response)

    def drop_response(self, recipient_id: str) -> Optional[RecipientResponse]:
        existing = self.response_for(recipient_id)
        if existing is not None:
            self.responses = [r for r in self.responses if r.recipientId != recipient_id]
        return existing

    def touch(self, now: datetime, actor: str) -> None:
        self.updatedAt = now
        self.updatedBy = actor


class RecipientStatusRow(BaseModel):
    recipientId: str
    status: ResolvedStatus
    submissionStatus: Optional[SubmissionStatus] = None
    reviewStatus: Optional[ReviewStatus] = None
    submittedAt: Optional[UtcDatetime] = None
    files: List[Attachment] = []


class RecipientAssignmentView(BaseModel):
    assignmentId: str
    title: str
    description: str
    attachments: List[Attachment] = []
    dueDate: UtcDatetime
    closeDate: UtcDatetime
    isGeneral: bool
    status: AssignmentStatus
    originalAssignmentId: Optional[str] = None
    createdAt: UtcDatetime
    resolvedStatus: ResolvedStatus
    response: Optional[RecipientResponse] = None


class AdminAssignmentView(Assignment):
    resolvedCounts: Dict[str, int] = {}


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int
    pages: int
    hasNext: bool
    hasPrev: bool
