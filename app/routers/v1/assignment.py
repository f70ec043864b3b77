from datetime import datetime
from typing import Annotated, List, Optional, Union

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import JSONResponse

from app.core.deps import get_assignment_service, get_file_store, get_ledger, get_override_engine, page_limit
from app.schemas.assignment import (
    AdminAssignmentView,
    AssignmentCreate,
    Page,
    RecipientAssignmentView,
    RecipientResponse,
)
from app.schemas.context import UserContext
from app.schemas.stats import TeacherStats
from app.services.admin_override import AdminOverrideEngine
from app.services.assignment_service import AssignmentService
from app.services.auth_service import AuthService
from app.services.file_store import FileStore
from app.services.response_ledger import ResponseLedger

router = APIRouter()

UserDep = Annotated[UserContext, Depends(AuthService.get_current_user)]
ServiceDep = Annotated[AssignmentService, Depends(get_assignment_service)]
LedgerDep = Annotated[ResponseLedger, Depends(get_ledger)]
EngineDep = Annotated[AdminOverrideEngine, Depends(get_override_engine)]
FileStoreDep = Annotated[FileStore, Depends(get_file_store)]


@router.post("/assignments", status_code=status.HTTP_201_CREATED)
async def create_assignment_endpoint(
    user: UserDep,
    service: ServiceDep,
    file_store: FileStoreDep,
    title: Annotated[str, Form(min_length=1)],
    description: Annotated[str, Form(min_length=1)],
    dueDate: Annotated[datetime, Form()],
    closeDate: Annotated[datetime, Form()],
    isGeneral: Annotated[bool, Form()] = False,
    assignedTo: Annotated[List[str], Form()] = [],
    attachments: Annotated[List[UploadFile], File()] = [],
):
    data = AssignmentCreate(
        title=title,
        description=description,
        dueDate=dueDate,
        closeDate=closeDate,
        isGeneral=isGeneral,
        assignedTo=assignedTo,
    )
    staged = await file_store.stage(attachments)
    assignment = await service.create_assignment(data, user, staged)

    location = f"/api/v1/assignments/{assignment.assignmentId}"
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"message": "Assignment created successfully.", "id": assignment.assignmentId},
        headers={"Location": location},
    )


@router.get("/assignments", response_model=Page[RecipientAssignmentView])
async def list_assignments_endpoint(
    user: UserDep,
    service: ServiceDep,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1)] = 10,
):
    return await service.list_for_recipient(user, status, search, page, page_limit(limit))


@router.get("/assignments/stats", response_model=TeacherStats)
async def my_stats_endpoint(user: UserDep, service: ServiceDep):
    return await service.get_stats(user)


@router.get(
    "/assignments/{assignment_id}",
    response_model=Union[AdminAssignmentView, RecipientAssignmentView],
)
async def get_assignment_endpoint(assignment_id: str, user: UserDep, service: ServiceDep):
    return await service.get_assignment(assignment_id, user)


@router.post("/assignments/{assignment_id}/submit", response_model=RecipientResponse)
async def submit_response_endpoint(
    assignment_id: str,
    user: UserDep,
    ledger: LedgerDep,
    file_store: FileStoreDep,
    files: Annotated[List[UploadFile], File()] = [],
):
    staged = await file_store.stage(files)
    return await ledger.submit(assignment_id, user.user_id, staged)


@router.patch("/assignments/{assignment_id}/complete")
async def complete_assignment_endpoint(assignment_id: str, user: UserDep, engine: EngineDep):
    assignment = await engine.mark_completed(assignment_id, user)
    return {
        "message": "Assignment marked as completed.",
        "assignmentId": assignment.assignmentId,
        "status": assignment.status,
        "completedAt": assignment.completedAt,
        "dueDate": assignment.dueDate,
        "closeDate": assignment.closeDate,
    }
