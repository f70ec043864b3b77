from datetime import datetime
from typing import Annotated, List

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from app.core.deps import get_assignment_service, get_file_store
from app.schemas.assignment import Assignment, ScheduledAssignmentCreate, ScheduledAssignmentUpdate
from app.schemas.context import UserContext
from app.services.assignment_service import AssignmentService
from app.services.auth_service import require_admin
from app.services.file_store import FileStore

router = APIRouter(prefix="/admin/scheduled")

AdminDep = Annotated[UserContext, Depends(require_admin)]
ServiceDep = Annotated[AssignmentService, Depends(get_assignment_service)]
FileStoreDep = Annotated[FileStore, Depends(get_file_store)]


@router.post("", response_model=Assignment, status_code=status.HTTP_201_CREATED)
async def schedule_endpoint(
    user: AdminDep,
    service: ServiceDep,
    file_store: FileStoreDep,
    title: Annotated[str, Form(min_length=1)],
    description: Annotated[str, Form(min_length=1)],
    publishDate: Annotated[datetime, Form()],
    dueDate: Annotated[datetime, Form()],
    closeDate: Annotated[datetime, Form()],
    isGeneral: Annotated[bool, Form()] = False,
    assignedTo: Annotated[List[str], Form()] = [],
    attachments: Annotated[List[UploadFile], File()] = [],
):
    data = ScheduledAssignmentCreate(
        title=title,
        description=description,
        publishDate=publishDate,
        dueDate=dueDate,
        closeDate=closeDate,
        isGeneral=isGeneral,
        assignedTo=assignedTo,
    )
    staged = await file_store.stage(attachments)
    return await service.schedule_assignment(data, user, staged)


@router.put("/{assignment_id}", response_model=Assignment)
async def update_scheduled_endpoint(
    assignment_id: str, body: ScheduledAssignmentUpdate, user: AdminDep, service: ServiceDep
):
    return await service.update_scheduled(assignment_id, body, user)


@router.delete("/{assignment_id}", response_model=Assignment)
async def cancel_scheduled_endpoint(assignment_id: str, user: AdminDep, service: ServiceDep):
    return await service.cancel_scheduled(assignment_id, user)
