from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query

from app.core.deps import get_aggregator, get_assignment_service, get_override_engine, page_limit
from app.schemas.assignment import (
    AdminAssignmentView,
    Assignment,
    AssignmentUpdate,
    BulkCompleteRequest,
    BulkCompleteResult,
    CoarseStatusUpdate,
    ForkRequest,
    Page,
    RecipientStatusRow,
    RecipientStatusUpdate,
)
from app.schemas.context import UserContext
from app.schemas.stats import AdminOverview
from app.services.admin_override import AdminOverrideEngine
from app.services.assignment_service import AssignmentService
from app.services.auth_service import require_admin
from app.services.stats_aggregator import StatsAggregator

router = APIRouter(prefix="/admin/assignments")

AdminDep = Annotated[UserContext, Depends(require_admin)]
ServiceDep = Annotated[AssignmentService, Depends(get_assignment_service)]
EngineDep = Annotated[AdminOverrideEngine, Depends(get_override_engine)]
AggregatorDep = Annotated[StatsAggregator, Depends(get_aggregator)]


@router.get("", response_model=Page[AdminAssignmentView])
async def list_all_endpoint(
    user: AdminDep,
    service: ServiceDep,
    status: Optional[str] = None,
    search: Optional[str] = None,
    teacherId: Optional[str] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1)] = 10,
):
    return await service.list_admin(user, status, search, teacherId, page, page_limit(limit))


@router.get("/stats", response_model=AdminOverview)
async def overview_endpoint(user: AdminDep, aggregator: AggregatorDep):
    return await aggregator.admin_overview()


@router.post("/complete", response_model=BulkCompleteResult)
async def bulk_complete_endpoint(body: BulkCompleteRequest, user: AdminDep, engine: EngineDep):
    modified = await engine.bulk_mark_completed(body.assignmentIds, user)
    return BulkCompleteResult(modifiedCount=modified)


@router.patch("/{assignment_id}/status", response_model=Assignment)
async def set_status_endpoint(assignment_id: str, body: CoarseStatusUpdate, user: AdminDep, engine: EngineDep):
    return await engine.set_coarse_status(assignment_id, body.status, user)


@router.patch("/{assignment_id}/complete", response_model=Assignment)
async def complete_endpoint(assignment_id: str, user: AdminDep, engine: EngineDep):
    return await engine.mark_completed(assignment_id, user)


@router.put("/{assignment_id}", response_model=Assignment)
async def update_endpoint(assignment_id: str, body: AssignmentUpdate, user: AdminDep, engine: EngineDep):
    return await engine.update_content(assignment_id, body, user)


@router.post("/{assignment_id}/fork", response_model=Assignment, status_code=201)
async def fork_endpoint(assignment_id: str, body: ForkRequest, user: AdminDep, engine: EngineDep):
    return await engine.fork(assignment_id, body, user)


@router.get("/{assignment_id}/recipients", response_model=List[RecipientStatusRow])
async def recipients_endpoint(assignment_id: str, user: AdminDep, service: ServiceDep):
    return await service.recipient_statuses(assignment_id, user)


@router.put("/{assignment_id}/recipients/{recipient_id}/status", response_model=RecipientStatusRow)
async def recipient_status_endpoint(
    assignment_id: str,
    recipient_id: str,
    body: RecipientStatusUpdate,
    user: AdminDep,
    engine: EngineDep,
):
    return await engine.set_recipient_status(assignment_id, recipient_id, body.status, user)
