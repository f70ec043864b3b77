from fastapi import Request

from app.core.config import settings
from app.services.admin_override import AdminOverrideEngine
from app.services.assignment_service import AssignmentService
from app.services.file_store import FileStore
from app.services.response_ledger import ResponseLedger
from app.services.stats_aggregator import StatsAggregator


def _from_state(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise RuntimeError(f"{name} non inizializzato")
    return component


def get_assignment_service(request: Request) -> AssignmentService:
    return _from_state(request, "assignment_service")


def get_ledger(request: Request) -> ResponseLedger:
    return _from_state(request, "response_ledger")


def get_override_engine(request: Request) -> AdminOverrideEngine:
    return _from_state(request, "override_engine")


def get_aggregator(request: Request) -> StatsAggregator:
    return _from_state(request, "stats_aggregator")


def get_file_store(request: Request) -> FileStore:
    return _from_state(request, "file_store")


def page_limit(limit: int) -> int:
    return max(1, min(limit, settings.max_page_size))
