# app/main.py
from contextlib import asynccontextmanager
from datetime import timedelta
import logging
import sys
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.clock import SystemClock
from app.core.config import settings
from app.core.errors import AssignmentError
from app.database.mongo_assignment import MongoAssignmentRepository
from app.database.mongo_roster import MongoRosterRepository
from app.database.mongo_stats import MongoStatsRepository
from app.services.admin_override import AdminOverrideEngine
from app.services.assignment_service import AssignmentService
from app.services.file_store import LocalFileStore
from app.services.publisher_service import AssignmentPublisher
from app.services.response_ledger import ResponseLedger
from app.services.schedule_publisher import SchedulePublisher
from app.services.stats_aggregator import StatsAggregator
from app.routers.v1 import admin
from app.routers.v1 import assignment
from app.routers.v1 import health
from app.routers.v1 import scheduled

logging.basicConfig(
    level=logging.INFO,  # DEBUG per seguire scheduler e publisher
    format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    stream=sys.stdout,
)

# opzionale: più verboso solo per i nostri namespace
logging.getLogger("assignments.scheduler").setLevel(logging.DEBUG)


async def assignment_error_handler(request: Request, exc: AssignmentError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        clock = SystemClock()
        client = AsyncIOMotorClient(settings.mongo_uri, uuidRepresentation="standard", tz_aware=True)
        db = client[settings.mongo_db_name]

        repo = MongoAssignmentRepository(db)
        stats_repo = MongoStatsRepository(db)
        roster = MongoRosterRepository(db, settings.roster_roles)
        await repo.ensure_indexes()
        await stats_repo.ensure_indexes()

        # --- RabbitMQ Publisher ---
        publisher = AssignmentPublisher(
            rabbitmq_url=settings.rabbitmq_url,
            exchange=settings.rabbitmq_exchange,
            heartbeat=30,
        )
        await publisher.connect(max_retries=10, delay=5)

        file_store = LocalFileStore(settings.upload_dir, clock, max_files=settings.max_upload_files)
        aggregator = StatsAggregator(repo, stats_repo, clock)
        ledger = ResponseLedger(repo, file_store, aggregator, clock, retries=settings.mutation_retries)

        app.state.file_store = file_store
        app.state.stats_aggregator = aggregator
        app.state.response_ledger = ledger
        app.state.assignment_service = AssignmentService(
            repo, roster, aggregator, publisher, file_store, clock, retries=settings.mutation_retries
        )
        app.state.override_engine = AdminOverrideEngine(
            repo, roster, ledger, aggregator, publisher, clock, retries=settings.mutation_retries
        )

        scheduler = SchedulePublisher(
            repo,
            roster,
            aggregator,
            publisher,
            clock,
            interval=settings.scheduler_interval_seconds,
            lease=timedelta(seconds=settings.publish_lease_seconds),
        )
        app.state.schedule_publisher = scheduler
        if settings.scheduler_enabled:
            scheduler.start()

        try:
            yield
        finally:
            await scheduler.stop()
            await publisher.close()
            client.close()

    app = FastAPI(
        title="Assignment Compliance Service",
        description="Ciclo di vita degli assignment e stato delle consegne per docente",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"], allow_credentials=True,
        allow_methods=["*"], allow_headers=["*"],
    )
    app.add_exception_handler(AssignmentError, assignment_error_handler)

    app.include_router(health.router,     prefix="/api/v1", tags=["health"])
    app.include_router(assignment.router, prefix="/api/v1", tags=["assignments"])
    app.include_router(admin.router,      prefix="/api/v1", tags=["admin"])
    app.include_router(scheduled.router,  prefix="/api/v1", tags=["scheduled"])
    return app

app = create_app()
