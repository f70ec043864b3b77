from fastapi import APIRouter, Request

router = APIRouter()

@router.get("/assignments/health")
async def health_check(request: Request):
    scheduler = getattr(request.app.state, "schedule_publisher", None)
    running = scheduler is not None and scheduler.running
    return {"status": "ok", "scheduler": "running" if running else "stopped"}
