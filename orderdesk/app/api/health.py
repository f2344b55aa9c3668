"""Liveness and readiness probes."""

from typing import Dict

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text

from orderdesk.app.events.bus import CONVERSATION_QUEUE, INGESTION_QUEUE

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "healthy"}


async def _database_check(request: Request) -> str:
    db = getattr(request.app.state, "db", None)
    if db is None:
        return "not_configured"
    try:
        async with db.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"failed: {e}"
    return "ok"


def _workers_check(request: Request) -> str:
    tasks = getattr(request.app.state, "worker_tasks", None) or []
    if tasks and not any(t.done() for t in tasks):
        return "ok"
    return "stopped"


def _queue_depths(request: Request) -> Dict[str, int]:
    bus = getattr(request.app.state, "bus", None)
    if bus is None:
        return {}
    return {name: bus.queue(name).qsize() for name in (INGESTION_QUEUE, CONVERSATION_QUEUE)}


@router.get("/ready")
async def readiness_check(request: Request, response: Response):
    """
    Ready when the database answers and every consumer and the tick
    scheduler are still running. Queue depths are informational.
    """
    checks = {
        "database": await _database_check(request),
        "workers": _workers_check(request),
    }
    ready = all(v == "ok" for v in checks.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ready" if ready else "not_ready",
        "checks": checks,
        "queues": _queue_depths(request),
    }
