from __future__ import annotations

from fastapi import APIRouter, Depends

from src.auth import require_internal_key
from src.observability import metrics_snapshot, reset_metrics


router = APIRouter(
    prefix="/api/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_key)],
)


@router.get("/metrics")
async def get_metrics():
    snapshot = metrics_snapshot()
    return {"counter_count": len(snapshot), "counters": snapshot}


@router.post("/metrics/reset")
async def reset_metrics_counters():
    counter_count = len(metrics_snapshot())
    reset_metrics()
    return {"reset": True, "counter_count": counter_count}
