from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from return_mailer.dependencies import get_pipeline, reject_unauthenticated
from return_mailer.observability import log_event, metrics_snapshot, reset_metrics
from return_mailer.services.pipeline import ReturnMailPipeline


router = APIRouter(prefix="/api/observability", tags=["observability"])


class MetricsFlushRequest(BaseModel):
    reset_after_read: bool = True


@router.get("/metrics")
async def read_metrics(
    request: Request,
    access_code: str | None = Query(None),
    pipeline: ReturnMailPipeline = Depends(get_pipeline),
):
    rejected = reject_unauthenticated(pipeline, request, access_code)
    if rejected:
        return rejected
    counters = metrics_snapshot()
    return {"ok": True, "counter_count": len(counters), "counters": counters}


@router.post("/metrics/flush")
async def flush_metrics(
    request: Request,
    data: MetricsFlushRequest,
    access_code: str | None = Query(None),
    pipeline: ReturnMailPipeline = Depends(get_pipeline),
):
    rejected = reject_unauthenticated(pipeline, request, access_code)
    if rejected:
        return rejected
    counters = metrics_snapshot()
    if data.reset_after_read:
        reset_metrics()
    log_event("metrics_flushed", counter_count=len(counters), reset=data.reset_after_read)
    return {"ok": True, "counter_count": len(counters), "counters": counters, "reset": data.reset_after_read}
