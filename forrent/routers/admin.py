"""
forrent/routers/admin.py
Endpoints:
  GET   /api/admin/stats                 → shared counter snapshot + loading flags
  POST  /api/admin/stats/refresh         → foreground refresh (waits for it)
  POST  /api/admin/stats/refresh?background=true → start refresh, return at once
  PATCH /api/admin/stats/{key}           → optimistic single-counter update
  GET   /api/admin/notifications         → drain pending user notices
"""

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from forrent.services.stats import StatsAggregator

router = APIRouter(prefix="/api/admin", tags=["admin"])


class StatUpdate(BaseModel):
    value: int


def _stats(request: Request) -> StatsAggregator:
    return request.app.state.stats


@router.get("/stats")
async def get_stats(request: Request):
    return _stats(request).snapshot()


@router.post("/stats/refresh")
async def refresh_stats(request: Request, background: bool = Query(False)):
    agg  = _stats(request)
    task = agg.refresh_stats(background=background)
    if not background:
        await task
    return agg.snapshot()


@router.patch("/stats/{key}")
async def update_stat(request: Request, key: str, body: StatUpdate):
    try:
        _stats(request).update_stat(key, body.value)
    except KeyError:
        raise HTTPException(404, detail=f"Unknown stat '{key}'")
    return _stats(request).snapshot()


@router.get("/notifications")
async def notifications(request: Request):
    return request.app.state.notifier.drain()
