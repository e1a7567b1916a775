"""
forrent/routers/properties.py
Endpoints:
  GET    /api/properties                  → paginated available listings (+ filters)
  GET    /api/properties/hot-deals        → newest listings
  GET    /api/properties/search?q=        → free-text search
  GET    /api/properties/{id}             → single listing
  DELETE /api/properties/{id}             → delete listing + images
  POST   /api/properties/cache/invalidate → drop cached listing data

All reads are cache-first through PropertyService.
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, HTTPException, Query, Request

from forrent.core.config import FEED_PAGE_SIZE, HOT_DEALS_LIMIT
from forrent.core.errors import BackendError
from forrent.services.properties import PropertyService

log = logging.getLogger("properties_router")
router = APIRouter(prefix="/api/properties", tags=["properties"])


def _service(request: Request) -> PropertyService:
    return request.app.state.properties


def _bad_gateway(ex: Exception) -> HTTPException:
    log.error(f"Backend failure: {ex}")
    return HTTPException(502, detail="Listing backend unavailable")


@router.get("")
async def list_properties(
    request:   Request,
    limit:     int            = Query(FEED_PAGE_SIZE, ge=1, le=100),
    offset:    int            = Query(0, ge=0),
    order_by:  str            = Query("created_at", pattern=r"^[a-z_]+$"),
    ascending: bool           = Query(False),
    status:    Optional[str]  = Query(None),
    min_price: Optional[int]  = Query(None, ge=0),
    max_price: Optional[int]  = Query(None, ge=0),
    bedrooms:  Optional[int]  = Query(None, ge=0),
    bathrooms: Optional[int]  = Query(None, ge=0),
    location:  Optional[str]  = Query(None),
    featured:  Optional[bool] = Query(None),
):
    filters = {
        "status":    status,
        "min_price": min_price,
        "max_price": max_price,
        "bedrooms":  bedrooms,
        "bathrooms": bathrooms,
        "location":  location,
        "featured":  featured,
    }
    try:
        return await _service(request).get_available_properties(
            limit=limit, offset=offset, order_by=order_by, ascending=ascending, filters=filters,
        )
    except (BackendError, httpx.HTTPError) as ex:
        raise _bad_gateway(ex)


@router.get("/hot-deals")
async def hot_deals(request: Request, limit: int = Query(HOT_DEALS_LIMIT, ge=1, le=50)):
    try:
        return await _service(request).get_hot_deals(limit)
    except (BackendError, httpx.HTTPError) as ex:
        raise _bad_gateway(ex)


@router.get("/search")
async def search(
    request: Request,
    q:       str = Query(..., min_length=1, description="Title, location, address or description text"),
    limit:   int = Query(FEED_PAGE_SIZE, ge=1, le=100),
):
    q = q.strip()
    if not q:
        raise HTTPException(400, detail="Query must not be blank")
    try:
        return await _service(request).search_properties(q, limit)
    except (BackendError, httpx.HTTPError) as ex:
        raise _bad_gateway(ex)


@router.post("/cache/invalidate")
async def invalidate(
    request:     Request,
    kind:        Optional[str] = Query(None, description="listings | hotdeals | available | search:<q>"),
    property_id: Optional[str] = Query(None),
):
    removed = _service(request).invalidate_cache(kind, property_id)
    return {"removed": removed}


@router.get("/{property_id}")
async def get_property(request: Request, property_id: str):
    try:
        prop = await _service(request).get_property_by_id(property_id)
    except httpx.HTTPError as ex:
        raise _bad_gateway(ex)
    if prop is None:
        raise HTTPException(404, detail=f"Property '{property_id}' not found")
    return prop


@router.delete("/{property_id}")
async def delete_property(request: Request, property_id: str):
    try:
        result = await _service(request).delete_listing(property_id)
    except httpx.HTTPError as ex:
        raise _bad_gateway(ex)
    if not result["success"]:
        raise HTTPException(502, detail=result.get("error", "Failed to delete listing"))
    return result
