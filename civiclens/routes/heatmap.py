"""
heatmap.py — Complaint density heatmap routes.

Routes:
  GET  /api/v1/complaints/heatmap/global                 — city-wide heatmap
  GET  /api/v1/complaints/heatmap/profile/{entityId}     — one city / town / UC subtree
  GET  /api/v1/complaints/heatmap/profile                — missing id → 404
  POST /api/v1/complaints/heatmap/invalidate             — intake hook after a complaint is stored

Query parameters (both GETs):
  days       lookback window, default 30
  category   Roads | Water | Garbage | Electricity | Others | all (case-insensitive)
  precision  grid resolution 1..9, default 5 (higher = smaller cells)

Parameters arrive as raw strings and are validated by HeatmapService so that
every failure uses the same { success, message, code } payload instead of
FastAPI's 422 body.

TESTING
───────
  pytest tests/test_heatmap_routes.py -v

  curl "http://localhost:8000/api/v1/complaints/heatmap/global?days=7&precision=6"
  curl "http://localhost:8000/api/v1/complaints/heatmap/global?category=roads"
  curl "http://localhost:8000/api/v1/complaints/heatmap/profile/UC-12?days=180"
  curl -X POST http://localhost:8000/api/v1/complaints/heatmap/invalidate \\
    -H 'Content-Type: application/json' -d '{"category": "Roads"}'
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from civiclens.core.cache import get_cache
from civiclens.core.config import settings
from civiclens.core.database import get_db
from civiclens.core.errors import EntityNotFound, StoreUnavailable
from civiclens.core.rate_limit import limiter
from civiclens.models.heatmap import (
    ComplaintPersistedEvent,
    ErrorResponse,
    HeatmapResponse,
    InvalidationResponse,
)
from civiclens.services.aggregation_cache import AggregationCache
from civiclens.services.heatmap_service import HeatmapService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/complaints/heatmap", tags=["heatmap"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


def get_heatmap_service(
    db=Depends(get_db),
    cache: AggregationCache = Depends(get_cache),
) -> HeatmapService:
    """FastAPI dependency — a HeatmapService bound to the current db + shared cache."""
    if db is None:
        raise StoreUnavailable("Complaint store unavailable")
    return HeatmapService.from_database(db, cache)


@router.get(
    "/global",
    response_model=HeatmapResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
)
@limiter.limit(settings.heatmap_rate_limit)
async def get_global_heatmap(
    request: Request,
    days: Optional[str] = Query(default=None, description="Lookback window in days (default 30)"),
    category: Optional[str] = Query(default=None, description="Complaint category (omit for all)"),
    precision: Optional[str] = Query(default=None, description="Grid precision 1-9 (default 5)"),
    service: HeatmapService = Depends(get_heatmap_service),
):
    """Complaint density over every jurisdiction."""
    return await service.handle_global(days=days, category=category, precision=precision)


@router.get(
    "/profile/{entity_id}",
    response_model=HeatmapResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
)
@limiter.limit(settings.heatmap_rate_limit)
async def get_profile_heatmap(
    request: Request,
    entity_id: str,
    days: Optional[str] = Query(default=None, description="Lookback window in days (default 30)"),
    category: Optional[str] = Query(default=None, description="Complaint category (omit for all)"),
    precision: Optional[str] = Query(default=None, description="Grid precision 1-9 (default 5)"),
    service: HeatmapService = Depends(get_heatmap_service),
):
    """
    Complaint density inside one administrative entity and its descendants.

    `entity_id` is a city / town / UC code (e.g. UC-12) or its ObjectId.
    """
    return await service.handle_profile(
        entity_id, days=days, category=category, precision=precision,
    )


@router.get("/profile", responses={404: {"model": ErrorResponse}}, include_in_schema=False)
@router.get("/profile/", responses={404: {"model": ErrorResponse}}, include_in_schema=False)
async def get_profile_heatmap_without_id():
    raise EntityNotFound("Entity ID is required")


@router.post("/invalidate", response_model=InvalidationResponse, responses=_ERROR_RESPONSES)
@limiter.limit(settings.heatmap_invalidate_rate_limit)
async def complaint_persisted(
    request: Request,
    payload: ComplaintPersistedEvent,
    service: HeatmapService = Depends(get_heatmap_service),
):
    """
    Intake hook: evict cached heatmaps that a newly stored complaint could change.

    Called by the intake service once the complaint document is committed.
    """
    evicted = service.notify_complaint_persisted(payload)
    return InvalidationResponse(evicted=evicted, data_version=service.cache.data_version)
