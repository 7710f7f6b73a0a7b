"""
heatmap_service.py — Request validation and orchestration for both heatmap
scopes.

FLOW
────
  handle_global / handle_profile
    1. validate: entity id present (profile) → precision → days → category
       (any failure raises InvalidParameter / EntityNotFound before any I/O)
    2. profile only: ScopeResolver.resolve(entity_id) → jurisdiction predicate
    3. AggregationCache.get_or_compute(fingerprint, engine.compute)
    4. wrap the bins in a HeatmapResponse

Failures are raised as HeatmapError subclasses; main.py renders them as
{ success: false, message, code }.

INVALIDATION
────────────
The intake service calls notify_complaint_persisted() after storing a
complaint. Every cached result whose window covers the complaint's createdAt
and whose category is "all" or the complaint's category is evicted.
Jurisdiction is not part of the match: profile entries for every entity are
evicted alike.
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pymongo.errors import PyMongoError

from civiclens.core.config import Settings, settings
from civiclens.core.errors import EntityNotFound, InvalidParameter, StoreUnavailable, UpstreamTimeout
from civiclens.models.complaint import (
    AggregationRequest,
    ComplaintReport,
    GlobalScope,
    ProfileScope,
)
from civiclens.models.heatmap import ComplaintPersistedEvent, HeatmapResponse
from civiclens.services.aggregation_cache import AggregationCache
from civiclens.services.aggregation_engine import AggregationEngine, validate_window_days
from civiclens.services.filter_index import STORE_TIMEOUT_ERRORS, ComplaintFilterIndex
from civiclens.services.geo_binner import validate_precision
from civiclens.services.scope_resolver import ScopeResolver

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"^[+-]?\d+$")
_CATEGORY_RE = re.compile(r"^[A-Za-z0-9 _-]{1,50}$")


def _parse_int(value: Any, name: str, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidParameter(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_RE.match(value.strip()):
        return int(value.strip())
    raise InvalidParameter(f"{name} must be an integer, got {value!r}")


def normalize_category(category: Optional[str]) -> Optional[str]:
    """Lower-cased category, or None for "all". Malformed values are rejected."""
    if category is None:
        return None
    if not isinstance(category, str):
        raise InvalidParameter("Category must be a string")
    value = category.strip()
    if not value or value.lower() == "all":
        return None
    if not _CATEGORY_RE.match(value):
        raise InvalidParameter(f"Invalid category: {category!r}")
    return value.lower()


class HeatmapService:
    def __init__(
        self,
        index: ComplaintFilterIndex,
        resolver: ScopeResolver,
        engine: AggregationEngine,
        cache: AggregationCache,
        config: Settings = settings,
        clock=None,
    ):
        self.index = index
        self.resolver = resolver
        self.engine = engine
        self.cache = cache
        self.default_days = config.heatmap_default_days
        self.default_precision = config.heatmap_default_precision
        self.max_window_days = config.heatmap_max_window_days
        self.query_timeout = config.heatmap_query_timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_database(cls, db, cache: AggregationCache, config: Settings = settings, clock=None):
        index = ComplaintFilterIndex(db, clock=clock)
        return cls(
            index=index,
            resolver=ScopeResolver(db),
            engine=AggregationEngine(index),
            cache=cache,
            config=config,
            clock=clock,
        )

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def handle_global(self, days=None, category=None, precision=None) -> HeatmapResponse:
        window_days, category, precision = self._validate(days, category, precision)
        request = AggregationRequest(GlobalScope(), window_days, precision, category)

        bins = await self.cache.get_or_compute(
            request,
            lambda: self.engine.compute(request, None, self.query_timeout),
        )
        return self._response(request, bins)

    async def handle_profile(self, entity_id, days=None, category=None, precision=None) -> HeatmapResponse:
        if entity_id is None or not str(entity_id).strip():
            raise EntityNotFound("Entity ID is required")
        window_days, category, precision = self._validate(days, category, precision)

        try:
            scope = await asyncio.wait_for(self.resolver.resolve(entity_id), self.query_timeout)
        except STORE_TIMEOUT_ERRORS as exc:
            logger.warning("Entity lookup for %r timed out", entity_id)
            raise UpstreamTimeout("Administrative hierarchy lookup timed out") from exc
        except PyMongoError as exc:
            logger.exception("Entity lookup for %r failed", entity_id)
            raise StoreUnavailable("Administrative hierarchy lookup failed") from exc

        request = AggregationRequest(ProfileScope(scope.entity_id), window_days, precision, category)
        bins = await self.cache.get_or_compute(
            request,
            lambda: self.engine.compute(request, scope.predicate, self.query_timeout),
        )
        return self._response(
            request, bins, entity_id=str(entity_id).strip(), entity_kind=scope.kind,
        )

    def _validate(self, days, category, precision) -> tuple[int, Optional[str], int]:
        precision = validate_precision(_parse_int(precision, "Precision", self.default_precision))
        window_days = validate_window_days(_parse_int(days, "Days", self.default_days))
        if window_days > self.max_window_days:
            raise InvalidParameter(f"Days must not exceed {self.max_window_days}")
        return window_days, normalize_category(category), precision

    @staticmethod
    def _response(request: AggregationRequest, bins, **profile) -> HeatmapResponse:
        return HeatmapResponse(
            **profile,
            scope=request.scope.kind,
            window_days=request.window_days,
            category=request.category_label,
            precision=request.precision,
            total_complaints=sum(b.count for b in bins),
            count=len(bins),
            bins=list(bins),
        )

    # ── Invalidation hook ─────────────────────────────────────────────────────

    def notify_complaint_persisted(self, report) -> int:
        """
        Evict cached heatmaps a newly stored complaint could change.

        `report` may be a ComplaintReport, a ComplaintPersistedEvent, or a raw
        complaint document / dict. Returns the number of evicted entries.
        """
        category, created_at = _report_fields(report)
        now = self._clock()
        created_at = created_at or now
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        def affected(fingerprint: AggregationRequest) -> bool:
            window_start = now - timedelta(days=fingerprint.window_days)
            return created_at >= window_start and fingerprint.matches_category(category)

        evicted = self.cache.invalidate(affected)
        logger.info(
            "Complaint persisted (category=%s): evicted %d cached heatmaps",
            category or "unknown", evicted,
        )
        return evicted


def _report_fields(report) -> tuple[Optional[str], Optional[datetime]]:
    if isinstance(report, (ComplaintReport, ComplaintPersistedEvent)):
        return report.category, report.created_at
    if isinstance(report, dict):
        category = report.get("category")
        if isinstance(category, dict):
            category = category.get("primary")
        return category, _parse_created_at(report.get("createdAt") or report.get("created_at"))
    raise TypeError(f"Unsupported complaint payload: {type(report).__name__}")


def _parse_created_at(value) -> Optional[datetime]:
    # Raw payloads forwarded as JSON carry createdAt as an ISO-8601 string.
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            pass
    raise InvalidParameter(f"createdAt must be an ISO-8601 timestamp, got {value!r}")
