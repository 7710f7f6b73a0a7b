"""
aggregation_engine.py — Streams matching complaints into heatmap bins.

ALGORITHM
─────────
One pass over ComplaintFilterIndex.query(...):

    for report in query:
        cell = cell_of(report.lat, report.lon, precision)
        acc[cell.cell_id] += (1, report.severity)

then emit one HeatmapBin per cell, sorted by cellId, with
averageSeverity = severity_sum / count rounded to 2 decimals.

Memory is O(occupied cells) and time is O(matching reports): the store
applies every filter, so non-matching documents are never read.

FAILURES
────────
  bad precision / window  → InvalidParameter, before any store access
  pass exceeds timeout    → UpstreamTimeout (asyncio or driver-side max_time_ms)
  anything else           → logged with traceback, InternalAggregationError

Results are all-or-nothing: a failed pass never yields partial bins.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from civiclens.core.errors import (
    HeatmapError,
    InternalAggregationError,
    InvalidParameter,
    UpstreamTimeout,
)
from civiclens.models.complaint import AggregationRequest
from civiclens.models.heatmap import HeatmapBin
from civiclens.services.filter_index import (
    STORE_TIMEOUT_ERRORS,
    ComplaintFilterIndex,
    JurisdictionPredicate,
)
from civiclens.services.geo_binner import cell_bounds, cell_of, validate_precision

logger = logging.getLogger(__name__)

SEVERITY_DECIMALS = 2

# Same bands the intake service's severity scorer uses.
_PRIORITY_THRESHOLDS = [
    (8.0, "critical"),
    (6.0, "high"),
    (4.0, "medium"),
    (0.0, "low"),
]


def validate_window_days(window_days) -> int:
    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days <= 0:
        raise InvalidParameter(f"Days must be a positive integer, got {window_days!r}")
    return window_days


def priority_for(average_severity: float) -> str:
    for threshold, label in _PRIORITY_THRESHOLDS:
        if average_severity >= threshold:
            return label
    return "low"


@dataclass
class _CellAccumulator:
    count: int = 0
    severity_sum: float = 0.0


class AggregationEngine:
    def __init__(self, index: ComplaintFilterIndex):
        self._index = index

    async def compute(
        self,
        request: AggregationRequest,
        jurisdiction: Optional[JurisdictionPredicate] = None,
        timeout: Optional[float] = None,
    ) -> tuple[HeatmapBin, ...]:
        """
        Aggregate every report matching `request` into bins ordered by cellId.

        `jurisdiction` is the predicate for profile scopes (None = global).
        `timeout` bounds the whole streaming pass, in seconds.
        """
        validate_window_days(request.window_days)
        validate_precision(request.precision)

        query = self._index.query(
            request.window_days,
            category=request.category,
            jurisdiction=jurisdiction,
            timeout=timeout,
        )
        try:
            if timeout is None:
                cells = await self._fold(query, request.precision)
            else:
                cells = await asyncio.wait_for(self._fold(query, request.precision), timeout)
        except STORE_TIMEOUT_ERRORS as exc:
            logger.warning("Heatmap aggregation timed out after %ss: %s", timeout, request)
            raise UpstreamTimeout("Complaint store query timed out") from exc
        except HeatmapError:
            raise
        except Exception as exc:
            logger.exception("Heatmap aggregation failed for %s", request)
            raise InternalAggregationError("Failed to aggregate complaints") from exc

        return tuple(_to_bin(cell_id, acc) for cell_id, acc in sorted(cells.items()))

    async def _fold(self, query, precision: int) -> dict[str, _CellAccumulator]:
        cells: dict[str, _CellAccumulator] = {}
        async for report in query:
            cell_id = cell_of(report.lat, report.lon, precision).cell_id
            acc = cells.get(cell_id)
            if acc is None:
                acc = cells[cell_id] = _CellAccumulator()
            acc.count += 1
            acc.severity_sum += report.severity
        return cells


def _to_bin(cell_id: str, acc: _CellAccumulator) -> HeatmapBin:
    lat, lon = cell_bounds(cell_id).center
    average = round(acc.severity_sum / acc.count, SEVERITY_DECIMALS)
    return HeatmapBin(
        cell_id=cell_id,
        lat=lat,
        lon=lon,
        count=acc.count,
        average_severity=average,
        priority=priority_for(average),
    )
