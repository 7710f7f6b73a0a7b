"""
filter_index.py — Read-only filtered access to the `complaints` collection.

All filter dimensions (time window, category, jurisdiction) are pushed down
into a single MongoDB query so the store's indexes do the work:

  createdAt        ← { createdAt: -1 } index
  category.primary ← { category.primary: 1 } index
  cityId / townId / ucId ← per-level hierarchy indexes

The heatmap engine therefore touches only the matching documents, never the
whole collection.

Filter semantics (AND of everything supplied):
  createdAt >= now - window_days
  category.primary equals `category` ignoring case (None → every category;
      an unknown category simply matches nothing)
  jurisdiction predicate (None → no restriction, i.e. global scope)
  location.coordinates has a second element (documents that cannot be binned,
      including null, empty or one-element coordinates, are excluded from both
      the stream and count(), so the two always agree)
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from pymongo.errors import ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError

from civiclens.models.complaint import ComplaintReport

logger = logging.getLogger(__name__)

COMPLAINTS_COLLECTION = "complaints"

# Everything that means "the store did not answer within budget".
STORE_TIMEOUT_ERRORS = (
    asyncio.TimeoutError,
    ExecutionTimeout,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)

# Fields the engine and the jurisdiction predicate read; nothing else is fetched.
_PROJECTION = {
    "location.coordinates": 1,
    "category.primary": 1,
    "severity.score": 1,
    "createdAt": 1,
    "cityId": 1,
    "townId": 1,
    "ucId": 1,
}

# complaint document field → ComplaintReport attribute
_JURISDICTION_FIELDS = {
    "cityId": "city_id",
    "townId": "town_id",
    "ucId": "uc_id",
}


@dataclass(frozen=True)
class JurisdictionPredicate:
    """
    Membership test for one administrative subtree.

    A report matches when any clause matches, e.g. a city resolves to
    (("cityId", {city}), ("townId", {towns…}), ("ucId", {ucs…})) so reports
    that only carry a town or UC reference are still counted.
    """

    clauses: tuple[tuple[str, frozenset], ...]

    def to_filter(self) -> dict:
        terms = [
            {field: {"$in": sorted(ids, key=str)}}
            for field, ids in self.clauses
            if ids
        ]
        if not terms:
            # An entity with no members matches nothing
            return {"_id": {"$in": []}}
        if len(terms) == 1:
            return terms[0]
        return {"$or": terms}

    def matches(self, report: ComplaintReport) -> bool:
        for field, ids in self.clauses:
            value = getattr(report, _JURISDICTION_FIELDS[field])
            if value is not None and value in ids:
                return True
        return False


class ComplaintQuery:
    """
    Lazy, finite, restartable stream of matching reports.

    Nothing is fetched until iteration starts. Every `async for` opens a fresh
    cursor with the same filter (the window start is fixed when the query is
    built, so restarts see the same window).
    """

    def __init__(self, index: "ComplaintFilterIndex", mongo_filter: dict, timeout: Optional[float]):
        self._index = index
        self.filter = mongo_filter
        self.timeout = timeout

    def __aiter__(self) -> AsyncIterator[ComplaintReport]:
        return self._stream()

    async def _stream(self) -> AsyncIterator[ComplaintReport]:
        self._index.query_count += 1
        cursor = self._index.collection.find(self.filter, _PROJECTION)
        if self.timeout is not None:
            cursor = cursor.max_time_ms(max(1, int(self.timeout * 1000)))
        async for doc in cursor:
            yield ComplaintReport.from_document(doc)


class ComplaintFilterIndex:
    """Builds and runs complaint queries against a Motor database."""

    def __init__(self, db, clock=None):
        self.collection = db[COMPLAINTS_COLLECTION]
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Streaming passes started, one per aggregation
        self.query_count = 0

    def build_filter(
        self,
        window_days: int,
        category: Optional[str] = None,
        jurisdiction: Optional[JurisdictionPredicate] = None,
    ) -> dict:
        since = self._clock() - timedelta(days=window_days)
        clauses: list[dict] = [
            {"createdAt": {"$gte": since}},
            {"location.coordinates.1": {"$exists": True}},
        ]
        if category is not None:
            clauses.append({
                "category.primary": {"$regex": f"^{re.escape(category)}$", "$options": "i"},
            })
        if jurisdiction is not None:
            clauses.append(jurisdiction.to_filter())
        return {"$and": clauses}

    def query(
        self,
        window_days: int,
        category: Optional[str] = None,
        jurisdiction: Optional[JurisdictionPredicate] = None,
        timeout: Optional[float] = None,
    ) -> ComplaintQuery:
        mongo_filter = self.build_filter(window_days, category, jurisdiction)
        logger.debug("Complaint query: %s", mongo_filter)
        return ComplaintQuery(self, mongo_filter, timeout)

    async def count(
        self,
        window_days: int,
        category: Optional[str] = None,
        jurisdiction: Optional[JurisdictionPredicate] = None,
    ) -> int:
        """Count matching reports without streaming them."""
        return await self.collection.count_documents(
            self.build_filter(window_days, category, jurisdiction)
        )
