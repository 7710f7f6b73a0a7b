"""
complaint.py — Internal value types shared by the heatmap services.

These are plain dataclasses, not Pydantic models: they never cross the HTTP
boundary directly and must be hashable (AggregationRequest is the cache key).

  ComplaintReport     — read-only view of one `complaints` document
  GlobalScope         — no jurisdiction restriction
  ProfileScope        — bound to one administrative entity (canonical _id)
  AggregationRequest  — everything that determines a heatmap result

Document shape in the `complaints` collection (owned by the intake service):

  {
    "location": { "type": "Point", "coordinates": [lng, lat] },
    "category": { "primary": "Roads", ... },
    "severity": { "score": 6.4, "priority": "high" },
    "createdAt": ISODate(...),
    "cityId": ObjectId, "townId": ObjectId, "ucId": ObjectId
  }
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Optional, Union

# Severity scale used by the intake service's scorer (1–10).
DEFAULT_SEVERITY = 5.0

# Category labels produced by the intake classifier. Anything else is still
# accepted as a filter and simply matches nothing.
KNOWN_CATEGORIES = ("Roads", "Water", "Garbage", "Electricity", "Others")


@dataclass(frozen=True)
class ComplaintReport:
    id: Optional[str]
    lat: float
    lon: float
    category: Optional[str]
    severity: float
    created_at: Optional[datetime]
    city_id: Any = None
    town_id: Any = None
    uc_id: Any = None

    @classmethod
    def from_document(cls, doc: dict) -> "ComplaintReport":
        """Build a report from a raw Mongo document (coordinates are [lng, lat])."""
        lng, lat = doc["location"]["coordinates"][:2]
        category = doc.get("category") or {}
        return cls(
            id=str(doc["_id"]) if doc.get("_id") is not None else None,
            lat=float(lat),
            lon=float(lng),
            category=category.get("primary") if isinstance(category, dict) else category,
            severity=_severity_score(doc.get("severity")),
            created_at=doc.get("createdAt"),
            city_id=doc.get("cityId"),
            town_id=doc.get("townId"),
            uc_id=doc.get("ucId"),
        )


def _severity_score(raw) -> float:
    # Older documents carry no severity block; the scorer's default applies.
    if isinstance(raw, dict):
        raw = raw.get("score")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return DEFAULT_SEVERITY
    return float(raw)


# ── Scope ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GlobalScope:
    kind: ClassVar[str] = "global"


@dataclass(frozen=True)
class ProfileScope:
    entity_id: str  # canonical ObjectId string, not the user-supplied code
    kind: ClassVar[str] = "profile"


Scope = Union[GlobalScope, ProfileScope]


@dataclass(frozen=True)
class AggregationRequest:
    """
    Fully determines a heatmap result for fixed underlying data.

    Doubles as the cache fingerprint, so every field must be canonical:
    category is lower-cased (None means all categories).
    """

    scope: Scope
    window_days: int
    precision: int
    category: Optional[str] = None

    @property
    def category_label(self) -> str:
        return self.category or "all"

    def matches_category(self, category: Optional[str]) -> bool:
        if self.category is None:
            return True
        return category is not None and category.lower() == self.category
