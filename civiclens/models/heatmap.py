"""
heatmap.py — Pydantic models for the complaint heatmap API.

Field names are snake_case in Python and camelCase on the wire
(cellId, averageSeverity, windowDays, ...) to match the map dashboard's
existing contract. Routes serialise by alias.

Response shape for GET /api/v1/complaints/heatmap/global:

  {
    "success": true,
    "scope": "global",
    "windowDays": 30,
    "category": "all",
    "precision": 5,
    "totalComplaints": 128,
    "count": 17,
    "bins": [
      { "cellId": "5:0000000:0000000", "lat": 24.86, "lon": 67.01,
        "count": 12, "averageSeverity": 6.25, "priority": "high" },
      ...
    ]
  }

The profile variant adds entityId and entityKind.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HeatmapBin(CamelModel):
    """Complaint density inside one grid cell."""

    model_config = ConfigDict(frozen=True)  # shared between cached results

    cell_id: str             # "{precision}:{row}:{col}", unique per cell
    lat: float               # cell centre
    lon: float
    count: int
    average_severity: float  # mean severity score (1–10), 2 decimals
    priority: str            # "critical" | "high" | "medium" | "low"


class HeatmapResponse(CamelModel):
    """Success payload for both heatmap scopes."""

    success: bool = True
    scope: Literal["global", "profile"]
    entity_id: Optional[str] = None    # profile only — id as requested
    entity_kind: Optional[str] = None  # profile only — "city" | "town" | "uc"
    window_days: int
    category: str                      # "all" when unfiltered
    precision: int
    total_complaints: int              # Σ bin.count
    count: int                         # number of bins
    bins: list[HeatmapBin]


class ErrorResponse(BaseModel):
    """Structured failure payload rendered by the HeatmapError handler."""

    success: bool = False
    message: str
    code: str


class ComplaintPersistedEvent(CamelModel):
    """
    Body of POST /api/v1/complaints/heatmap/invalidate.

    Sent by the intake service after it stores a new complaint. Only the
    fields that decide which cached heatmaps could change are needed.
    """

    complaint_id: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=50)
    created_at: Optional[datetime] = None  # defaults to "now"


class InvalidationResponse(CamelModel):
    success: bool = True
    evicted: int
    data_version: int
