"""
errors.py — Failure taxonomy for the heatmap engine.

Every failure the engine reports to a caller is a HeatmapError subclass.
Each carries the HTTP status and the machine-readable code that the
exception handler in main.py renders as:

    { "success": false, "message": "...", "code": "INVALID_PARAMETER" }

  InvalidParameter          400  bad precision / days / category (raised before any I/O)
  InvalidPrecision          400  GeoBinner precision outside [1..9]
  EntityNotFound            404  missing or unknown profile entity id
  UpstreamTimeout           504  store query exceeded its budget (caller may retry)
  InternalAggregationError  500  unexpected fold failure (always logged)
  StoreUnavailable          503  MongoDB not connected (degraded mode)
"""


class HeatmapError(Exception):
    status_code = 500
    code = "HEATMAP_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"success": False, "message": self.message, "code": self.code}


class InvalidParameter(HeatmapError):
    status_code = 400
    code = "INVALID_PARAMETER"


class InvalidPrecision(InvalidParameter):
    pass


class EntityNotFound(HeatmapError):
    status_code = 404
    code = "ENTITY_NOT_FOUND"


class UpstreamTimeout(HeatmapError):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class InternalAggregationError(HeatmapError):
    status_code = 500
    code = "INTERNAL_AGGREGATION_ERROR"


class StoreUnavailable(HeatmapError):
    status_code = 503
    code = "STORE_UNAVAILABLE"
