"""
geo_binner.py — Deterministic point → grid-cell mapping.

The grid is an equal-angle lat/lon lattice anchored at (-90°, -180°).
Cell edge length halves with every precision step:

  precision 1  →  0.25°        (~28 km)
  precision 5  →  0.015625°    (~1.7 km)   default
  precision 9  →  0.00098°     (~108 m)

Because every edge is 0.25° divided by a power of two and all cells share the
same origin, a cell at precision p+1 always sits inside exactly one cell at
precision p: its row/col indices shifted right by one bit. Dividing by a
power of two is exact in binary floating point, so the nesting also holds for
the computed indices, not just on paper.

Cell ids look like "5:0007351:0015808": precision, row, col, zero-padded so
sorting the ids as strings sorts them by (precision, row, col).

USAGE
─────
    from civiclens.services.geo_binner import cell_of

    cell = cell_of(24.8607, 67.0011, precision=5)
    cell.cell_id   → "5:0007351:0015808"
    cell.center    → (24.8671875, 67.0078125)
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from civiclens.core.errors import InvalidPrecision

MIN_PRECISION = 1
MAX_PRECISION = 9
BASE_EDGE_DEGREES = 0.25

_INDEX_WIDTH = 7  # max col index at precision 9 is 368 639


@dataclass(frozen=True)
class GeoCell:
    cell_id: str
    precision: int
    row: int
    col: int
    center: tuple[float, float]                   # (lat, lon)
    bbox: tuple[float, float, float, float]       # (min_lat, min_lon, max_lat, max_lon)


def validate_precision(precision) -> int:
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise InvalidPrecision(f"Precision must be an integer, got {precision!r}")
    if not MIN_PRECISION <= precision <= MAX_PRECISION:
        raise InvalidPrecision(
            f"Precision must be between {MIN_PRECISION} and {MAX_PRECISION}, got {precision}"
        )
    return precision


def edge_degrees(precision: int) -> float:
    """Cell edge length in degrees at the given precision."""
    validate_precision(precision)
    return BASE_EDGE_DEGREES / (1 << (precision - 1))


def _grid_shape(precision: int) -> tuple[int, int]:
    scale = 1 << (precision - 1)
    return int(180 / BASE_EDGE_DEGREES) * scale, int(360 / BASE_EDGE_DEGREES) * scale


def _wrap_longitude(lon: float) -> float:
    # [-180, 180): +180 and -180 are the same meridian
    return ((lon + 180.0) % 360.0) - 180.0


def format_cell_id(precision: int, row: int, col: int) -> str:
    return f"{precision}:{row:0{_INDEX_WIDTH}d}:{col:0{_INDEX_WIDTH}d}"


def parse_cell_id(cell_id: str) -> tuple[int, int, int]:
    """Split a cell id into (precision, row, col)."""
    try:
        precision, row, col = (int(part) for part in cell_id.split(":"))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Malformed cell id: {cell_id!r}") from exc
    validate_precision(precision)
    rows, cols = _grid_shape(precision)
    if not (0 <= row < rows and 0 <= col < cols):
        raise ValueError(f"Cell id out of range: {cell_id!r}")
    return precision, row, col


def _make_cell(precision: int, row: int, col: int) -> GeoCell:
    edge = edge_degrees(precision)
    min_lat = -90.0 + row * edge
    min_lon = -180.0 + col * edge
    return GeoCell(
        cell_id=format_cell_id(precision, row, col),
        precision=precision,
        row=row,
        col=col,
        center=(min_lat + edge / 2, min_lon + edge / 2),
        bbox=(min_lat, min_lon, min_lat + edge, min_lon + edge),
    )


def cell_of(lat: float, lon: float, precision: int) -> GeoCell:
    """
    Map a coordinate to its grid cell.

    Longitude wraps at ±180°; latitude is clipped to [-90°, 90°].
    Raises InvalidPrecision for precision outside [1..9] and ValueError for
    non-finite coordinates.
    """
    validate_precision(precision)
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ValueError(f"Non-finite coordinate: ({lat}, {lon})")

    edge = edge_degrees(precision)
    rows, cols = _grid_shape(precision)

    lat = min(max(lat, -90.0), 90.0)
    row = min(int(math.floor((lat + 90.0) / edge)), rows - 1)  # +90 lands in the top row
    col = min(int(math.floor((_wrap_longitude(lon) + 180.0) / edge)), cols - 1)
    return _make_cell(precision, row, col)


def cell_bounds(cell_id: str) -> GeoCell:
    """Rebuild the full GeoCell (center, bbox) from its id."""
    return _make_cell(*parse_cell_id(cell_id))


def parent_cell(cell_id: str, precision: int) -> str:
    """Id of the coarser cell at `precision` that contains `cell_id`."""
    own_precision, row, col = parse_cell_id(cell_id)
    validate_precision(precision)
    if precision > own_precision:
        raise ValueError(
            f"Parent precision {precision} is finer than cell precision {own_precision}"
        )
    shift = own_precision - precision
    return format_cell_id(precision, row >> shift, col >> shift)
