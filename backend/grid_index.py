"""SafeRoute Backend: Spatial safety grid

Incident points are bucketed into fixed-size lat/lon cells. A build
produces an immutable GridSnapshot; SpatialGridIndex swaps the active
snapshot only once the new one is complete, so readers always see
either the old grid or the new one.
"""

import itertools
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, NamedTuple, Optional

from config import GRID_CELL_SIZE
from errors import DataIngestionError, EmptyInputError

logger = logging.getLogger("saferoute.grid")

CellKey = tuple[int, int]

_versions = itertools.count(1)


@dataclass(frozen=True)
class IncidentRecord:
    longitude: float
    latitude: float
    category: str
    severity_weight: float
    period: str = ""


class CategoryTally(NamedTuple):
    count: int
    severity: float


@dataclass(frozen=True)
class GridCell:
    key: CellKey
    incident_count: int
    cumulative_severity: float
    center: tuple[float, float]  # (lat, lon), cell-rounded
    by_category: Mapping[str, CategoryTally] = field(default_factory=dict, compare=False)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def cell_key(lat: float, lon: float, cell_size: float = GRID_CELL_SIZE) -> CellKey:
    """Deterministic cell key: (round(lat / size), round(lon / size))."""
    return (_round_half_up(lat / cell_size), _round_half_up(lon / cell_size))


def cell_center(key: CellKey, cell_size: float = GRID_CELL_SIZE) -> tuple[float, float]:
    return (round(key[0] * cell_size, 6), round(key[1] * cell_size, 6))


class GridSnapshot:
    """Read-only view of one index build."""

    def __init__(
        self,
        cells: dict[CellKey, GridCell],
        cell_size: float,
        record_count: int,
        version: Optional[int] = None,
    ):
        self._cells = MappingProxyType(dict(cells))
        self.cell_size = cell_size
        self.record_count = record_count
        self.version = version if version is not None else next(_versions)
        self.built_at = datetime.now(timezone.utc)
        self.max_count = max((c.incident_count for c in cells.values()), default=0)
        self.max_severity = max((c.cumulative_severity for c in cells.values()), default=0.0)

    @property
    def cells(self) -> Mapping[CellKey, GridCell]:
        return self._cells

    def __len__(self) -> int:
        return len(self._cells)

    def cell_for(self, lat: float, lon: float) -> CellKey:
        return cell_key(lat, lon, self.cell_size)

    def cell_at(self, lat: float, lon: float) -> Optional[GridCell]:
        return self._cells.get(self.cell_for(lat, lon))

    def neighbors(self, lat: float, lon: float, ring_radius: int = 1) -> list[GridCell]:
        """Existing cells in the (2r+1)² block around a point, centre excluded."""
        if ring_radius < 0:
            raise ValueError("ring_radius must be >= 0")
        c_lat, c_lon = self.cell_for(lat, lon)
        found = []
        for d_lat in range(-ring_radius, ring_radius + 1):
            for d_lon in range(-ring_radius, ring_radius + 1):
                if d_lat == 0 and d_lon == 0:
                    continue
                cell = self._cells.get((c_lat + d_lat, c_lon + d_lon))
                if cell is not None:
                    found.append(cell)
        return found

    def with_severity_overrides(self, overrides: Mapping[str, float]) -> "GridSnapshot":
        """Re-aggregate cumulative severity with a custom category → weight map.

        Categories absent from `overrides` keep their ingested severity.
        """
        cells = {}
        for key, cell in self._cells.items():
            total = 0.0
            for category, tally in cell.by_category.items():
                if category in overrides:
                    total += tally.count * float(overrides[category])
                else:
                    total += tally.severity
            cells[key] = GridCell(
                key=key,
                incident_count=cell.incident_count,
                cumulative_severity=total,
                center=cell.center,
                by_category=cell.by_category,
            )
        return GridSnapshot(cells, self.cell_size, self.record_count)

    def stats(self) -> dict:
        return {
            "totalRecords": self.record_count,
            "gridCells": len(self._cells),
            "maxCount": self.max_count,
            "maxSeverity": round(self.max_severity, 3),
            "version": self.version,
            "builtAt": self.built_at.isoformat(),
        }


def build_snapshot(records: Iterable[IncidentRecord], cell_size: float = GRID_CELL_SIZE) -> GridSnapshot:
    """Single pass over the records: bucket, count and sum severity per cell."""
    counts: dict[CellKey, int] = {}
    severity: dict[CellKey, float] = {}
    tallies: dict[CellKey, dict[str, list]] = {}
    n = 0
    for rec in records:
        key = cell_key(rec.latitude, rec.longitude, cell_size)
        if key not in counts:
            counts[key] = 0
            severity[key] = 0.0
            tallies[key] = {}
        counts[key] += 1
        severity[key] += rec.severity_weight
        tally = tallies[key].setdefault(rec.category, [0, 0.0])
        tally[0] += 1
        tally[1] += rec.severity_weight
        n += 1

    if n == 0:
        raise EmptyInputError("Cannot build safety grid from zero incident records")

    cells = {
        key: GridCell(
            key=key,
            incident_count=counts[key],
            cumulative_severity=severity[key],
            center=cell_center(key, cell_size),
            by_category=MappingProxyType(
                {cat: CategoryTally(t[0], t[1]) for cat, t in tallies[key].items()}
            ),
        )
        for key in counts
    }
    return GridSnapshot(cells, cell_size, n)


class SpatialGridIndex:
    """Holds the active GridSnapshot and swaps it atomically on rebuild."""

    def __init__(self, cell_size: float = GRID_CELL_SIZE):
        self.cell_size = cell_size
        self._snapshot: Optional[GridSnapshot] = None
        self._build_lock = threading.Lock()

    @property
    def snapshot(self) -> Optional[GridSnapshot]:
        return self._snapshot

    def is_loaded(self) -> bool:
        return self._snapshot is not None

    def build(self, records: Iterable[IncidentRecord]) -> GridSnapshot:
        """Build a new snapshot and make it current. Raises EmptyInputError."""
        with self._build_lock:
            t0 = time.perf_counter()
            snapshot = build_snapshot(records, self.cell_size)
            self._snapshot = snapshot
            dt = (time.perf_counter() - t0) * 1000
        logger.info(
            f"Safety grid built: {snapshot.record_count} records in "
            f"{len(snapshot)} cells ({dt:.0f}ms, version {snapshot.version})"
        )
        return snapshot

    def rebuild_from(self, loader: Callable[[], Iterable[IncidentRecord]]) -> Optional[GridSnapshot]:
        """Reload from the bulk source. On failure the current snapshot stays active."""
        try:
            return self.build(loader())
        except DataIngestionError as e:
            logger.warning(f"Safety grid rebuild skipped: {e}")
            return self._snapshot

    def cell_for(self, lat: float, lon: float) -> CellKey:
        return cell_key(lat, lon, self.cell_size)

    def neighbors(self, lat: float, lon: float, ring_radius: int = 1) -> list[GridCell]:
        snapshot = self._snapshot
        if snapshot is None:
            return []
        return snapshot.neighbors(lat, lon, ring_radius)

    def stats(self) -> dict:
        snapshot = self._snapshot
        if snapshot is None:
            return {"totalRecords": 0, "gridCells": 0, "loaded": False}
        return {**snapshot.stats(), "loaded": True}
