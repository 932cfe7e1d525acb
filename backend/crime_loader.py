"""Crime incident loader for police.uk street-level CSV drops.

Expected layout (one directory per month, one CSV per force):

    crimedata/
      2024-01/2024-01-metropolitan-street.csv
      2024-02/2024-02-metropolitan-street.csv
      ...

Only the most recent months are loaded. Rows with unparseable coordinates,
no crime type, or a position outside the configured bounding box are
dropped silently.
"""

import csv
import logging
import math
import time
from pathlib import Path
from typing import Iterable, Mapping, Optional

from config import (
    BOUNDING_BOX,
    CRIME_DATA_DIR,
    CRIME_DATA_FORCE,
    CRIME_DATA_MONTHS,
    DEFAULT_SEVERITY_WEIGHTS,
    UNKNOWN_CATEGORY_SEVERITY,
)
from errors import DataIngestionError
from grid_index import IncidentRecord

logger = logging.getLogger("saferoute.ingest")


def severity_for(category: str, overrides: Optional[Mapping[str, float]] = None) -> float:
    """Severity weight for a crime type, preferring caller overrides."""
    if overrides and category in overrides:
        return float(overrides[category])
    return DEFAULT_SEVERITY_WEIGHTS.get(category, UNKNOWN_CATEGORY_SEVERITY)


def _to_float(value) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _in_box(lat: float, lon: float, bbox: Mapping[str, float]) -> bool:
    return (bbox["min_lat"] <= lat <= bbox["max_lat"]
            and bbox["min_lon"] <= lon <= bbox["max_lon"])


def parse_row(
    row: Mapping[str, str],
    severity_weights: Optional[Mapping[str, float]] = None,
    bbox: Optional[Mapping[str, float]] = BOUNDING_BOX,
) -> Optional[IncidentRecord]:
    lon = _to_float(row.get("Longitude"))
    lat = _to_float(row.get("Latitude"))
    category = (row.get("Crime type") or "").strip()
    if lon is None or lat is None or not category:
        return None
    if bbox is not None and not _in_box(lat, lon, bbox):
        return None
    severity = min(1.0, max(0.0, severity_for(category, severity_weights)))
    return IncidentRecord(
        longitude=lon,
        latitude=lat,
        category=category,
        severity_weight=severity,
        period=(row.get("Month") or "").strip(),
    )


def ingest_rows(
    rows: Iterable[Mapping[str, str]],
    severity_weights: Optional[Mapping[str, float]] = None,
    bbox: Optional[Mapping[str, float]] = BOUNDING_BOX,
) -> list[IncidentRecord]:
    records = []
    dropped = 0
    for row in rows:
        rec = parse_row(row, severity_weights, bbox)
        if rec is None:
            dropped += 1
            continue
        records.append(rec)
    if dropped:
        logger.debug(f"Dropped {dropped} malformed or out-of-area rows")
    return records


def load_csv_file(path: Path, bbox: Optional[Mapping[str, float]] = BOUNDING_BOX) -> list[IncidentRecord]:
    with open(path, newline="", encoding="utf-8") as f:
        return ingest_rows(csv.DictReader(f), bbox=bbox)


def discover_files(
    data_dir: Path = CRIME_DATA_DIR,
    months: int = CRIME_DATA_MONTHS,
    force: str = CRIME_DATA_FORCE,
) -> list[Path]:
    """Most recent `months` month directories, one force CSV from each."""
    if not data_dir.is_dir():
        raise DataIngestionError(f"Crime data directory not found: {data_dir}")

    month_dirs = sorted(d for d in data_dir.iterdir() if d.is_dir() and d.name.startswith("20"))
    if months <= 0:
        return []
    files = []
    for month_dir in month_dirs[-months:]:
        match = next(
            (p for p in sorted(month_dir.glob("*.csv")) if force in p.name),
            None,
        )
        if match is not None:
            files.append(match)
    return files


def load_crime_data(
    data_dir: Path = CRIME_DATA_DIR,
    months: int = CRIME_DATA_MONTHS,
    force: str = CRIME_DATA_FORCE,
) -> list[IncidentRecord]:
    """Load recent incident records. Raises DataIngestionError when nothing usable is found."""
    logger.info(f"Loading crime data from {data_dir}...")
    t0 = time.perf_counter()

    records: list[IncidentRecord] = []
    for path in discover_files(data_dir, months, force):
        try:
            batch = load_csv_file(path)
        except (OSError, csv.Error, UnicodeDecodeError) as e:
            logger.warning(f"Skipping unreadable crime file {path.name}: {e}")
            continue
        logger.info(f"Loaded {len(batch)} records from {path.name}")
        records.extend(batch)

    if not records:
        raise DataIngestionError(f"No usable crime records under {data_dir}")

    dt = (time.perf_counter() - t0) * 1000
    logger.info(f"Crime data loaded: {len(records)} records in {dt:.0f}ms")
    return records
