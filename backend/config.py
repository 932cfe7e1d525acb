"""SafeRoute Backend: Configuration & Constants"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (one level up from backend/)
_ROOT = Path(__file__).resolve().parent.parent
_env_path = _ROOT / ".env"
load_dotenv(_env_path)

# ── Safety grid ──
GRID_CELL_SIZE = float(os.environ.get("GRID_CELL_SIZE", "0.01"))  # degrees, ~1 km
NEUTRAL_SCORE = 0.5

# ── Crime data source (police.uk monthly CSV drops) ──
CRIME_DATA_DIR = Path(os.environ.get("CRIME_DATA_DIR", str(_ROOT / "crimedata")))
CRIME_DATA_MONTHS = int(os.environ.get("CRIME_DATA_MONTHS", "3"))
CRIME_DATA_FORCE = os.environ.get("CRIME_DATA_FORCE", "metropolitan")

# Records outside this box are dropped during ingestion
BOUNDING_BOX = {
    "min_lat": 51.3,
    "max_lat": 51.7,
    "min_lon": -0.5,
    "max_lon": 0.3,
}

# Lighting proxy reference point (central London) and falloff distance
CITY_CENTRE = (51.5074, -0.1278)
LIGHTING_FALLOFF_DEGREES = 0.3

DEFAULT_FACTOR_WEIGHTS: dict[str, float] = {
    "crime": 0.4,
    "collision": 0.25,
    "lighting": 0.2,
    "hazard": 0.15,
}

# Crime type → severity weight (0-1)
DEFAULT_SEVERITY_WEIGHTS: dict[str, float] = {
    "Violence and sexual offences": 1.0,
    "Robbery": 0.9,
    "Burglary": 0.8,
    "Vehicle crime": 0.6,
    "Drugs": 0.7,
    "Possession of weapons": 0.9,
    "Public order": 0.5,
    "Theft from the person": 0.7,
    "Other theft": 0.5,
    "Criminal damage and arson": 0.6,
    "Shoplifting": 0.3,
    "Bicycle theft": 0.4,
    "Other crime": 0.5,
    "Anti-social behaviour": 0.3,
}
UNKNOWN_CATEGORY_SEVERITY = 0.5

SEVERITY_CACHE_SIZE = int(os.environ.get("SEVERITY_CACHE_SIZE", "64"))

# ── Routing ──
MODE_SPEEDS_KMH: dict[str, float] = {
    "walking": 5.0,
    "cycling": 15.0,
    "driving": 30.0,  # urban
}
DEFAULT_MODE = "walking"

OSRM_PROFILES: dict[str, str] = {
    "walking": "foot",
    "cycling": "bike",
    "driving": "driving",
}

OSRM_BASE_URL = os.environ.get("OSRM_BASE_URL", "https://router.project-osrm.org").rstrip("/")
NOMINATIM_BASE_URL = os.environ.get("NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org").rstrip("/")
NOMINATIM_COUNTRY = os.environ.get("NOMINATIM_COUNTRY", "gb")
# west,south,east,north
NOMINATIM_VIEWBOX = os.environ.get("NOMINATIM_VIEWBOX", "-0.510375,51.286760,0.334015,51.691874")
NOMINATIM_USER_AGENT = os.environ.get("NOMINATIM_USER_AGENT", "saferoute-backend/1.0")

PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10"))
ROUTE_CACHE_TTL = int(os.environ.get("ROUTE_CACHE_TTL", "600"))
GEOCODE_CACHE_TTL = int(os.environ.get("GEOCODE_CACHE_TTL", "86400"))

# ── Auth ──
JWT_SECRET = os.environ.get("JWT_SECRET", "")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

# ── Real-time hazard alerts ──
DELIVERY_TIMEOUT_SECONDS = float(os.environ.get("DELIVERY_TIMEOUT_SECONDS", "5"))

_cors_env = os.environ.get("CORS_ORIGINS", "")
CORS_ORIGINS = [o.strip() for o in _cors_env.split(",") if o.strip()] or [
    "http://localhost:3000",
    "http://localhost:3001",
]

# Hazard type → icon used in notification messages
HAZARD_ICONS = {
    "construction": "🚧",
    "accident": "🚗💥",
    "crime": "🚔",
    "flooding": "🌊",
    "poor_lighting": "💡",
    "road_damage": "🕳️",
    "pothole": "🕳️",
    "unsafe_crossing": "⚠️",
    "broken_glass": "🔍",
    "suspicious_activity": "👁️",
    "vandalism": "🎯",
    "other": "⚠️",
}

SEVERITY_COLORS = {
    "low": "green",
    "medium": "yellow",
    "high": "orange",
    "critical": "red",
}

# ── HTTP rate limiting (per client IP) ──
RATE_LIMIT = int(os.environ.get("RATE_LIMIT", "60"))  # requests per window
RATE_WINDOW = 60  # seconds

# ── Server ──
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
