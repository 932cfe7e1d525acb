"""SafeRoute Backend: Pydantic Models"""

from typing import Any, Optional
from pydantic import BaseModel, Field


# ── Routing ──

class RouteRequest(BaseModel):
    fromLat: float = Field(ge=-90, le=90)
    fromLon: float = Field(ge=-180, le=180)
    toLat: float = Field(ge=-90, le=90)
    toLon: float = Field(ge=-180, le=180)
    mode: str = "walking"  # walking, cycling, driving
    safetyPriority: float = Field(default=0.5, ge=0, le=1)
    factorWeights: Optional[dict[str, float]] = None  # crime, collision, lighting, hazard
    severityWeights: Optional[dict[str, float]] = None  # crime type → 0-1


class RouteInstruction(BaseModel):
    instruction: str
    distance: float
    duration: float


class RoutePlanOut(BaseModel):
    coordinates: list[list[float]]  # [lat, lon]
    distance: float  # km
    time: float  # minutes
    safetyScore: float
    routeCost: float
    type: str  # fastest | safest
    instructions: list[RouteInstruction] = []
    fallback: bool = False
    modified: bool = False


class RouteResponse(BaseModel):
    fastest: RoutePlanOut
    safest: RoutePlanOut
    provider: str
    mode: str
    safetyPriority: float
    factorWeights: dict[str, float]


# ── Safety scoring ──

class SafetyScoreRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    factorWeights: Optional[dict[str, float]] = None
    severityWeights: Optional[dict[str, float]] = None


class CellRef(BaseModel):
    latKey: int
    lonKey: int


class SafetyScoreResponse(BaseModel):
    crimeComponent: float
    lightingComponent: float
    collisionComponent: float
    hazardComponent: float
    composite: float
    incidentCount: int
    source: str  # cell | neighbors | default
    cell: CellRef
    factorWeights: dict[str, float]


class PathScoreRequest(BaseModel):
    coordinates: list[list[float]] = Field(min_length=1)  # [lat, lon]
    factorWeights: Optional[dict[str, float]] = None
    severityWeights: Optional[dict[str, float]] = None


class PathScoreResponse(BaseModel):
    meanScore: float
    samples: int


# ── Hazards ──

class HazardEventIn(BaseModel):
    id: Any
    hazardType: str = "other"
    severity: str = "medium"  # low, medium, high, critical
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    status: str = "active"
    description: str = ""
    reportedAt: Optional[str] = None


class HazardResolvedIn(BaseModel):
    id: Any


class DispatchResponse(BaseModel):
    notified: int


# ── Geocoding ──

class GeocodeAddress(BaseModel):
    houseNumber: Optional[str] = None
    road: Optional[str] = None
    suburb: Optional[str] = None
    postcode: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    country: Optional[str] = None


class GeocodeResult(BaseModel):
    id: int
    displayName: str
    name: Optional[str] = None
    lat: float
    lon: float
    address: GeocodeAddress
    type: Optional[str] = None
    importance: Optional[float] = None


class GeocodeResponse(BaseModel):
    locations: list[GeocodeResult]
    query: str
    total: int
