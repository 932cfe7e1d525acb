"""SafeRoute Backend: FastAPI Routes"""

import asyncio
import json
import logging
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import require_bearer
from config import CORS_ORIGINS, RATE_LIMIT, RATE_WINDOW
from crime_loader import load_crime_data
from data_fetchers import NominatimGeocoder, OsrmRoutingProvider, client
from dispatcher import HazardEvent, Location, ProximityDispatcher
from errors import AuthenticationError, ProviderUnavailableError, ValidationError
from grid_index import SpatialGridIndex
from models import (
    DispatchResponse, GeocodeResponse, HazardEventIn, HazardResolvedIn,
    PathScoreRequest, PathScoreResponse, RouteRequest, RouteResponse,
    SafetyScoreRequest, SafetyScoreResponse,
)
from ratelimit import SlidingWindowLimiter
from route_synthesizer import RouteSynthesizer
from scoring import SafetyScorer

logger = logging.getLogger("saferoute")


# ─────────────────────────── Core Services ──────────────────────

index = SpatialGridIndex()
scorer = SafetyScorer(index)
synthesizer = RouteSynthesizer(scorer, OsrmRoutingProvider())
geocoder = NominatimGeocoder()
dispatcher = ProximityDispatcher()


# ─────────────────────────── App Setup ──────────────────────────

app = FastAPI(title="SafeRoute API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ─────────────────────────── Startup / Shutdown ─────────────────

@app.on_event("startup")
async def startup_event():
    """Build the safety grid and start the hazard dispatcher."""
    await asyncio.to_thread(index.rebuild_from, load_crime_data)
    if not index.is_loaded():
        logger.warning("No crime data loaded; safety scores fall back to neutral")
    await dispatcher.start()


@app.on_event("shutdown")
async def shutdown_event():
    await dispatcher.stop()
    await client.aclose()


# ─────────────────────────── Rate Limiting ──────────────────────

limiter = SlidingWindowLimiter(RATE_LIMIT, RATE_WINDOW)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    if not limiter.allow(client_ip):
        return JSONResponse(
            status_code=429,
            content={"detail": f"Rate limit of {limiter.limit} requests per {limiter.window:g}s exceeded"},
            headers={"Retry-After": str(limiter.retry_after(client_ip))},
        )
    return await call_next(request)


# ─────────────────────────── Routing ────────────────────────────

@app.post("/api/routes/calculate", response_model=RouteResponse)
async def calculate_routes(req: RouteRequest):
    comparison = await synthesizer.compute_routes(
        req.fromLat, req.fromLon, req.toLat, req.toLon,
        mode=req.mode,
        priority=req.safetyPriority,
        factor_weights=req.factorWeights,
        severity_overrides=req.severityWeights,
    )
    return comparison.to_dict()


# ─────────────────────────── Safety Scoring ─────────────────────

@app.post("/api/safety/score", response_model=SafetyScoreResponse)
async def safety_score(req: SafetyScoreRequest):
    return scorer.metrics_at(req.lat, req.lon, req.factorWeights, req.severityWeights)


@app.post("/api/safety/path", response_model=PathScoreResponse)
async def safety_path(req: PathScoreRequest):
    coords = []
    for point in req.coordinates:
        if len(point) != 2:
            raise ValidationError("Each coordinate must be a [lat, lon] pair")
        coords.append((point[0], point[1]))
    mean = scorer.score_along_path(coords, req.factorWeights, req.severityWeights)
    return {"meanScore": round(mean, 4), "samples": len(coords)}


# ─────────────────────────── Hazard Fan-out ─────────────────────

def _to_event(req: HazardEventIn) -> HazardEvent:
    return HazardEvent(
        id=req.id,
        hazard_type=req.hazardType,
        severity=req.severity,
        location=Location(req.latitude, req.longitude),
        status=req.status,
        description=req.description,
        reported_at=req.reportedAt,
    )


@app.post("/api/hazards/dispatch", response_model=DispatchResponse)
async def dispatch_hazard(req: HazardEventIn, user_id: str = Depends(require_bearer)):
    notified = await dispatcher.dispatch_hazard(_to_event(req))
    return {"notified": notified}


@app.post("/api/hazards/update", response_model=DispatchResponse)
async def dispatch_hazard_update(req: HazardEventIn, user_id: str = Depends(require_bearer)):
    notified = await dispatcher.dispatch_hazard_update(_to_event(req))
    return {"notified": notified}


@app.post("/api/hazards/resolved", response_model=DispatchResponse)
async def dispatch_hazard_resolved(req: HazardResolvedIn, user_id: str = Depends(require_bearer)):
    notified = await dispatcher.dispatch_hazard_resolved(req.id)
    return {"notified": notified}


# ─────────────────────────── Utility Endpoints ──────────────────

@app.get("/health")
async def health():
    realtime = await dispatcher.status()
    return {
        "status": "ok",
        "index": index.stats(),
        "realtime": {
            "activeConnections": realtime["activeConnections"],
            "subscribers": realtime["subscribers"],
        },
    }


@app.post("/api/index/rebuild")
async def rebuild_index(user_id: str = Depends(require_bearer)):
    logger.info(f"Safety grid rebuild requested by user {user_id}")
    await asyncio.to_thread(index.rebuild_from, load_crime_data)
    return index.stats()


@app.get("/api/geocoding/search", response_model=GeocodeResponse)
async def geocoding_search(q: str = "", limit: int = Query(default=5, ge=1, le=20)):
    try:
        locations = await geocoder.search(q, limit)
    except ProviderUnavailableError:
        locations = []
    return {"locations": locations, "query": q, "total": len(locations)}


@app.get("/api/realtime/status")
async def realtime_status():
    return await dispatcher.status()


# ─────────────────────────── WebSocket ──────────────────────────

def _location_from(data: dict) -> Optional[Location]:
    lat, lon = data.get("latitude"), data.get("longitude")
    if lat is None or lon is None:
        return None
    try:
        return Location(float(lat), float(lon))
    except (TypeError, ValueError):
        raise ValidationError("Invalid coordinates")


@app.websocket("/ws")
async def hazard_socket(websocket: WebSocket, token: Optional[str] = None):
    """Hazard alert channel. Messages are JSON: {"event": name, "data": {...}}."""
    await websocket.accept()
    connection_id = uuid.uuid4().hex

    async def send(event: str, data: dict):
        await websocket.send_json({"event": event, "data": data})

    async def authenticate(credential: Optional[str]) -> bool:
        try:
            user_id = await dispatcher.authenticate(connection_id, credential)
        except AuthenticationError as e:
            await send("auth_error", {"message": str(e)})
            await websocket.close(code=1008)
            return False
        await send("authenticated", {"message": "Authentication successful", "userId": user_id})
        return True

    await dispatcher.connect(connection_id, send)
    try:
        if token is not None and not await authenticate(token):
            return

        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                # Binary frames are not part of the protocol
                await send("error", {"message": "Malformed message"})
                continue
            try:
                message = json.loads(raw)
                event = message.get("event")
                data = message.get("data") or {}
                if not isinstance(data, dict):
                    raise ValueError("data must be an object")
            except (ValueError, AttributeError):
                await send("error", {"message": "Malformed message"})
                continue

            try:
                if event == "authenticate":
                    if not await authenticate(data.get("token")):
                        return
                elif event == "subscribe_hazard_updates":
                    reg = await dispatcher.subscribe(connection_id, _location_from(data), data.get("radius"))
                    await send("subscribed", {
                        "message": "Subscribed to hazard updates",
                        "location": reg.location.as_dict(),
                        "radius": reg.radius_m,
                    })
                elif event == "update_location":
                    reg = await dispatcher.update_location(connection_id, _location_from(data))
                    await send("location_updated", {"location": reg.location.as_dict()})
                elif event == "unsubscribe_hazard_updates":
                    await dispatcher.unregister_subscriber(connection_id)
                    await send("unsubscribed", {"message": "Unsubscribed from hazard updates"})
                else:
                    await send("error", {"message": f"Unknown event '{event}'"})
            except ValidationError as e:
                await send("error", {"message": str(e)})
    except WebSocketDisconnect:
        pass
    finally:
        await dispatcher.disconnect(connection_id)
