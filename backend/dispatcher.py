"""SafeRoute Backend: Real-time hazard proximity dispatcher

One asyncio task owns the connection and subscriber registries. Every
lifecycle change and every fan-out target scan is an op on its queue, so
mutations and scans never interleave. Network sends happen outside the
actor, concurrently and with a per-send timeout; failed connections are
evicted through another op.

Connection states:
    UNAUTHENTICATED → AUTHENTICATED → SUBSCRIBED → (AUTHENTICATED | DISCONNECTED)
"""

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Protocol

from auth import CredentialVerifier, verifier as default_verifier
from config import DELIVERY_TIMEOUT_SECONDS, HAZARD_ICONS, SEVERITY_COLORS
from errors import AuthenticationError, ValidationError
from geo import EARTH_RADIUS_M, haversine_m, is_valid_coordinate

logger = logging.getLogger("saferoute.dispatcher")

Sink = Callable[[str, dict], Awaitable[None]]


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    def as_dict(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True)
class SubscriberRegistration:
    connection_id: str
    user_id: str
    location: Location
    radius_m: float
    subscribed_at: datetime


@dataclass(frozen=True)
class HazardEvent:
    id: Any
    hazard_type: str
    severity: str
    location: Location
    status: str = "active"
    description: str = ""
    reported_at: Optional[str] = None


@dataclass
class _Session:
    connection_id: str
    sink: Sink
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    user_id: Optional[str] = None


@dataclass(frozen=True)
class _Target:
    registration: SubscriberRegistration
    sink: Sink
    distance_m: Optional[float] = None


# ── Notification formatting ──────────────────────────────────────


def _urgency(severity: str) -> str:
    if severity == "critical":
        return "high"
    if severity == "high":
        return "medium"
    return "normal"


def format_notification(event: HazardEvent, event_type: str = "new_hazard", distance_m: Optional[float] = None) -> dict:
    icon = HAZARD_ICONS.get(event.hazard_type, "⚠️")
    if event_type == "new_hazard":
        message = f"{icon} New {event.severity} risk: {event.hazard_type.replace('_', ' ')} reported nearby"
    else:
        message = f"{icon} Hazard status updated"

    hazard = {
        "id": event.id,
        "hazardType": event.hazard_type,
        "severity": event.severity,
        "severityColor": SEVERITY_COLORS.get(event.severity, "yellow"),
        "description": event.description,
        "location": event.location.as_dict(),
        "status": event.status,
    }
    if distance_m is not None:
        hazard["distanceMeters"] = round(distance_m)

    return {
        "type": event_type,
        "hazard": hazard,
        "message": message,
        "timestamp": event.reported_at or datetime.now(timezone.utc).isoformat(),
        "urgency": _urgency(event.severity),
    }


# ── Scan strategies ──────────────────────────────────────────────


class ScanStrategy(Protocol):
    """Narrows the registrations that could be in range of a point.

    Candidates are re-checked with the exact haversine distance, so a
    strategy may over-report but must never omit an in-range subscriber.
    """

    def add(self, registration: SubscriberRegistration) -> None: ...

    def remove(self, connection_id: str) -> None: ...

    def candidates(
        self, registrations: Mapping[str, SubscriberRegistration], lat: float, lon: float
    ) -> Iterable[SubscriberRegistration]: ...


class LinearScan:
    """Every registration is a candidate. O(subscribers) per event."""

    def add(self, registration: SubscriberRegistration) -> None:
        pass

    def remove(self, connection_id: str) -> None:
        pass

    def candidates(self, registrations, lat, lon):
        return list(registrations.values())


class GridBucketScan:
    """Registrations bucketed by every coarse cell their radius circle may touch."""

    MAX_CELLS = 10_000

    def __init__(self, bucket_degrees: float = 0.05):
        if bucket_degrees <= 0:
            raise ValueError("bucket_degrees must be positive")
        self.size = bucket_degrees
        self._buckets: dict[tuple[int, int], set[str]] = defaultdict(set)
        self._cells: dict[str, list[tuple[int, int]]] = {}
        self._wide: set[str] = set()  # circles too large or near a pole/antimeridian

    def _bucket(self, lat: float, lon: float) -> tuple[int, int]:
        return (math.floor(lat / self.size), math.floor(lon / self.size))

    def _cover(self, reg: SubscriberRegistration) -> Optional[list[tuple[int, int]]]:
        lat, lon = reg.location.latitude, reg.location.longitude
        # 1.5x margin over the angular radius
        d_lat = math.degrees(reg.radius_m / EARTH_RADIUS_M) * 1.5
        cos_lat = math.cos(math.radians(min(90.0, abs(lat) + d_lat)))
        if cos_lat < 0.01:
            return None
        d_lon = d_lat / cos_lat
        if lat - d_lat < -90 or lat + d_lat > 90 or lon - d_lon < -180 or lon + d_lon > 180:
            return None
        lo = self._bucket(lat - d_lat, lon - d_lon)
        hi = self._bucket(lat + d_lat, lon + d_lon)
        if (hi[0] - lo[0] + 1) * (hi[1] - lo[1] + 1) > self.MAX_CELLS:
            return None
        return [(i, j) for i in range(lo[0], hi[0] + 1) for j in range(lo[1], hi[1] + 1)]

    def add(self, registration: SubscriberRegistration) -> None:
        self.remove(registration.connection_id)
        cells = self._cover(registration)
        if cells is None:
            self._wide.add(registration.connection_id)
            return
        for cell in cells:
            self._buckets[cell].add(registration.connection_id)
        self._cells[registration.connection_id] = cells

    def remove(self, connection_id: str) -> None:
        self._wide.discard(connection_id)
        for cell in self._cells.pop(connection_id, []):
            bucket = self._buckets.get(cell)
            if bucket is None:
                continue
            bucket.discard(connection_id)
            if not bucket:
                del self._buckets[cell]

    def candidates(self, registrations, lat, lon):
        ids = self._buckets.get(self._bucket(lat, lon), set()) | self._wide
        return [registrations[cid] for cid in ids if cid in registrations]


# ── Validation ───────────────────────────────────────────────────


def _coerce_location(latitude, longitude) -> Location:
    if latitude is None or longitude is None or latitude == "" or longitude == "":
        raise ValidationError("Location required")
    if not is_valid_coordinate(latitude, longitude):
        raise ValidationError("Invalid coordinates")
    return Location(float(latitude), float(longitude))


def _coerce_radius(radius) -> float:
    if radius is None or radius == "":
        raise ValidationError("Radius required")
    try:
        r = float(radius)
    except (TypeError, ValueError):
        raise ValidationError("Radius must be a number")
    if not math.isfinite(r) or r <= 0:
        raise ValidationError("Radius must be a positive number of metres")
    return r


# ── Dispatcher ───────────────────────────────────────────────────


class ProximityDispatcher:
    def __init__(
        self,
        verifier: Optional[CredentialVerifier] = None,
        scan: Optional[ScanStrategy] = None,
        delivery_timeout: float = DELIVERY_TIMEOUT_SECONDS,
    ):
        self.verifier = verifier or default_verifier
        self.scan = scan or LinearScan()
        self.delivery_timeout = delivery_timeout

        # Owned by the actor task
        self._sessions: dict[str, _Session] = {}
        self._registrations: dict[str, SubscriberRegistration] = {}

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ── Actor plumbing ──

    async def start(self):
        loop = asyncio.get_running_loop()
        if self._worker is not None and not self._worker.done() and self._loop is loop:
            return
        self._loop = loop
        self._queue = asyncio.Queue()
        self._worker = loop.create_task(self._run(self._queue), name="proximity-dispatcher")
        logger.info("Proximity dispatcher started")

    async def stop(self):
        """Stop the actor. Ops still queued are cancelled, so their callers never hang."""
        worker, queue = self._worker, self._queue
        self._worker = None
        self._queue = None
        if worker is None:
            return
        if self._loop is not asyncio.get_running_loop():
            # The old loop owns the pending futures; nothing can await them any more
            if not worker.done():
                worker.cancel()
            return
        if not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        pending = 0
        while queue is not None and not queue.empty():
            _, fut = queue.get_nowait()
            if not fut.done():
                fut.cancel()
                pending += 1
        logger.info(f"Proximity dispatcher stopped ({pending} pending ops cancelled)")

    async def _run(self, queue: asyncio.Queue):
        while True:
            op, fut = await queue.get()
            try:
                result = op()
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
            else:
                if not fut.done():
                    fut.set_result(result)

    async def _call(self, op: Callable[[], Any]) -> Any:
        await self.start()
        fut = asyncio.get_running_loop().create_future()
        await self._queue.put((op, fut))
        return await fut

    # ── Connection lifecycle ──

    async def connect(self, connection_id: str, sink: Sink) -> None:
        def op():
            self._sessions[connection_id] = _Session(connection_id, sink)

        await self._call(op)
        logger.debug(f"Client connected: {connection_id}")

    async def authenticate(self, connection_id: str, credential: Optional[str]) -> str:
        """Verify the credential. Failure disconnects the connection and re-raises."""
        try:
            user_id = self.verifier.verify(credential)
        except AuthenticationError:
            await self.disconnect(connection_id)
            logger.warning(f"Authentication failed for connection {connection_id}")
            raise

        def op():
            session = self._sessions.get(connection_id)
            if session is None:
                raise ValidationError("Unknown connection")
            session.user_id = user_id
            if session.state == ConnectionState.UNAUTHENTICATED:
                session.state = ConnectionState.AUTHENTICATED
            return user_id

        result = await self._call(op)
        logger.info(f"Connection {connection_id} authenticated as user {user_id}")
        return result

    async def subscribe(self, connection_id: str, location: Optional[Location], radius) -> SubscriberRegistration:
        """Register the connection's location and radius. Rejected without a state change on bad input."""
        if location is None:
            raise ValidationError("Location required")
        location = _coerce_location(location.latitude, location.longitude)
        radius_m = _coerce_radius(radius)

        def op():
            session = self._sessions.get(connection_id)
            if session is None:
                raise ValidationError("Unknown connection")
            if session.state not in (ConnectionState.AUTHENTICATED, ConnectionState.SUBSCRIBED):
                raise ValidationError("Not authenticated")
            reg = SubscriberRegistration(
                connection_id=connection_id,
                user_id=session.user_id,
                location=location,
                radius_m=radius_m,
                subscribed_at=datetime.now(timezone.utc),
            )
            self._registrations[connection_id] = reg
            self.scan.add(reg)
            session.state = ConnectionState.SUBSCRIBED
            return reg

        reg = await self._call(op)
        logger.info(
            f"User {reg.user_id} subscribed to hazards within {radius_m:.0f}m of "
            f"({location.latitude}, {location.longitude})"
        )
        return reg

    async def register_subscriber(
        self,
        connection_id: str,
        credential: Optional[str],
        location: Optional[Location],
        radius,
        sink: Optional[Sink] = None,
    ) -> SubscriberRegistration:
        """Connect (when a sink is given), authenticate and subscribe in one call."""
        if sink is not None:
            await self.connect(connection_id, sink)
        await self.authenticate(connection_id, credential)
        return await self.subscribe(connection_id, location, radius)

    async def update_location(self, connection_id: str, location: Optional[Location]) -> SubscriberRegistration:
        """Replace the stored location. Radius and subscription time are kept."""
        if location is None:
            raise ValidationError("Location required")
        location = _coerce_location(location.latitude, location.longitude)

        def op():
            reg = self._registrations.get(connection_id)
            if reg is None:
                raise ValidationError("Not subscribed")
            updated = replace(reg, location=location)
            self._registrations[connection_id] = updated
            self.scan.add(updated)
            return updated

        return await self._call(op)

    async def unregister_subscriber(self, connection_id: str) -> bool:
        """Drop the registration. Absent registrations are a no-op."""

        def op():
            reg = self._registrations.pop(connection_id, None)
            self.scan.remove(connection_id)
            session = self._sessions.get(connection_id)
            if session is not None and session.state == ConnectionState.SUBSCRIBED:
                session.state = ConnectionState.AUTHENTICATED
            return reg is not None

        removed = await self._call(op)
        if removed:
            logger.info(f"Connection {connection_id} unsubscribed from hazards")
        return removed

    async def disconnect(self, connection_id: str) -> None:
        def op():
            self._registrations.pop(connection_id, None)
            self.scan.remove(connection_id)
            session = self._sessions.pop(connection_id, None)
            if session is not None:
                session.state = ConnectionState.DISCONNECTED
            return session is not None

        if await self._call(op):
            logger.debug(f"Client disconnected: {connection_id}")

    async def state_of(self, connection_id: str) -> ConnectionState:
        def op():
            session = self._sessions.get(connection_id)
            return session.state if session is not None else ConnectionState.DISCONNECTED

        return await self._call(op)

    async def registration_for(self, connection_id: str) -> Optional[SubscriberRegistration]:
        return await self._call(lambda: self._registrations.get(connection_id))

    # ── Fan-out ──

    def _targets_in_range(self, location: Location) -> list[_Target]:
        targets = []
        for reg in self.scan.candidates(self._registrations, location.latitude, location.longitude):
            distance = haversine_m(
                reg.location.latitude, reg.location.longitude,
                location.latitude, location.longitude,
            )
            if distance <= reg.radius_m:
                session = self._sessions.get(reg.connection_id)
                if session is not None:
                    targets.append(_Target(reg, session.sink, distance))
        return targets

    def _all_targets(self) -> list[_Target]:
        return [
            _Target(reg, self._sessions[cid].sink)
            for cid, reg in self._registrations.items()
            if cid in self._sessions
        ]

    async def _deliver(self, target: _Target, event_name: str, payload: dict) -> bool:
        cid = target.registration.connection_id
        try:
            await asyncio.wait_for(target.sink(event_name, payload), timeout=self.delivery_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Delivery to {cid} timed out after {self.delivery_timeout}s")
        except Exception as e:
            logger.warning(f"Delivery to {cid} failed: {e}")
        return False

    async def _fan_out(self, targets: list[_Target], event_name: str, payloads: list[dict]) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._deliver(t, event_name, p) for t, p in zip(targets, payloads))
        )
        stale = [t.registration for t, ok in zip(targets, results) if not ok]
        if stale:
            await self._evict(stale)
        return sum(1 for ok in results if ok)

    async def _evict(self, registrations: list[SubscriberRegistration]) -> None:
        def op():
            for reg in registrations:
                cid = reg.connection_id
                # Only evict the registration the failed send was aimed at
                if self._registrations.get(cid) is not reg:
                    continue
                del self._registrations[cid]
                self.scan.remove(cid)
                session = self._sessions.pop(cid, None)
                if session is not None:
                    session.state = ConnectionState.DISCONNECTED

        await self._call(op)
        for reg in registrations:
            logger.warning(f"Evicted stale connection {reg.connection_id} (user {reg.user_id})")

    async def dispatch_hazard(self, event: HazardEvent) -> int:
        """Notify every subscriber whose radius covers the hazard. Returns the delivered count."""
        targets = await self._call(lambda: self._targets_in_range(event.location))
        payloads = [format_notification(event, "new_hazard", t.distance_m) for t in targets]
        sent = await self._fan_out(targets, "new_hazard", payloads)
        if sent:
            logger.info(f"Hazard {event.id} broadcast: {sent} users notified")
        return sent

    async def dispatch_hazard_update(self, event: HazardEvent) -> int:
        targets = await self._call(lambda: self._targets_in_range(event.location))
        payload = format_notification(event, "hazard_updated")
        sent = await self._fan_out(targets, "hazard_updated", [payload] * len(targets))
        logger.info(f"Hazard {event.id} update broadcast: {sent} users notified")
        return sent

    async def dispatch_hazard_resolved(self, hazard_id: Any) -> int:
        """Resolution notices go to every subscriber regardless of distance."""
        targets = await self._call(self._all_targets)
        payload = {
            "type": "hazard_resolved",
            "hazardId": hazard_id,
            "message": "Hazard has been resolved",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        sent = await self._fan_out(targets, "hazard_resolved", [payload] * len(targets))
        logger.info(f"Hazard {hazard_id} resolution broadcast to {sent} users")
        return sent

    # ── Introspection ──

    async def status(self) -> dict:
        def op():
            return {
                "running": True,
                "activeConnections": len(self._sessions),
                "subscribers": len(self._registrations),
                "connections": [
                    {
                        "userId": reg.user_id,
                        "location": reg.location.as_dict(),
                        "radius": reg.radius_m,
                        "subscribedAt": reg.subscribed_at.isoformat(),
                    }
                    for reg in self._registrations.values()
                ],
            }

        return await self._call(op)
