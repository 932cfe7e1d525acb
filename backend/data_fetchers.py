"""SafeRoute Backend: External Data Fetchers (OSRM routing, Nominatim geocoding)"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from cache import ResponseCache, geocode_cache, route_cache
from config import (
    DEFAULT_MODE,
    NOMINATIM_BASE_URL,
    NOMINATIM_COUNTRY,
    NOMINATIM_USER_AGENT,
    NOMINATIM_VIEWBOX,
    OSRM_BASE_URL,
    OSRM_PROFILES,
    PROVIDER_TIMEOUT_SECONDS,
)
from errors import ProviderUnavailableError, ValidationError

logger = logging.getLogger("saferoute.fetchers")

# Shared async HTTP client
client = httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS)


@dataclass
class ProviderRoute:
    coordinates: list[tuple[float, float]]  # (lat, lon)
    distance_m: float
    duration_s: float
    steps: list[dict] = field(default_factory=list)


# ─────────────────────────── OSRM ───────────────────────────────

def _parse_osrm_route(route) -> ProviderRoute:
    """Convert one OSRM route object. Raises ProviderUnavailableError on an unexpected shape."""
    if not isinstance(route, dict) or not isinstance(route.get("geometry"), dict):
        raise ProviderUnavailableError("OSRM route has no geometry")

    # OSRM GeoJSON is [lon, lat]
    coords = []
    for c in route["geometry"].get("coordinates") or []:
        if not isinstance(c, (list, tuple)) or len(c) < 2:
            raise ProviderUnavailableError(f"Malformed OSRM coordinate: {c!r}")
        coords.append((float(c[1]), float(c[0])))

    legs = route.get("legs") or [{}]
    first_leg = legs[0] if isinstance(legs, list) and isinstance(legs[0], dict) else {}
    steps = [
        {
            "instruction": (s.get("maneuver") or {}).get("instruction") or "Continue",
            "distance": s.get("distance", 0),
            "duration": s.get("duration", 0),
        }
        for s in first_leg.get("steps") or []
        if isinstance(s, dict)
    ]
    return ProviderRoute(
        coordinates=coords,
        distance_m=float(route.get("distance", 0)),
        duration_s=float(route.get("duration", 0)),
        steps=steps,
    )


class OsrmRoutingProvider:
    """Road-following paths from an OSRM server."""

    name = "osrm"

    def __init__(
        self,
        base_url: str = OSRM_BASE_URL,
        http: Optional[httpx.AsyncClient] = None,
        cache: ResponseCache = route_cache,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http or client
        self.cache = cache

    async def route(
        self,
        from_lat: float,
        from_lon: float,
        to_lat: float,
        to_lon: float,
        mode: str = DEFAULT_MODE,
        alternative: bool = False,
    ) -> ProviderRoute:
        """Fetch a route. With `alternative`, the second route is used when OSRM offers one.

        A cached response for the same request is served if the live call fails.
        """
        profile = OSRM_PROFILES.get(mode, OSRM_PROFILES[DEFAULT_MODE])
        cache_key = ("osrm", profile, round(from_lat, 6), round(from_lon, 6),
                     round(to_lat, 6), round(to_lon, 6), alternative)

        url = f"{self.base_url}/route/v1/{profile}/{from_lon},{from_lat};{to_lon},{to_lat}"
        params = {"overview": "full", "geometries": "geojson", "steps": "true"}
        if alternative:
            params["alternatives"] = "true"

        try:
            r = await self.http.get(url, params=params)
            if r.status_code != 200:
                raise ProviderUnavailableError(f"OSRM returned {r.status_code}")
            body = r.json()
            routes = body.get("routes") if isinstance(body, dict) else None
            if not routes or not isinstance(routes, list):
                raise ProviderUnavailableError("OSRM found no route")
            chosen = routes[1] if alternative and len(routes) > 1 else routes[0]
            result = _parse_osrm_route(chosen)
            if not result.coordinates:
                raise ProviderUnavailableError("OSRM route has no geometry")
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError, IndexError,
                ProviderUnavailableError) as e:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.warning(f"OSRM routing error ({e}); serving cached route")
                return cached
            logger.warning(f"OSRM routing error: {e}")
            if isinstance(e, ProviderUnavailableError):
                raise
            raise ProviderUnavailableError(f"OSRM request failed: {e}") from e

        self.cache.set(cache_key, result)
        return result


# ─────────────────────────── Nominatim ──────────────────────────

def _format_place(index: int, item: dict) -> dict:
    address = item.get("address") or {}
    return {
        "id": index,
        "displayName": item.get("display_name", ""),
        "name": item.get("name"),
        "lat": float(item["lat"]),
        "lon": float(item["lon"]),
        "address": {
            "houseNumber": address.get("house_number"),
            "road": address.get("road"),
            "suburb": address.get("suburb"),
            "postcode": address.get("postcode"),
            "city": address.get("city") or address.get("town"),
            "county": address.get("county"),
            "country": address.get("country"),
        },
        "type": item.get("type"),
        "importance": item.get("importance"),
    }


class NominatimGeocoder:
    """Free-text place search, bounded to the service area."""

    def __init__(
        self,
        base_url: str = NOMINATIM_BASE_URL,
        http: Optional[httpx.AsyncClient] = None,
        cache: ResponseCache = geocode_cache,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http or client
        self.cache = cache

    async def search(self, query: str, limit: int = 5) -> list[dict]:
        q = (query or "").strip()
        if len(q) < 3:
            raise ValidationError("Query must be at least 3 characters long")
        limit = max(1, min(int(limit), 20))

        cache_key = ("nominatim", q.lower(), limit)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"Geocode cache hit for '{q}'")
            return cached

        params = {
            "format": "json",
            "q": q,
            "limit": limit,
            "countrycodes": NOMINATIM_COUNTRY,
            "addressdetails": 1,
            "bounded": 1,
            "viewbox": NOMINATIM_VIEWBOX,
        }
        try:
            r = await self.http.get(
                f"{self.base_url}/search",
                params=params,
                headers={"User-Agent": NOMINATIM_USER_AGENT},
            )
            if r.status_code != 200:
                raise ProviderUnavailableError(f"Nominatim returned {r.status_code}")
            body = r.json()
            if not isinstance(body, list):
                raise ProviderUnavailableError("Nominatim returned an unexpected payload")
            places = [_format_place(i, item) for i, item in enumerate(body)]
        except ProviderUnavailableError as e:
            logger.warning(f"Geocoding error for '{q}': {e}")
            raise
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Geocoding error for '{q}': {e}")
            raise ProviderUnavailableError(f"Nominatim request failed: {e}") from e

        self.cache.set(cache_key, places)
        return places
