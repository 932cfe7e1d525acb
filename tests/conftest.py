"""Shared fixtures. Environment is pinned before any backend module is imported."""

import asyncio
import os

os.environ["JWT_SECRET"] = "test-secret"
os.environ["CRIME_DATA_DIR"] = os.path.join(os.path.dirname(__file__), "_no_crime_data")
os.environ["RATE_LIMIT"] = "100000"

import pytest

from auth import CredentialVerifier
from data_fetchers import ProviderRoute
from errors import ProviderUnavailableError
from grid_index import IncidentRecord, SpatialGridIndex
from scoring import SafetyScorer


def make_record(lat, lon, category="Robbery", severity=1.0, period="2024-01"):
    return IncidentRecord(
        longitude=lon,
        latitude=lat,
        category=category,
        severity_weight=severity,
        period=period,
    )


def build_index(records) -> SpatialGridIndex:
    index = SpatialGridIndex()
    index.build(records)
    return index


class FakeRoutingProvider:
    """In-process routing provider. `None` for a route means "unavailable"."""

    name = "fake"

    def __init__(self, primary=None, alternative=None, delay=0.0):
        self.primary = primary
        self.alternative = alternative
        self.delay = delay
        self.calls = []

    async def route(self, from_lat, from_lon, to_lat, to_lon, mode="walking", alternative=False):
        self.calls.append((from_lat, from_lon, to_lat, to_lon, mode, alternative))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.alternative if alternative else self.primary
        if result is None:
            raise ProviderUnavailableError("fake provider has no route")
        return result


def provider_route(coords, distance_m=1000.0, duration_s=720.0):
    return ProviderRoute(
        coordinates=list(coords),
        distance_m=distance_m,
        duration_s=duration_s,
        steps=[{"instruction": "Continue", "distance": distance_m, "duration": duration_s}],
    )


class RecordingSink:
    def __init__(self):
        self.events = []

    async def __call__(self, event, payload):
        self.events.append((event, payload))

    def named(self, event):
        return [p for e, p in self.events if e == event]


class BrokenSink:
    def __init__(self):
        self.attempts = 0

    async def __call__(self, event, payload):
        self.attempts += 1
        raise ConnectionError("socket closed")


@pytest.fixture
def example_index():
    """Three incidents: two stacked in one cell, one in a distant cell."""
    return build_index([
        make_record(51.50, -0.13, "Robbery", 1.0),
        make_record(51.50, -0.13, "Burglary", 0.5),
        make_record(51.60, -0.00, "Shoplifting", 0.2),
    ])


@pytest.fixture
def scorer(example_index):
    return SafetyScorer(example_index)


@pytest.fixture
def verifier():
    return CredentialVerifier(secret="test-secret")


@pytest.fixture
def token(verifier):
    return verifier.issue("user-1")
