"""
pytest configuration and shared fixtures for the CivicLens heatmap tests.

Key concern: tests must not require a live MongoDB.
We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so the health check
     correctly reports "disconnected", a valid test-mode state.
  3. Serving heatmap routes from an in-memory FakeDB that understands the
     small subset of the MongoDB query language the services emit
     ($and, $or, $in, $gte, $exists, $regex/$options, dotted paths with
     array indexes).

Seeded hierarchy (Karachi):

  city KHI
  ├── town SADDAR
  │     └── UC-12     3 recent complaints (+1 older than 30 days, +1 without location)
  │     (+1 recent complaint carrying only townId)
  └── town GULSHAN
        └── UC-7      2 recent complaints
"""

import asyncio
import os
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("HEATMAP_SWEEP_INTERVAL_SECONDS", "0")

# Fixed ids so test modules importing them agree with the seeded FakeDB
CITY_ID = ObjectId("65a000000000000000000001")
SADDAR_ID = ObjectId("65a000000000000000000011")
GULSHAN_ID = ObjectId("65a000000000000000000012")
UC12_ID = ObjectId("65a000000000000000000112")
UC7_ID = ObjectId("65a000000000000000000107")


# ── In-memory MongoDB ─────────────────────────────────────────────────────────

_MISSING = object()


def _resolve(doc, path):
    value = doc
    for part in path.split("."):
        if isinstance(value, list) and part.isdigit():
            if int(part) >= len(value):
                return _MISSING
            value = value[int(part)]
        elif isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _match_field(value, condition) -> bool:
    if not (isinstance(condition, dict) and any(k.startswith("$") for k in condition)):
        return value is not _MISSING and value == condition

    for op, arg in condition.items():
        if op == "$in":
            ok = value is not _MISSING and value in arg
        elif op == "$gte":
            ok = value is not _MISSING and value is not None and value >= arg
        elif op == "$exists":
            ok = (value is not _MISSING) == bool(arg)
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            ok = isinstance(value, str) and re.search(arg, value, flags) is not None
        elif op == "$options":
            continue
        else:
            raise NotImplementedError(f"FakeDB does not support {op}")
        if not ok:
            return False
    return True


def mongo_match(doc: dict, query: dict) -> bool:
    for key, condition in query.items():
        if key == "$and":
            if not all(mongo_match(doc, q) for q in condition):
                return False
        elif key == "$or":
            if not any(mongo_match(doc, q) for q in condition):
                return False
        elif not _match_field(_resolve(doc, key), condition):
            return False
    return True


class FakeCursor:
    def __init__(self, docs, delay: float = 0.0, error: Exception | None = None):
        self._docs = docs
        self._delay = delay
        self._error = error
        self.max_time = None

    def max_time_ms(self, ms):
        self.max_time = ms
        return self

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._error is not None:
                raise self._error
            yield doc


class FakeCollection:
    """
    Just enough of a Motor collection for the heatmap services.

    `delay` slows every streamed document, `error` is raised mid-stream;
    both only affect find().
    """

    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.delay = 0.0
        self.error = None
        self.find_calls = 0
        self.last_cursor = None

    def find(self, query=None, projection=None):
        self.find_calls += 1
        matched = [d for d in self.docs if mongo_match(d, query or {})]
        self.last_cursor = FakeCursor(matched, delay=self.delay, error=self.error)
        return self.last_cursor

    async def find_one(self, query=None):
        for doc in self.docs:
            if mongo_match(doc, query or {}):
                return doc
        return None

    async def count_documents(self, query):
        return sum(1 for d in self.docs if mongo_match(d, query))

    async def insert_one(self, doc):
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return doc["_id"]


class FakeDB:
    def __init__(self, collections=None):
        self._collections = {name: FakeCollection(docs) for name, docs in (collections or {}).items()}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection()
        return self._collections[name]


# ── Seed data ─────────────────────────────────────────────────────────────────

def complaint(now, days_ago, lat, lon, category, severity=None, city=None, town=None, uc=None):
    doc = {
        "_id": ObjectId(),
        "location": {"type": "Point", "coordinates": [lon, lat]},
        "category": {"primary": category},
        "status": {"current": "submitted"},
        "createdAt": now - timedelta(days=days_ago),
    }
    if severity is not None:
        doc["severity"] = {"score": severity}
    for field, value in (("cityId", city), ("townId", town), ("ucId", uc)):
        if value is not None:
            doc[field] = value
    return doc


def seed_collections(now: datetime) -> dict:
    in_uc12 = {"city": CITY_ID, "town": SADDAR_ID, "uc": UC12_ID}
    in_uc7 = {"city": CITY_ID, "town": GULSHAN_ID, "uc": UC7_ID}

    no_location = complaint(now, 1, 24.8607, 67.0011, "Roads", 9.0, **in_uc12)
    del no_location["location"]

    return {
        "cities": [{"_id": CITY_ID, "name": "Karachi", "code": "KHI"}],
        "towns": [
            {"_id": SADDAR_ID, "name": "Saddar", "code": "SADDAR", "city": CITY_ID},
            {"_id": GULSHAN_ID, "name": "Gulshan-e-Iqbal", "code": "GULSHAN", "city": CITY_ID},
        ],
        "ucs": [
            {"_id": UC12_ID, "name": "UC 12", "code": "UC-12", "ucNumber": 12,
             "town": SADDAR_ID, "city": CITY_ID},
            {"_id": UC7_ID, "name": "UC 7", "code": "UC-7", "ucNumber": 7,
             "town": GULSHAN_ID, "city": CITY_ID},
        ],
        "complaints": [
            complaint(now, 1, 24.8607, 67.0011, "Roads", 8.0, **in_uc12),
            complaint(now, 2, 24.8610, 67.0015, "Roads", 6.5, **in_uc12),
            complaint(now, 3, 24.9000, 67.0300, "Water", 3.0, **in_uc12),
            complaint(now, 5, 24.9300, 67.1000, "Garbage", 9.0, **in_uc7),
            complaint(now, 6, 24.9300, 67.1000, "Roads", None, **in_uc7),
            complaint(now, 4, 24.8500, 67.0200, "Electricity", 4.0, city=CITY_ID, town=SADDAR_ID),
            complaint(now, 45, 24.8607, 67.0011, "Roads", 7.0, **in_uc12),
            no_location,
        ],
    }


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock (startup doesn't attempt real connection)
    - close_mongo_connection → no-op AsyncMock
    - db_client.client → None  (health check reports "disconnected", which is fine)
    - db_client.db → None

    Tests that need a real db should override this fixture locally.
    """
    with (
        patch("civiclens.main.connect_to_mongo", new_callable=AsyncMock),
        patch("civiclens.main.close_mongo_connection", new_callable=AsyncMock),
    ):
        import civiclens.core.database as db_module
        from civiclens.core.cache import cache_registry

        # Save originals so we can restore after the test
        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db
        if cache_registry.cache is not None:
            await cache_registry.cache.close()
            cache_registry.cache = None


@pytest.fixture(autouse=True)
def reset_rate_limit():
    """Every test starts with a fresh request budget."""
    from civiclens.core.rate_limit import limiter

    limiter.reset()
    yield


@pytest.fixture()
def now():
    return datetime.now(timezone.utc)


@pytest.fixture()
def fake_db(now):
    return FakeDB(seed_collections(now))


@pytest.fixture()
async def cache():
    from civiclens.services.aggregation_cache import AggregationCache

    cache = AggregationCache(ttl_seconds=60)
    yield cache
    await cache.close()


@pytest.fixture()
def service(fake_db, cache, now):
    from civiclens.services.heatmap_service import HeatmapService

    return HeatmapService.from_database(fake_db, cache, clock=lambda: now)


@pytest.fixture()
async def client(mock_db):  # noqa: ARG001 — mock_db must run first
    """
    HTTPX async test client wired to the FastAPI app.

    Usage:
        async def test_something(client):
            response = await client.get("/health")
            assert response.status_code == 200
    """
    from civiclens.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
async def hm_client(fake_db, cache):
    """Test client whose heatmap routes read from the seeded FakeDB."""
    from civiclens.core.cache import get_cache
    from civiclens.core.database import get_db
    from civiclens.main import app

    app.dependency_overrides[get_db] = lambda: fake_db
    app.dependency_overrides[get_cache] = lambda: cache
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
