"""
Pytest configuration and shared fixtures for the insights pipeline tests.
"""
import asyncio
import os

import psycopg2
import pytest
from dotenv import load_dotenv

from insights_ingestion.config import Settings
from insights_ingestion.errors import EnrichmentError

load_dotenv()


# ============================================================================
# FAKES
# ============================================================================

class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else str(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Returns queued responses in order and records every GET."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if not self.responses:
            raise AssertionError(f"Unexpected request to {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


class FakeThumbnailClient:
    """Async thumbnail client: resolves from a dict, fails for selected ids."""

    def __init__(self, thumbnails=None, failing=(), delay=0.0):
        self.thumbnails = dict(thumbnails or {})
        self.failing = set(failing)
        self.delay = delay
        self.calls = []
        self.kinds = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def fetch_thumbnail(self, node_id, kind="creative"):
        self.calls.append(node_id)
        self.kinds[node_id] = kind
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.in_flight -= 1
        if node_id in self.failing:
            raise EnrichmentError(node_id, "HTTP 500: boom", kind)
        return self.thumbnails.get(node_id)


class InMemoryStore:
    """Upsert store keyed by (table, conflict key); last write wins."""

    def __init__(self):
        self.tables = {}
        self.calls = 0

    def upsert(self, table, rows, conflict_columns):
        self.calls += 1
        stored = self.tables.setdefault(table, {})
        persisted = []
        for row in rows:
            key = tuple(row[column] for column in conflict_columns)
            stored[key] = dict(row)
            persisted.append(dict(row))
        return persisted

    def count(self, table):
        return len(self.tables.get(table, {}))


class FailingStore:
    def __init__(self, error):
        self.error = error
        self.calls = 0

    def upsert(self, table, rows, conflict_columns):
        self.calls += 1
        raise self.error


def insights_page(records, next_url=None):
    payload = {"data": records}
    if next_url:
        payload["paging"] = {"cursors": {"after": "abc"}, "next": next_url}
    return FakeResponse(200, payload)


def ad_record(ad_id="1001", creative_id="c1", thumbnail_url=None, **overrides):
    record = {
        "ad_id": ad_id,
        "ad_name": f"Ad {ad_id}",
        "adset_id": "2001",
        "campaign_id": "3001",
        "date_start": "2025-03-01",
        "date_stop": "2025-03-01",
        "impressions": "2000",
        "reach": "1500",
        "clicks": "40",
        "ctr": "2.0",
        "spend": "50.00",
        "actions": [
            {"action_type": "lead", "value": "5"},
            {"action_type": "offsite_conversion.custom.111", "action_target_id": "111", "value": "2"},
        ],
        "ad_creative": {"id": creative_id, "name": f"Creative {creative_id}", "thumbnail_url": thumbnail_url},
    }
    record.update(overrides)
    return record


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def settings():
    return Settings(
        access_token="test-token",
        account_id="1234567890",
        custom_conversions={"111": "keizer_sa_sign_up", "222": "salem_sa_sign_up"},
        thumbnail_concurrency=5,
        timeout_seconds=30,
    )


@pytest.fixture
def store():
    return InMemoryStore()


def _postgres_params():
    return dict(
        host=os.getenv("POSTGRES_HOST", "localhost"),
        port=os.getenv("POSTGRES_PORT", "5432"),
        database=os.getenv("POSTGRES_DATABASE", "meta_ads"),
        user=os.getenv("POSTGRES_USER", "postgres"),
        password=os.getenv("POSTGRES_PASSWORD", ""),
    )


@pytest.fixture(scope="session")
def postgres_params():
    return _postgres_params()


@pytest.fixture(scope="session")
def db_connection(postgres_params):
    """
    Create a database connection that persists for the entire test session.
    Skips database-backed tests when PostgreSQL is not reachable.
    """
    try:
        conn = psycopg2.connect(connect_timeout=3, **postgres_params)
    except psycopg2.OperationalError as e:
        pytest.skip(f"PostgreSQL not available: {e}")
    conn.autocommit = True
    yield conn
    conn.close()


@pytest.fixture
def db_cursor(db_connection):
    """
    Create a cursor for executing queries.
    """
    cursor = db_connection.cursor()
    yield cursor
    cursor.close()
