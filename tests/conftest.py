"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, schema rebuilt for every test
- ``FakeLegacy``: a scripted legacy casework API served through httpx.MockTransport
- HTTPX AsyncClient against the FastAPI app with the legacy client swapped out
"""
import json
import os
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Generator

import httpx
import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# Must be set before casebridge.core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ["LEGACY_RATE_LIMIT_PER_SECOND"] = "1000"
os.environ["SYNC_POLLER_ENABLED"] = "False"
os.environ["CLASSIFIER_URL"] = ""
os.environ["API_KEY"] = ""

from casebridge.core.deps import get_db, get_legacy_client
from casebridge.db.base import Base
from casebridge.db.models import Case, Constituent, ContactDetail, Message, Office, ReferenceItem
from casebridge.db.session import SessionLocal, engine
from casebridge.main import app
from casebridge.services import legacy_client, rate_limiter, reconciliation_service
from casebridge.services.legacy_client import LegacyApiClient, LegacyCredentials
from casebridge.services.rate_limiter import TokenBucket

LEGACY_BASE_URL = "https://anytown.legacy.test/api/ajax"
LEGACY_PREFIX = "/api/ajax"


# =============================================================================
# Fake legacy API
# =============================================================================


class FakeLegacy:
    """
    Scripted legacy API.

    ``on(method, path, *responses)`` queues responses for a route; the last
    one repeats. A response is a ``(status, json)`` tuple, an
    ``httpx.Response``, a callable taking the request, or an httpx exception
    class to raise (e.g. ``httpx.ReadTimeout``).
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[tuple[str, str, object]] = []
        self.token = "token-1"

    def on(self, method: str, path: str, *responses) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def calls(self, method: str | None = None, path: str | None = None) -> list:
        return [
            r for r in self.requests
            if (method is None or r[0] == method.upper()) and (path is None or r[1] == path)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.raw_path.decode()
        if path.startswith(LEGACY_PREFIX):
            path = path[len(LEGACY_PREFIX):]
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))

        queue = self.routes.get((request.method, path))
        if not queue:
            if path == "/auth":
                return httpx.Response(200, json={"token": self.token})
            return httpx.Response(404, json={"message": f"No route for {request.method} {path}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(item, type) and issubclass(item, Exception):
            raise item("simulated failure", request=request)
        if isinstance(item, httpx.Response):
            return item
        if callable(item):
            return item(request)
        status, payload = item
        return httpx.Response(status, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


async def _no_sleep(_seconds: float) -> None:
    return None


def build_legacy_client(office_id, fake: FakeLegacy) -> LegacyApiClient:
    return LegacyApiClient(
        office_id,
        LegacyCredentials(email="caseworker@anytown.test", password="secret", base_url=LEGACY_BASE_URL),
        bucket=TokenBucket(1000, 10),
        transport=fake.transport,
        sleep=_no_sleep,
    )


# =============================================================================
# Process state
# =============================================================================


@pytest.fixture(autouse=True)
def reset_process_state():
    rate_limiter.reset_buckets()
    legacy_client.reset_client_state()
    reconciliation_service.reset_poll_locks()
    yield
    rate_limiter.reset_buckets()
    legacy_client.reset_client_state()
    reconciliation_service.reset_poll_locks()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    App code commits freely, so each test gets newly created tables rather
    than a rolled-back savepoint.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def office(db: Session) -> Office:
    office = Office(
        name="Anytown Office",
        subdomain=f"anytown-{uuid.uuid4().hex[:6]}",
        autonomous_triage=False,
        autonomy_threshold=0.9,
    )
    db.add(office)
    db.commit()
    return office


@pytest.fixture(scope="function")
def reference_data(db: Session, office: Office) -> dict[str, int]:
    """A small set of office reference lists."""
    items = [
        ("case_type", 11, "Housing", False),
        ("case_type", 12, "Benefits", False),
        ("case_type", 13, "Immigration", False),
        ("status_type", 1, "Open", False),
        ("status_type", 9, "Closed", True),
        ("category_type", 21, "Casework", False),
        ("contact_type", 31, "Email", False),
        ("caseworker", 3, "Alex Smith", False),
        ("tag", 41, "Damp", False),
    ]
    for ref_type, external_id, name, closed in items:
        db.add(
            ReferenceItem(
                office_id=office.id,
                ref_type=ref_type,
                external_id=external_id,
                name=name,
                is_closed=closed,
            )
        )
    db.commit()
    return {name: external_id for _, external_id, name, _ in items}


@pytest.fixture(scope="function")
def constituent(db: Session, office: Office) -> Constituent:
    """A synced constituent (legacy id 7) with an email contact detail."""
    row = Constituent(
        office_id=office.id,
        external_id=7,
        first_name="Jane",
        last_name="Doe",
        pending_fields=[],
    )
    db.add(row)
    db.flush()
    db.add(
        ContactDetail(
            office_id=office.id,
            constituent_id=row.id,
            external_id=70,
            contact_type="email",
            contact_type_id=31,
            value="jane.doe@example.org",
            normalized_value="jane.doe@example.org",
            pending_fields=[],
        )
    )
    db.commit()
    return row


@pytest.fixture(scope="function")
def case(db: Session, office: Office, constituent: Constituent) -> Case:
    """A synced open case (legacy id 42)."""
    row = Case(
        office_id=office.id,
        constituent_id=constituent.id,
        external_id=42,
        status_id=1,
        case_type_id=11,
        summary="Damp in bedroom",
        legacy_updated_at=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
        pending_fields=[],
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture(scope="function")
def make_message(db: Session, office: Office):
    """Factory for shadow messages; defaults describe an inbound email from an unknown sender."""

    def _make(**overrides) -> Message:
        values = {
            "office_id": office.id,
            "external_id": 555,
            "direction": "inbound",
            "subject": "Housing disrepair",
            "html_body": "<p>My flat has damp and mould on every wall.</p>",
            "from_address": "stranger@example.net",
            "received_at": datetime(2026, 1, 6, 8, 30, tzinfo=timezone.utc),
            "pending_fields": [],
        }
        values.update(overrides)
        message = Message(**values)
        db.add(message)
        db.commit()
        return message

    return _make


# =============================================================================
# Legacy Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def fake_legacy() -> FakeLegacy:
    return FakeLegacy()


@pytest.fixture(scope="function")
def make_legacy_client(office: Office, fake_legacy: FakeLegacy):
    """Factory for extra clients talking to ``fake_legacy`` (caller closes them)."""

    def _make() -> LegacyApiClient:
        return build_legacy_client(office.id, fake_legacy)

    return _make


@pytest.fixture(scope="function")
async def legacy(office: Office, fake_legacy: FakeLegacy) -> AsyncGenerator[LegacyApiClient, None]:
    client = build_legacy_client(office.id, fake_legacy)
    yield client
    await client.aclose()


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture(scope="function")
async def client(db: Session, office: Office, fake_legacy: FakeLegacy) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient scoped to ``office`` with legacy calls going to ``fake_legacy``."""

    def override_get_db():
        yield db

    async def override_get_legacy_client():
        legacy_api = build_legacy_client(office.id, fake_legacy)
        try:
            yield legacy_api
        finally:
            await legacy_api.aclose()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_legacy_client] = override_get_legacy_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Office-ID": str(office.id)},
    ) as c:
        yield c

    app.dependency_overrides.clear()
