from datetime import UTC, date, datetime, time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from guideboard.api import create_app
from guideboard.changes import ChangeFeed
from guideboard.config import Settings
from guideboard.database import InMemoryKeyValueDatabase
from guideboard.models import Contact, Job, Profile, Role, contact_key, job_key, profile_key

FIXED_NOW = datetime(2025, 7, 2, 0, 0, 0, tzinfo=UTC)


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def make_job(job_id: str, **overrides) -> Job:
    fields = dict(
        id=job_id,
        title="Santa Cruz Guide",
        date=date(2025, 7, 3),
        call_time=time(6, 30),
        location="Santa Cruz Island",
        boat="Peace",
        requirements=["DM"],
        pay="250",
        created_by="admin-id",
        created_at=FIXED_NOW,
    )
    fields.update(overrides)
    return Job(**fields)


def seed(db: InMemoryKeyValueDatabase) -> None:
    profiles = [
        Profile(id="admin-id", full_name="Ada Admin", role=Role.ADMIN),
        Profile(id="alice-id", full_name="Alice Ongwele"),
        Profile(id="barry-id", full_name="Barry Kozumikov"),
        Profile(id="wei-id", full_name="Wei Yan"),
        Profile(id="gone-id", full_name="Gone Guide", is_active=False),
    ]
    for p in profiles:
        db.put(profile_key(p.id), p)

    open_job = make_job("open-job")
    alice_job = make_job(
        "alice-job",
        date=date(2025, 7, 4),
        status="assigned",
        claimed_by="alice-id",
        claimed_at=FIXED_NOW,
    )
    db.put(job_key(open_job.id), open_job)
    db.put(job_key(alice_job.id), alice_job)

    for job_id, name in (("open-job", "Olive Open"), ("alice-job", "Carl Customer")):
        db.put(
            contact_key(job_id),
            Contact(
                job_id=job_id,
                customer_name=name,
                customer_phone="+15550100",
                customer_email="customer@example.com",
            ),
        )


@pytest.fixture
def db() -> InMemoryKeyValueDatabase:
    database = InMemoryKeyValueDatabase()
    seed(database)
    return database


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed(now_fn=lambda: FIXED_NOW)


@pytest.fixture
def settings() -> Settings:
    return Settings(admin_user_ids=["admin-id"], lock_timeout_seconds=0.2)


@pytest_asyncio.fixture
async def client(settings: Settings):
    app = create_app(settings)
    app.state.now_fn = lambda: FIXED_NOW
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest.fixture
def seeded_app(client: AsyncClient):
    app = client._transport.app
    seed(app.state.database)
    return app


def as_user(user_id: str, name: str | None = None) -> dict[str, str]:
    headers = {"X-User-Id": user_id}
    if name is not None:
        headers["X-User-Name"] = name
    return headers
