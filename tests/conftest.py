import os
import uuid

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from datetime import date, datetime, time, timedelta
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from discipline.api.v1.detentions.dependencies import build_detention_services, get_detention_services
from discipline.auth.security import create_access_token
from discipline.core.events import EventBroadcaster
from discipline.core.models import (
    BehaviourIncident,
    DetentionAssignment,
    DetentionQueueEntry,
    DetentionRule,
    DetentionSession,
    Student,
    User,
)
from discipline.db.session import Base, engine_options, get_db
from discipline.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TODAY = date(2024, 2, 26)


class FakeClock:
    """Deterministic 'today' and 'now' for the detention services."""

    def __init__(self, today: date = TODAY):
        self.today = today
        self._now = datetime.combine(today, time(8, 0))

    def __call__(self) -> date:
        return self.today

    def now(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now


@pytest.fixture()
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test; overrides the FastAPI dependency."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        **engine_options(TEST_DATABASE_URL),
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def events() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture()
def services(clock: FakeClock, events: EventBroadcaster):
    svc = build_detention_services(clock=clock, now=clock.now, points_threshold=10, events=events)
    app.dependency_overrides[get_detention_services] = lambda: svc
    yield svc
    app.dependency_overrides.pop(get_detention_services, None)


@pytest.fixture()
def tenant_id():
    return uuid.uuid4()


@pytest.fixture()
async def admin(db_session: AsyncSession, tenant_id) -> User:
    user = User(tenant_id=tenant_id, full_name="Ada Admin", email="admin@example.com", role="ADMIN")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture()
async def client(db_session: AsyncSession, services) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def auth_headers(user: User) -> dict:
    token = create_access_token(
        subject={"user_id": str(user.id), "tenant_id": str(user.tenant_id), "role": user.role}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin_headers(admin: User) -> dict:
    return auth_headers(admin)


# ----- Factories -----
async def make_guardian(db: AsyncSession, tenant_id, email: str = "parent@example.com") -> User:
    user = User(tenant_id=tenant_id, full_name="Pat Parent", email=email, role="PARENT")
    db.add(user)
    await db.commit()
    return user


async def make_student(
    db: AsyncSession,
    tenant_id,
    first_name: str = "Sam",
    last_name: str = "Student",
    guardian: Optional[User] = None,
) -> Student:
    student = Student(
        tenant_id=tenant_id,
        first_name=first_name,
        last_name=last_name,
        guardian_user_id=guardian.id if guardian else None,
    )
    db.add(student)
    await db.commit()
    return student


async def add_incident(
    db: AsyncSession,
    student: Student,
    points: int,
    incident_date: date,
    severity: str = "low",
    is_resolved: bool = False,
) -> BehaviourIncident:
    incident = BehaviourIncident(
        tenant_id=student.tenant_id,
        student_id=student.id,
        incident_type="Disruption",
        incident_date=incident_date,
        points=points,
        severity=severity,
        is_resolved=is_resolved,
    )
    db.add(incident)
    await db.commit()
    return incident


async def make_session(
    db: AsyncSession,
    tenant_id,
    session_date: date,
    max_capacity: int = 2,
    start_time: time = time(15, 30),
    status: str = "scheduled",
) -> DetentionSession:
    session = DetentionSession(
        tenant_id=tenant_id,
        session_date=session_date,
        start_time=start_time,
        duration=60,
        location="Room 101",
        max_capacity=max_capacity,
        status=status,
    )
    db.add(session)
    await db.commit()
    return session


async def make_assignment(
    db: AsyncSession,
    session: DetentionSession,
    student: Student,
    status: str = "assigned",
) -> DetentionAssignment:
    assignment = DetentionAssignment(
        tenant_id=session.tenant_id,
        session_id=session.id,
        student_id=student.id,
        status=status,
    )
    db.add(assignment)
    await db.commit()
    return assignment


async def make_queue_entry(
    db: AsyncSession,
    student: Student,
    queued_at: datetime,
    points: int = 10,
) -> DetentionQueueEntry:
    entry = DetentionQueueEntry(
        tenant_id=student.tenant_id,
        student_id=student.id,
        points_at_queue=points,
        queued_at=queued_at,
        status="pending",
    )
    db.add(entry)
    await db.commit()
    return entry


async def make_rule(db: AsyncSession, tenant_id, **kwargs) -> DetentionRule:
    values = {
        "name": "10+ points",
        "action_type": "points_threshold",
        "min_points": 10,
        "max_points": None,
        "severity": None,
        "time_period_days": 30,
        "detention_duration": 60,
        "is_active": True,
    }
    values.update(kwargs)
    rule = DetentionRule(tenant_id=tenant_id, **values)
    db.add(rule)
    await db.commit()
    return rule
