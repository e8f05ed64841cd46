"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, fake Redis, users for every role
and an httpx AsyncClient bound to the app.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

from datetime import date, time, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    GuardianProfile,
    StudentProfile,
    StudentWallet,
    Subject,
    TeacherAvailability,
    TeacherProfile,
    TeacherSubject,
    TeacherWallet,
    User,
    UserRole,
    VerificationRequest,
)
from shared.utils.security import create_access_token, hash_password

PASSWORD = "correct-horse-battery"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def booking_day(days_ahead: int = 3) -> date:
    return date.today() + timedelta(days=days_ahead)


# ── Fake Redis ────────────────────────────────────────────────

class FakeRedis:
    """In-process stand-in for the handful of Redis commands the app uses."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def exists(self, key: str) -> int:
        return 1 if key in self.store else 0

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value, ex=None):
        self.store[key] = value
        return True

    async def setex(self, key: str, ttl: int, value):
        self.store[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def incr(self, key: str) -> int:
        self.store[key] = str(int(self.store.get(key, 0)) + 1)
        return int(self.store[key])

    async def expire(self, key: str, seconds: int) -> bool:
        return key in self.store


# ── Database ──────────────────────────────────────────────────

@pytest.fixture
async def engine():
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    """Session for arranging and inspecting rows outside of requests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture(autouse=True)
def queued_deliveries(monkeypatch) -> list:
    """Capture email/SMS/push recipients instead of sending them to Celery."""
    queued: list = []
    monkeypatch.setattr(
        "services.notification.service.enqueue_external_delivery",
        lambda recipient_ids: queued.extend(recipient_ids),
    )
    return queued


@pytest.fixture
async def client(session_factory, fake_redis):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

async def make_user(db: AsyncSession, role: UserRole, name: str, email: str, **fields) -> User:
    user = User(name=name, email=email, password_hash=hash_password(PASSWORD), role=role, **fields)
    db.add(user)
    await db.flush()
    return user


@pytest.fixture
async def subject(db) -> Subject:
    subject = Subject(name="Mathematics", slug="mathematics", description="Algebra, geometry and calculus")
    db.add(subject)
    await db.commit()
    return subject


@pytest.fixture
async def student(db) -> User:
    user = await make_user(db, UserRole.STUDENT, "Ada Student", "ada@example.com", phone="+2348030000001")
    db.add(StudentProfile(user_id=user.id, grade_level="SS2"))
    db.add(StudentWallet(
        user_id=user.id,
        balance=Decimal("50000.00"),
        total_spent=Decimal("0.00"),
        total_refunded=Decimal("0.00"),
        currency="NGN",
    ))
    await db.commit()
    return user


@pytest.fixture
async def other_student(db) -> User:
    user = await make_user(db, UserRole.STUDENT, "Bola Student", "bola@example.com")
    db.add(StudentProfile(user_id=user.id))
    db.add(StudentWallet(
        user_id=user.id,
        balance=Decimal("0.00"),
        total_spent=Decimal("0.00"),
        total_refunded=Decimal("0.00"),
        currency="NGN",
    ))
    await db.commit()
    return user


async def _teacher(db: AsyncSession, name: str, email: str, verified: bool, subject: Subject = None) -> User:
    user = await make_user(db, UserRole.TEACHER, name, email)
    db.add(TeacherProfile(
        user_id=user.id,
        bio="Ten years of secondary school teaching",
        experience_years=10,
        hourly_rate=Decimal("5000.00"),
        timezone="Africa/Lagos",
        verified=verified,
    ))
    db.add(TeacherWallet(
        user_id=user.id,
        balance=Decimal("0.00"),
        total_earned=Decimal("0.00"),
        total_withdrawn=Decimal("0.00"),
        pending_payouts=Decimal("0.00"),
        currency="NGN",
    ))
    db.add(VerificationRequest(teacher_id=user.id))
    if subject is not None:
        db.add(TeacherSubject(teacher_id=user.id, subject_id=subject.id))
        for day in range(7):
            db.add(TeacherAvailability(
                teacher_id=user.id, day_of_week=day, start_time=time(8, 0), end_time=time(18, 0)
            ))
    await db.commit()
    return user


@pytest.fixture
async def teacher(db, subject) -> User:
    """Verified teacher of `subject`, available 08:00-18:00 every day."""
    return await _teacher(db, "Tunde Teacher", "tunde@example.com", verified=True, subject=subject)


@pytest.fixture
async def second_teacher(db, subject) -> User:
    return await _teacher(db, "Kemi Teacher", "kemi@example.com", verified=True, subject=subject)


@pytest.fixture
async def unverified_teacher(db) -> User:
    return await _teacher(db, "New Teacher", "new.teacher@example.com", verified=False)


@pytest.fixture
async def guardian(db, student) -> User:
    """Guardian linked to `student`."""
    user = await make_user(db, UserRole.GUARDIAN, "Grace Guardian", "grace@example.com")
    db.add(GuardianProfile(user_id=user.id, relationship_label="Mother"))
    profile = (await db.execute(
        select(StudentProfile).where(StudentProfile.user_id == student.id)
    )).scalar_one()
    profile.guardian_id = user.id
    await db.commit()
    return user


@pytest.fixture
async def admin(db) -> User:
    user = await make_user(db, UserRole.SUPER_ADMIN, "Sam Admin", "admin@example.com")
    await db.commit()
    return user
