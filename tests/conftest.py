"""Shared fixtures: an in-memory database, the sandbox gateway and user factories."""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("PAYMENT_GATEWAY", "sandbox")

from collections.abc import AsyncGenerator  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: E402,F401
from app.database import Base  # noqa: E402
from app.gateways.sandbox import SandboxGateway  # noqa: E402
from app.models.user import CoachProfile, GroupPricingTier, User  # noqa: E402
from app.services.audit_service import AuditService  # noqa: E402
from app.services.booking_service import BookingService  # noqa: E402
from app.services.deadline_service import DeadlineService  # noqa: E402
from app.services.gateway_service import GatewayService  # noqa: E402
from app.services.group_lesson_service import GroupLessonService  # noqa: E402


class RecordingNotifier:
    """Stands in for the email sender; every ``notify_*`` call is recorded."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        if not name.startswith("notify_"):
            raise AttributeError(name)

        async def record(*args, **kwargs) -> bool:
            self.sent.append((name, args, kwargs))
            return True

        return record

    def names(self) -> list[str]:
        return [name for name, _, _ in self.sent]


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def sandbox() -> SandboxGateway:
    return SandboxGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway(sandbox: SandboxGateway) -> GatewayService:
    return GatewayService(sandbox)


@pytest.fixture
def booking_service(gateway: GatewayService, notifier: RecordingNotifier) -> BookingService:
    return BookingService(gateway=gateway, notifier=notifier, audit=AuditService())


@pytest.fixture
def lesson_service(gateway: GatewayService, notifier: RecordingNotifier) -> GroupLessonService:
    return GroupLessonService(gateway=gateway, notifier=notifier, audit=AuditService())


@pytest.fixture
def deadline_service(
    booking_service: BookingService, lesson_service: GroupLessonService
) -> DeadlineService:
    return DeadlineService(bookings=booking_service, lessons=lesson_service)


@pytest.fixture
def make_user(db: AsyncSession):
    async def _make_user(role: str = "client", name: str | None = None, status: str = "active") -> User:
        user_id = uuid4()
        user = User(
            id=user_id,
            email=f"{role}-{user_id.hex[:8]}@example.com",
            name=name or f"{role.title()} {user_id.hex[:4]}",
            role=role,
            status=status,
        )
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
def make_coach(db: AsyncSession, make_user, sandbox: SandboxGateway):
    async def _make_coach(
        hourly_rate_cents: int = 6000,
        approval_status: str = "approved",
        payouts_enabled: bool = True,
    ) -> User:
        user = await make_user("coach")
        account_id = f"acct_test_{user.id.hex[:12]}"
        sandbox.accounts[account_id] = True
        db.add(
            CoachProfile(
                user_id=user.id,
                hourly_rate_cents=hourly_rate_cents,
                approval_status=approval_status,
                payout_account_id=account_id,
                payouts_enabled=payouts_enabled,
                allows_private_groups=True,
                lessons_completed=0,
            )
        )
        await db.commit()
        return user

    return _make_coach


@pytest.fixture
async def client(make_user) -> User:
    return await make_user("client")


@pytest.fixture
async def coach(make_coach) -> User:
    return await make_coach()


@pytest.fixture
async def admin(make_user) -> User:
    return await make_user("admin")


@pytest.fixture
async def group_tier(db: AsyncSession, coach: User) -> GroupPricingTier:
    tier = GroupPricingTier(
        coach_id=coach.id,
        min_participants=2,
        max_participants=6,
        price_per_person_cents=4000,
    )
    db.add(tier)
    await db.commit()
    return tier

