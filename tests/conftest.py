"""
Shared fixtures for entitlement engine tests.

Every test gets a fresh in-memory SQLite database. A ``StaticPool`` keeps a
single connection so that sessions opened by the scheduler see the same
schema and rows as the test's own session. Tests that race sessions against
each other use the file-backed ``file_session_factory`` instead, where every
session holds its own connection and transaction.
"""

import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docvault.entitlements.accounts import AccountService
from docvault.entitlements.db import Base
from docvault.entitlements.gate import EnforcementGate
from docvault.entitlements.links import AccountLinkService
from docvault.entitlements.metrics import EntitlementMetrics
from docvault.entitlements.models import (
    AccountLink,
    AccountMember,
    AccountRole,
    BillingAccount,
    LinkStatus,
)
from docvault.entitlements.seats import SeatPoolManager
from docvault.entitlements.settings import Environment, Settings

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

_NOW_MARKER = object()


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeStorageProvider:
    def __init__(self) -> None:
        self.bytes: dict[str, int] = {}
        self.fail = False
        self.calls: list[str] = []

    async def total_bytes_owned(self, account_id: str) -> int:
        self.calls.append(account_id)
        if self.fail:
            raise TimeoutError("storage backend timed out")
        return self.bytes.get(account_id, 0)


class FakeUserDirectory:
    def __init__(self) -> None:
        self.emails: dict[str, str] = {}

    def register(self, user_id: str, email: str) -> None:
        self.emails[user_id] = email

    async def get_email(self, user_id: str) -> str | None:
        return self.emails.get(user_id)


class FakeNotificationSink:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.fail = False

    async def send(self, template_id: str, recipient: str, context: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("mail sender unavailable")
        self.sent.append((template_id, recipient, context))

    @property
    def templates(self) -> list[str]:
        return [template_id for template_id, _, _ in self.sent]


@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """A file-backed database, so every session gets its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'entitlements.sqlite'}",
        echo=False,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(environment=Environment.TEST)


@pytest.fixture
def storage() -> FakeStorageProvider:
    return FakeStorageProvider()


@pytest.fixture
def directory() -> FakeUserDirectory:
    return FakeUserDirectory()


@pytest.fixture
def sink() -> FakeNotificationSink:
    return FakeNotificationSink()


@pytest.fixture
def metrics() -> EntitlementMetrics:
    return EntitlementMetrics()


@pytest.fixture
def gate(session_factory, storage, directory, test_settings, clock, metrics) -> EnforcementGate:
    return EnforcementGate(
        storage,
        directory,
        session_factory=session_factory,
        settings=test_settings,
        clock=clock,
        metrics=metrics,
    )


@pytest.fixture
def accounts(async_db, test_settings, clock) -> AccountService:
    return AccountService(async_db, test_settings, clock)


@pytest.fixture
def seats(async_db, directory, test_settings, clock) -> SeatPoolManager:
    return SeatPoolManager(async_db, directory, settings=test_settings, clock=clock)


@pytest.fixture
def link_service(async_db, directory, test_settings, clock) -> AccountLinkService:
    return AccountLinkService(async_db, directory, settings=test_settings, clock=clock)


@pytest.fixture
def account_factory(async_db: AsyncSession, clock: FrozenClock):
    """Insert a billing account and its owner seat directly."""

    async def _create(
        owner_user_id: str,
        plan: str = "solo",
        *,
        uploaded: int = 0,
        trial_ends_at: datetime | None = None,
        reset_at: Any = _NOW_MARKER,
        created_at: datetime | None = None,
    ) -> BillingAccount:
        now = clock()
        account = BillingAccount(
            owner_user_id=owner_user_id,
            plan=plan,
            trial_ends_at=trial_ends_at,
            uploaded_this_month=uploaded,
            upload_counter_reset_at=now if reset_at is _NOW_MARKER else reset_at,
            created_at=created_at or now,
            updated_at=now,
        )
        async_db.add(account)
        await async_db.flush()
        async_db.add(
            AccountMember(
                account_id=account.id,
                user_id=owner_user_id,
                role=AccountRole.OWNER.value,
                created_at=now,
            )
        )
        await async_db.commit()
        return account

    return _create


@pytest.fixture
def link_factory(async_db: AsyncSession, clock: FrozenClock):
    """Insert an account link between two existing accounts."""

    async def _link(
        primary: BillingAccount,
        linked: BillingAccount,
        status: LinkStatus = LinkStatus.ACTIVE,
        email: str | None = None,
    ) -> AccountLink:
        now = clock()
        link = AccountLink(
            primary_account_id=primary.id,
            linked_email=email or f"{linked.owner_user_id}@example.com",
            linked_user_id=linked.owner_user_id,
            linked_account_id=linked.id,
            status=status.value,
            token=secrets.token_hex(32),
            token_expires_at=now + timedelta(days=7),
            invited_at=now,
            accepted_at=now if status is LinkStatus.ACTIVE else None,
        )
        async_db.add(link)
        await async_db.commit()
        return link

    return _link


@pytest.fixture
def reload_account(async_db: AsyncSession):
    """Re-read an account, bypassing the identity map."""

    async def _reload(account_id: str) -> BillingAccount:
        result = await async_db.execute(
            select(BillingAccount)
            .where(BillingAccount.id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _reload
