import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
from models.credit_ledger import CreditLedger
from models.guest_credit import GuestCredit
from services.credit_types import CreditErrorCode, as_utc
from services.crypto import hash_client_ip
from services.guest_ledger import (
    deduct_guest_credits,
    ensure_guest_record,
    guest_identity,
    load_and_maybe_refill_guest_balance,
)


NOW = datetime(2026, 5, 1, 8, 30, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def guest_db(tmp_path):
    db_path = tmp_path / "guest_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield session_maker
    await engine.dispose()


async def _rows(session_maker):
    async with session_maker() as session:
        return (await session.execute(select(GuestCredit))).scalars().all()


async def _audit_entries(session_maker):
    async with session_maker() as session:
        return (await session.execute(select(CreditLedger))).scalars().all()


def test_ip_hash_is_keyed_and_stable():
    first = hash_client_ip("203.0.113.7", secret="secret-a")
    assert first == hash_client_ip(" 203.0.113.7 ", secret="secret-a")
    assert first != hash_client_ip("203.0.113.7", secret="secret-b")
    assert "203.0.113.7" not in first
    assert len(first) == 64


def test_identity_truncates_user_agent():
    identity = guest_identity("198.51.100.2", "x" * 900)
    assert len(identity.user_agent) == 512
    assert identity.ip_hash != "198.51.100.2"
    assert guest_identity("198.51.100.2", "   ").user_agent is None


@pytest.mark.asyncio
async def test_first_sight_creates_one_full_bucket(guest_db):
    identity = guest_identity("203.0.113.10", "pytest")

    async with guest_db() as session:
        row = await ensure_guest_record(identity, session, now=NOW)
        again = await ensure_guest_record(identity, session, now=NOW)

    assert row.id == again.id
    rows = await _rows(guest_db)
    assert len(rows) == 1
    assert rows[0].credits == 400
    assert rows[0].ip_hash == identity.ip_hash
    assert as_utc(rows[0].reset_at) == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_deduct_takes_credits_and_stamps_last_use(guest_db):
    identity = guest_identity("203.0.113.11", "pytest")

    async with guest_db() as session:
        result = await deduct_guest_credits(identity, 150, session, reason="humanize (guest)", now=NOW)

    assert result.ok
    assert result.credits_left == 250
    rows = await _rows(guest_db)
    assert rows[0].credits == 250
    assert as_utc(rows[0].last_used_at) == NOW
    entries = await _audit_entries(guest_db)
    assert len(entries) == 1
    assert entries[0].guest_ip_hash == identity.ip_hash
    assert entries[0].user_id is None
    assert entries[0].reason == "humanize (guest)"
    assert (entries[0].amount, entries[0].balance_after) == (150, 250)


@pytest.mark.asyncio
async def test_deduct_refuses_without_touching_balance(guest_db):
    identity = guest_identity("203.0.113.12")

    async with guest_db() as session:
        await deduct_guest_credits(identity, 390, session, now=NOW)
        result = await deduct_guest_credits(identity, 20, session, now=NOW)

    assert not result.ok
    assert result.error_code == CreditErrorCode.INSUFFICIENT_CREDITS
    assert "Create an account" in result.message
    rows = await _rows(guest_db)
    assert rows[0].credits == 10
    assert len(await _audit_entries(guest_db)) == 1


@pytest.mark.asyncio
async def test_zero_amount_is_a_no_op(guest_db):
    identity = guest_identity("203.0.113.13")
    async with guest_db() as session:
        result = await deduct_guest_credits(identity, 0, session, now=NOW)
    assert result.ok
    assert await _rows(guest_db) == []


@pytest.mark.asyncio
async def test_balance_refills_after_window(guest_db):
    identity = guest_identity("203.0.113.14")
    async with guest_db() as session:
        await deduct_guest_credits(identity, 395, session, now=NOW)

    later = NOW + timedelta(days=31)
    async with guest_db() as session:
        balance = await load_and_maybe_refill_guest_balance(identity, session, now=later)

    assert balance == 400
    rows = await _rows(guest_db)
    assert as_utc(rows[0].reset_at) == later + timedelta(days=30)


@pytest.mark.asyncio
async def test_concurrent_guest_deductions_never_overdraw(guest_db):
    identity = guest_identity("203.0.113.15")
    async with guest_db() as session:
        await ensure_guest_record(identity, session, now=NOW)

    async def _attempt():
        async with guest_db() as session:
            return await deduct_guest_credits(identity, 300, session, now=NOW)

    results = await asyncio.gather(_attempt(), _attempt())

    assert sum(1 for result in results if result.ok) == 1
    rows = await _rows(guest_db)
    assert rows[0].credits == 100
    entries = await _audit_entries(guest_db)
    assert len(entries) == 1
    assert entries[0].balance_after == 100
