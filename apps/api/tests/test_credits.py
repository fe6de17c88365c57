import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from config import settings
from database import Base
from models.credit_ledger import CreditLedger
from models.payment import Payment
from models.user import User
from services.credit_types import CreditErrorCode, CreditMetadata, add_months, as_utc, parse_timestamp
from services.credits import (
    Principal,
    check_gate,
    deduct_user_credits,
    get_credit_summary,
    load_and_maybe_refill_balance,
    load_plan_context,
    materialize_balance,
)
from services.guest_ledger import guest_identity
from services.plan_policy import get_plan_policy
from services.plan_resolver import resolve_plan_for_user


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def credit_db(tmp_path):
    db_path = tmp_path / "credits.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield session_maker
    await engine.dispose()


async def _seed_user(session_maker, user_id, credits, metadata=None):
    async with session_maker() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", credits=credits, metadata_json=metadata or {}))
        await session.commit()


async def _balance(session_maker, user_id):
    async with session_maker() as session:
        user = await session.get(User, user_id)
        return user.credits, dict(user.metadata_json or {})


def _future(days=10):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc)).date().isoformat() == "2026-02-28"
    assert add_months(datetime(2026, 12, 15, tzinfo=timezone.utc)).date().isoformat() == "2027-01-15"


def test_free_plan_refills_when_reset_missing():
    update = materialize_balance(get_plan_policy("free"), 12, CreditMetadata(), NOW)
    assert update.changed
    assert update.credits == 400
    assert update.metadata.credits_reset_at == datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)
    assert update.metadata.plan_id == "free"


def test_interval_plan_refills_after_fixed_days():
    every_week = replace(get_plan_policy("free"), monthly_credits=None, reset_interval_days=7)
    update = materialize_balance(every_week, 0, CreditMetadata(), NOW)
    assert update.credits == 400
    assert update.metadata.credits_reset_at == NOW + timedelta(days=7)


def test_refill_not_due_leaves_balance_alone():
    metadata = CreditMetadata(plan_id="free", credits_reset_at=NOW + timedelta(days=3))
    update = materialize_balance(get_plan_policy("free"), 12, metadata, NOW)
    assert not update.changed
    assert update.credits == 12


def test_subscription_refill_moves_one_calendar_month():
    now = datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)
    update = materialize_balance(get_plan_policy("pro"), 5, CreditMetadata(plan_id="pro"), now)
    assert update.credits == 200000
    assert update.metadata.credits_reset_at == datetime(2026, 2, 28, 9, 0, tzinfo=timezone.utc)


def test_one_time_plan_grants_once_and_starts_expiry_clock():
    trial = get_plan_policy("trial")
    first = materialize_balance(trial, 0, CreditMetadata(), NOW)
    assert first.credits == 30000
    assert first.metadata.one_time_expires_at == NOW + timedelta(days=14)
    assert first.metadata.plan_id == "trial"

    later = materialize_balance(trial, 120, first.metadata, NOW + timedelta(days=1))
    assert not later.changed
    assert later.credits == 120


def test_expired_one_time_plan_drops_to_free_with_zero_balance():
    metadata = CreditMetadata(plan_id="trial", one_time_expires_at=NOW - timedelta(minutes=1))
    update = materialize_balance(get_plan_policy("trial"), 9000, metadata, NOW)
    assert update.changed
    assert update.credits == 0
    assert update.plan.id == "free"
    assert update.metadata.plan_id == "free"
    assert update.metadata.one_time_expires_at is None


def test_metadata_round_trip_keeps_unknown_keys():
    metadata = CreditMetadata.from_json(
        {"planId": "pro", "creditsResetAt": "2026-04-01T00:00:00Z", "retentionDays": 30}
    )
    assert metadata.credits_reset_at == datetime(2026, 4, 1, tzinfo=timezone.utc)
    payload = metadata.to_json()
    assert payload["retentionDays"] == 30
    assert payload["planId"] == "pro"
    assert parse_timestamp(payload["creditsResetAt"]) == metadata.credits_reset_at


def test_gate_blocks_file_and_oversized_text_for_free_plan():
    free = get_plan_policy("free")
    blocked = check_gate(free, "file")
    assert not blocked.ok
    assert blocked.error_code == CreditErrorCode.PLAN_GATE_BLOCKED
    assert not check_gate(free, "url").ok
    assert not check_gate(free, "text", 1501).ok
    assert check_gate(free, "text", 1500).ok
    assert check_gate(get_plan_policy("pro"), "file").ok


def test_gate_limits_text_length_for_every_source_type():
    pro = get_plan_policy("pro")
    assert not check_gate(pro, "url", 60001).ok
    assert not check_gate(pro, "file", 60001).ok
    assert check_gate(pro, "url", 60000).ok
    assert check_gate(pro, "url").ok


@pytest.mark.asyncio
async def test_deduct_subtracts_and_writes_one_ledger_entry(credit_db):
    await _seed_user(credit_db, "u-pro", 500, {"planId": "pro", "creditsResetAt": _future()})

    async with credit_db() as session:
        result = await deduct_user_credits("u-pro", get_plan_policy("pro"), 50, session, reason="detect (pro)")

    assert result.ok
    assert result.credits_left == 450
    credits, metadata = await _balance(credit_db, "u-pro")
    assert credits == 450
    assert metadata["planId"] == "pro"

    async with credit_db() as session:
        entries = (await session.execute(select(CreditLedger).where(CreditLedger.user_id == "u-pro"))).scalars().all()
    assert len(entries) == 1
    assert entries[0].entry_type == "subtract"
    assert entries[0].amount == 50
    assert entries[0].balance_after == 450
    assert entries[0].plan_id == "pro"


@pytest.mark.asyncio
async def test_deduct_refuses_when_balance_too_low(credit_db):
    await _seed_user(credit_db, "u-low", 3, {"planId": "free", "creditsResetAt": _future()})

    async with credit_db() as session:
        result = await deduct_user_credits("u-low", get_plan_policy("free"), 10, session)

    assert not result.ok
    assert result.error_code == CreditErrorCode.INSUFFICIENT_CREDITS
    credits, _ = await _balance(credit_db, "u-low")
    assert credits == 3
    async with credit_db() as session:
        entries = (await session.execute(select(CreditLedger))).scalars().all()
    assert entries == []


@pytest.mark.asyncio
async def test_deduct_fails_closed_on_storage_error(credit_db):
    await _seed_user(credit_db, "u-broken", 500, {"planId": "pro", "creditsResetAt": _future()})

    async with credit_db() as session:
        with patch.object(session, "execute", AsyncMock(side_effect=RuntimeError("database is locked"))):
            result = await deduct_user_credits("u-broken", get_plan_policy("pro"), 5, session)

    assert not result.ok
    assert result.error_code == CreditErrorCode.INSUFFICIENT_CREDITS
    credits, _ = await _balance(credit_db, "u-broken")
    assert credits == 500


@pytest.mark.asyncio
async def test_concurrent_deductions_never_overdraw(credit_db):
    await _seed_user(credit_db, "u-race", 400, {"planId": "free", "creditsResetAt": _future()})
    free = get_plan_policy("free")

    async def _attempt():
        async with credit_db() as session:
            return await deduct_user_credits("u-race", free, 300, session)

    results = await asyncio.gather(_attempt(), _attempt())

    assert sum(1 for result in results if result.ok) == 1
    credits, _ = await _balance(credit_db, "u-race")
    assert credits == 100


@pytest.mark.asyncio
async def test_load_refills_free_user_past_reset(credit_db):
    past = (NOW - timedelta(days=1)).isoformat()
    await _seed_user(credit_db, "u-free", 12, {"planId": "free", "creditsResetAt": past})

    async with credit_db() as session:
        context = await load_and_maybe_refill_balance("u-free", session, now=NOW)

    assert context.credits == 400
    assert context.plan.id == "free"
    credits, metadata = await _balance(credit_db, "u-free")
    assert credits == 400
    assert parse_timestamp(metadata["creditsResetAt"]) == add_months(NOW, 1)


@pytest.mark.asyncio
async def test_load_expires_one_time_balance(credit_db):
    past = (NOW - timedelta(hours=1)).isoformat()
    await _seed_user(credit_db, "u-trial", 5000, {"planId": "trial", "oneTimeExpiresAt": past})

    async with credit_db() as session:
        context = await load_and_maybe_refill_balance("u-trial", session, now=NOW)

    assert context.credits == 0
    assert context.plan.id == "free"
    credits, metadata = await _balance(credit_db, "u-trial")
    assert credits == 0
    assert metadata["planId"] == "free"
    assert metadata["oneTimeExpiresAt"] is None


@pytest.mark.asyncio
async def test_load_for_unknown_user_reports_empty_guest_context(credit_db):
    async with credit_db() as session:
        context = await load_and_maybe_refill_balance("nobody", session, now=NOW)
    assert context.is_guest
    assert context.credits == 0


@pytest.mark.asyncio
async def test_resolver_prefers_stored_plan_then_latest_payment(credit_db, monkeypatch):
    monkeypatch.setattr(settings, "LEGACY_PRICE_PLAN_MAP", {"price_legacy_hobby": "hobby", "price_legacy_pro": "pro"})
    await _seed_user(credit_db, "u-paid", 0, {})
    async with credit_db() as session:
        session.add_all(
            [
                Payment(
                    user_id="u-paid",
                    price_id="price_legacy_hobby",
                    type="subscription",
                    status="active",
                    created_at=NOW - timedelta(days=40),
                ),
                Payment(
                    user_id="u-paid",
                    price_id="price_legacy_pro",
                    type="subscription",
                    status="active",
                    created_at=NOW - timedelta(days=2),
                ),
            ]
        )
        await session.commit()

    async with credit_db() as session:
        assert (await resolve_plan_for_user("u-paid", session)).id == "pro"
        stored = CreditMetadata(plan_id="hobby")
        assert (await resolve_plan_for_user("u-paid", session, stored)).id == "hobby"
        assert (await resolve_plan_for_user(None, session)).id == "guest"
        assert (await resolve_plan_for_user("u-nopay", session)).id == "free"


@pytest.mark.asyncio
async def test_one_time_purchase_is_granted_on_first_load(credit_db, monkeypatch):
    monkeypatch.setattr(settings, "LEGACY_PRICE_PLAN_MAP", {"price_trial_2025": "trial"})
    await _seed_user(credit_db, "u-buyer", 0, {})
    async with credit_db() as session:
        session.add(Payment(user_id="u-buyer", price_id="price_trial_2025", type="one_time", status="paid"))
        await session.commit()

    async with credit_db() as session:
        context = await load_and_maybe_refill_balance("u-buyer", session, now=NOW)
    assert context.plan.id == "trial"
    assert context.credits == 30000

    credits, metadata = await _balance(credit_db, "u-buyer")
    assert credits == 30000
    assert metadata["planId"] == "trial"
    assert as_utc(parse_timestamp(metadata["oneTimeExpiresAt"])) == NOW + timedelta(days=14)


@pytest.mark.asyncio
async def test_credit_summary_lists_recent_entries(credit_db):
    await _seed_user(credit_db, "u-summary", 300, {"planId": "pro", "creditsResetAt": _future()})
    async with credit_db() as session:
        await deduct_user_credits("u-summary", get_plan_policy("pro"), 20, session)

    async with credit_db() as session:
        summary = await get_credit_summary(Principal(user_id="u-summary"), session)

    assert summary["credits"] == 280
    assert summary["plan"]["id"] == "pro"
    assert summary["is_guest"] is False
    assert [entry["amount"] for entry in summary["recent_entries"]] == [20]


@pytest.mark.asyncio
async def test_plan_context_fails_closed_when_storage_breaks(credit_db):
    await _seed_user(credit_db, "u-outage", 500, {"planId": "pro", "creditsResetAt": _future()})
    broken = AsyncMock(side_effect=RuntimeError("connection reset"))

    async with credit_db() as session:
        with patch("services.credits.load_and_maybe_refill_balance", new=broken):
            context = await load_plan_context(Principal(user_id="u-outage"), session)
    assert context.credits == 0
    assert context.plan.id == "free"
    assert not context.is_guest

    guest = Principal(guest=guest_identity("203.0.113.90"))
    async with credit_db() as session:
        with patch("services.credits.load_and_maybe_refill_guest_balance", new=broken):
            context = await load_plan_context(guest, session)
    assert context.credits == 0
    assert context.plan.id == "guest"
    assert context.is_guest

    credits, _ = await _balance(credit_db, "u-outage")
    assert credits == 500
