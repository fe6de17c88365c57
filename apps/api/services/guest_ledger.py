"""Credit buckets for anonymous callers, keyed by a keyed hash of the client IP."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.guest_credit import GuestCredit
from services.credit_types import DEFAULT_REFILL_CREDITS, CreditCheckResult, as_utc, utc_now
from services.crypto import hash_client_ip
from services.plan_policy import GUEST_PLAN_ID, PlanPolicy, get_plan_policy


logger = logging.getLogger(__name__)

DEFAULT_GUEST_RESET_DAYS = 30
MAX_USER_AGENT_LENGTH = 512


@dataclass(frozen=True)
class GuestIdentity:
    ip_hash: str
    raw_ip: Optional[str] = None
    user_agent: Optional[str] = None


def guest_identity(ip: Optional[str], user_agent: Optional[str] = None) -> GuestIdentity:
    """Hash the caller IP once, at the edge; only the hash is ever matched on."""
    agent = (user_agent or "").strip()[:MAX_USER_AGENT_LENGTH] or None
    return GuestIdentity(ip_hash=hash_client_ip(ip), raw_ip=(ip or None), user_agent=agent)


def guest_allotment(plan: Optional[PlanPolicy] = None) -> int:
    policy = plan or get_plan_policy(GUEST_PLAN_ID)
    return int(policy.monthly_credits or DEFAULT_REFILL_CREDITS)


def guest_reset_window(plan: Optional[PlanPolicy] = None) -> timedelta:
    policy = plan or get_plan_policy(GUEST_PLAN_ID)
    return timedelta(days=int(policy.reset_interval_days or DEFAULT_GUEST_RESET_DAYS))


async def get_guest_record(ip_hash: str, db: AsyncSession) -> Optional[GuestCredit]:
    result = await db.execute(
        select(GuestCredit)
        .where(GuestCredit.ip_hash == ip_hash)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_guest_record(
    identity: GuestIdentity,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> GuestCredit:
    """Return the guest's ledger row, creating it with a full allotment on first sight."""
    existing = await get_guest_record(identity.ip_hash, db)
    if existing:
        return existing

    current = now or utc_now()
    row = GuestCredit(
        id=str(uuid.uuid4()),
        ip_hash=identity.ip_hash,
        raw_ip=identity.raw_ip,
        credits=guest_allotment(),
        reset_at=current + guest_reset_window(),
        user_agent=identity.user_agent,
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the row first.
        await db.rollback()
        existing = await get_guest_record(identity.ip_hash, db)
        if existing is None:
            raise
        return existing

    logger.info("guest_ledger_created ip_hash=%s credits=%s", identity.ip_hash[:12], row.credits)
    return row


async def load_and_maybe_refill_guest_balance(
    identity: GuestIdentity,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Return the guest balance, refilling it first when the reset window has elapsed."""
    current = now or utc_now()
    row = await ensure_guest_record(identity, db, now=current)
    reset_at = as_utc(row.reset_at)
    if reset_at is not None and reset_at > current:
        return int(row.credits)

    allotment = guest_allotment()
    result = await db.execute(
        update(GuestCredit)
        .where(GuestCredit.id == row.id, GuestCredit.reset_at <= current)
        .values(
            {
                GuestCredit.credits: allotment,
                GuestCredit.reset_at: current + guest_reset_window(),
                GuestCredit.updated_at: current,
            }
        )
        .returning(GuestCredit.credits)
        .execution_options(synchronize_session=False)
    )
    refilled = result.first()
    await db.commit()
    if refilled is not None:
        logger.info("guest_ledger_refilled ip_hash=%s credits=%s", identity.ip_hash[:12], allotment)
        return int(refilled[0])

    # A concurrent request refilled first; report what it left behind.
    await db.refresh(row)
    return int(row.credits)


async def deduct_guest_credits(
    identity: GuestIdentity,
    amount: int,
    db: AsyncSession,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CreditCheckResult:
    """
    Atomically take `amount` credits from the guest bucket, or fail without side effects.

    The audit entry is keyed by the IP hash and committed with the balance change.
    """
    required = int(amount)
    if required <= 0:
        return CreditCheckResult.success()

    current = now or utc_now()
    try:
        await load_and_maybe_refill_guest_balance(identity, db, now=current)

        values = {
            GuestCredit.credits: GuestCredit.credits - required,
            GuestCredit.last_used_at: current,
            GuestCredit.updated_at: current,
        }
        if identity.user_agent:
            values[GuestCredit.user_agent] = identity.user_agent
        result = await db.execute(
            update(GuestCredit)
            .where(GuestCredit.ip_hash == identity.ip_hash, GuestCredit.credits >= required)
            .values(values)
            .returning(GuestCredit.credits)
            .execution_options(synchronize_session=False)
        )
        updated = result.first()
        if updated is None:
            await db.rollback()
            return CreditCheckResult.insufficient("Not enough credits. Create an account to get more.")
        db.add(
            CreditLedger(
                id=str(uuid.uuid4()),
                guest_ip_hash=identity.ip_hash,
                entry_type="subtract",
                amount=required,
                balance_after=int(updated[0]),
                reason=reason or f"Credit usage ({GUEST_PLAN_ID})",
                plan_id=GUEST_PLAN_ID,
                metadata_json={"planId": GUEST_PLAN_ID},
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("guest_credits_deduct_failed ip_hash=%s amount=%s", identity.ip_hash[:12], required)
        return CreditCheckResult.insufficient("Not enough credits. Please try again.")

    balance_after = int(updated[0])
    logger.info(
        "guest_credits_deduct ip_hash=%s amount=%s balance_after=%s",
        identity.ip_hash[:12],
        required,
        balance_after,
    )
    return CreditCheckResult.success(balance_after)
