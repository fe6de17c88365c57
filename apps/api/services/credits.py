"""Credit accounting: plan context, lazy refills, and atomic deductions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.user import User
from services.credit_types import (
    DEFAULT_REFILL_CREDITS,
    CreditCheckResult,
    CreditMetadata,
    PlanContext,
    add_months,
    format_timestamp,
    utc_now,
)
from services.guest_ledger import (
    GuestIdentity,
    deduct_guest_credits,
    load_and_maybe_refill_guest_balance,
)
from services.plan_policy import FREE_PLAN_ID, GUEST_PLAN_ID, PlanPolicy, get_plan_policy
from services.plan_resolver import resolve_plan_for_user


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Either a signed-in user or a guest identified by hashed IP."""

    user_id: Optional[str] = None
    guest: Optional[GuestIdentity] = None

    @property
    def is_guest(self) -> bool:
        return not self.user_id


@dataclass(frozen=True)
class BalanceUpdate:
    plan: PlanPolicy
    credits: int
    metadata: CreditMetadata
    changed: bool


def _is_due(moment: Optional[datetime], now: datetime) -> bool:
    return moment is None or moment <= now


def materialize_balance(
    plan: PlanPolicy,
    credits: Optional[int],
    metadata: CreditMetadata,
    now: datetime,
) -> BalanceUpdate:
    """
    Apply the plan's refill and expiry rules to a stored balance.

    Pure; the caller persists the result when `changed` is set. Every branch
    that changes the balance also records the plan id so the two never drift.
    """
    updated = metadata.copy()
    balance = max(int(credits or 0), 0)
    changed = False

    if plan.monthly_credits:
        if _is_due(updated.credits_reset_at, now):
            balance = int(plan.monthly_credits)
            updated.credits_reset_at = add_months(now, 1)
            updated.plan_id = plan.id
            changed = True
    elif plan.reset_interval_days:
        if _is_due(updated.credits_reset_at, now):
            balance = int(plan.monthly_credits or DEFAULT_REFILL_CREDITS)
            updated.credits_reset_at = now + timedelta(days=int(plan.reset_interval_days))
            updated.plan_id = plan.id
            changed = True
    elif plan.one_time_credits and updated.plan_id != plan.id and updated.one_time_expires_at is None:
        # First sight of a one-time purchase: grant it and start the expiry clock.
        balance = int(plan.one_time_credits)
        if plan.one_time_expires_days:
            updated.one_time_expires_at = now + timedelta(days=int(plan.one_time_expires_days))
        updated.plan_id = plan.id
        changed = True

    if plan.one_time_expires_days and updated.one_time_expires_at is not None:
        if updated.one_time_expires_at <= now:
            balance = 0
            updated.one_time_expires_at = None
            plan = get_plan_policy(FREE_PLAN_ID)
            updated.plan_id = plan.id
            changed = True

    return BalanceUpdate(plan=plan, credits=balance, metadata=updated, changed=changed)


async def load_and_maybe_refill_balance(
    user_id: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> PlanContext:
    """Load the user's plan and balance. Writes back when a refill or expiry applies."""
    current = now or utc_now()
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        await db.rollback()
        return PlanContext(
            plan=get_plan_policy(GUEST_PLAN_ID),
            credits=0,
            metadata=CreditMetadata(),
            is_guest=True,
        )

    metadata = CreditMetadata.from_json(user.metadata_json)
    plan = await resolve_plan_for_user(user_id, db, metadata)
    outcome = materialize_balance(plan, user.credits, metadata, current)

    if outcome.changed:
        user.credits = outcome.credits
        user.metadata_json = outcome.metadata.to_json()
        await db.commit()
        logger.info(
            "credits_refresh user=%s plan=%s credits=%s reset_at=%s",
            user_id,
            outcome.plan.id,
            outcome.credits,
            format_timestamp(outcome.metadata.credits_reset_at),
        )
    else:
        await db.commit()

    return PlanContext(
        plan=outcome.plan,
        credits=outcome.credits,
        metadata=outcome.metadata,
        is_guest=False,
    )


async def load_plan_context(principal: Principal, db: AsyncSession) -> PlanContext:
    """
    Plan plus live balance for any caller. May write a refill.

    Never raises: a storage failure yields a zero balance on the caller's
    baseline plan.
    """
    try:
        if principal.user_id:
            return await load_and_maybe_refill_balance(principal.user_id, db)

        plan = get_plan_policy(GUEST_PLAN_ID)
        if principal.guest is None:
            return PlanContext(plan=plan, credits=0, metadata=CreditMetadata(), is_guest=True)
        credits = await load_and_maybe_refill_guest_balance(principal.guest, db)
        return PlanContext(plan=plan, credits=credits, metadata=CreditMetadata(), is_guest=True)
    except Exception:
        await db.rollback()
        logger.exception(
            "plan_context_failed user=%s guest=%s",
            principal.user_id,
            principal.guest.ip_hash[:12] if principal.guest else None,
        )
        baseline = GUEST_PLAN_ID if principal.is_guest else FREE_PLAN_ID
        return PlanContext(
            plan=get_plan_policy(baseline),
            credits=0,
            metadata=CreditMetadata(),
            is_guest=principal.is_guest,
        )


async def deduct_user_credits(
    user_id: str,
    plan: PlanPolicy,
    amount: int,
    db: AsyncSession,
    *,
    reason: Optional[str] = None,
    metadata_patch: Optional[Dict[str, Any]] = None,
) -> CreditCheckResult:
    """
    Subtract `amount` from the user's balance only if it still covers it.

    The guard lives in the UPDATE's WHERE clause, so concurrent requests can't
    both pass a stale balance check. The audit entry is written in the same
    transaction. Storage errors fail closed.
    """
    required = int(amount)
    if required <= 0:
        return CreditCheckResult.success()

    description = reason or f"Credit usage ({plan.id})"
    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id, User.credits >= required)
            .values({User.credits: User.credits - required})
            .returning(User.credits, User.metadata_json)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await db.rollback()
            return CreditCheckResult.insufficient()

        balance_after = int(row[0])
        stored = dict(row[1] or {})
        merged = {**stored, **(metadata_patch or {}), "planId": plan.id}
        if merged != stored:
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values({User.metadata_json: merged})
                .execution_options(synchronize_session=False)
            )

        db.add(
            CreditLedger(
                id=str(uuid.uuid4()),
                user_id=user_id,
                entry_type="subtract",
                amount=required,
                balance_after=balance_after,
                reason=description,
                plan_id=plan.id,
                metadata_json={"planId": plan.id},
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("credits_deduct_failed user=%s amount=%s", user_id, required)
        return CreditCheckResult.insufficient("Not enough credits. Please try again.")

    logger.info(
        "credits_deduct user=%s plan=%s amount=%s balance_after=%s",
        user_id,
        plan.id,
        required,
        balance_after,
    )
    return CreditCheckResult.success(balance_after)


async def deduct(
    principal: Principal,
    amount: int,
    db: AsyncSession,
    *,
    plan: PlanPolicy,
    reason: Optional[str] = None,
) -> CreditCheckResult:
    if principal.user_id:
        return await deduct_user_credits(
            principal.user_id,
            plan,
            amount,
            db,
            reason=reason,
            metadata_patch={"planId": plan.id},
        )
    if principal.guest is None:
        return CreditCheckResult.insufficient("Not enough credits. Create an account to get more.")
    return await deduct_guest_credits(principal.guest, amount, db, reason=reason)


def check_gate(plan: PlanPolicy, source_type: str, length: Optional[int] = None) -> CreditCheckResult:
    """Input-type and size checks; independent of balance."""
    if source_type == "file" and not plan.allow_file:
        return CreditCheckResult.blocked("Your plan does not allow file uploads. Upgrade your plan.")
    if source_type == "url" and not plan.allow_url:
        return CreditCheckResult.blocked("Your plan does not allow URL analysis. Upgrade your plan.")
    if source_type == "text" and not plan.allow_text:
        return CreditCheckResult.blocked("Your plan does not allow text input.")
    # Applies to the analyzed text whatever its source.
    if plan.max_chars and (length or 0) > plan.max_chars:
        return CreditCheckResult.blocked(
            f"The text exceeds the {plan.max_chars:,} character limit for your plan."
        )
    return CreditCheckResult.success()


async def get_credit_summary(principal: Principal, db: AsyncSession) -> Dict[str, Any]:
    context = await load_plan_context(principal, db)
    entries = []
    owner = None
    if principal.user_id and not context.is_guest:
        owner = CreditLedger.user_id == principal.user_id
    elif principal.guest is not None:
        owner = CreditLedger.guest_ip_hash == principal.guest.ip_hash
    if owner is not None:
        result = await db.execute(
            select(CreditLedger)
            .where(owner)
            .order_by(CreditLedger.created_at.desc())
            .limit(30)
        )
        entries = result.scalars().all()
    return {
        "plan": context.plan.to_dict(),
        "credits": context.credits,
        "is_guest": context.is_guest,
        "credits_reset_at": format_timestamp(context.metadata.credits_reset_at),
        "one_time_expires_at": format_timestamp(context.metadata.one_time_expires_at),
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
