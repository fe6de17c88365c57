"""Resolve which plan governs a signed-in user."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.payment import Payment
from models.user import User
from services.credit_types import CreditMetadata
from services.plan_policy import (
    FREE_PLAN_ID,
    GUEST_PLAN_ID,
    PlanPolicy,
    get_plan_by_legacy_price_id,
    get_plan_by_price_id,
    get_plan_policy,
    is_known_plan,
)


async def _latest_payment_price_id(user_id: str, db: AsyncSession) -> Optional[str]:
    result = await db.execute(
        select(Payment.price_id)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_plan_for_user(
    user_id: Optional[str],
    db: AsyncSession,
    metadata: Optional[CreditMetadata] = None,
) -> PlanPolicy:
    """
    Pick the user's plan: stored planId first, then the latest payment's price, then free.

    Anonymous callers always get the guest plan. Read-only.
    """
    if not user_id:
        return get_plan_policy(GUEST_PLAN_ID)

    if metadata is None:
        result = await db.execute(select(User.metadata_json).where(User.id == user_id))
        metadata = CreditMetadata.from_json(result.scalar_one_or_none())

    if is_known_plan(metadata.plan_id):
        return get_plan_policy(metadata.plan_id)

    price_id = await _latest_payment_price_id(user_id, db)
    if price_id:
        plan = get_plan_by_price_id(price_id) or get_plan_by_legacy_price_id(price_id)
        if plan:
            return plan

    return get_plan_policy(FREE_PLAN_ID)
