"""Credits router."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, get_optional_auth_context, get_principal
from services.credits import Principal, get_credit_summary
from services.plan_policy import PLAN_POLICIES

router = APIRouter()


@router.get("")
async def credits_summary(
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_record(db, auth)
    return await get_credit_summary(principal, db)


@router.get("/plans")
async def list_plans():
    return {"plans": [policy.to_dict() for policy in PLAN_POLICIES.values()]}
