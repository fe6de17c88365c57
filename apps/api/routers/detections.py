"""Usage history router."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.detections import (
    delete_all_detections,
    delete_detection,
    get_detection,
    list_detections,
    set_retention,
)

router = APIRouter()


class RetentionRequest(BaseModel):
    retention_days: int


@router.get("")
async def list_history(
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=20, ge=1, le=100),
    source_type: Optional[str] = Query(default=None, pattern="^(text|file|url)$"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_detections(auth.user_id, db, page=page, page_size=page_size, source_type=source_type)


@router.delete("")
async def delete_history(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await delete_all_detections(auth.user_id, db)


@router.put("/retention")
async def update_retention(
    request: RetentionRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await set_retention(auth.user_id, request.retention_days, db)


@router.get("/{detection_id}")
async def get_history_item(
    detection_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_detection(auth.user_id, detection_id, db)


@router.delete("/{detection_id}")
async def delete_history_item(
    detection_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await delete_detection(auth.user_id, detection_id, db)
