"""Usage history: listing, deletion, and retention of detection records."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.detection import Detection
from models.user import User
from services.credit_types import utc_now

logger = logging.getLogger(__name__)


ALLOWED_RETENTION_DAYS = (30, 90)


def _serialize(row: Detection, *, full: bool = False) -> Dict[str, Any]:
    payload = {
        "id": row.id,
        "source_type": row.source_type,
        "input_type": row.input_type,
        "input_preview": row.input_preview,
        "ai_score": row.ai_score,
        "raw_score": row.raw_score,
        "sentence_count": row.sentence_count,
        "length": row.length,
        "language": row.language,
        "version": row.version,
        "credits_used": row.credits_used,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
    if full:
        payload.update(
            {
                "sentences": row.sentences,
                "attack_detected": row.attack_detected,
                "readability_score": row.readability_score,
                "credits_remaining": row.credits_remaining,
            }
        )
    return payload


async def list_detections(
    user_id: str,
    db: AsyncSession,
    *,
    page: int = 0,
    page_size: int = 20,
    source_type: Optional[str] = None,
) -> Dict[str, Any]:
    filters = [Detection.user_id == user_id]
    if source_type:
        filters.append(Detection.source_type == source_type)

    total_result = await db.execute(select(func.count(Detection.id)).where(*filters))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(Detection)
        .where(*filters)
        .order_by(Detection.created_at.desc())
        .limit(page_size)
        .offset(page * page_size)
    )
    return {
        "items": [_serialize(row) for row in result.scalars().all()],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


async def get_detection(user_id: str, detection_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(Detection).where(Detection.id == detection_id, Detection.user_id == user_id)
    )
    row = result.scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="Detection not found")
    return _serialize(row, full=True)


async def delete_detection(user_id: str, detection_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        delete(Detection)
        .where(Detection.id == detection_id, Detection.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        await db.rollback()
        raise HTTPException(status_code=404, detail="Detection not found")
    await db.commit()
    return {"ok": True, "deleted": 1}


async def delete_all_detections(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        delete(Detection)
        .where(Detection.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("detections_purged user=%s count=%s", user_id, result.rowcount)
    return {"ok": True, "deleted": int(result.rowcount or 0)}


async def set_retention(user_id: str, days: int, db: AsyncSession) -> Dict[str, Any]:
    if days not in ALLOWED_RETENTION_DAYS:
        raise HTTPException(status_code=422, detail=f"retention_days must be one of {list(ALLOWED_RETENTION_DAYS)}")
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    user.metadata_json = {**(user.metadata_json or {}), "retentionDays": days}
    await db.commit()
    return {"ok": True, "retention_days": days}


def _retention_days(metadata: Optional[Dict[str, Any]]) -> int:
    value = (metadata or {}).get("retentionDays")
    try:
        days = int(value)
    except (TypeError, ValueError):
        return int(settings.DEFAULT_RETENTION_DAYS)
    return days if days > 0 else int(settings.DEFAULT_RETENTION_DAYS)


async def purge_expired_detections(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Delete records older than each owner's retention window."""
    current = now or utc_now()
    users = await db.execute(select(User.id, User.metadata_json).where(User.detections.any()))
    removed = 0
    for user_id, metadata in users.all():
        cutoff = current - timedelta(days=_retention_days(metadata))
        result = await db.execute(
            delete(Detection)
            .where(Detection.user_id == user_id, Detection.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        removed += int(result.rowcount or 0)
    await db.commit()
    if removed:
        logger.info("detections_retention_purge removed=%s", removed)
    return removed
