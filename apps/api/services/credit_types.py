"""Credit accounting contracts shared by the user and guest ledgers."""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from services.plan_policy import PlanPolicy


DEFAULT_REFILL_CREDITS = 400


class CreditErrorCode(str, Enum):
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    PLAN_GATE_BLOCKED = "PLAN_GATE_BLOCKED"


@dataclass(frozen=True)
class CreditCheckResult:
    ok: bool
    credits_left: Optional[int] = None
    error_code: Optional[CreditErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, credits_left: Optional[int] = None) -> "CreditCheckResult":
        return cls(ok=True, credits_left=credits_left)

    @classmethod
    def insufficient(cls, message: str = "Not enough credits. Upgrade your plan.") -> "CreditCheckResult":
        return cls(ok=False, error_code=CreditErrorCode.INSUFFICIENT_CREDITS, message=message)

    @classmethod
    def blocked(cls, message: str) -> "CreditCheckResult":
        return cls(ok=False, error_code=CreditErrorCode.PLAN_GATE_BLOCKED, message=message)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass
class CreditMetadata:
    """Typed view over the user's metadata JSON column."""

    plan_id: Optional[str] = None
    credits_reset_at: Optional[datetime] = None
    one_time_expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ("planId", "creditsResetAt", "oneTimeExpiresAt")

    @classmethod
    def from_json(cls, raw: Optional[Dict[str, Any]]) -> "CreditMetadata":
        data = dict(raw or {}) if isinstance(raw, dict) else {}
        plan_id = data.get("planId")
        return cls(
            plan_id=str(plan_id) if plan_id else None,
            credits_reset_at=parse_timestamp(data.get("creditsResetAt")),
            one_time_expires_at=parse_timestamp(data.get("oneTimeExpiresAt")),
            extra={key: value for key, value in data.items() if key not in cls._KNOWN_KEYS},
        )

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        if self.plan_id:
            payload["planId"] = self.plan_id
        payload["creditsResetAt"] = format_timestamp(self.credits_reset_at)
        payload["oneTimeExpiresAt"] = format_timestamp(self.one_time_expires_at)
        return payload

    def copy(self) -> "CreditMetadata":
        return CreditMetadata(
            plan_id=self.plan_id,
            credits_reset_at=self.credits_reset_at,
            one_time_expires_at=self.one_time_expires_at,
            extra=dict(self.extra),
        )


@dataclass(frozen=True)
class PlanContext:
    plan: PlanPolicy
    credits: int
    metadata: CreditMetadata
    is_guest: bool
