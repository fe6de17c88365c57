"""Static plan table: entitlements and credit allotments per plan."""

from __future__ import annotations

from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Sequence, Tuple

from config import settings


FREE_PLAN_ID = "free"
GUEST_PLAN_ID = "guest"


@dataclass(frozen=True)
class PlanPolicy:
    id: str
    label: str
    allow_text: bool = True
    allow_file: bool = False
    allow_url: bool = False
    max_chars: Optional[int] = None
    monthly_credits: Optional[int] = None
    reset_interval_days: Optional[int] = None
    one_time_credits: Optional[int] = None
    one_time_expires_days: Optional[int] = None
    save_history: bool = True
    credits_per_word_detect: float = 1.0
    price_ids: Tuple[str, ...] = ()

    def allows_source(self, source_type: str) -> bool:
        if source_type == "file":
            return self.allow_file
        if source_type == "url":
            return self.allow_url
        return self.allow_text

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "label": self.label,
            "allow_text": self.allow_text,
            "allow_file": self.allow_file,
            "allow_url": self.allow_url,
            "max_chars": self.max_chars,
            "monthly_credits": self.monthly_credits,
            "reset_interval_days": self.reset_interval_days,
            "one_time_credits": self.one_time_credits,
            "one_time_expires_days": self.one_time_expires_days,
            "save_history": self.save_history,
        }


_BASE_POLICIES: Tuple[PlanPolicy, ...] = (
    PlanPolicy(
        id=GUEST_PLAN_ID,
        label="Guest",
        max_chars=1500,
        monthly_credits=400,
        reset_interval_days=30,
        save_history=False,
    ),
    PlanPolicy(
        id=FREE_PLAN_ID,
        label="Free",
        max_chars=1500,
        monthly_credits=400,
    ),
    PlanPolicy(
        id="trial",
        label="Trial Pack",
        allow_file=True,
        allow_url=True,
        max_chars=30000,
        one_time_credits=30000,
        one_time_expires_days=14,
    ),
    PlanPolicy(
        id="hobby",
        label="Hobby",
        allow_file=True,
        allow_url=True,
        max_chars=30000,
        monthly_credits=100000,
    ),
    PlanPolicy(
        id="pro",
        label="Pro",
        allow_file=True,
        allow_url=True,
        max_chars=60000,
        monthly_credits=200000,
    ),
    PlanPolicy(
        id="lifetime",
        label="Lifetime",
        allow_file=True,
        allow_url=True,
        max_chars=60000,
        one_time_credits=200000,
        one_time_expires_days=365 * 5,
    ),
)


def configured_price_ids() -> Dict[str, Sequence[str]]:
    return {
        "trial": [settings.PRICE_ID_TRIAL_PACK],
        "hobby": [settings.PRICE_ID_HOBBY_MONTHLY, settings.PRICE_ID_HOBBY_YEARLY],
        "pro": [settings.PRICE_ID_PRO_MONTHLY, settings.PRICE_ID_PRO_YEARLY],
        "lifetime": [settings.PRICE_ID_LIFETIME],
    }


def build_plan_policies(price_ids: Optional[Mapping[str, Sequence[str]]] = None) -> Mapping[str, PlanPolicy]:
    """Build the read-only plan table, attaching billing price ids to each plan."""
    price_ids = price_ids or {}
    table: Dict[str, PlanPolicy] = {}
    for policy in _BASE_POLICIES:
        ids = tuple(str(value).strip() for value in price_ids.get(policy.id, ()) if value and str(value).strip())
        table[policy.id] = replace(policy, price_ids=ids)
    return MappingProxyType(table)


PLAN_POLICIES: Mapping[str, PlanPolicy] = build_plan_policies(configured_price_ids())


def is_known_plan(plan_id: Optional[str], policies: Mapping[str, PlanPolicy] = PLAN_POLICIES) -> bool:
    return bool(plan_id) and plan_id in policies


def get_plan_policy(plan_id: Optional[str], policies: Mapping[str, PlanPolicy] = PLAN_POLICIES) -> PlanPolicy:
    """Return the policy for plan_id, or the free plan when unknown."""
    if plan_id and plan_id in policies:
        return policies[plan_id]
    return policies[FREE_PLAN_ID]


def get_plan_by_price_id(
    price_id: Optional[str],
    policies: Mapping[str, PlanPolicy] = PLAN_POLICIES,
) -> Optional[PlanPolicy]:
    if not price_id:
        return None
    for policy in policies.values():
        if price_id in policy.price_ids:
            return policy
    return None


def get_plan_by_legacy_price_id(
    price_id: Optional[str],
    legacy_map: Optional[Mapping[str, str]] = None,
    policies: Mapping[str, PlanPolicy] = PLAN_POLICIES,
) -> Optional[PlanPolicy]:
    """Map price ids from retired price tables onto current plans."""
    if not price_id:
        return None
    mapping = settings.LEGACY_PRICE_PLAN_MAP if legacy_map is None else legacy_map
    plan_id = mapping.get(price_id)
    if not is_known_plan(plan_id, policies):
        return None
    return policies[plan_id]
