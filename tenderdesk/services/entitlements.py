"""
Plan table. What each subscription tier includes and how much of it.

None means unlimited. PLAN_OVERRIDES (settings) can patch any field per tier.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

from ..core.config import get_settings

logger = logging.getLogger(__name__)

FREE = "FREE"
FREE_EXPIRED = "FREE_EXPIRED"
STANDARD = "STANDARD"
PREMIUM = "PREMIUM"
ENTERPRISE = "ENTERPRISE"

FEATURES = ("page_view", "chat", "brief", "cover_letter", "folder_chat")


@dataclass(frozen=True)
class PlanSpec:
    tier: str
    page_limit: Optional[int] = None
    chat_per_tender: Optional[int] = None
    brief_per_tender: Optional[int] = None
    briefs_per_trial: Optional[int] = None
    ai_monthly_limit: Optional[int] = None
    includes_cover_letter: bool = False
    includes_folder_chat: bool = False
    trial_days: Optional[int] = None
    seats: Optional[int] = None


PLAN_SPECS: dict[str, PlanSpec] = {
    FREE: PlanSpec(
        tier=FREE,
        ai_monthly_limit=0,
        chat_per_tender=2,
        brief_per_tender=1,
        briefs_per_trial=3,
        trial_days=7,
        seats=1,
    ),
    FREE_EXPIRED: PlanSpec(
        tier=FREE_EXPIRED,
        page_limit=0,
        chat_per_tender=0,
        brief_per_tender=0,
        briefs_per_trial=0,
        ai_monthly_limit=0,
        seats=1,
    ),
    STANDARD: PlanSpec(
        tier=STANDARD,
        ai_monthly_limit=120,
        includes_cover_letter=True,
        seats=1,
    ),
    PREMIUM: PlanSpec(
        tier=PREMIUM,
        ai_monthly_limit=300,
        includes_cover_letter=True,
        includes_folder_chat=True,
        seats=2,
    ),
    ENTERPRISE: PlanSpec(
        tier=ENTERPRISE,
        includes_cover_letter=True,
        includes_folder_chat=True,
    ),
}


def is_trial(tier: str) -> bool:
    return tier == FREE


def get_plan_spec(tier: str) -> PlanSpec:
    """Plan limits for a tier with PLAN_OVERRIDES applied. Unknown tiers resolve to FREE_EXPIRED."""
    base = PLAN_SPECS.get((tier or "").upper())
    if base is None:
        logger.warning("Unknown plan tier %r, treating as %s", tier, FREE_EXPIRED)
        base = PLAN_SPECS[FREE_EXPIRED]

    overrides = get_settings().plan_overrides.get(base.tier)
    if overrides:
        known = {f.name for f in dataclasses.fields(PlanSpec)} - {"tier"}
        base = dataclasses.replace(base, **{k: v for k, v in overrides.items() if k in known})
    return base
