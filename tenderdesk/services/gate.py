"""
Entitlement gate. Every metered call site asks here first.

enforce_access() decides allow/deny for (org, feature, context), emits a
gate_check audit event, and on allow takes the usage units in the same call.
A request that loses the last unit to a concurrent one is denied, and
anything it already took is given back.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import PlanError
from ..core.flags import get_flags
from ..models.base import as_utc, utcnow
from ..models.organization import Organization
from . import usage
from .entitlements import FEATURES, FREE, FREE_EXPIRED, PlanSpec, get_plan_spec, is_trial
from .usage import LedgerAction, MONTHLY, TENDER, TRIAL_CREDIT

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("tenderdesk.audit")

# Plan label in audit events for visitors of published tenders.
PUBLIC_PLAN = "PUBLIC"


@dataclass
class GateContext:
    tender_id: Optional[str] = None
    document_id: Optional[str] = None
    page: Optional[int] = None


@dataclass
class AccessGrant:
    org_id: str
    feature: str
    plan: str
    actions: list[LedgerAction] = field(default_factory=list)


# ── Audit ────────────────────────────────────────────────────────────

def _audit(
    feature: str,
    org_id: str,
    context: GateContext,
    result: str,
    reason: Optional[str],
    plan: Optional[str],
) -> None:
    event = {
        "event": "gate_check",
        "feature": feature,
        "org_id": org_id,
        "tender_id": context.tender_id,
        "document_id": context.document_id,
        "page": context.page,
        "result": result,
        "reason": reason,
        "plan": plan,
    }
    audit_logger.info(json.dumps(event))


def _deny(feature: str, org_id: str, context: GateContext, code: str, plan: Optional[str]) -> PlanError:
    _audit(feature, org_id, context, "deny", code, plan)
    return PlanError(code)


# ── Decision ─────────────────────────────────────────────────────────

async def _load_org(db: AsyncSession, org_id: str) -> Optional[Organization]:
    if not org_id:
        return None
    return (await db.execute(
        select(Organization).where(Organization.id == org_id)
    )).scalar_one_or_none()


def _trial_expired(org: Organization, now: datetime) -> bool:
    if org.plan_tier == FREE_EXPIRED:
        return True
    expires = as_utc(org.plan_expires_at)
    return org.plan_tier == FREE and expires is not None and expires < now


def _plan_actions(spec: PlanSpec, feature: str, context: GateContext, period: str) -> list[tuple[LedgerAction, str]]:
    """Ledger actions for a metered feature, each with the code to deny with if its pool is empty."""
    if feature not in ("chat", "brief"):
        return []

    counter = "used_chats" if feature == "chat" else "used_briefs"

    if is_trial(spec.tier):
        if feature == "chat":
            return [
                (LedgerAction(TENDER, counter, context.tender_id, limit=spec.chat_per_tender), "TRIAL_LIMIT"),
            ]
        # Tender slot first, then the org-wide credit.
        return [
            (LedgerAction(TENDER, counter, context.tender_id, limit=spec.brief_per_tender), "TENDER_BRIEF_LIMIT"),
            (LedgerAction(TRIAL_CREDIT), "TRIAL_LIMIT"),
        ]

    return [
        (LedgerAction(MONTHLY, counter, period=period, limit=spec.ai_monthly_limit), "PLAN_LIMIT_REACHED"),
        (LedgerAction(TENDER, counter, context.tender_id), "PLAN_LIMIT_REACHED"),
    ]


async def _precheck(
    db: AsyncSession,
    org_id: str,
    spec: PlanSpec,
    feature: str,
    context: GateContext,
    period: str,
) -> Optional[str]:
    """Read-only checks in precedence order. Returns the deny code or None."""
    if feature == "cover_letter" and (not spec.includes_cover_letter or is_trial(spec.tier)):
        return "FEATURE_NOT_AVAILABLE"

    if feature == "folder_chat" and not spec.includes_folder_chat:
        return "UPGRADE_REQUIRED"

    if feature == "page_view":
        limit = spec.page_limit
        page = context.page or 0
        if limit is not None and limit > 0 and page > limit:
            return "PREVIEW_LIMIT"
        return None

    if feature == "chat":
        if is_trial(spec.tier):
            used = (await usage.tender_usage(db, org_id, context.tender_id))["used_chats"]
            if spec.chat_per_tender is not None and used >= spec.chat_per_tender:
                return "TRIAL_LIMIT"
        else:
            used = (await usage.monthly_usage(db, org_id, period))["used_chats"]
            if spec.ai_monthly_limit is not None and used >= spec.ai_monthly_limit:
                return "PLAN_LIMIT_REACHED"

    if feature == "brief":
        if is_trial(spec.tier):
            initial = spec.briefs_per_trial or 0
            if initial <= 0 or await usage.trial_credits(db, org_id, initial) <= 0:
                return "TRIAL_LIMIT"
            used = (await usage.tender_usage(db, org_id, context.tender_id))["used_briefs"]
            if spec.brief_per_tender is not None and used >= spec.brief_per_tender:
                return "TENDER_BRIEF_LIMIT"
        else:
            used = (await usage.monthly_usage(db, org_id, period))["used_briefs"]
            if spec.ai_monthly_limit is not None and used >= spec.ai_monthly_limit:
                return "PLAN_LIMIT_REACHED"

    return None


async def enforce_access(
    db: AsyncSession,
    org_id: str,
    feature: str,
    context: Optional[GateContext] = None,
    now: Optional[datetime] = None,
) -> AccessGrant:
    """
    Allow or deny `feature` for `org_id`. Raises PlanError on deny.

    On allow the returned grant's actions have already been applied; pass the
    grant to refund() if the metered work then fails.
    """
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature: {feature}")
    context = context or GateContext()
    if feature in ("chat", "brief") and not context.tender_id:
        raise ValueError(f"{feature} requires a tender_id")
    now = now or utcnow()

    org = await _load_org(db, org_id)
    if org is None:
        raise _deny(feature, org_id, context, "UPGRADE_REQUIRED", None)

    if _trial_expired(org, now):
        raise _deny(feature, org_id, context, "TRIAL_EXPIRED", org.plan_tier)

    if not get_flags().plan_enforcement:
        _audit(feature, org_id, context, "allow", "enforcement_disabled", org.plan_tier)
        return AccessGrant(org_id=org_id, feature=feature, plan=org.plan_tier)

    spec = get_plan_spec(org.plan_tier)
    period = usage.current_period(now)

    code = await _precheck(db, org_id, spec, feature, context, period)
    if code:
        raise _deny(feature, org_id, context, code, spec.tier)

    grant = AccessGrant(org_id=org_id, feature=feature, plan=spec.tier)
    for action, deny_code in _plan_actions(spec, feature, context, period):
        taken = await usage.apply(db, org_id, action, initial_credits=spec.briefs_per_trial or 0)
        if not taken:
            # Lost the race for the last unit. Give back what we took.
            await refund(db, grant)
            raise _deny(feature, org_id, context, deny_code, spec.tier)
        grant.actions.append(action)

    _audit(feature, org_id, context, "allow", None, spec.tier)
    return grant


def enforce_public_preview(context: GateContext) -> None:
    """
    Page previews for visitors of a published tender: no org, nothing metered,
    pages capped at the FREE tier's page_limit. Raises PlanError on deny.
    """
    limit = get_plan_spec(FREE).page_limit
    if limit is not None and limit > 0 and (context.page or 0) > limit:
        raise _deny("page_view", None, context, "PREVIEW_LIMIT", PUBLIC_PLAN)
    _audit("page_view", None, context, "allow", "public_preview", PUBLIC_PLAN)


async def refund(db: AsyncSession, grant: AccessGrant) -> None:
    """Reverse a grant's actions, newest first. Safe to call on an empty grant."""
    for action in reversed(grant.actions):
        if not await usage.reverse(db, grant.org_id, action):
            logger.warning(
                "Refund found nothing to reverse (org=%s pool=%s field=%s)",
                grant.org_id, action.pool, action.field,
            )
    if grant.actions:
        logger.info("Refunded %d usage action(s) for org=%s feature=%s",
                    len(grant.actions), grant.org_id, grant.feature)
    grant.actions = []


async def entitlements_for(db: AsyncSession, org_id: str, tender_id: Optional[str] = None) -> dict:
    """Plan, limits and current usage for upsell UI. Read-only."""
    org = await _load_org(db, org_id)
    if org is None:
        raise PlanError("UPGRADE_REQUIRED")

    spec = get_plan_spec(org.plan_tier)
    result = {
        "plan": spec.tier,
        "trial_expired": _trial_expired(org, utcnow()),
        "plan_expires_at": org.plan_expires_at.isoformat() if org.plan_expires_at else None,
        "limits": {
            "page_limit": spec.page_limit,
            "chat_per_tender": spec.chat_per_tender,
            "brief_per_tender": spec.brief_per_tender,
            "briefs_per_trial": spec.briefs_per_trial,
            "ai_monthly_limit": spec.ai_monthly_limit,
        },
        "features": {
            "cover_letter": spec.includes_cover_letter and not is_trial(spec.tier),
            "folder_chat": spec.includes_folder_chat,
        },
        "monthly": await usage.monthly_usage(db, org_id),
    }
    if is_trial(spec.tier):
        result["trial_credits"] = await usage.trial_credits(db, org_id, spec.briefs_per_trial or 0)
    if tender_id:
        result["tender"] = await usage.tender_usage(db, org_id, tender_id)
    return result
