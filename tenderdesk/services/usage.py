"""
Usage ledger. Per-tender counters, per-month counters and trial brief credits.

Every mutation is a single conditional UPDATE so two concurrent requests can
never both take the last unit of a pool. Rows are created lazily with
INSERT ... ON CONFLICT DO NOTHING.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import insert_ignore
from ..models.base import utcnow
from ..models.usage import OrgMonthlyUsage, OrgTenderUsage, OrgTrialUsage

logger = logging.getLogger(__name__)

TENDER = "tender"
MONTHLY = "monthly"
TRIAL_CREDIT = "trial_credit"


@dataclass(frozen=True)
class LedgerAction:
    """One unit taken from one pool. `limit` is the ceiling checked on apply."""

    pool: str                     # tender | monthly | trial_credit
    field: str = ""               # used_chats | used_briefs (counters only)
    tender_id: Optional[str] = None
    period: Optional[str] = None
    limit: Optional[int] = None


def current_period(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).strftime("%Y-%m")


# ── Row bootstrap ────────────────────────────────────────────────────

async def _ensure_tender_row(db: AsyncSession, org_id: str, tender_id: str) -> None:
    await db.execute(insert_ignore(
        db, OrgTenderUsage,
        {"org_id": org_id, "tender_id": tender_id, "used_chats": 0, "used_briefs": 0},
        ["org_id", "tender_id"],
    ))


async def _ensure_monthly_row(db: AsyncSession, org_id: str, period: str) -> None:
    await db.execute(insert_ignore(
        db, OrgMonthlyUsage,
        {"org_id": org_id, "period": period, "used_chats": 0, "used_briefs": 0},
        ["org_id", "period"],
    ))


async def _ensure_trial_row(db: AsyncSession, org_id: str, initial: int) -> None:
    await db.execute(insert_ignore(
        db, OrgTrialUsage,
        {"org_id": org_id, "brief_credits": initial, "initial_credits": initial},
        ["org_id"],
    ))


# ── Reads ────────────────────────────────────────────────────────────

async def tender_usage(db: AsyncSession, org_id: str, tender_id: str) -> dict:
    row = (await db.execute(
        select(OrgTenderUsage.used_chats, OrgTenderUsage.used_briefs).where(
            OrgTenderUsage.org_id == org_id,
            OrgTenderUsage.tender_id == tender_id,
        )
    )).one_or_none()
    return {
        "used_chats": row.used_chats if row else 0,
        "used_briefs": row.used_briefs if row else 0,
    }


async def monthly_usage(db: AsyncSession, org_id: str, period: Optional[str] = None) -> dict:
    period = period or current_period()
    row = (await db.execute(
        select(OrgMonthlyUsage.used_chats, OrgMonthlyUsage.used_briefs).where(
            OrgMonthlyUsage.org_id == org_id,
            OrgMonthlyUsage.period == period,
        )
    )).one_or_none()
    return {
        "period": period,
        "used_chats": row.used_chats if row else 0,
        "used_briefs": row.used_briefs if row else 0,
    }


async def trial_credits(db: AsyncSession, org_id: str, initial: int) -> int:
    """Remaining trial brief credits; `initial` if the org never used any."""
    row = (await db.execute(
        select(OrgTrialUsage.brief_credits).where(OrgTrialUsage.org_id == org_id)
    )).scalar_one_or_none()
    return initial if row is None else row


# ── Mutations ────────────────────────────────────────────────────────

def _counter_model(pool: str):
    return OrgTenderUsage if pool == TENDER else OrgMonthlyUsage


def _scope(model, org_id: str, action: LedgerAction) -> list:
    clauses = [model.org_id == org_id]
    if action.pool == TENDER:
        clauses.append(model.tender_id == action.tender_id)
    else:
        clauses.append(model.period == action.period)
    return clauses


async def apply(db: AsyncSession, org_id: str, action: LedgerAction, initial_credits: int = 0) -> bool:
    """Take one unit. False if the pool is exhausted (nothing changed)."""
    if action.pool == TRIAL_CREDIT:
        await _ensure_trial_row(db, org_id, initial_credits)
        result = await db.execute(
            update(OrgTrialUsage)
            .where(OrgTrialUsage.org_id == org_id, OrgTrialUsage.brief_credits > 0)
            .values(brief_credits=OrgTrialUsage.brief_credits - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    if action.pool == TENDER:
        await _ensure_tender_row(db, org_id, action.tender_id)
    else:
        await _ensure_monthly_row(db, org_id, action.period)

    model = _counter_model(action.pool)
    column = getattr(model, action.field)
    clauses = _scope(model, org_id, action)
    if action.limit is not None:
        clauses.append(column < action.limit)

    result = await db.execute(
        update(model)
        .where(*clauses)
        .values({action.field: column + 1})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reverse(db: AsyncSession, org_id: str, action: LedgerAction) -> bool:
    """Give one unit back. Counters floor at 0; credits cap at their initial value."""
    if action.pool == TRIAL_CREDIT:
        result = await db.execute(
            update(OrgTrialUsage)
            .where(
                OrgTrialUsage.org_id == org_id,
                OrgTrialUsage.brief_credits < OrgTrialUsage.initial_credits,
            )
            .values(brief_credits=OrgTrialUsage.brief_credits + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    model = _counter_model(action.pool)
    column = getattr(model, action.field)
    result = await db.execute(
        update(model)
        .where(*_scope(model, org_id, action), column > 0)
        .values({action.field: column - 1})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
