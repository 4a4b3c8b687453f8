"""
Usage ledger rows. Written only through services.usage conditional updates.
"""

from sqlalchemy import String, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import OrgScopedBase


class OrgTenderUsage(OrgScopedBase):
    __tablename__ = "org_tender_usage"
    __table_args__ = (
        UniqueConstraint("org_id", "tender_id", name="uq_org_tender_usage"),
    )

    tender_id: Mapped[str] = mapped_column(String, nullable=False)
    used_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_briefs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class OrgMonthlyUsage(OrgScopedBase):
    __tablename__ = "org_monthly_usage"
    __table_args__ = (
        UniqueConstraint("org_id", "period", name="uq_org_monthly_usage"),
    )

    period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM (UTC)
    used_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_briefs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class OrgTrialUsage(OrgScopedBase):
    __tablename__ = "org_trial_usage"
    __table_args__ = (
        UniqueConstraint("org_id", name="uq_org_trial_usage"),
    )

    brief_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    initial_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
