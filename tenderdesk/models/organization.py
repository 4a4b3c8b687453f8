"""
Organizations and their subscription tier. Billing owns the writes; we only read.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase


class Organization(TimestampedBase):
    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    plan_tier: Mapped[str] = mapped_column(
        String, nullable=False, default="FREE"
    )  # FREE, FREE_EXPIRED, STANDARD, PREMIUM, ENTERPRISE
    plan_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
