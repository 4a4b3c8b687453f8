from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from .base import OrgScopedBase


class Tender(OrgScopedBase):
    __tablename__ = "tenders"

    title: Mapped[str] = mapped_column(String, nullable=False, default="")
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Published tenders are readable by visitors outside the owning org.
