from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from guestpass.core.timezone import utcnow
from guestpass.db.base import Base

POLICY_ROW_ID = 1


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=POLICY_ROW_ID)
    guest_monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    host_concurrent_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    updated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
