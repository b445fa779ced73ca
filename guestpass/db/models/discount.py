import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from guestpass.core.timezone import utcnow
from guestpass.db.base import Base


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (UniqueConstraint("guest_id", "milestone", name="uq_discounts_guest_milestone"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    guest_id: Mapped[str] = mapped_column(String(36), ForeignKey("guests.id"), nullable=False, index=True)
    milestone: Mapped[str] = mapped_column(String(40), nullable=False)
    visit_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("visits.id"), nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    triggered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
