import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from guestpass.core.timezone import utcnow
from guestpass.db.base import Base


class Visit(Base):
    __tablename__ = "visits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    guest_id: Mapped[str] = mapped_column(String(36), ForeignKey("guests.id"), nullable=False, index=True)
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    location: Mapped[str] = mapped_column(String(120), default="")
    # Null means walk-in; unique so an invitation is consumed by at most one visit.
    invitation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("invitations.id"), nullable=True, unique=True
    )
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    checked_out_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    override_authorized_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    override_authorized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    guest = relationship("Guest")
    host = relationship("User")
    invitation = relationship("Invitation", back_populates="visit")

    def is_active(self, now: datetime) -> bool:
        return (
            self.checked_in_at is not None
            and self.expires_at is not None
            and self.expires_at > now
            and self.checked_out_at is None
        )
