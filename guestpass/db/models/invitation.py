import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import Date, DateTime, Enum as SqlEnum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from guestpass.core.timezone import utcnow
from guestpass.db.base import Base


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVATED = "ACTIVATED"
    CHECKED_IN = "CHECKED_IN"
    EXPIRED = "EXPIRED"


# Allowed forward moves; anything else is a regression.
INVITATION_TRANSITIONS: dict[InvitationStatus, set[InvitationStatus]] = {
    InvitationStatus.PENDING: {InvitationStatus.ACTIVATED, InvitationStatus.CHECKED_IN, InvitationStatus.EXPIRED},
    InvitationStatus.ACTIVATED: {InvitationStatus.ACTIVATED, InvitationStatus.CHECKED_IN, InvitationStatus.EXPIRED},
    InvitationStatus.CHECKED_IN: set(),
    InvitationStatus.EXPIRED: set(),
}

OPEN_INVITATION_STATUSES = (InvitationStatus.PENDING, InvitationStatus.ACTIVATED)


class Invitation(Base):
    __tablename__ = "invitations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    guest_id: Mapped[str] = mapped_column(String(36), ForeignKey("guests.id"), nullable=False, index=True)
    host_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    visit_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[InvitationStatus] = mapped_column(
        SqlEnum(InvitationStatus), nullable=False, default=InvitationStatus.PENDING, index=True
    )
    credential: Mapped[str | None] = mapped_column(Text, nullable=True)
    credential_issued_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    credential_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    guest = relationship("Guest")
    host = relationship("User")
    visit = relationship("Visit", back_populates="invitation", uselist=False)
