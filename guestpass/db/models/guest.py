import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from guestpass.core.timezone import utcnow
from guestpass.db.base import Base


class Guest(Base):
    __tablename__ = "guests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    blacklisted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    terms_accepted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    acceptances = relationship("Acceptance", back_populates="guest", order_by="Acceptance.accepted_at")

    @property
    def is_blacklisted(self) -> bool:
        return self.blacklisted_at is not None


class Acceptance(Base):
    __tablename__ = "acceptances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    guest_id: Mapped[str] = mapped_column(String(36), ForeignKey("guests.id"), nullable=False, index=True)
    invitation_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("invitations.id"), nullable=True)
    accepted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    terms_version: Mapped[str] = mapped_column(String(20), nullable=False)
    agreement_version: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), default="guest")

    guest = relationship("Guest", back_populates="acceptances")
