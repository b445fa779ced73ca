"""Loyalty reward on a guest's third completed visit.

The reward row is created right after the visit commits; the notification
goes out later from a background task. A failed notification leaves the
reward row (with ``notification_sent`` false) and the visit untouched.
"""
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from guestpass.core.exceptions import DownstreamError
from guestpass.core.timezone import utcnow
from guestpass.db.models import Discount, Guest, Visit
from guestpass.db.session import SessionLocal
from guestpass.services.notification_service import KIND_REWARD, NotificationSink, OutboxNotificationSink

logger = logging.getLogger(__name__)

THIRD_VISIT_MILESTONE = "third-visit"
THIRD_VISIT_COUNT = 3


def completed_visit_count(db: Session, guest_id: str) -> int:
    return (
        db.query(func.count(Visit.id))
        .filter(Visit.guest_id == guest_id, Visit.checked_in_at.is_not(None))
        .scalar()
    )


def evaluate_reward(
    db: Session,
    guest_id: str,
    visit_id: str | None = None,
    now: datetime | None = None,
) -> Discount | None:
    """Create the third-visit reward if it is due and does not exist yet."""
    existing = (
        db.query(Discount)
        .filter(Discount.guest_id == guest_id, Discount.milestone == THIRD_VISIT_MILESTONE)
        .first()
    )
    if existing:
        return None
    if completed_visit_count(db, guest_id) != THIRD_VISIT_COUNT:
        return None

    discount = Discount(
        guest_id=guest_id,
        milestone=THIRD_VISIT_MILESTONE,
        visit_id=visit_id,
        triggered_at=now or utcnow(),
        notification_sent=False,
    )
    db.add(discount)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent commit created it first.
        db.rollback()
        logger.info("reward.evaluate duplicate suppressed guest_id=%s milestone=%s", guest_id, THIRD_VISIT_MILESTONE)
        return None
    db.refresh(discount)
    logger.info("reward.evaluate triggered guest_id=%s discount_id=%s", guest_id, discount.id)
    return discount


def send_reward_notification(db: Session, discount_id: str, sink: NotificationSink | None = None) -> Discount:
    discount = db.query(Discount).filter(Discount.id == discount_id).first()
    if not discount:
        raise DownstreamError(f"Discount {discount_id} not found")
    if discount.notification_sent:
        return discount

    guest = db.query(Guest).filter(Guest.id == discount.guest_id).first()
    if not guest:
        raise DownstreamError(f"Guest {discount.guest_id} not found for discount {discount_id}")

    sink = sink or OutboxNotificationSink(db)
    result = sink.send(
        guest.email,
        KIND_REWARD,
        {"guestName": guest.name, "milestone": discount.milestone, "discountId": discount.id},
    )
    if not result.get("success"):
        raise DownstreamError(result.get("error") or "notification sink rejected the message")

    discount.notification_sent = True
    discount.sent_at = utcnow()
    db.commit()
    db.refresh(discount)
    return discount


def dispatch_reward_notification(
    discount_id: str,
    session_factory: Callable[[], Session] = SessionLocal,
    sink_factory: Callable[[Session], NotificationSink] | None = None,
) -> bool:
    """Background entry point. Never raises; failures are logged."""
    db = session_factory()
    try:
        sink = sink_factory(db) if sink_factory else None
        send_reward_notification(db, discount_id, sink=sink)
        logger.info("reward.notify sent discount_id=%s", discount_id)
        return True
    except DownstreamError as exc:
        logger.warning("reward.notify failed discount_id=%s error=%s", discount_id, exc)
        return False
    finally:
        db.close()
