"""Tests for the third-visit reward."""

from datetime import timedelta
from unittest.mock import Mock

from conftest import NOW
from guestpass.db.models import Discount, Notification
from guestpass.db.session import SessionLocal
from guestpass.services.reward_service import (
    THIRD_VISIT_MILESTONE,
    dispatch_reward_notification,
    evaluate_reward,
)


def _visits(make_visit, guest, host, count):
    for index in range(count):
        checked_in_at = NOW - timedelta(days=40 + index)
        make_visit(guest, host, checked_in_at, expires_at=checked_in_at + timedelta(hours=2))


def test_no_reward_before_third_visit(db, host, make_guest, make_visit):
    guest = make_guest("two@example.com")
    _visits(make_visit, guest, host, 2)

    assert evaluate_reward(db, guest.id, now=NOW) is None


def test_third_visit_creates_exactly_one_reward(db, host, make_guest, make_visit):
    guest = make_guest("three@example.com")
    _visits(make_visit, guest, host, 3)

    first = evaluate_reward(db, guest.id, now=NOW)
    second = evaluate_reward(db, guest.id, now=NOW)

    assert first is not None
    assert first.milestone == THIRD_VISIT_MILESTONE
    assert not first.notification_sent
    assert second is None
    assert db.query(Discount).filter(Discount.guest_id == guest.id).count() == 1


def test_later_visits_do_not_create_reward(db, host, make_guest, make_visit):
    guest = make_guest("four@example.com")
    _visits(make_visit, guest, host, 4)

    assert evaluate_reward(db, guest.id, now=NOW) is None


def test_dispatch_marks_reward_sent(db, host, make_guest, make_visit):
    guest = make_guest("notify@example.com")
    _visits(make_visit, guest, host, 3)
    discount = evaluate_reward(db, guest.id, now=NOW)

    assert dispatch_reward_notification(discount.id) is True

    db.expire_all()
    assert db.query(Discount).filter(Discount.id == discount.id).one().notification_sent
    notification = db.query(Notification).filter(Notification.recipient == guest.email).one()
    assert notification.kind == "reward.third_visit"


def test_failed_dispatch_keeps_reward(db, host, make_guest, make_visit):
    guest = make_guest("bounce@example.com")
    _visits(make_visit, guest, host, 3)
    discount = evaluate_reward(db, guest.id, now=NOW)
    sink = Mock()
    sink.send.return_value = {"success": False, "error": "mailbox unavailable"}

    assert dispatch_reward_notification(discount.id, session_factory=SessionLocal, sink_factory=lambda _: sink) is False

    db.expire_all()
    row = db.query(Discount).filter(Discount.id == discount.id).one()
    assert not row.notification_sent
    sink.send.assert_called_once()


def test_dispatch_for_unknown_reward_is_logged_not_raised(db):
    assert dispatch_reward_notification("missing-discount") is False
