"""Tests for the admission engine."""

import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from conftest import NOW, TODAY
from guestpass.core.exceptions import StructuralError
from guestpass.db.models import Acceptance, AuditLog, Discount, Invitation, InvitationStatus, Visit
from guestpass.db.session import SessionLocal
from guestpass.services import admission_service, eligibility_service
from guestpass.services.admission_service import (
    AdmissionAttempt,
    GuestAdmissionResult,
    OverrideRequest,
    admit_guest,
    checkout_visit,
    process_admission,
    summarize_status,
)
from guestpass.services.credential_service import encode_batch_credential, BatchGuest, issue_single_credential
from guestpass.services.override_service import AuthenticatedRequester
from guestpass.services.policy_service import get_policy

SECRET = "lobby-override-2024"
REASON = "Board meeting overflow approved by facilities"


def _security(user):
    return AuthenticatedRequester(user_id=user.id, role=user.role.value)


def _admit(db, guest, host, requester=None, override=None, claim=None):
    attempt = AdmissionAttempt(email=guest.email, name=guest.name, host_id=host.id, claim=claim)
    return admit_guest(
        db,
        attempt,
        requester or AuthenticatedRequester(user_id=host.id, role="host"),
        override=override,
        now=NOW,
    )


def _fill_host(host, make_guest, make_visit, count=3):
    for index in range(count):
        guest = make_guest(f"occupant{index}@example.com")
        make_visit(guest, host, NOW - timedelta(hours=1))


def test_walk_in_guest_is_admitted(db, host, make_guest):
    guest = make_guest("walkin@example.com", "Walter")

    result = _admit(db, guest, host)

    assert result.success
    assert result.outcome == "admitted"
    assert result.walk_in
    visit = db.query(Visit).filter(Visit.id == result.visit_id).one()
    assert visit.invitation_id is None
    assert visit.checked_in_at == NOW
    assert visit.expires_at > NOW


def test_matching_invitation_is_consumed(db, host, make_guest, make_invitation):
    guest = make_guest("invited@example.com")
    invitation = make_invitation(host, guest)

    result = _admit(db, guest, host)

    assert result.invitation_id == invitation.id
    assert not result.walk_in
    db.refresh(invitation)
    assert invitation.status == InvitationStatus.CHECKED_IN
    assert invitation.visit.id == result.visit_id


def test_activated_invitation_preferred_over_pending(db, host, make_guest, make_invitation):
    guest = make_guest("pref@example.com")
    make_invitation(host, guest, created_at=NOW - timedelta(minutes=5))
    activated = make_invitation(
        host, guest, status=InvitationStatus.ACTIVATED, created_at=NOW - timedelta(hours=5)
    )

    result = _admit(db, guest, host)

    assert result.invitation_id == activated.id


def test_invitation_outside_date_window_is_ignored(db, host, make_guest, make_invitation):
    guest = make_guest("window@example.com")
    make_invitation(host, guest, visit_date=TODAY + timedelta(days=3))

    result = _admit(db, guest, host)

    assert result.walk_in


def test_other_hosts_invitation_is_reused(db, host, make_user, make_guest, make_invitation):
    other_host = make_user("host", "Olivia Other")
    guest = make_guest("shared@example.com")
    invitation = make_invitation(other_host, guest)

    result = _admit(db, guest, host)

    assert result.invitation_id == invitation.id
    visit = db.query(Visit).filter(Visit.id == result.visit_id).one()
    assert visit.host_id == host.id


def test_reentry_same_host_creates_no_visit(db, host, make_guest, make_visit):
    guest = make_guest("back@example.com", "Bea")
    existing = make_visit(guest, host, NOW - timedelta(hours=1))

    result = _admit(db, guest, host)

    assert result.success
    assert result.re_entry
    assert not result.cross_host
    assert result.visit_id == existing.id
    assert "Welcome back" in result.message
    assert db.query(Visit).count() == 1


def test_reentry_other_host_is_flagged(db, host, make_user, make_guest, make_visit):
    other_host = make_user("host", "Olivia Other")
    guest = make_guest("cross@example.com")
    make_visit(guest, other_host, NOW - timedelta(hours=1))

    result = _admit(db, guest, host)

    assert result.success
    assert result.cross_host
    assert result.other_host_name == "Olivia Other"
    assert db.query(Visit).count() == 1


def test_capacity_denial_requires_override(db, host, make_guest, make_visit):
    _fill_host(host, make_guest, make_visit)
    guest = make_guest("fourth@example.com")

    result = _admit(db, guest, host)

    assert not result.success
    assert result.outcome == "override-required"
    assert result.status_code == 409
    assert result.requires_override
    assert result.current_count == result.max_count == 3
    assert db.query(Visit).filter(Visit.guest_id == guest.id).count() == 0


def test_authorized_override_admits_and_is_stamped(db, host, security_user, make_guest, make_visit):
    _fill_host(host, make_guest, make_visit)
    guest = make_guest("vip@example.com")

    result = _admit(
        db,
        guest,
        host,
        requester=_security(security_user),
        override=OverrideRequest(reason=REASON, secret=SECRET),
    )

    assert result.success
    assert result.override_applied
    visit = db.query(Visit).filter(Visit.id == result.visit_id).one()
    assert visit.override_reason == REASON
    assert visit.override_authorized_by == security_user.id
    assert visit.override_authorized_at == NOW
    audit = db.query(AuditLog).filter(AuditLog.action == "visit.override").one()
    assert audit.resource_id == visit.id


def test_override_with_bad_secret_is_401(db, host, security_user, make_guest, make_visit):
    _fill_host(host, make_guest, make_visit)
    guest = make_guest("late@example.com")

    result = _admit(
        db,
        guest,
        host,
        requester=_security(security_user),
        override=OverrideRequest(reason=REASON, secret="guess"),
    )

    assert result.status_code == 401
    assert result.error_code == "bad-secret"
    assert db.query(Visit).filter(Visit.guest_id == guest.id).count() == 0


def test_override_by_host_is_403(db, host, make_guest, make_visit):
    _fill_host(host, make_guest, make_visit)
    guest = make_guest("nope@example.com")

    result = _admit(db, guest, host, override=OverrideRequest(reason=REASON, secret=SECRET))

    assert result.status_code == 403
    assert result.error_code == "insufficient-role"


def test_override_does_not_lift_other_denials(db, host, security_user, make_guest, make_visit):
    _fill_host(host, make_guest, make_visit)
    guest = make_guest("banned@example.com", blacklisted=True)

    result = _admit(
        db,
        guest,
        host,
        requester=_security(security_user),
        override=OverrideRequest(reason=REASON, secret=SECRET),
    )

    assert not result.success
    assert result.reason == "blacklisted"
    assert db.query(Visit).filter(Visit.guest_id == guest.id).count() == 0


def test_blacklisted_guest_denied(db, host, make_guest):
    guest = make_guest("blocked@example.com", blacklisted=True)

    result = _admit(db, guest, host)

    assert not result.success
    assert result.reason == "blacklisted"
    assert result.hint == "contact-security"


def test_rolling_limit_denial_reports_next_date(db, host, make_guest, make_visit):
    guest = make_guest("frequent@example.com")
    oldest = NOW - timedelta(days=25)
    for checked_in_at in (NOW - timedelta(days=3), NOW - timedelta(days=12), oldest):
        make_visit(guest, host, checked_in_at, expires_at=checked_in_at + timedelta(hours=2))

    result = _admit(db, guest, host)

    assert result.reason == "guest-monthly-limit"
    assert result.next_eligible_date >= oldest + timedelta(days=30)
    assert result.to_dict()["nextEligibleDate"] == (oldest + timedelta(days=30)).isoformat()


def test_unaccepted_guest_requires_terms(db, host, make_guest):
    guest = make_guest("fresh@example.com", accepted_at=None)

    result = _admit(db, guest, host)

    assert result.reason == "terms-required"
    assert result.hint == "resend-terms"


def test_stale_acceptance_is_renewed_once(db, host, make_guest):
    guest = make_guest("yearly@example.com", accepted_at=NOW - timedelta(days=400))

    result = _admit(db, guest, host)

    assert result.success
    assert result.acceptance_renewed
    renewal = db.query(Acceptance).filter(Acceptance.guest_id == guest.id, Acceptance.source == "auto-renewal").one()
    assert renewal.accepted_at == NOW
    assert renewal.terms_version == "1.0"


def test_renewal_rolls_back_when_attempt_denied(db, host, make_guest):
    guest = make_guest("stale@example.com", accepted_at=NOW - timedelta(days=400))

    with patch.object(admission_service.settings, "ADMISSION_DECISION_TIMEOUT_SECONDS", -1):
        result = _admit(db, guest, host)

    assert result.reason == "service-unavailable"
    assert not result.acceptance_renewed
    assert db.query(Acceptance).filter(Acceptance.guest_id == guest.id).count() == 1


def test_commit_failure_rolls_back_visit_and_invitation(db, host, make_guest, make_invitation, monkeypatch):
    guest = make_guest("atomic@example.com")
    invitation = make_invitation(host, guest)

    def _boom(*args, **kwargs):
        raise SQLAlchemyError("invitation update failed")

    monkeypatch.setattr(admission_service, "advance_invitation_status", _boom)

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        guests=[{"e": guest.email, "n": guest.name}],
        host_id=host.id,
        now=NOW,
    )

    result = outcome.results[0]
    assert not result.success
    assert result.error_code == "commit-failed"
    assert outcome.status_code == 409
    assert db.query(Visit).count() == 0
    assert db.query(Invitation).filter(Invitation.id == invitation.id).one().status == InvitationStatus.PENDING


def test_store_failure_fails_closed(db, host, make_guest, monkeypatch):
    guest = make_guest("closed@example.com")

    def _locked(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(admission_service, "load_eligibility_context", _locked)

    result = _admit(db, guest, host)

    assert not result.success
    assert result.reason == "service-unavailable"
    assert result.status_code == 503
    assert result.hint == "retry-later"
    assert db.query(Visit).count() == 0


def test_slow_decision_fails_closed(db, host, make_guest):
    guest = make_guest("slow@example.com")

    with patch.object(admission_service.settings, "ADMISSION_DECISION_TIMEOUT_SECONDS", -1):
        result = _admit(db, guest, host)

    assert result.reason == "service-unavailable"
    assert db.query(Visit).count() == 0


def test_batch_partial_success_is_207(db, host, make_guest):
    make_guest("ann@example.com", "Ann")
    make_guest("ben@example.com", "Ben")
    make_guest("cal@example.com", "Cal", blacklisted=True)
    credential = encode_batch_credential(
        [
            BatchGuest("ann@example.com", "Ann"),
            BatchGuest("ben@example.com", "Ben"),
            BatchGuest("cal@example.com", "Cal"),
        ],
        host_id=host.id,
    )

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        credential=credential,
        now=NOW,
    )

    assert outcome.status_code == 207
    payload = outcome.to_dict()
    assert payload["summary"] == {"total": 3, "successful": 2, "failed": 1}
    assert [item["success"] for item in payload["perGuestResults"]] == [True, True, False]
    assert db.query(Visit).count() == 2


def test_unknown_batch_guest_is_created_and_denied(db, host):
    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        guests=[{"e": "Stranger@Example.com", "n": "Stranger"}],
        now=NOW,
    )

    result = outcome.results[0]
    assert result.email == "stranger@example.com"
    assert result.reason == "terms-required"


def test_single_guest_credential_consumes_its_invitation(db, host, make_guest, make_invitation):
    guest = make_guest("token@example.com", "Tia")
    make_invitation(host, guest, status=InvitationStatus.ACTIVATED, created_at=NOW - timedelta(minutes=1))
    invitation = make_invitation(host, guest, created_at=NOW - timedelta(hours=3))
    token, _ = issue_single_credential(invitation.id, guest.email, host.id, now=NOW - timedelta(minutes=5))

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        credential=token,
        now=NOW,
    )

    assert outcome.status_code == 200
    assert outcome.results[0].invitation_id == invitation.id


def test_expired_single_guest_credential_is_denied(db, host, make_guest, make_invitation):
    guest = make_guest("old-token@example.com")
    invitation = make_invitation(host, guest, status=InvitationStatus.ACTIVATED)
    token, _ = issue_single_credential(invitation.id, guest.email, host.id, now=NOW - timedelta(hours=1))

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        credential=token,
        now=NOW,
    )

    assert outcome.results[0].reason == "credential-expired"
    assert outcome.results[0].hint == "regenerate-credential"


def test_malformed_credential_raises_structural_error(db, host):
    with pytest.raises(StructuralError) as exc_info:
        process_admission(
            db,
            AuthenticatedRequester(user_id=host.id, role="host"),
            credential='{"guests": [{"e": "a@example.com"}]}',
            now=NOW,
        )

    assert exc_info.value.code == "batch-invalid"
    assert exc_info.value.details == [{"index": 0, "field": "name", "message": "Guest name is required"}]


def test_security_scan_without_host_is_rejected(db, security_user, make_guest):
    make_guest("hostless@example.com")

    with pytest.raises(StructuralError) as exc_info:
        process_admission(
            db,
            _security(security_user),
            guests=[{"e": "hostless@example.com", "n": "Hostless"}],
            now=NOW,
        )

    assert exc_info.value.code == "host-required"


def test_third_visit_triggers_reward(db, host, make_guest, make_visit):
    guest = make_guest("loyal@example.com")
    for days in (20, 10):
        checked_in_at = NOW - timedelta(days=days)
        make_visit(guest, host, checked_in_at, expires_at=checked_in_at + timedelta(hours=2))

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        guests=[{"e": guest.email, "n": guest.name}],
        now=NOW,
    )

    result = outcome.results[0]
    assert result.discount_triggered
    assert outcome.reward_ids == [result.discount_id]
    assert db.query(Discount).filter(Discount.guest_id == guest.id).count() == 1


def test_checkout_closes_visit(db, host, make_guest, make_visit):
    guest = make_guest("leaving@example.com")
    visit = make_visit(guest, host, NOW - timedelta(hours=1))

    closed = checkout_visit(db, visit.id, host, now=NOW)

    assert closed.checked_out_at == NOW
    assert _admit(db, guest, host).outcome == "admitted"


def _result(status_code, success=False, error_code=None, requires_override=False):
    return GuestAdmissionResult(
        email="x@example.com",
        name="X",
        success=success,
        outcome="admitted" if success else "denied",
        status_code=status_code,
        message="",
        error_code=error_code,
        requires_override=requires_override,
    )


@pytest.mark.parametrize(
    "results,expected",
    [
        ([_result(200, True), _result(200, True)], 200),
        ([_result(200, True), _result(403)], 207),
        ([_result(403), _result(401, error_code="bad-secret", requires_override=True)], 401),
        ([_result(403), _result(403, error_code="insufficient-role", requires_override=True)], 403),
        ([_result(403), _result(409, requires_override=True)], 409),
        ([_result(503), _result(503)], 503),
        ([_result(403), _result(403)], 400),
        ([_result(503)], 503),
    ],
)
def test_summarize_status(results, expected):
    assert summarize_status(results) == expected


def _race(host_id, people, monkeypatch):
    """Admit each (email, name) from its own thread and session, all starting together."""
    counted = eligibility_service.count_active_host_visits

    def _slow_count(*args, **kwargs):
        value = counted(*args, **kwargs)
        time.sleep(0.3)
        return value

    monkeypatch.setattr(eligibility_service, "count_active_host_visits", _slow_count)

    start = threading.Barrier(len(people))
    outcomes = []

    def _scan(email, name):
        session = SessionLocal()
        try:
            start.wait()
            attempt = AdmissionAttempt(email=email, name=name, host_id=host_id)
            result = admit_guest(session, attempt, AuthenticatedRequester(user_id=host_id, role="host"), now=NOW)
            outcomes.append(result.outcome)
        except Exception as exc:
            outcomes.append(f"raised {exc!r}")
        finally:
            session.close()

    threads = [threading.Thread(target=_scan, args=person) for person in people]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return sorted(outcomes)


def test_concurrent_scans_cannot_exceed_capacity(db, host, make_guest, make_visit, monkeypatch):
    _fill_host(host, make_guest, make_visit, count=2)
    make_guest("racer-a@example.com", "Ari")
    make_guest("racer-b@example.com", "Bo")
    get_policy(db)
    db.commit()
    host_id = host.id

    outcomes = _race(
        host_id,
        [("racer-a@example.com", "Ari"), ("racer-b@example.com", "Bo")],
        monkeypatch,
    )

    assert outcomes == ["admitted", "override-required"]
    assert db.query(Visit).filter(Visit.host_id == host_id).count() == 3


def test_concurrent_scans_of_one_guest_create_one_visit(db, host, make_guest, monkeypatch):
    make_guest("twice@example.com", "Tess")
    get_policy(db)
    db.commit()
    host_id = host.id

    outcomes = _race(
        host_id,
        [("twice@example.com", "Tess"), ("twice@example.com", "Tess")],
        monkeypatch,
    )

    assert outcomes == ["admitted", "re-entry"]
    assert db.query(Visit).count() == 1


def test_store_error_on_one_item_does_not_sink_the_batch(db, host, make_guest, monkeypatch):
    make_guest("first@example.com", "First")
    make_guest("second@example.com", "Second")
    loader = admission_service.load_eligibility_context

    def _flaky(session, guest, *args, **kwargs):
        if guest.email == "first@example.com":
            raise IntegrityError("INSERT INTO policies", {}, Exception("UNIQUE constraint failed"))
        return loader(session, guest, *args, **kwargs)

    monkeypatch.setattr(admission_service, "load_eligibility_context", _flaky)

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        guests=[{"e": "first@example.com", "n": "First"}, {"e": "second@example.com", "n": "Second"}],
        host_id=host.id,
        now=NOW,
    )

    assert outcome.status_code == 207
    assert outcome.results[0].reason == "service-unavailable"
    assert outcome.results[0].retryable
    assert outcome.results[1].outcome == "admitted"
    assert db.query(Visit).count() == 1


def test_batch_with_middle_guest_over_monthly_limit(db, host, make_user, make_guest, make_visit):
    other_host = make_user("host")
    make_guest("alpha@example.com", "Alpha")
    frequent = make_guest("bravo@example.com", "Bravo")
    make_guest("charlie@example.com", "Charlie")
    for days in (2, 9, 20):
        checked_in_at = NOW - timedelta(days=days)
        make_visit(frequent, other_host, checked_in_at, expires_at=checked_in_at + timedelta(hours=3))
    credential = encode_batch_credential(
        [
            BatchGuest("alpha@example.com", "Alpha"),
            BatchGuest("bravo@example.com", "Bravo"),
            BatchGuest("charlie@example.com", "Charlie"),
        ],
        host_id=host.id,
    )

    outcome = process_admission(
        db,
        AuthenticatedRequester(user_id=host.id, role="host"),
        credential=credential,
        now=NOW,
    )

    assert outcome.status_code == 207
    assert [result.success for result in outcome.results] == [True, False, True]
    assert outcome.results[1].reason == "guest-monthly-limit"
    assert outcome.to_dict()["summary"] == {"total": 3, "successful": 2, "failed": 1}
    assert db.query(Visit).filter(Visit.host_id == host.id).count() == 2
