"""Tests for the eligibility checks."""

from dataclasses import replace
from datetime import time, timedelta

from conftest import NOW
from guestpass.core.timezone import calculate_visit_expiration, to_local
from guestpass.services.eligibility_service import (
    DenialHint,
    DenialReason,
    EligibilityContext,
    count_active_host_visits,
    evaluate_eligibility,
)

BASE = EligibilityContext(
    now=NOW,
    guest_blacklisted_at=None,
    host_active_count=0,
    host_concurrent_limit=3,
    guest_monthly_limit=3,
    recent_checkins=(),
    latest_acceptance_at=NOW - timedelta(days=30),
)


def test_eligible_guest_passes():
    assert evaluate_eligibility(BASE) is None


def test_blacklist_is_checked_first():
    ctx = replace(BASE, guest_blacklisted_at=NOW, host_active_count=5, latest_acceptance_at=None)

    denial = evaluate_eligibility(ctx)

    assert denial.reason == DenialReason.BLACKLISTED
    assert denial.hint == DenialHint.CONTACT_SECURITY
    assert not denial.overridable


def test_capacity_denied_exactly_at_limit():
    denial = evaluate_eligibility(replace(BASE, host_active_count=3))

    assert denial.reason == DenialReason.HOST_AT_CAPACITY
    assert denial.current_count == denial.max_count == 3
    assert denial.overridable
    assert denial.hint == DenialHint.OVERRIDE


def test_capacity_below_limit_allowed():
    assert evaluate_eligibility(replace(BASE, host_active_count=2)) is None


def test_bypass_capacity_still_runs_other_checks():
    ctx = replace(BASE, host_active_count=3, latest_acceptance_at=None)

    denial = evaluate_eligibility(ctx, bypass_capacity=True)

    assert denial.reason == DenialReason.TERMS_REQUIRED


def test_rolling_limit_next_eligible_date():
    checkins = (NOW - timedelta(days=2), NOW - timedelta(days=10), NOW - timedelta(days=20))

    denial = evaluate_eligibility(replace(BASE, recent_checkins=checkins))

    assert denial.reason == DenialReason.GUEST_MONTHLY_LIMIT
    assert denial.next_eligible_date == NOW - timedelta(days=20) + timedelta(days=30)
    assert denial.next_eligible_date >= min(checkins) + timedelta(days=30)


def test_rolling_limit_ignores_visits_outside_window():
    checkins = (NOW - timedelta(days=2), NOW - timedelta(days=10), NOW - timedelta(days=31))

    assert evaluate_eligibility(replace(BASE, recent_checkins=checkins)) is None


def test_missing_acceptance_requires_terms():
    denial = evaluate_eligibility(replace(BASE, latest_acceptance_at=None))

    assert denial.reason == DenialReason.TERMS_REQUIRED
    assert denial.hint == DenialHint.RESEND_TERMS


def test_stale_acceptance_is_renewal_eligible():
    denial = evaluate_eligibility(replace(BASE, latest_acceptance_at=NOW - timedelta(days=400)))

    assert denial.reason == DenialReason.TERMS_RENEWAL_ELIGIBLE


def test_expired_credential_denied():
    denial = evaluate_eligibility(replace(BASE, credential_expires_at=NOW - timedelta(minutes=1)))

    assert denial.reason == DenialReason.CREDENTIAL_EXPIRED
    assert denial.hint == DenialHint.REGENERATE_CREDENTIAL


def test_cutoff_uses_building_local_time():
    local_now = to_local(NOW).time()
    before = time(local_now.hour + 1, 0)
    after = time(local_now.hour - 1, 0)

    assert evaluate_eligibility(replace(BASE, cutoff=before)) is None
    assert evaluate_eligibility(replace(BASE, cutoff=after)).reason == DenialReason.CLOSED_FOR_NIGHT


def test_visit_expiration_capped_at_local_end_of_day():
    expires_at = calculate_visit_expiration(NOW)

    assert expires_at <= NOW + timedelta(hours=24)
    assert to_local(expires_at).date() == to_local(NOW).date()
    assert to_local(expires_at).hour == 23


def test_active_visit_count_excludes_expired_and_checked_out(db, host, make_guest, make_visit):
    guest = make_guest("count@example.com")
    make_visit(guest, host, NOW - timedelta(hours=1))
    make_visit(guest, host, NOW - timedelta(hours=6), expires_at=NOW - timedelta(hours=1))
    make_visit(guest, host, NOW - timedelta(hours=2), checked_out_at=NOW - timedelta(minutes=30))

    assert count_active_host_visits(db, host.id, NOW) == 1
