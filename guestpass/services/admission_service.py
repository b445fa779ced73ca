"""Admission engine.

One admission attempt runs per guest, each in its own transaction:

1. take the store's write lock (``BEGIN IMMEDIATE`` on SQLite, host and guest
   row locks elsewhere) so the capacity count and the visit insert are
   serialized against concurrent scans;
2. short-circuit on an open visit (re-entry, same or other host);
3. evaluate eligibility, renewing a stale terms acceptance at most once and
   consulting the override authority on a capacity denial;
4. insert the visit and consume the matching invitation together.

Read or decision failures fail closed with a retryable
``service-unavailable`` denial. A failed commit raises ``ConsistencyError``
which the batch runner retries once before reporting the item as failed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any

from sqlalchemy import case, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from guestpass.core.config import get_settings
from guestpass.core.exceptions import AppException, ConsistencyError, StructuralError
from guestpass.core.timezone import calculate_visit_expiration, local_today, utcnow
from guestpass.db.models import OPEN_INVITATION_STATUSES, Guest, Invitation, InvitationStatus, User, Visit
from guestpass.services.audit_service import write_audit_log
from guestpass.services.credential_service import (
    CredentialParseError,
    MultiGuestBatch,
    SingleGuestClaim,
    decode_credential,
    normalize_email,
    parse_guest_list,
)
from guestpass.services.eligibility_service import (
    Denial,
    DenialHint,
    DenialReason,
    evaluate_eligibility,
    load_eligibility_context,
)
from guestpass.services.guest_service import record_acceptance, upsert_guest
from guestpass.services.invitation_service import advance_invitation_status
from guestpass.services.override_service import (
    BAD_SECRET,
    INSUFFICIENT_ROLE,
    AuthenticatedRequester,
    OverrideAuthorized,
    OverrideDenied,
    RequesterIdentity,
    authorize_override,
    requester_actor_id,
)
from guestpass.services.policy_service import get_policy
from guestpass.services.reentry_service import CROSS_HOST, resolve_reentry
from guestpass.services.reward_service import evaluate_reward

settings = get_settings()
logger = logging.getLogger(__name__)

MAX_ACCEPTANCE_RENEWALS = 1
INVITATION_DATE_TOLERANCE = timedelta(days=1)

OUTCOME_ADMITTED = "admitted"
OUTCOME_REENTRY = "re-entry"
OUTCOME_CROSS_HOST = "cross-host"
OUTCOME_DENIED = "denied"
OUTCOME_OVERRIDE_REQUIRED = "override-required"
OUTCOME_OVERRIDE_DENIED = "override-denied"
OUTCOME_ERROR = "error"

DENIAL_STATUS = {
    DenialReason.SERVICE_UNAVAILABLE: 503,
    DenialReason.HOST_AT_CAPACITY: 409,
}


@dataclass(frozen=True)
class OverrideRequest:
    reason: str | None = None
    secret: str | None = None

    @property
    def supplied(self) -> bool:
        return bool((self.reason or "").strip() or self.secret)


@dataclass(frozen=True)
class AdmissionAttempt:
    email: str
    name: str
    host_id: str
    claim: SingleGuestClaim | None = None


@dataclass
class GuestAdmissionResult:
    email: str
    name: str
    success: bool
    outcome: str
    status_code: int
    message: str
    reason: str | None = None
    hint: str | None = None
    error_code: str | None = None
    visit_id: str | None = None
    invitation_id: str | None = None
    host_id: str | None = None
    walk_in: bool = False
    re_entry: bool = False
    cross_host: bool = False
    other_host_name: str | None = None
    acceptance_renewed: bool = False
    override_applied: bool = False
    requires_override: bool = False
    retryable: bool = False
    current_count: int | None = None
    max_count: int | None = None
    next_eligible_date: datetime | None = None
    discount_triggered: bool = False
    discount_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "email": self.email,
            "name": self.name,
            "success": self.success,
            "outcome": self.outcome,
            "statusCode": self.status_code,
            "message": self.message,
            "reason": self.reason,
            "hint": self.hint,
            "visitId": self.visit_id,
            "invitationId": self.invitation_id,
            "walkIn": self.walk_in,
            "reEntry": self.re_entry,
            "crossHost": self.cross_host,
            "otherHostName": self.other_host_name,
            "acceptanceRenewed": self.acceptance_renewed,
            "overrideApplied": self.override_applied,
            "requiresOverride": self.requires_override,
            "retryable": self.retryable,
            "discountTriggered": self.discount_triggered,
        }
        if self.error_code:
            payload["code"] = self.error_code
        if self.current_count is not None:
            payload["currentCount"] = self.current_count
            payload["maxCount"] = self.max_count
        if self.next_eligible_date is not None:
            payload["nextEligibleDate"] = self.next_eligible_date.isoformat()
        return payload


@dataclass
class AdmissionOutcome:
    results: list[GuestAdmissionResult] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful

    @property
    def status_code(self) -> int:
        return summarize_status(self.results)

    @property
    def admitted(self) -> list[GuestAdmissionResult]:
        return [result for result in self.results if result.outcome == OUTCOME_ADMITTED]

    @property
    def reward_ids(self) -> list[str]:
        return [result.discount_id for result in self.results if result.discount_id]

    @property
    def message(self) -> str:
        if len(self.results) == 1:
            return self.results[0].message
        if self.failed == 0:
            return f"All {len(self.results)} guests checked in"
        if self.successful == 0:
            return f"No guests could be checked in ({self.failed} failed)"
        return f"{self.successful} of {len(self.results)} guests checked in"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.successful > 0,
            "perGuestResults": [result.to_dict() for result in self.results],
            "summary": {"total": len(self.results), "successful": self.successful, "failed": self.failed},
            "message": self.message,
        }


def summarize_status(results: list[GuestAdmissionResult]) -> int:
    if len(results) == 1:
        return results[0].status_code
    successful = sum(1 for result in results if result.success)
    if results and successful == len(results):
        return 200
    if successful:
        return 207
    error_codes = {result.error_code for result in results}
    if BAD_SECRET in error_codes:
        return 401
    if INSUFFICIENT_ROLE in error_codes:
        return 403
    if any(result.requires_override for result in results):
        return 409
    if results and {result.status_code for result in results} == {503}:
        return 503
    return 400


def _denied(attempt: AdmissionAttempt, denial: Denial) -> GuestAdmissionResult:
    return GuestAdmissionResult(
        email=attempt.email,
        name=attempt.name,
        success=False,
        outcome=OUTCOME_DENIED,
        status_code=DENIAL_STATUS.get(denial.reason, 403),
        message=denial.message,
        reason=denial.reason.value,
        hint=denial.hint.value,
        host_id=attempt.host_id,
        current_count=denial.current_count,
        max_count=denial.max_count,
        next_eligible_date=denial.next_eligible_date,
        retryable=denial.retryable,
    )


def _service_unavailable(attempt: AdmissionAttempt) -> GuestAdmissionResult:
    denial = Denial(
        reason=DenialReason.SERVICE_UNAVAILABLE,
        message="Check-in is temporarily unavailable. Please try again.",
        hint=DenialHint.RETRY_LATER,
    )
    return _denied(attempt, denial)


def _error(attempt: AdmissionAttempt, exc: AppException) -> GuestAdmissionResult:
    return GuestAdmissionResult(
        email=attempt.email,
        name=attempt.name,
        success=False,
        outcome=OUTCOME_ERROR,
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.code,
        host_id=attempt.host_id,
    )


def _begin_admission_transaction(db: Session) -> None:
    """Take the write lock before counting so concurrent attempts serialize."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        timeout_ms = int(settings.ADMISSION_DECISION_TIMEOUT_SECONDS * 1000)
        db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
        db.execute(text(f"SET LOCAL statement_timeout = '{timeout_ms}ms'"))
    elif dialect == "sqlite":
        # SQLite ignores FOR UPDATE and pysqlite defers BEGIN to the first write.
        dbapi_connection = db.connection().connection.dbapi_connection
        if not dbapi_connection.in_transaction:
            db.execute(text("BEGIN IMMEDIATE"))


def _lock_host(db: Session, host_id: str) -> User | None:
    return db.query(User).filter(User.id == host_id).with_for_update().first()


def _lock_guest(db: Session, email: str) -> Guest | None:
    return db.query(Guest).filter(Guest.email == email).with_for_update().first()


def _find_invitation(
    db: Session,
    guest_id: str,
    host_id: str | None,
    now: datetime,
) -> Invitation | None:
    visit_date = local_today(now)
    query = db.query(Invitation).filter(
        Invitation.guest_id == guest_id,
        Invitation.status.in_(OPEN_INVITATION_STATUSES),
        Invitation.visit_date >= visit_date - INVITATION_DATE_TOLERANCE,
        Invitation.visit_date <= visit_date + INVITATION_DATE_TOLERANCE,
    )
    if host_id:
        query = query.filter(Invitation.host_id == host_id)
    return (
        query.order_by(
            case((Invitation.status == InvitationStatus.ACTIVATED, 0), else_=1),
            Invitation.visit_date.desc(),
            Invitation.created_at.desc(),
        )
        .with_for_update()
        .first()
    )


def _claimed_invitation(db: Session, claim: SingleGuestClaim | None, guest_id: str) -> Invitation | None:
    if claim is None:
        return None
    invitation = (
        db.query(Invitation).filter(Invitation.id == claim.invitation_id).with_for_update().first()
    )
    if invitation and invitation.guest_id == guest_id and invitation.status in OPEN_INVITATION_STATUSES:
        return invitation
    return None


def _consume_invitation(db: Session, visit: Visit, attempt: AdmissionAttempt, now: datetime) -> Invitation | None:
    invitation = _claimed_invitation(db, attempt.claim, visit.guest_id)
    if invitation is None:
        invitation = _find_invitation(db, visit.guest_id, visit.host_id, now)
    if invitation is None:
        invitation = _find_invitation(db, visit.guest_id, None, now)
        if invitation is not None:
            logger.warning(
                "admission.commit cross-host invitation reuse visit_host_id=%s invitation_host_id=%s invitation_id=%s",
                visit.host_id,
                invitation.host_id,
                invitation.id,
            )
    if invitation is None:
        logger.info("admission.commit walk-in guest_id=%s host_id=%s", visit.guest_id, visit.host_id)
        return None

    advance_invitation_status(invitation, InvitationStatus.CHECKED_IN)
    visit.invitation_id = invitation.id
    return invitation


def _commit_visit(
    db: Session,
    attempt: AdmissionAttempt,
    guest: Guest,
    now: datetime,
    authorization: OverrideAuthorized | None,
    renewed: bool,
) -> tuple[Visit, Invitation | None]:
    try:
        visit = Visit(
            guest_id=guest.id,
            host_id=attempt.host_id,
            location=settings.BUILDING_LOCATION,
            checked_in_at=now,
            expires_at=calculate_visit_expiration(now),
        )
        if authorization:
            visit.override_reason = authorization.reason
            visit.override_authorized_by = authorization.authorized_by
            visit.override_authorized_at = now
        db.add(visit)
        db.flush()

        invitation = _consume_invitation(db, visit, attempt, now)

        if authorization:
            write_audit_log(
                db,
                actor_user_id=authorization.authorized_by,
                action="visit.override",
                resource_type="visit",
                resource_id=visit.id,
                meta={
                    "reason": authorization.reason,
                    "hostId": attempt.host_id,
                    "guestId": guest.id,
                    "degradedMode": authorization.degraded_mode,
                },
                commit=False,
            )
        if renewed:
            write_audit_log(
                db,
                actor_user_id=None,
                action="acceptance.auto_renew",
                resource_type="guest",
                resource_id=guest.id,
                meta={"visitId": visit.id},
                commit=False,
            )
        db.commit()
    except (SQLAlchemyError, ConsistencyError) as exc:
        db.rollback()
        logger.error(
            "admission.commit failed guest_id=%s host_id=%s error=%s",
            guest.id,
            attempt.host_id,
            exc,
        )
        raise ConsistencyError() from exc
    return visit, invitation


def admit_guest(
    db: Session,
    attempt: AdmissionAttempt,
    requester: RequesterIdentity,
    override: OverrideRequest | None = None,
    now: datetime | None = None,
) -> GuestAdmissionResult:
    """Run one admission attempt to completion.

    Store errors while deciding fail closed as ``service-unavailable``. Only a
    failed commit escapes, as ``ConsistencyError``.
    """
    started = perf_counter()
    now = now or utcnow()
    override = override or OverrideRequest()

    try:
        _begin_admission_transaction(db)
        host = _lock_host(db, attempt.host_id)
        guest = _lock_guest(db, attempt.email)
        if host is None or guest is None:
            db.rollback()
            missing = "Host" if host is None else "Guest"
            return _error(attempt, AppException(f"{missing} not found", status_code=404))

        reentry = resolve_reentry(db, guest.id, host.id, now)
        if reentry.found:
            cross_host = reentry.kind == CROSS_HOST
            if cross_host:
                message = f"Welcome back, {guest.name}. You are currently checked in with {reentry.other_host_name}."
            else:
                message = f"Welcome back, {guest.name}!"
            logger.info(
                "admission.reentry guest_id=%s host_id=%s kind=%s visit_id=%s",
                guest.id,
                host.id,
                reentry.kind,
                reentry.visit.id,
            )
            result = GuestAdmissionResult(
                email=attempt.email,
                name=guest.name,
                success=True,
                outcome=OUTCOME_CROSS_HOST if cross_host else OUTCOME_REENTRY,
                status_code=200,
                message=message,
                visit_id=reentry.visit.id,
                host_id=reentry.visit.host_id,
                re_entry=True,
                cross_host=cross_host,
                other_host_name=reentry.other_host_name,
            )
            db.rollback()
            return result

        credential_expires_at = attempt.claim.expires_at if attempt.claim else None
        renewals_left = MAX_ACCEPTANCE_RENEWALS
        renewed = False
        authorization: OverrideAuthorized | None = None
        while True:
            policy = get_policy(db)
            ctx = load_eligibility_context(db, guest, host.id, now, policy, credential_expires_at)
            denial = evaluate_eligibility(ctx, bypass_capacity=authorization is not None)
            if denial is None:
                break

            if denial.reason == DenialReason.TERMS_RENEWAL_ELIGIBLE and renewals_left > 0:
                renewals_left -= 1
                record_acceptance(db, guest, now=now, source="auto-renewal")
                renewed = True
                continue

            if denial.overridable and authorization is None:
                if not override.supplied:
                    db.rollback()
                    result = _denied(attempt, denial)
                    result.outcome = OUTCOME_OVERRIDE_REQUIRED
                    result.requires_override = True
                    return result
                decision = authorize_override(override.reason, override.secret, requester)
                if isinstance(decision, OverrideDenied):
                    logger.warning(
                        "admission.override denied host_id=%s guest_id=%s code=%s actor=%s",
                        host.id,
                        guest.id,
                        decision.code,
                        requester_actor_id(requester),
                    )
                    db.rollback()
                    result = _denied(attempt, denial)
                    result.outcome = OUTCOME_OVERRIDE_DENIED
                    result.status_code = decision.status_code
                    result.message = decision.message
                    result.error_code = decision.code
                    result.requires_override = True
                    return result
                authorization = decision
                continue

            logger.info(
                "admission.denied guest_id=%s host_id=%s reason=%s",
                guest.id,
                host.id,
                denial.reason.value,
            )
            db.rollback()
            return _denied(attempt, denial)

        elapsed = perf_counter() - started
        if elapsed > settings.ADMISSION_DECISION_TIMEOUT_SECONDS:
            logger.warning(
                "admission.decision timed out guest_id=%s host_id=%s elapsed_ms=%.2f",
                guest.id,
                host.id,
                elapsed * 1000,
            )
            db.rollback()
            return _service_unavailable(attempt)
    except (SQLAlchemyError, PoolTimeoutError) as exc:
        db.rollback()
        logger.warning("admission.decision store unavailable host_id=%s error=%s", attempt.host_id, exc)
        return _service_unavailable(attempt)

    visit, invitation = _commit_visit(db, attempt, guest, now, authorization, renewed)
    logger.info(
        "admission.admitted guest_id=%s host_id=%s visit_id=%s invitation_id=%s override=%s renewed=%s elapsed_ms=%.2f",
        guest.id,
        host.id,
        visit.id,
        invitation.id if invitation else None,
        authorization is not None,
        renewed,
        (perf_counter() - started) * 1000,
    )
    return GuestAdmissionResult(
        email=attempt.email,
        name=guest.name,
        success=True,
        outcome=OUTCOME_ADMITTED,
        status_code=200,
        message=f"Welcome, {guest.name}!",
        visit_id=visit.id,
        invitation_id=invitation.id if invitation else None,
        host_id=host.id,
        walk_in=invitation is None,
        acceptance_renewed=renewed,
        override_applied=authorization is not None,
    )


def _admit_with_retry(
    db: Session,
    attempt: AdmissionAttempt,
    requester: RequesterIdentity,
    override: OverrideRequest | None,
    now: datetime | None,
) -> GuestAdmissionResult:
    try:
        return admit_guest(db, attempt, requester, override, now)
    except ConsistencyError:
        logger.info("admission.commit retrying guest=%s host_id=%s", attempt.email, attempt.host_id)
    try:
        return admit_guest(db, attempt, requester, override, now)
    except ConsistencyError as exc:
        return _error(attempt, exc)


def _apply_reward(db: Session, result: GuestAdmissionResult, guest_id: str, now: datetime | None) -> None:
    try:
        discount = evaluate_reward(db, guest_id, visit_id=result.visit_id, now=now)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("reward.evaluate failed guest_id=%s error=%s", guest_id, exc)
        return
    if discount:
        result.discount_triggered = True
        result.discount_id = discount.id


def resolve_host_id(
    db: Session,
    requester: RequesterIdentity,
    embedded_host_id: str | None = None,
    explicit_host_id: str | None = None,
) -> str:
    """Credential host first, then the request body, then the signed-in host."""
    host_id = embedded_host_id or explicit_host_id
    if not host_id and isinstance(requester, AuthenticatedRequester) and requester.role == "host":
        host_id = requester.user_id
    if not host_id:
        raise StructuralError("Host could not be determined for this check-in", code="host-required")
    host = db.query(User).filter(User.id == host_id).first()
    if not host or not host.is_active:
        raise AppException("Host not found", status_code=404)
    return host.id


def _raise_parse_error(error: CredentialParseError) -> None:
    raise StructuralError(error.message, code=error.code, details=error.details())


def build_attempts(
    db: Session,
    requester: RequesterIdentity,
    credential: str | bytes | None = None,
    guests: list[dict] | None = None,
    host_id: str | None = None,
) -> list[AdmissionAttempt]:
    """Turn a credential or a manual guest list into per-guest attempts.

    Unknown guests on a batch or manual list are created here so the attempt
    can deny them with ``terms-required``. Invalid input raises
    ``StructuralError`` before anything is admitted.
    """
    if credential is None and guests is None:
        raise StructuralError("A credential or guest list is required", code="empty-credential")

    if credential is not None:
        decoded = decode_credential(credential)
    else:
        decoded = parse_guest_list(guests)

    if isinstance(decoded, CredentialParseError):
        _raise_parse_error(decoded)

    if isinstance(decoded, SingleGuestClaim):
        invitation = db.query(Invitation).filter(Invitation.id == decoded.invitation_id).first()
        if not invitation:
            raise AppException("Invitation not found", status_code=404, code="invitation-not-found")
        if invitation.host_id != decoded.host_id or normalize_email(invitation.guest.email) != decoded.guest_email:
            raise StructuralError("Credential does not match its invitation", code="claims-invalid")
        resolved = resolve_host_id(db, requester, embedded_host_id=decoded.host_id)
        return [
            AdmissionAttempt(
                email=invitation.guest.email,
                name=invitation.guest.name,
                host_id=resolved,
                claim=decoded,
            )
        ]

    batch: MultiGuestBatch = decoded
    resolved = resolve_host_id(db, requester, embedded_host_id=batch.host_id, explicit_host_id=host_id)
    attempts: list[AdmissionAttempt] = []
    seen: set[str] = set()
    for entry in batch.guests:
        if entry.email in seen:
            continue
        seen.add(entry.email)
        guest = upsert_guest(db, entry.email, entry.name)
        attempts.append(AdmissionAttempt(email=guest.email, name=guest.name, host_id=resolved))
    return attempts


def process_admission(
    db: Session,
    requester: RequesterIdentity,
    credential: str | bytes | None = None,
    guests: list[dict] | None = None,
    host_id: str | None = None,
    override: OverrideRequest | None = None,
    now: datetime | None = None,
) -> AdmissionOutcome:
    started = perf_counter()
    attempts = build_attempts(db, requester, credential=credential, guests=guests, host_id=host_id)

    outcome = AdmissionOutcome()
    for attempt in attempts:
        result = _admit_with_retry(db, attempt, requester, override, now)
        if result.outcome == OUTCOME_ADMITTED:
            guest = db.query(Guest).filter(Guest.email == attempt.email).first()
            if guest:
                _apply_reward(db, result, guest.id, now)
        outcome.results.append(result)

    logger.info(
        "admission.process total=%s successful=%s failed=%s status=%s elapsed_ms=%.2f",
        len(outcome.results),
        outcome.successful,
        outcome.failed,
        outcome.status_code,
        (perf_counter() - started) * 1000,
    )
    return outcome


def checkout_visit(db: Session, visit_id: str, actor: User, now: datetime | None = None) -> Visit:
    now = now or utcnow()
    visit = db.query(Visit).filter(Visit.id == visit_id).with_for_update().first()
    if not visit:
        raise AppException("Visit not found", status_code=404)
    if actor.role.value == "host" and visit.host_id != actor.id:
        raise AppException("Unauthorized - not your guest", status_code=403)
    if not visit.is_active(now):
        raise AppException("Visit is not active", status_code=400)

    visit.checked_out_at = now
    write_audit_log(
        db,
        actor_user_id=actor.id,
        action="visit.checkout",
        resource_type="visit",
        resource_id=visit.id,
        commit=False,
    )
    db.commit()
    db.refresh(visit)
    logger.info("admission.checkout visit_id=%s actor=%s", visit.id, actor.id)
    return visit


def visit_payload(visit: Visit) -> dict:
    return {
        "id": visit.id,
        "guestId": visit.guest_id,
        "guestName": visit.guest.name if visit.guest else None,
        "guestEmail": visit.guest.email if visit.guest else None,
        "hostId": visit.host_id,
        "hostName": visit.host.full_name if visit.host else None,
        "invitationId": visit.invitation_id,
        "location": visit.location,
        "checkedInAt": visit.checked_in_at.isoformat() if visit.checked_in_at else None,
        "expiresAt": visit.expires_at.isoformat() if visit.expires_at else None,
        "checkedOutAt": visit.checked_out_at.isoformat() if visit.checked_out_at else None,
        "overrideReason": visit.override_reason,
        "overrideAuthorizedBy": visit.override_authorized_by,
    }


def list_active_visits(db: Session, host_id: str | None = None, now: datetime | None = None) -> list[Visit]:
    now = now or utcnow()
    query = db.query(Visit).filter(
        Visit.checked_in_at.is_not(None),
        Visit.expires_at > now,
        Visit.checked_out_at.is_(None),
    )
    if host_id:
        query = query.filter(Visit.host_id == host_id)
    return query.order_by(Visit.checked_in_at.desc()).all()
