"""Check-in credential codec.

Two encodings are accepted at the scanner:

* a guest batch, JSON ``{"guests": [{"e": email, "n": name}, ...], "hostId": ...}``,
  a host-level QR with no expiry of its own (each guest's terms acceptance
  decides whether they may enter);
* a signed single-guest token (HS256 JWT) naming one invitation, with an
  expiry.

``decode_credential`` tries the batch form first and the signed token
second, and always returns one of ``MultiGuestBatch``, ``SingleGuestClaim``
or ``CredentialParseError``. It never raises on bad input.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Union
from urllib.parse import parse_qs, quote, urlparse

from guestpass.core.config import get_settings
from guestpass.core.security import sign_credential, verify_credential_signature
from guestpass.core.timezone import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleGuestClaim:
    invitation_id: str
    guest_email: str
    host_id: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class BatchGuest:
    email: str
    name: str


@dataclass(frozen=True)
class MultiGuestBatch:
    guests: tuple[BatchGuest, ...]
    host_id: str | None = None


@dataclass(frozen=True)
class EntryError:
    index: int
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"index": self.index, "field": self.field, "message": self.message}


@dataclass(frozen=True)
class CredentialParseError:
    code: str
    message: str
    entry_errors: tuple[EntryError, ...] = field(default_factory=tuple)

    def details(self) -> list[dict]:
        return [error.to_dict() for error in self.entry_errors]


DecodedCredential = Union[SingleGuestClaim, MultiGuestBatch, CredentialParseError]


def normalize_email(value: str) -> str:
    return value.strip().lower()


def _unwrap_display_uri(text: str) -> str | None:
    prefix = f"{settings.CREDENTIAL_URI_SCHEME}://"
    if not text.lower().startswith(prefix):
        return text
    try:
        tokens = parse_qs(urlparse(text).query).get("token") or []
    except ValueError:
        return None
    return tokens[0].strip() if tokens and tokens[0].strip() else None


def _entry_value(entry: dict, short_key: str, long_key: str) -> Any:
    value = entry.get(short_key)
    if value is None:
        value = entry.get(long_key)
    return value


def _parse_batch(payload: dict) -> MultiGuestBatch | CredentialParseError:
    raw_guests = payload.get("guests")
    if not isinstance(raw_guests, list) or not raw_guests:
        return CredentialParseError(
            code="batch-invalid",
            message="Guest list must contain at least one guest",
        )

    errors: list[EntryError] = []
    guests: list[BatchGuest] = []
    for index, entry in enumerate(raw_guests):
        if not isinstance(entry, dict):
            errors.append(EntryError(index, "entry", "Guest entry must be an object"))
            continue
        email = _entry_value(entry, "e", "email")
        name = _entry_value(entry, "n", "name")
        if not isinstance(email, str) or not email.strip():
            errors.append(EntryError(index, "email", "Guest email is required"))
        if not isinstance(name, str) or not name.strip():
            errors.append(EntryError(index, "name", "Guest name is required"))
        if isinstance(email, str) and email.strip() and isinstance(name, str) and name.strip():
            guests.append(BatchGuest(email=normalize_email(email), name=name.strip()))

    if errors:
        return CredentialParseError(
            code="batch-invalid",
            message=f"{len(errors)} guest entr{'y is' if len(errors) == 1 else 'ies are'} invalid",
            entry_errors=tuple(errors),
        )

    host_id = payload.get("hostId")
    if not isinstance(host_id, str) or not host_id.strip():
        host_id = None
    return MultiGuestBatch(guests=tuple(guests), host_id=host_id.strip() if host_id else None)


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_signed_token(token: str) -> SingleGuestClaim | CredentialParseError:
    if token.count(".") != 2:
        return CredentialParseError(code="unrecognized-credential", message="Unrecognized credential")
    try:
        claims = verify_credential_signature(token)
    except ValueError:
        return CredentialParseError(code="signature-invalid", message="Credential signature is invalid")
    except Exception as exc:  # jose raises assorted error types on hostile headers
        logger.debug("credential.decode signature check crashed: %s", exc.__class__.__name__)
        return CredentialParseError(code="signature-invalid", message="Credential signature is invalid")

    invitation_id = claims.get("inv")
    guest_email = claims.get("sub")
    host_id = claims.get("host")
    issued_at = _timestamp(claims.get("iat"))
    expires_at = _timestamp(claims.get("exp"))
    if not all(isinstance(v, str) and v.strip() for v in (invitation_id, guest_email, host_id)):
        return CredentialParseError(code="claims-invalid", message="Credential is missing required fields")
    if issued_at is None or expires_at is None:
        return CredentialParseError(code="claims-invalid", message="Credential timestamps are invalid")

    return SingleGuestClaim(
        invitation_id=invitation_id.strip(),
        guest_email=normalize_email(guest_email),
        host_id=host_id.strip(),
        issued_at=issued_at,
        expires_at=expires_at,
    )


def decode_credential(raw: bytes | str | None) -> DecodedCredential:
    if raw is None or len(raw) == 0:
        return CredentialParseError(code="empty-credential", message="Credential is required")

    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return CredentialParseError(code="invalid-encoding", message="Credential is not valid UTF-8")
    else:
        text = raw

    text = text.strip()
    if not text:
        return CredentialParseError(code="empty-credential", message="Credential is required")

    unwrapped = _unwrap_display_uri(text)
    if unwrapped is None:
        return CredentialParseError(code="unrecognized-credential", message="Check-in link has no token")
    text = unwrapped

    # Batch JSON takes priority over the signed token form.
    if text[0] == "{":
        try:
            payload = json.loads(text)
        except (ValueError, RecursionError):
            payload = None
        if isinstance(payload, dict) and "guests" in payload:
            return _parse_batch(payload)

    return _parse_signed_token(text)


def issue_single_credential(
    invitation_id: str,
    guest_email: str,
    host_id: str,
    now: datetime | None = None,
) -> tuple[str, datetime]:
    issued_at = (now or utcnow()).replace(microsecond=0)
    expires_at = issued_at + timedelta(minutes=settings.CREDENTIAL_TTL_MINUTES)
    token = sign_credential(
        {
            "inv": invitation_id,
            "sub": normalize_email(guest_email),
            "host": host_id,
            "iat": int(issued_at.replace(tzinfo=timezone.utc).timestamp()),
            "exp": int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
        }
    )
    return token, expires_at


def encode_batch_credential(guests: Iterable[BatchGuest], host_id: str | None = None) -> str:
    payload: dict[str, Any] = {"guests": [{"e": guest.email, "n": guest.name} for guest in guests]}
    if host_id:
        payload["hostId"] = host_id
    return json.dumps(payload, separators=(",", ":"))


def credential_display_uri(token: str) -> str:
    return f"{settings.CREDENTIAL_URI_SCHEME}://checkin?token={quote(token, safe='')}"


def parse_guest_list(entries: Any, host_id: str | None = None) -> MultiGuestBatch | CredentialParseError:
    """Validate a manually entered guest list with the same rules as a scanned batch."""
    return _parse_batch({"guests": entries, "hostId": host_id})
