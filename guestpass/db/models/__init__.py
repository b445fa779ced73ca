from guestpass.db.models.audit import AuditLog
from guestpass.db.models.device_session import DeviceSession
from guestpass.db.models.discount import Discount
from guestpass.db.models.guest import Acceptance, Guest
from guestpass.db.models.invitation import (
    INVITATION_TRANSITIONS,
    OPEN_INVITATION_STATUSES,
    Invitation,
    InvitationStatus,
)
from guestpass.db.models.notification import Notification
from guestpass.db.models.policy import POLICY_ROW_ID, Policy
from guestpass.db.models.user import User, UserRole
from guestpass.db.models.visit import Visit

__all__ = [
    "Acceptance",
    "AuditLog",
    "DeviceSession",
    "Discount",
    "Guest",
    "INVITATION_TRANSITIONS",
    "Invitation",
    "InvitationStatus",
    "Notification",
    "OPEN_INVITATION_STATUSES",
    "POLICY_ROW_ID",
    "Policy",
    "User",
    "UserRole",
    "Visit",
]
