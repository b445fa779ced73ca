"""Notification sink.

Email delivery lives outside this service. The sink writes an outbox row that
the mail worker picks up, and reports the hand-off as a plain result so
callers never need a try/except around it.
"""
import json
import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from guestpass.db.models import Notification

logger = logging.getLogger(__name__)

KIND_REWARD = "reward.third_visit"
KIND_INVITATION = "invitation.created"


class NotificationSink(Protocol):
    def send(self, recipient: str, kind: str, data: dict[str, Any]) -> dict: ...


class OutboxNotificationSink:
    def __init__(self, db: Session):
        self.db = db

    def send(self, recipient: str, kind: str, data: dict[str, Any]) -> dict:
        try:
            row = Notification(
                recipient=recipient,
                kind=kind,
                payload=json.dumps(data, default=str),
                status="queued",
            )
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("notification.send failed kind=%s recipient=%s error=%s", kind, recipient, exc)
            return {"success": False, "error": str(exc)}
        logger.info("notification.send queued kind=%s recipient=%s id=%s", kind, recipient, row.id)
        return {"success": True, "id": row.id}

