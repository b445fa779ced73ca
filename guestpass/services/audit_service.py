import json
from typing import Any

from sqlalchemy.orm import Session

from guestpass.db.models import AuditLog


def write_audit_log(
    db: Session,
    actor_user_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    meta: dict[str, Any] | None = None,
    commit: bool = True,
) -> AuditLog:
    """Record an audit row.

    Pass ``commit=False`` to stage the row inside a caller's transaction so
    it lands (or rolls back) together with the change it describes.
    """
    row = AuditLog(
        actor_user_id=actor_user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        meta_json=json.dumps(meta or {}, ensure_ascii=True, default=str),
    )
    db.add(row)
    if commit:
        db.commit()
        db.refresh(row)
    return row


def list_audit_logs(
    db: Session,
    limit: int = 200,
    action: str | None = None,
    resource_type: str | None = None,
) -> list[dict]:
    query = db.query(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    if resource_type:
        query = query.filter(AuditLog.resource_type == resource_type)
    rows = query.order_by(AuditLog.created_at.desc()).limit(limit).all()
    return [
        {
            "id": row.id,
            "actorUserId": row.actor_user_id,
            "action": row.action,
            "resourceType": row.resource_type,
            "resourceId": row.resource_id,
            "meta": json.loads(row.meta_json or "{}"),
            "createdAt": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
