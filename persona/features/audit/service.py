"""
Append-only operator audit trail.

Rows are written inside the caller's transaction so an audited action and
its audit entry commit (or roll back) together. Nothing updates or deletes
audit rows.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select, func
from sqlalchemy.orm import Session

from persona.core.database import admin_audit, get_db_session
from persona.models.actor import Actor

MAX_PAGE_SIZE = 100


def record_admin_audit(
    session: Session,
    actor: Actor,
    action: str,
    *,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    note: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record an operator action in the audit log.

    Args:
        session: Open transaction of the action being audited
        actor: Operator performing the action
        action: Action name (e.g., "manual_credit", "revoke_api_key")
        target_user_id: User affected by action (optional)
        target_resource: Resource affected (order_id, key_id, ...)
        note: Free-text operator note
        payload: Additional context as dict (will be JSON-serialized)
    """
    session.execute(
        insert(admin_audit).values(
            actor_id=actor.user_id,
            actor_role=actor.role,
            action=action,
            target_user_id=target_user_id,
            target_resource=target_resource,
            note=note,
            payload_json=json.dumps(payload, default=str) if payload else None,
            created_at=datetime.now(timezone.utc),
        )
    )


def list_admin_audit(
    *,
    action: Optional[str] = None,
    target_user_id: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    page = max(1, page)
    limit = max(1, min(MAX_PAGE_SIZE, limit))

    conditions = []
    if action:
        conditions.append(admin_audit.c.action == action)
    if target_user_id:
        conditions.append(admin_audit.c.target_user_id == target_user_id)

    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(admin_audit).where(*conditions)
        ).scalar_one()
        rows = session.execute(
            select(admin_audit)
            .where(*conditions)
            .order_by(admin_audit.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

    entries: List[Dict[str, Any]] = [
        {
            "id": row.id,
            "actorId": row.actor_id,
            "actorRole": row.actor_role,
            "action": row.action,
            "targetUserId": row.target_user_id,
            "targetResource": row.target_resource,
            "note": row.note,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
        }
        for row in rows
    ]
    return {"page": page, "limit": limit, "total": total, "entries": entries}
