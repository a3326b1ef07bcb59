from __future__ import annotations

import json
import logging
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.teamdesk.models import AuditLog

logger = logging.getLogger(__name__)


def client_ip() -> str | None:
    """Best-effort client address for the current request (proxy headers first)."""
    if not has_request_context():
        return None
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.headers.get("X-Real-IP") or request.remote_addr


def record_event(
    s: Session,
    *,
    actor_id: int,
    action: str,
    entity_type: str,
    description: str,
    team_id: int | None = None,
    entity_id: str | int | None = None,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> AuditLog | None:
    """
    Append-only audit event helper.

    The insert runs in a SAVEPOINT so a failure here rolls back only the audit
    row; it is logged and swallowed, and the caller's transaction carries on.
    """
    if has_request_context():
        ip_address = ip_address or client_ip()
        user_agent = user_agent or request.headers.get("User-Agent")
        request_id = request_id or getattr(g, "request_id", None)
    # Pending primary changes must fail loudly, not inside the swallowed block.
    s.flush()
    try:
        with s.begin_nested():
            ev = AuditLog(
                request_id=request_id,
                user_id=actor_id,
                team_id=team_id,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                description=description,
                metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
            )
            s.add(ev)
        return ev
    except Exception:
        logger.exception(
            "Audit write failed (action=%s entity=%s:%s actor=%s request_id=%s)",
            action,
            entity_type,
            entity_id,
            actor_id,
            request_id,
        )
        return None


def list_audit_logs(
    s: Session,
    *,
    user_id: int | None = None,
    team_id: int | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AuditLog], int]:
    """Filtered audit trail, newest first, plus the unpaginated total."""
    stmt = select(AuditLog)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if team_id is not None:
        stmt = stmt.where(AuditLog.team_id == team_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if search:
        stmt = stmt.where(AuditLog.description.ilike(f"%{search}%"))

    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = s.scalars(
        stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).offset(offset)
    ).all()
    return list(rows), int(total)


def audit_log_to_dict(ev: AuditLog) -> dict[str, Any]:
    return {
        "id": ev.id,
        "action": ev.action,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "description": ev.description,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
        "ip_address": ev.ip_address,
        "user_agent": ev.user_agent,
        "request_id": ev.request_id,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
        "user": {"id": ev.user.id, "name": ev.user.name, "email": ev.user.email, "role": ev.user.role} if ev.user else None,
        "team": {"id": ev.team.id, "name": ev.team.name} if ev.team else None,
    }
