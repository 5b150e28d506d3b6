import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import insert

from tightship.core.config import settings
from tightship.core.database import audit_events, get_db_session, get_database_url
from tightship.core.logging import get_request_id, safe_truncate
from tightship.core.tasks import run_detached

logger = logging.getLogger("tightship.audit")

_memory_events: List[Dict[str, Any]] = []  # Fallback buffer when DB is unavailable


def record_audit_event(
    *,
    action: str,
    organization_id: Optional[str],
    actor: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    request_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
):
    """Record an audit event to the database (or fallback buffer).

    Notes:
    - Respects AUDIT_ENABLED.
    - Payload values are stringified and truncated.
    """

    if not settings.AUDIT_ENABLED:
        return

    record = {
        "created_at": datetime.now(timezone.utc),
        "action": action,
        "organization_id": organization_id,
        "actor": actor,
        "target_type": target_type,
        "target_id": target_id,
        "request_id": request_id,
        "payload": {k: safe_truncate(v) for k, v in payload.items()} if payload else None,
    }

    if not get_database_url():
        _memory_events.append(record)
        logger.debug("Audit event buffered in memory (no DB configured)")
        return

    try:
        with get_db_session() as session:
            session.execute(insert(audit_events).values(**record))
    except Exception as exc:
        logger.warning(f"Audit event write failed: {exc}")
        _memory_events.append(record)


def emit_audit_event(tasks, **fields: Any) -> None:
    """Record an audit event off the caller's path; failures are only logged."""
    fields.setdefault("request_id", get_request_id())
    if tasks is None:
        run_detached("record_audit_event", record_audit_event, **fields)
        return
    tasks.submit("record_audit_event", record_audit_event, **fields)


def get_buffered_audit_events():
    return list(_memory_events)


def clear_buffered_audit_events() -> None:
    _memory_events.clear()
