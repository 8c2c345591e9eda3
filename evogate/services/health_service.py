from datetime import datetime, timezone

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from evogate.logging_config import get_logger
from evogate.models import Instance, IntegrationSession
from evogate.services.state_machine import InstanceState, SessionStatus

logger = get_logger("health_service")


def check_session_invariants(db: Session, *, heal: bool = True) -> dict:
    """Check session invariants and optionally repair violations."""
    issues = []
    now = datetime.now(timezone.utc)

    # Invariant 1: at most one non-closed session per (instance, remote_jid, kind)
    duplicated_keys = (
        db.query(IntegrationSession.instance_id, IntegrationSession.remote_jid, IntegrationSession.kind)
        .filter(IntegrationSession.status != SessionStatus.CLOSED.value)
        .group_by(IntegrationSession.instance_id, IntegrationSession.remote_jid, IntegrationSession.kind)
        .having(func.count(IntegrationSession.id) > 1)
        .all()
    )
    for instance_id, remote_jid, kind in duplicated_keys:
        sessions = (
            db.query(IntegrationSession)
            .filter(
                IntegrationSession.instance_id == instance_id,
                IntegrationSession.remote_jid == remote_jid,
                IntegrationSession.kind == kind,
                IntegrationSession.status != SessionStatus.CLOSED.value,
            )
            .order_by(IntegrationSession.updated_at.desc())
            .all()
        )
        for stale in sessions[1:]:
            issues.append({"session_id": str(stale.id), "issue": "duplicate_open_session", "action": "closed"})
            if heal:
                stale.status = SessionStatus.CLOSED.value
                stale.closed_at = now
                stale.awaiting_user = False
            logger.warning(f"Duplicate open {kind} session {stale.id} for {remote_jid}")

    # Invariant 2: sessions of expired instances are closed
    orphaned = (
        db.query(IntegrationSession)
        .join(Instance, Instance.id == IntegrationSession.instance_id)
        .filter(
            Instance.state == InstanceState.EXPIRED.value,
            IntegrationSession.status != SessionStatus.CLOSED.value,
        )
        .all()
    )
    for session in orphaned:
        issues.append({"session_id": str(session.id), "issue": "open_session_on_expired_instance", "action": "closed"})
        if heal:
            session.status = SessionStatus.CLOSED.value
            session.closed_at = now
            session.awaiting_user = False
        logger.warning(f"Open session {session.id} on expired instance")

    # Invariant 3: closed sessions carry closed_at
    missing_closed_at = (
        db.query(IntegrationSession)
        .filter(
            IntegrationSession.status == SessionStatus.CLOSED.value,
            IntegrationSession.closed_at == None,  # noqa: E711
        )
        .all()
    )
    for session in missing_closed_at:
        issues.append({"session_id": str(session.id), "issue": "closed_without_timestamp", "action": "set_closed_at"})
        if heal:
            session.closed_at = session.updated_at or now

    if heal:
        db.commit()

    return {
        "ok": not issues,
        "issue_count": len(issues),
        "details": issues,
        "checked_at": now.isoformat(),
    }


def get_system_health(db: Session) -> dict:
    """Store reachability plus session and instance counters."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error(f"Health check: store unreachable: {exc}")
        return {"store": "unreachable", "error": str(exc), "checked_at": datetime.now(timezone.utc).isoformat()}

    sessions = dict(
        db.query(IntegrationSession.status, func.count(IntegrationSession.id))
        .group_by(IntegrationSession.status)
        .all()
    )
    instances = dict(db.query(Instance.state, func.count(Instance.id)).group_by(Instance.state).all())

    return {
        "store": "ok",
        "sessions": {status.value: sessions.get(status.value, 0) for status in SessionStatus},
        "instances": {state.value: instances.get(state.value, 0) for state in InstanceState},
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
