"""Durable mapping (instance, remote_jid, kind) -> integration session.

Every operation runs in its own short transaction, so a write is either fully
applied or not at all. Records leave the store as frozen ``SessionRecord``
values; callers never hold live ORM objects across await points.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from evogate.errors import InstanceNotFoundError, SessionConflictError, SessionStoreUnavailableError
from evogate.logging_config import get_logger
from evogate.models import ChatbotSetting, Instance, IntegrationSession
from evogate.services.state_machine import SessionStatus, transition

logger = get_logger("session_store")


def ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class SessionRecord:
    id: UUID
    instance: str
    remote_jid: str
    kind: str
    session_ref: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    awaiting_user: bool = False
    push_name: Optional[str] = None
    context: Mapping[str, Any] = field(default_factory=dict)
    closed_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.instance, self.remote_jid, self.kind)


class SessionStore(Protocol):
    def find(self, instance: str, remote_jid: str, kind: str) -> Optional[SessionRecord]: ...

    def create(self, instance: str, remote_jid: str, kind: str, session_ref: str, **attrs) -> SessionRecord: ...

    def touch(self, session_id: UUID, **changes) -> Optional[SessionRecord]: ...

    def close(self, session_id: UUID, *, now: Optional[datetime] = None) -> Optional[SessionRecord]: ...

    def set_status(
        self, session_id: UUID, status: SessionStatus, *, now: Optional[datetime] = None
    ) -> Optional[SessionRecord]: ...

    def list_expired(self, now: datetime) -> list[SessionRecord]: ...

    def list_open(self, instance: str) -> list[SessionRecord]: ...


def _to_record(row: IntegrationSession, instance_name: str) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        instance=instance_name,
        remote_jid=row.remote_jid,
        kind=row.kind,
        session_ref=row.session_ref,
        status=SessionStatus(row.status),
        created_at=ensure_timezone(row.created_at),
        updated_at=ensure_timezone(row.updated_at),
        awaiting_user=bool(row.awaiting_user),
        push_name=row.push_name,
        context=dict(row.context or {}),
        closed_at=ensure_timezone(row.closed_at),
    )


class SqlSessionStore:
    """SessionStore over SQLAlchemy."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Session store unavailable", extra={"context": {"error": str(exc)}})
            raise SessionStoreUnavailableError(str(exc)) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _open_query(self, db, instance: str, remote_jid: str, kind: str):
        return (
            db.query(IntegrationSession)
            .join(Instance, Instance.id == IntegrationSession.instance_id)
            .filter(
                Instance.name == instance,
                IntegrationSession.remote_jid == remote_jid,
                IntegrationSession.kind == kind,
                IntegrationSession.status != SessionStatus.CLOSED.value,
            )
        )

    def _get_with_instance(self, db, session_id: UUID):
        return (
            db.query(IntegrationSession, Instance.name)
            .join(Instance, Instance.id == IntegrationSession.instance_id)
            .filter(IntegrationSession.id == session_id)
            .first()
        )

    def find(self, instance: str, remote_jid: str, kind: str) -> Optional[SessionRecord]:
        """Return the non-closed session for the key, if any."""
        with self._transaction() as db:
            row = self._open_query(db, instance, remote_jid, kind).first()
            return _to_record(row, instance) if row else None

    def create(
        self,
        instance: str,
        remote_jid: str,
        kind: str,
        session_ref: str,
        *,
        push_name: Optional[str] = None,
        awaiting_user: bool = False,
        context: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> SessionRecord:
        """Insert an opened session. Raises SessionConflictError if one is already open."""
        now = now or datetime.now(timezone.utc)
        try:
            with self._transaction() as db:
                owner = db.query(Instance).filter(Instance.name == instance).first()
                if owner is None:
                    raise InstanceNotFoundError(f"Instance {instance} not found")

                if self._open_query(db, instance, remote_jid, kind).first() is not None:
                    raise SessionConflictError(instance, remote_jid, kind)

                row = IntegrationSession(
                    instance_id=owner.id,
                    remote_jid=remote_jid,
                    kind=kind,
                    session_ref=session_ref,
                    status=SessionStatus.OPENED.value,
                    awaiting_user=awaiting_user,
                    push_name=push_name,
                    context=context or {},
                    created_at=now,
                    updated_at=now,
                )
                db.add(row)
                db.flush()
                return _to_record(row, instance)
        except IntegrityError as exc:
            # lost the race against another writer on the partial unique index
            raise SessionConflictError(instance, remote_jid, kind) from exc

    def touch(
        self,
        session_id: UUID,
        *,
        awaiting_user: Optional[bool] = None,
        context: Optional[dict] = None,
        session_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SessionRecord]:
        """Refresh last activity and apply turn bookkeeping."""
        with self._transaction() as db:
            found = self._get_with_instance(db, session_id)
            if not found:
                return None
            row, instance_name = found
            row.updated_at = now or datetime.now(timezone.utc)
            if awaiting_user is not None:
                row.awaiting_user = awaiting_user
            if context is not None:
                row.context = dict(context)
            if session_ref is not None:
                row.session_ref = session_ref
            db.flush()
            return _to_record(row, instance_name)

    def set_status(self, session_id: UUID, status: SessionStatus, *, now: Optional[datetime] = None):
        """Apply a status transition. Raises InvalidTransitionError."""
        with self._transaction() as db:
            found = self._get_with_instance(db, session_id)
            if not found:
                return None
            row, instance_name = found
            new_status = transition(SessionStatus(row.status), SessionStatus(status))
            now = now or datetime.now(timezone.utc)
            row.status = new_status.value
            row.updated_at = now
            if new_status == SessionStatus.CLOSED:
                row.closed_at = now
                row.awaiting_user = False
            db.flush()
            return _to_record(row, instance_name)

    def close(self, session_id: UUID, *, now: Optional[datetime] = None) -> Optional[SessionRecord]:
        """Close the session; closing an already closed session is a no-op."""
        with self._transaction() as db:
            found = self._get_with_instance(db, session_id)
            if not found:
                return None
            row, instance_name = found
            if row.status != SessionStatus.CLOSED.value:
                now = now or datetime.now(timezone.utc)
                row.status = SessionStatus.CLOSED.value
                row.closed_at = now
                row.updated_at = now
                row.awaiting_user = False
                db.flush()
            return _to_record(row, instance_name)

    def list_expired(self, now: datetime) -> list[SessionRecord]:
        """Open sessions idle for longer than their integration's expire_minutes."""
        now = ensure_timezone(now)
        expired = []
        with self._transaction() as db:
            rows = (
                db.query(IntegrationSession, Instance.name, ChatbotSetting.expire_minutes)
                .join(Instance, Instance.id == IntegrationSession.instance_id)
                .join(
                    ChatbotSetting,
                    (ChatbotSetting.instance_id == IntegrationSession.instance_id)
                    & (ChatbotSetting.kind == IntegrationSession.kind),
                )
                .filter(
                    IntegrationSession.status != SessionStatus.CLOSED.value,
                    ChatbotSetting.expire_minutes > 0,
                )
                .all()
            )
            for row, instance_name, expire_minutes in rows:
                last_activity = ensure_timezone(row.updated_at)
                if now - last_activity >= timedelta(minutes=expire_minutes):
                    expired.append(_to_record(row, instance_name))
        return expired

    def list_sessions(
        self,
        instance: str,
        *,
        kind: Optional[str] = None,
        status: Optional[SessionStatus] = None,
        remote_jid: Optional[str] = None,
    ) -> list[SessionRecord]:
        with self._transaction() as db:
            query = (
                db.query(IntegrationSession)
                .join(Instance, Instance.id == IntegrationSession.instance_id)
                .filter(Instance.name == instance)
            )
            if kind:
                query = query.filter(IntegrationSession.kind == kind)
            if status:
                query = query.filter(IntegrationSession.status == SessionStatus(status).value)
            if remote_jid:
                query = query.filter(IntegrationSession.remote_jid == remote_jid)
            rows = query.order_by(IntegrationSession.created_at).all()
            return [_to_record(row, instance) for row in rows]

    def list_open(self, instance: str) -> list[SessionRecord]:
        """Every non-closed session of the instance, whatever its integration."""
        with self._transaction() as db:
            rows = (
                db.query(IntegrationSession)
                .join(Instance, Instance.id == IntegrationSession.instance_id)
                .filter(Instance.name == instance, IntegrationSession.status != SessionStatus.CLOSED.value)
                .order_by(IntegrationSession.created_at)
                .all()
            )
            return [_to_record(row, instance) for row in rows]

    def purge_closed(self, older_than: datetime) -> int:
        """Delete closed sessions past the retention window."""
        with self._transaction() as db:
            return (
                db.query(IntegrationSession)
                .filter(
                    IntegrationSession.status == SessionStatus.CLOSED.value,
                    IntegrationSession.closed_at < older_than,
                )
                .delete(synchronize_session=False)
            )

    def find_by_ref(self, instance: str, kind: str, session_ref: str) -> Optional[SessionRecord]:
        """Non-closed session holding the backend's session reference."""
        with self._transaction() as db:
            row = (
                db.query(IntegrationSession)
                .join(Instance, Instance.id == IntegrationSession.instance_id)
                .filter(
                    Instance.name == instance,
                    IntegrationSession.kind == kind,
                    IntegrationSession.session_ref == session_ref,
                    IntegrationSession.status != SessionStatus.CLOSED.value,
                )
                .first()
            )
            return _to_record(row, instance) if row else None
