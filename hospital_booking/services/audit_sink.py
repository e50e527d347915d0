"""
Audit Sink
Fire-and-forget recorder for booking activity. Events go into a bounded
in-process queue drained by a background thread, so an audit store outage
never blocks or fails a booking.
"""

import logging
import queue
import threading
from datetime import date, datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, field_validator

from ..config import AUDIT_ENABLED, AUDIT_QUEUE_SIZE
from ..models_audit import AuditAction, AuditLog, AuditStatus

logger = logging.getLogger(__name__)

_STOP = object()


class AuditEvent(BaseModel):
    """Call contract for the audit trail"""

    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    patient_id: Optional[int] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    status: str = AuditStatus.SUCCESS
    error_message: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        if v not in AuditAction.ALL:
            raise ValueError(f"Unknown audit action: {v}")
        return v

    @field_validator("resource_id", mode="before")
    @classmethod
    def stringify_resource_id(cls, v):
        return None if v is None else str(v)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def snapshot(obj: Any, fields: tuple) -> dict:
    """JSON-safe before/after snapshot of selected model attributes"""
    return {field: _jsonable(getattr(obj, field, None)) for field in fields}


def make_db_writer(session_factory) -> Callable[[AuditEvent], None]:
    """Writer that appends one AuditLog row per event"""

    def write(event: AuditEvent) -> None:
        db = session_factory()
        try:
            db.add(
                AuditLog(
                    actor_id=event.actor_id,
                    actor_role=event.actor_role,
                    action=event.action,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    patient_id=event.patient_id,
                    before=_jsonable(event.before),
                    after=_jsonable(event.after),
                    status=event.status,
                    error_message=event.error_message,
                    description=(event.description or "")[:500] or None,
                    extra=_jsonable(event.metadata),
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return write


class AuditSink:
    """Bounded queue + single background writer thread"""

    def __init__(
        self,
        writer: Optional[Callable[[AuditEvent], None]] = None,
        max_queue_size: int = AUDIT_QUEUE_SIZE,
        enabled: bool = True,
    ):
        self._writer = writer
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.enabled = enabled
        self.dropped = 0

    @property
    def writer(self) -> Callable[[AuditEvent], None]:
        if self._writer is None:
            from ..database import SessionLocal

            self._writer = make_db_writer(SessionLocal)
        return self._writer

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._drain, name="audit-sink", daemon=True)
            self._thread.start()
            logger.info("📝 Audit sink worker started")

    def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the worker"""
        with self._lock:
            thread = self._thread
            self._thread = None
        if not thread:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)
        logger.info("📝 Audit sink worker stopped")

    def flush(self) -> None:
        """Block until every queued event has been handled"""
        if self._thread and self._thread.is_alive():
            self._queue.join()

    def record(self, event: AuditEvent) -> bool:
        """Queue an event. Never raises; returns False when the event was dropped."""
        if not self.enabled:
            return False
        try:
            if not self._thread or not self._thread.is_alive():
                self.start()
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(
                f"⚠️ Audit queue full, dropping {event.action} event for "
                f"{event.resource_type} {event.resource_id}"
            )
        except Exception as e:
            self.dropped += 1
            logger.error(f"❌ Failed to queue audit event {event.action}: {e}")
        return False

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.writer(event)
            except Exception as e:
                logger.error(f"❌ Failed to record audit event {getattr(event, 'action', '?')}: {e}")
            finally:
                self._queue.task_done()


audit_sink = AuditSink(enabled=AUDIT_ENABLED)
