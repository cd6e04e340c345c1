"""
audit/recorder.py -- The Audit Recorder service.

Three entry points, in decreasing strictness:

  log_event(event)          Validate, stamp, persist. Raises on any failure.
                            Use where the caller must know the record exists
                            (CLI bootstrap, tests).

  log_failed_attempt(...)   Best-effort failed record for exception paths.
                            A storage failure goes to the fallback logger and
                            is swallowed -- audit trouble never aborts the
                            primary request.

  dispatch(event)           What request paths use. Validation runs in the
                            caller's thread (a malformed event is a bug and
                            must surface), persistence runs on the recorder's
                            worker pool so a slow audit database does not
                            delay the client response. Without a pool the
                            write is performed inline, still best-effort.

The timestamp is always stamped here, server-side. AuditEvent has no
timestamp field, and metadata keys named "timestamp" are kept as plain data.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from typing import Optional

from audit.models import (
    AuditAction,
    AuditEvent,
    AuditRecord,
    AuditStatus,
    RequestContext,
    classify_identifier,
    validate_event,
)
from audit.store import AuditStore
from core.database import utcnow

logger = logging.getLogger("civicauth.audit")
fallback_logger = logging.getLogger("civicauth.audit.fallback")


class AuditRecorder:
    def __init__(self, store: AuditStore, executor: Optional[Executor] = None) -> None:
        self.store = store
        self._executor = executor

    def log_event(self, event: AuditEvent) -> AuditRecord:
        validate_event(event)
        record = self.store.append(event, timestamp=utcnow())
        logger.info(
            "[AUDIT] %s %s actor=%s initiator=%s id=%s",
            record.action.value,
            record.status.value,
            record.actor_id,
            record.initiator_id,
            record.id,
        )
        return record

    def log_failed_attempt(
        self,
        action: AuditAction,
        error: BaseException,
        context: RequestContext,
        identifier: Optional[str] = None,
        actor_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[AuditRecord]:
        """Record a failed attempt. Never raises."""
        event = AuditEvent(
            action=action,
            context=context,
            status=AuditStatus.FAILED,
            actor_id=actor_id,
            method=classify_identifier(identifier) if identifier is not None else None,
            email=identifier if identifier and "@" in identifier else None,
            metadata={**(metadata or {}), "identifier": identifier, "error": str(error)},
        )
        try:
            return self.log_event(event)
        except Exception as exc:
            fallback_logger.error(
                "Failed to record failed attempt %s: %s (original error: %s, identifier=%s)",
                getattr(action, "value", action),
                exc,
                error,
                identifier,
            )
            return None

    def dispatch(self, event: AuditEvent) -> Optional[Future]:
        validate_event(event)
        if self._executor is None:
            self._persist(event)
            return None
        try:
            return self._executor.submit(self._persist, event)
        except RuntimeError as exc:
            # Executor already shut down (application stopping); write inline.
            fallback_logger.warning("Audit executor unavailable (%s); writing inline", exc)
            self._persist(event)
            return None

    def _persist(self, event: AuditEvent) -> Optional[AuditRecord]:
        try:
            return self.log_event(event)
        except Exception:
            fallback_logger.exception(
                "Audit write failed: action=%s status=%s actor=%s initiator=%s ip=%s metadata=%r",
                event.action.value,
                event.status.value,
                event.actor_id,
                event.initiator_id,
                event.context.ip,
                event.metadata,
            )
            return None

    def shutdown(self) -> None:
        """Wait for queued writes to finish. Called from the app lifespan."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
