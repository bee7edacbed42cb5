"""
audit/recorder.py -- Fire-and-forget audit trail writer.

record() builds an immutable AuditEvent on the caller's thread (so the event
time and actor are exactly what the caller saw) and hands the database write
to a single background worker. The caller never waits on, and never sees an
error from, the audit database:

    login succeeds  ->  recorder.record(AUTH_LOGIN, ...)  ->  response sent
                                         |
                                         +-> worker thread: AuditLogStore.append()
                                             (failure -> logger.exception, dropped)

One worker keeps writes in submission order, which is the order an operator
reads the trail in.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import uuid
from typing import TYPE_CHECKING, Any

from audit.models import AuditEvent, RequestContext
from audit.store import AuditLogStore
from core.clock import Clock, utc_now

if TYPE_CHECKING:
    from auth.gate import SecurityContext
    from auth.models import ApiClient, User

logger = logging.getLogger("aaa.audit")


class AuditRecorder:
    def __init__(self, store: AuditLogStore, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-writer")
        self._pending: set[concurrent.futures.Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(
        self,
        action: str,
        *,
        actor_user: User | None = None,
        actor_client: ApiClient | None = None,
        context: RequestContext | None = None,
        details: dict[str, Any] | None = None,
        target_type: str | None = None,
        target_id: str | int | None = None,
        security: SecurityContext | None = None,
    ) -> concurrent.futures.Future | None:
        """Queue one audit event. Returns the write's Future, or None if the recorder is closed.

        The actor is actor_user XOR actor_client; passing both is a programming
        error and raises ValueError here, on the caller's thread. With neither,
        the authenticated principal of `security` (if any) becomes the actor.
        """
        if actor_user is not None and actor_client is not None:
            raise ValueError("An audit event has at most one actor: pass actor_user or actor_client, not both.")
        if actor_user is None and actor_client is None and security is not None:
            actor_user = security.principal

        context = context or RequestContext()
        event = AuditEvent(
            action=action,
            occurred_at=self._clock(),
            actor_user_id=actor_user.id if actor_user is not None else None,
            actor_client_id=actor_client.id if actor_client is not None else None,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            request_id=context.request_id or str(uuid.uuid4()),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details=dict(details or {}),
        )
        return self._submit(event)

    def record_system(self, action: str, details: dict[str, Any] | None = None) -> concurrent.futures.Future | None:
        """Queue an actor-less event from a context with no HTTP request (scheduled jobs)."""
        return self.record(action, details=details)

    def flush(self, timeout: float | None = 5.0) -> bool:
        """Block until every event queued so far is written. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        """Drain queued writes and stop the worker. Later record() calls are dropped with a warning."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        logger.info("Audit recorder stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _submit(self, event: AuditEvent) -> concurrent.futures.Future | None:
        if self._closed:
            logger.warning("Audit recorder closed; dropping %s event", event.action)
            return None
        try:
            future = self._executor.submit(self._write, event)
        except RuntimeError:
            # shutdown() raced with this call
            logger.warning("Audit recorder closed; dropping %s event", event.action)
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _write(self, event: AuditEvent) -> None:
        try:
            self.store.append(event)
        except Exception:
            logger.exception("Audit write failed: action=%s request_id=%s", event.action, event.request_id)
