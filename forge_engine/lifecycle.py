"""
Session Lifecycle — the session state machine.

    created → active → {paused, completed, failed}
    paused  → active                     (resume)
    completed, failed                    terminal
    terminal → archived                  retention sweep only

Every transition is written under the idempotency guard's session key
(waiting out the current holder rather than failing fast) and handed to
the Session Store as a debounced save.
"""
import logging
import uuid
from typing import Any

from forge_engine.clock import Clock, SystemClock
from forge_engine.exceptions import (
    DuplicateSessionError,
    InvalidTransitionError,
    SessionNotFoundError,
)
from forge_engine.idempotency import IdempotencyGuard
from forge_engine.models import CommandRecord, Session, SessionStatus
from forge_engine.session_store import SessionStore

logger = logging.getLogger("forge.engine.lifecycle")


def new_session_id() -> str:
    return uuid.uuid4().hex


class SessionLifecycle:
    """
    Creates, resumes and finishes sessions for this process.

    Usage:
        lifecycle = SessionLifecycle(store, guard, clock)
        session = await lifecycle.create({"ticket": "ABC-1"})
        await lifecycle.record_command(session.session_id, "plan", output, 420.0)
        await lifecycle.complete(session.session_id)
        lifecycle.close(session.session_id)
    """

    def __init__(
        self,
        store: SessionStore,
        guard: IdempotencyGuard | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self._clock = clock or SystemClock()
        self.guard = guard or IdempotencyGuard(self._clock)
        self._open: dict[str, Session] = {}

    @staticmethod
    def _lock_key(session_id: str) -> str:
        return f"session:{session_id}"

    async def _write(self, session_id: str, mutate) -> Session:
        async def _apply() -> Session:
            session = self.get(session_id)
            mutate(session)
            session.touch(self._clock.utcnow())
            self.store.save(session)
            return session

        return await self.guard.with_lock(self._lock_key(session_id), _apply, wait=True)

    # ── Open sessions ───────────────────────────────────────────

    def get(self, session_id: str) -> Session:
        """The in-memory session opened by this process."""
        try:
            return self._open[session_id]
        except KeyError:
            raise SessionNotFoundError(
                f"Session {session_id} is not open in this process", session_id=session_id
            ) from None

    def is_open(self, session_id: str) -> bool:
        return session_id in self._open

    async def create(
        self,
        initial_context: dict[str, Any] | None = None,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """
        Start a new active session.

        Raises:
            DuplicateSessionError: The id is already in use
            SessionLockedError: Another process is creating the same id
        """
        session_id = session_id or new_session_id()
        if session_id in self._open or self.store.exists(session_id):
            raise DuplicateSessionError(
                f"Session {session_id} already exists", session_id=session_id
            )

        now = self._clock.utcnow()
        session = Session(
            session_id=session_id,
            status=SessionStatus.CREATED,
            created_at=now,
            updated_at=now,
            context=dict(initial_context or {}),
            encrypted=self.store.settings.encrypt,
            metadata=dict(metadata or {}),
        )
        self.store.acquire_writer(session_id)
        self._open[session_id] = session
        await self._write(session_id, lambda s: self._transition(s, SessionStatus.ACTIVE))
        logger.info("Session created: %s", session_id)
        return session

    async def resume(self, session_id: str) -> Session:
        """
        Open an existing session for writing; a paused session becomes active.

        Raises:
            SessionNotFoundError: No such session
            SessionLockedError: Another process holds the writer lease
            SessionCorruptError: The stored document can't be read
        """
        if session_id in self._open:
            session = self._open[session_id]
        else:
            self.store.acquire_writer(session_id)
            try:
                session = self.store.load(session_id)
            except Exception:
                self.store.release_writer(session_id)
                raise
            self._open[session_id] = session

        if session.status is SessionStatus.PAUSED:
            await self._write(session_id, lambda s: self._transition(s, SessionStatus.ACTIVE))
            logger.info("Session resumed: %s", session_id)
        return session

    async def get_or_create(
        self,
        session_id: str,
        initial_context: dict[str, Any] | None = None,
    ) -> Session:
        if session_id in self._open or self.store.exists(session_id):
            return await self.resume(session_id)
        return await self.create(initial_context, session_id=session_id)

    async def pause(self, session_id: str) -> Session:
        return await self._write(
            session_id, lambda s: self._transition(s, SessionStatus.PAUSED)
        )

    async def complete(self, session_id: str, metadata: dict[str, Any] | None = None) -> Session:
        """Mark completed. A no-op on an already-terminal session."""
        session = self.get(session_id)
        if session.is_terminal:
            return session

        def _complete(s: Session) -> None:
            self._transition(s, SessionStatus.COMPLETED)
            s.metadata["completed_at"] = self._clock.utcnow().isoformat()
            s.metadata.update(metadata or {})

        session = await self._write(session_id, _complete)
        logger.info("Session completed: %s", session_id)
        return session

    async def fail(
        self,
        session_id: str,
        error: str | BaseException,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Mark failed with the error recorded. A no-op on an already-terminal session."""
        session = self.get(session_id)
        if session.is_terminal:
            return session

        def _fail(s: Session) -> None:
            self._transition(s, SessionStatus.FAILED)
            s.metadata["failed_at"] = self._clock.utcnow().isoformat()
            s.metadata["error"] = str(error)
            s.metadata.update(metadata or {})

        session = await self._write(session_id, _fail)
        logger.warning("Session failed: %s (%s)", session_id, error)
        return session

    async def record_command(
        self,
        session_id: str,
        command: str,
        output: Any = None,
        duration_ms: float = 0.0,
        status: str = "succeeded",
        attempts: int = 1,
        error: str | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> Session:
        """Append a history entry; a successful command also replaces its context slot."""
        entry = CommandRecord(
            command=command,
            timestamp=self._clock.utcnow(),
            duration_ms=duration_ms,
            status=status,
            attempts=attempts,
            error=error,
            metrics=metrics,
        )

        def _record(s: Session) -> None:
            if s.status is not SessionStatus.ACTIVE:
                raise InvalidTransitionError(
                    f"Cannot record {command!r} on {s.status.value} session",
                    session_id=s.session_id,
                )
            s.record(entry, output, store_output=status == "succeeded")

        return await self._write(session_id, _record)

    def flush(self, session_id: str) -> bool:
        return self.store.flush(session_id, self.get(session_id))

    def close(self, session_id: str) -> None:
        """Flush and hand the session back; releases the writer lease."""
        session = self._open.pop(session_id, None)
        self.store.close(session_id, session)

    @staticmethod
    def _transition(session: Session, target: SessionStatus) -> None:
        if not session.can_transition(target):
            raise InvalidTransitionError(
                f"Session {session.session_id}: {session.status.value} → {target.value} not allowed",
                session_id=session.session_id,
            )
        session.status = target
