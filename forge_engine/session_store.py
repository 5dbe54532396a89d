"""
Session Store — durable, debounced, optionally encrypted session documents.

One JSON document per session at ``<sessions_dir>/<session_id>.json``.

Writes:
- ``save()`` is fire-and-forget. Saves to the same id are coalesced behind
  a timer on the injected Clock: base interval (1s), or the extended
  interval (5s) when the previous save for that id was within the
  rapid-command window (10s). The timer never lands later than
  ``max_staleness`` after the first pending save.
- ``flush()`` writes immediately, cancelling any pending timer.
- Every write is atomic: temp file in the same directory, then os.replace.

Single writer: a process must hold the ``<session_id>.lock`` file lease
before writing a session. Each write re-checks the lock file and renews
the lease once half of it is spent; a writer whose lease was reclaimed by
another process gets ``SessionLockedError`` instead of overwriting.
``close()`` flushes and releases it; the lease expires on its own if the
process dies.
"""
import atexit
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from forge_engine.clock import Clock, SystemClock, TimerHandle
from forge_engine.config import DebounceSettings, SessionSettings
from forge_engine.encryption import SessionCipher, is_envelope
from forge_engine.exceptions import (
    SessionCorruptError,
    SessionLockedError,
    SessionNotFoundError,
)
from forge_engine.leases import FileLease, new_holder_id
from forge_engine.models import Session

logger = logging.getLogger("forge.engine.session_store")

DOCUMENT_SUFFIX = ".json"
LOCK_SUFFIX = ".lock"


@dataclass
class _PendingWrite:
    session: Session
    timer: TimerHandle
    first_requested_ms: float
    due_ms: float


class SessionStore:
    """
    File-backed session persistence.

    Usage:
        store = SessionStore(config.sessions, config.debounce, clock)
        store.acquire_writer("abc")
        store.save(session)        # debounced
        store.flush("abc")         # durable now
        store.close("abc")         # flush + release writer lease
    """

    def __init__(
        self,
        settings: SessionSettings | None = None,
        debounce: DebounceSettings | None = None,
        clock: Clock | None = None,
        metrics: Any | None = None,
        holder_id: str | None = None,
    ):
        self.settings = settings or SessionSettings()
        self.debounce = debounce or DebounceSettings()
        self._clock = clock or SystemClock()
        self._metrics = metrics
        self.holder_id = holder_id or new_holder_id("store")
        self.root = Path(self.settings.sessions_dir)
        self._cipher = SessionCipher(self.settings.secret) if self.settings.secret else None
        self._pending: dict[str, _PendingWrite] = {}
        self._last_save_ms: dict[str, float] = {}
        self._writers: dict[str, FileLease] = {}
        self._exit_hook_installed = False

    # ── Paths ───────────────────────────────────────────────────

    def path_for(self, session_id: str) -> Path:
        return self.root / f"{session_id}{DOCUMENT_SUFFIX}"

    def lock_path_for(self, session_id: str) -> Path:
        return self.root / f"{session_id}{LOCK_SUFFIX}"

    # ── Single-writer lease ─────────────────────────────────────

    def acquire_writer(self, session_id: str) -> None:
        """
        Take the writer lease for a session, or re-check one already taken.

        Raises:
            SessionLockedError: Another process holds an unexpired lease, or
                reclaimed ours after it lapsed
        """
        lease = self._writers.get(session_id)
        if lease is not None:
            self._confirm_writer(session_id, lease)
            return
        lease = FileLease(
            self.lock_path_for(session_id),
            holder=self.holder_id,
            duration=self.settings.writer_lease_ms / 1000.0,
            clock=self._clock,
        )
        if not lease.acquire():
            raise SessionLockedError(session_id, lease.current_holder())
        self._writers[session_id] = lease
        logger.debug("Writer lease acquired for %s", session_id)

    def renew_writer(self, session_id: str) -> None:
        """
        Extend the writer lease now.

        Raises:
            SessionLockedError: The lease was lost to another process
        """
        lease = self._writers.get(session_id)
        if lease is None:
            self.acquire_writer(session_id)
            return
        self._confirm_writer(session_id, lease)
        lease.renew()

    def _confirm_writer(self, session_id: str, lease: FileLease) -> None:
        if not lease.still_held():
            self._writers.pop(session_id, None)
            holder = lease.current_holder()
            logger.error("Writer lease for %s lost to %s", session_id, holder or "another process")
            raise SessionLockedError(session_id, holder)
        if lease.remaining() < lease.duration / 2:
            lease.renew()

    def holds_writer(self, session_id: str) -> bool:
        return session_id in self._writers

    def is_locked_by_other(self, session_id: str) -> bool:
        lease = self._writers.get(session_id)
        if lease is not None and lease.still_held():
            return False
        probe = FileLease(self.lock_path_for(session_id), self.holder_id, 0, self._clock)
        return probe.current_holder() is not None

    def release_writer(self, session_id: str) -> None:
        lease = self._writers.pop(session_id, None)
        if lease is not None:
            lease.release()
            logger.debug("Writer lease released for %s", session_id)

    # ── Read ────────────────────────────────────────────────────

    def exists(self, session_id: str) -> bool:
        return session_id in self._pending or self.path_for(session_id).exists()

    def load(self, session_id: str) -> Session:
        """
        Load a session, preferring a not-yet-written pending copy.

        Raises:
            SessionNotFoundError: No document for the id
            SessionCorruptError: Document failed to decrypt, parse or validate
        """
        pending = self._pending.get(session_id)
        if pending is not None:
            return pending.session.model_copy(deep=True)

        path = self.path_for(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)

        return self._decode(session_id, raw)

    def _decode(self, session_id: str, raw: str) -> Session:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Session %s is not valid JSON: %s", session_id, e)
            raise SessionCorruptError(
                f"Session {session_id} is not valid JSON", session_id=session_id
            ) from e

        if is_envelope(data):
            if self._cipher is None:
                logger.error("Session %s is encrypted but no secret is configured", session_id)
                raise SessionCorruptError(
                    f"Session {session_id} is encrypted and no secret is configured",
                    session_id=session_id,
                )
            try:
                data = self._cipher.decrypt(data, session_id)
            except SessionCorruptError:
                logger.error("Session %s failed to decrypt", session_id)
                raise

        try:
            session = Session.from_document(data)
        except ValidationError as e:
            logger.error("Session %s failed validation: %s", session_id, e)
            raise SessionCorruptError(
                f"Session {session_id} failed validation", session_id=session_id
            ) from e

        if session.session_id != session_id:
            raise SessionCorruptError(
                f"Document for {session_id} carries id {session.session_id}",
                session_id=session_id,
            )
        return session

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        Summaries of every stored session, most recently modified first.

        Corrupt documents are listed with ``status: "corrupt"`` after the rest.
        """
        summaries: list[dict[str, Any]] = []
        corrupt: list[dict[str, Any]] = []
        if self.root.exists():
            for path in sorted(self.root.glob(f"*{DOCUMENT_SUFFIX}")):
                session_id = path.name[: -len(DOCUMENT_SUFFIX)]
                try:
                    summaries.append(self.load(session_id).summary())
                except SessionCorruptError as e:
                    corrupt.append({"session_id": session_id, "status": "corrupt", "error": str(e)})
                except SessionNotFoundError:
                    continue  # removed while listing
        for session_id, pending in self._pending.items():
            if not self.path_for(session_id).exists():
                summaries.append(pending.session.summary())
        summaries.sort(key=lambda s: s["updated_at"], reverse=True)
        return summaries + corrupt

    # ── Write ───────────────────────────────────────────────────

    def save(self, session: Session) -> None:
        """Schedule a debounced write of ``session``. Returns immediately."""
        session_id = session.session_id
        self.acquire_writer(session_id)

        now = self._clock.monotonic_ms()
        last = self._last_save_ms.get(session_id)
        rapid = last is not None and now - last < self.debounce.rapid_window_ms
        interval = self.debounce.extended_ms if rapid else self.debounce.base_ms
        self._last_save_ms[session_id] = now

        pending = self._pending.get(session_id)
        first = pending.first_requested_ms if pending else now
        due = min(now + interval, first + self.debounce.max_staleness_ms)
        if pending is not None:
            pending.timer.cancel()

        timer = self._clock.call_later(
            (due - now) / 1000.0, self._write_pending, session_id
        )
        self._pending[session_id] = _PendingWrite(
            session=session.model_copy(deep=True),
            timer=timer,
            first_requested_ms=first,
            due_ms=due,
        )
        if rapid:
            logger.debug(
                "Extended debounce for rapid saves of %s (%dms)", session_id, interval
            )

    def flush(self, session_id: str, session: Session | None = None) -> bool:
        """
        Write immediately, bypassing debounce.

        Writes ``session`` if given, else the pending copy. Returns True if
        anything was written.
        """
        pending = self._pending.pop(session_id, None)
        if pending is not None:
            pending.timer.cancel()
        target = session if session is not None else (pending.session if pending else None)
        if target is None:
            return False
        self._write(target, mode="flush")
        return True

    def flush_all(self) -> int:
        """Flush every pending write. Used on shutdown and at interpreter exit."""
        written = 0
        for session_id in list(self._pending):
            try:
                if self.flush(session_id):
                    written += 1
            except (OSError, SessionLockedError):
                logger.exception("Failed to flush session %s", session_id)
        if written:
            logger.info("Flushed %d pending session write(s)", written)
        return written

    def close(self, session_id: str, session: Session | None = None) -> None:
        """Flush the session and release its writer lease."""
        try:
            self.flush(session_id, session)
        finally:
            self.release_writer(session_id)
            self._last_save_ms.pop(session_id, None)

    def close_all(self) -> None:
        self.flush_all()
        for session_id in list(self._writers):
            self.release_writer(session_id)
        self._last_save_ms.clear()

    def pending_ids(self) -> list[str]:
        return sorted(self._pending)

    def delete(self, session_id: str) -> bool:
        """
        Remove a session document and its lock.

        Raises:
            SessionLockedError: Another process holds the writer lease
        """
        if self.is_locked_by_other(session_id):
            lease = FileLease(self.lock_path_for(session_id), self.holder_id, 0, self._clock)
            raise SessionLockedError(session_id, lease.current_holder())
        pending = self._pending.pop(session_id, None)
        if pending is not None:
            pending.timer.cancel()
        self.release_writer(session_id)
        self._last_save_ms.pop(session_id, None)

        path = self.path_for(session_id)
        existed = path.exists()
        path.unlink(missing_ok=True)
        self.lock_path_for(session_id).unlink(missing_ok=True)
        if existed:
            logger.info("Deleted session %s", session_id)
        return existed

    def _write_pending(self, session_id: str) -> None:
        pending = self._pending.pop(session_id, None)
        if pending is None:
            return
        try:
            self._write(pending.session, mode="debounced")
        except SessionLockedError:
            # Another process owns the session now; this copy must not land
            logger.error("Dropped debounced write of session %s: writer lease lost", session_id)
        except OSError:
            # Keep it pending so the next flush retries
            logger.exception("Debounced write of session %s failed", session_id)
            self._pending[session_id] = pending

    def _write(self, session: Session, mode: str) -> None:
        session_id = session.session_id
        self.acquire_writer(session_id)
        document: dict[str, Any] = session.to_document()
        if self.settings.encrypt and self._cipher is not None:
            document = self._cipher.encrypt(document, session_id)

        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session_id)
        tmp = path.with_name(f".{path.name}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2 if not self.settings.encrypt else None)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

        if self._metrics is not None:
            self._metrics.session_writes.labels(mode=mode).inc()
        logger.debug(
            "Session %s persisted (%s, %d commands, status=%s)",
            session_id,
            mode,
            len(session.history),
            session.status.value,
        )

    # ── Process exit ────────────────────────────────────────────

    def install_exit_hook(self) -> None:
        """Flush pending writes synchronously when the interpreter exits."""
        if not self._exit_hook_installed:
            atexit.register(self.close_all)
            self._exit_hook_installed = True

    def remove_exit_hook(self) -> None:
        if self._exit_hook_installed:
            atexit.unregister(self.close_all)
            self._exit_hook_installed = False
