"""
Retention — out-of-band housekeeping of stored sessions.

One sweep, in order:
1. purge terminal/archived sessions last modified before ``max_age_days``
2. archive terminal sessions last modified before ``archive_after_days``
3. while more than ``max_count`` sessions remain, purge the oldest
   terminal/archived ones

Active and paused sessions, and sessions whose writer lease is held by
anyone, are never touched. Corrupt documents are reported and left alone.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from forge_engine.clock import Clock, SystemClock
from forge_engine.config import RetentionSettings
from forge_engine.exceptions import SessionCorruptError, SessionLockedError, SessionNotFoundError
from forge_engine.models import TERMINAL_STATUSES, Session, SessionStatus
from forge_engine.session_store import DOCUMENT_SUFFIX, SessionStore

logger = logging.getLogger("forge.engine.retention")

_RETIRED = TERMINAL_STATUSES | {SessionStatus.ARCHIVED}


@dataclass
class SweepReport:
    archived: list[str] = field(default_factory=list)
    purged: list[str] = field(default_factory=list)
    skipped_corrupt: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.archived or self.purged)

    def to_dict(self) -> dict[str, Any]:
        return {
            "archived": list(self.archived),
            "purged": list(self.purged),
            "skipped_corrupt": list(self.skipped_corrupt),
            "errors": list(self.errors),
        }


class RetentionManager:
    """
    Archive and purge sessions according to RetentionSettings.

    Usage:
        retention = RetentionManager(store, config.retention, clock)
        report = retention.sweep()

        stop = asyncio.Event()
        task = asyncio.create_task(retention.run_forever(stop))
    """

    def __init__(
        self,
        store: SessionStore,
        settings: RetentionSettings | None = None,
        clock: Clock | None = None,
        dry_run: bool = False,
    ):
        self.store = store
        self.settings = settings or RetentionSettings()
        self._clock = clock or SystemClock()
        self.dry_run = dry_run

    def _candidates(self, report: SweepReport) -> list[Session]:
        sessions: list[Session] = []
        if not self.store.root.exists():
            return sessions
        for path in sorted(self.store.root.glob(f"*{DOCUMENT_SUFFIX}")):
            session_id = path.name[: -len(DOCUMENT_SUFFIX)]
            try:
                sessions.append(self.store.load(session_id))
            except SessionCorruptError:
                report.skipped_corrupt.append(session_id)
            except SessionNotFoundError:
                continue
        return sessions

    def _untouchable(self, session: Session) -> bool:
        return (
            session.status not in _RETIRED
            or self.store.holds_writer(session.session_id)
            or self.store.is_locked_by_other(session.session_id)
        )

    def sweep(self) -> SweepReport:
        report = SweepReport()
        now = self._clock.utcnow()
        purge_before = now - timedelta(days=self.settings.max_age_days)
        archive_before = now - timedelta(days=self.settings.archive_after_days)

        remaining: list[Session] = []
        for session in self._candidates(report):
            if self._untouchable(session):
                remaining.append(session)
            elif session.updated_at < purge_before:
                self._purge(session, report, "age")
            elif session.status in TERMINAL_STATUSES and session.updated_at < archive_before:
                self._archive(session, report)
                remaining.append(session)
            else:
                remaining.append(session)

        excess = len(remaining) - self.settings.max_count
        if excess > 0:
            oldest_first = sorted(
                (s for s in remaining if not self._untouchable(s)),
                key=lambda s: s.updated_at,
            )
            for session in oldest_first[:excess]:
                self._purge(session, report, "count")

        if report.changed or report.errors:
            logger.info(
                "Retention sweep: %d archived, %d purged, %d corrupt, %d errors",
                len(report.archived),
                len(report.purged),
                len(report.skipped_corrupt),
                len(report.errors),
            )
        return report

    def _archive(self, session: Session, report: SweepReport) -> None:
        session_id = session.session_id
        if self.dry_run:
            report.archived.append(session_id)
            return
        try:
            self.store.acquire_writer(session_id)
            try:
                session.status = SessionStatus.ARCHIVED
                session.metadata["archived_at"] = self._clock.utcnow().isoformat()
                self.store.flush(session_id, session)
            finally:
                self.store.release_writer(session_id)
        except (OSError, SessionLockedError) as e:
            report.errors.append(f"Failed to archive session {session_id}: {e}")
            logger.warning("Failed to archive session %s: %s", session_id, e)
            return
        report.archived.append(session_id)
        logger.debug("Archived session %s", session_id)

    def _purge(self, session: Session, report: SweepReport, reason: str) -> None:
        session_id = session.session_id
        if not self.dry_run:
            try:
                self.store.delete(session_id)
            except (OSError, SessionLockedError) as e:
                report.errors.append(f"Failed to purge session {session_id}: {e}")
                logger.warning("Failed to purge session %s: %s", session_id, e)
                return
        report.purged.append(session_id)
        logger.debug("Purged session %s (%s-based)", session_id, reason)

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Sweep every ``cleanup_interval_hours`` until ``stop`` is set."""
        if not self.settings.enabled:
            logger.info("Session retention disabled")
            return
        interval = self.settings.cleanup_interval_hours * 3600.0
        while not stop.is_set():
            try:
                self.sweep()
            except OSError:
                logger.exception("Retention sweep failed")
            if await self._clock.wait_event(stop, interval):
                break
