"""
Leases — expiring ownership records.

Two flavours share the same ``{holder, acquired_at, expires_at}`` shape:

- ``LeaseArena``: in-process table used by the idempotency guard.
  Every access checks expiry, so a holder that never releases is
  reclaimed once its lease runs out. Leases are never renewed implicitly.
- ``FileLease``: cross-process advisory lock for a session writer,
  a ``<id>.lock`` file created with O_CREAT|O_EXCL. An expired lock file
  left by a crashed process is reclaimed by the next acquirer.
"""
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path

from forge_engine.clock import Clock, SystemClock

logger = logging.getLogger("forge.engine.leases")


def new_holder_id(prefix: str = "holder") -> str:
    return f"{prefix}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class Lease:
    holder: str
    acquired_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class LeaseArena:
    """Keyed table of leases on a Clock's monotonic time (seconds)."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._leases: dict[str, Lease] = {}

    def try_acquire(self, key: str, holder: str, duration: float) -> Lease | None:
        """Atomic test-and-set. Returns the new lease, or None if held."""
        now = self._clock.monotonic()
        current = self._leases.get(key)
        if current is not None and not current.expired(now):
            return None
        if current is not None:
            logger.info("Reclaiming expired lease %s from %s", key, current.holder)
        lease = Lease(holder=holder, acquired_at=now, expires_at=now + duration)
        self._leases[key] = lease
        return lease

    def get(self, key: str) -> Lease | None:
        """The live lease for ``key``; expired records are dropped on sight."""
        lease = self._leases.get(key)
        if lease is None:
            return None
        if lease.expired(self._clock.monotonic()):
            del self._leases[key]
            return None
        return lease

    def release(self, key: str, holder: str) -> bool:
        """Release only if ``holder`` still owns the lease."""
        lease = self._leases.get(key)
        if lease is None or lease.holder != holder:
            return False
        del self._leases[key]
        return True

    def sweep_expired(self) -> int:
        now = self._clock.monotonic()
        expired = [k for k, lease in self._leases.items() if lease.expired(now)]
        for key in expired:
            del self._leases[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._leases)


class FileLease:
    """
    Advisory writer lock backed by a lock file.

    Usage:
        lease = FileLease(sessions_dir / "abc.lock", holder, 300.0, clock)
        if not lease.acquire():
            raise SessionLockedError("abc", lease.current_holder())
        ...
        lease.release()

    Expiry is wall time (epoch seconds) so other processes can judge it.
    """

    def __init__(
        self,
        path: str | Path,
        holder: str,
        duration: float,
        clock: Clock | None = None,
    ):
        self.path = Path(path)
        self.holder = holder
        self.duration = duration
        self._clock = clock or SystemClock()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _now(self) -> float:
        return self._clock.utcnow().timestamp()

    def read(self) -> Lease | None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return Lease(
                holder=str(data["holder"]),
                acquired_at=float(data["acquired_at"]),
                expires_at=float(data["expires_at"]),
            )
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError):
            # Half-written or foreign file: treat as expired
            return Lease(holder="unknown", acquired_at=0.0, expires_at=0.0)

    def current_holder(self) -> str | None:
        lease = self.read()
        if lease is None or lease.expired(self._now()):
            return None
        return lease.holder

    def acquire(self) -> bool:
        """Create the lock file, reclaiming it if the previous lease expired."""
        if self._held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            if self._create():
                # A racing reclaimer may have unlinked our fresh file and made its own
                confirmed = self.read()
                if confirmed is None or confirmed.holder != self.holder:
                    logger.warning("Lost race for writer lock %s", self.path.name)
                    return False
                self._held = True
                return True
            existing = self.read()
            if existing is not None and existing.holder == self.holder:
                # Our own lease from an earlier open of this session
                self._held = True
                self.renew()
                return True
            if existing is not None and not existing.expired(self._now()):
                return False
            logger.warning(
                "Reclaiming expired writer lock %s (holder %s)",
                self.path.name,
                existing.holder if existing else "?",
            )
            self.path.unlink(missing_ok=True)
        return False

    def _create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(asdict(self._lease()), f)
        return True

    def _lease(self) -> Lease:
        now = self._now()
        return Lease(holder=self.holder, acquired_at=now, expires_at=now + self.duration)

    def still_held(self) -> bool:
        """
        Re-check ownership against the lock file.

        A lease that lapsed but was never reclaimed still names us and
        counts as held; once another holder is on file it is lost for good.
        """
        if not self._held:
            return False
        existing = self.read()
        if existing is None or existing.holder != self.holder:
            self._held = False
            return False
        return True

    def remaining(self) -> float:
        existing = self.read()
        return existing.remaining(self._now()) if existing is not None else 0.0

    def renew(self) -> None:
        """Explicitly extend the lease. Never happens implicitly."""
        if not self._held:
            raise RuntimeError(f"cannot renew unheld lease {self.path.name}")
        tmp = self.path.with_suffix(".lock.tmp")
        tmp.write_text(json.dumps(asdict(self._lease())), encoding="utf-8")
        os.replace(tmp, self.path)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        existing = self.read()
        if existing is not None and existing.holder == self.holder:
            self.path.unlink(missing_ok=True)
