"""
Idempotency Guard — short-lived mutual exclusion keyed by fingerprint.

A fingerprint is the deterministic identity of one side-effecting
invocation (pipeline id + session id + stage name + input payload).
``with_lock`` holds a lease on it for the duration of ``fn``:

- held and unexpired → deny with OperationInProgressError, or with
  ``wait=True`` wait up to the remaining lease for a release, then deny
- the lease is always released when ``fn`` finishes, success or failure
- a crashed holder's lease is reclaimed once it expires

The guarded operation is never executed twice concurrently.
"""
import asyncio
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, TypeVar

from forge_engine.clock import Clock, SystemClock
from forge_engine.exceptions import OperationInProgressError
from forge_engine.leases import LeaseArena, new_holder_id

logger = logging.getLogger("forge.engine.idempotency")

T = TypeVar("T")

FINGERPRINT_LENGTH = 32


def _canonical(value: Any) -> Any:
    """Recursively sort mapping keys so equal payloads serialize identically."""
    if isinstance(value, dict):
        return {str(k): _canonical(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def compute_fingerprint(
    pipeline_id: str,
    session_id: str,
    stage_name: str,
    payload: Any = None,
) -> str:
    """sha256 over the canonical JSON of the invocation, truncated to 32 hex chars."""
    document = {
        "pipeline": pipeline_id,
        "session": session_id,
        "stage": stage_name,
        "payload": _canonical(payload),
    }
    raw = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


class IdempotencyGuard:
    """
    Lease-based lock table for fingerprints.

    Usage:
        guard = IdempotencyGuard(clock, lease_ms=2000)
        result = await guard.with_lock(fp, lambda: do_side_effect())

        # lifecycle writes wait for the current holder instead:
        await guard.with_lock(key, write, wait=True)
    """

    def __init__(self, clock: Clock | None = None, lease_ms: int = 2000):
        self._clock = clock or SystemClock()
        self.lease_ms = lease_ms
        self._arena = LeaseArena(self._clock)
        self._released: dict[str, asyncio.Event] = {}

    def holder_of(self, fingerprint: str) -> str | None:
        lease = self._arena.get(fingerprint)
        return lease.holder if lease else None

    def is_held(self, fingerprint: str) -> bool:
        return self._arena.get(fingerprint) is not None

    def sweep_expired(self) -> int:
        """Drop expired leases; returns how many were reclaimed."""
        count = self._arena.sweep_expired()
        for key in [k for k in self._released if self._arena.get(k) is None]:
            self._released.pop(key).set()
        return count

    async def with_lock(
        self,
        fingerprint: str,
        fn: Callable[[], Awaitable[T]],
        wait: bool = False,
        lease_ms: int | None = None,
        holder: str | None = None,
    ) -> T:
        """
        Run ``fn`` while holding the lease for ``fingerprint``.

        Raises:
            OperationInProgressError: Lease held by someone else (after
                waiting out the remaining lease when ``wait`` is set)
        """
        holder = holder or new_holder_id("op")
        duration = (lease_ms or self.lease_ms) / 1000.0

        await self._acquire(fingerprint, holder, duration, wait)
        try:
            return await fn()
        finally:
            self._release(fingerprint, holder)

    async def _acquire(self, fingerprint: str, holder: str, duration: float, wait: bool) -> None:
        if self._try_acquire(fingerprint, holder, duration):
            return

        current = self._arena.get(fingerprint)
        if not wait or current is None:
            raise OperationInProgressError(fingerprint, current.holder if current else None)

        # Wait no longer than the lease we found
        deadline = self._clock.monotonic() + current.remaining(self._clock.monotonic())
        while True:
            remaining = deadline - self._clock.monotonic()
            event = self._released.get(fingerprint)
            if event is None:
                if self._try_acquire(fingerprint, holder, duration):
                    return
                event = self._released.get(fingerprint)
            released = event is not None and await self._clock.wait_event(event, remaining)
            if released and self._try_acquire(fingerprint, holder, duration):
                return
            if not released or self._clock.monotonic() >= deadline:
                # The lease we waited out has lapsed and may be reclaimed now
                if self._try_acquire(fingerprint, holder, duration):
                    return
                current = self._arena.get(fingerprint)
                logger.warning(
                    "Operation %s still in progress after waiting %.0fms",
                    fingerprint,
                    max(0.0, remaining) * 1000,
                )
                raise OperationInProgressError(
                    fingerprint, current.holder if current else None
                )

    def _try_acquire(self, fingerprint: str, holder: str, duration: float) -> bool:
        if self._arena.try_acquire(fingerprint, holder, duration) is None:
            return False
        stale = self._released.get(fingerprint)
        if stale is not None:
            # Reclaimed from an expired holder; wake anyone parked on it
            stale.set()
        self._released[fingerprint] = asyncio.Event()
        return True

    def _release(self, fingerprint: str, holder: str) -> None:
        if not self._arena.release(fingerprint, holder):
            logger.debug("Lease %s no longer held by %s at release", fingerprint, holder)
            return
        event = self._released.pop(fingerprint, None)
        if event is not None:
            event.set()
