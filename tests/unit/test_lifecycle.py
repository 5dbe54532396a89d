"""
Unit tests for forge_engine.lifecycle.SessionLifecycle.

Tests:
- create / resume / get_or_create
- Allowed and rejected transitions
- Command history and context slots
- complete / fail metadata
- close flushes and releases the writer lease
"""
import json

import pytest

from forge_engine.config import SessionSettings
from forge_engine.exceptions import (
    DuplicateSessionError,
    InvalidTransitionError,
    SessionLockedError,
    SessionNotFoundError,
)
from forge_engine.idempotency import IdempotencyGuard
from forge_engine.lifecycle import SessionLifecycle, new_session_id
from forge_engine.models import SessionStatus
from forge_engine.session_store import SessionStore


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(sessions_dir, clock) -> SessionStore:
    return SessionStore(SessionSettings(sessions_dir=sessions_dir), clock=clock, holder_id="proc-a")


@pytest.fixture
def lifecycle(store, clock) -> SessionLifecycle:
    return SessionLifecycle(store, IdempotencyGuard(clock), clock)


def _read(sessions_dir, session_id: str) -> dict:
    return json.loads((sessions_dir / f"{session_id}.json").read_text())


# ============================================================================
# Create / resume
# ============================================================================

class TestCreate:

    async def test_create_is_active(self, lifecycle):
        session = await lifecycle.create({"ticket": "ABC-1"}, session_id="s1")
        assert session.status is SessionStatus.ACTIVE
        assert session.context == {"ticket": "ABC-1"}
        assert lifecycle.is_open("s1")
        assert lifecycle.store.holds_writer("s1")

    async def test_generated_ids(self, lifecycle):
        session = await lifecycle.create()
        assert len(session.session_id) == 32
        assert new_session_id() != new_session_id()

    async def test_create_is_persisted_after_debounce(self, lifecycle, sessions_dir, clock):
        await lifecycle.create(session_id="s1")
        assert not (sessions_dir / "s1.json").exists()
        clock.advance(1.0)
        assert _read(sessions_dir, "s1")["status"] == "active"

    async def test_duplicate_id(self, lifecycle):
        await lifecycle.create(session_id="s1")
        with pytest.raises(DuplicateSessionError):
            await lifecycle.create(session_id="s1")

    async def test_duplicate_of_stored_session(self, lifecycle):
        await lifecycle.create(session_id="s1")
        lifecycle.close("s1")
        with pytest.raises(DuplicateSessionError):
            await lifecycle.create(session_id="s1")

    async def test_invalid_id_rejected(self, lifecycle):
        with pytest.raises(ValueError):
            await lifecycle.create(session_id="../escape")


class TestResume:

    async def test_resume_stored_session(self, lifecycle, store, clock):
        await lifecycle.create({"a": 1}, session_id="s1")
        lifecycle.close("s1")

        other = SessionLifecycle(store, IdempotencyGuard(clock), clock)
        session = await other.resume("s1")
        assert session.context == {"a": 1}
        assert other.is_open("s1")

    async def test_resume_missing(self, lifecycle, store):
        with pytest.raises(SessionNotFoundError):
            await lifecycle.resume("ghost")
        assert not store.holds_writer("ghost")

    async def test_resume_locked_by_other_process(self, lifecycle, sessions_dir, clock):
        await lifecycle.create(session_id="s1")
        lifecycle.flush("s1")

        other_store = SessionStore(
            SessionSettings(sessions_dir=sessions_dir), clock=clock, holder_id="proc-b"
        )
        other = SessionLifecycle(other_store, IdempotencyGuard(clock), clock)
        with pytest.raises(SessionLockedError):
            await other.resume("s1")

    async def test_resume_paused_reactivates(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.pause("s1")
        session = await lifecycle.resume("s1")
        assert session.status is SessionStatus.ACTIVE

    async def test_get_or_create(self, lifecycle):
        created = await lifecycle.get_or_create("s1", {"x": 1})
        again = await lifecycle.get_or_create("s1", {"x": 2})
        assert created is again
        assert again.context == {"x": 1}

    def test_get_unopened(self, lifecycle):
        with pytest.raises(SessionNotFoundError):
            lifecycle.get("nope")


# ============================================================================
# Transitions
# ============================================================================

class TestTransitions:

    async def test_complete_records_metadata(self, lifecycle, clock):
        await lifecycle.create(session_id="s1")
        clock.advance(5.0)
        session = await lifecycle.complete("s1", {"pipeline": "review"})
        assert session.status is SessionStatus.COMPLETED
        assert session.metadata["pipeline"] == "review"
        assert session.metadata["completed_at"].startswith("2025-01-01T00:00:05")

    async def test_fail_records_error(self, lifecycle):
        await lifecycle.create(session_id="s1")
        session = await lifecycle.fail("s1", RuntimeError("upstream died"))
        assert session.status is SessionStatus.FAILED
        assert session.metadata["error"] == "upstream died"
        assert "failed_at" in session.metadata

    async def test_terminal_is_sticky(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.complete("s1")
        session = await lifecycle.fail("s1", "late error")
        assert session.status is SessionStatus.COMPLETED
        assert "error" not in session.metadata

    async def test_pause_completed_rejected(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.complete("s1")
        with pytest.raises(InvalidTransitionError):
            await lifecycle.pause("s1")

    async def test_pause_twice_rejected(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.pause("s1")
        with pytest.raises(InvalidTransitionError):
            await lifecycle.pause("s1")

    async def test_paused_can_complete_only_after_resume(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.pause("s1")
        with pytest.raises(InvalidTransitionError):
            await lifecycle.complete("s1")
        await lifecycle.resume("s1")
        assert (await lifecycle.complete("s1")).status is SessionStatus.COMPLETED

    async def test_updated_at_advances(self, lifecycle, clock):
        session = await lifecycle.create(session_id="s1")
        created = session.updated_at
        clock.advance(3.0)
        await lifecycle.pause("s1")
        assert (session.updated_at - created).total_seconds() == 3.0


# ============================================================================
# Commands
# ============================================================================

class TestRecordCommand:

    async def test_history_and_context(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.record_command("s1", "plan", {"steps": 2}, duration_ms=120.0)
        session = await lifecycle.record_command(
            "s1", "draft", {"text": "v1"}, duration_ms=300.0, attempts=2,
            metrics={"tokens": 42},
        )

        assert [h.command for h in session.history] == ["plan", "draft"]
        assert session.history[1].attempts == 2
        assert session.history[1].metrics == {"tokens": 42}
        assert session.context == {"plan": {"steps": 2}, "draft": {"text": "v1"}}

    async def test_context_slot_is_replaced(self, lifecycle):
        await lifecycle.create({"plan": "old"}, session_id="s1")
        session = await lifecycle.record_command("s1", "plan", "new")
        assert session.context == {"plan": "new"}

    async def test_failed_command_keeps_context(self, lifecycle):
        await lifecycle.create({"draft": "kept"}, session_id="s1")
        session = await lifecycle.record_command(
            "s1", "draft", None, status="failed", attempts=3, error="timeout"
        )
        assert session.context == {"draft": "kept"}
        assert session.history[-1].status == "failed"
        assert session.history[-1].error == "timeout"

    async def test_requires_active(self, lifecycle):
        await lifecycle.create(session_id="s1")
        await lifecycle.pause("s1")
        with pytest.raises(InvalidTransitionError):
            await lifecycle.record_command("s1", "plan", "x")
        assert lifecycle.get("s1").history == []

    async def test_rapid_commands_one_write(self, lifecycle, sessions_dir, clock):
        await lifecycle.create(session_id="s1")
        for i in range(5):
            await lifecycle.record_command("s1", f"step{i}", i)
        clock.advance(5.0)
        doc = _read(sessions_dir, "s1")
        assert [h["command"] for h in doc["history"]] == [f"step{i}" for i in range(5)]


# ============================================================================
# Close
# ============================================================================

class TestClose:

    async def test_close_flushes_and_releases(self, lifecycle, sessions_dir):
        await lifecycle.create(session_id="s1")
        await lifecycle.record_command("s1", "plan", "ok")
        lifecycle.close("s1")

        assert not lifecycle.is_open("s1")
        assert not (sessions_dir / "s1.lock").exists()
        assert _read(sessions_dir, "s1")["context"] == {"plan": "ok"}

    async def test_flush(self, lifecycle, sessions_dir):
        await lifecycle.create(session_id="s1")
        assert lifecycle.flush("s1") is True
        assert (sessions_dir / "s1.json").exists()
