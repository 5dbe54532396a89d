"""Session document models (persisted as JSON)."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

SESSION_FORMAT_VERSION = 1


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

# Caller-triggered transitions. ARCHIVED is reached only by the retention sweep.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.FAILED}
    ),
    SessionStatus.PAUSED: frozenset({SessionStatus.ACTIVE}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.ARCHIVED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandRecord(BaseModel):
    """One entry of a session's command history."""

    command: str
    timestamp: datetime
    duration_ms: float = 0.0
    status: str = "succeeded"
    attempts: int = 1
    error: str | None = None
    metrics: dict[str, Any] | None = None


class Session(BaseModel):
    """Durable record of one orchestrated unit of work."""

    model_config = {"validate_assignment": True}

    session_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    context: dict[str, Any] = Field(default_factory=dict)
    history: list[CommandRecord] = Field(default_factory=list)
    encrypted: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = SESSION_FORMAT_VERSION

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, v: str) -> str:
        if not v or "/" in v or "\\" in v or v.startswith("."):
            raise ValueError(f"invalid session id: {v!r}")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: SessionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def touch(self, now: datetime | None = None) -> None:
        self.updated_at = now or utcnow()

    def record(self, entry: CommandRecord, output: Any = None, store_output: bool = True) -> None:
        """Append a history entry and replace the command's own context slot."""
        self.history.append(entry)
        if store_output:
            self.context[entry.command] = output
        self.touch(entry.timestamp)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "Session":
        return cls.model_validate(data)

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "commands": len(self.history),
        }
