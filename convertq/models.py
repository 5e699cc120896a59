import sqlite3
from dataclasses import dataclass, asdict
from typing import Optional

# Job States
PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

STATES = (PENDING, RUNNING, SUCCEEDED, FAILED)
ACTIVE_STATES = (PENDING, RUNNING)
TERMINAL_STATES = (SUCCEEDED, FAILED)

# Failure kinds stored in jobs.error_kind
KIND_CONVERSION = "conversion"
KIND_TIMEOUT = "timeout"
KIND_CANCELLED = "cancelled"
KIND_INVALID_INPUT = "invalid_input"
KIND_LEASE_EXPIRED = "lease_expired"


@dataclass
class JobRecord:
    id: str
    fingerprint: str
    source_ref: str
    quality: str
    state: str = PENDING
    attempts: int = 0
    max_attempts: int = 3
    created_at: str = ""
    updated_at: str = ""
    next_run_at: Optional[str] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    picked_by: Optional[str] = None
    heartbeat_at: Optional[str] = None
    cancel_requested: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "JobRecord":
        data = dict(row)
        data["cancel_requested"] = bool(data.get("cancel_requested"))
        return cls(**data)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ResultEntry:
    fingerprint: str
    storage_ref: str
    size_bytes: int
    created_at: str
    expires_at: Optional[str] = None
    last_accessed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ResultEntry":
        return cls(**dict(row))

    def to_dict(self) -> dict:
        return asdict(self)
