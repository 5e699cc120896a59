import sqlite3
from typing import Optional

from .config import DB_FILE, DEFAULT_CONFIG

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    quality TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    next_run_at TEXT,
    result_ref TEXT,
    error TEXT,
    error_kind TEXT,
    picked_by TEXT,
    heartbeat_at TEXT,
    cancel_requested INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_jobs_state_next ON jobs(state, next_run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_fingerprint ON jobs(fingerprint, state);

CREATE TABLE IF NOT EXISTS results (
    fingerprint TEXT PRIMARY KEY,
    storage_ref TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    last_accessed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_results_storage_ref ON results(storage_ref);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    # Each thread opens its own connection; the timeout covers BEGIN IMMEDIATE waits.
    conn = sqlite3.connect(path or DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()
