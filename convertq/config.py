import os
from dataclasses import dataclass, fields
from typing import Dict, Optional

DB_FILE = os.environ.get("CONVERTQ_DB", "convertq.db")
ARTIFACT_DIR = os.environ.get("CONVERTQ_ARTIFACTS", "artifacts")

DEFAULT_CONFIG = {
    "backoff_base": "2",
    "backoff_cap_seconds": "300",
    "max_attempts_default": "3",
    "timeout_seconds": "600",
    "poll_interval": "0.5",
    "lease_seconds": "120",
    "cache_ttl_seconds": "604800",       # 7 days, 0 = never expire
    "cache_max_bytes": str(5 * 1024 ** 3),
    "job_retention_seconds": "604800",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

DEFAULT_QUALITY = "128"
SUPPORTED_QUALITIES = ("64", "96", "128", "160", "192", "256", "320")


@dataclass
class Settings:
    backoff_base: float = 2.0
    backoff_cap_seconds: float = 300.0
    max_attempts_default: int = 3
    timeout_seconds: float = 600.0
    poll_interval: float = 0.5
    lease_seconds: float = 120.0
    cache_ttl_seconds: float = 604800.0
    cache_max_bytes: int = 5 * 1024 ** 3
    job_retention_seconds: float = 604800.0

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, str]] = None, **overrides) -> "Settings":
        """Build settings from the string values of the config table.

        Unknown keys are ignored; keyword overrides win over stored values.
        """
        merged = dict(DEFAULT_CONFIG)
        merged.update(cfg or {})
        values = {}
        for f in fields(cls):
            raw = overrides[f.name] if f.name in overrides else merged[f.name]
            try:
                values[f.name] = f.type(raw)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid value for {f.name}: {raw!r}")
        return cls(**values)

    def backoff_delay(self, attempts: int) -> float:
        return min(self.backoff_cap_seconds, self.backoff_base ** attempts)
