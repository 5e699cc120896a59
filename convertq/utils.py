from datetime import datetime, timezone, timedelta
import hashlib
import re
from typing import Optional
from uuid import uuid4

from .config import SUPPORTED_QUALITIES
from .errors import InvalidInputError

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

# watch?v=<id>, youtu.be/<id>, /embed/<id>, /shorts/<id>
SOURCE_URL_RE = re.compile(
    r"(?:youtube\.com/watch\?(?:[^#\s]*&)?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([^&\n?#/]+)"
)
SOURCE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

MAX_ERROR_LEN = 500


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total


def to_iso(dt: datetime) -> str:
    # Fixed-width so timestamps compare correctly as strings.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return to_iso(datetime.now(timezone.utc))


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC ISO time `seconds` from now (negative for the past), with 'Z' suffix."""
    return to_iso(datetime.now(timezone.utc) + timedelta(seconds=seconds))


def extract_source_id(source_ref: Optional[str]) -> str:
    """Return the video id for a watch/short/embed URL or a bare id."""
    if source_ref is None or not str(source_ref).strip():
        raise InvalidInputError("Video URL is required")
    ref = str(source_ref).strip()
    m = SOURCE_URL_RE.search(ref)
    if m:
        video_id = m.group(1)
    elif "/" not in ref and ":" not in ref:
        video_id = ref
    else:
        raise InvalidInputError(f"Invalid YouTube URL: {ref}")
    if not SOURCE_ID_RE.match(video_id):
        raise InvalidInputError(f"Invalid video id: {video_id!r}")
    return video_id


def normalize_quality(quality) -> str:
    q = str(quality).strip().lower()
    if q.endswith("k"):
        q = q[:-1]
    if q not in SUPPORTED_QUALITIES:
        raise InvalidInputError(
            f"Unsupported quality {quality!r}; choose one of {', '.join(SUPPORTED_QUALITIES)}"
        )
    return q


def fingerprint(source_id: str, quality: str) -> str:
    return hashlib.sha256(f"{source_id}:{quality}".encode("utf-8")).hexdigest()


def new_job_id() -> str:
    return uuid4().hex


def truncate_error(error) -> str:
    return str(error)[:MAX_ERROR_LEN]
