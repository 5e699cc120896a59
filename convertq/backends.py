import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
from typing import Dict, Iterable, Optional

import requests

from .cache import CHUNK_SIZE
from .errors import Cancelled, ConversionError

logger = logging.getLogger(__name__)

WATCH_URL = "https://www.youtube.com/watch?v={source}"
THUMBNAIL_URL = "https://img.youtube.com/vi/{source}/maxresdefault.jpg"
NOEMBED_URL = "https://noembed.com/embed"

# Placeholders: {url} {source} {quality} {output}
DEFAULT_COMMAND = (
    "yt-dlp --quiet --no-playlist --extract-audio --audio-format mp3 "
    "--audio-quality {quality}K -o {output} {url}"
)


def watch_url(source_id: str) -> str:
    return WATCH_URL.format(source=source_id)


class ConversionBackend:
    def convert(self, source_ref: str, quality: str, cancel: Optional[threading.Event] = None):
        """Convert ``source_ref`` at ``quality`` kbps.

        Returns bytes, a binary file object or an iterable of byte chunks.
        Implementations should stop early once ``cancel`` is set.
        """
        raise NotImplementedError


class CommandConversionBackend(ConversionBackend):
    """Runs an external converter (yt-dlp by default) and streams its output file."""

    def __init__(self, command: str = DEFAULT_COMMAND, poll_interval: float = 0.2):
        self.command = command
        self.poll_interval = poll_interval

    def build_args(self, source_ref: str, quality: str, output: str):
        # Split before formatting so URLs and paths never need quoting.
        tokens = shlex.split(self.command, posix=(os.name != "nt"))
        values = {
            "url": watch_url(source_ref),
            "source": source_ref,
            "quality": quality,
            "output": output,
        }
        return [tok.format(**values) for tok in tokens]

    def convert(self, source_ref, quality, cancel=None):
        workdir = tempfile.mkdtemp(prefix="convertq-")
        output = os.path.join(workdir, f"{source_ref}.mp3")
        try:
            self._run(self.build_args(source_ref, quality, output), cancel)
            path = self._find_output(workdir, output)
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        return self._stream(path, workdir)

    def _run(self, args, cancel):
        try:
            proc = subprocess.Popen(
                args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
            )
        except FileNotFoundError:
            raise ConversionError(f"Command not found: {args[0]}")
        except OSError as e:
            raise ConversionError(f"Could not start {args[0]}: {e}")

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise Cancelled(f"Conversion aborted: {args[0]} killed")

        if stdout:
            logger.debug(stdout.strip())
        if proc.returncode != 0:
            detail = (stderr or "").strip().splitlines()
            raise ConversionError(
                f"exit_code={proc.returncode}" + (f": {detail[-1]}" if detail else "")
            )

    @staticmethod
    def _find_output(workdir: str, expected: str) -> str:
        if os.path.exists(expected):
            return expected
        # converters sometimes pick their own extension
        for name in sorted(os.listdir(workdir)):
            path = os.path.join(workdir, name)
            if os.path.isfile(path):
                return path
        raise ConversionError("Converter finished without producing an output file")

    @staticmethod
    def _stream(path: str, workdir: str) -> Iterable[bytes]:
        try:
            with open(path, "rb") as fh:
                while True:
                    chunk = fh.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


class MetadataLookup:
    def lookup(self, source_id: str) -> Dict:
        raise NotImplementedError


def fallback_metadata(source_id: str) -> Dict:
    return {
        "videoId": source_id,
        "title": "Unknown Title",
        "author": "Unknown Author",
        "thumbnail": THUMBNAIL_URL.format(source=source_id),
        "duration": None,
    }


class NoembedMetadataLookup(MetadataLookup):
    """Best-effort title/author lookup through noembed.com; never raises."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10,
                 endpoint: str = NOEMBED_URL):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.endpoint = endpoint

    def lookup(self, source_id):
        info = fallback_metadata(source_id)
        try:
            resp = self.session.get(
                self.endpoint, params={"url": watch_url(source_id)}, timeout=self.timeout
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[metadata] lookup failed for {source_id}: {e}")
            return info

        if not isinstance(data, dict) or data.get("error"):
            logger.warning(f"[metadata] no metadata for {source_id}: {data!r:.200}")
            return info
        info["title"] = data.get("title") or info["title"]
        info["author"] = data.get("author_name") or info["author"]
        info["duration"] = data.get("duration")
        return info
