from __future__ import annotations

import hashlib
import shutil
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import requests

UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
HTTP_TIMEOUT = 30
CHUNK_SIZE = 1024 * 64

ProgressCallback = Callable[[str, int, int], None]

# ── Terminal symbols (ASCII-safe fallback) ──────────────────────────────────
_UTF8 = (
    hasattr(sys.stderr, "encoding")
    and sys.stderr.encoding
    and "utf" in sys.stderr.encoding.lower()
)
_SYM_OK = "✔" if _UTF8 else "+"
_SYM_FAIL = "✘" if _UTF8 else "x"
_SYM_WARN = "⚠" if _UTF8 else "!"
_SYM_DOT = "•" if _UTF8 else "*"
_SYM_DL = "↓" if _UTF8 else "v"
_SYM_BAR = "█" if _UTF8 else "#"
_SYM_BAR_BG = "░" if _UTF8 else "."
_SYM_ARROW = "➜" if _UTF8 else ">"

# Workers log concurrently; one write per line keeps lines whole.
_WRITE_LOCK = threading.Lock()


def _term_width() -> int:
    return shutil.get_terminal_size((80, 24)).columns


def _write(text: str) -> None:
    with _WRITE_LOCK:
        sys.stderr.write(text)
        sys.stderr.flush()


# ── Logging helpers ─────────────────────────────────────────────────────────

def log_step(current: int, total: int, msg: str) -> None:
    """Log a numbered step: [1/6] Downloading org.fdroid.fdroid..."""
    _write(f"  [{current}/{total}] {msg}\n")


def log_ok(msg: str) -> None:
    _write(f"  {_SYM_OK} {msg}\n")


def log_fail(msg: str) -> None:
    _write(f"  {_SYM_FAIL} {msg}\n")


def log_warn(msg: str) -> None:
    _write(f"  {_SYM_WARN} {msg}\n")


def log_info(msg: str) -> None:
    _write(f"  {_SYM_DOT} {msg}\n")


def log_source(source: str, msg: str) -> None:
    """Log a message with source prefix."""
    _write(f"  [{source}] {msg}\n")


def log_header(msg: str) -> None:
    """Log a section header."""
    _write(f"\n  {_SYM_ARROW} {msg}\n")


# ── Size formatting ─────────────────────────────────────────────────────────

def format_size(size_bytes: int) -> str:
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 ** 3):.1f} GB"
    if size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 ** 2):.1f} MB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes} B"


def format_elapsed(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    m, s = divmod(int(seconds), 60)
    return f"{m}m{s:02d}s"


# ── HTTP sessions ───────────────────────────────────────────────────────────

def create_session() -> requests.Session:
    s = requests.Session()
    s.headers.update({
        "User-Agent": UA,
        "Accept-Language": "en-US,en;q=0.9",
    })
    return s


def create_cf_session() -> Any:
    from curl_cffi.requests import Session
    return Session(impersonate="chrome131")


# ── File download ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DownloadedFile:
    path: Path
    size: int
    sha256: bytes


def download_file(
    url: str,
    path: Path,
    session: Any = None,
    headers: dict | None = None,
    chunk_size: int = CHUNK_SIZE,
    progress: ProgressCallback | None = None,
) -> DownloadedFile:
    """Stream *url* into *path*, hashing on the way.

    The body is written to ``<path>.part`` and renamed once complete, so
    *path* only ever holds a full download. The parent directory must exist.
    """
    if session is None:
        session = create_session()

    resp = session.get(url, headers=headers or {}, stream=True, timeout=HTTP_TIMEOUT)
    resp.raise_for_status()
    total = int(resp.headers.get("content-length", 0) or 0)

    downloaded = 0
    digest = hashlib.sha256()
    part_path = path.with_suffix(path.suffix + ".part")

    try:
        with open(part_path, "wb") as f:
            for chunk in resp.iter_content(chunk_size):
                if not chunk:
                    continue
                f.write(chunk)
                digest.update(chunk)
                downloaded += len(chunk)
                if progress is not None:
                    progress(path.name, downloaded, total)

        if total > 0 and downloaded < total:
            raise requests.exceptions.ContentDecodingError(
                f"Incomplete download: {downloaded}/{total} bytes"
            )

        part_path.replace(path)
    except BaseException:
        part_path.unlink(missing_ok=True)
        raise

    return DownloadedFile(path=path, size=downloaded, sha256=digest.digest())


class stderr_progress:
    """Single-line progress bar on stderr, usable as a ``progress`` callback."""

    def __init__(self):
        self._t0 = time.monotonic()
        self._last_name = ""

    def __call__(self, name: str, downloaded: int, total: int) -> None:
        if name != self._last_name:
            if self._last_name:
                _write("\n")
            self._last_name = name
            self._t0 = time.monotonic()
        _print_progress(downloaded, total, self._t0)
        if total and downloaded >= total:
            _write("\n")
            self._last_name = ""


def _print_progress(downloaded: int, total: int, t0: float) -> None:
    elapsed = time.monotonic() - t0
    speed = downloaded / elapsed if elapsed > 0.1 else 0

    if total > 0:
        pct = downloaded * 100 // total
        bar_width = min(25, _term_width() - 55)
        if bar_width > 5:
            filled = bar_width * downloaded // total
            bar = _SYM_BAR * filled + _SYM_BAR_BG * (bar_width - filled)
            line = f"\r  {_SYM_DL} {bar} {pct:3d}%  {format_size(downloaded)}/{format_size(total)}"
        else:
            line = f"\r  {_SYM_DL} {pct:3d}%  {format_size(downloaded)}/{format_size(total)}"
        if speed > 0:
            line += f"  {format_size(int(speed))}/s"
    else:
        line = f"\r  {_SYM_DL} {format_size(downloaded)}"
        if speed > 0:
            line += f"  {format_size(int(speed))}/s"

    # Pad to clear previous line remnants
    width = _term_width()
    if len(line) < width:
        line += " " * (width - len(line))

    _write(line)


# ── Filenames ───────────────────────────────────────────────────────────────

def sanitize_filename(name: str) -> str:
    """Remove characters unsafe for filenames."""
    return "".join(c if c.isalnum() or c in "-_.@" else "_" for c in name)
