from __future__ import annotations

import hashlib
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence
from urllib.parse import urlsplit, urlunsplit

import requests

from apkgrab.errors import IOFailure, SourceUnavailable
from apkgrab.utils import HTTP_TIMEOUT, create_session, log_source, log_warn

_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonical_repo_url(url: str) -> str:
    """Normalize a repository URL so equivalent spellings share a cache entry.

    Scheme and host are lowercased, default ports, query, fragment and
    trailing slashes are dropped.
    """
    parts = urlsplit(url.strip())
    scheme = (parts.scheme or "https").lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    netloc = host
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path.rstrip("/"), "", ""))


@dataclass(frozen=True)
class CachedIndex:
    """Raw, unverified index bytes as fetched or read from disk."""

    repo_url: str
    name: str
    raw: bytes
    from_cache: bool = False
    stale: bool = False


class IndexCache:
    """Per-repository on-disk cache of index files.

    Entries live under ``<cache_dir>/repos/<hash of canonical URL>/`` and are
    revalidated with ``If-None-Match`` on every :meth:`get`. A refresh that
    fails on the network falls back to the last stored copy.
    """

    def __init__(self, cache_dir: Path, session: Any = None):
        self.cache_dir = Path(cache_dir)
        self.session = session or create_session()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def entry_dir(self, repo_url: str) -> Path:
        key = hashlib.sha256(canonical_repo_url(repo_url).encode()).hexdigest()[:24]
        return self.cache_dir / "repos" / key

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(
        self,
        repo_url: str,
        force_refresh: bool = False,
        name: str = "index-v1.jar",
        mirrors: Sequence[str] = (),
    ) -> CachedIndex:
        canonical = canonical_repo_url(repo_url)
        with self._lock_for(f"{canonical}/{name}"):
            entry = self.entry_dir(canonical)
            blob = entry / name
            etag_file = entry / f"{name}.etag"

            cached = blob.read_bytes() if blob.is_file() else None
            etag = None
            if cached is not None and etag_file.is_file():
                etag = etag_file.read_text().strip() or None

            headers = {}
            if etag and not force_refresh:
                headers["If-None-Match"] = etag

            errors: list[str] = []
            for base in (canonical, *mirrors):
                url = f"{base.rstrip('/')}/{name}"
                try:
                    resp = self.session.get(url, headers=headers, timeout=HTTP_TIMEOUT)
                    if resp.status_code == 304 and cached is not None:
                        return CachedIndex(canonical, name, cached, from_cache=True)
                    resp.raise_for_status()
                except requests.RequestException as e:
                    errors.append(f"{url}: {e}")
                    continue
                data = resp.content
                self._store(entry, canonical, name, data, resp.headers.get("ETag"))
                log_source("index", f"Fetched {url} ({len(data)} bytes)")
                return CachedIndex(canonical, name, data)

            summary = "; ".join(errors)
            if cached is None:
                raise SourceUnavailable(f"Could not fetch {name} from {canonical}: {summary}")
            log_warn(
                f"Could not refresh {name} for {canonical}, using cached copy "
                f"which may be stale ({summary})"
            )
            return CachedIndex(canonical, name, cached, from_cache=True, stale=True)

    def invalidate(self, repo_url: str, name: str) -> None:
        """Drop a cached file, e.g. after it failed verification."""
        canonical = canonical_repo_url(repo_url)
        with self._lock_for(f"{canonical}/{name}"):
            entry = self.entry_dir(canonical)
            (entry / name).unlink(missing_ok=True)
            (entry / f"{name}.etag").unlink(missing_ok=True)

    def _store(self, entry: Path, canonical: str, name: str, data: bytes, etag: str | None) -> None:
        try:
            entry.mkdir(parents=True, exist_ok=True)
            _atomic_write(entry / name, data)
            if etag:
                _atomic_write(entry / f"{name}.etag", etag.encode())
            else:
                (entry / f"{name}.etag").unlink(missing_ok=True)
            _atomic_write(entry / "repo.url", canonical.encode())
        except OSError as e:
            raise IOFailure(f"Could not write index cache in {entry}: {e}") from e


def _atomic_write(path: Path, data: bytes) -> None:
    """Write to a sibling temp file then ``os.replace`` it into place."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
