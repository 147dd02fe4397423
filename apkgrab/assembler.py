from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path

from apkgrab.errors import Cancelled, IOFailure, SourceUnavailable
from apkgrab.models import AcquisitionRequest, ArtifactDescriptor, FileRef, FileRole
from apkgrab.sources.base import APKSource
from apkgrab.utils import DownloadedFile, ProgressCallback, log_warn, sanitize_filename
from apkgrab.verify import check_digest

TMP_PREFIX = ".apkgrab-partial-"
SPLIT_SUFFIX = ".split"
# Staging paths untouched this long (seconds) belong to a run that is gone.
STALE_AFTER = 3600

_DEFAULT_PART_NAMES = {
    FileRole.BASE: "base",
    FileRole.SPLIT_CONFIG: "split",
    FileRole.EXPANSION: "expansion",
}


def deliverable_name(request: AcquisitionRequest, descriptor: ArtifactDescriptor) -> str:
    """Final file or directory name for a request.

    Monolithic packages are ``<label>.apk`` (or ``.xapk``); split bundles are
    a ``<label>.split`` directory holding every part. The label carries the
    version when the request pinned one.
    """
    stem = sanitize_filename(request.label)
    if descriptor.is_split:
        return f"{stem}{SPLIT_SUFFIX}"
    return f"{stem}.{descriptor.packaging}"


def part_names(descriptor: ArtifactDescriptor) -> list[str]:
    """Unique, filesystem-safe names for every file of a split bundle."""
    names: list[str] = []
    used: set[str] = set()
    for i, ref in enumerate(descriptor.files):
        name = sanitize_filename(ref.name) if ref.name else ""
        if not name or name.startswith("."):
            ext = "obb" if ref.role is FileRole.EXPANSION else "apk"
            name = f"{_DEFAULT_PART_NAMES[ref.role]}-{i}.{ext}" if i else f"base.{ext}"
        stem, dot, ext = name.rpartition(".")
        candidate, n = name, 1
        while candidate in used:
            candidate = f"{stem}-{n}.{ext}" if dot else f"{name}-{n}"
            n += 1
        used.add(candidate)
        names.append(candidate)
    return names


def _last_modified(path: Path) -> float:
    """Newest mtime of *path* and, for a directory, anything inside it."""
    newest = path.lstat().st_mtime
    if path.is_dir():
        for child in path.rglob("*"):
            try:
                newest = max(newest, child.lstat().st_mtime)
            except FileNotFoundError:
                continue
    return newest


def clean_staging(output_dir: Path, max_age: float | None = None) -> list[Path]:
    """Remove temporary paths left behind by an interrupted run.

    With *max_age* (seconds), only paths untouched for at least that long
    are removed, so the staging directories of a run still writing into
    *output_dir* are left alone. Without it everything is removed.
    """
    removed: list[Path] = []
    if not output_dir.is_dir():
        return removed
    now = time.time()
    for path in output_dir.iterdir():
        if not path.name.startswith(TMP_PREFIX):
            continue
        if max_age is not None:
            try:
                if now - _last_modified(path) < max_age:
                    continue
            except FileNotFoundError:
                continue
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)
        removed.append(path)
    return removed


class PackageAssembler:
    """Fetch every file of a descriptor and publish the deliverable atomically.

    Files are downloaded into a private staging directory inside the output
    directory and moved into place with a single rename once all of them
    are fetched and checked. On any failure the staging directory is
    removed, so the final path either holds a complete deliverable or
    nothing.
    """

    def __init__(
        self,
        output_dir: Path,
        fanout: int = 4,
        retries: int = 2,
        progress: ProgressCallback | None = None,
    ):
        if fanout < 1:
            raise ValueError("fanout must be at least 1")
        self.output_dir = Path(output_dir)
        self.fanout = fanout
        self.retries = max(0, retries)
        self.progress = progress

    def assemble(
        self,
        request: AcquisitionRequest,
        descriptor: ArtifactDescriptor,
        adapter: APKSource,
        cancel: threading.Event | None = None,
    ) -> list[Path]:
        final = self.output_dir / deliverable_name(request, descriptor)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            if final.exists():
                raise IOFailure(f"Destination already exists: {final}")
            staging = Path(tempfile.mkdtemp(prefix=TMP_PREFIX, dir=self.output_dir))
        except OSError as e:
            raise IOFailure(f"Could not prepare {self.output_dir}: {e}") from e

        try:
            names = part_names(descriptor) if descriptor.is_split else [final.name]
            self._fetch_all(descriptor, adapter, staging, names, cancel)
            missing = [name for name in names if not (staging / name).is_file()]
            if missing:
                raise IOFailure(f"Staged files disappeared before {final.name} was complete: {', '.join(missing)}")
            if descriptor.is_split:
                # mkdtemp creates 0700 directories
                os.chmod(staging, 0o755)
                os.rename(staging, final)
                return [final / name for name in names]
            os.rename(staging / names[0], final)
            return [final]
        except OSError as e:
            raise IOFailure(f"Could not write {final}: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _fetch_all(
        self,
        descriptor: ArtifactDescriptor,
        adapter: APKSource,
        staging: Path,
        names: list[str],
        cancel: threading.Event | None,
    ) -> None:
        jobs = []
        for i, (ref, name) in enumerate(zip(descriptor.files, names)):
            expected = ref.checksum
            if i == 0 and descriptor.declared_checksum is not None:
                expected = descriptor.declared_checksum
            jobs.append((ref, staging / name, expected))

        if len(jobs) == 1:
            self._fetch_one(adapter, *jobs[0], cancel)
            return

        with ThreadPoolExecutor(max_workers=min(self.fanout, len(jobs))) as pool:
            futures = [pool.submit(self._fetch_one, adapter, *job, cancel) for job in jobs]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            for fut in pending:
                fut.cancel()
            for fut in futures:
                if fut in done and fut.exception() is not None:
                    raise fut.exception()
            for fut in futures:
                if not fut.cancelled():
                    fut.result()

    def _fetch_one(
        self,
        adapter: APKSource,
        ref: FileRef,
        dest: Path,
        expected: bytes | None,
        cancel: threading.Event | None,
    ) -> DownloadedFile:
        result = None
        for attempt in range(self.retries + 1):
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"Cancelled before fetching {dest.name}")
            try:
                result = adapter.fetch(ref, dest, self.progress)
                break
            except SourceUnavailable as e:
                if attempt == self.retries:
                    raise
                log_warn(f"{dest.name}: {e}. Retry #{attempt + 1}...")

        if expected is not None:
            check_digest(result.sha256, expected, label=dest.name)
        elif ref.expected_size is not None and result.size != ref.expected_size:
            raise SourceUnavailable(
                f"{dest.name}: expected {ref.expected_size} bytes, got {result.size}"
            )
        return result
