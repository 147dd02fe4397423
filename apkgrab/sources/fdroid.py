from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from apkgrab.errors import (
    ChecksumMismatch,
    FingerprintMismatch,
    NotFound,
    SignatureInvalid,
    SourceUnavailable,
)
from apkgrab.index_cache import IndexCache, canonical_repo_url
from apkgrab.models import (
    ArtifactDescriptor,
    FileRef,
    FileRole,
    IndexEntry,
    RepositoryIndex,
    SourceKind,
    VersionInfo,
    VersionSpec,
)
from apkgrab.resolver import parse_arch_preference, select_entry
from apkgrab.sources.base import APKSource, Options, option_flag
from apkgrab.utils import log_source, log_warn
from apkgrab.verify import (
    FDROID_FINGERPRINT,
    format_fingerprint,
    parse_fingerprint,
    verify_entry_index,
    verify_index,
    warn_verification_disabled,
)

DEFAULT_REPO = "https://f-droid.org/repo"


@dataclass(frozen=True)
class Repository:
    url: str
    fingerprint: bytes | None
    rank: int = 0


def parse_repo_option(value: str) -> tuple[str, bytes | None]:
    """Split ``https://host/repo?fingerprint=<hex>`` into URL and fingerprint."""
    url, sep, fingerprint = value.strip().partition("?fingerprint=")
    return url.rstrip("/"), parse_fingerprint(fingerprint) if sep else None


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(";") if v.strip()]


class FDroidSource(APKSource):
    """Signed repositories in the F-Droid format.

    Indices are fetched through :class:`IndexCache`, verified on every load
    and memoized for the lifetime of the source object.
    """

    name = "fdroid"
    kind = SourceKind.SIGNED_REPOSITORY

    def __init__(self, index_cache: IndexCache, session: Any = None):
        super().__init__(session)
        self.index_cache = index_cache
        self._indices: dict[tuple, RepositoryIndex] = {}
        self._locks: dict[tuple, threading.Lock] = {}
        self._guard = threading.Lock()

    def repositories(self, options: Options | None) -> list[Repository]:
        options = options or {}
        pinned = options.get("fingerprint")
        repo_opt = options.get("repo")
        if repo_opt:
            url, fingerprint = parse_repo_option(repo_opt)
            if fingerprint is None and pinned:
                fingerprint = parse_fingerprint(pinned)
        else:
            url = DEFAULT_REPO
            fingerprint = parse_fingerprint(pinned) if pinned else FDROID_FINGERPRINT

        repos = [Repository(url, fingerprint, 0)]
        for rank, extra in enumerate(_split(options.get("fallback_repos")), 1):
            extra_url, extra_fp = parse_repo_option(extra)
            repos.append(Repository(extra_url, extra_fp, rank))
        return repos

    def _lock_for(self, key: tuple) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def load_index(self, repo: Repository, options: Options | None = None) -> RepositoryIndex:
        use_entry = option_flag(options, "use_entry", True)
        verify = option_flag(options, "verify_index", True)
        force = option_flag(options, "refresh_index", False)
        mirrors = _split((options or {}).get("mirror")) if repo.rank == 0 else []
        key = (canonical_repo_url(repo.url), repo.fingerprint, use_entry, verify)

        # One load per repository even when many workers ask at once.
        with self._lock_for(key):
            index = self._indices.get(key)
            if index is not None:
                return index

            if not verify:
                warn_verification_disabled(f"repository {repo.url}")
            jar_name = "entry.jar" if use_entry else "index-v1.jar"
            fetched: list[str] = [jar_name]

            def fetch(name: str) -> bytes:
                fetched.append(name)
                return self.index_cache.get(repo.url, force_refresh=force, name=name, mirrors=mirrors).raw

            raw = fetch(jar_name)
            try:
                if use_entry:
                    index = verify_entry_index(raw, repo.fingerprint, fetch, repo.url, verify, repo.rank)
                else:
                    index = verify_index(raw, repo.fingerprint, repo.url, verify, repo.rank)
            except (SignatureInvalid, FingerprintMismatch, ChecksumMismatch):
                for name in fetched:
                    self.index_cache.invalidate(repo.url, name)
                raise

            if index.trusted_on_first_use:
                log_warn(
                    f"Repository {repo.url} is not pinned. To pin it, use "
                    f"repo={repo.url}?fingerprint={format_fingerprint(index.signing_key_fingerprint)}"
                )
            self._indices[key] = index
            return index

    def _indices_for(self, options: Options | None) -> list[RepositoryIndex]:
        repos = self.repositories(options)
        indices: list[RepositoryIndex] = []
        errors: list[str] = []
        for repo in repos:
            try:
                indices.append(self.load_index(repo, options))
            except SourceUnavailable as e:
                if repo.rank == 0 and len(repos) == 1:
                    raise
                log_warn(f"[fdroid] {e}")
                errors.append(str(e))
        if not indices:
            raise SourceUnavailable(f"[fdroid] No repository index available: {'; '.join(errors)}")
        return indices

    def _entries(self, identifier: str, options: Options | None) -> tuple[list[IndexEntry], dict[str, RepositoryIndex]]:
        entries: list[IndexEntry] = []
        by_address: dict[str, RepositoryIndex] = {}
        for index in self._indices_for(options):
            found = index.versions(identifier)
            entries.extend(found)
            if found:
                by_address[index.address] = index
        if not entries:
            raise NotFound(f"[fdroid] Package not found: {identifier}")
        return entries, by_address

    def list_versions(self, identifier: str, options: Options | None = None) -> list[VersionInfo]:
        entries, _ = self._entries(identifier, options)
        versions: dict[str, VersionInfo] = {}
        for entry in sorted(entries, key=lambda e: (-e.version_code, e.rank)):
            if entry.version not in versions:
                versions[entry.version] = VersionInfo(
                    version=entry.version,
                    version_code=entry.version_code,
                    arch=entry.native_code,
                )
        return list(versions.values())

    def resolve(
        self,
        identifier: str,
        version_spec: VersionSpec,
        options: Options | None = None,
    ) -> ArtifactDescriptor:
        entries, by_address = self._entries(identifier, options)
        arch = parse_arch_preference((options or {}).get("arch"))
        fallback = not option_flag(options, "strict_arch", False)
        entry = select_entry(identifier, entries, version_spec, arch, fallback)
        index = by_address.get(entry.repository)

        file_name = entry.file_name.rsplit("/", 1)[-1]
        log_source(self.name, f"{identifier}: v{entry.version} ({entry.version_code}) from {entry.repository}")
        ref = FileRef(
            remote_location=f"{entry.repository}/{entry.file_name}",
            role=FileRole.BASE,
            expected_size=entry.size,
            name=file_name,
            checksum=entry.package_checksum,
        )
        return ArtifactDescriptor(
            primary_file=ref,
            resolved_version=entry.version,
            declared_checksum=entry.package_checksum,
            version_code=entry.version_code,
            verified_by=index.signing_key_fingerprint if index else b"",
            trusted_on_first_use=bool(index and index.trusted_on_first_use),
        )

    def verify(self, descriptor: ArtifactDescriptor, options: Options | None = None) -> bool:
        if not option_flag(options, "verify_index", True):
            warn_verification_disabled(descriptor.primary_file.remote_location)
            return True
        if descriptor.declared_checksum is None or not descriptor.verified_by:
            raise SignatureInvalid(
                f"[fdroid] {descriptor.primary_file.remote_location} is not backed by a verified index"
            )
        return True
