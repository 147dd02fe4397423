from __future__ import annotations

from typing import TYPE_CHECKING, Mapping, Sequence

from apkgrab.errors import AmbiguousVariant, VersionNotFound
from apkgrab.models import (
    AcquisitionRequest,
    ArtifactDescriptor,
    ExactVersion,
    IndexEntry,
    SourceKind,
    VersionSpec,
)
from apkgrab.utils import log_source

if TYPE_CHECKING:
    from apkgrab.sources.base import APKSource


def parse_arch_preference(value: str | None) -> list[str]:
    """``"arm64-v8a;armeabi-v7a"`` -> ``["arm64-v8a", "armeabi-v7a"]``."""
    if not value:
        return []
    return [a.strip() for a in value.split(";") if a.strip()]


def _ordered(entries: Sequence[IndexEntry]) -> list[IndexEntry]:
    # Newest version code first; on equal codes the primary repository wins.
    return sorted(entries, key=lambda e: (-e.version_code, e.rank))


def _group_by_version(entries: Sequence[IndexEntry]) -> list[tuple[str, list[IndexEntry]]]:
    groups: dict[str, list[IndexEntry]] = {}
    for entry in _ordered(entries):
        groups.setdefault(entry.version, []).append(entry)
    return list(groups.items())


def select_variant(
    identifier: str,
    version: str,
    candidates: Sequence[IndexEntry],
    arch: Sequence[str] = (),
    fallback: bool = True,
) -> IndexEntry | None:
    """Pick one build among entries sharing a version string.

    Entries from the best-ranked repository are considered first. Without an
    architecture preference the highest version code wins. With one, the
    first listed architecture that some build supports decides; a build made
    for that architecture alone beats multi-architecture builds. If no listed
    architecture matches, an architecture-independent build is used unless
    *fallback* is off.
    Returns ``None`` when nothing fits.
    """
    if not candidates:
        return None
    best_rank = min(e.rank for e in candidates)
    pool = [e for e in _ordered(candidates) if e.rank == best_rank]

    if not arch:
        return pool[0]

    for wanted in arch:
        matches = [e for e in pool if wanted in e.native_code]
        if not matches:
            continue
        if len(matches) == 1:
            return matches[0]
        dedicated = [e for e in matches if e.native_code == (wanted,)]
        if len(dedicated) == 1:
            return dedicated[0]
        if len({e.file_name for e in matches}) == 1:
            return matches[0]
        raise AmbiguousVariant(
            f"{identifier} v{version}: {len(matches)} builds match architecture {wanted} "
            f"({', '.join(e.file_name for e in matches)})"
        )

    independent = [e for e in pool if e.arch_independent]
    if independent and fallback:
        log_source(
            "resolve",
            f"{identifier} v{version}: no build for {';'.join(arch)}, "
            "using architecture-independent build",
        )
        return independent[0]
    return None


def select_entry(
    identifier: str,
    entries: Sequence[IndexEntry],
    version_spec: VersionSpec,
    arch: Sequence[str] = (),
    fallback: bool = True,
) -> IndexEntry:
    """Apply version ordering and variant selection to index entries."""
    groups = _group_by_version(entries)
    arch_str = f" for {';'.join(arch)}" if arch else ""

    if isinstance(version_spec, ExactVersion):
        for version, candidates in groups:
            if version == version_spec.version:
                chosen = select_variant(identifier, version, candidates, arch, fallback)
                if chosen is None:
                    break
                return chosen
        available = ", ".join(v for v, _ in groups[:5])
        raise VersionNotFound(
            f"Version {version_spec.version}{arch_str} not found for {identifier}. "
            f"Available: {available or 'none'}"
        )

    for version, candidates in groups:
        chosen = select_variant(identifier, version, candidates, arch, fallback)
        if chosen is not None:
            return chosen
    raise VersionNotFound(f"No version{arch_str} available for {identifier}")


class VersionResolver:
    """Turn a request into an :class:`ArtifactDescriptor` via its source."""

    def __init__(self, adapters: Mapping[SourceKind, APKSource]):
        self._adapters = dict(adapters)

    def adapter_for(self, kind: SourceKind) -> APKSource:
        try:
            return self._adapters[kind]
        except KeyError:
            raise ValueError(f"No adapter registered for source {kind.value}") from None

    def resolve(self, request: AcquisitionRequest) -> ArtifactDescriptor:
        adapter = self.adapter_for(request.source)
        return adapter.resolve(request.identifier, request.version_spec, request.source_options)
