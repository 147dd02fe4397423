from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Union

from apkgrab.errors import ErrorKind


class SourceKind(str, Enum):
    SIGNED_REPOSITORY = "fdroid"
    SCRAPED_LISTING = "apkpure"
    TOKEN_SESSION = "google-play"
    VENDOR_GALLERY = "huawei"

    @classmethod
    def parse(cls, name: str) -> SourceKind:
        key = name.strip().lower().replace("_", "-")
        key = _SOURCE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            names = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown source: {name}. Available: {names}") from None


_SOURCE_ALIASES = {
    "f-droid": "fdroid",
    "google": "google-play",
    "googleplay": "google-play",
    "huawei-app-gallery": "huawei",
    "appgallery": "huawei",
}


@dataclass(frozen=True)
class Latest:
    def __str__(self) -> str:
        return "latest"


@dataclass(frozen=True)
class ExactVersion:
    version: str

    def __str__(self) -> str:
        return self.version


VersionSpec = Union[Latest, ExactVersion]
LATEST = Latest()


def parse_version_spec(version: str | None) -> VersionSpec:
    if not version or version.lower() == "latest":
        return LATEST
    return ExactVersion(version)


@dataclass(frozen=True)
class AcquisitionRequest:
    identifier: str
    version_spec: VersionSpec = LATEST
    source: SourceKind = SourceKind.SIGNED_REPOSITORY
    source_options: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "source_options", MappingProxyType(dict(self.source_options)))

    def __hash__(self) -> int:
        return hash((self.identifier, self.version_spec, self.source,
                     tuple(sorted(self.source_options.items()))))

    @property
    def pinned_version(self) -> str | None:
        if isinstance(self.version_spec, ExactVersion):
            return self.version_spec.version
        return None

    @property
    def label(self) -> str:
        """``id``, ``id@version`` or ``id@version@arch`` as used in file names."""
        parts = [self.identifier]
        if self.pinned_version:
            parts.append(self.pinned_version)
        arch = self.option("arch")
        if arch:
            parts.append(arch.split(";")[0])
        return "@".join(parts)

    def option(self, key: str, default: str | None = None) -> str | None:
        return self.source_options.get(key, default)

    def to_dict(self) -> dict:
        d: dict = {
            "identifier": self.identifier,
            "version": str(self.version_spec),
            "source": self.source.value,
        }
        if self.source_options:
            d["options"] = dict(self.source_options)
        return d


class FileRole(str, Enum):
    BASE = "base"
    SPLIT_CONFIG = "split-config"
    EXPANSION = "expansion"


@dataclass(frozen=True)
class FileRef:
    remote_location: str
    role: FileRole = FileRole.BASE
    expected_size: int | None = None
    name: str | None = None
    checksum: bytes | None = None


@dataclass(frozen=True)
class ArtifactDescriptor:
    primary_file: FileRef
    resolved_version: str
    auxiliary_files: tuple[FileRef, ...] = ()
    declared_checksum: bytes | None = None
    version_code: int | None = None
    packaging: str = "apk"
    verified_by: bytes | None = None
    # verified_by was accepted without a pinned fingerprint
    trusted_on_first_use: bool = False

    @property
    def is_split(self) -> bool:
        return bool(self.auxiliary_files)

    @property
    def files(self) -> tuple[FileRef, ...]:
        return (self.primary_file, *self.auxiliary_files)


@dataclass(frozen=True)
class VersionInfo:
    version: str
    version_code: int | None = None
    date: str = ""
    arch: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        d: dict = {"version": self.version}
        if self.version_code is not None:
            d["version_code"] = self.version_code
        if self.date:
            d["date"] = self.date
        if self.arch:
            d["arch"] = list(self.arch)
        return d


@dataclass(frozen=True)
class IndexEntry:
    version: str
    version_code: int
    package_checksum: bytes
    file_name: str
    size: int | None = None
    native_code: tuple[str, ...] = ()
    repository: str = ""
    rank: int = 0

    @property
    def arch_independent(self) -> bool:
        return not self.native_code


@dataclass(frozen=True)
class RepositoryIndex:
    """A repository index whose signature has been checked.

    Instances are only produced by :func:`apkgrab.verify.verify_index` and
    :func:`apkgrab.verify.verify_entry_index`; raw bytes from the cache are
    never usable as an index on their own.
    """

    address: str
    entries: Mapping[str, tuple[IndexEntry, ...]]
    signing_key_fingerprint: bytes
    raw_signed_payload: bytes
    trusted_on_first_use: bool = False

    def versions(self, identifier: str) -> tuple[IndexEntry, ...]:
        return self.entries.get(identifier, ())

    def __contains__(self, identifier: str) -> bool:
        return identifier in self.entries


class RequestState(str, Enum):
    PENDING = "Pending"
    RESOLVING = "Resolving"
    VERIFYING = "Verifying"
    ASSEMBLING = "Assembling"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class Success:
    written_paths: tuple[Path, ...]
    version: str = ""
    unpinned_fingerprint: bytes | None = None


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class AcquisitionOutcome:
    request: AcquisitionRequest
    result: Union[Success, Failure]

    @property
    def ok(self) -> bool:
        return isinstance(self.result, Success)

    def to_dict(self) -> dict:
        d = self.request.to_dict()
        if isinstance(self.result, Success):
            d["status"] = "succeeded"
            d["resolved_version"] = self.result.version
            d["paths"] = [str(p) for p in self.result.written_paths]
            if self.result.unpinned_fingerprint:
                d["unpinned_fingerprint"] = self.result.unpinned_fingerprint.hex()
        else:
            d["status"] = "failed"
            d["error"] = self.result.kind.value
            d["message"] = self.result.message
            if self.result.kind.is_integrity:
                d["integrity_failure"] = True
            if self.result.kind.retryable:
                d["retryable"] = True
        return d


@dataclass
class BatchReport:
    outcomes: list[AcquisitionOutcome]
    cancelled: bool = False

    @property
    def succeeded(self) -> list[AcquisitionOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[AcquisitionOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 1 if self.failed else 0

    def to_dict(self) -> dict:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
