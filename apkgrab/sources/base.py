from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

import requests

from apkgrab.errors import SourceUnavailable
from apkgrab.models import ArtifactDescriptor, FileRef, SourceKind, VersionInfo, VersionSpec
from apkgrab.utils import DownloadedFile, ProgressCallback, create_session, download_file

Options = Mapping[str, str]

_FALSE = {"0", "false", "no", "off"}
_TRUE = {"1", "true", "yes", "on"}


def option_flag(options: Options | None, key: str, default: bool) -> bool:
    value = (options or {}).get(key)
    if value is None or value == "":
        return default
    lowered = str(value).strip().lower()
    if lowered in _FALSE:
        return False
    if lowered in _TRUE:
        return True
    raise ValueError(f"Option {key} must be true or false, got {value!r}")


@contextmanager
def transport_errors(source: str, what: str) -> Iterator[None]:
    """Report transport failures as ``SourceUnavailable``."""
    try:
        yield
    except requests.RequestException as e:
        raise SourceUnavailable(f"[{source}] {what}: {e}") from e


class APKSource(ABC):
    name: str
    kind: SourceKind

    def __init__(self, session: Any = None):
        self.session = session if session is not None else create_session()

    @abstractmethod
    def list_versions(self, identifier: str, options: Options | None = None) -> list[VersionInfo]:
        """Available versions, newest first.

        Raises ``NotFound`` for unknown identifiers and ``SourceUnavailable``
        on transport or protocol trouble.
        """

    @abstractmethod
    def resolve(
        self,
        identifier: str,
        version_spec: VersionSpec,
        options: Options | None = None,
    ) -> ArtifactDescriptor:
        ...

    def verify(self, descriptor: ArtifactDescriptor, options: Options | None = None) -> bool:
        """Check where a descriptor came from before anything is fetched.

        Returns ``True`` if the source performed a check. Sources without
        signed metadata have nothing to check.
        """
        return False

    def fetch(self, ref: FileRef, dest: Path, progress: ProgressCallback | None = None) -> DownloadedFile:
        with transport_errors(self.name, f"download of {ref.remote_location} failed"):
            return download_file(ref.remote_location, dest, self.session, progress=progress)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.name})>"
