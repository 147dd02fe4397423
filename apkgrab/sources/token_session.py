from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, Protocol

import requests

from apkgrab.errors import AcquisitionError, NotFound, SourceUnavailable
from apkgrab.models import ArtifactDescriptor, FileRole, SourceKind, VersionInfo, VersionSpec
from apkgrab.sources.base import APKSource, Options, option_flag


class StoreSession(Protocol):
    """An authenticated store client living outside this package.

    Login, device profiles and expansion-file lookup are its business. It
    may raise :mod:`apkgrab.errors` types directly; ``LookupError`` is read
    as an unknown app and transport errors as an unavailable store.
    """

    def list_versions(self, identifier: str, options: Options) -> list[VersionInfo]:
        ...

    def resolve(self, identifier: str, version_spec: VersionSpec, options: Options) -> ArtifactDescriptor:
        ...


@contextmanager
def _store_errors(identifier: str) -> Iterator[None]:
    try:
        yield
    except AcquisitionError:
        raise
    except LookupError as e:
        raise NotFound(f"[google-play] Package not found: {identifier} ({e})") from e
    except (requests.RequestException, OSError) as e:
        raise SourceUnavailable(f"[google-play] Store request for {identifier} failed: {e}") from e


class TokenSessionSource(APKSource):
    """Adapter around a :class:`StoreSession` collaborator.

    Expansion files are only kept with ``include_additional_files=true``;
    split configs are always kept since the base alone may not install.
    """

    name = "google-play"
    kind = SourceKind.TOKEN_SESSION

    def __init__(self, store: StoreSession | None = None, session: Any = None):
        super().__init__(session)
        self.store = store

    def _require_store(self) -> StoreSession:
        if self.store is None:
            raise SourceUnavailable("[google-play] No store session configured")
        return self.store

    def list_versions(self, identifier: str, options: Options | None = None) -> list[VersionInfo]:
        store = self._require_store()
        with _store_errors(identifier):
            versions = store.list_versions(identifier, options or {})
        if not versions:
            raise NotFound(f"[google-play] Package not found: {identifier}")
        return versions

    def resolve(
        self,
        identifier: str,
        version_spec: VersionSpec,
        options: Options | None = None,
    ) -> ArtifactDescriptor:
        store = self._require_store()
        with _store_errors(identifier):
            descriptor = store.resolve(identifier, version_spec, options or {})
        if option_flag(options, "include_additional_files", False):
            return descriptor
        kept = tuple(f for f in descriptor.auxiliary_files if f.role is not FileRole.EXPANSION)
        return replace(descriptor, auxiliary_files=kept)
