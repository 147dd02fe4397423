from unittest.mock import MagicMock

import pytest
import requests

from apkgrab.errors import NotFound, SourceUnavailable, VersionNotFound
from apkgrab.models import LATEST, ArtifactDescriptor, FileRef, FileRole, VersionInfo
from apkgrab.sources.token_session import TokenSessionSource

APP = "com.example.play"


@pytest.fixture
def bundle():
    return ArtifactDescriptor(
        primary_file=FileRef("https://play.example/base.apk", FileRole.BASE, name="base.apk"),
        resolved_version="7.0",
        auxiliary_files=(
            FileRef("https://play.example/config.arm64.apk", FileRole.SPLIT_CONFIG, name="config.arm64_v8a.apk"),
            FileRef("https://play.example/main.obb", FileRole.EXPANSION, name="main.70.obb"),
        ),
    )


def test_without_store_session():
    source = TokenSessionSource()
    with pytest.raises(SourceUnavailable, match="No store session"):
        source.resolve(APP, LATEST)
    with pytest.raises(SourceUnavailable):
        source.list_versions(APP)


def test_expansion_files_dropped_by_default(bundle):
    store = MagicMock()
    store.resolve.return_value = bundle
    descriptor = TokenSessionSource(store).resolve(APP, LATEST, {"arch": "arm64-v8a"})
    store.resolve.assert_called_once_with(APP, LATEST, {"arch": "arm64-v8a"})
    assert [f.role for f in descriptor.auxiliary_files] == [FileRole.SPLIT_CONFIG]
    assert descriptor.is_split


def test_expansion_files_kept_on_request(bundle):
    store = MagicMock()
    store.resolve.return_value = bundle
    descriptor = TokenSessionSource(store).resolve(APP, LATEST, {"include_additional_files": "true"})
    assert len(descriptor.files) == 3


def test_store_errors_are_translated():
    store = MagicMock()
    store.resolve.side_effect = LookupError("no such app")
    store.list_versions.side_effect = requests.ConnectionError("down")
    source = TokenSessionSource(store)
    with pytest.raises(NotFound):
        source.resolve(APP, LATEST)
    with pytest.raises(SourceUnavailable, match="down"):
        source.list_versions(APP)


def test_store_may_raise_acquisition_errors():
    store = MagicMock()
    store.resolve.side_effect = VersionNotFound("gone")
    with pytest.raises(VersionNotFound):
        TokenSessionSource(store).resolve(APP, LATEST)


def test_empty_version_list_is_not_found():
    store = MagicMock()
    store.list_versions.return_value = []
    with pytest.raises(NotFound):
        TokenSessionSource(store).list_versions(APP)


def test_list_versions_passthrough():
    store = MagicMock()
    store.list_versions.return_value = [VersionInfo("7.0", 70)]
    assert TokenSessionSource(store).list_versions(APP)[0].version_code == 70
