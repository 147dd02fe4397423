import hashlib
import json

import pytest
import requests

from apkgrab.errors import NotFound, SourceUnavailable, VersionNotFound
from apkgrab.models import LATEST, ExactVersion, FileRef
from apkgrab.sources.apkpure import APKPureSource, _make_headers
from tests.fakes import FakeResponse, FakeSession

APP = "org.example.app"
VERSIONS_URL = "https://api.pureapk.com/m/v3/cms/app_version"


def listing(*versions):
    return FakeResponse(200, json.dumps({"version_list": list(versions)}))


def version(name, code, url=None, kind="APK", sha256=None):
    item = {"version_name": name, "version_code": code, "update_date": "2024-01-01"}
    if url:
        item["asset"] = {"url": url, "type": kind, "size": 3}
        if sha256:
            item["asset"]["sha256"] = sha256
    return item


class TestHeaders:
    def test_arch_preference_becomes_device_abis(self):
        headers = _make_headers({"arch": "x86_64;x86", "language": "de-DE"})
        device = json.loads(headers["Ual-Access-ProjectA"])["device_info"]
        assert device["abis"] == ["x86_64", "x86"]
        assert device["language"] == "de-DE"
        assert headers["User-Agent"].startswith("Dalvik/")

    def test_defaults(self):
        device = json.loads(_make_headers(None)["Ual-Access-ProjectA"])["device_info"]
        assert device["abis"][0] == "arm64-v8a"


class TestApiListing:
    def test_latest_is_first_downloadable_entry(self):
        session = FakeSession({VERSIONS_URL: listing(
            version("3.0", 30),
            version("2.0", 20, "https://d.example/app-2.0.xapk", kind="XAPK"),
            version("1.0", 10, "https://d.example/app-1.0.apk"),
        )})
        descriptor = APKPureSource(session=session).resolve(APP, LATEST)
        assert descriptor.resolved_version == "2.0"
        assert descriptor.packaging == "xapk"
        assert descriptor.primary_file.name == f"{APP}.xapk"
        assert descriptor.primary_file.expected_size == 3

    def test_exact_version_with_checksum(self):
        digest = hashlib.sha256(b"abc").hexdigest()
        session = FakeSession({VERSIONS_URL: listing(
            version("2.0", 20, "https://d.example/app-2.0.apk"),
            version("1.0", 10, "https://d.example/app-1.0.apk", sha256=digest),
        )})
        descriptor = APKPureSource(session=session).resolve(APP, ExactVersion("1.0"))
        assert descriptor.primary_file.remote_location == "https://d.example/app-1.0.apk"
        assert descriptor.declared_checksum == bytes.fromhex(digest)
        assert descriptor.packaging == "apk"

    def test_list_versions_deduplicates(self):
        session = FakeSession({VERSIONS_URL: listing(
            version("2.0", 20), version("2.0", 20), version("1.0", 10),
        )})
        versions = APKPureSource(session=session).list_versions(APP)
        assert [v.version for v in versions] == ["2.0", "1.0"]
        assert versions[0].date == "2024-01-01"

    def test_unknown_package(self):
        source = APKPureSource(session=FakeSession({VERSIONS_URL: FakeResponse(404)}))
        with pytest.raises(NotFound):
            source.list_versions(APP)

    def test_empty_listing_is_not_found(self):
        source = APKPureSource(session=FakeSession({VERSIONS_URL: listing()}))
        with pytest.raises(NotFound):
            source.resolve(APP, LATEST)

    @pytest.mark.parametrize("response", [
        FakeResponse(503),
        FakeResponse(200, "<html>maintenance</html>"),
        FakeResponse(200, json.dumps({"unexpected": True})),
    ])
    def test_unparsable_or_failing_listing_is_retryable(self, response):
        source = APKPureSource(session=FakeSession({VERSIONS_URL: response}))
        with pytest.raises(SourceUnavailable):
            source.resolve(APP, LATEST)

    def test_transport_error(self):
        source = APKPureSource(session=FakeSession({VERSIONS_URL: requests.ConnectionError("reset")}))
        with pytest.raises(SourceUnavailable, match="reset"):
            source.list_versions(APP)


class TestWebFallback:
    def make(self, page):
        api = FakeSession({VERSIONS_URL: listing(version("2.0", 20, "https://d.example/app-2.0.apk"))})
        web = FakeSession({
            f"https://apkpure.com/r/{APP}/versions": FakeResponse(
                200, url=f"https://apkpure.com/example-app/{APP}/versions"
            ),
            f"https://apkpure.com/example-app/{APP}/download/0.9": page,
        })
        return APKPureSource(session=api, web_session=web), web

    def test_old_version_from_download_page(self, tmp_path):
        page = FakeResponse(200, '<html><a id="download_link" href="https://d.example/old.xapk">Download XAPK</a></html>')
        source, web = self.make(page)
        web.routes["https://d.example/old.xapk"] = FakeResponse(200, b"old-bytes")

        descriptor = source.resolve(APP, ExactVersion("0.9"))
        assert descriptor.resolved_version == "0.9"
        assert descriptor.packaging == "xapk"

        result = source.fetch(descriptor.primary_file, tmp_path / "old.xapk")
        assert (tmp_path / "old.xapk").read_bytes() == b"old-bytes"
        assert result.sha256 == hashlib.sha256(b"old-bytes").digest()
        assert web.urls()[-1] == "https://d.example/old.xapk"

    def test_missing_version_page(self):
        source, _ = self.make(FakeResponse(404))
        with pytest.raises(VersionNotFound):
            source.resolve(APP, ExactVersion("0.9"))

    def test_page_without_link(self):
        source, _ = self.make(FakeResponse(200, "<html><p>nothing here</p></html>"))
        with pytest.raises(SourceUnavailable):
            source.resolve(APP, ExactVersion("0.9"))


def test_api_urls_fetched_with_api_session(tmp_path):
    api = FakeSession({"https://d.example/app.apk": FakeResponse(200, b"apk")})
    web = FakeSession()
    source = APKPureSource(session=api, web_session=web)
    source.fetch(FileRef("https://d.example/app.apk"), tmp_path / "app.apk")
    assert api.urls() == ["https://d.example/app.apk"]
    assert web.calls == []
