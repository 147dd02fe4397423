from __future__ import annotations

import json
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from bs4 import BeautifulSoup

from apkgrab.errors import NotFound, SourceUnavailable, VersionNotFound
from apkgrab.models import (
    ArtifactDescriptor,
    ExactVersion,
    FileRef,
    FileRole,
    SourceKind,
    VersionInfo,
    VersionSpec,
)
from apkgrab.resolver import parse_arch_preference
from apkgrab.sources.base import APKSource, Options, transport_errors
from apkgrab.utils import (
    HTTP_TIMEOUT,
    DownloadedFile,
    ProgressCallback,
    create_cf_session,
    download_file,
    log_source,
)

_WEB_BASE = "https://apkpure.com"
_VERSIONS_URL = "https://api.pureapk.com/m/v3/cms/app_version"

_USER_AGENT = (
    "Dalvik/2.1.0 (Linux; U; Android 15; Pixel 4a (5G) Build/BP1A.250505.005); "
    "APKPure/3.20.53 (Aegon)"
)
_DEFAULT_ABIS = ["arm64-v8a", "armeabi-v7a", "armeabi", "x86", "x86_64"]


def _make_headers(options: Options | None) -> dict[str, str]:
    """Build headers matching the APKPure mobile app for the given device."""
    options = options or {}
    device_info = {
        "abis": parse_arch_preference(options.get("arch")) or _DEFAULT_ABIS,
        "language": options.get("language") or "en-US",
        "os_ver": options.get("os_ver") or "35",
    }
    return {
        "User-Agent": _USER_AGENT,
        "Ual-Access-Businessid": "projecta",
        "Ual-Access-ProjectA": json.dumps({"device_info": device_info}, separators=(",", ":")),
    }


def _checksum(asset: dict) -> bytes | None:
    value = asset.get("sha256")
    if isinstance(value, str) and len(value) == 64:
        try:
            return bytes.fromhex(value)
        except ValueError:
            return None
    return None


@contextmanager
def _web_errors(what: str) -> Iterator[None]:
    """Report curl_cffi transport failures as ``SourceUnavailable``."""
    from curl_cffi import CurlError

    try:
        yield
    except CurlError as e:
        raise SourceUnavailable(f"[apkpure] {what}: {e}") from e


class APKPureSource(APKSource):
    """APKPure, through its mobile versions API with a web fallback.

    Old versions missing from the API listing are looked up on the web
    download page. A response that cannot be parsed is reported as
    ``SourceUnavailable``: a changed page and a transient error look alike.
    """

    name = "apkpure"
    kind = SourceKind.SCRAPED_LISTING

    def __init__(self, session: Any = None, web_session: Any = None):
        super().__init__(session)
        self._web_session = web_session
        self._web_links: set[str] = set()
        self._lock = threading.Lock()

    def _get_web_session(self):
        """Lazy-init curl_cffi session for web scraping (Cloudflare bypass)."""
        with self._lock:
            if self._web_session is None:
                self._web_session = create_cf_session()
            return self._web_session

    def _version_list(self, identifier: str, options: Options | None) -> list[dict]:
        with transport_errors(self.name, f"version listing for {identifier} failed"):
            resp = self.session.get(
                _VERSIONS_URL,
                params={"hl": "en-US", "package_name": identifier},
                headers=_make_headers(options),
                timeout=HTTP_TIMEOUT,
            )
        if resp.status_code == 404:
            raise NotFound(f"[apkpure] Package not found: {identifier}")
        if resp.status_code != 200:
            raise SourceUnavailable(f"[apkpure] Invalid app response for {identifier}: HTTP {resp.status_code}")
        try:
            body = json.loads(resp.text)
        except ValueError:
            raise SourceUnavailable(f"[apkpure] Invalid app JSON response for {identifier}") from None
        version_list = body.get("version_list") if isinstance(body, dict) else None
        if not isinstance(version_list, list):
            raise SourceUnavailable(f"[apkpure] Unrecognized version listing for {identifier}")
        items = [v for v in version_list if isinstance(v, dict) and v.get("version_name")]
        if not items:
            raise NotFound(f"[apkpure] No versions for: {identifier}")
        return items

    def list_versions(self, identifier: str, options: Options | None = None) -> list[VersionInfo]:
        versions: list[VersionInfo] = []
        seen: set[str] = set()
        for item in self._version_list(identifier, options):
            name = str(item["version_name"])
            if name in seen:
                continue
            seen.add(name)
            code = item.get("version_code")
            versions.append(VersionInfo(
                version=name,
                version_code=int(code) if str(code).isdigit() else None,
                date=str(item.get("update_date") or ""),
            ))
        return versions

    def resolve(
        self,
        identifier: str,
        version_spec: VersionSpec,
        options: Options | None = None,
    ) -> ArtifactDescriptor:
        items = self._version_list(identifier, options)
        wanted = version_spec.version if isinstance(version_spec, ExactVersion) else None

        for item in items:
            if wanted is not None and str(item["version_name"]) != wanted:
                continue
            asset = item.get("asset")
            if not isinstance(asset, dict) or not asset.get("url"):
                continue
            version = str(item["version_name"])
            file_type = "xapk" if str(asset.get("type", "APK")).upper() == "XAPK" else "apk"
            size = asset.get("size")
            log_source(self.name, f"{identifier}: v{version} ({file_type})")
            checksum = _checksum(asset)
            return ArtifactDescriptor(
                primary_file=FileRef(
                    remote_location=str(asset["url"]),
                    role=FileRole.BASE,
                    expected_size=size if isinstance(size, int) else None,
                    name=f"{identifier}.{file_type}",
                    checksum=checksum,
                ),
                resolved_version=version,
                declared_checksum=checksum,
                version_code=int(item["version_code"]) if str(item.get("version_code")).isdigit() else None,
                packaging=file_type,
            )

        if wanted is None:
            raise SourceUnavailable(f"[apkpure] No download URL for: {identifier}")
        return self._resolve_web(identifier, wanted)

    def _find_slug(self, identifier: str) -> str | None:
        """Resolve package name to APKPure URL slug via redirect."""
        session = self._get_web_session()
        with _web_errors(f"slug lookup for {identifier} failed"):
            resp = session.get(
                f"{_WEB_BASE}/r/{identifier}/versions",
                timeout=HTTP_TIMEOUT,
                allow_redirects=True,
            )
        if resp.status_code != 200:
            return None
        # URL becomes: https://apkpure.com/{slug}/{package}/versions
        m = re.search(rf"apkpure\.com/([^/]+)/{re.escape(identifier)}", str(resp.url))
        return m.group(1) if m else None

    def _resolve_web(self, identifier: str, version: str) -> ArtifactDescriptor:
        """Find a specific version's download link on the web site."""
        slug = self._find_slug(identifier)
        if not slug:
            raise VersionNotFound(f"[apkpure] Version {version} not found for {identifier}")

        session = self._get_web_session()
        with _web_errors(f"download page for {identifier} v{version} failed"):
            resp = session.get(
                f"{_WEB_BASE}/{slug}/{identifier}/download/{version}",
                timeout=HTTP_TIMEOUT,
            )
        if resp.status_code == 404:
            raise VersionNotFound(f"[apkpure] Version {version} not found for {identifier}")
        if resp.status_code != 200:
            raise SourceUnavailable(f"[apkpure] Version page for {identifier} v{version}: HTTP {resp.status_code}")

        soup = BeautifulSoup(resp.text, "lxml")
        dl_link = soup.select_one("a#download_link[href]") or soup.select_one("a.download-start-btn[href]")
        if not dl_link:
            raise SourceUnavailable(f"[apkpure] No download link for: {identifier} v{version}")

        url = str(dl_link["href"])
        btn_text = dl_link.get_text(strip=True).lower()
        file_type = "xapk" if "xapk" in btn_text else "apk"
        with self._lock:
            self._web_links.add(url)
        log_source(self.name, f"{identifier}: v{version} ({file_type}, web)")
        return ArtifactDescriptor(
            primary_file=FileRef(remote_location=url, role=FileRole.BASE, name=f"{identifier}.{file_type}"),
            resolved_version=version,
            packaging=file_type,
        )

    def fetch(self, ref: FileRef, dest: Path, progress: ProgressCallback | None = None) -> DownloadedFile:
        with self._lock:
            from_web = ref.remote_location in self._web_links
        if not from_web:
            return super().fetch(ref, dest, progress)
        with _web_errors(f"download of {ref.remote_location} failed"):
            return download_file(ref.remote_location, dest, self._get_web_session(), progress=progress)
