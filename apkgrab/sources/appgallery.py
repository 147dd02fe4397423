from __future__ import annotations

import json
import time

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
from apkgrab.sources.base import APKSource, Options, transport_errors
from apkgrab.utils import HTTP_TIMEOUT, log_source

_CLIENT_API_URL = "https://store-dre.hispace.dbankcloud.com/hwmarket/api/clientApi"
_USER_AGENT = "UpdateSDK##4.0.1.300##Android##Pixel 2##com.huawei.appmarket##12.0.1.301"


def _update_check_body(identifier: str, options: Options | None) -> dict[str, str]:
    """Form body of the store client's ``client.updateCheck`` call.

    The call asks whether version 1.0 of *identifier* has an update, which
    makes the store answer with its current build.
    """
    options = options or {}
    abis = (options.get("arch") or "arm64-v8a;armeabi-v7a;armeabi").replace(";", ",")
    locale = options.get("locale") or "en_US"
    pkg_info = {"params": [{
        "isPre": 0, "maple": 0, "oldVersion": "1.0", "package": identifier,
        "pkgMode": 0, "shellApkVer": 0, "targetSdkVersion": 19, "versionCode": 1,
    }]}
    device_spec = {"abis": abis, "dpi": 420, "preferLan": locale.split("_")[0]}
    return {
        "agVersion": "12.0.1",
        "brand": "Android",
        "density": "420",
        "deviceSpecParams": json.dumps(device_spec, separators=(",", ":")),
        "firmwareVersion": "10",
        "getSafeGame": "1",
        "gmsSupport": "0",
        "isUpdateSdk": "1",
        "locale": locale,
        "manufacturer": "Google",
        "method": "client.updateCheck",
        "packageName": "com.huawei.appmarket",
        "phoneType": "Pixel 2",
        "pkgInfo": json.dumps(pkg_info, separators=(",", ":")),
        "resolution": "1080_1794",
        "sdkVersion": "4.0.1.300",
        "serviceCountry": options.get("country") or "IE",
        "ts": str(int(time.time() * 1000)),
        "ver": "1.2",
        "version": "12.0.1.301",
        "versionCode": "120001301",
    }


class AppGallerySource(APKSource):
    """Huawei AppGallery. Only the current build of an app is offered."""

    name = "huawei"
    kind = SourceKind.VENDOR_GALLERY

    def _current(self, identifier: str, options: Options | None) -> dict:
        with transport_errors(self.name, f"update check for {identifier} failed"):
            resp = self.session.post(
                _CLIENT_API_URL,
                data=_update_check_body(identifier, options),
                headers={"User-Agent": _USER_AGENT},
                timeout=HTTP_TIMEOUT,
            )
        if resp.status_code != 200:
            raise SourceUnavailable(f"[huawei] Invalid app response for {identifier}: HTTP {resp.status_code}")
        try:
            body = json.loads(resp.text)
        except ValueError:
            raise SourceUnavailable(f"[huawei] Invalid app JSON response for {identifier}") from None
        if not isinstance(body, dict):
            raise SourceUnavailable(f"[huawei] Unrecognized response for {identifier}")
        entries = body.get("list")
        if not entries:
            raise NotFound(f"[huawei] Package not found: {identifier}")
        entry = entries[0]
        if not isinstance(entry, dict) or not isinstance(entry.get("downurl"), str):
            raise SourceUnavailable(f"[huawei] No download URL for: {identifier}")
        return entry

    def list_versions(self, identifier: str, options: Options | None = None) -> list[VersionInfo]:
        entry = self._current(identifier, options)
        code = entry.get("versionCode")
        return [VersionInfo(
            version=str(entry.get("version") or code or "latest"),
            version_code=int(code) if str(code).isdigit() else None,
        )]

    def resolve(
        self,
        identifier: str,
        version_spec: VersionSpec,
        options: Options | None = None,
    ) -> ArtifactDescriptor:
        entry = self._current(identifier, options)
        code = entry.get("versionCode")
        version = str(entry.get("version") or code or "latest")
        if isinstance(version_spec, ExactVersion) and version_spec.version != version:
            raise VersionNotFound(
                f"[huawei] Only the current version ({version}) of {identifier} is available, "
                f"not {version_spec.version}"
            )

        checksum = None
        sha256 = entry.get("sha256")
        if isinstance(sha256, str) and len(sha256) == 64:
            try:
                checksum = bytes.fromhex(sha256)
            except ValueError:
                checksum = None
        size = entry.get("size")
        log_source(self.name, f"{identifier}: v{version}")
        return ArtifactDescriptor(
            primary_file=FileRef(
                remote_location=entry["downurl"],
                role=FileRole.BASE,
                expected_size=size if isinstance(size, int) else None,
                name=f"{identifier}.apk",
                checksum=checksum,
            ),
            resolved_version=version,
            declared_checksum=checksum,
            version_code=int(code) if str(code).isdigit() else None,
        )
