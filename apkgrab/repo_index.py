from __future__ import annotations

import json
from typing import Any

from apkgrab.errors import SourceUnavailable
from apkgrab.models import IndexEntry


def parse_index_json(payload: bytes, repo_url: str, rank: int = 0) -> tuple[str, dict[str, tuple[IndexEntry, ...]]]:
    """Parse an ``index-v1`` or ``index-v2`` JSON payload.

    Returns the repository's advertised address and, per app id, its
    entries ordered newest version code first. Entries without a usable
    SHA-256 are dropped since they could never be verified.
    """
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SourceUnavailable(f"Could not decode repository index from {repo_url}: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("packages"), dict):
        raise SourceUnavailable(f"Repository index from {repo_url} has no package list")

    repo = data.get("repo")
    address = repo.get("address") if isinstance(repo, dict) else None
    if not isinstance(address, str) or not address:
        address = repo_url
    address = address.rstrip("/")

    entries: dict[str, tuple[IndexEntry, ...]] = {}
    for app_id, value in data["packages"].items():
        if isinstance(value, list):
            parsed = [_entry_v1(item, address, rank) for item in value]
        elif isinstance(value, dict):
            versions = value.get("versions")
            items = versions.values() if isinstance(versions, dict) else ()
            parsed = [_entry_v2(item, address, rank) for item in items]
        else:
            continue
        found = [e for e in parsed if e is not None]
        if found:
            found.sort(key=lambda e: e.version_code, reverse=True)
            entries[app_id] = tuple(found)
    return address, entries


def _entry_v1(item: Any, address: str, rank: int) -> IndexEntry | None:
    if not isinstance(item, dict):
        return None
    if item.get("hashType", "sha256").lower() != "sha256":
        return None
    return _make_entry(
        version=item.get("versionName"),
        version_code=item.get("versionCode"),
        checksum=item.get("hash"),
        file_name=item.get("apkName"),
        size=item.get("size"),
        native_code=item.get("nativecode"),
        address=address,
        rank=rank,
    )


def _entry_v2(item: Any, address: str, rank: int) -> IndexEntry | None:
    if not isinstance(item, dict):
        return None
    file_info = item.get("file")
    manifest = item.get("manifest")
    if not isinstance(file_info, dict) or not isinstance(manifest, dict):
        return None
    name = file_info.get("name")
    return _make_entry(
        version=manifest.get("versionName"),
        version_code=manifest.get("versionCode"),
        checksum=file_info.get("sha256"),
        file_name=name.lstrip("/") if isinstance(name, str) else None,
        size=file_info.get("size"),
        native_code=manifest.get("nativecode"),
        address=address,
        rank=rank,
    )


def _make_entry(*, version, version_code, checksum, file_name, size, native_code,
                address: str, rank: int) -> IndexEntry | None:
    if not isinstance(version_code, int) or not isinstance(file_name, str) or not file_name:
        return None
    if not isinstance(checksum, str):
        return None
    try:
        digest = bytes.fromhex(checksum)
    except ValueError:
        return None
    if len(digest) != 32:
        return None
    if not isinstance(version, str) or not version:
        version = str(version_code)
    arch = tuple(a for a in native_code if isinstance(a, str)) if isinstance(native_code, list) else ()
    return IndexEntry(
        version=version,
        version_code=version_code,
        package_checksum=digest,
        file_name=file_name,
        size=size if isinstance(size, int) else None,
        native_code=arch,
        repository=address,
        rank=rank,
    )
