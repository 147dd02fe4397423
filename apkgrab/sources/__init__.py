from __future__ import annotations

from pathlib import Path
from typing import Any

from apkgrab.index_cache import IndexCache
from apkgrab.models import SourceKind
from apkgrab.sources.apkpure import APKPureSource
from apkgrab.sources.appgallery import AppGallerySource
from apkgrab.sources.base import APKSource
from apkgrab.sources.fdroid import FDroidSource
from apkgrab.sources.token_session import StoreSession, TokenSessionSource

SOURCE_REGISTRY: dict[SourceKind, type[APKSource]] = {
    SourceKind.SIGNED_REPOSITORY: FDroidSource,
    SourceKind.SCRAPED_LISTING: APKPureSource,
    SourceKind.TOKEN_SESSION: TokenSessionSource,
    SourceKind.VENDOR_GALLERY: AppGallerySource,
}


def build_sources(
    cache_dir: Path,
    store: StoreSession | None = None,
    session: Any = None,
) -> dict[SourceKind, APKSource]:
    """Instantiate one adapter per source kind."""
    return {
        SourceKind.SIGNED_REPOSITORY: FDroidSource(IndexCache(cache_dir, session=session), session=session),
        SourceKind.SCRAPED_LISTING: APKPureSource(session=session),
        SourceKind.TOKEN_SESSION: TokenSessionSource(store, session=session),
        SourceKind.VENDOR_GALLERY: AppGallerySource(session=session),
    }


__all__ = ["SOURCE_REGISTRY", "APKSource", "build_sources"]
