from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import platformdirs
import yaml

from apkgrab.models import AcquisitionRequest, SourceKind, parse_version_spec


def default_cache_dir() -> Path:
    return Path(platformdirs.user_cache_dir("apkgrab"))


def _option_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ";".join(str(v) for v in value)
    return str(value)


def _source_map(raw: Any, what: str) -> dict[SourceKind, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"{what} must be a mapping of source name to value")
    return {SourceKind.parse(str(name)): value for name, value in raw.items()}


@dataclass
class Config:
    """Settings resolved once at start-up and handed to the core.

    ``source_options`` holds default options per source; request-level
    overrides are merged over them by :meth:`build_request`.
    """

    output_dir: Path = Path(".")
    cache_dir: Path = field(default_factory=default_cache_dir)
    max_concurrency: int = 4
    per_source_limit: dict[SourceKind, int] = field(default_factory=dict)
    fanout: int = 4
    delay_ms: int = 0
    download_retries: int = 2
    source_options: dict[SourceKind, dict[str, str]] = field(default_factory=dict)

    def __post_init__(self):
        self.output_dir = Path(self.output_dir).expanduser()
        self.cache_dir = Path(self.cache_dir).expanduser()
        for name in ("max_concurrency", "fanout"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be at least 1")
        for name in ("delay_ms", "download_retries"):
            if int(getattr(self, name)) < 0:
                raise ValueError(f"{name} must not be negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Config:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config key(s): {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for key in ("output_dir", "cache_dir"):
            if data.get(key) is not None:
                kwargs[key] = Path(str(data[key]))
        for key in ("max_concurrency", "fanout", "delay_ms", "download_retries"):
            if data.get(key) is not None:
                kwargs[key] = int(data[key])
        kwargs["per_source_limit"] = {
            kind: int(limit)
            for kind, limit in _source_map(data.get("per_source_limit"), "per_source_limit").items()
        }
        options: dict[SourceKind, dict[str, str]] = {}
        for kind, opts in _source_map(data.get("source_options"), "source_options").items():
            if not isinstance(opts, Mapping):
                raise ValueError(f"source_options.{kind.value} must be a mapping")
            options[kind] = {str(k): _option_value(v) for k, v in opts.items() if v is not None}
        kwargs["source_options"] = options
        return cls(**kwargs)

    def options_for(self, source: SourceKind, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        merged = dict(self.source_options.get(source, {}))
        merged.update(overrides or {})
        return merged

    def build_request(
        self,
        identifier: str,
        version: str | None = None,
        source: SourceKind | str = SourceKind.SIGNED_REPOSITORY,
        overrides: Mapping[str, str] | None = None,
    ) -> AcquisitionRequest:
        identifier = identifier.strip()
        if not identifier:
            raise ValueError("Empty app identifier")
        if not isinstance(source, SourceKind):
            source = SourceKind.parse(source)
        return AcquisitionRequest(
            identifier=identifier,
            version_spec=parse_version_spec(version),
            source=source,
            source_options=self.options_for(source, overrides),
        )


def load_config(path: Path | str) -> Config:
    """Read a YAML config file. An empty file gives the defaults."""
    path = Path(path).expanduser()
    if not path.exists():
        raise ValueError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid config file {path}: {e}") from e
    if data is None:
        return Config()
    if not isinstance(data, Mapping):
        raise ValueError(f"Config file {path} must hold a mapping")
    return Config.from_dict(data)
