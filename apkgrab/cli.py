from __future__ import annotations

import argparse
import csv
import json
import sys
from pathlib import Path

from apkgrab import __version__
from apkgrab.assembler import PackageAssembler, clean_staging
from apkgrab.config import Config, load_config
from apkgrab.models import AcquisitionRequest, SourceKind
from apkgrab.orchestrator import Orchestrator
from apkgrab.sources import SOURCE_REGISTRY, build_sources
from apkgrab.utils import log_fail, log_header, log_info, log_ok, stderr_progress

_SOURCE_CHOICES = [kind.value for kind in SourceKind]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="apkgrab",
        description="Download Android packages from F-Droid, APKPure, Huawei AppGallery and Google Play",
    )
    parser.add_argument("-V", "--version", action="version", version=f"apkgrab {__version__}")
    sub = parser.add_subparsers(dest="command")

    # download
    dl = sub.add_parser("download", help="Download one or more apps")
    apps = dl.add_mutually_exclusive_group(required=True)
    apps.add_argument(
        "-a", "--app", dest="apps", nargs="+", action="extend", metavar="ID[@VERSION[@ARCH]]",
        help="App ID, optionally pinned to a version (e.g. org.fdroid.fdroid@1.19.0)",
    )
    apps.add_argument("-c", "--csv", type=Path, help="CSV file with one app per row")
    dl.add_argument("-f", "--field", type=int, default=1, help="CSV column holding app IDs (1-based)")
    dl.add_argument("--no-header", action="store_true", help="CSV file has no header row")
    _add_common(dl)
    dl.add_argument("-o", "--output", type=Path, help="Output directory")
    dl.add_argument("-r", "--parallel", type=int, help="Number of apps fetched at a time")
    dl.add_argument("-s", "--sleep-duration", dest="sleep_ms", type=int,
                    help="Pause (ms) before each app's first request")

    # versions
    vs = sub.add_parser("versions", help="List available versions")
    vs.add_argument("-a", "--app", dest="apps", nargs="+", action="extend", required=True, metavar="ID")
    _add_common(vs)

    # sources
    sub.add_parser("sources", help="List available sources")

    # clean
    cl = sub.add_parser(
        "clean", help="Remove leftover temporary files from an output directory (no download may be running there)"
    )
    cl.add_argument("-o", "--output", type=Path, default=Path("."), help="Output directory")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "sources":
            return _cmd_sources()
        elif args.command == "download":
            return _cmd_download(args)
        elif args.command == "versions":
            return _cmd_versions(args)
        elif args.command == "clean":
            return _cmd_clean(args)
    except KeyboardInterrupt:
        sys.stderr.write("\n")
        log_fail("Interrupted")
        return 130
    except (RuntimeError, ValueError, OSError) as e:
        log_fail(str(e))
        return 1

    return 1


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-d", "--download-source", dest="source", default=SourceKind.SIGNED_REPOSITORY.value,
        help=f"Where to download from ({', '.join(_SOURCE_CHOICES)})",
    )
    p.add_argument(
        "-O", "--options", action="append", default=[], metavar="KEY=VALUE[,KEY=VALUE...]",
        help="Source options, e.g. arch=arm64-v8a;armeabi-v7a or repo=URL?fingerprint=HEX",
    )
    p.add_argument("--config", type=Path, help="YAML config file")


def parse_options(values: list[str]) -> dict[str, str]:
    """Parse ``-O key=value,key=value`` arguments."""
    options: dict[str, str] = {}
    for value in values:
        for pair in value.split(","):
            pair = pair.strip()
            if not pair:
                continue
            key, sep, val = pair.partition("=")
            if not sep or not key.strip():
                raise ValueError(f"Invalid option (expected key=value): {pair}")
            options[key.strip()] = val.strip()
    return options


def parse_app(spec: str) -> tuple[str, str | None, str | None]:
    """Split ``id[@version[@arch]]``."""
    parts = spec.strip().split("@")
    if len(parts) > 3 or not parts[0]:
        raise ValueError(f"Invalid app: {spec} (expected ID[@VERSION[@ARCH]])")
    version = parts[1] if len(parts) > 1 and parts[1] else None
    arch = parts[2] if len(parts) > 2 and parts[2] else None
    return parts[0], version, arch


def read_csv_apps(path: Path, field: int = 1, header: bool = True) -> list[str]:
    """App strings from column *field* (1-based) of a CSV file."""
    if field < 1:
        raise ValueError("CSV field numbers start at 1")
    apps: list[str] = []
    with open(path, newline="", encoding="utf-8") as f:
        for i, row in enumerate(csv.reader(f)):
            if header and i == 0:
                continue
            if len(row) < field:
                continue
            value = row[field - 1].strip()
            if value and not value.startswith("#"):
                apps.append(value)
    return apps


def _load(args: argparse.Namespace) -> Config:
    config = load_config(args.config) if args.config else Config()
    if getattr(args, "output", None) is not None:
        config.output_dir = args.output
    if getattr(args, "parallel", None) is not None:
        if args.parallel < 1:
            raise ValueError("--parallel must be at least 1")
        config.max_concurrency = args.parallel
    if getattr(args, "sleep_ms", None) is not None:
        if args.sleep_ms < 0:
            raise ValueError("--sleep-duration must not be negative")
        config.delay_ms = args.sleep_ms
    return config


def build_requests(config: Config, apps: list[str], source: SourceKind, overrides: dict[str, str]) -> list[AcquisitionRequest]:
    requests = []
    for app in apps:
        identifier, version, arch = parse_app(app)
        options = dict(overrides)
        if arch:
            options["arch"] = arch
        requests.append(config.build_request(identifier, version, source, options))
    return requests


def _cmd_sources() -> int:
    data = [{"name": kind.value, "kind": kind.name.lower(), "adapter": cls.__name__}
            for kind, cls in SOURCE_REGISTRY.items()]
    print(json.dumps(data, indent=2))
    return 0


def _cmd_download(args: argparse.Namespace) -> int:
    config = _load(args)
    source = SourceKind.parse(args.source)
    apps = args.apps or read_csv_apps(args.csv, args.field, header=not args.no_header)
    if not apps:
        log_fail("No apps to download")
        return 1
    requests = build_requests(config, apps, source, parse_options(args.options))

    progress = stderr_progress() if config.max_concurrency == 1 else None
    assembler = PackageAssembler(
        config.output_dir,
        fanout=config.fanout,
        retries=config.download_retries,
        progress=progress,
    )
    orchestrator = Orchestrator(
        build_sources(config.cache_dir),
        assembler,
        delay_ms=config.delay_ms,
        per_source_limit=config.per_source_limit,
    )

    log_header(f"Downloading {len(requests)} app(s) from {source.value} into {config.output_dir}")
    report = orchestrator.run_batch(requests, config.max_concurrency)
    print(json.dumps(report.to_dict(), indent=2))
    for outcome in report.failed:
        if outcome.result.kind.is_integrity:
            log_fail(f"INTEGRITY FAILURE for {outcome.request.label}: {outcome.result.message}")
    return report.exit_code


def _cmd_versions(args: argparse.Namespace) -> int:
    config = _load(args)
    source = SourceKind.parse(args.source)
    overrides = parse_options(args.options)
    adapter = build_sources(config.cache_dir)[source]

    data = {}
    for app in args.apps:
        identifier, _version, arch = parse_app(app)
        options = config.options_for(source, overrides)
        if arch:
            options["arch"] = arch
        log_header(f"Scanning versions for {identifier}")
        versions = adapter.list_versions(identifier, options)
        log_ok(f"Found {len(versions)} version(s)")
        data[identifier] = [v.to_dict() for v in versions]
    print(json.dumps(data, indent=2))
    return 0


def _cmd_clean(args: argparse.Namespace) -> int:
    removed = clean_staging(args.output)
    for path in removed:
        log_info(f"Removed {path}")
    log_ok(f"{len(removed)} temporary path(s) removed")
    print(json.dumps([str(p) for p in removed], indent=2))
    return 0
