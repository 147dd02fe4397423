import dataclasses
import os
import threading
import time

import pytest
import requests

from apkgrab import orchestrator as orchestrator_module
from apkgrab.assembler import STALE_AFTER, TMP_PREFIX, PackageAssembler
from apkgrab.errors import ErrorKind, SignatureInvalid
from apkgrab.models import (
    AcquisitionRequest,
    ArtifactDescriptor,
    FileRole,
    RequestState,
    SourceKind,
)
from apkgrab.orchestrator import Orchestrator
from tests.fakes import FakeResponse, FakeSource, serve

KIND = SourceKind.SCRAPED_LISTING


def make_source(identifiers):
    source = FakeSource()
    for identifier in identifiers:
        ref = serve(source.session, f"https://x/{identifier}.apk", identifier.encode())
        source.descriptors[identifier] = ArtifactDescriptor(ref, "1.0", declared_checksum=ref.checksum)
    return source


def requests_for(identifiers):
    return [AcquisitionRequest(i, source=KIND) for i in identifiers]


class InFlightTracker:
    def __init__(self):
        self.lock = threading.Lock()
        self.current = 0
        self.peak = 0
        self.states = []

    def __call__(self, request, state):
        with self.lock:
            self.states.append((request.identifier, state))
            if state is RequestState.RESOLVING:
                self.current += 1
                self.peak = max(self.peak, self.current)
            elif state in (RequestState.SUCCEEDED, RequestState.FAILED):
                self.current -= 1


class SlowSource(FakeSource):
    def resolve(self, identifier, version_spec, options=None):
        time.sleep(0.02)
        return super().resolve(identifier, version_spec, options)


def test_one_unknown_identifier_in_a_batch(tmp_path):
    ids = [f"org.example.app{i}" for i in range(1, 6)]
    source = make_source([i for i in ids if i != "org.example.app3"])
    orch = Orchestrator({KIND: source}, PackageAssembler(tmp_path))

    outcomes = orch.run(requests_for(ids), max_concurrency=2)
    assert len(outcomes) == 5
    assert [o.request.identifier for o in outcomes] == ids
    assert sum(o.ok for o in outcomes) == 4
    (failed,) = [o for o in outcomes if not o.ok]
    assert failed.request.identifier == "org.example.app3"
    assert failed.result.kind is ErrorKind.NOT_FOUND
    assert (tmp_path / "org.example.app1.apk").read_bytes() == b"org.example.app1"


def test_state_sequence(tmp_path):
    tracker = InFlightTracker()
    orch = Orchestrator({KIND: make_source(["a.b"])}, PackageAssembler(tmp_path), on_state_change=tracker)
    orch.run(requests_for(["a.b"]), max_concurrency=1)
    assert [s for _, s in tracker.states] == [
        RequestState.RESOLVING,
        RequestState.VERIFYING,
        RequestState.ASSEMBLING,
        RequestState.SUCCEEDED,
    ]


def test_max_concurrency_is_never_exceeded(tmp_path):
    ids = [f"org.example.app{i}" for i in range(12)]
    source = SlowSource()
    for identifier in ids:
        ref = serve(source.session, f"https://x/{identifier}.apk", identifier.encode())
        source.descriptors[identifier] = ArtifactDescriptor(ref, "1.0")
    tracker = InFlightTracker()
    orch = Orchestrator({KIND: source}, PackageAssembler(tmp_path), on_state_change=tracker)

    outcomes = orch.run(requests_for(ids), max_concurrency=3)
    assert all(o.ok for o in outcomes)
    assert 1 <= tracker.peak <= 3
    assert tracker.current == 0


def test_per_source_limit(tmp_path):
    ids = [f"org.example.app{i}" for i in range(6)]
    source = SlowSource()
    for identifier in ids:
        ref = serve(source.session, f"https://x/{identifier}.apk", identifier.encode())
        source.descriptors[identifier] = ArtifactDescriptor(ref, "1.0")
    tracker = InFlightTracker()
    orch = Orchestrator(
        {KIND: source}, PackageAssembler(tmp_path),
        per_source_limit={KIND: 1}, on_state_change=tracker,
    )
    orch.run(requests_for(ids), max_concurrency=4)
    assert tracker.peak == 1


def test_failures_are_isolated(tmp_path):
    source = make_source(["ok.one", "ok.two", "bad.sum", "boom.app"])
    source.session.routes["https://x/bad.sum.apk"] = FakeResponse(200, b"tampered")
    real_resolve = source.resolve

    def resolve(identifier, version_spec, options=None):
        if identifier == "boom.app":
            raise KeyError("surprise")
        return real_resolve(identifier, version_spec, options)

    source.resolve = resolve
    report = Orchestrator({KIND: source}, PackageAssembler(tmp_path)).run_batch(
        requests_for(["ok.one", "bad.sum", "boom.app", "ok.two"]), max_concurrency=2
    )
    kinds = {o.request.identifier: (o.result.kind if not o.ok else None) for o in report.outcomes}
    assert kinds == {
        "ok.one": None,
        "ok.two": None,
        "bad.sum": ErrorKind.CHECKSUM_MISMATCH,
        "boom.app": ErrorKind.UNEXPECTED,
    }
    assert report.exit_code == 1
    data = report.to_dict()
    assert data["succeeded"] == 2 and data["failed"] == 2
    bad = next(o for o in data["outcomes"] if o["identifier"] == "bad.sum")
    assert bad["integrity_failure"] is True
    assert not (tmp_path / "bad.sum.apk").exists()


def test_verification_failure_stops_before_assembly(tmp_path):
    source = make_source(["a.b"])

    def verify(descriptor, options=None):
        raise SignatureInvalid("not backed by a verified index")

    source.verify = verify
    (outcome,) = Orchestrator({KIND: source}, PackageAssembler(tmp_path)).run(
        requests_for(["a.b"]), max_concurrency=1
    )
    assert outcome.result.kind is ErrorKind.SIGNATURE_INVALID
    assert source.session.calls == []


def test_cancel_before_run(tmp_path):
    orch = Orchestrator({KIND: make_source(["a.b", "c.d"])}, PackageAssembler(tmp_path))
    orch.cancel()
    outcomes = orch.run(requests_for(["a.b", "c.d"]), max_concurrency=2)
    assert [o.result.kind for o in outcomes] == [ErrorKind.CANCELLED, ErrorKind.CANCELLED]


def test_cancel_during_run_stops_at_next_phase(tmp_path):
    ids = ["a.one", "a.two", "a.three"]
    source = make_source(ids)
    orch = Orchestrator({KIND: source}, PackageAssembler(tmp_path))
    real_resolve = source.resolve

    def resolve(identifier, version_spec, options=None):
        orch.cancel()
        return real_resolve(identifier, version_spec, options)

    source.resolve = resolve
    outcomes = orch.run(requests_for(ids), max_concurrency=1)
    assert len(outcomes) == 3
    assert all(o.result.kind is ErrorKind.CANCELLED for o in outcomes)
    assert sorted(p.name for p in tmp_path.iterdir()) == []


def test_keyboard_interrupt_reports_every_request(tmp_path, monkeypatch):
    def interrupted(_futures):
        raise KeyboardInterrupt
        yield  # pragma: no cover

    monkeypatch.setattr(orchestrator_module, "as_completed", interrupted)
    ids = [f"org.example.app{i}" for i in range(5)]
    orch = Orchestrator({KIND: make_source(ids)}, PackageAssembler(tmp_path))

    report = orch.run_batch(requests_for(ids), max_concurrency=1)
    assert report.cancelled
    assert report.exit_code == 130
    assert len(report.outcomes) == 5
    assert all(o.ok or o.result.kind is ErrorKind.CANCELLED for o in report.outcomes)
    assert not any(p.name.startswith(TMP_PREFIX) for p in tmp_path.iterdir())


def test_stale_staging_removed_at_start(tmp_path):
    stale = tmp_path / f"{TMP_PREFIX}old"
    stale.mkdir()
    (stale / "base.apk.part").write_bytes(b"x")
    long_ago = time.time() - STALE_AFTER - 60
    for path in (stale / "base.apk.part", stale):
        os.utime(path, (long_ago, long_ago))
    fresh = tmp_path / f"{TMP_PREFIX}live"
    fresh.mkdir()

    orch = Orchestrator({KIND: make_source(["a.b"])}, PackageAssembler(tmp_path))
    orch.run(requests_for(["a.b"]), max_concurrency=1)
    assert sorted(p.name for p in tmp_path.iterdir()) == [f"{TMP_PREFIX}live", "a.b.apk"]


def test_second_run_in_same_directory_keeps_live_staging(tmp_path):
    source = FakeSource()
    base = serve(source.session, "https://x/base.apk", b"base", name="base.apk")
    split = serve(source.session, "https://x/config.apk", b"config", FileRole.SPLIT_CONFIG,
                  name="config.arm64.apk")
    source.descriptors["a.app"] = ArtifactDescriptor(base, "1.0", auxiliary_files=(split,))
    other_outcomes = []

    def config_part(_url, _headers):
        # Another batch starts in the same output directory mid-download.
        other = Orchestrator({KIND: make_source(["b.app"])}, PackageAssembler(tmp_path))
        other_outcomes.extend(other.run(requests_for(["b.app"]), max_concurrency=1))
        return FakeResponse(200, b"config")

    source.session.routes["https://x/config.apk"] = config_part
    orch = Orchestrator({KIND: source}, PackageAssembler(tmp_path, fanout=1))
    (outcome,) = orch.run(requests_for(["a.app"]), max_concurrency=1)

    assert outcome.ok
    assert all(path.is_file() for path in outcome.result.written_paths)
    assert sorted(p.name for p in (tmp_path / "a.app.split").iterdir()) == ["base.apk", "config.arm64.apk"]
    assert [o.ok for o in other_outcomes] == [True]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["a.app.split", "b.app.apk"]


def test_delay_before_first_request(tmp_path):
    orch = Orchestrator({KIND: make_source(["a.b"])}, PackageAssembler(tmp_path), delay_ms=5)
    (outcome,) = orch.run(requests_for(["a.b"]), max_concurrency=1)
    assert outcome.ok


def test_empty_batch_and_bad_limit(tmp_path):
    orch = Orchestrator({}, PackageAssembler(tmp_path))
    assert orch.run([], max_concurrency=1) == []
    with pytest.raises(ValueError):
        orch.run([], max_concurrency=0)


def test_missing_adapter_is_an_unexpected_failure(tmp_path):
    orch = Orchestrator({}, PackageAssembler(tmp_path))
    (outcome,) = orch.run([AcquisitionRequest("a.b", source=SourceKind.VENDOR_GALLERY)], max_concurrency=1)
    assert outcome.result.kind is ErrorKind.UNEXPECTED
    assert "huawei" in outcome.result.message


def test_report_flags_retryable_failures_and_unpinned_signers(tmp_path):
    source = make_source(["down.app", "tofu.app"])
    source.session.routes["https://x/down.app.apk"] = requests.ConnectionError("offline")
    tofu = source.descriptors["tofu.app"]
    source.descriptors["tofu.app"] = dataclasses.replace(tofu, verified_by=b"\xab" * 32, trusted_on_first_use=True)

    report = Orchestrator({KIND: source}, PackageAssembler(tmp_path, retries=0)).run_batch(
        requests_for(["down.app", "tofu.app"]), max_concurrency=1
    )
    down, trusted = report.to_dict()["outcomes"]
    assert down["error"] == "SourceUnavailable"
    assert down["retryable"] is True
    assert "integrity_failure" not in down
    assert trusted["status"] == "succeeded"
    assert trusted["unpinned_fingerprint"] == "ab" * 32


def test_pinned_success_has_no_unpinned_fingerprint(tmp_path):
    (outcome,) = Orchestrator({KIND: make_source(["a.b"])}, PackageAssembler(tmp_path)).run(
        requests_for(["a.b"]), max_concurrency=1
    )
    assert outcome.result.unpinned_fingerprint is None
    assert "unpinned_fingerprint" not in outcome.to_dict()
