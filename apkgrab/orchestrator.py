from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import nullcontext
from typing import Callable, Iterable, Mapping

from apkgrab.assembler import STALE_AFTER, PackageAssembler, clean_staging
from apkgrab.errors import AcquisitionError, Cancelled, ErrorKind
from apkgrab.models import (
    AcquisitionOutcome,
    AcquisitionRequest,
    BatchReport,
    Failure,
    RequestState,
    SourceKind,
    Success,
)
from apkgrab.resolver import VersionResolver
from apkgrab.sources.base import APKSource
from apkgrab.utils import format_elapsed, log_fail, log_header, log_info, log_ok, log_step

StateCallback = Callable[[AcquisitionRequest, RequestState], None]


class Orchestrator:
    """Run a batch of acquisition requests on a bounded worker pool.

    Each worker takes one request through resolve, verify and assemble
    before picking up the next. Whatever happens to a request ends up in
    its own :class:`AcquisitionOutcome`; nothing a single request does can
    stop the batch. Failed requests are reported, never retried.
    """

    def __init__(
        self,
        adapters: Mapping[SourceKind, APKSource],
        assembler: PackageAssembler,
        delay_ms: int = 0,
        per_source_limit: Mapping[SourceKind, int] | None = None,
        on_state_change: StateCallback | None = None,
    ):
        self.resolver = VersionResolver(adapters)
        self.assembler = assembler
        self.delay_ms = max(0, delay_ms)
        self.on_state_change = on_state_change
        self.cancelled = False
        self._cancel = threading.Event()
        self._source_slots = {
            kind: threading.BoundedSemaphore(limit)
            for kind, limit in (per_source_limit or {}).items()
            if limit and limit > 0
        }

    def cancel(self) -> None:
        """Stop handing out requests; in-flight ones stop at their next phase."""
        self._cancel.set()

    def run(
        self,
        requests: Iterable[AcquisitionRequest],
        max_concurrency: int,
    ) -> list[AcquisitionOutcome]:
        """One outcome per request, in request order."""
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        requests = list(requests)
        total = len(requests)
        if not total:
            return []

        removed = clean_staging(self.assembler.output_dir, max_age=STALE_AFTER)
        if removed:
            log_info(f"Removed {len(removed)} stale temporary path(s)")

        outcomes: dict[int, AcquisitionOutcome] = {}
        t0 = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=min(max_concurrency, total))
        futures = {pool.submit(self._process, req, i + 1, total): i for i, req in enumerate(requests)}
        try:
            for fut in as_completed(futures):
                outcomes[futures[fut]] = fut.result()
        except KeyboardInterrupt:
            log_fail("Interrupted, waiting for running requests to stop...")
            self.cancelled = True
            self._cancel.set()
            pool.shutdown(wait=True, cancel_futures=True)
            for fut, i in futures.items():
                if i in outcomes:
                    continue
                if fut.done() and not fut.cancelled():
                    outcomes[i] = fut.result()
                else:
                    outcomes[i] = _failed(requests[i], ErrorKind.CANCELLED, "Cancelled before start")
        finally:
            pool.shutdown(wait=True)

        ordered = [outcomes[i] for i in range(total)]
        failed = sum(1 for o in ordered if not o.ok)
        log_header("Done")
        log_info(
            f"{total - failed} downloaded, {failed} failed "
            f"in {format_elapsed(time.monotonic() - t0)}"
        )
        return ordered

    def run_batch(self, requests: Iterable[AcquisitionRequest], max_concurrency: int) -> BatchReport:
        outcomes = self.run(requests, max_concurrency)
        return BatchReport(outcomes, cancelled=self.cancelled)

    def _process(self, request: AcquisitionRequest, position: int, total: int) -> AcquisitionOutcome:
        if self._cancel.is_set():
            return _failed(request, ErrorKind.CANCELLED, "Cancelled before start")
        log_step(position, total, f"{request.label} from {request.source.value}")

        slot = self._source_slots.get(request.source)
        with slot if slot is not None else nullcontext():
            try:
                outcome = AcquisitionOutcome(request, self._pipeline(request))
            except AcquisitionError as e:
                outcome = _failed(request, e.kind, e.message)
            except OSError as e:
                outcome = _failed(request, ErrorKind.IO_FAILURE, str(e))
            except Exception as e:
                outcome = _failed(request, ErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}")

        if outcome.ok:
            self._set_state(request, RequestState.SUCCEEDED)
            names = ", ".join(p.name for p in outcome.result.written_paths)
            log_ok(f"{request.label} v{outcome.result.version}: {names}")
        else:
            self._set_state(request, RequestState.FAILED)
            prefix = "INTEGRITY FAILURE: " if outcome.result.kind.is_integrity else ""
            log_fail(f"{prefix}{request.label}: {outcome.result.message}")
        return outcome

    def _pipeline(self, request: AcquisitionRequest) -> Success:
        self._set_state(request, RequestState.RESOLVING)
        if self.delay_ms and self._cancel.wait(self.delay_ms / 1000):
            raise Cancelled(f"Cancelled before resolving {request.label}")
        descriptor = self.resolver.resolve(request)

        self._checkpoint(request)
        self._set_state(request, RequestState.VERIFYING)
        adapter = self.resolver.adapter_for(request.source)
        adapter.verify(descriptor, request.source_options)

        self._checkpoint(request)
        self._set_state(request, RequestState.ASSEMBLING)
        paths = self.assembler.assemble(request, descriptor, adapter, self._cancel)
        return Success(
            written_paths=tuple(paths),
            version=descriptor.resolved_version,
            unpinned_fingerprint=descriptor.verified_by if descriptor.trusted_on_first_use else None,
        )

    def _checkpoint(self, request: AcquisitionRequest) -> None:
        if self._cancel.is_set():
            raise Cancelled(f"Cancelled: {request.label}")

    def _set_state(self, request: AcquisitionRequest, state: RequestState) -> None:
        if self.on_state_change is not None:
            self.on_state_change(request, state)


def _failed(request: AcquisitionRequest, kind: ErrorKind, message: str) -> AcquisitionOutcome:
    return AcquisitionOutcome(request, Failure(kind, message))
