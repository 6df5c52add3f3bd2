#!/usr/bin/env python3
"""
DetectionDispatcher: fans finished artifacts out to detector backends.

Routing:
  - every artifact goes to the manipulation detector
  - far-end audio additionally goes to the voice-phishing detector
  - near-end audio never reaches the phishing detector

Each (artifact, detector) pair becomes one DetectionJob executed on the
dispatcher pool. Completion is delivered through the future's done-callback,
so submit() never waits on a backend.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor

from meetguard.artifacts import Artifact, ArtifactState, ChannelRole, DetectionJob, Verdict
from meetguard.detectors.base import DetectorBackend, DetectorError
from meetguard.result_router import ResultRouter

_log = logging.getLogger("dispatcher")

MANIPULATION = "manipulation"
PHISHING = "phishing"


class RetryingDetector(DetectorBackend):
    """Retries a backend on DetectorError with exponential backoff.

    The wrapped call still yields exactly one verdict or one failure.
    """

    def __init__(
        self,
        backend: DetectorBackend,
        *,
        max_retries: int = 0,
        backoff: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.name = backend.name
        self.display_name = backend.display_name
        self.max_retries = max(0, int(max_retries))
        self.backoff = max(0.0, float(backoff))
        self._sleep = sleep

    def detect(self, artifact: Artifact) -> Verdict:
        attempt = 0
        while True:
            try:
                return self.backend.detect(artifact)
            except DetectorError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = self.backoff * (2 ** (attempt - 1))
                _log.warning("[%s] %s attempt %d failed, retrying in %.1fs: %s",
                             artifact.name, self.name, attempt, delay, exc)
                self._sleep(delay)

    def close(self) -> None:
        self.backend.close()


class DetectionDispatcher:
    def __init__(
        self,
        detectors: Mapping[str, DetectorBackend],
        router: ResultRouter,
        *,
        max_workers: int = 4,
        max_retries: int = 0,
        retry_backoff: float = 1.5,
    ) -> None:
        self.router = router
        self.detectors: dict[str, DetectorBackend] = {}
        for name, backend in detectors.items():
            if max_retries > 0:
                backend = RetryingDetector(backend, max_retries=max_retries, backoff=retry_backoff)
            self.detectors[name] = backend
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="detect",
        )
        self._lock = threading.Lock()
        self._pending: set[DetectionJob] = set()
        self.jobs_submitted = 0
        self.jobs_failed = 0

    @staticmethod
    def route(artifact: Artifact) -> list[str]:
        """Detector names an artifact must be sent to."""
        names = [MANIPULATION]
        if artifact.role is ChannelRole.FAR_END:
            names.append(PHISHING)
        return names

    def _has_content(self, artifact: Artifact) -> bool:
        try:
            size = artifact.path.stat().st_size
        except OSError:
            _log.warning("%s: file missing, not submitted", artifact.name)
            return False
        if size <= 0:
            _log.warning("%s: file empty, not submitted", artifact.name)
            return False
        return True

    def submit(self, artifact: Artifact) -> list[DetectionJob]:
        if not self._has_content(artifact):
            return []
        targets: list[tuple[str, DetectorBackend]] = []
        for name in self.route(artifact):
            backend = self.detectors.get(name)
            if backend is None:
                _log.debug("%s: no %s detector configured", artifact.name, name)
                continue
            targets.append((name, backend))
        if not targets:
            return []

        # set before submitting; a fast verdict moves the state on from here
        previous_state = artifact.state
        artifact.state = ArtifactState.DISPATCHED
        jobs: list[DetectionJob] = []
        for name, backend in targets:
            job = DetectionJob(artifact=artifact, detector=name)
            try:
                job.future = self._pool.submit(backend.detect, artifact)
            except RuntimeError:
                _log.warning("%s: dispatcher closed, %s job dropped", artifact.name, name)
                continue
            with self._lock:
                self._pending.add(job)
                self.jobs_submitted += 1
            job.future.add_done_callback(lambda fut, job=job: self._complete(job, fut))
            jobs.append(job)
        if jobs:
            _log.debug("%s: dispatched to %s", artifact.name, ", ".join(j.detector for j in jobs))
        else:
            artifact.state = previous_state
        return jobs

    def _complete(self, job: DetectionJob, future: Future) -> None:
        try:
            exc = future.exception()
            if exc is not None:
                with self._lock:
                    self.jobs_failed += 1
                _log.warning("%s: %s detector failed: %s", job.artifact.name, job.detector, exc)
                job.fail(exc)
                return
            verdict = future.result()
            if not isinstance(verdict, Verdict):
                failure = DetectorError(f"{job.detector} returned {type(verdict).__name__}")
                with self._lock:
                    self.jobs_failed += 1
                _log.warning("%s: %s", job.artifact.name, failure)
                job.fail(failure)
                return
            job.verdict = verdict
            try:
                self.router.on_verdict(job.artifact, job.detector, verdict)
            except Exception:  # noqa: BLE001 - routing errors stay with this job
                _log.exception("%s: routing %s verdict failed", job.artifact.name, job.detector)
            job.resolve(verdict)
        finally:
            with self._lock:
                self._pending.discard(job)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            jobs = list(self._pending)
        for job in jobs:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not job.wait(remaining):
                return False
        return True

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting work. Jobs already submitted keep running.

        With ``wait`` the call blocks until they finish and then closes every backend.
        """
        self._pool.shutdown(wait=wait)
        if wait:
            for name, backend in self.detectors.items():
                try:
                    backend.close()
                except Exception:  # noqa: BLE001 - close the remaining backends
                    _log.exception("closing %s detector failed", name)
