import threading
from pathlib import Path

import pytest

from meetguard.alert_sinks import MemoryAlertSink
from meetguard.artifacts import ArtifactState, AudioSlice, ChannelRole, Snapshot, Verdict, VideoSegment
from meetguard.detectors.base import DetectorBackend, DetectorError
from meetguard.dispatcher import DetectionDispatcher, RetryingDetector
from meetguard.result_router import ResultRouter


class FakeDetector(DetectorBackend):
    def __init__(self, name, verdict=None, error=None, gate=None):
        self.name = name
        self.display_name = name.title()
        self.verdict = verdict
        self.error = error
        self.gate = gate
        self.seen = []
        self.lock = threading.Lock()

    def detect(self, artifact):
        with self.lock:
            self.seen.append(artifact.name)
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.error is not None:
            raise self.error
        return self.verdict


def _file(tmp_path: Path, name: str, data: bytes = b"payload") -> Path:
    path = tmp_path / name
    path.write_bytes(data)
    return path


def _setup(manipulation=None, phishing=None, **kwargs):
    sink = MemoryAlertSink()
    router = ResultRouter(sink)
    detectors = {
        "manipulation": manipulation or FakeDetector("manipulation", Verdict("AUTHENTIC")),
        "phishing": phishing or FakeDetector("phishing", Verdict("SAFE")),
    }
    dispatcher = DetectionDispatcher(detectors, router, **kwargs)
    return dispatcher, detectors, sink


def test_far_and_near_end_routing(tmp_path: Path):
    dispatcher, detectors, _ = _setup()
    tap = AudioSlice(path=_file(tmp_path, "Zoom_tap_20250101_120000_0.wav"), channel=ChannelRole.FAR_END)
    mic = AudioSlice(path=_file(tmp_path, "Zoom_mic_20250101_120000_0.wav"), channel=ChannelRole.NEAR_END)

    tap_jobs = dispatcher.submit(tap)
    mic_jobs = dispatcher.submit(mic)
    assert dispatcher.wait_idle(5.0)

    assert sorted(j.detector for j in tap_jobs) == ["manipulation", "phishing"]
    assert [j.detector for j in mic_jobs] == ["manipulation"]
    assert detectors["phishing"].seen == [tap.name]
    assert sorted(detectors["manipulation"].seen) == sorted([tap.name, mic.name])


def test_video_and_snapshot_go_to_manipulation_only(tmp_path: Path):
    dispatcher, detectors, _ = _setup()
    segment = VideoSegment(path=_file(tmp_path, "s_000.mp4"), session_id="s", sequence=0)
    snapshot = Snapshot(path=_file(tmp_path, "s_frame_000.jpg"), session_id="s")

    assert [j.detector for j in dispatcher.submit(segment)] == ["manipulation"]
    assert [j.detector for j in dispatcher.submit(snapshot)] == ["manipulation"]
    assert dispatcher.wait_idle(5.0)
    assert detectors["phishing"].seen == []
    assert segment.state is ArtifactState.DISCARDED


def test_missing_or_empty_files_are_not_submitted(tmp_path: Path):
    dispatcher, detectors, _ = _setup()
    empty = VideoSegment(path=_file(tmp_path, "empty.mp4", b""))
    missing = VideoSegment(path=tmp_path / "missing.mp4")

    assert dispatcher.submit(empty) == []
    assert dispatcher.submit(missing) == []
    assert detectors["manipulation"].seen == []


def test_submit_does_not_wait_for_the_backend(tmp_path: Path):
    gate = threading.Event()
    dispatcher, _, sink = _setup(
        manipulation=FakeDetector("manipulation", Verdict("MANIPULATED", 0.9), gate=gate)
    )
    segment = VideoSegment(path=_file(tmp_path, "s_000.mp4"))

    jobs = dispatcher.submit(segment)

    assert len(jobs) == 1
    assert not jobs[0].done
    assert segment.state is ArtifactState.DISPATCHED
    gate.set()
    assert jobs[0].wait(5.0)
    assert jobs[0].resolved
    assert len(sink.records) == 1


def test_manipulated_verdict_produces_exactly_one_alert(tmp_path: Path):
    dispatcher, _, sink = _setup(
        manipulation=FakeDetector("manipulation", Verdict("manipulated", confidence=0.9))
    )
    segment = VideoSegment(path=_file(tmp_path, "s_004.mp4"), session_id="s", sequence=4)

    jobs = dispatcher.submit(segment)
    assert dispatcher.wait_idle(5.0)

    assert len(sink.records) == 1
    record = sink.records[0]
    assert record.artifact_name == "s_004.mp4"
    assert record.detector == "RealityDefender"
    assert record.category == "MANIPULATED"
    assert record.confidence == 0.9
    assert jobs[0].verdict.confidence == 0.9


def test_one_failing_detector_does_not_block_the_other(tmp_path: Path):
    dispatcher, _, sink = _setup(
        manipulation=FakeDetector("manipulation", error=DetectorError("backend down")),
        phishing=FakeDetector("phishing", Verdict("PHISHING", 0.8)),
    )
    tap = AudioSlice(path=_file(tmp_path, "Zoom_tap_x.wav"), channel=ChannelRole.FAR_END)

    jobs = {j.detector: j for j in dispatcher.submit(tap)}
    assert dispatcher.wait_idle(5.0)

    assert jobs["manipulation"].failed
    assert isinstance(jobs["manipulation"].failure, DetectorError)
    assert jobs["phishing"].resolved
    assert [r.media_type for r in sink.records] == ["AUDIO_PHISHING"]
    assert dispatcher.jobs_failed == 1


def test_non_verdict_results_fail_the_job(tmp_path: Path):
    dispatcher, _, sink = _setup(manipulation=FakeDetector("manipulation", verdict={"status": "FAKE"}))

    jobs = dispatcher.submit(VideoSegment(path=_file(tmp_path, "s.mp4")))
    assert dispatcher.wait_idle(5.0)

    assert jobs[0].failed
    assert sink.records == []


def test_unconfigured_detectors_are_skipped(tmp_path: Path):
    router = ResultRouter(MemoryAlertSink())
    dispatcher = DetectionDispatcher({}, router)
    tap = AudioSlice(path=_file(tmp_path, "Zoom_tap_x.wav"), channel=ChannelRole.FAR_END)

    assert dispatcher.submit(tap) == []


def test_submissions_after_shutdown_are_dropped(tmp_path: Path):
    dispatcher, detectors, _ = _setup()
    dispatcher.shutdown(wait=True)

    assert dispatcher.submit(VideoSegment(path=_file(tmp_path, "s.mp4"))) == []
    assert detectors["manipulation"].seen == []


class Flaky(DetectorBackend):
    name = "manipulation"
    display_name = "Flaky"

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def detect(self, artifact):
        self.calls += 1
        if self.calls <= self.failures:
            raise DetectorError(f"attempt {self.calls} failed")
        return Verdict("AUTHENTIC")


def test_retrying_detector_backs_off_exponentially(tmp_path: Path):
    sleeps = []
    backend = Flaky(failures=2)
    detector = RetryingDetector(backend, max_retries=3, backoff=1.5, sleep=sleeps.append)

    verdict = detector.detect(VideoSegment(path=tmp_path / "s.mp4"))

    assert verdict.category == "AUTHENTIC"
    assert backend.calls == 3
    assert sleeps == [1.5, 3.0]
    assert detector.name == "manipulation"


def test_retrying_detector_gives_up(tmp_path: Path):
    detector = RetryingDetector(Flaky(failures=5), max_retries=1, backoff=0.0, sleep=lambda _s: None)

    with pytest.raises(DetectorError):
        detector.detect(VideoSegment(path=tmp_path / "s.mp4"))


def test_dispatcher_wraps_backends_when_retries_enabled():
    router = ResultRouter(MemoryAlertSink())
    dispatcher = DetectionDispatcher({"manipulation": Flaky(0)}, router, max_retries=2)

    assert isinstance(dispatcher.detectors["manipulation"], RetryingDetector)
    dispatcher.shutdown()


def test_shutdown_with_wait_closes_every_backend(tmp_path: Path):
    closed = []

    class Closing(FakeDetector):
        def close(self):
            closed.append(self.name)
            if self.name == "manipulation":
                raise OSError("socket already gone")

    gate = threading.Event()
    dispatcher, _, _ = _setup(
        manipulation=Closing("manipulation", Verdict("AUTHENTIC"), gate=gate),
        phishing=Closing("phishing", Verdict("SAFE")),
    )
    jobs = dispatcher.submit(VideoSegment(path=_file(tmp_path, "s_000.mp4")))

    dispatcher.shutdown(wait=False)
    assert closed == []
    gate.set()
    dispatcher.shutdown(wait=True)

    assert all(job.resolved for job in jobs)
    assert sorted(closed) == ["manipulation", "phishing"]
