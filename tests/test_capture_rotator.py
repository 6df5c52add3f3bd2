import threading
import time
from pathlib import Path

import numpy as np

from meetguard.artifacts import ArtifactState, CaptureSession, RotatorState, Snapshot, VideoSegment
from meetguard.capture_rotator import CaptureRotator
from meetguard.naming import SegmentNamer
from meetguard.video_encoder import EncoderError, EncoderResult
from meetguard.virtual_display import VirtualDisplay


class FakeEncoder:
    def __init__(self, path, *, fail_prepare=False, fail_close=False, close_gate=None):
        self.output_path = str(path)
        self.fail_prepare = fail_prepare
        self.fail_close = fail_close
        self.close_gate = close_gate
        self.started = False
        self.closed = False
        self.frames = []
        self._first = threading.Event()

    def prepare(self):
        if self.fail_prepare:
            raise EncoderError("cannot spawn")

    def start(self):
        self.started = True

    def accept_frame(self, frame):
        if not self.started or self.closed:
            return False
        self.frames.append(frame)
        self._first.set()
        return True

    def wait_for_frames(self, timeout=None):
        return self._first.wait(timeout)

    def close(self, *, timeout=None):
        if self.close_gate is not None:
            self.close_gate.wait(5.0)
        self.closed = True
        Path(self.output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(self.output_path).write_bytes(b"segment")
        return EncoderResult(
            output_path=self.output_path,
            success=not self.fail_close,
            returncode=1 if self.fail_close else 0,
            error=None,
            stderr="moov atom not found" if self.fail_close else None,
            frames_written=len(self.frames),
            dropped_frames=0,
        )


class FakeFactory:
    def __init__(self, failing_prepares=0, **kwargs):
        self.failing_prepares = failing_prepares
        self.kwargs = kwargs
        self.encoders = []

    def __call__(self, path):
        fail = self.failing_prepares > 0
        if fail:
            self.failing_prepares -= 1
        encoder = FakeEncoder(path, fail_prepare=fail, **self.kwargs)
        self.encoders.append(encoder)
        return encoder


class Emitted:
    def __init__(self):
        self.lock = threading.Lock()
        self.items = []

    def __call__(self, artifact):
        with self.lock:
            self.items.append(artifact)

    def segments(self):
        return [a for a in self.items if isinstance(a, VideoSegment)]

    def snapshots(self):
        return [a for a in self.items if isinstance(a, Snapshot)]


def _frame(value=0):
    return np.full((2, 4, 3), value, dtype=np.uint8)


def _rotator(tmp_path, *, interval=1000.0, factory=None, snapshots=False, settle=0.05, writer=None):
    session = CaptureSession("session_test", width=4, height=2, rotation_interval=interval)
    display = VirtualDisplay(4, 2)
    namer = SegmentNamer("session_test", video_dir=tmp_path / "video", image_dir=tmp_path / "images")
    emitted = Emitted()
    written = []

    def fake_writer(frame, path):
        written.append((frame, path))
        return path

    rotator = CaptureRotator(
        session,
        display,
        namer,
        on_artifact=emitted,
        encoder_factory=factory or FakeFactory(),
        snapshot_writer=writer or fake_writer,
        snapshots_enabled=snapshots,
        snapshot_settle=settle,
        handover_timeout=0.01,
        finalize_timeout=1.0,
    )
    return rotator, display, emitted, written


class Pusher(threading.Thread):
    def __init__(self, display):
        super().__init__(daemon=True)
        self.display = display
        self.stop_event = threading.Event()
        self.pushed = 0

    def run(self):
        while not self.stop_event.is_set():
            self.display.push_frame(_frame(self.pushed % 255))
            self.pushed += 1
            time.sleep(0.001)

    def halt(self):
        self.stop_event.set()
        self.join(2.0)


def test_segment_indices_are_gapless_and_increasing(tmp_path: Path):
    rotator, display, emitted, _ = _rotator(tmp_path)
    rotator.start()
    for _ in range(3):
        display.push_frame(_frame())
        assert rotator.rotate_once()
    rotator.stop()
    assert rotator.wait_idle(2.0)

    sequences = sorted(seg.sequence for seg in emitted.segments())
    assert sequences == [0, 1, 2, 3]
    latest = max(emitted.segments(), key=lambda seg: seg.sequence)
    assert latest.path.name == "session_test_003.mp4"
    assert all(seg.state is ArtifactState.READY for seg in emitted.segments())


def test_handover_never_leaves_the_display_without_a_target(tmp_path: Path):
    rotator, display, _, _ = _rotator(tmp_path)
    rotator.start()
    pusher = Pusher(display)
    pusher.start()
    try:
        for _ in range(10):
            assert rotator.rotate_once()
            time.sleep(0.005)
    finally:
        pusher.halt()
    rotator.stop()

    assert display.frames_untargeted == 0
    assert display.frames_refused == 0
    assert display.frames_routed == pusher.pushed


def test_failed_prepare_keeps_recording_and_retries_next_tick(tmp_path: Path):
    factory = FakeFactory()
    rotator, display, emitted, _ = _rotator(tmp_path, factory=factory)
    rotator.start()
    live = rotator.live_encoder

    factory.failing_prepares = 1
    assert rotator.rotate_once() is False
    assert rotator.state is RotatorState.RECORDING
    assert display.target is live
    assert rotator.rotation_failures == 1

    assert rotator.rotate_once() is True
    assert rotator.current_sequence == 1
    assert Path(rotator.live_encoder.output_path).name == "session_test_001.mp4"
    rotator.stop()
    rotator.wait_idle(2.0)
    assert sorted(s.sequence for s in emitted.segments()) == [0, 1]


def test_failed_start_stays_idle_until_next_tick(tmp_path: Path):
    rotator, display, _, _ = _rotator(tmp_path, factory=FakeFactory(failing_prepares=1))
    rotator.start()

    assert rotator.state is RotatorState.IDLE
    assert display.target is None

    assert rotator.rotate_once() is True
    assert rotator.state is RotatorState.RECORDING
    assert rotator.current_sequence == 0
    rotator.stop()


def test_finalize_failure_still_emits_segment_with_error(tmp_path: Path):
    rotator, display, emitted, _ = _rotator(tmp_path, factory=FakeFactory(fail_close=True))
    rotator.start()
    rotator.rotate_once()
    rotator.stop()
    rotator.wait_idle(2.0)

    segments = emitted.segments()
    assert len(segments) == 2
    assert all(seg.failed for seg in segments)
    assert all(seg.state is ArtifactState.READY for seg in segments)
    assert "moov atom" in segments[0].error


def test_diversion_captures_one_frame_and_restores_live_encoder(tmp_path: Path):
    rotator, display, emitted, written = _rotator(tmp_path, snapshots=True, settle=1.0)
    rotator.start()
    live = rotator.live_encoder
    pusher = Pusher(display)
    pusher.start()
    try:
        snapshot = rotator.divert_frame()
    finally:
        pusher.halt()

    assert snapshot is not None
    assert display.target is live
    assert rotator.state is RotatorState.RECORDING
    assert rotator.wait_idle(2.0)
    assert len(written) == 1
    assert written[0][1] == tmp_path / "images" / "session_test_frame_000.jpg"
    assert emitted.snapshots() == [snapshot]
    assert snapshot.state is ArtifactState.READY
    assert snapshot.parent_sequence == 0
    rotator.stop()


def test_diversion_without_frames_restores_target(tmp_path: Path):
    rotator, display, emitted, written = _rotator(tmp_path, snapshots=True, settle=0.01)
    rotator.start()
    live = rotator.live_encoder

    assert rotator.divert_frame() is None
    assert display.target is live
    assert written == []
    rotator.stop()


def test_snapshot_write_failure_emits_nothing(tmp_path: Path):
    def broken_writer(frame, path):
        raise OSError("disk full")

    rotator, display, emitted, _ = _rotator(tmp_path, snapshots=True, settle=1.0, writer=broken_writer)
    rotator.start()
    pusher = Pusher(display)
    pusher.start()
    try:
        assert rotator.divert_frame() is not None
    finally:
        pusher.halt()
    rotator.wait_idle(2.0)
    rotator.stop()

    assert emitted.snapshots() == []


def test_diversion_is_serialized_with_handover(tmp_path: Path):
    rotator, display, _, _ = _rotator(tmp_path, snapshots=True, settle=0.02)
    rotator.start()
    pusher = Pusher(display)
    pusher.start()
    errors = []

    def divert_loop():
        for _ in range(20):
            try:
                rotator.divert_frame()
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

    thread = threading.Thread(target=divert_loop)
    thread.start()
    for _ in range(20):
        rotator.rotate_once()
    thread.join(10.0)
    pusher.halt()
    live = rotator.live_encoder

    assert not errors
    assert display.target is live
    assert display.frames_untargeted == 0
    rotator.stop()


def test_stop_releases_display_and_finalizes_live_segment(tmp_path: Path):
    rotator, display, emitted, _ = _rotator(tmp_path)
    rotator.start()
    display.push_frame(_frame())
    live = rotator.live_encoder

    rotator.stop()

    assert rotator.state is RotatorState.STOPPED
    assert display.released
    assert display.target is None
    assert live.closed
    assert [s.sequence for s in emitted.segments()] == [0]
    assert rotator.rotate_once() is False
    assert rotator.divert_frame() is None


def test_stop_does_not_wait_for_background_finalization(tmp_path: Path):
    gate = threading.Event()
    factory = FakeFactory()
    rotator, display, emitted, _ = _rotator(tmp_path, factory=factory)
    rotator.start()
    factory.encoders[0].close_gate = gate
    rotator.rotate_once()

    started = time.monotonic()
    rotator.stop()
    assert time.monotonic() - started < 2.0
    assert [s.sequence for s in emitted.segments()] == [1]

    gate.set()
    assert rotator.wait_idle(5.0)
    assert sorted(s.sequence for s in emitted.segments()) == [0, 1]


def test_timer_rotates_and_snapshots(tmp_path: Path):
    rotator, display, emitted, written = _rotator(tmp_path, interval=0.1, snapshots=True, settle=0.02)
    pusher = Pusher(display)
    pusher.start()
    rotator.start()
    time.sleep(0.55)
    rotator.stop()
    pusher.halt()
    rotator.wait_idle(2.0)

    sequences = sorted(s.sequence for s in emitted.segments())
    assert len(sequences) >= 3
    assert sequences == list(range(len(sequences)))
    assert len(written) >= 2
