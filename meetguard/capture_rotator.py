#!/usr/bin/env python3
"""
Capture rotator: gapless segment rotation for the continuous screen stream.

Every rotation interval the rotator:
  1. prepares and starts a fresh encoder for the next segment while the live
     encoder keeps recording,
  2. atomically points the virtual display at the new encoder,
  3. hands the previous encoder to a background worker which waits for the
     successor to accept frames, then finalizes the old segment and emits it.

Once per cycle, halfway between rotations, one frame is diverted to a
single-frame capture target and saved as a snapshot. Handover, diversion and
stop all hold the same lock, so the display is never pointed at a target that
is being replaced.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Protocol

import numpy as np

from meetguard.artifacts import (
    Artifact,
    ArtifactState,
    CaptureSession,
    RotatorState,
    Snapshot,
    VideoSegment,
)
from meetguard.naming import SegmentNamer
from meetguard.snapshot import SnapshotCapture, write_snapshot_image
from meetguard.video_encoder import EncoderError, EncoderResult, StreamingVideoEncoder
from meetguard.virtual_display import VirtualDisplay


class SegmentEncoder(Protocol):
    output_path: str

    def prepare(self) -> None: ...

    def start(self) -> None: ...

    def accept_frame(self, frame: np.ndarray) -> bool: ...

    def wait_for_frames(self, timeout: float | None = None) -> bool: ...

    def close(self, *, timeout: float | None = None) -> EncoderResult: ...


EncoderFactory = Callable[[Path], SegmentEncoder]
SnapshotWriter = Callable[[np.ndarray, Path], object]
ArtifactCallback = Callable[[Artifact], None]


def _describe_failure(result: EncoderResult) -> str:
    if result.error is not None:
        return f"{type(result.error).__name__}: {result.error}"
    detail = (result.stderr or "").strip().splitlines()
    tail = detail[-1] if detail else ""
    return f"encoder exited rc={result.returncode}" + (f" ({tail})" if tail else "")


class CaptureRotator:
    def __init__(
        self,
        session: CaptureSession,
        display: VirtualDisplay,
        namer: SegmentNamer,
        *,
        on_artifact: ArtifactCallback,
        encoder_factory: EncoderFactory | None = None,
        snapshot_writer: SnapshotWriter | None = None,
        snapshots_enabled: bool = True,
        snapshot_settle: float = 0.1,
        handover_timeout: float = 2.0,
        finalize_timeout: float = 10.0,
        finalize_workers: int = 2,
        video_bitrate: str = "3M",
    ) -> None:
        self.session = session
        self.display = display
        self.namer = namer
        self.on_artifact = on_artifact
        self.snapshots_enabled = bool(snapshots_enabled)
        self.snapshot_settle = max(0.0, float(snapshot_settle))
        self.handover_timeout = max(0.0, float(handover_timeout))
        self.finalize_timeout = max(0.1, float(finalize_timeout))
        self._encoder_factory = encoder_factory or self._default_encoder_factory(video_bitrate)
        self._snapshot_writer = snapshot_writer or write_snapshot_image

        self._log = logging.getLogger("capture_rotator")
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: threading.Thread | None = None
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(finalize_workers)),
            thread_name_prefix="finalize",
        )
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

        self._state = RotatorState.IDLE
        self._encoder: SegmentEncoder | None = None
        self._sequence: int | None = None
        self._next_sequence = 0
        self.rotation_failures = 0

    def _default_encoder_factory(self, bitrate: str) -> EncoderFactory:
        session = self.session

        def factory(path: Path) -> SegmentEncoder:
            return StreamingVideoEncoder(
                str(path),
                width=session.width,
                height=session.height,
                frame_rate=session.frame_rate,
                bitrate=bitrate,
            )

        return factory

    @property
    def state(self) -> RotatorState:
        return self._state

    @property
    def current_sequence(self) -> int | None:
        return self._sequence

    @property
    def live_encoder(self) -> SegmentEncoder | None:
        return self._encoder

    # --- lifecycle ---
    def start(self) -> None:
        with self._lock:
            if self._state is not RotatorState.IDLE or self._timer is not None:
                raise RuntimeError("rotator already started")
            self._begin_recording()
        self._timer = threading.Thread(target=self._run, name="capture-rotator", daemon=True)
        self._timer.start()
        self._log.info(
            "rotation started for %s (interval %.1fs)",
            self.session.session_id,
            self.session.rotation_interval,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Stop rotating and release the live encoder and display before returning.

        Finalizations and snapshot writes already handed to the pool keep
        running and emit their artifacts on their own.
        """
        self._stop.set()
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout)
        with self._lock:
            if self._state is RotatorState.STOPPED:
                return
            encoder, sequence = self._encoder, self._sequence
            self.display.release()
            self._encoder = None
            self._state = RotatorState.STOPPED
        if encoder is not None and sequence is not None:
            self._finalize(encoder, sequence, None)
        self._pool.shutdown(wait=False)
        self._log.info("rotation stopped for %s", self.session.session_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until background finalizations and snapshot writes complete."""
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # --- timer loop ---
    def _run(self) -> None:
        interval = max(0.01, float(self.session.rotation_interval))
        next_rotation = time.monotonic() + interval
        while not self._stop.is_set():
            if self.snapshots_enabled:
                midpoint = next_rotation - interval / 2.0
                if self._stop.wait(max(0.0, midpoint - time.monotonic())):
                    break
                self._guarded(self.divert_frame)
            if self._stop.wait(max(0.0, next_rotation - time.monotonic())):
                break
            self._guarded(self.rotate_once)
            next_rotation += interval
            now = time.monotonic()
            if next_rotation <= now:
                skipped = int((now - next_rotation) // interval) + 1
                next_rotation += skipped * interval
                self._log.warning("rotation slipped by %d interval(s)", skipped)

    def _guarded(self, step: Callable[[], object]) -> None:
        try:
            step()
        except Exception:  # noqa: BLE001 - the timer thread must survive
            self._log.exception("unexpected error during %s", getattr(step, "__name__", step))

    # --- handover ---
    def _prepare_encoder(self, sequence: int) -> SegmentEncoder | None:
        path = self.namer.video_segment_path(sequence)
        encoder = self._encoder_factory(path)
        try:
            encoder.prepare()
            encoder.start()
        except (EncoderError, OSError) as exc:
            self.rotation_failures += 1
            self._log.warning("cannot start encoder for segment %03d: %s", sequence, exc)
            try:
                encoder.close(timeout=1.0)
            except Exception as close_exc:  # noqa: BLE001 - best effort cleanup
                self._log.debug("cleanup of failed encoder raised %r", close_exc)
            return None
        return encoder

    def _begin_recording(self) -> bool:
        sequence = self._next_sequence
        self._state = RotatorState.ARMED
        encoder = self._prepare_encoder(sequence)
        if encoder is None:
            self._state = RotatorState.IDLE
            return False
        self.display.set_target(encoder)
        self._encoder = encoder
        self._sequence = sequence
        self._next_sequence = sequence + 1
        self._state = RotatorState.RECORDING
        self._log.info("recording segment %03d -> %s", sequence, encoder.output_path)
        return True

    def rotate_once(self) -> bool:
        """Run one handover. Returns False when the rotation was skipped or failed."""
        with self._lock:
            if self._stop.is_set() or self._state is RotatorState.STOPPED:
                return False
            if self._encoder is None or self._sequence is None:
                # a previous start attempt failed; retry it on this tick
                return self._begin_recording()

            sequence = self._next_sequence
            self._state = RotatorState.HANDING_OVER
            successor = self._prepare_encoder(sequence)
            if successor is None:
                self._state = RotatorState.RECORDING
                return False

            self.display.set_target(successor)
            previous, previous_sequence = self._encoder, self._sequence
            self._encoder = successor
            self._sequence = sequence
            self._next_sequence = sequence + 1
            self._state = RotatorState.RECORDING
            self._submit(self._finalize, previous, previous_sequence, successor)
        self._log.debug("handover %03d -> %03d", previous_sequence, sequence)
        return True

    def _finalize(
        self,
        encoder: SegmentEncoder,
        sequence: int,
        successor: SegmentEncoder | None,
    ) -> VideoSegment:
        if successor is not None and not successor.wait_for_frames(self.handover_timeout):
            self._log.debug(
                "segment %03d: successor accepted no frames within %.1fs",
                sequence,
                self.handover_timeout,
            )
        segment = VideoSegment(
            path=Path(encoder.output_path),
            state=ArtifactState.FINALIZING,
            session_id=self.session.session_id,
            sequence=sequence,
        )
        try:
            result = encoder.close(timeout=self.finalize_timeout)
        except Exception as exc:  # noqa: BLE001 - recorded on the segment
            segment.error = f"{type(exc).__name__}: {exc}"
        else:
            if not result.success:
                segment.error = _describe_failure(result)
        segment.state = ArtifactState.READY
        if segment.error:
            self._log.warning("segment %03d finalized with error: %s", sequence, segment.error)
        else:
            self._log.info("segment %03d ready: %s", sequence, segment.name)
        self._emit(segment)
        return segment

    # --- frame diversion ---
    def divert_frame(self) -> Snapshot | None:
        with self._lock:
            live = self._encoder
            if self._state is not RotatorState.RECORDING or live is None or self._sequence is None:
                return None
            parent = self._sequence
            capture = SnapshotCapture()
            self._state = RotatorState.DIVERTING
            self.display.set_target(capture)
            try:
                frame = capture.wait(self.snapshot_settle)
            finally:
                self.display.set_target(live)
                self._state = RotatorState.RECORDING
        if frame is None:
            self._log.debug("no frame landed during %.0f ms diversion", self.snapshot_settle * 1000)
            return None
        snapshot = Snapshot(
            path=self.namer.snapshot_path(parent),
            state=ArtifactState.CAPTURED,
            session_id=self.session.session_id,
            parent_sequence=parent,
            captured_at=capture.captured_at or time.time(),
        )
        self._submit(self._save_snapshot, frame, snapshot)
        return snapshot

    def _save_snapshot(self, frame: np.ndarray, snapshot: Snapshot) -> None:
        try:
            self._snapshot_writer(frame, snapshot.path)
        except Exception as exc:  # noqa: BLE001 - log and continue
            self._log.error("snapshot %s could not be written: %s", snapshot.name, exc)
            return
        snapshot.state = ArtifactState.READY
        self._emit(snapshot)

    # --- plumbing ---
    def _submit(self, fn: Callable[..., object], *args: object) -> None:
        try:
            future = self._pool.submit(fn, *args)
        except RuntimeError:
            self._log.warning("background pool closed; running %s inline", fn.__name__)
            fn(*args)
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            self._log.error("background task failed: %r", exc)

    def _emit(self, artifact: Artifact) -> None:
        try:
            self.on_artifact(artifact)
        except Exception:  # noqa: BLE001 - consumer errors must not stop capture
            self._log.exception("artifact consumer failed for %s", artifact.name)
