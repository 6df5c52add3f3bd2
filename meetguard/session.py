#!/usr/bin/env python3
"""
Session control: wires display, rotator, audio watcher, dispatcher and router
together for one capture session and tears them down again.

stop() returns only after the frame source, the live encoder and the virtual
display have been released. Finalizations, transcodes and detector calls that
are already running are left to finish on their own pools.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from meetguard.alert_sinks import AlertSink, build_alert_sink
from meetguard.artifacts import Artifact, CaptureSession
from meetguard.audio_watcher import AudioSliceWatcher
from meetguard.capture_rotator import CaptureRotator, EncoderFactory, SnapshotWriter
from meetguard.config import get_cfg
from meetguard.detectors import DetectorBackend, build_detectors
from meetguard.dispatcher import DetectionDispatcher
from meetguard.frame_source import FFmpegScreenSource
from meetguard.naming import SegmentNamer, new_session_id
from meetguard.result_router import ResultRouter
from meetguard.virtual_display import VirtualDisplay

_log = logging.getLogger("session")


class FrameSource(Protocol):
    def start(self) -> None: ...

    def stop(self, timeout: float = 2.0) -> None: ...


FrameSourceFactory = Callable[[VirtualDisplay], FrameSource]


@dataclass
class SessionHandle:
    session: CaptureSession
    display: VirtualDisplay
    namer: SegmentNamer
    rotator: CaptureRotator
    watcher: AudioSliceWatcher
    dispatcher: DetectionDispatcher
    router: ResultRouter
    source: FrameSource | None = None
    stopped: bool = False
    artifacts: list[Artifact] = field(default_factory=list, repr=False)
    drain_thread: threading.Thread | None = field(default=None, repr=False)

    @property
    def session_id(self) -> str:
        return self.session.session_id


class SessionController:
    def __init__(
        self,
        cfg: dict[str, Any] | None = None,
        *,
        detectors: Mapping[str, DetectorBackend] | None = None,
        sink: AlertSink | None = None,
        frame_source_factory: FrameSourceFactory | None = None,
        encoder_factory: EncoderFactory | None = None,
        snapshot_writer: SnapshotWriter | None = None,
        capture_screen: bool = True,
        keep_artifacts: bool = False,
    ) -> None:
        self.cfg = cfg if cfg is not None else get_cfg()
        self.sink = sink if sink is not None else build_alert_sink(self.cfg.get("alerts"))
        self._detectors = detectors
        self._frame_source_factory = frame_source_factory
        self._encoder_factory = encoder_factory
        self._snapshot_writer = snapshot_writer
        self.capture_screen = capture_screen
        self.keep_artifacts = keep_artifacts
        self.active: SessionHandle | None = None

    def _default_frame_source(self, display: VirtualDisplay) -> FrameSource:
        capture = self.cfg.get("capture", {})
        source = capture.get("source", {}) or {}
        return FFmpegScreenSource(
            display,
            frame_rate=int(capture.get("frame_rate", 30)),
            input_format=str(source.get("input_format") or "x11grab"),
            input_name=str(source.get("input") or ":0.0"),
            extra_args=list(source.get("extra_args") or []),
        )

    def build_namer(self, session_id: str) -> SegmentNamer:
        audio = self.cfg.get("audio", {})
        paths = self.cfg.get("paths", {})
        return SegmentNamer(
            session_id,
            video_dir=paths.get("video_dir") or ".",
            image_dir=paths.get("image_dir") or ".",
            near_end_tag=str(audio.get("near_end_tag", "mic")),
            far_end_tag=str(audio.get("far_end_tag", "tap")),
            source_prefix=str(audio.get("source_prefix", "zoom")),
            output_prefix=str(audio.get("output_prefix", "Zoom")),
        )

    def build_dispatcher(self) -> DetectionDispatcher:
        det_cfg = self.cfg.get("detectors", {})
        alerts = self.cfg.get("alerts", {})
        router = ResultRouter(self.sink, source_label=str(alerts.get("source_label", "Zoom")))
        detectors = self._detectors if self._detectors is not None else build_detectors(det_cfg)
        return DetectionDispatcher(
            detectors,
            router,
            max_workers=int(det_cfg.get("max_workers", 4)),
            max_retries=int(det_cfg.get("max_retries", 0)),
            retry_backoff=float(det_cfg.get("retry_backoff_sec", 1.5)),
        )

    def build_watcher(
        self,
        namer: SegmentNamer,
        on_artifact: Callable[[Artifact], None],
    ) -> AudioSliceWatcher:
        audio = self.cfg.get("audio", {})
        paths = self.cfg.get("paths", {})
        audio_dir = Path(paths.get("audio_dir") or ".")
        return AudioSliceWatcher(
            paths.get("drop_dir") or ".",
            paths.get("work_dir") or audio_dir / "work",
            audio_dir,
            namer,
            on_artifact=on_artifact,
            sample_rate=int(audio.get("sample_rate", 48000)),
            channels=int(audio.get("channels", 1)),
            raw_ext=str(audio.get("raw_ext", ".pcm")),
            poll_interval=float(audio.get("poll_interval_sec", 10.0)),
            transcode_workers=int(audio.get("transcode_workers", 4)),
            min_age=float(audio.get("min_age_sec", 0.5)),
            ignore_suffixes=audio.get("ignore_suffixes") or (),
        )

    def start(
        self,
        *,
        width: int | None = None,
        height: int | None = None,
        rotation_interval: float | None = None,
        session_id: str | None = None,
    ) -> SessionHandle:
        if self.active is not None and not self.active.stopped:
            raise RuntimeError(f"session {self.active.session_id} is still running")

        capture = self.cfg.get("capture", {})
        session = CaptureSession(
            session_id=session_id or new_session_id(),
            width=int(width or capture.get("width", 1280)),
            height=int(height or capture.get("height", 720)),
            rotation_interval=float(rotation_interval or capture.get("rotation_interval_sec", 5.0)),
            frame_rate=int(capture.get("frame_rate", 30)),
        )
        namer = self.build_namer(session.session_id)
        display = VirtualDisplay(session.width, session.height)
        dispatcher = self.build_dispatcher()

        handle_artifacts: list[Artifact] = []

        def on_artifact(artifact: Artifact) -> None:
            if self.keep_artifacts:
                handle_artifacts.append(artifact)
            dispatcher.submit(artifact)

        rotator = CaptureRotator(
            session,
            display,
            namer,
            on_artifact=on_artifact,
            encoder_factory=self._encoder_factory,
            snapshot_writer=self._snapshot_writer,
            snapshots_enabled=bool(capture.get("snapshots_enabled", True)),
            snapshot_settle=float(capture.get("snapshot_settle_ms", 100)) / 1000.0,
            handover_timeout=float(capture.get("handover_timeout_sec", 2.0)),
            finalize_timeout=float(capture.get("finalize_timeout_sec", 10.0)),
            finalize_workers=int(capture.get("finalize_workers", 2)),
            video_bitrate=str(capture.get("video_bitrate", "3M")),
        )
        watcher = self.build_watcher(namer, on_artifact)

        source: FrameSource | None = None
        if self.capture_screen:
            factory = self._frame_source_factory or self._default_frame_source
            source = factory(display)

        handle = SessionHandle(
            session=session,
            display=display,
            namer=namer,
            rotator=rotator,
            watcher=watcher,
            dispatcher=dispatcher,
            router=dispatcher.router,
            source=source,
            artifacts=handle_artifacts,
        )
        rotator.start()
        watcher.start()
        if source is not None:
            source.start()
        self.active = handle
        _log.info(
            "session %s started (%dx%d, rotation %.1fs, detectors: %s)",
            session.session_id,
            session.width,
            session.height,
            session.rotation_interval,
            ", ".join(sorted(dispatcher.detectors)) or "none",
        )
        return handle

    def stop(self, handle: SessionHandle | None = None, timeout: float | None = 5.0) -> None:
        handle = handle or self.active
        if handle is None or handle.stopped:
            return
        if handle.source is not None:
            try:
                handle.source.stop()
            except Exception:  # noqa: BLE001 - keep releasing the rest
                _log.exception("frame source did not stop cleanly")
        handle.rotator.stop(timeout)
        handle.watcher.stop(timeout)
        handle.stopped = True
        handle.drain_thread = threading.Thread(
            target=self._drain,
            args=(handle,),
            name=f"drain-{handle.session_id}",
            daemon=True,
        )
        handle.drain_thread.start()
        if self.active is handle:
            self.active = None
        _log.info("session %s stopped", handle.session_id)

    @staticmethod
    def _drain(handle: SessionHandle) -> None:
        # late segments and slices still reach the dispatcher before it closes
        handle.rotator.wait_idle()
        handle.watcher.shutdown(wait=True)
        # blocks until submitted jobs finish, then closes the backends
        handle.dispatcher.shutdown(wait=True)
        _log.debug("session %s drained", handle.session_id)

    def close(self) -> None:
        self.stop()
        self.sink.close()
