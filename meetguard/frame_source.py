#!/usr/bin/env python3
"""
FFmpegScreenSource: captures the screen through ffmpeg and pushes raw frames
into a VirtualDisplay.

- ffmpeg writes rgb24 frames to stdout; we read exactly one frame at a time
- frames are wrapped as numpy arrays (height, width, 3)
- ffmpeg is respawned if it exits while the source is running
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Sequence

import numpy as np

from meetguard.ffmpeg_io import frame_size_bytes, screen_grab_command
from meetguard.virtual_display import VirtualDisplay

RESPAWN_DELAY_SEC = 1.0


class FFmpegScreenSource:
    def __init__(
        self,
        display: VirtualDisplay,
        *,
        frame_rate: int = 30,
        input_format: str = "x11grab",
        input_name: str = ":0.0",
        extra_args: Sequence[str] = (),
        command: list[str] | None = None,
    ) -> None:
        self.display = display
        self.frame_rate = int(frame_rate)
        self.frame_bytes = frame_size_bytes(display.width, display.height)
        self._command = command or screen_grab_command(
            display.width,
            display.height,
            self.frame_rate,
            input_format=input_format,
            input_name=input_name,
            extra_args=extra_args,
        )
        self._log = logging.getLogger("frame_source")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._proc: subprocess.Popen | None = None
        self.frames_read = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="frame_source", daemon=True)
        self._thread.start()
        self._log.info("screen source started (%sx%s @ %s fps)",
                       self.display.width, self.display.height, self.frame_rate)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._log.warning("ffmpeg did not exit after SIGTERM; sending SIGKILL")
                proc.kill()
                proc.wait()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        self._proc = None
        self._log.info("screen source stopped after %d frames", self.frames_read)

    def _spawn(self) -> subprocess.Popen:
        self._log.debug("Launching ffmpeg: %s", " ".join(self._command))
        return subprocess.Popen(
            self._command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            bufsize=0,
        )

    def _read_frame(self, stream) -> bytes | None:
        buf = bytearray()
        while len(buf) < self.frame_bytes:
            chunk = stream.read(self.frame_bytes - len(buf))
            if not chunk:
                return None
            buf.extend(chunk)
        return bytes(buf)

    def _run(self) -> None:
        shape = self.display.shape
        while not self._stop.is_set():
            try:
                self._proc = self._spawn()
            except OSError as exc:
                self._log.error("cannot launch screen capture: %s", exc)
                self._stop.wait(RESPAWN_DELAY_SEC)
                continue
            if self._stop.is_set():
                self._proc.terminate()
                self._proc.wait()
                break
            stdout = self._proc.stdout
            if stdout is None:
                self._log.error("screen capture started without a stdout pipe")
                self._proc.kill()
                self._proc.wait()
                break
            try:
                while not self._stop.is_set():
                    data = self._read_frame(stdout)
                    if data is None:
                        break
                    self.frames_read += 1
                    self.display.push_frame(np.frombuffer(data, dtype=np.uint8).reshape(shape))
            finally:
                try:
                    stdout.close()
                except OSError:
                    pass
            if self._stop.is_set():
                break
            rc = self._proc.wait()
            self._log.warning("ffmpeg exited (%s); respawning", rc)
            self._stop.wait(RESPAWN_DELAY_SEC)
