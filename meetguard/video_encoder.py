"""Streaming ffmpeg video encoder fed with raw frames through stdin."""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
from dataclasses import dataclass

import numpy as np

from meetguard.ffmpeg_io import DEFAULT_PIXEL_FORMAT, frame_size_bytes, rawvideo_pipe_input_args

_log = logging.getLogger("video_encoder")


class EncoderError(Exception):
    """Raised when an encoder cannot be prepared or started."""


@dataclass
class EncoderResult:
    output_path: str
    success: bool
    returncode: int | None
    error: Exception | None
    stderr: str | None
    frames_written: int
    dropped_frames: int


class StreamingVideoEncoder:
    """One ffmpeg process writing one segment file.

    ``prepare()`` spawns ffmpeg (it idles on stdin), ``start()`` begins pumping
    queued frames into it and ``close()`` sends EOF and waits for the container
    to be finalized. ``accept_frame()`` never blocks; frames that do not fit in
    the queue are counted as dropped.
    """

    def __init__(
        self,
        output_path: str,
        *,
        width: int,
        height: int,
        frame_rate: int = 30,
        bitrate: str = "3M",
        pixel_format: str = DEFAULT_PIXEL_FORMAT,
        max_queue_frames: int | None = None,
    ) -> None:
        if not output_path:
            raise ValueError("output_path is required for StreamingVideoEncoder")
        self.output_path = str(output_path)
        self.width = int(width)
        self.height = int(height)
        self.frame_rate = max(1, int(frame_rate))
        self.bitrate = bitrate
        self.pixel_format = pixel_format
        self.frame_bytes = frame_size_bytes(self.width, self.height, pixel_format)
        queue_frames = max_queue_frames if max_queue_frames is not None else self.frame_rate * 2
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=max(1, int(queue_frames)))
        self._process: subprocess.Popen | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._accepting = False
        self._first_frame = threading.Event()
        self._frames_accepted = 0
        self._frames_written = 0
        self._dropped = 0
        self._error: Exception | None = None
        self._stderr: bytes | None = None
        self._returncode: int | None = None
        self._closed = threading.Event()

    def _build_command(self) -> list[str]:
        return [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            *rawvideo_pipe_input_args(
                self.width,
                self.height,
                self.frame_rate,
                pixel_format=self.pixel_format,
            ),
            "-an",
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-pix_fmt",
            "yuv420p",
            "-b:v",
            str(self.bitrate),
            "-movflags",
            "+faststart",
            "-f",
            "mp4",
            self.output_path,
        ]

    @property
    def prepared(self) -> bool:
        return self._process is not None

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def frames_accepted(self) -> int:
        return self._frames_accepted

    def prepare(self, command: list[str] | None = None) -> None:
        if self._process is not None:
            raise EncoderError(f"encoder for {self.output_path} already prepared")
        try:
            os.makedirs(os.path.dirname(self.output_path) or ".", exist_ok=True)
            if os.path.exists(self.output_path):
                os.unlink(self.output_path)
        except OSError as exc:
            self._error = exc
            raise EncoderError(f"cannot prepare output {self.output_path}: {exc}") from exc
        if command is None:
            command = self._build_command()
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            self._error = exc
            raise EncoderError(f"cannot spawn encoder for {self.output_path}: {exc}") from exc

    def start(self) -> None:
        proc = self._process
        if proc is None:
            raise EncoderError("encoder must be prepared before start")
        if self._thread is not None:
            raise EncoderError(f"encoder for {self.output_path} already started")
        if proc.poll() is not None:
            raise EncoderError(
                f"encoder for {self.output_path} exited before start (rc={proc.returncode})"
            )
        self._thread = threading.Thread(
            target=self._pump,
            name=f"encoder-{os.path.basename(self.output_path)}",
            daemon=True,
        )
        self._thread.start()
        self._accepting = True

    def _pump(self) -> None:
        proc = self._process
        if proc is None:
            self._closed.set()
            return
        try:
            stdin = proc.stdin
            if stdin is None:
                raise RuntimeError("encoder stdin unavailable")
            while True:
                try:
                    chunk = self._queue.get(timeout=0.5)
                except queue.Empty:
                    if proc.poll() is not None:
                        break
                    continue

                if chunk is None:
                    self._queue.task_done()
                    break

                try:
                    stdin.write(chunk)
                    stdin.flush()
                    self._frames_written += 1
                except (BrokenPipeError, OSError, ValueError) as exc:
                    self._error = exc
                    break
                finally:
                    self._queue.task_done()
        except Exception as exc:  # noqa: BLE001 - surfaced through close()
            self._error = exc
        finally:
            self._accepting = False
            try:
                if proc.stdin:
                    proc.stdin.close()
            except OSError:
                pass
            try:
                self._stderr = proc.stderr.read() if proc.stderr else None
            except (OSError, ValueError):
                self._stderr = None
            self._returncode = proc.wait()
            self._closed.set()

    def accept_frame(self, frame: np.ndarray | bytes) -> bool:
        if not self._accepting:
            return False
        if isinstance(frame, np.ndarray):
            data = np.ascontiguousarray(frame).tobytes()
        else:
            data = bytes(frame)
        if len(data) != self.frame_bytes:
            self._dropped += 1
            return False
        try:
            self._queue.put_nowait(data)
        except queue.Full:
            self._dropped += 1
            return False
        with self._lock:
            self._frames_accepted += 1
        self._first_frame.set()
        return True

    def wait_for_frames(self, timeout: float | None = None) -> bool:
        return self._first_frame.wait(timeout)

    def close(self, *, timeout: float | None = None) -> EncoderResult:
        self._accepting = False
        proc = self._process
        if proc is None:
            return EncoderResult(
                output_path=self.output_path,
                success=False,
                returncode=None,
                error=self._error,
                stderr=None,
                frames_written=self._frames_written,
                dropped_frames=self._dropped,
            )

        if self._thread is None:
            # prepared but never started: release the idle process.
            try:
                if proc.stdin:
                    proc.stdin.close()
            except OSError:
                pass
            self._closed.set()
        else:
            try:
                self._queue.put(None, timeout=timeout if timeout is not None else 1.0)
            except queue.Full:
                # Worker stopped draining; discard the backlog so EOF can be queued.
                drained = 0
                while True:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        break
                    else:
                        self._queue.task_done()
                        drained += 1
                self._dropped += drained
                try:
                    self._queue.put_nowait(None)
                except queue.Full:
                    pass
            self._thread.join(timeout)

        if proc.poll() is None:
            try:
                self._returncode = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                _log.warning("encoder for %s did not exit; killing", self.output_path)
                proc.kill()
                self._returncode = proc.wait()
                if self._error is None:
                    self._error = EncoderError("encoder killed after finalize timeout")
        else:
            self._returncode = proc.returncode

        if self._stderr is None and self._thread is None and proc.stderr:
            try:
                self._stderr = proc.stderr.read()
            except (OSError, ValueError):
                self._stderr = None

        success = self._error is None and self._returncode == 0
        stderr_text = None
        if self._stderr:
            stderr_text = self._stderr.decode("utf-8", errors="ignore")

        return EncoderResult(
            output_path=self.output_path,
            success=success,
            returncode=self._returncode,
            error=self._error,
            stderr=stderr_text,
            frames_written=self._frames_written,
            dropped_frames=self._dropped,
        )
