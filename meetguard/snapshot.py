"""Single-frame capture target used during frame diversion."""

from __future__ import annotations

import os
import subprocess
import threading
import time
from pathlib import Path

import numpy as np

from meetguard.ffmpeg_io import DEFAULT_PIXEL_FORMAT


class SnapshotCapture:
    """Accepts exactly one frame, refuses the rest."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._frame: np.ndarray | None = None
        self.captured_at: float | None = None

    def accept_frame(self, frame: np.ndarray) -> bool:
        with self._lock:
            if self._frame is not None:
                return False
            self._frame = np.array(frame, copy=True)
            self.captured_at = time.time()
        self._ready.set()
        return True

    def wait(self, timeout: float | None = None) -> np.ndarray | None:
        if not self._ready.wait(timeout):
            return None
        return self._frame

    @property
    def frame(self) -> np.ndarray | None:
        return self._frame


def _jpeg_command(width: int, height: int, output: str) -> list[str]:
    return [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-f",
        "rawvideo",
        "-pix_fmt",
        DEFAULT_PIXEL_FORMAT,
        "-s",
        f"{width}x{height}",
        "-i",
        "pipe:0",
        "-frames:v",
        "1",
        "-q:v",
        "3",
        output,
    ]


def write_snapshot_image(
    frame: np.ndarray,
    path: Path,
    *,
    command: list[str] | None = None,
    timeout: float = 10.0,
) -> Path:
    """Encode one RGB frame to ``path`` (JPEG) through ffmpeg, atomically."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.stem}.tmp{path.suffix}")
    height, width = frame.shape[:2]
    if command is None:
        command = _jpeg_command(width, height, str(tmp_path))
    try:
        subprocess.run(
            command,
            input=np.ascontiguousarray(frame).tobytes(),
            capture_output=True,
            check=True,
            timeout=timeout,
        )
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path
