"""Single shared video sink that routes captured frames to exactly one target."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import numpy as np

_log = logging.getLogger("capture_rotator")


class FrameTarget(Protocol):
    def accept_frame(self, frame: np.ndarray) -> bool: ...


class VirtualDisplay:
    """Owns the output surface of the capture source.

    Frames pushed by the source go to whichever target is current. Swapping
    the target and delivering a frame share one lock, so a frame lands on the
    old target or the new one, never on both and never on neither while a
    target is set.
    """

    def __init__(self, width: int, height: int, channels: int = 3) -> None:
        self.width = int(width)
        self.height = int(height)
        self.shape = (self.height, self.width, int(channels))
        self._lock = threading.Lock()
        self._target: FrameTarget | None = None
        self._released = False
        self.frames_routed = 0
        self.frames_refused = 0
        self.frames_untargeted = 0
        self.frames_malformed = 0

    @property
    def target(self) -> FrameTarget | None:
        with self._lock:
            return self._target

    @property
    def released(self) -> bool:
        return self._released

    def set_target(self, target: FrameTarget | None) -> FrameTarget | None:
        """Atomically redirect output to ``target``; returns the previous target."""
        with self._lock:
            if self._released and target is not None:
                raise RuntimeError("virtual display already released")
            previous = self._target
            self._target = target
            return previous

    def push_frame(self, frame: np.ndarray) -> bool:
        if frame.shape != self.shape:
            self.frames_malformed += 1
            if self.frames_malformed == 1:
                _log.warning(
                    "dropping frame with shape %s (expected %s)", frame.shape, self.shape
                )
            return False
        with self._lock:
            target = self._target
            if target is None:
                self.frames_untargeted += 1
                return False
            accepted = target.accept_frame(frame)
            if accepted:
                self.frames_routed += 1
            else:
                self.frames_refused += 1
            return accepted

    def release(self) -> FrameTarget | None:
        with self._lock:
            previous = self._target
            self._target = None
            self._released = True
            return previous
