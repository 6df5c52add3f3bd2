"""Artifact, verdict and alert records shared by the capture and detection layers."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar


class ArtifactKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"
    AUDIO = "audio"


class ChannelRole(str, Enum):
    NEAR_END = "near_end"  # local microphone, the device owner's own voice
    FAR_END = "far_end"  # remote audio received from the other party


class ArtifactState(str, Enum):
    RECORDING = "recording"
    FINALIZING = "finalizing"
    CAPTURED = "captured"
    DISCOVERED = "discovered"
    CLAIMED = "claimed"
    TRANSCODED = "transcoded"
    READY = "ready"
    DISPATCHED = "dispatched"
    ALERTED = "alerted"
    DISCARDED = "discarded"


class RotatorState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    HANDING_OVER = "handing_over"
    DIVERTING = "diverting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class CaptureSession:
    """One continuous recording run. Immutable once started."""

    session_id: str
    width: int
    height: int
    rotation_interval: float
    frame_rate: int = 30
    started_at: float = field(default_factory=time.time)


@dataclass(eq=False)
class Artifact:
    path: Path
    state: ArtifactState = ArtifactState.READY
    created_at: float = field(default_factory=time.time)
    error: str | None = None

    kind: ClassVar[ArtifactKind]

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def role(self) -> ChannelRole | None:
        return None

    def media_label(self) -> str:
        return self.kind.name

    def describe(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "file_name": self.name,
            "file_path": str(self.path),
            "state": self.state.value,
            "created_at": self.created_at,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(eq=False)
class VideoSegment(Artifact):
    session_id: str = ""
    sequence: int = 0

    kind: ClassVar[ArtifactKind] = ArtifactKind.VIDEO

    def describe(self) -> dict[str, Any]:
        payload = super().describe()
        payload.update(session_id=self.session_id, sequence=self.sequence)
        return payload


@dataclass(eq=False)
class Snapshot(Artifact):
    session_id: str = ""
    parent_sequence: int = 0
    captured_at: float = field(default_factory=time.time)

    kind: ClassVar[ArtifactKind] = ArtifactKind.IMAGE

    def describe(self) -> dict[str, Any]:
        payload = super().describe()
        payload.update(
            session_id=self.session_id,
            parent_sequence=self.parent_sequence,
            captured_at=self.captured_at,
        )
        return payload


@dataclass(eq=False)
class AudioSlice(Artifact):
    channel: ChannelRole = ChannelRole.FAR_END
    capture_started: datetime | None = None
    ordinal: int | None = None
    raw_size: int = 0
    source_name: str = ""
    name_parsed: bool = True

    kind: ClassVar[ArtifactKind] = ArtifactKind.AUDIO

    @property
    def role(self) -> ChannelRole:
        return self.channel

    def describe(self) -> dict[str, Any]:
        payload = super().describe()
        payload.update(
            role=self.channel.value,
            ordinal=self.ordinal,
            raw_size=self.raw_size,
            source_name=self.source_name,
            name_parsed=self.name_parsed,
        )
        if self.capture_started is not None:
            payload["capture_started"] = self.capture_started.isoformat()
        return payload


@dataclass(frozen=True)
class Verdict:
    category: str
    confidence: float | None = None
    rationale: str | None = None
    evidence: tuple[str, ...] = ()
    raw: dict[str, Any] | None = field(default=None, compare=False, repr=False)

    @property
    def normalized(self) -> str:
        return self.category.strip().upper()


@dataclass(eq=False)
class DetectionJob:
    """One outstanding call to one detector backend for one artifact."""

    artifact: Artifact
    detector: str
    submitted_at: float = field(default_factory=time.time)
    future: Future | None = None
    verdict: Verdict | None = None
    failure: BaseException | None = None
    _terminal: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def resolved(self) -> bool:
        return self._terminal.is_set() and self.failure is None

    @property
    def failed(self) -> bool:
        return self._terminal.is_set() and self.failure is not None

    @property
    def done(self) -> bool:
        return self._terminal.is_set()

    def resolve(self, verdict: Verdict) -> None:
        if self._terminal.is_set():
            raise RuntimeError(f"job {self.detector}:{self.artifact.name} already finished")
        self.verdict = verdict
        self._terminal.set()

    def fail(self, exc: BaseException) -> None:
        if self._terminal.is_set():
            raise RuntimeError(f"job {self.detector}:{self.artifact.name} already finished")
        self.failure = exc
        self._terminal.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._terminal.wait(timeout)


@dataclass(frozen=True)
class AlertRecord:
    artifact_name: str
    artifact_path: str
    artifact_kind: ArtifactKind
    media_type: str
    detector: str
    category: str
    summary: str
    timestamp: float
    role: ChannelRole | None = None
    confidence: float | None = None
    evidence: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "fileName": self.artifact_name,
            "filePath": self.artifact_path,
            "kind": self.artifact_kind.value,
            "mediaType": self.media_type,
            "detector": self.detector,
            "resultStatus": self.category,
            "summary": self.summary,
            "timestamp": datetime.fromtimestamp(self.timestamp).strftime("%Y-%m-%d %H:%M:%S"),
            "epoch": self.timestamp,
        }
        if self.role is not None:
            payload["role"] = self.role.value
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        if self.evidence:
            payload["evidence"] = list(self.evidence)
        return payload
