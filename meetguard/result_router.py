"""Turns resolved verdicts into alert records."""

from __future__ import annotations

import logging
import threading
import time
from typing import Mapping

from meetguard.artifacts import AlertRecord, Artifact, ArtifactKind, ArtifactState, Verdict
from meetguard.alert_sinks import AlertSink

_log = logging.getLogger("result_router")

DEFAULT_ALERT_POLICY: dict[str, frozenset[str]] = {
    "manipulation": frozenset({"MANIPULATED"}),
    "phishing": frozenset({"PHISHING"}),
}

DETECTOR_LABELS = {
    "manipulation": "RealityDefender",
    "phishing": "DifyVoiceDetector",
}


class ResultRouter:
    """Applies the alert policy to each verdict and hands alerts to the sink.

    Only verdicts whose normalised category is listed for their detector
    produce an AlertRecord; everything else is dropped.
    """

    def __init__(
        self,
        sink: AlertSink,
        *,
        policy: Mapping[str, frozenset[str] | set[str]] | None = None,
        detector_labels: Mapping[str, str] | None = None,
        source_label: str = "Zoom",
    ) -> None:
        self.sink = sink
        self.policy = {
            name: frozenset(c.upper() for c in categories)
            for name, categories in (policy or DEFAULT_ALERT_POLICY).items()
        }
        self.detector_labels = dict(DETECTOR_LABELS)
        self.detector_labels.update(detector_labels or {})
        self.source_label = source_label
        self._lock = threading.Lock()
        self.alerts_emitted = 0
        self.verdicts_discarded = 0

    def is_alert(self, detector: str, verdict: Verdict) -> bool:
        return verdict.normalized in self.policy.get(detector, frozenset())

    def media_type(self, artifact: Artifact, detector: str) -> str:
        if detector == "phishing" and artifact.kind is ArtifactKind.AUDIO:
            return "AUDIO_PHISHING"
        return artifact.media_label()

    def summary(self, artifact: Artifact, detector: str, verdict: Verdict) -> str:
        label = self.detector_labels.get(detector, detector)
        parts = [f"{self.source_label} {artifact.kind.value} analysis result: {verdict.normalized}"]
        parts.append(f"detector={label}")
        if verdict.confidence is not None:
            parts.append(f"confidence={verdict.confidence:.2f}")
        if verdict.rationale:
            parts.append(verdict.rationale)
        return " | ".join(parts)

    def on_verdict(self, artifact: Artifact, detector: str, verdict: Verdict) -> AlertRecord | None:
        if not self.is_alert(detector, verdict):
            with self._lock:
                self.verdicts_discarded += 1
            if artifact.state is not ArtifactState.ALERTED:
                artifact.state = ArtifactState.DISCARDED
            _log.debug("%s: %s verdict %s discarded", artifact.name, detector, verdict.normalized)
            return None

        record = AlertRecord(
            artifact_name=artifact.name,
            artifact_path=str(artifact.path),
            artifact_kind=artifact.kind,
            media_type=self.media_type(artifact, detector),
            detector=self.detector_labels.get(detector, detector),
            category=verdict.normalized,
            summary=self.summary(artifact, detector, verdict),
            timestamp=time.time(),
            role=artifact.role,
            confidence=verdict.confidence,
            evidence=verdict.evidence,
        )
        artifact.state = ArtifactState.ALERTED
        with self._lock:
            self.alerts_emitted += 1
        _log.warning("ALERT %s", record.summary)
        try:
            self.sink.emit(record)
        except Exception as exc:  # noqa: BLE001 - the record is still returned
            _log.error("alert sink rejected alert for %s: %s", artifact.name, exc)
        return record
