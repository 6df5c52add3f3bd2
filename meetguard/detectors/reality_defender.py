"""Manipulation / deepfake detector backed by the Reality Defender HTTP API."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from meetguard.artifacts import Artifact, Verdict
from meetguard.config import mask_secret
from meetguard.detectors.base import DetectorBackend, DetectorError, http_json, http_request

_log = logging.getLogger("detectors")

PENDING_STATUSES = frozenset({"", "ANALYZING", "PROCESSING", "PENDING", "QUEUED", "UPLOADED"})


def parse_media_result(data: dict[str, Any]) -> Verdict | None:
    """Verdict from a media-result document, or None while analysis is still running."""
    summary = data.get("resultsSummary") or {}
    if not isinstance(summary, dict):
        summary = {}
    status = str(summary.get("status") or data.get("overallStatus") or "").strip().upper()
    if status in PENDING_STATUSES:
        return None

    confidence = None
    metadata = summary.get("metadata") if isinstance(summary.get("metadata"), dict) else {}
    score = metadata.get("finalScore", summary.get("finalScore"))
    if isinstance(score, (int, float)):
        confidence = max(0.0, min(1.0, float(score) / 100.0))

    reasons = metadata.get("reasons") or []
    evidence = tuple(
        str(item.get("message") or item.get("code") or item) if isinstance(item, dict) else str(item)
        for item in reasons
    )
    return Verdict(category=status, confidence=confidence, evidence=evidence, raw=data)


class RealityDefenderDetector(DetectorBackend):
    name = "manipulation"
    display_name = "RealityDefender"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.prd.realitydefender.xyz",
        poll_interval: float = 5.0,
        timeout: float = 240.0,
        request_timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("Reality Defender API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval = max(0.0, float(poll_interval))
        self.timeout = float(timeout)
        self.request_timeout = float(request_timeout)
        self._sleep = sleep
        _log.info("RealityDefender detector initialised with API key %s", mask_secret(api_key))

    def _headers(self) -> dict[str, str]:
        return {"X-API-KEY": self.api_key}

    def _request_upload(self, artifact: Artifact) -> tuple[str, str]:
        data = http_json(
            f"{self.base_url}/api/files/aws-presigned",
            method="POST",
            payload={"fileName": artifact.name},
            headers=self._headers(),
            timeout=self.request_timeout,
        )
        response = data.get("response") if isinstance(data.get("response"), dict) else {}
        signed_url = response.get("signedUrl") or data.get("signedUrl")
        request_id = data.get("requestId") or response.get("requestId")
        if not signed_url or not request_id:
            raise DetectorError(f"presigned upload response incomplete for {artifact.name}")
        return str(signed_url), str(request_id)

    def detect(self, artifact: Artifact) -> Verdict:
        signed_url, request_id = self._request_upload(artifact)
        try:
            body = artifact.path.read_bytes()
        except OSError as exc:
            raise DetectorError(f"cannot read {artifact.path}: {exc}") from exc
        http_request(signed_url, method="PUT", body=body, timeout=self.request_timeout)
        _log.debug("[%s] uploaded %d bytes (request %s)", artifact.name, len(body), request_id)

        deadline = time.monotonic() + self.timeout
        while True:
            data = http_json(
                f"{self.base_url}/api/media/users/{request_id}",
                headers=self._headers(),
                timeout=self.request_timeout,
            )
            verdict = parse_media_result(data)
            if verdict is not None:
                _log.info("[%s] RealityDefender status=%s score=%s",
                          artifact.name, verdict.category, verdict.confidence)
                return verdict
            if time.monotonic() >= deadline:
                raise DetectorError(
                    f"no result for {artifact.name} within {self.timeout:.0f}s (request {request_id})"
                )
            self._sleep(self.poll_interval)
