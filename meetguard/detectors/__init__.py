"""Detector backends reachable from the dispatcher."""

from __future__ import annotations

import logging
from typing import Any

from meetguard.detectors.base import DetectorBackend, DetectorError
from meetguard.detectors.dify_voice import DifyVoiceDetector
from meetguard.detectors.reality_defender import RealityDefenderDetector

__all__ = [
    "DetectorBackend",
    "DetectorError",
    "DifyVoiceDetector",
    "RealityDefenderDetector",
    "build_detectors",
]

_log = logging.getLogger("detectors")


def build_detectors(cfg: dict[str, Any] | None) -> dict[str, DetectorBackend]:
    """Instantiate the configured backends, keyed by routing name.

    A backend that is disabled or has no API key is left out and logged.
    """
    cfg = cfg or {}
    detectors: dict[str, DetectorBackend] = {}

    manipulation = cfg.get("manipulation") or {}
    if manipulation.get("enabled", True):
        key = str(manipulation.get("api_key") or "").strip()
        if key:
            detectors["manipulation"] = RealityDefenderDetector(
                key,
                base_url=str(manipulation.get("base_url") or "https://api.prd.realitydefender.xyz"),
                poll_interval=float(manipulation.get("poll_interval_sec", 5.0)),
                timeout=float(manipulation.get("timeout_sec", 240.0)),
            )
        else:
            _log.warning("manipulation detector has no API key; skipping")

    phishing = cfg.get("phishing") or {}
    if phishing.get("enabled", True):
        key = str(phishing.get("api_key") or "").strip()
        if key:
            detectors["phishing"] = DifyVoiceDetector(
                key,
                base_url=str(phishing.get("base_url") or "https://api.dify.ai/v1"),
                user=str(phishing.get("user") or ""),
                timeout=float(phishing.get("timeout_sec", 300.0)),
            )
        else:
            _log.warning("phishing detector has no API key; skipping")

    return detectors
