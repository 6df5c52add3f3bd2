"""Voice-phishing detector backed by a Dify workflow."""

from __future__ import annotations

import json
import logging
from typing import Any

from meetguard.artifacts import Artifact, Verdict
from meetguard.config import mask_secret
from meetguard.detectors.base import DetectorBackend, DetectorError, encode_multipart, http_json, http_request

_log = logging.getLogger("detectors")

PHISHING_MARKERS = ("PHISHING", "MALICIOUS", "SUSPICIOUS", "FRAUD", "SCAM", "THREAT")
SAFE_MARKERS = ("SAFE", "LEGITIMATE", "BENIGN", "CLEAN", "NORMAL", "SPAM")
VERDICT_KEYS = ("verdict", "decision", "result", "output", "classification")


def strip_code_fence(text: str) -> str:
    content = text.strip()
    if "```json" in content:
        content = content.split("```json", 1)[1]
        content = content.split("```", 1)[0]
    elif content.startswith("```"):
        content = content[3:]
        content = content.split("```", 1)[0]
    return content.strip()


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _confidence(result: dict[str, Any]) -> float:
    for key in ("confidence", "score"):
        value = _as_float(result.get(key))
        if value is not None and value >= 0:
            return value
    likelihood = _as_float(result.get("likelihood"))
    if likelihood is not None and likelihood >= 0:
        return likelihood / 10.0
    return 0.0


def _evidence(items: Any) -> tuple[str, ...]:
    if not isinstance(items, list):
        return ()
    out: list[str] = []
    for item in items:
        if isinstance(item, dict):
            quote = str(item.get("quote") or "").strip()
            tactic = str(item.get("tactic") or "").strip()
            if quote and tactic:
                out.append(f"'{quote}' ({tactic})")
            elif quote or tactic:
                out.append(quote or tactic)
        elif str(item).strip():
            out.append(str(item).strip())
    return tuple(out)


def normalize_verdict(raw: str, confidence: float) -> str:
    upper = raw.strip().upper()
    if any(marker in upper for marker in PHISHING_MARKERS):
        return "PHISHING"
    if any(marker in upper for marker in SAFE_MARKERS):
        return "SAFE"
    return "PHISHING" if confidence >= 0.5 else "SAFE"


def parse_workflow_response(response: dict[str, Any]) -> Verdict:
    """Turn a blocking ``workflows/run`` response into a Verdict.

    Raises DetectorError when the workflow did not succeed or produced no
    parseable LLM output.
    """
    data = response.get("data")
    if not isinstance(data, dict):
        raise DetectorError("workflow response has no 'data' field")
    status = str(data.get("status") or "")
    if status != "succeeded":
        raise DetectorError(f"workflow {status or 'unknown'}: {data.get('error') or 'Unknown error'}")
    outputs = data.get("outputs")
    if not isinstance(outputs, dict):
        raise DetectorError("workflow data has no 'outputs' field")
    llm_output = outputs.get("LLM")
    if isinstance(llm_output, dict):
        result = llm_output
    else:
        text = strip_code_fence(str(llm_output or ""))
        if not text:
            raise DetectorError("workflow produced no LLM output")
        try:
            result = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DetectorError(f"LLM output is not JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise DetectorError("LLM output is not a JSON object")

    raw_verdict = ""
    for key in VERDICT_KEYS:
        value = result.get(key)
        if isinstance(value, str) and value.strip():
            raw_verdict = value
            break
    confidence = _confidence(result)
    reasons = result.get("reasons")
    rationale = None
    if isinstance(reasons, list) and reasons:
        rationale = "; ".join(str(r) for r in reasons if str(r).strip()) or None

    return Verdict(
        category=normalize_verdict(raw_verdict, confidence),
        confidence=confidence,
        rationale=rationale,
        evidence=_evidence(result.get("evidence")),
        raw=result,
    )


class DifyVoiceDetector(DetectorBackend):
    name = "phishing"
    display_name = "DifyVoiceDetector"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.dify.ai/v1",
        user: str = "",
        timeout: float = 300.0,
    ) -> None:
        if not api_key:
            raise ValueError("Dify API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.user = user or "meetguard"
        self.timeout = float(timeout)
        _log.info("DifyVoiceDetector initialised with API key %s", mask_secret(api_key))

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def upload(self, artifact: Artifact) -> str:
        try:
            body, content_type = encode_multipart({"user": self.user}, "file", artifact.path)
        except OSError as exc:
            raise DetectorError(f"cannot read {artifact.path}: {exc}") from exc
        raw = http_request(
            f"{self.base_url}/files/upload",
            method="POST",
            body=body,
            headers={**self._auth(), "Content-Type": content_type},
            timeout=self.timeout,
        )
        try:
            upload_id = json.loads(raw.decode("utf-8") or "{}").get("id")
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError) as exc:
            raise DetectorError("cannot parse upload response") from exc
        if not upload_id:
            raise DetectorError(f"upload of {artifact.name} returned no id")
        return str(upload_id)

    def run_workflow(self, upload_id: str) -> dict[str, Any]:
        payload = {
            "inputs": {
                "InputVoice": {
                    "transfer_method": "local_file",
                    "upload_file_id": upload_id,
                    "type": "audio",
                }
            },
            "response_mode": "blocking",
            "user": self.user,
        }
        return http_json(
            f"{self.base_url}/workflows/run",
            method="POST",
            payload=payload,
            headers=self._auth(),
            timeout=self.timeout,
        )

    def detect(self, artifact: Artifact) -> Verdict:
        _log.debug("[%s] step 1/2: uploading", artifact.name)
        upload_id = self.upload(artifact)
        _log.debug("[%s] step 2/2: running workflow (upload %s)", artifact.name, upload_id)
        verdict = parse_workflow_response(self.run_workflow(upload_id))
        _log.info("[%s] Dify verdict=%s confidence=%.2f evidence=%d",
                  artifact.name, verdict.category, verdict.confidence or 0.0, len(verdict.evidence))
        return verdict
