"""Detector backend interface and the small HTTP helpers shared by backends."""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from meetguard.artifacts import Artifact, Verdict

_log = logging.getLogger("detectors")

MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}


class DetectorError(Exception):
    """A detector call failed. Never used to carry a verdict."""


class DetectorBackend:
    """One remote classifier.

    ``name`` is the routing key used by the dispatcher and the alert policy;
    ``display_name`` is what alert records show.
    """

    name = "detector"
    display_name = "Detector"

    def detect(self, artifact: Artifact) -> Verdict:
        raise NotImplementedError

    def close(self) -> None:
        return None


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def http_request(
    url: str,
    *,
    method: str = "GET",
    body: bytes | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
) -> bytes:
    request = Request(url, data=body, method=method, headers=headers or {})
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.read()
    except HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="ignore")[:200]
        except Exception:  # noqa: BLE001 - best effort detail only
            pass
        raise DetectorError(f"{method} {url} failed: HTTP {exc.code} {detail}".rstrip()) from exc
    except (URLError, OSError) as exc:
        raise DetectorError(f"{method} {url} failed: {exc}") from exc


def http_json(
    url: str,
    *,
    method: str = "GET",
    payload: Any = None,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
) -> dict[str, Any]:
    merged = {"Accept": "application/json", **(headers or {})}
    body = None
    if payload is not None:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        merged["Content-Type"] = "application/json"
    raw = http_request(url, method=method, body=body, headers=merged, timeout=timeout)
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DetectorError(f"{method} {url} returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise DetectorError(f"{method} {url} returned {type(data).__name__}, expected object")
    return data


def encode_multipart(
    fields: dict[str, str],
    file_field: str,
    file_path: Path,
) -> tuple[bytes, str]:
    """Build a multipart/form-data body; returns ``(body, content_type)``."""
    boundary = f"----meetguard{uuid.uuid4().hex}"
    parts: list[bytes] = []
    for key, value in fields.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{key}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    file_path = Path(file_path)
    parts.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{file_path.name}"\r\n'
            f"Content-Type: {mime_type_for(file_path)}\r\n\r\n"
        ).encode("utf-8")
    )
    parts.append(file_path.read_bytes())
    parts.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"
