#!/usr/bin/env python3
"""Alert sinks: where AlertRecords are persisted or forwarded."""

from __future__ import annotations

import json
import logging
import queue
import socket
import threading
import time
from pathlib import Path
from typing import Any, Iterable
from urllib.error import URLError
from urllib.request import Request, urlopen

from meetguard.artifacts import AlertRecord

_log = logging.getLogger("alerts")


class AlertSinkError(Exception):
    """Raised when an alert cannot be delivered."""


class AlertSink:
    def emit(self, record: AlertRecord) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class MemoryAlertSink(AlertSink):
    """Keeps records in a list; handy for embedding and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: list[AlertRecord] = []

    def emit(self, record: AlertRecord) -> None:
        with self._lock:
            self.records.append(record)


class JsonlAlertSink(AlertSink):
    """Append one JSON object per line."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def emit(self, record: AlertRecord) -> None:
        line = json.dumps(record.to_payload(), ensure_ascii=False, separators=(",", ":"))
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
                    handle.write("\n")
        except OSError as exc:
            raise AlertSinkError(f"cannot append to {self.path}: {exc}") from exc


class WebhookAlertSink(AlertSink):
    """POST alerts to a webhook from a background worker."""

    def __init__(
        self,
        webhook_cfg: dict[str, Any] | None,
        *,
        run_async: bool = True,
        queue_size: int = 32,
    ) -> None:
        cfg = webhook_cfg or {}
        self.url = str(cfg.get("url") or "").strip()
        if not self.url:
            raise ValueError("webhook url is required")
        self.method = (str(cfg.get("method", "POST")) or "POST").upper()
        self.headers = self._normalise_headers(cfg.get("headers"))
        self.timeout = float(cfg.get("timeout_sec", 5.0) or 5.0)
        self.hostname = socket.gethostname()
        self.delivered = 0
        self.dropped = 0
        self._run_async = run_async
        self._queue: queue.Queue[dict[str, Any] | None] | None = None
        self._worker: threading.Thread | None = None
        if self._run_async:
            self._queue = queue.Queue(maxsize=max(1, int(queue_size or 32)))
            self._worker = threading.Thread(
                target=self._dispatch_loop,
                name="alert-webhook",
                daemon=True,
            )
            self._worker.start()

    @staticmethod
    def _normalise_headers(headers: Any) -> dict[str, str]:
        if isinstance(headers, dict):
            return {str(key): str(value) for key, value in headers.items() if str(key).strip()}
        return {}

    def emit(self, record: AlertRecord) -> None:
        payload = {
            "alert": record.to_payload(),
            "host": self.hostname,
            "generated_at": time.time(),
        }
        if not self._run_async or self._queue is None:
            self._send(payload)
            return
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            self.dropped += 1
            _log.warning("dropping alert for %s (webhook queue full)", record.artifact_name)

    def _dispatch_loop(self) -> None:
        pending = self._queue
        if pending is None:
            return
        while True:
            payload = pending.get()
            if payload is None:
                pending.task_done()
                break
            try:
                self._send(payload)
            except AlertSinkError as exc:
                _log.warning("%s", exc)
            except Exception as exc:  # noqa: BLE001 - keep the worker alive
                _log.warning("webhook dispatch raised unexpected error: %s", exc)
            finally:
                pending.task_done()

    def _send(self, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        request = Request(
            self.url,
            data=body,
            method=self.method,
            headers={"Content-Type": "application/json", **self.headers},
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                response.read()
        except (URLError, OSError) as exc:
            raise AlertSinkError(f"webhook delivery failed: {exc}") from exc
        self.delivered += 1

    def flush(self) -> None:
        if self._queue is not None:
            self._queue.join()

    def close(self) -> None:
        if self._queue is None or self._worker is None:
            return
        try:
            self._queue.put(None, timeout=self.timeout)
        except queue.Full:
            _log.warning("webhook queue still full on close; worker left running")
            return
        self._worker.join(self.timeout)
        self._worker = None


class FanoutAlertSink(AlertSink):
    """Deliver to every child sink; one failing child does not stop the others."""

    def __init__(self, sinks: Iterable[AlertSink]) -> None:
        self.sinks = list(sinks)

    def emit(self, record: AlertRecord) -> None:
        for sink in self.sinks:
            try:
                sink.emit(record)
            except Exception as exc:  # noqa: BLE001 - isolate sinks
                _log.error("alert sink %s failed: %s", type(sink).__name__, exc)

    def close(self) -> None:
        for sink in self.sinks:
            try:
                sink.close()
            except Exception as exc:  # noqa: BLE001 - isolate sinks
                _log.warning("closing %s failed: %s", type(sink).__name__, exc)


def build_alert_sink(cfg: dict[str, Any] | None) -> AlertSink:
    """Sink for the ``alerts`` config section; falls back to an in-memory sink."""
    cfg = cfg or {}
    sinks: list[AlertSink] = []
    jsonl_path = str(cfg.get("jsonl_path") or "").strip()
    if jsonl_path:
        sinks.append(JsonlAlertSink(jsonl_path))
    webhook_cfg = cfg.get("webhook")
    if isinstance(webhook_cfg, dict) and str(webhook_cfg.get("url") or "").strip():
        sinks.append(WebhookAlertSink(webhook_cfg))
    if not sinks:
        _log.warning("no alert sink configured; alerts are kept in memory only")
        return MemoryAlertSink()
    if len(sinks) == 1:
        return sinks[0]
    return FanoutAlertSink(sinks)
