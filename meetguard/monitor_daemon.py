#!/usr/bin/env python3
"""
meetguard monitor daemon.

- loads configuration, detectors and alert sinks
- starts one capture session (screen segments, snapshots, audio slices)
- stops the session on SIGINT/SIGTERM

``--once-audio`` claims and transcodes whatever the audio producer has
dropped, dispatches the slices, waits for their verdicts and exits.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from concurrent.futures import wait
from typing import Iterable

from meetguard.config import active_config_path, get_cfg, mask_secret, reload_cfg
from meetguard.naming import new_session_id
from meetguard.session import SessionController

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_log = logging.getLogger("monitor_daemon")


def configure_logging(cfg: dict) -> None:
    log_cfg = cfg.get("logging", {})
    if log_cfg.get("dev_mode"):
        level = logging.DEBUG
    else:
        level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Meeting capture and fraud detection monitor")
    parser.add_argument("--config", help="Path to a config.yaml (overrides MEETGUARD_CONFIG)")
    parser.add_argument(
        "--once-audio",
        action="store_true",
        help="Ingest pending audio slices once, wait for verdicts and exit",
    )
    parser.add_argument(
        "--no-screen",
        action="store_true",
        help="Do not launch the ffmpeg screen source (audio only)",
    )
    parser.add_argument(
        "--rotation-interval",
        type=float,
        default=None,
        help="Override capture.rotation_interval_sec",
    )
    parser.add_argument(
        "--wait-timeout",
        type=float,
        default=600.0,
        help="Seconds --once-audio waits for detector verdicts (default: 600)",
    )
    return parser.parse_args(list(argv))


def _load_cfg(config_path: str | None) -> dict:
    if config_path:
        os.environ["MEETGUARD_CONFIG"] = config_path
        return reload_cfg()
    return get_cfg()


def _describe_detectors(cfg: dict) -> None:
    det = cfg.get("detectors", {})
    _log.info(
        "detector keys: manipulation=%s phishing=%s",
        mask_secret(det.get("manipulation", {}).get("api_key")),
        mask_secret(det.get("phishing", {}).get("api_key")),
    )


def run_once_audio(controller: SessionController, wait_timeout: float | None = None) -> int:
    """Single watcher tick without the startup sweep. Returns 1 if verdicts were still pending."""
    dispatcher = controller.build_dispatcher()
    namer = controller.build_namer(new_session_id())
    jobs = []

    def on_artifact(artifact) -> None:
        jobs.extend(dispatcher.submit(artifact))

    watcher = controller.build_watcher(namer, on_artifact)
    futures = watcher.tick()
    wait(futures)
    watcher.shutdown(wait=True)
    done = dispatcher.wait_idle(wait_timeout)
    dispatcher.shutdown(wait=done)
    _log.info(
        "once-audio: %d slice(s) transcoded, %d job(s), %d alert(s)%s",
        sum(1 for f in futures if f.result() is not None),
        len(jobs),
        dispatcher.router.alerts_emitted,
        "" if done else " (some verdicts still pending)",
    )
    controller.sink.close()
    return 0 if done else 1


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    cfg = _load_cfg(args.config)
    configure_logging(cfg)
    _log.info("config: %s", active_config_path() or "defaults")
    _describe_detectors(cfg)

    controller = SessionController(cfg, capture_screen=not args.no_screen)
    if args.once_audio:
        return run_once_audio(controller, args.wait_timeout)

    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        _log.info("received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle_signal)
        except ValueError:
            # only the main thread may install handlers
            pass

    handle = controller.start(rotation_interval=args.rotation_interval)
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        controller.stop(handle)
        if handle.drain_thread is not None:
            handle.drain_thread.join(float(cfg.get("capture", {}).get("finalize_timeout_sec", 10.0)))
        controller.sink.close()
    _log.info("session %s finished", handle.session_id)
    return 0


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())
