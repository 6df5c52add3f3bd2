#!/usr/bin/env python3
"""
AudioSliceWatcher: picks up raw PCM slices dropped by the external audio
producer, claims them, and turns each one into a WAV artifact.

Per tick:
  - claim: os.replace every candidate from the drop directory into
    <work_dir>/<role tag>/ (atomic on one filesystem, so the producer and a
    second watcher can never both own a file)
  - transcode: each claimed file is wrapped in a WAV container on the
    transcode pool; the raw file is deleted only after the WAV is in place

A failed transcode leaves the raw file in the work directory and emits
nothing. Stale raw files in the drop directory are swept once on start.
"""

from __future__ import annotations

import logging
import os
import threading
import time
import wave
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from meetguard.artifacts import ArtifactState, AudioSlice, ChannelRole
from meetguard.naming import SegmentNamer

SAMPLE_WIDTH = 2  # signed 16-bit little-endian
CHUNK_FRAMES = 48000

_log = logging.getLogger("audio_watcher")


class TranscodeError(Exception):
    """Raised when a raw slice cannot be turned into a WAV file."""


@dataclass(frozen=True)
class ClaimedFile:
    work_path: Path
    source_name: str
    role: ChannelRole
    raw_size: int


def transcode_pcm_to_wav(
    source: Path,
    target: Path,
    *,
    sample_rate: int = 48000,
    channels: int = 1,
    sample_width: int = SAMPLE_WIDTH,
) -> int:
    """Wrap header-less PCM from ``source`` into a WAV file at ``target``.

    Returns the number of frames written. The WAV is written next to the target
    and moved into place only when complete.
    """
    source = Path(source)
    target = Path(target)
    frame_bytes = channels * sample_width
    try:
        size = source.stat().st_size
    except OSError as exc:
        raise TranscodeError(f"cannot stat {source}: {exc}") from exc
    if size == 0:
        raise TranscodeError(f"{source.name} is empty")
    if size % frame_bytes:
        raise TranscodeError(
            f"{source.name}: {size} bytes is not a whole number of {frame_bytes}-byte frames"
        )

    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f".{target.name}.tmp")
    frames = 0
    try:
        with source.open("rb") as raw, wave.open(str(tmp), "wb") as wav_file:
            wav_file.setnchannels(channels)
            wav_file.setsampwidth(sample_width)
            wav_file.setframerate(sample_rate)
            while True:
                chunk = raw.read(CHUNK_FRAMES * frame_bytes)
                if not chunk:
                    break
                wav_file.writeframes(chunk)
                frames += len(chunk) // frame_bytes
        os.replace(tmp, target)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise TranscodeError(f"cannot write {target.name}: {exc}") from exc
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return frames


class AudioSliceWatcher:
    def __init__(
        self,
        drop_dir: str | Path,
        work_dir: str | Path,
        output_dir: str | Path,
        namer: SegmentNamer,
        *,
        on_artifact: Callable[[AudioSlice], None],
        sample_rate: int = 48000,
        channels: int = 1,
        raw_ext: str = ".pcm",
        poll_interval: float = 10.0,
        transcode_workers: int = 4,
        min_age: float = 0.5,
        ignore_suffixes: Iterable[str] = (),
    ) -> None:
        self.drop_dir = Path(drop_dir)
        self.work_dir = Path(work_dir)
        self.output_dir = Path(output_dir)
        self.namer = namer
        self.on_artifact = on_artifact
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.raw_ext = raw_ext.lower() if raw_ext.startswith(".") else f".{raw_ext.lower()}"
        self.poll_interval = max(0.05, float(poll_interval))
        self.min_age = max(0.0, float(min_age))
        self.ignore_suffixes = tuple(s.lower() for s in ignore_suffixes)

        self._pool = ThreadPoolExecutor(
            max_workers=max(1, int(transcode_workers)),
            thread_name_prefix="transcode",
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._swept = False
        self._targets_lock = threading.Lock()
        self._reserved: set[Path] = set()
        self.ticks = 0

    # --- candidate filtering ---
    def _role_of(self, path: Path) -> ChannelRole | None:
        name = path.name
        if name.startswith("."):
            return None
        low = name.lower()
        if any(low.endswith(suffix) for suffix in self.ignore_suffixes):
            return None
        if path.suffix.lower() != self.raw_ext:
            return None
        return self.namer.role_for_name(name)

    def _settled(self, path: Path, now: float) -> bool:
        if self.min_age <= 0:
            return True
        try:
            return now - path.stat().st_mtime >= self.min_age
        except FileNotFoundError:
            return False

    def _iter_drop_dir(self) -> list[Path]:
        try:
            return sorted(p for p in self.drop_dir.iterdir() if p.is_file())
        except FileNotFoundError:
            return []

    # --- startup sweep ---
    def sweep_stale(self) -> int:
        """Delete raw slices left in the drop directory by a previous run."""
        removed = 0
        for path in self._iter_drop_dir():
            if self._role_of(path) is None:
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                _log.warning("could not remove stale slice %s: %s", path.name, exc)
                continue
            removed += 1
        self._swept = True
        if removed:
            _log.info("removed %d stale raw slice(s) from %s", removed, self.drop_dir)
        return removed

    # --- claim ---
    def _move_to_work(self, path: Path, role: ChannelRole) -> Path:
        dest_dir = self.work_dir / self.namer.tag_for(role)
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / path.name
        if dest.exists():
            dest = dest_dir / f"{path.stem}.{int(time.time())}{path.suffix}"
        os.replace(path, dest)  # atomic rename within the same filesystem
        return dest

    def claim(self) -> list[ClaimedFile]:
        if not self.drop_dir.exists():
            _log.debug("drop directory does not exist yet: %s", self.drop_dir)
            return []
        now = time.time()
        claimed: list[ClaimedFile] = []
        for path in self._iter_drop_dir():
            role = self._role_of(path)
            if role is None or not self._settled(path, now):
                continue
            try:
                size = path.stat().st_size
                work_path = self._move_to_work(path, role)
            except FileNotFoundError:
                # producer or another watcher took it first
                continue
            except OSError as exc:
                _log.error("claim failed for %s: %s", path.name, exc)
                continue
            claimed.append(
                ClaimedFile(work_path=work_path, source_name=path.name, role=role, raw_size=size)
            )
        if claimed:
            _log.debug("claimed %d slice(s)", len(claimed))
        return claimed

    # --- transcode ---
    def _reserve_target(self, target: Path) -> Path:
        """Claim an output path that neither exists nor is being written by another transcode."""
        with self._targets_lock:
            candidate = target
            counter = 0
            while candidate in self._reserved or candidate.exists():
                counter += 1
                candidate = target.with_name(f"{target.stem}.{counter}{target.suffix}")
            if counter:
                _log.warning("%s already exists; writing %s instead", target.name, candidate.name)
            self._reserved.add(candidate)
            return candidate

    def process_claimed(self, item: ClaimedFile) -> AudioSlice | None:
        naming = self.namer.audio_output_name(item.source_name)
        if naming.fallback:
            _log.info("slice name %r did not parse; using %s", item.source_name, naming.name)
        target = self._reserve_target(self.output_dir / self.namer.tag_for(item.role) / naming.name)
        try:
            transcode_pcm_to_wav(
                item.work_path,
                target,
                sample_rate=self.sample_rate,
                channels=self.channels,
            )
        except TranscodeError as exc:
            _log.error("transcode failed for %s (raw kept at %s): %s",
                       item.source_name, item.work_path, exc)
            return None
        finally:
            with self._targets_lock:
                self._reserved.discard(target)

        try:
            item.work_path.unlink()
        except OSError as exc:
            _log.warning("could not remove raw slice %s: %s", item.work_path, exc)

        parsed = naming.parsed
        audio_slice = AudioSlice(
            path=target,
            state=ArtifactState.READY,
            channel=item.role,
            capture_started=parsed.captured_at if parsed else None,
            ordinal=parsed.ordinal if parsed else None,
            raw_size=item.raw_size,
            source_name=item.source_name,
            name_parsed=parsed is not None,
        )
        _log.info("slice ready: %s (%s)", audio_slice.name, item.role.value)
        try:
            self.on_artifact(audio_slice)
        except Exception:  # noqa: BLE001 - consumer errors must not stop the watcher
            _log.exception("artifact consumer failed for %s", audio_slice.name)
        return audio_slice

    def tick(self) -> list[Future]:
        """Claim everything available and queue one transcode per claimed file."""
        self.ticks += 1
        futures: list[Future] = []
        for item in self.claim():
            try:
                futures.append(self._pool.submit(self.process_claimed, item))
            except RuntimeError:
                _log.warning("transcode pool closed; %s stays in %s",
                             item.source_name, item.work_path.parent)
        return futures

    # --- loop ---
    def start(self) -> None:
        if self._thread is not None:
            return
        if not self._swept:
            self.sweep_stale()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="audio-watcher", daemon=True)
        self._thread.start()
        _log.info("watching %s every %.1fs", self.drop_dir, self.poll_interval)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:  # noqa: BLE001 - keep polling
                _log.exception("audio watcher tick failed")
            self._stop.wait(self.poll_interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        self._pool.shutdown(wait=False)
        _log.info("audio watcher stopped after %d tick(s)", self.ticks)

    def shutdown(self, wait: bool = True) -> None:
        """Release the transcode pool; ``wait`` blocks until queued work finishes."""
        self._pool.shutdown(wait=wait)
