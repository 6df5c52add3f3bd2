"""File naming for video segments, snapshots and transcoded audio slices.

Audio slices arrive from the external producer as
``[<source>_]<role>_<YYYYMMDD>_<HHMMSS>_<ordinal>.<rawext>`` and leave the
watcher as ``<OutputPrefix>_<role>_<date>_<time>_<ordinal>.wav``. Names that do
not match are still renamed through a deterministic fallback so the pipeline
never stops on producer naming drift; callers can tell the two apart through
``NamingResult.fallback``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from meetguard.artifacts import ChannelRole

SESSION_PREFIX = "session"
VIDEO_EXT = ".mp4"
IMAGE_EXT = ".jpg"
AUDIO_EXT = ".wav"


def new_session_id(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{SESSION_PREFIX}_{stamp}"


@dataclass(frozen=True)
class SliceName:
    tag: str
    role: ChannelRole
    date: str
    time: str
    ordinal: int
    ordinal_text: str = ""

    @property
    def captured_at(self) -> datetime | None:
        try:
            return datetime.strptime(f"{self.date}{self.time}", "%Y%m%d%H%M%S")
        except ValueError:
            return None


@dataclass(frozen=True)
class NamingResult:
    name: str
    parsed: SliceName | None

    @property
    def fallback(self) -> bool:
        return self.parsed is None


class SegmentNamer:
    def __init__(
        self,
        session_id: str,
        *,
        video_dir: str | Path = ".",
        image_dir: str | Path = ".",
        near_end_tag: str = "mic",
        far_end_tag: str = "tap",
        source_prefix: str = "zoom",
        output_prefix: str = "Zoom",
        audio_ext: str = AUDIO_EXT,
    ) -> None:
        if not session_id:
            raise ValueError("session_id is required")
        near = near_end_tag.strip().lower()
        far = far_end_tag.strip().lower()
        if not near or not far or near == far:
            raise ValueError("near-end and far-end tags must be distinct and non-empty")
        self.session_id = session_id
        self.video_dir = Path(video_dir)
        self.image_dir = Path(image_dir)
        self.source_prefix = source_prefix.strip()
        self.output_prefix = output_prefix.strip() or "Slice"
        self.audio_ext = audio_ext if audio_ext.startswith(".") else f".{audio_ext}"
        self._roles = {near: ChannelRole.NEAR_END, far: ChannelRole.FAR_END}
        self._slice_re = re.compile(
            r"^(?:(?P<source>[A-Za-z0-9]+)_)?"
            rf"(?P<tag>{re.escape(near)}|{re.escape(far)})_"
            r"(?P<date>\d{8})_(?P<time>\d{6})_(?P<ordinal>\d+)"
            r"\.(?P<ext>[A-Za-z0-9]+)$",
            re.IGNORECASE,
        )

    @property
    def role_tags(self) -> dict[str, ChannelRole]:
        return dict(self._roles)

    def tag_for(self, role: ChannelRole) -> str:
        for tag, candidate in self._roles.items():
            if candidate is role:
                return tag
        raise KeyError(role)

    # --- video / image ---
    def video_segment_name(self, sequence: int) -> str:
        return f"{self.session_id}_{int(sequence):03d}{VIDEO_EXT}"

    def video_segment_path(self, sequence: int) -> Path:
        return self.video_dir / self.video_segment_name(sequence)

    def snapshot_name(self, parent_sequence: int) -> str:
        return f"{self.session_id}_frame_{int(parent_sequence):03d}{IMAGE_EXT}"

    def snapshot_path(self, parent_sequence: int) -> Path:
        return self.image_dir / self.snapshot_name(parent_sequence)

    # --- audio slices ---
    def parse_slice_name(self, name: str) -> SliceName | None:
        match = self._slice_re.match(Path(name).name)
        if match is None:
            return None
        tag = match.group("tag").lower()
        return SliceName(
            tag=tag,
            role=self._roles[tag],
            date=match.group("date"),
            time=match.group("time"),
            ordinal=int(match.group("ordinal")),
            ordinal_text=match.group("ordinal"),
        )

    def role_for_name(self, name: str) -> ChannelRole | None:
        """Role from the leading ``[<source>_]<tag>_`` tokens, even when the rest is malformed."""
        tokens = [token.lower() for token in Path(name).name.split("_") if token]
        if tokens and self.source_prefix and tokens[0] == self.source_prefix.lower():
            tokens = tokens[1:]
        if not tokens:
            return None
        return self._roles.get(tokens[0])

    def audio_output_name(self, source_name: str) -> NamingResult:
        parsed = self.parse_slice_name(source_name)
        if parsed is not None:
            name = (
                f"{self.output_prefix}_{parsed.tag}_{parsed.date}_{parsed.time}"
                f"_{parsed.ordinal_text or parsed.ordinal}{self.audio_ext}"
            )
            return NamingResult(name=name, parsed=parsed)
        return NamingResult(name=self._fallback_name(source_name), parsed=None)

    def _fallback_name(self, source_name: str) -> str:
        base = Path(source_name).name
        stem, dot, _ext = base.rpartition(".")
        if not dot:
            stem = base
        # hidden names like ".pcm" carry no stem of their own
        stem = stem.lstrip(".") or "unnamed"
        if self.source_prefix:
            lowered = f"{self.source_prefix.lower()}_"
            if stem.lower().startswith(lowered):
                stem = f"{self.output_prefix}_{stem[len(lowered):]}"
        return f"{stem}{self.audio_ext}"
