import sys
from pathlib import Path

import numpy as np
import pytest

from meetguard.ffmpeg_io import DEFAULT_THREAD_QUEUE_SIZE
from meetguard.video_encoder import EncoderError, StreamingVideoEncoder

COPY_STDIN = (
    "import pathlib, sys; "
    "dest = pathlib.Path(sys.argv[1]); "
    "data = sys.stdin.buffer.read(); "
    "dest.write_bytes(data)"
)


def _copy_command(path: Path) -> list[str]:
    return [sys.executable, "-c", COPY_STDIN, str(path)]


def _frame(value: int) -> np.ndarray:
    return np.full((2, 4, 3), value, dtype=np.uint8)


def test_encoder_writes_accepted_frames(tmp_path: Path):
    output = tmp_path / "segments" / "seg_000.mp4"
    encoder = StreamingVideoEncoder(str(output), width=4, height=2, frame_rate=5)
    encoder.prepare(command=_copy_command(output))
    assert encoder.accept_frame(_frame(1)) is False  # not started yet

    encoder.start()
    assert encoder.accept_frame(_frame(1)) is True
    assert encoder.accept_frame(_frame(2)) is True
    assert encoder.wait_for_frames(0.1)

    result = encoder.close(timeout=5.0)
    assert result.success
    assert result.frames_written == 2
    assert result.dropped_frames == 0
    assert output.read_bytes() == _frame(1).tobytes() + _frame(2).tobytes()
    assert encoder.accept_frame(_frame(3)) is False


def test_encoder_rejects_wrong_frame_size(tmp_path: Path):
    output = tmp_path / "seg.mp4"
    encoder = StreamingVideoEncoder(str(output), width=4, height=2)
    encoder.prepare(command=_copy_command(output))
    encoder.start()

    assert encoder.accept_frame(np.zeros((3, 4, 3), dtype=np.uint8)) is False

    result = encoder.close(timeout=5.0)
    assert result.dropped_frames == 1
    assert result.frames_written == 0


def test_encoder_replaces_stale_output(tmp_path: Path):
    output = tmp_path / "seg.mp4"
    output.write_bytes(b"stale")
    encoder = StreamingVideoEncoder(str(output), width=4, height=2)
    encoder.prepare(command=_copy_command(output))
    encoder.start()
    encoder.accept_frame(_frame(7))

    assert encoder.close(timeout=5.0).success
    assert output.read_bytes() == _frame(7).tobytes()


def test_prepare_failure_raises_encoder_error(tmp_path: Path):
    encoder = StreamingVideoEncoder(str(tmp_path / "seg.mp4"), width=4, height=2)

    with pytest.raises(EncoderError):
        encoder.prepare(command=[str(tmp_path / "no-such-binary")])

    result = encoder.close(timeout=1.0)
    assert not result.success


def test_start_requires_prepare(tmp_path: Path):
    encoder = StreamingVideoEncoder(str(tmp_path / "seg.mp4"), width=4, height=2)

    with pytest.raises(EncoderError):
        encoder.start()


def test_nonzero_exit_is_reported(tmp_path: Path):
    output = tmp_path / "seg.mp4"
    encoder = StreamingVideoEncoder(str(output), width=4, height=2)
    encoder.prepare(
        command=[
            sys.executable,
            "-c",
            "import sys; sys.stdin.buffer.read(); sys.stderr.write('boom\\n'); sys.exit(3)",
        ]
    )
    encoder.start()
    encoder.accept_frame(_frame(0))

    result = encoder.close(timeout=5.0)
    assert not result.success
    assert result.returncode == 3
    assert "boom" in (result.stderr or "")


def test_thread_queue_size_precedes_input(tmp_path: Path):
    encoder = StreamingVideoEncoder(str(tmp_path / "seg.mp4"), width=1280, height=720)

    cmd = encoder._build_command()

    queue_idx = cmd.index("-thread_queue_size")
    input_idx = cmd.index("-i")
    assert queue_idx < input_idx
    assert cmd[queue_idx + 1] == str(DEFAULT_THREAD_QUEUE_SIZE)
    assert cmd[input_idx + 1] == "pipe:0"
    assert cmd[cmd.index("-s") + 1] == "1280x720"
    assert cmd[-1].endswith("seg.mp4")
