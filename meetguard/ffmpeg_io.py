"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from collections.abc import Sequence

DEFAULT_THREAD_QUEUE_SIZE = 512
DEFAULT_PIXEL_FORMAT = "rgb24"
BYTES_PER_PIXEL = {"rgb24": 3, "bgr24": 3, "rgba": 4, "bgra": 4, "gray": 1}


def frame_size_bytes(width: int, height: int, pixel_format: str = DEFAULT_PIXEL_FORMAT) -> int:
    return int(width) * int(height) * BYTES_PER_PIXEL[pixel_format]


def rawvideo_pipe_input_args(
    width: int,
    height: int,
    frame_rate: int,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
    pixel_format: str = DEFAULT_PIXEL_FORMAT,
) -> list[str]:
    """Return input arguments for piping raw video frames into ffmpeg.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    ``-thread_queue_size`` and the frame geometry must precede ``pipe:0``.
    """

    return [
        "-f",
        "rawvideo",
        "-pix_fmt",
        pixel_format,
        "-s",
        f"{int(width)}x{int(height)}",
        "-r",
        str(int(frame_rate)),
        "-thread_queue_size",
        str(queue_size),
        "-i",
        "pipe:0",
    ]


def screen_grab_command(
    width: int,
    height: int,
    frame_rate: int,
    *,
    input_format: str = "x11grab",
    input_name: str = ":0.0",
    extra_args: Sequence[str] = (),
    pixel_format: str = DEFAULT_PIXEL_FORMAT,
) -> list[str]:
    """ffmpeg command that captures the screen and writes raw frames to stdout."""

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        input_format,
        "-framerate",
        str(int(frame_rate)),
    ]
    cmd.extend(str(arg) for arg in extra_args)
    cmd.extend(
        [
            "-i",
            input_name,
            "-vf",
            f"scale={int(width)}:{int(height)}",
            "-pix_fmt",
            pixel_format,
            "-f",
            "rawvideo",
            "pipe:1",
        ]
    )
    return cmd
