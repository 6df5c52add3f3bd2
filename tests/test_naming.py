from datetime import datetime
from pathlib import Path

import pytest

from meetguard.artifacts import ChannelRole
from meetguard.naming import SegmentNamer, new_session_id


def _namer(tmp_path: Path | None = None) -> SegmentNamer:
    base = tmp_path or Path(".")
    return SegmentNamer(
        "session_20250101_120000",
        video_dir=base / "video",
        image_dir=base / "images",
    )


def test_session_id_format():
    assert new_session_id(datetime(2025, 1, 2, 3, 4, 5)) == "session_20250102_030405"


def test_video_and_snapshot_names_sort_by_sequence(tmp_path: Path):
    namer = _namer(tmp_path)

    names = [namer.video_segment_name(i) for i in (0, 1, 9, 10, 11)]

    assert names == sorted(names)
    assert names[0] == "session_20250101_120000_000.mp4"
    assert namer.video_segment_path(7) == tmp_path / "video" / "session_20250101_120000_007.mp4"
    assert namer.snapshot_path(3) == tmp_path / "images" / "session_20250101_120000_frame_003.jpg"


@pytest.mark.parametrize(
    "source, expected, role",
    [
        ("tap_20250101_120000_0.pcm", "Zoom_tap_20250101_120000_0.wav", ChannelRole.FAR_END),
        ("mic_20250101_120000_0.pcm", "Zoom_mic_20250101_120000_0.wav", ChannelRole.NEAR_END),
        ("zoom_tap_20250101_120005_12.pcm", "Zoom_tap_20250101_120005_12.wav", ChannelRole.FAR_END),
    ],
)
def test_audio_output_name_for_well_formed_slices(source, expected, role):
    namer = _namer()

    result = namer.audio_output_name(source)

    assert result.name == expected
    assert not result.fallback
    assert result.parsed.role is role


def test_renamed_slice_parses_back_to_the_same_fields():
    namer = _namer()
    original = namer.parse_slice_name("zoom_mic_20250304_221501_42.pcm")

    renamed = namer.audio_output_name("zoom_mic_20250304_221501_42.pcm").name
    reparsed = namer.parse_slice_name(renamed)

    assert reparsed == original
    assert reparsed.captured_at == datetime(2025, 3, 4, 22, 15, 1)


@pytest.mark.parametrize(
    "source, expected",
    [
        ("zoom_tap_garbage.pcm", "Zoom_tap_garbage.wav"),
        ("tap_2025_oops.pcm", "tap_2025_oops.wav"),
        ("something.raw", "something.wav"),
        (".pcm", "unnamed.wav"),
        ("..pcm", "unnamed.wav"),
        ("noext", "noext.wav"),
    ],
)
def test_unparseable_names_fall_back_without_raising(source, expected):
    result = _namer().audio_output_name(source)

    assert result.fallback
    assert result.parsed is None
    assert result.name == expected


def test_role_is_read_from_leading_tokens_even_when_malformed():
    namer = _namer()

    assert namer.role_for_name("zoom_tap_garbage.pcm") is ChannelRole.FAR_END
    assert namer.role_for_name("mic_whatever.pcm") is ChannelRole.NEAR_END
    assert namer.role_for_name("screen_20250101.pcm") is None


def test_custom_tags_and_prefixes():
    namer = SegmentNamer(
        "s",
        near_end_tag="near",
        far_end_tag="far",
        source_prefix="meet",
        output_prefix="Meet",
    )

    assert namer.audio_output_name("meet_far_20250101_000000_1.pcm").name == (
        "Meet_far_20250101_000000_1.wav"
    )
    assert namer.tag_for(ChannelRole.NEAR_END) == "near"


def test_tags_must_differ():
    with pytest.raises(ValueError):
        SegmentNamer("s", near_end_tag="tap", far_end_tag="tap")


def test_ordinal_keeps_producer_zero_padding():
    namer = _namer()

    padded = namer.audio_output_name("zoom_tap_20250101_120000_007.pcm")
    bare = namer.audio_output_name("zoom_tap_20250101_120000_7.pcm")

    assert padded.name == "Zoom_tap_20250101_120000_007.wav"
    assert bare.name == "Zoom_tap_20250101_120000_7.wav"
    assert padded.parsed.ordinal == bare.parsed.ordinal == 7
    assert padded.parsed.ordinal_text == "007"
