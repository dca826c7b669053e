"""Tests for reply formatting helpers."""
from types import SimpleNamespace

import pytest

from musicbox.utils import (
    boolean_to_string,
    generate_code,
    is_url,
    seconds_to_string,
    string_to_seconds,
    style_track,
    style_url,
)


@pytest.mark.parametrize(
    "timestamp, seconds",
    [("45", 45), ("1:05", 65), ("19:03", 1143), ("1:00:00", 3600), (" 2:30 ", 150)],
)
def test_string_to_seconds(timestamp, seconds):
    assert string_to_seconds(timestamp) == seconds


@pytest.mark.parametrize("timestamp", ["", "abc", "1:60", "1:2:3:4", "-5"])
def test_string_to_seconds_invalid(timestamp):
    assert string_to_seconds(timestamp) is None


def test_seconds_to_string():
    assert seconds_to_string(0) == "0:00"
    assert seconds_to_string(65.9) == "1:05"
    assert seconds_to_string(3725) == "1:02:05"


def test_style_url():
    assert style_url("Title", "https://x.test") == "[**Title**](https://x.test)"
    assert style_url("Title", "https://x.test", True) == "[**Title**](<https://x.test>)"


def test_style_track():
    track = SimpleNamespace(title="Song", url="https://www.youtube.com/watch?v=abc")
    assert style_track(track, True) == "[**Song**](<https://www.youtube.com/watch?v=abc>)"


def test_boolean_to_string():
    assert boolean_to_string(True) == "ON"
    assert boolean_to_string(False) == "OFF"


def test_is_url():
    assert is_url("https://youtu.be/dQw4w9WgXcQ")
    assert not is_url("never gonna give you up")
    assert not is_url("ftp://example.com/file")


def test_generate_code():
    code = generate_code()
    assert len(code) == 8
    assert code != generate_code()
