"""
Formatting helpers for chat replies
"""
import re
import secrets
from urllib.parse import urlparse

TIMESTAMP_PATTERN = re.compile(r"^(?:(?:(?P<h>\d{1,2}):)?(?P<m>[0-5]?\d):)?(?P<s>[0-5]?\d)$")


def is_url(text: str) -> bool:
    try:
        parsed = urlparse(text.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def style_url(text: str, url: str, hide_embed: bool = False) -> str:
    """Bold hyperlink; wrapping the url in <> suppresses Discord's embed."""
    target = f"<{url}>" if hide_embed else url
    return f"[**{text}**]({target})"


def style_track(track, hide_embed: bool = False) -> str:
    return style_url(track.title, track.url, hide_embed)


def style_status(status: str) -> str:
    return f"**{status}**"


def boolean_to_string(value: bool) -> str:
    return "ON" if value else "OFF"


def seconds_to_string(seconds: float) -> str:
    """Format seconds as m:ss or h:mm:ss."""
    seconds = int(seconds)
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def string_to_seconds(timestamp: str) -> int | None:
    """Parse hh:mm:ss, mm:ss or ss into seconds. Returns None when invalid."""
    match = TIMESTAMP_PATTERN.match(timestamp.strip())
    if not match:
        return None
    seconds = int(match.group("s"))
    if match.group("m"):
        seconds += int(match.group("m")) * 60
    if match.group("h"):
        seconds += int(match.group("h")) * 3600
    return seconds


def generate_code(nbytes: int = 6) -> str:
    """Short url-safe random token (8 characters for the default size)."""
    return secrets.token_urlsafe(nbytes)
