"""
Bot Configuration - environment driven settings
"""
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


# SponsorBlock categories, in the order the API documents them
ALL_CATEGORIES: tuple[str, ...] = (
    "interaction",
    "intro",
    "music_offtopic",
    "outro",
    "preview",
    "selfpromo",
    "sponsor",
)


@dataclass(frozen=True)
class StationInfo:
    """Static info for an internet radio station."""
    stream_url: str
    site_url: str


STATIONS: dict[str, StationInfo] = {
    "Hive365": StationInfo(
        stream_url="http://stream.hive365.co.uk:8088/live",
        site_url="https://hive365.co.uk",
    ),
    "Eco99FM": StationInfo(
        stream_url="https://eco-live.mediacast.co.il/99fm_aac",
        site_url="https://eco99fm.maariv.co.il",
    ),
}


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Settings read from the environment (and .env when present)."""

    def __init__(self):
        self.DISCORD_TOKEN: str | None = os.getenv("DISCORD_TOKEN")
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

        # YouTube extraction
        self.YTDL_COOKIES_PATH: str | None = os.getenv("YTDL_COOKIES_PATH")
        self.YTDL_PO_TOKEN: str | None = os.getenv("YTDL_PO_TOKEN")
        self.FFMPEG_PATH: str = os.getenv("FFMPEG_PATH", "ffmpeg")

        # Spotify link resolution
        self.SPOTIFY_CLIENT_ID: str | None = os.getenv("SPOTIFY_CLIENT_ID")
        self.SPOTIFY_CLIENT_SECRET: str | None = os.getenv("SPOTIFY_CLIENT_SECRET")

        # Web server
        self.WEB_HOST: str = os.getenv("WEB_HOST", "0.0.0.0")
        self.WEB_PORT: int = _int("WEB_PORT", 8080)
        self.PUBLIC_URL: str = os.getenv("PUBLIC_URL", f"http://localhost:{self.WEB_PORT}").rstrip("/")
        self.STATIC_DIR: Path = Path(os.getenv("STATIC_DIR", "resources/static"))

        # Timers (seconds)
        self.IDLE_TIMEOUT: int = _int("IDLE_TIMEOUT", 5 * 60)
        self.RADIO_IDLE_TIMEOUT: int = _int("RADIO_IDLE_TIMEOUT", 10)
        self.JOIN_CODE_TTL: int = _int("JOIN_CODE_TTL", 5 * 60)
        self.DOWNLOAD_TTL: int = _int("DOWNLOAD_TTL", 5 * 60)

        # Commands
        self.RATE_LIMIT: int = _int("RATE_LIMIT", 15)
        self.INVITE_URL: str | None = os.getenv("INVITE_URL")
        self.OWNER_IDS: set[int] = {
            int(part) for part in os.getenv("OWNER_IDS", "").split(",") if part.strip().isdigit()
        }


config = Config()
