"""
Spotify link resolution - turns track links into YouTube search queries
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from urllib.parse import urlparse

import spotipy
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyClientCredentials

from musicbox.errors import NotFoundError, ProviderError

logger = logging.getLogger(__name__)


def is_spotify_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and parsed.hostname == "open.spotify.com"


def url_resource_type(url: str) -> str | None:
    """'track', 'album', 'artist' or 'playlist' for Spotify links, else None."""
    if not is_spotify_url(url):
        return None
    parts = [part for part in urlparse(url).path.split("/") if part]
    # Localised links look like /intl-de/track/<id>
    if parts and parts[0].startswith("intl-"):
        parts = parts[1:]
    return parts[0] if parts else None


def get_track_id(url: str) -> str | None:
    parts = [part for part in urlparse(url).path.split("/") if part]
    if parts and parts[0].startswith("intl-"):
        parts = parts[1:]
    if len(parts) >= 2 and parts[0] == "track":
        return parts[1]
    return None


class SpotifyService:
    """Client-credentials Spotify lookups."""

    def __init__(self, client_id: str | None = None, client_secret: str | None = None):
        self.enabled = bool(client_id and client_secret)
        self.sp: spotipy.Spotify | None = None
        if self.enabled:
            auth = SpotifyClientCredentials(client_id=client_id, client_secret=client_secret)
            self.sp = spotipy.Spotify(auth_manager=auth, requests_timeout=10, retries=3)
        else:
            logger.warning("Spotify credentials not set. Spotify links will be rejected.")

        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="SpotifyWorker")
        self._name_cache: dict[str, str] = {}

    async def get_track_name(self, url: str) -> str:
        """'Artist - Title' for a Spotify track link.

        Raises NotFoundError for links that do not point at a real track and
        ProviderError when Spotify itself fails.
        """
        track_id = get_track_id(url)
        if not track_id:
            raise NotFoundError(f"Not a Spotify track link: {url}")
        if track_id in self._name_cache:
            return self._name_cache[track_id]
        if self.sp is None:
            raise ProviderError("Spotify support is not configured")

        loop = asyncio.get_event_loop()
        try:
            track = await asyncio.wait_for(
                loop.run_in_executor(self.executor, partial(self.sp.track, track_id)),
                timeout=15.0,
            )
        except SpotifyException as e:
            if e.http_status in (400, 404):
                raise NotFoundError(f"Invalid Spotify track id {track_id}") from e
            raise ProviderError(f"Spotify error: {e}") from e
        except asyncio.TimeoutError:
            raise ProviderError("Spotify request timed out")

        if not track or not track.get("artists"):
            raise NotFoundError(f"Invalid Spotify track id {track_id}")
        name = f"{track['artists'][0]['name']} - {track['name']}"
        self._name_cache[track_id] = name
        return name

    async def shutdown(self):
        self.executor.shutdown(wait=False)
