"""
YouTube metadata and stream resolution
"""
import asyncio
import logging
import random
import re
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial, wraps
from typing import Any
from urllib.parse import parse_qs, urlparse

import yt_dlp
from ytmusicapi import YTMusic

from musicbox.errors import NotFoundError, ProviderError
from musicbox.player.track import PlaylistData, TrackData
from musicbox.services.sponsorblock import SponsorBlockService

logger = logging.getLogger(__name__)

SEARCH_CACHE_TTL = 12 * 60 * 60
PLAYLIST_LIMIT = 100

# yt-dlp error messages that mean the item is gone rather than the request failing
NOT_FOUND_PATTERN = re.compile(
    r"video unavailable|private video|does not exist|not available|has been removed|"
    r"incomplete youtube id|is not a valid url|members-only|account.*terminated",
    re.IGNORECASE,
)


def retry_with_backoff(retries=3, backoff_in_seconds=1):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except NotFoundError:
                    raise
                except Exception as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e}")
                        raise
                    else:
                        sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                        logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                        await asyncio.sleep(sleep)
                        x += 1
        return wrapper
    return decorator


class _Cached:
    """A cached lookup result and when it was stored."""
    __slots__ = ("value", "time")

    def __init__(self, value: Any):
        self.value = value
        self.time = time.monotonic()

    def fresh(self, ttl: float) -> bool:
        return time.monotonic() - self.time < ttl


class YouTubeService:
    """Search through YouTube Music, extraction through yt-dlp."""

    def __init__(
        self,
        cookies_path: str | None = None,
        po_token: str | None = None,
        sponsorblock: SponsorBlockService | None = None,
    ):
        self.yt = YTMusic()
        self.sponsorblock = sponsorblock or SponsorBlockService()
        self.cookies_path = cookies_path
        self.po_token = po_token

        # Dedicated executor for YouTube operations to prevent blocking main thread pool
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")

        self._video_search_cache: dict[str, str] = {}
        self._playlist_search_cache: dict[str, _Cached] = {}
        self._track_cache: dict[str, TrackData] = {}
        self._playlist_cache: dict[str, _Cached] = {}

        base_opts = {
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "logtostderr": False,
        }
        if cookies_path:
            base_opts["cookiefile"] = cookies_path
        if po_token:
            base_opts["extractor_args"] = {"youtube": {"po_token": [po_token]}}

        self._ydl_opts = {
            **base_opts,
            "format": "bestaudio/best",
            "source_address": "0.0.0.0",
            "extract_flat": False,
            "ignoreerrors": True,
            "noplaylist": True,
        }
        self._info_opts = {**base_opts, "skip_download": True, "noplaylist": True}
        self._playlist_opts = {**base_opts, "extract_flat": "in_playlist", "playlistend": PLAYLIST_LIMIT}

    # ==================== URLS ====================

    def parse_url(self, url: str) -> tuple[str, str] | None:
        """Parse YouTube URL to (type, id)."""
        # Check domain first to avoid false positives (e.g. Spotify)
        if not any(domain in url for domain in ["youtube.com", "youtu.be", "music.youtube.com"]):
            return None

        # Matches watch?v=ID, /v/ID, /embed/ID, /shorts/ID and youtu.be/ID.
        # A watch link inside a playlist still means the video.
        video_pattern = r"(?:v=|\/|embed\/|youtu\.be\/)([0-9A-Za-z_-]{11})(?![0-9A-Za-z_-])"
        match = re.search(video_pattern, url)
        if match:
            return "video", match.group(1)

        playlist_pattern = r"(?:list=)([a-zA-Z0-9_-]+)"
        match = re.search(playlist_pattern, url)
        if match:
            return "playlist", match.group(1)

        return None

    @staticmethod
    def is_playlist_url(url: str) -> bool:
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        if not parsed.hostname or "youtube.com" not in parsed.hostname:
            return False
        return bool(parse_qs(parsed.query).get("list"))

    @staticmethod
    def extract_playlist_id(url: str) -> str | None:
        if not YouTubeService.is_playlist_url(url):
            return None
        return parse_qs(urlparse(url).query)["list"][0]

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    # ==================== SEARCH ====================

    async def _run(self, func, *args, timeout: float = 15.0, **kwargs):
        loop = asyncio.get_event_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(self.executor, partial(func, *args, **kwargs)),
            timeout=timeout,
        )

    @retry_with_backoff()
    async def _search(self, query: str, filter_type: str, limit: int) -> list[dict]:
        return await self._run(self.yt.search, query, filter=filter_type, limit=limit)

    async def search(self, query: str) -> str | None:
        """Video id of the best match, or None when nothing matches."""
        query = query.strip().lower()
        if query in self._video_search_cache:
            return self._video_search_cache[query]
        try:
            results = await self._search(query, "videos", 5)
        except Exception as e:
            raise ProviderError(f"YouTube search failed: {e}") from e

        for r in results:
            video_id = r.get("videoId")
            if video_id:
                self._video_search_cache[query] = video_id
                return video_id
        logger.info(f"No video found for query: {query}")
        return None

    async def search_playlist(self, query: str) -> str | None:
        """Playlist id of the best match. Results are cached for 12 hours."""
        query = query.strip().lower()
        cached = self._playlist_search_cache.get(query)
        if cached and cached.fresh(SEARCH_CACHE_TTL):
            return cached.value
        try:
            results = await self._search(query, "playlists", 5)
        except Exception as e:
            raise ProviderError(f"YouTube playlist search failed: {e}") from e

        for r in results:
            browse_id = r.get("browseId")
            if browse_id:
                # Browse ids of playlists are the playlist id prefixed with VL
                playlist_id = browse_id[2:] if browse_id.startswith("VL") else browse_id
                self._playlist_search_cache[query] = _Cached(playlist_id)
                return playlist_id
        return None

    # ==================== EXTRACTION ====================

    def _extract(self, url: str, opts: dict) -> dict | None:
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(url, download=False)

    @retry_with_backoff()
    async def _extract_info(self, url: str, opts: dict, timeout: float = 25.0) -> dict:
        try:
            info = await self._run(self._extract, url, opts, timeout=timeout)
        except yt_dlp.utils.DownloadError as e:
            if NOT_FOUND_PATTERN.search(str(e)):
                raise NotFoundError(str(e)) from e
            raise
        if not info:
            raise NotFoundError(f"No info for {url}")
        return info

    async def _fetch_track(self, video_id: str) -> TrackData:
        url = f"https://www.youtube.com/watch?v={video_id}"
        try:
            info = await self._extract_info(url, self._info_opts)
        except NotFoundError:
            raise
        except Exception as e:
            raise ProviderError(f"Failed to get info for {video_id}: {e}") from e

        segments = await self.sponsorblock.get_segments(video_id)
        return TrackData(
            channel_id=info.get("channel_id") or "",
            channel_title=info.get("channel") or info.get("uploader") or "Unknown",
            id=info.get("id") or video_id,
            title=info.get("title") or "Unknown",
            url=url,
            length=float(info.get("duration") or 0),
            segments=segments,
        )

    async def get_tracks(self, video_ids: list[str]) -> list[TrackData]:
        """TrackData for each id, in order. Ids that fail are dropped.

        Raises ProviderError only when nothing could be fetched because
        YouTube itself failed.
        """
        missing = [video_id for video_id in dict.fromkeys(video_ids) if video_id not in self._track_cache]
        errors: list[Exception] = []
        if missing:
            results = await asyncio.gather(*(self._fetch_track(video_id) for video_id in missing), return_exceptions=True)
            for video_id, result in zip(missing, results):
                if isinstance(result, BaseException):
                    logger.warning(f"Dropping {video_id}: {result}")
                    errors.append(result)
                else:
                    self._track_cache[video_id] = result

        tracks = [self._track_cache[video_id] for video_id in video_ids if video_id in self._track_cache]
        if not tracks:
            provider_errors = [error for error in errors if isinstance(error, ProviderError)]
            if provider_errors:
                raise provider_errors[0]
        return tracks

    async def get_playlist(self, playlist_id: str) -> PlaylistData | None:
        """Playlist with its tracks, or None if it does not exist."""
        cached = self._playlist_cache.get(playlist_id)
        if cached and cached.fresh(SEARCH_CACHE_TTL):
            return cached.value

        url = f"https://www.youtube.com/playlist?list={playlist_id}"
        try:
            info = await self._extract_info(url, self._playlist_opts, timeout=60.0)
        except NotFoundError:
            logger.info(f"Playlist {playlist_id} not found")
            return None
        except Exception as e:
            raise ProviderError(f"Failed to get playlist {playlist_id}: {e}") from e

        ids = [entry["id"] for entry in info.get("entries") or [] if entry and entry.get("id")]
        playlist = PlaylistData(
            channel_id=info.get("channel_id") or info.get("uploader_id") or "",
            channel_title=info.get("channel") or info.get("uploader") or "Unknown",
            playlist_id=playlist_id,
            playlist_title=info.get("title") or playlist_id,
            tracks=await self.get_tracks(ids) if ids else [],
        )
        self._playlist_cache[playlist_id] = _Cached(playlist)
        return playlist

    async def get_stream_url(self, video_id: str) -> str | None:
        """Get the audio stream URL for a video using yt-dlp."""
        loop = asyncio.get_event_loop()
        url = f"https://www.youtube.com/watch?v={video_id}"

        try:
            def extract():
                with yt_dlp.YoutubeDL(self._ydl_opts) as ydl:
                    info = ydl.extract_info(url, download=False)
                    return info.get("url") if info else None

            # Use dedicated executor and longer timeout for extraction
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, extract),
                timeout=25.0
            )
        except asyncio.TimeoutError:
            logger.error(f"YouTube stream URL extraction timed out for: {video_id}")
            return None
        except Exception as e:
            logger.error(f"Error getting stream URL for {video_id}: {e}")
            return None
