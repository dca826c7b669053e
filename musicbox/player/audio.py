"""
Audio stream factory - turns tracks and radio URLs into ffmpeg-backed resources
"""
import asyncio
import logging
import shlex
from typing import TYPE_CHECKING

import discord

from musicbox.errors import StationUnavailable, TrackUnplayable
from musicbox.player.segments import build_filter
from musicbox.player.sink import AudioResource
from musicbox.player.track import StreamOptions, Track

if TYPE_CHECKING:
    from musicbox.services.youtube import YouTubeService

logger = logging.getLogger(__name__)

BEFORE_OPTIONS = "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -nostdin"
PROBE_TIMEOUT = 10.0

# Output arguments per download container
CONTAINERS = {
    "mp3": ["-c:a", "libmp3lame", "-b:a", "192k", "-f", "mp3"],
    "webm": ["-c:a", "libopus", "-b:a", "128k", "-f", "webm"],
}


class AudioStreamFactory:
    """Builds playable resources for the sink and transcodes for downloads."""

    def __init__(self, youtube: "YouTubeService", executable: str = "ffmpeg"):
        self.youtube = youtube
        self.executable = executable

    async def _probe(self, url: str) -> str | None:
        codec, _ = await asyncio.wait_for(
            discord.FFmpegOpusAudio.probe(url, executable=self.executable),
            timeout=PROBE_TIMEOUT,
        )
        return codec

    def _ffmpeg_args(self, track: Track, options: StreamOptions) -> tuple[str, list[str]]:
        """(before_options, filter args) for a track's keep-ranges."""
        before = BEFORE_OPTIONS
        if options.seek and not options.skip_segments:
            # Plain seeks let ffmpeg jump in the input instead of decoding up to it
            return f"{before} -ss {options.seek:.3f}", []
        ranges = options.keep_ranges(track.length)
        if ranges is None:
            return before, []
        return before, ["-filter_complex", build_filter(ranges)]

    async def create_resource(self, track: Track, options: StreamOptions) -> AudioResource:
        """Resolve, probe and open the decode process for a track.

        Raises TrackUnplayable when the stream cannot be resolved or probed.
        """
        url = await self.youtube.get_stream_url(track.id)
        if not url:
            raise TrackUnplayable(f"No stream URL for {track.id}")

        try:
            codec = await self._probe(url)
        except asyncio.TimeoutError:
            raise TrackUnplayable(f"Audio probe timed out for {track.title}")
        except Exception as e:
            raise TrackUnplayable(f"Audio probe failed for {track.title}: {e}") from e
        if codec is None:
            raise TrackUnplayable(f"No audio stream found for {track.title}")

        before, filter_args = self._ffmpeg_args(track, options)
        source = discord.FFmpegPCMAudio(
            url,
            executable=self.executable,
            before_options=before,
            options=shlex.join(["-vn", *filter_args]),
        )
        logger.debug(f"Opened stream for {track.title} ({codec}, filter={bool(filter_args)})")
        return AudioResource(source, metadata=track, inline_volume=True)

    async def create_live_resource(self, url: str) -> AudioResource:
        """Open a never-ending radio stream. Raises StationUnavailable."""
        try:
            codec = await self._probe(url)
        except asyncio.TimeoutError:
            raise StationUnavailable(f"Probe timed out for {url}")
        except Exception as e:
            raise StationUnavailable(f"Probe failed for {url}: {e}") from e
        if codec is None:
            raise StationUnavailable(f"No audio stream at {url}")

        source = discord.FFmpegPCMAudio(url, executable=self.executable, before_options=BEFORE_OPTIONS, options="-vn")
        return AudioResource(source, metadata=url)

    async def open_transcode(
        self, track: Track, options: StreamOptions, container: str = "mp3"
    ) -> asyncio.subprocess.Process:
        """Spawn ffmpeg writing the cut track to stdout in the given container.

        The caller owns the process and must kill it when the reader goes away.
        """
        if container not in CONTAINERS:
            raise ValueError(f"Unsupported container {container}")
        url = await self.youtube.get_stream_url(track.id)
        if not url:
            raise TrackUnplayable(f"No stream URL for {track.id}")

        before, filter_args = self._ffmpeg_args(track, options)
        args = [
            "-loglevel", "error", "-hide_banner",
            *shlex.split(before),
            "-i", url,
            "-vn",
            *filter_args,
            *CONTAINERS[container],
            "pipe:1",
        ]
        logger.info(f"Transcoding {track.title} to {container}")
        return await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
