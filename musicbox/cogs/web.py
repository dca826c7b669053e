"""
Web Cog - status API and download links
"""
import asyncio
import logging
from datetime import datetime, timezone

import psutil
from aiohttp import web
from discord.ext import commands

from musicbox.config import config
from musicbox.errors import ProviderError, TrackUnplayable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
CONTENT_TYPES = {"mp3": "audio/mpeg", "webm": "audio/webm"}


def _safe_filename(title: str) -> str:
    name = "".join(c for c in title if c.isalnum() or c in " -_()[]").strip()
    return name or "track"


class WebCog(commands.Cog):
    """Small HTTP surface: status, session snapshots and track downloads."""

    def __init__(self, bot: commands.Bot, host: str = "0.0.0.0", port: int = 8080):
        self.bot = bot
        self.host = host
        self.port = port
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None

    async def cog_load(self):
        self.app = self.create_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Web server at http://{self.host}:{self.port}")

    async def cog_unload(self):
        if self.runner:
            await self.runner.cleanup()

    def create_app(self) -> web.Application:
        app = web.Application()
        self._setup_routes(app)
        return app

    def _setup_routes(self, app: web.Application):
        if config.STATIC_DIR.exists():
            app.router.add_static("/static", config.STATIC_DIR)

        app.router.add_get("/", self._handle_index)
        app.router.add_get("/api/status", self._handle_status)
        app.router.add_get("/sessions", self._handle_sessions)
        app.router.add_get("/sessions/{guild_id}", self._handle_session_detail)
        app.router.add_post("/sessions/{guild_id}/addtrack", self._handle_add_track)
        app.router.add_get("/download/{download_id}", self._handle_download)
        app.router.add_get("/download/{download_id}/{container}", self._handle_download)

    async def _handle_index(self, request: web.Request) -> web.Response:
        index = config.STATIC_DIR / "index.html"
        if index.exists():
            return web.Response(text=index.read_text(encoding="utf-8"), content_type="text/html")
        return web.Response(text=f"{self.bot.user.name if self.bot.user else 'musicbox'} is running.")

    async def _get_status_data(self) -> dict:
        process = psutil.Process()
        return {
            "status": "online" if self.bot.is_ready() else "starting",
            "guilds": len(self.bot.guilds),
            "voice_connections": len(self.bot.voice_clients),
            "sessions": len(self.bot.sessions.owned_sessions()),
            "radio_stations": sorted(self.bot.radio.stations),
            "process_ram_mb": round(process.memory_info().rss / 1024 / 1024, 2),
            "uptime_seconds": int((datetime.now(timezone.utc) - self.bot.start_time).total_seconds()),
        }

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(await self._get_status_data())

    async def _handle_sessions(self, request: web.Request) -> web.Response:
        sessions = [session.to_dict() for session in self.bot.sessions.owned_sessions()]
        return web.json_response({"sessions": sessions})

    async def _handle_session_detail(self, request: web.Request) -> web.Response:
        try:
            guild_id = int(request.match_info["guild_id"])
        except ValueError:
            return web.json_response({"error": "Invalid guild id"}, status=400)
        session = self.bot.sessions.get(guild_id)
        if session is None:
            return web.json_response({"error": "Not found"}, status=404)
        return web.json_response(session.to_dict())

    async def _handle_add_track(self, request: web.Request) -> web.Response:
        """Queue a YouTube video on a running session; body is {"url": ...}."""
        try:
            guild_id = int(request.match_info["guild_id"])
        except ValueError:
            return web.json_response({"error": "Invalid guild id"}, status=400)
        session = self.bot.sessions.get(guild_id)
        if session is None:
            return web.json_response({"error": "Session was not found."}, status=404)

        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Expected a JSON body"}, status=400)
        parsed = self.bot.youtube.parse_url(str(body.get("url", ""))) if isinstance(body, dict) else None
        if parsed is None or parsed[0] != "video":
            return web.json_response({"error": "Expected a YouTube video link"}, status=400)

        try:
            tracks = await self.bot.youtube.get_tracks([parsed[1]])
        except ProviderError as e:
            logger.error(f"[{guild_id}] Track lookup failed: {e}")
            return web.json_response({"error": "YouTube is unavailable"}, status=502)
        if not tracks:
            return web.json_response({"error": "Video was not found"}, status=404)

        info = await session.add_track(tracks[0])
        if info.track is None:
            return web.json_response({"error": "Track is unavailable"}, status=502)
        return web.json_response({"track": info.track.to_dict(), "eta": info.eta})

    async def _handle_download(self, request: web.Request) -> web.StreamResponse:
        container = request.match_info.get("container", "mp3")
        if container not in CONTENT_TYPES:
            return web.json_response({"error": "Unsupported format"}, status=400)
        download = self.bot.downloads.get(request.match_info["download_id"])
        if download is None:
            return web.json_response({"error": "Download link expired"}, status=404)

        try:
            proc = await self.bot.streams.open_transcode(download.track, download.options, container)
        except TrackUnplayable as e:
            logger.error(f"Download of {download.track.id} failed: {e}")
            return web.json_response({"error": "Track is unavailable"}, status=502)

        response = web.StreamResponse(headers={
            "Content-Type": CONTENT_TYPES[container],
            "Content-Disposition": f'attachment; filename="{_safe_filename(download.track.title)}.{container}"',
        })
        try:
            await response.prepare(request)
            while True:
                chunk = await proc.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                await response.write(chunk)
            await response.write_eof()
        except (ConnectionResetError, asyncio.CancelledError):
            logger.info(f"Download of {download.track.id} aborted by client")
            raise
        finally:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
        return response


async def setup(bot: commands.Bot):
    await bot.add_cog(WebCog(bot, config.WEB_HOST, config.WEB_PORT))
