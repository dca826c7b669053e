"""
musicbox - Main Entry Point
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

import discord
from discord.ext import commands

from musicbox.config import config

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("discord.player").setLevel(logging.WARNING)
logger = logging.getLogger("bot")


class MusicBot(commands.Bot):
    """Discord music bot: YouTube queues, shared radio stations and cross-server sessions."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, we use slash commands
            intents=intents,
            help_command=None,
        )

        # Will be initialized in setup_hook
        self.youtube = None
        self.spotify = None
        self.streams = None
        self.sessions = None
        self.radio = None
        self.downloads = None
        self.start_time = datetime.now(timezone.utc)

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        from musicbox.player.audio import AudioStreamFactory
        from musicbox.player.manager import SessionManager
        from musicbox.player.radio import RadioManager
        from musicbox.player.timers import ExpiringDict
        from musicbox.player.voice import DiscordVoiceTransport
        from musicbox.services.sponsorblock import SponsorBlockService
        from musicbox.services.spotify import SpotifyService
        from musicbox.services.youtube import YouTubeService

        self.youtube = YouTubeService(config.YTDL_COOKIES_PATH, config.YTDL_PO_TOKEN, SponsorBlockService())
        self.spotify = SpotifyService(config.SPOTIFY_CLIENT_ID, config.SPOTIFY_CLIENT_SECRET)
        self.streams = AudioStreamFactory(self.youtube, config.FFMPEG_PATH)
        self.sessions = SessionManager(
            DiscordVoiceTransport(self),
            self.streams,
            idle_timeout=config.IDLE_TIMEOUT,
            join_code_ttl=config.JOIN_CODE_TTL,
        )
        self.radio = RadioManager(self.streams, idle_timeout=config.RADIO_IDLE_TIMEOUT)
        self.downloads = ExpiringDict(config.DOWNLOAD_TTL)
        logger.info("Services initialized")

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        if cogs_dir.exists():
            for cog_file in cogs_dir.glob("*.py"):
                if cog_file.name.startswith("_"):
                    continue
                cog_name = f"musicbox.cogs.{cog_file.stem}"
                try:
                    await self.load_extension(cog_name)
                    logger.info(f"Loaded cog: {cog_name}")
                except Exception as e:
                    logger.error(f"Failed to load cog {cog_name}: {e}")

        # Sync slash commands
        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(type=discord.ActivityType.listening, name="/play")
        await self.change_presence(activity=activity)

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        """Called when the bot is removed from a guild."""
        logger.info(f"Left guild: {guild.name} (ID: {guild.id})")
        if self.sessions:
            await self.sessions.leave(guild.id)

    async def on_voice_state_update(
        self, member: discord.Member, before: discord.VoiceState, after: discord.VoiceState
    ) -> None:
        """Follow our own voice client when it is moved or kicked."""
        if not self.user or member.id != self.user.id or not self.sessions:
            return
        session = self.sessions.get(member.guild.id)
        if session is None:
            return
        if after.channel is None:
            logger.info(f"[{member.guild.id}] Disconnected from voice")
            await self.sessions.leave(member.guild.id)
        elif before.channel is None or before.channel.id != after.channel.id:
            session.handle_channel_moved(member.guild.id, after.channel.id)

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        if self.sessions:
            await self.sessions.close()
        if self.radio:
            self.radio.close()
        if self.downloads:
            self.downloads.clear()

        # Unload the web cog so its server stops accepting downloads
        try:
            await self.unload_extension("musicbox.cogs.web")
        except commands.ExtensionError:
            pass

        # Disconnect from all voice channels (cleanup for any remaining)
        for vc in self.voice_clients:
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.warning(f"Voice disconnect failed: {e}")

        if self.youtube:
            await self.youtube.shutdown()
        if self.spotify:
            await self.spotify.shutdown()

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    if not config.DISCORD_TOKEN:
        logger.critical("DISCORD_TOKEN is not set")
        return

    bot = MusicBot()
    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except Exception as e:
            logger.error(f"Bot error: {e}")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # standard exit
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()
