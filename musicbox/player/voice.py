"""
Voice transport - joins and leaves voice channels through discord.py
"""
import asyncio
import logging

import discord
from discord.ext import commands

from musicbox.errors import VoiceJoinError

logger = logging.getLogger(__name__)


class DiscordVoiceTransport:
    """Owns nothing: every call goes through the bot's live VoiceClients."""

    def __init__(self, bot: commands.Bot, timeout: float = 20.0):
        self.bot = bot
        self.timeout = timeout

    def get_connection(self, guild_id: int) -> discord.VoiceClient | None:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return None
        return guild.voice_client

    async def join(self, guild_id: int, channel_id: int) -> discord.VoiceClient:
        """Connect to channel_id, or move there if already connected in the guild."""
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise VoiceJoinError(f"Unknown guild {guild_id}")
        channel = guild.get_channel(channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise VoiceJoinError(f"Channel {channel_id} is not a voice channel")

        vc = guild.voice_client
        try:
            if vc and vc.is_connected():
                if vc.channel.id != channel_id:
                    await vc.move_to(channel)
                    logger.info(f"Moved to {channel.name} in {guild.name}")
                return vc
            vc = await channel.connect(self_deaf=True, timeout=self.timeout)
        except (discord.ClientException, asyncio.TimeoutError) as e:
            raise VoiceJoinError(f"Failed to join {channel.name}: {e}") from e

        logger.info(f"Connected to {channel.name} in {guild.name}")
        return vc

    async def disconnect(self, guild_id: int) -> None:
        vc = self.get_connection(guild_id)
        if vc is None:
            return
        try:
            await vc.disconnect(force=True)
            logger.info(f"Disconnected from voice in guild {guild_id}")
        except Exception as e:
            logger.warning(f"Error disconnecting from guild {guild_id}: {e}")
