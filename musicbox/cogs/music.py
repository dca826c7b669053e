"""
Music Cog - Playback commands
"""
import asyncio
import logging
from collections import Counter
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from musicbox.config import ALL_CATEGORIES, STATIONS, config
from musicbox.errors import NotFoundError, ProviderError, StationUnavailable, VoiceJoinError
from musicbox.player.manager import SessionManager
from musicbox.player.radio import RadioManager
from musicbox.player.segments import select_segments
from musicbox.player.session import Listener, Session
from musicbox.player.track import DownloadRequest, StreamOptions, TrackData
from musicbox.services.spotify import is_spotify_url, url_resource_type
from musicbox.services.youtube import YouTubeService
from musicbox.utils import (
    boolean_to_string,
    generate_code,
    is_url,
    seconds_to_string,
    string_to_seconds,
    style_status,
    style_track,
    style_url,
)

logger = logging.getLogger(__name__)

MAX_CHARACTERS_PER_MESSAGE = 2000
# How far past the end of the queue a skip may reach before the reply teases the user
GAP_FROM_ACTUAL = 5

NOTHING_PLAYING = "There's nothing playing at the moment."
WRONG_CHANNEL = "You have to be in the bot's channel for this command"
NO_VOICE = "You have to be in a voice channel for the bot to join you!"


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.requests_per_minute: Counter[int] = Counter()
        self._reset_task: asyncio.Task | None = None

    async def cog_load(self):
        """Called when the cog is loaded."""
        self._reset_task = asyncio.create_task(self._reset_rate_limit_loop())
        logger.info("Music cog loaded")

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        if self._reset_task:
            self._reset_task.cancel()
        logger.info("Music cog unloaded")

    @property
    def sessions(self) -> SessionManager:
        return self.bot.sessions

    @property
    def radio(self) -> RadioManager:
        return self.bot.radio

    @property
    def youtube(self) -> YouTubeService:
        return self.bot.youtube

    # ==================== CHECKS ====================

    async def _reset_rate_limit_loop(self):
        while True:
            await asyncio.sleep(60)
            self.requests_per_minute.clear()

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        """Per-user rate limit across every command of this cog."""
        if interaction.user.bot:
            await interaction.response.send_message("I don't talk with other bots at the moment. :/")
            return False
        if interaction.guild_id is None:
            await interaction.response.send_message("Music commands only work in servers.")
            return False
        if self.requests_per_minute[interaction.user.id] >= config.RATE_LIMIT:
            await interaction.response.send_message("You have reached the rate limit, try again soon.", ephemeral=True)
            return False
        self.requests_per_minute[interaction.user.id] += 1
        return True

    async def cog_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.CheckFailure):
            return
        logger.error(f"Command /{interaction.command.name if interaction.command else '?'} failed: {error}", exc_info=error)
        await self._reply(interaction, "Something went wrong, please try again.")

    @staticmethod
    def _user_channel_id(interaction: discord.Interaction) -> int | None:
        voice = getattr(interaction.user, "voice", None)
        if voice and voice.channel:
            return voice.channel.id
        return None

    @staticmethod
    async def _reply(interaction: discord.Interaction, content: str, **kwargs) -> None:
        if interaction.response.is_done():
            await interaction.followup.send(content, **kwargs)
        else:
            await interaction.response.send_message(content, **kwargs)

    async def _controlled_session(self, interaction: discord.Interaction, need_track: bool = False) -> Session | None:
        """The guild's session if the user may control it, else reply why not and return None."""
        session = self.sessions.get(interaction.guild_id)
        if session is None or (need_track and session.current_track is None):
            await self._reply(interaction, NOTHING_PLAYING)
            return None
        if self._user_channel_id(interaction) != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return None
        return session

    async def _wait_joined(self, interaction: discord.Interaction, session: Session) -> bool:
        task = session.join_task
        if task is None:
            return True
        await asyncio.wait({task})
        if task.cancelled() or session.closed:
            await self._reply(interaction, "The session ended before I could join.")
            return False
        error = task.exception()
        if error:
            await self._reply(interaction, f"Failed to join your voice channel: {error}")
            await self.sessions.delete_session(session)
            return False
        return True

    async def _get_or_create_session(self, interaction: discord.Interaction, channel_id: int) -> Session | None:
        session = self.sessions.get(interaction.guild_id)
        if session is None:
            session = self.sessions.create_session(interaction.guild_id, channel_id)
        if not await self._wait_joined(interaction, session):
            return None
        return session

    async def _resolve_track(self, interaction: discord.Interaction, query: str) -> TrackData | None:
        """Turn a search query, YouTube link or Spotify track link into TrackData, replying on failure."""
        video_id = None
        if is_url(query):
            if is_spotify_url(query):
                if url_resource_type(query) != "track":
                    await interaction.edit_original_response(content="Invalid resource.")
                    return None
                try:
                    query = await self.bot.spotify.get_track_name(query)
                except NotFoundError:
                    await interaction.edit_original_response(content="Invalid track ID.")
                    return None
                except ProviderError as e:
                    logger.error(f"Spotify lookup failed: {e}")
                    await interaction.edit_original_response(content="Spotify error, try a YouTube link for now.")
                    return None
            else:
                parsed = self.youtube.parse_url(query)
                if not parsed or parsed[0] != "video":
                    await interaction.edit_original_response(content="That link is not a YouTube video, try /playlist for playlists.")
                    return None
                video_id = parsed[1]

        try:
            if video_id is None:
                video_id = await self.youtube.search(query)
                if not video_id:
                    await interaction.edit_original_response(content="Video was not found!")
                    return None
            tracks = await self.youtube.get_tracks([video_id])
        except ProviderError as e:
            logger.error(f"YouTube lookup failed: {e}")
            await interaction.edit_original_response(content="YouTube search error, use links for now :)")
            return None

        if not tracks:
            await interaction.edit_original_response(content="Could not find the requested video.")
            return None
        return tracks[0]

    # ==================== PLAYBACK ====================

    @app_commands.command(name="play", description="Plays music.")
    @app_commands.describe(query="YouTube search query, URL or Spotify URL.")
    async def play(self, interaction: discord.Interaction, query: str):
        channel_id = self._user_channel_id(interaction)
        session = self.sessions.get(interaction.guild_id)
        if not channel_id:
            await self._reply(interaction, NO_VOICE)
            return
        if session and channel_id != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return
        if session and session.radio_playing:
            await self._reply(interaction, "Radio is playing, stop the radio for /play .")
            return

        await interaction.response.send_message(f"Searching for {f'<{query}>' if is_url(query) else query}")
        track_data = await self._resolve_track(interaction, query)
        if track_data is None:
            return
        session = await self._get_or_create_session(interaction, channel_id)
        if session is None:
            return

        info = await session.add_track(track_data)
        if info.track is None:
            await interaction.edit_original_response(content="Could not play the requested video.")
        elif info.eta == 0:
            await interaction.edit_original_response(content=f"**Playing** :notes: {style_track(info.track)}")
        else:
            await interaction.edit_original_response(
                content=f":thumbsup: Added {style_track(info.track)} to the queue. ({seconds_to_string(info.eta)} of music queued)"
            )

    @app_commands.command(name="playlist", description="Plays a YouTube playlist.")
    @app_commands.describe(query="Playlist link or search query.")
    async def playlist(self, interaction: discord.Interaction, query: str):
        channel_id = self._user_channel_id(interaction)
        session = self.sessions.get(interaction.guild_id)
        if not channel_id:
            await self._reply(interaction, NO_VOICE)
            return
        if session and channel_id != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return
        if session and session.radio_playing:
            await self._reply(interaction, "Radio is playing, stop the radio for /playlist .")
            return

        await interaction.response.defer()
        try:
            playlist_id = YouTubeService.extract_playlist_id(query) or await self.youtube.search_playlist(query)
            if not playlist_id:
                await interaction.followup.send("Playlist was not found!")
                return
            playlist = await self.youtube.get_playlist(playlist_id)
        except ProviderError as e:
            logger.error(f"Playlist lookup failed: {e}")
            await interaction.followup.send("YouTube search error, use links for now :)")
            return

        if playlist is None:
            await interaction.followup.send("Playlist not found.")
            return
        if not playlist.tracks:
            await interaction.followup.send("Playlist is empty.")
            return

        session = await self._get_or_create_session(interaction, channel_id)
        if session is None:
            return

        channel_url = f"https://www.youtube.com/channel/{playlist.channel_id}"
        await interaction.followup.send(
            f"Added {len(playlist.tracks)} tracks\n"
            f"**Playlist** {style_url(playlist.playlist_title, playlist.url)} **by** {style_url(playlist.channel_title, channel_url, True)}"
        )
        for track_data in playlist.tracks:
            info = await session.add_track(track_data)
            if info.track is not None and info.eta == 0:
                await interaction.followup.send(f"**Playing** :notes: {style_track(info.track)}")

    @app_commands.command(name="radio", description="Play radio streams! Omit station to stop playing the radio.")
    @app_commands.describe(station="Station to listen to.")
    @app_commands.choices(station=[app_commands.Choice(name=name, value=name) for name in STATIONS])
    async def radio_command(self, interaction: discord.Interaction, station: Optional[str] = None):
        channel_id = self._user_channel_id(interaction)
        session = self.sessions.get(interaction.guild_id)
        if not channel_id:
            await self._reply(interaction, NO_VOICE)
            return
        if session and channel_id != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return

        if not station:
            if session and session.stop_radio():
                await self._reply(interaction, "Radio stopped.")
                return
            stations = "\n".join(f"`{name}`" for name in STATIONS)
            await self._reply(interaction, f"Available stations are:\n{stations}")
            return
        if session and session.playing and not session.radio_playing:
            await self._reply(interaction, "YouTube is playing, stop the music for /radio .")
            return

        await interaction.response.defer()
        session = await self._get_or_create_session(interaction, channel_id)
        if session is None:
            return
        try:
            radio_station = await self.radio.get_radio_station(station)
        except StationUnavailable as e:
            logger.error(f"Radio {station} unavailable: {e}")
            await interaction.followup.send(f"Could not tune in to `{station}` right now.")
            return
        if radio_station is None:
            await interaction.followup.send(f"Unknown station `{station}`.")
            return

        # Things may have moved on while the station was opening
        if session.closed:
            return
        if session.playing and not session.radio_playing:
            await interaction.followup.send("YouTube is playing, stop the music for /radio .")
            return
        session.play_radio(radio_station)
        await interaction.followup.send(f"Now playing - {style_url(radio_station.name, radio_station.site_url)}")

    # ==================== VOICE ====================

    @app_commands.command(name="join", description="Joins the voice channel you're in.")
    @app_commands.describe(channel="Channel to join to.")
    async def join(self, interaction: discord.Interaction, channel: Optional[discord.VoiceChannel] = None):
        if self.sessions.get(interaction.guild_id):
            await self._reply(interaction, "Bot has already joined a voice channel, try /move")
            return
        channel_id = channel.id if channel else self._user_channel_id(interaction)
        if not channel_id:
            await self._reply(interaction, "You must be in a voice channel or choose a channel for the bot to join to.")
            return
        await interaction.response.defer()
        session = self.sessions.create_session(interaction.guild_id, channel_id)
        if await self._wait_joined(interaction, session):
            await interaction.followup.send(":wave: Joined")

    @app_commands.command(name="disconnect", description="Disconnects from the voice channel.")
    async def disconnect(self, interaction: discord.Interaction):
        session = self.sessions.get(interaction.guild_id)
        if session is None:
            await self._reply(interaction, "I'm not connected.")
            return
        if self._user_channel_id(interaction) != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return
        await interaction.response.defer()
        await self.sessions.leave(interaction.guild_id)
        await interaction.followup.send(":call_me: See ya'")

    @app_commands.command(name="move", description="Moves to the voice channel you're in.")
    @app_commands.describe(channel="Channel to move to.")
    async def move(self, interaction: discord.Interaction, channel: Optional[discord.VoiceChannel] = None):
        session = self.sessions.get(interaction.guild_id)
        if session is None:
            await self._reply(interaction, "Bot isn't connected at the moment. Try /join")
            return
        channel_id = channel.id if channel else self._user_channel_id(interaction)
        if not channel_id:
            await self._reply(interaction, "You must be in a voice channel or choose a channel for the bot to move to.")
            return
        if channel_id == session.channel_for(interaction.guild_id):
            await self._reply(interaction, "I'm already here :face_palm:")
            return
        await interaction.response.defer()
        try:
            await session.join_voice_channel(Listener(interaction.guild_id, channel_id))
        except VoiceJoinError as e:
            await interaction.followup.send(f"Failed to move: {e}")
            return
        await interaction.followup.send("Moved.")

    @app_commands.command(name="together", description="Generate a code to join the same session on a different server.")
    @app_commands.describe(code="The join code (Omit if you want to generate a code)")
    async def together(self, interaction: discord.Interaction, code: Optional[str] = None):
        session = self.sessions.get(interaction.guild_id)
        if code:
            if session:
                if session.guild_id == interaction.guild_id:
                    await self._reply(interaction, "The server has an active session.")
                else:
                    await self._reply(interaction, "Already listening together.")
                return
            channel_id = self._user_channel_id(interaction)
            if not channel_id:
                await self._reply(interaction, NO_VOICE)
                return
            await interaction.response.defer()
            try:
                joined = await self.sessions.join_session(code.strip(), Listener(interaction.guild_id, channel_id))
            except VoiceJoinError as e:
                await interaction.followup.send(f"Failed to join your voice channel: {e}")
                return
            if joined is None:
                await interaction.followup.send("Code is invalid or has expired.")
                return
            host = self.bot.get_guild(joined.guild_id)
            await interaction.followup.send(f"Listening together with {host.name if host else joined.guild_id}")
            return

        if session is None:
            await self._reply(interaction, "There is no active session on the server.")
            return
        if self._user_channel_id(interaction) != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return
        new_code = self.sessions.generate_join_code(interaction.guild_id)
        if not new_code:
            await self._reply(interaction, "Only the server hosting the session can share it.")
            return
        minutes = int(self.sessions.join_codes.ttl // 60)
        await self._reply(interaction, f"Copy the following code: `{new_code}`\nThe code will expire in {minutes} minutes")

    # ==================== QUEUE ====================

    @app_commands.command(name="current", description="Displays current track.")
    async def current(self, interaction: discord.Interaction):
        session = self.sessions.get(interaction.guild_id)
        if session and session.radio_station:
            station = session.radio_station
            await self._reply(interaction, f"Radio: {style_url(station.name, station.site_url)}")
            return
        if session is None or session.current_track is None:
            await self._reply(interaction, NOTHING_PLAYING)
            return
        await self._reply(interaction, f"Currently playing: {style_track(session.current_track)}")

    @app_commands.command(name="queue", description="Displays queue.")
    @app_commands.describe(expand="Whether the queue should display all pages.")
    async def queue(self, interaction: discord.Interaction, expand: bool = False):
        session = self.sessions.get(interaction.guild_id)
        if session is None:
            await self._reply(interaction, NOTHING_PLAYING)
            return
        reply = style_status(
            f":repeat_one: {boolean_to_string(session.repeat)} | :twisted_rightwards_arrows: {boolean_to_string(session.shuffle)}"
            f" | SB {boolean_to_string(session.sb_enabled)} | {seconds_to_string(session.queue_time)}"
        )
        if not session.queue:
            await self._reply(interaction, reply + "\nNo tracks left in queue.")
            return

        lines = [
            f"`{i})` {style_track(track, True)} - {seconds_to_string(track.current_length)}"
            for i, track in enumerate(session.queue, 1)
        ]
        pages = [reply]
        for line in lines:
            if len(pages[-1]) + len(line) + 1 < MAX_CHARACTERS_PER_MESSAGE:
                pages[-1] += "\n" + line
            elif expand:
                pages.append(line)
            else:
                break

        await self._reply(interaction, pages[0])
        for page in pages[1:]:
            await interaction.followup.send(page)

    @app_commands.command(name="remove", description="Removes track from queue.")
    @app_commands.describe(index="Index of the track in the queue.")
    async def remove(self, interaction: discord.Interaction, index: int):
        session = self.sessions.get(interaction.guild_id)
        if session is None or not session.queue:
            await self._reply(interaction, "There's no tracks in the queue at the moment.")
            return
        if self._user_channel_id(interaction) != session.channel_for(interaction.guild_id):
            await self._reply(interaction, WRONG_CHANNEL)
            return
        removed = session.remove(index - 1)
        if removed is None:
            await self._reply(interaction, "Wrong index value.")
            return
        await self._reply(interaction, f"Removed {style_track(removed, True)} from the queue.")

    @app_commands.command(name="skip", description="Skips tracks.")
    @app_commands.describe(amount="Amount of tracks to skip (defaults to 1).")
    async def skip(self, interaction: discord.Interaction, amount: app_commands.Range[int, 1] = 1):
        session = await self._controlled_session(interaction, need_track=True)
        if session is None:
            return
        reply = "Skipped! :fast_forward:"
        queued = len(session.queue)
        if queued < amount - GAP_FROM_ACTUAL:
            if queued == 0:
                reply = "I mean there are no tracks in the queue but consider it done!"
            elif queued == 1:
                reply = "I mean there's only one track in the queue but consider it done!"
            else:
                reply = f"I mean there are only {queued} tracks in the queue but consider it done!"
        await interaction.response.send_message(reply)
        await session.skip(amount)

    @app_commands.command(name="fs", description="Force skip current track.")
    async def force_skip(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction, need_track=True)
        if session is None:
            return
        await interaction.response.send_message("Skipped! :fast_forward:")
        await session.skip()

    @app_commands.command(name="pause", description="Pause current track.")
    async def pause(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        if session.pause():
            await self._reply(interaction, ":pause_button: Paused")
        else:
            await self._reply(interaction, "Nothing to pause.")

    @app_commands.command(name="resume", description="Resumes current track.")
    async def resume(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        if session.resume():
            await self._reply(interaction, ":arrow_forward: Resumed")
        else:
            await self._reply(interaction, "Nothing is paused.")

    @app_commands.command(name="repeat", description="Toggles repeat.")
    async def repeat(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        await self._reply(interaction, f":repeat_one: Repeat {'on' if session.toggle_repeat() else 'off'}")

    @app_commands.command(name="shuffle", description="Toggles shuffle.")
    async def shuffle(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        state = "on" if session.toggle_shuffle() else "off"
        await self._reply(interaction, f":twisted_rightwards_arrows: Shuffle {state}\nShuffle does **not** work when skipping tracks")

    @app_commands.command(name="sb", description="Toggle SponsorBlock feature.")
    async def sponsor_block(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        await self._reply(interaction, f"SponsorBlock {'on' if session.toggle_sponsor_block() else 'off'}")

    @app_commands.command(name="category", description="[SB] Toggle skipping of a segment category.")
    @app_commands.describe(category="The category to toggle the skipping of.")
    @app_commands.choices(category=[app_commands.Choice(name=name, value=name) for name in ALL_CATEGORIES])
    async def category(self, interaction: discord.Interaction, category: Optional[str] = None):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        if category:
            await self._reply(interaction, f"SponsorBlock `{category}` {'on' if session.toggle_category(category) else 'off'}")
        else:
            enabled = "\n".join(f"`{name}`" for name in session.categories) or "None"
            await self._reply(interaction, f"SponsorBlock enabled categories:\n{enabled}")

    # ==================== CURRENT TRACK ====================

    @app_commands.command(name="seek", description="Seeks to specific time in current track.")
    @app_commands.describe(timestamp="Timestamp format: hh:mm:ss (e.g. 19:03)")
    async def seek(self, interaction: discord.Interaction, timestamp: str):
        session = await self._controlled_session(interaction, need_track=True)
        if session is None:
            return
        seconds = string_to_seconds(timestamp)
        if seconds is None:
            await self._reply(interaction, "Invalid timestamp.")
            return
        if seconds > session.current_track.length:
            await self._reply(interaction, "Seek timestamp is after the end of the track :o")
            return
        await interaction.response.send_message(f"Seeking to {timestamp}")
        await session.play(session.current_track, seconds)

    @app_commands.command(name="replay", description="Replays current track.")
    async def replay(self, interaction: discord.Interaction):
        session = await self._controlled_session(interaction, need_track=True)
        if session is None:
            return
        track = session.current_track
        await interaction.response.send_message(f"**Replaying** {style_track(track, True)}")
        await session.play(track)

    @app_commands.command(name="volume", description="Sets the playback volume.")
    @app_commands.describe(level="Volume in percent (0-200).")
    async def volume(self, interaction: discord.Interaction, level: Optional[app_commands.Range[int, 0, 200]] = None):
        session = await self._controlled_session(interaction)
        if session is None:
            return
        if level is None:
            await self._reply(interaction, f":loud_sound: Volume is {round(session.volume * 100)}%")
            return
        session.set_volume(level / 100)
        note = "\nVolume does not apply to the radio." if session.radio_playing else ""
        await self._reply(interaction, f":loud_sound: Volume set to {level}%{note}")

    @app_commands.command(name="download", description="Generate download link for the current song.")
    async def download(self, interaction: discord.Interaction):
        session = self.sessions.get(interaction.guild_id)
        if session is None or session.current_track is None:
            await self._reply(interaction, NOTHING_PLAYING)
            return
        downloads = self.bot.downloads
        download_id = generate_code()
        while download_id in downloads:
            download_id = generate_code()

        track = session.current_track
        options = StreamOptions(skip_segments=select_segments(track.segments, session.categories, session.sb_enabled))
        downloads.set(download_id, DownloadRequest(track, options))
        link = f"{config.PUBLIC_URL}/download/{download_id}"
        await self._reply(interaction, f":arrow_down: Download {style_url(track.title, link, True)}")


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))
