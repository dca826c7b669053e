"""Tests for the slash command layer with mocked interactions."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from musicbox.cogs.music import NO_VOICE, NOTHING_PLAYING, WRONG_CHANNEL, MusicCog
from musicbox.config import config
from musicbox.errors import NotFoundError, ProviderError
from musicbox.player.timers import ExpiringDict


@pytest.fixture
def bot(manager, radio, track_data):
    youtube = MagicMock()
    youtube.parse_url.return_value = None
    youtube.search = AsyncMock(return_value="aaaaaaaaaaa")
    youtube.get_tracks = AsyncMock(side_effect=lambda ids: [track_data(video_id) for video_id in ids])
    spotify = MagicMock()
    spotify.get_track_name = AsyncMock(return_value="Rick Astley - Never Gonna Give You Up")
    return SimpleNamespace(
        sessions=manager,
        radio=radio,
        youtube=youtube,
        spotify=spotify,
        downloads=ExpiringDict(60),
        get_guild=lambda guild_id: None,
    )


@pytest.fixture
def cog(bot):
    return MusicCog(bot)


def make_interaction(guild_id: int = 1, channel_id: int | None = 100, user_id: int = 7):
    interaction = MagicMock()
    interaction.guild_id = guild_id
    interaction.user.id = user_id
    interaction.user.bot = False
    if channel_id is None:
        interaction.user.voice = None
    else:
        interaction.user.voice.channel.id = channel_id
    interaction.response.is_done.return_value = False
    interaction.response.send_message = AsyncMock()
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    interaction.edit_original_response = AsyncMock()
    return interaction


def replies(interaction) -> list[str]:
    """Every message text sent back through the interaction, in order."""
    sent = []
    for mock in (interaction.response.send_message, interaction.followup.send):
        sent += [call.args[0] for call in mock.call_args_list if call.args]
    sent += [call.kwargs["content"] for call in interaction.edit_original_response.call_args_list]
    return sent


class TestRateLimit:
    async def test_limit_per_user(self, cog, monkeypatch):
        monkeypatch.setattr(config, "RATE_LIMIT", 2)
        interaction = make_interaction()
        assert await cog.interaction_check(interaction) is True
        assert await cog.interaction_check(interaction) is True
        assert await cog.interaction_check(interaction) is False
        assert await cog.interaction_check(make_interaction(user_id=8)) is True

    async def test_bots_are_ignored(self, cog):
        interaction = make_interaction()
        interaction.user.bot = True
        assert await cog.interaction_check(interaction) is False


class TestPlay:
    async def test_requires_voice_channel(self, cog):
        interaction = make_interaction(channel_id=None)
        await cog.play.callback(cog, interaction, "some song")
        assert replies(interaction) == [NO_VOICE]

    async def test_plays_then_queues(self, cog, bot):
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "some song")
        assert replies(interaction)[-1].startswith("**Playing** :notes:")
        session = bot.sessions.get(1)
        assert session.current_track.id == "aaaaaaaaaaa"

        bot.youtube.search.return_value = "bbbbbbbbbbb"
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "another song")
        assert ":thumbsup: Added" in replies(interaction)[-1]
        assert [t.id for t in session.queue] == ["bbbbbbbbbbb"]

    async def test_unplayable_is_not_reported_as_playing(self, cog, streams):
        streams.unplayable.add("aaaaaaaaaaa")
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "some song")
        assert replies(interaction)[-1] == "Could not play the requested video."

    async def test_youtube_link_skips_search(self, cog, bot):
        bot.youtube.parse_url.return_value = ("video", "ccccccccccc")
        await cog.play.callback(cog, make_interaction(), "https://youtu.be/ccccccccccc")
        bot.youtube.search.assert_not_awaited()
        assert bot.sessions.get(1).current_track.id == "ccccccccccc"

    async def test_not_found(self, cog, bot):
        bot.youtube.search.return_value = None
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "zzzz")
        assert replies(interaction)[-1] == "Video was not found!"
        assert bot.sessions.get(1) is None

    async def test_provider_error(self, cog, bot):
        bot.youtube.search.side_effect = ProviderError("503")
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "some song")
        assert "YouTube search error" in replies(interaction)[-1]

    async def test_spotify_track(self, cog, bot):
        await cog.play.callback(cog, make_interaction(), "https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC")
        bot.youtube.search.assert_awaited_once_with("Rick Astley - Never Gonna Give You Up")

    async def test_spotify_album_rejected(self, cog):
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "https://open.spotify.com/album/1DFixLWuPkv3KT3TnV35m3")
        assert replies(interaction)[-1] == "Invalid resource."

    async def test_spotify_invalid_id(self, cog, bot):
        bot.spotify.get_track_name.side_effect = NotFoundError("bad id")
        interaction = make_interaction()
        await cog.play.callback(cog, interaction, "https://open.spotify.com/track/nope")
        assert replies(interaction)[-1] == "Invalid track ID."

    async def test_wrong_channel(self, cog, bot):
        await cog.play.callback(cog, make_interaction(), "some song")
        interaction = make_interaction(channel_id=999)
        await cog.play.callback(cog, interaction, "other song")
        assert replies(interaction) == [WRONG_CHANNEL]


class TestControls:
    async def test_skip_nothing_playing(self, cog):
        interaction = make_interaction()
        await cog.skip.callback(cog, interaction, 1)
        assert replies(interaction) == [NOTHING_PLAYING]

    async def test_skip_far_past_the_queue(self, cog, session, track_data):
        await session.play(track_data("aaaaaaaaaaa"))
        interaction = make_interaction()
        await cog.skip.callback(cog, interaction, 10)
        assert replies(interaction) == ["I mean there are no tracks in the queue but consider it done!"]
        assert session.current_track is None

    async def test_pause_resume(self, cog, session, track_data):
        await session.play(track_data())
        interaction = make_interaction()
        await cog.pause.callback(cog, interaction)
        await cog.resume.callback(cog, interaction)
        assert replies(interaction) == [":pause_button: Paused", ":arrow_forward: Resumed"]

    async def test_category_toggle(self, cog, session):
        interaction = make_interaction()
        await cog.category.callback(cog, interaction, "sponsor")
        assert replies(interaction) == ["SponsorBlock `sponsor` off"]
        assert "sponsor" not in session.categories

    async def test_seek_invalid_timestamp(self, cog, session, track_data):
        await session.play(track_data())
        interaction = make_interaction()
        await cog.seek.callback(cog, interaction, "soon")
        assert replies(interaction) == ["Invalid timestamp."]

    async def test_seek(self, cog, session, streams, track_data):
        await session.play(track_data(length=300))
        await cog.seek.callback(cog, make_interaction(), "1:30")
        assert streams.requests[-1][1].seek == 90

    async def test_volume(self, cog, session):
        interaction = make_interaction()
        await cog.volume.callback(cog, interaction, 50)
        assert session.volume == 0.5

    async def test_remove(self, cog, session, track_data):
        await session.play(track_data("aaaaaaaaaaa"))
        await session.add_track(track_data("bbbbbbbbbbb"))
        interaction = make_interaction()
        await cog.remove.callback(cog, interaction, 1)
        assert session.queue == []
        assert replies(interaction)[0].startswith("Removed")

    async def test_queue_listing(self, cog, session, track_data):
        await session.play(track_data("aaaaaaaaaaa"))
        await session.add_track(track_data("bbbbbbbbbbb", length=65))
        interaction = make_interaction()
        await cog.queue.callback(cog, interaction, False)
        [text] = replies(interaction)
        assert "`1)`" in text
        assert "1:05" in text

    async def test_download_link(self, cog, bot, session, track_data, monkeypatch):
        monkeypatch.setattr(config, "PUBLIC_URL", "https://bot.test")
        await session.play(track_data())
        interaction = make_interaction()
        await cog.download.callback(cog, interaction)
        [code] = list(bot.downloads)
        assert f"https://bot.test/download/{code}" in replies(interaction)[0]
        assert bot.downloads.get(code).track is session.current_track


class TestTogether:
    async def test_share_and_join(self, cog, bot, session):
        interaction = make_interaction()
        await cog.together.callback(cog, interaction, None)
        [code] = list(bot.sessions.join_codes)
        assert code in replies(interaction)[0]

        joiner = make_interaction(guild_id=2, channel_id=300)
        await cog.together.callback(cog, joiner, code)
        assert bot.sessions.get(2) is session
        assert replies(joiner)[0].startswith("Listening together with")

    async def test_bad_code(self, cog):
        interaction = make_interaction(guild_id=2, channel_id=300)
        await cog.together.callback(cog, interaction, "nope")
        assert replies(interaction) == ["Code is invalid or has expired."]


class TestRadioCommand:
    async def test_radio_then_stop(self, cog, bot):
        interaction = make_interaction()
        await cog.radio_command.callback(cog, interaction, "StationX")
        session = bot.sessions.get(1)
        assert session.radio_station.name == "StationX"
        assert replies(interaction)[-1].startswith("Now playing")

        interaction = make_interaction()
        await cog.radio_command.callback(cog, interaction, None)
        assert replies(interaction) == ["Radio stopped."]
        assert not session.radio_playing

    async def test_radio_refused_while_youtube_plays(self, cog, session, track_data):
        await session.play(track_data())
        interaction = make_interaction()
        await cog.radio_command.callback(cog, interaction, "StationX")
        assert replies(interaction) == ["YouTube is playing, stop the music for /radio ."]
