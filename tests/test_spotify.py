"""Tests for Spotify link handling (spotipy mocked)."""
from unittest.mock import MagicMock

import pytest
from spotipy.exceptions import SpotifyException

from musicbox.errors import NotFoundError, ProviderError
from musicbox.services.spotify import SpotifyService, get_track_id, is_spotify_url, url_resource_type

TRACK_URL = "https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC?si=abc"


@pytest.fixture
def spotify():
    service = SpotifyService()
    service.sp = MagicMock()
    yield service
    service.executor.shutdown(wait=False)


class TestUrls:
    def test_is_spotify_url(self):
        assert is_spotify_url(TRACK_URL)
        assert not is_spotify_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        assert not is_spotify_url("open.spotify.com/track/x")

    @pytest.mark.parametrize(
        "url, kind",
        [
            (TRACK_URL, "track"),
            ("https://open.spotify.com/intl-de/track/4uLU6hMCjMI75M1A2tKUQC", "track"),
            ("https://open.spotify.com/album/1DFixLWuPkv3KT3TnV35m3", "album"),
            ("https://open.spotify.com/playlist/37i9dQZF1DXcBWIGoYBM5M", "playlist"),
            ("https://example.com/track/1", None),
        ],
    )
    def test_resource_type(self, url, kind):
        assert url_resource_type(url) == kind

    def test_track_id(self):
        assert get_track_id(TRACK_URL) == "4uLU6hMCjMI75M1A2tKUQC"
        assert get_track_id("https://open.spotify.com/album/1DFixLWuPkv3KT3TnV35m3") is None


class TestGetTrackName:
    async def test_name(self, spotify):
        spotify.sp.track.return_value = {"name": "Never Gonna Give You Up", "artists": [{"name": "Rick Astley"}]}
        assert await spotify.get_track_name(TRACK_URL) == "Rick Astley - Never Gonna Give You Up"
        await spotify.get_track_name(TRACK_URL)
        spotify.sp.track.assert_called_once_with("4uLU6hMCjMI75M1A2tKUQC")

    async def test_invalid_id(self, spotify):
        spotify.sp.track.side_effect = SpotifyException(400, -1, "invalid id")
        with pytest.raises(NotFoundError):
            await spotify.get_track_name(TRACK_URL)

    async def test_not_a_track(self, spotify):
        with pytest.raises(NotFoundError):
            await spotify.get_track_name("https://open.spotify.com/album/1DFixLWuPkv3KT3TnV35m3")

    async def test_server_error(self, spotify):
        spotify.sp.track.side_effect = SpotifyException(503, -1, "unavailable")
        with pytest.raises(ProviderError):
            await spotify.get_track_name(TRACK_URL)

    async def test_not_configured(self):
        service = SpotifyService()
        with pytest.raises(ProviderError):
            await service.get_track_name(TRACK_URL)
