"""
Exceptions shared by the player core and the metadata services
"""


class MusicBoxError(Exception):
    """Base class for all bot errors."""


class NotFoundError(MusicBoxError):
    """The requested video, playlist or track does not exist."""


class ProviderError(MusicBoxError):
    """An upstream provider failed in a way that may succeed on retry."""


class TrackUnplayable(MusicBoxError):
    """The audio stream for a track could not be resolved or probed."""


class StationUnavailable(MusicBoxError):
    """The upstream of a radio station could not be opened."""


class VoiceJoinError(MusicBoxError):
    """Could not connect to the requested voice channel."""
