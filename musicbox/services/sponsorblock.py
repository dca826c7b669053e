"""
SponsorBlock lookups - community-submitted segments to skip in YouTube videos
"""
import json
import logging
from collections.abc import Iterable

import aiohttp

from musicbox.config import ALL_CATEGORIES
from musicbox.player.segments import Segment

logger = logging.getLogger(__name__)


class SponsorBlockService:
    """Looks up community-submitted skip segments for YouTube videos.

    Never raises: a missing video or an API outage both mean "no segments".
    """

    API_URL = "https://sponsor.ajay.app/api/skipSegments"

    def __init__(self, api_url: str | None = None, timeout: float = 10.0):
        self.api_url = api_url or self.API_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def get_segments(self, video_id: str, categories: Iterable[str] = ALL_CATEGORIES) -> list[Segment]:
        params = {"videoID": video_id, "categories": json.dumps(list(categories))}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.api_url, params=params) as resp:
                    if resp.status == 200:
                        data = await resp.json(content_type=None)
                        segments = [Segment.from_api(item) for item in data]
                        logger.debug(f"SponsorBlock: {len(segments)} segments for {video_id}")
                        return segments
                    elif resp.status == 404:
                        # No segments submitted for this video
                        pass
                    elif resp.status == 429:
                        logger.warning("SponsorBlock rate limit hit.")
                    else:
                        logger.error(f"SponsorBlock API error {resp.status} for {video_id}")
        except Exception as e:
            logger.error(f"Failed to get SponsorBlock segments for {video_id}: {e}")

        return []
