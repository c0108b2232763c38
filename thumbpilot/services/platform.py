"""
Video platform access.

``PlatformClient`` is the contract the engine depends on. ``YouTubeClient``
implements it over the YouTube Data / Analytics / Upload APIs with httpx;
``ResilientPlatform`` wraps any client so every call goes through the
retry -> circuit breaker -> rate limiter stack.
"""

from __future__ import annotations

import html
import re
from abc import ABC, abstractmethod
from datetime import date
from typing import Any

import httpx
import orjson

from thumbpilot.common.config import PlatformSettings, get_settings
from thumbpilot.common.exceptions import (
    AuthorizationError,
    DependencyError,
    InvalidVideoError,
    RateLimitError,
    SwapError,
    TransientDependencyError,
)
from thumbpilot.common.logger import get_logger
from thumbpilot.common.resilience import ResilientCaller
from thumbpilot.schemas.internal import AnalyticsData, VideoInfo

logger = get_logger(__name__)

_VIDEO_URL_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#]+)"),
    re.compile(r"youtube\.com/shorts/([^&\n?#]+)"),
)
_BARE_VIDEO_ID = re.compile(r"^[a-zA-Z0-9_-]{11}$")

_CAPTIONS_PATTERN = re.compile(r'"captions":\s*({.*?"playerCaptionsTracklistRenderer".*?})')
_TRANSCRIPT_TEXT_PATTERN = re.compile(r'<text start="([^"]+)" dur="([^"]+)"[^>]*>([^<]*)</text>')

# (file name, approximate position in the video)
_FRAME_POSITIONS = (
    ("maxresdefault", 0),
    ("hqdefault", 0),
    ("1", 25),
    ("2", 50),
    ("3", 75),
)


def extract_video_id(url: str) -> str:
    """
    Resolve a YouTube URL or bare id to the 11-character video id.

    Raises:
        InvalidVideoError: if nothing resembling a video id is found.
    """
    value = (url or "").strip()
    for pattern in _VIDEO_URL_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    if _BARE_VIDEO_ID.match(value):
        return value
    raise InvalidVideoError("Invalid YouTube URL", details={"url": url})


def image_content_type(image: bytes) -> str:
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image.startswith(b"\xff\xd8"):
        return "image/jpeg"
    return "application/octet-stream"


class PlatformClient(ABC):
    """Operations the engine needs from the video platform."""

    @abstractmethod
    async def get_video_info(self, video_id: str) -> VideoInfo: ...

    @abstractmethod
    async def get_analytics(
        self, video_id: str, start_date: date, end_date: date
    ) -> AnalyticsData:
        """Cumulative-to-date analytics for ``video_id``."""

    @abstractmethod
    async def apply_creative(self, video_id: str, image: bytes) -> None:
        """Make ``image`` the live thumbnail. Raises on failure."""

    @abstractmethod
    async def get_transcript(self, video_id: str) -> str: ...

    @abstractmethod
    async def extract_reference_frames(self, video_id: str) -> list[str]:
        """URLs of frames usable as generation references."""

    async def close(self) -> None:
        return None


class ResilientPlatform(PlatformClient):
    """Routes every platform call through a ``ResilientCaller``."""

    def __init__(self, client: PlatformClient, caller: ResilientCaller):
        self.client = client
        self.caller = caller

    async def get_video_info(self, video_id: str) -> VideoInfo:
        return await self.caller.call(lambda: self.client.get_video_info(video_id))

    async def get_analytics(
        self, video_id: str, start_date: date, end_date: date
    ) -> AnalyticsData:
        return await self.caller.call(
            lambda: self.client.get_analytics(video_id, start_date, end_date)
        )

    async def apply_creative(self, video_id: str, image: bytes) -> None:
        await self.caller.call(lambda: self.client.apply_creative(video_id, image))

    async def get_transcript(self, video_id: str) -> str:
        return await self.caller.call(lambda: self.client.get_transcript(video_id))

    async def extract_reference_frames(self, video_id: str) -> list[str]:
        return await self.caller.call(lambda: self.client.extract_reference_frames(video_id))

    async def close(self) -> None:
        await self.client.close()


class YouTubeClient(PlatformClient):
    """
    YouTube Data / Analytics / Upload API client.

    Authorizes with a static OAuth access token from settings. HTTP errors
    are mapped onto the engine's taxonomy:

    - 401/403 -> ``AuthorizationError`` (fatal)
    - 429 -> ``RateLimitError`` (retried)
    - 5xx -> ``TransientDependencyError`` (retried)
    - other 4xx -> ``DependencyError`` (``SwapError`` for uploads)
    """

    def __init__(
        self,
        settings: PlatformSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings().platform
        self._client = client or httpx.AsyncClient(timeout=self.settings.timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if not self.settings.access_token:
            raise AuthorizationError("YouTube access token is not configured")
        return {"Authorization": f"Bearer {self.settings.access_token}"}

    @staticmethod
    def _raise_for_status(response: httpx.Response, error_cls: type[DependencyError] = DependencyError) -> None:
        status = response.status_code
        if status < 400:
            return
        details = {"status_code": status, "url": str(response.request.url)}
        if status in (401, 403):
            raise AuthorizationError(f"YouTube API rejected credentials: {status}", details=details)
        if status == 429:
            raise RateLimitError(f"YouTube API rate limited: {status}", details=details)
        if status >= 500:
            raise TransientDependencyError(
                f"YouTube API error: {status}", status_code=status, details=details
            )
        raise error_cls(f"YouTube API error: {status}", details=details)

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.get(url, params=params, headers=self._auth_headers())
        self._raise_for_status(response)
        return response.json()

    async def get_video_info(self, video_id: str) -> VideoInfo:
        data = await self._get_json(
            f"{self.settings.data_api_url}/videos",
            {"part": "snippet,statistics", "id": video_id},
        )
        items = data.get("items") or []
        if not items:
            raise InvalidVideoError("Video not found", details={"video_id": video_id})

        video = items[0]
        snippet = video.get("snippet", {})
        statistics = video.get("statistics", {})
        thumbnails = snippet.get("thumbnails", {})
        thumbnail = thumbnails.get("maxres") or thumbnails.get("high") or thumbnails.get("default") or {}

        return VideoInfo(
            video_id=video.get("id", video_id),
            title=snippet.get("title", ""),
            description=snippet.get("description", ""),
            thumbnail_url=thumbnail.get("url"),
            channel_id=snippet.get("channelId"),
            published_at=snippet.get("publishedAt"),
            view_count=int(statistics.get("viewCount", 0)),
            like_count=int(statistics.get("likeCount", 0)),
        )

    async def get_analytics(
        self, video_id: str, start_date: date, end_date: date
    ) -> AnalyticsData:
        response = await self._client.get(
            f"{self.settings.analytics_api_url}/reports",
            params={
                "ids": "channel==MINE",
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat(),
                "metrics": "views,estimatedMinutesWatched,averageViewDuration",
                "dimensions": "video",
                "filters": f"video=={video_id}",
            },
            headers=self._auth_headers(),
        )
        if response.status_code in (401, 403, 429) or response.status_code >= 500:
            self._raise_for_status(response)

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"error": "unparseable response"}
        if response.status_code >= 400 or "error" in data:
            logger.warning(
                "Analytics API error, falling back to basic statistics",
                video_id=video_id,
                status_code=response.status_code,
                error=data.get("error"),
            )
            return await self._basic_stats(video_id)

        rows = data.get("rows") or []
        # dimensions=video puts the video id first
        row = rows[0][1:] if rows and rows[0] else []
        return AnalyticsData(
            views=int(row[0]) if len(row) > 0 else 0,
            watch_time_minutes=float(row[1]) if len(row) > 1 else 0.0,
            average_view_duration=float(row[2]) if len(row) > 2 else 0.0,
        )

    async def _basic_stats(self, video_id: str) -> AnalyticsData:
        data = await self._get_json(
            f"{self.settings.data_api_url}/videos",
            {"part": "statistics", "id": video_id},
        )
        items = data.get("items") or []
        statistics = items[0].get("statistics", {}) if items else {}
        return AnalyticsData(views=int(statistics.get("viewCount", 0)))

    async def apply_creative(self, video_id: str, image: bytes) -> None:
        if not image:
            raise SwapError("Empty creative payload", details={"video_id": video_id})

        headers = self._auth_headers()
        headers["Content-Type"] = image_content_type(image)
        response = await self._client.post(
            f"{self.settings.upload_api_url}/thumbnails/set",
            params={"videoId": video_id},
            content=image,
            headers=headers,
        )
        self._raise_for_status(response, SwapError)
        logger.info("Thumbnail uploaded", video_id=video_id, size_bytes=len(image))

    async def get_transcript(self, video_id: str) -> str:
        """Best-effort transcript scraped from the public caption track; '' when unavailable."""
        try:
            page = await self._client.get("https://www.youtube.com/watch", params={"v": video_id})
            match = _CAPTIONS_PATTERN.search(page.text)
            if not match:
                logger.info("No captions found for video", video_id=video_id)
                return ""

            captions = orjson.loads(match.group(1))
            tracks = captions.get("playerCaptionsTracklistRenderer", {}).get("captionTracks") or []
            if not tracks:
                return ""

            track = next((t for t in tracks if t.get("languageCode") == "en"), tracks[0])
            xml = await self._client.get(track["baseUrl"])
        except (httpx.HTTPError, orjson.JSONDecodeError, KeyError) as e:
            logger.warning("Transcript unavailable", video_id=video_id, error=str(e))
            return ""

        segments = [
            html.unescape(text).replace("\n", " ")
            for _, _, text in _TRANSCRIPT_TEXT_PATTERN.findall(xml.text)
        ]
        return " ".join(segments)

    async def extract_reference_frames(self, video_id: str) -> list[str]:
        frames: list[str] = []
        for name, _position in _FRAME_POSITIONS:
            if len(frames) >= self.settings.reference_frame_count:
                break
            url = f"https://img.youtube.com/vi/{video_id}/{name}.jpg"
            try:
                response = await self._client.head(url)
            except httpx.HTTPError:
                continue
            if response.status_code == 200:
                frames.append(url)
        return frames
