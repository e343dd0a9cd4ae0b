"""YouTube Data API client for resumable video uploads."""

from __future__ import annotations

from functools import lru_cache
import json
from typing import Any, Dict, Optional, Tuple

import httpx

from contentpilot.core.config import get_settings


class YouTubeApiError(RuntimeError):
    """Raised when a YouTube API or media download call fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


def _retryable_status(status_code: int) -> bool:
    return status_code in {408, 429} or status_code >= 500


def _detail(response: httpx.Response) -> str:
    detail = response.text.strip()
    if len(detail) > 240:
        detail = detail[:240] + "..."
    return detail


class YouTubeClient:
    def __init__(
        self,
        *,
        base_url: str = "https://www.googleapis.com",
        timeout_seconds: int = 120,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return self._client.request(method, url, **kwargs)
            with httpx.Client(timeout=self._timeout_seconds, follow_redirects=True) as client:
                return client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise YouTubeApiError(f"youtube_transport_error: {exc}", retryable=True) from exc

    def download_video(self, video_url: str) -> Tuple[bytes, str]:
        if not video_url.strip():
            raise YouTubeApiError("youtube_video_url_missing")
        response = self._send("GET", video_url.strip())
        if response.status_code < 200 or response.status_code >= 300:
            raise YouTubeApiError(
                f"youtube_media_download_failed status={response.status_code}",
                status_code=response.status_code,
                retryable=_retryable_status(response.status_code),
            )
        content_type = response.headers.get("content-type") or "video/mp4"
        return response.content, content_type

    def upload_video(
        self,
        *,
        access_token: str,
        metadata: Dict[str, Any],
        content: bytes,
        content_type: str = "video/mp4",
    ) -> Dict[str, Any]:
        if not access_token.strip():
            raise YouTubeApiError("youtube_access_token_missing")

        session_response = self._send(
            "POST",
            f"{self._base_url}/upload/youtube/v3/videos",
            params={"uploadType": "resumable", "part": "snippet,status"},
            headers={
                "Authorization": f"Bearer {access_token.strip()}",
                "Content-Type": "application/json; charset=UTF-8",
                "X-Upload-Content-Type": content_type,
                "X-Upload-Content-Length": str(len(content)),
            },
            content=json.dumps(metadata).encode("utf-8"),
        )
        if session_response.status_code < 200 or session_response.status_code >= 300:
            raise YouTubeApiError(
                f"youtube_upload_session_failed status={session_response.status_code} "
                f"detail={_detail(session_response)}",
                status_code=session_response.status_code,
                retryable=_retryable_status(session_response.status_code),
            )
        upload_url = session_response.headers.get("location")
        if not upload_url:
            raise YouTubeApiError("youtube_upload_session_missing_location", retryable=True)

        upload_response = self._send(
            "PUT",
            upload_url,
            headers={
                "Authorization": f"Bearer {access_token.strip()}",
                "Content-Type": content_type,
            },
            content=content,
        )
        if upload_response.status_code < 200 or upload_response.status_code >= 300:
            raise YouTubeApiError(
                f"youtube_upload_failed status={upload_response.status_code} detail={_detail(upload_response)}",
                status_code=upload_response.status_code,
                retryable=_retryable_status(upload_response.status_code),
            )

        try:
            body = upload_response.json()
        except ValueError as exc:
            raise YouTubeApiError("youtube_upload_invalid_json_response", retryable=True) from exc
        if not isinstance(body, dict):
            raise YouTubeApiError("youtube_upload_invalid_payload", retryable=True)
        return body


@lru_cache(maxsize=1)
def get_youtube_client() -> YouTubeClient:
    settings = get_settings()
    return YouTubeClient(
        base_url=settings.youtube_api_base_url,
        timeout_seconds=settings.youtube_api_timeout_seconds,
    )
