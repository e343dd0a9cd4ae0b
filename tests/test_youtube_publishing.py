from __future__ import annotations

from datetime import timedelta
import json

import httpx
import pytest

from contentpilot.channels.youtube import YouTubeFormatter, YouTubePublisher
from contentpilot.channels.youtube.publisher import youtube_video_id
from contentpilot.core.errors import PermanentChannelError, RetryableChannelError
from contentpilot.domain.enums import VideoType
from contentpilot.integrations.youtube import YouTubeClient
from contentpilot.storage.models import Channel, Post
from tests.conftest import T0


VIDEO_URL = "https://cdn.example.com/videos/launch.mp4"
UPLOAD_SESSION_URL = "https://www.googleapis.com/upload/youtube/v3/videos?upload_id=session-1"


def _post(**overrides) -> Post:
    values = {
        "id": "post-1",
        "user_id": "user-1",
        "title": "Launch day",
        "description": "Behind the scenes.",
        "video_url": VIDEO_URL,
        "video_type": VideoType.VIDEO,
        "tags": ["launch", "startup"],
    }
    values.update(overrides)
    return Post(**values)


def _channel(**overrides) -> Channel:
    values = {
        "id": "channel-1",
        "user_id": "user-1",
        "platform": "youtube",
        "channel_id": "UC123",
        "channel_name": "Launch TV",
        "access_token": "yt-access-token",
        "expires_at": T0 + timedelta(hours=1),
    }
    values.update(overrides)
    return Channel(**values)


class _YouTubeApi:
    def __init__(self, *, session_status: int = 200, upload_status: int = 200) -> None:
        self.requests: list[httpx.Request] = []
        self._session_status = session_status
        self._upload_status = upload_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, content=b"video-bytes", headers={"content-type": "video/mp4"})
        if request.method == "POST":
            if self._session_status != 200:
                return httpx.Response(self._session_status, json={"error": {"message": "denied"}})
            return httpx.Response(200, headers={"location": UPLOAD_SESSION_URL})
        if self._upload_status != 200:
            return httpx.Response(self._upload_status, text="backend error")
        return httpx.Response(200, json={"id": "yt-video-1", "status": {"uploadStatus": "uploaded"}})


def _publisher(api: _YouTubeApi) -> YouTubePublisher:
    client = YouTubeClient(
        base_url="https://www.googleapis.com",
        client=httpx.Client(transport=httpx.MockTransport(api)),
    )
    return YouTubePublisher(client=client, formatter=YouTubeFormatter(category_id="22"), clock=lambda: T0)


def test_publisher_downloads_and_uploads_with_resumable_session() -> None:
    api = _YouTubeApi()

    result = _publisher(api).publish(_post(), _channel())

    assert result.external_id == "yt-video-1"
    assert result.payload["video_url"] == "https://www.youtube.com/watch?v=yt-video-1"
    assert [request.method for request in api.requests] == ["GET", "POST", "PUT"]

    session_request = api.requests[1]
    assert session_request.url.params["uploadType"] == "resumable"
    assert session_request.url.params["part"] == "snippet,status"
    assert session_request.headers["authorization"] == "Bearer yt-access-token"
    assert session_request.headers["x-upload-content-length"] == str(len(b"video-bytes"))
    metadata = json.loads(session_request.content)
    assert metadata["snippet"]["title"] == "Launch day"
    assert metadata["snippet"]["tags"] == ["launch", "startup"]
    assert metadata["status"]["privacyStatus"] == "public"

    assert str(api.requests[2].url) == UPLOAD_SESSION_URL
    assert api.requests[2].content == b"video-bytes"


def test_formatter_marks_shorts() -> None:
    payload = YouTubeFormatter().format(_post(video_type=VideoType.SHORTS, tags=["tips"]))

    assert payload.tags == ["tips", "Shorts"]
    assert payload.description.endswith("#Shorts")
    assert payload.metadata["snippet"]["tags"] == ["tips", "Shorts"]


def test_already_hosted_video_is_not_uploaded_again() -> None:
    api = _YouTubeApi()

    result = _publisher(api).publish(_post(video_url="https://youtu.be/abc123"), _channel())

    assert result.external_id == "abc123"
    assert api.requests == []
    assert youtube_video_id("https://www.youtube.com/watch?v=xyz") == "xyz"
    assert youtube_video_id("https://www.youtube.com/shorts/short1") == "short1"
    assert youtube_video_id(VIDEO_URL) is None


def test_expired_token_is_retryable_without_network_calls() -> None:
    api = _YouTubeApi()

    with pytest.raises(RetryableChannelError):
        _publisher(api).publish(_post(), _channel(expires_at=T0 - timedelta(minutes=1)))
    assert api.requests == []


def test_missing_token_or_media_is_permanent() -> None:
    api = _YouTubeApi()

    with pytest.raises(PermanentChannelError):
        _publisher(api).publish(_post(), _channel(access_token=None))
    with pytest.raises(PermanentChannelError):
        _publisher(api).publish(_post(video_url=None), _channel())


def test_api_errors_map_to_retryable_or_permanent() -> None:
    with pytest.raises(PermanentChannelError) as permanent:
        _publisher(_YouTubeApi(session_status=403)).publish(_post(), _channel())
    assert permanent.value.details["status_code"] == 403

    with pytest.raises(RetryableChannelError) as retryable:
        _publisher(_YouTubeApi(upload_status=503)).publish(_post(), _channel())
    assert retryable.value.details["status_code"] == 503
