"""Meta Graph API client for Facebook page video publishing."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from contentpilot.core.config import get_settings


class FacebookGraphError(RuntimeError):
    """Raised when Facebook Graph API operations fail."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class FacebookGraphClient:
    def __init__(
        self,
        *,
        base_url: str = "https://graph.facebook.com/v20.0",
        timeout_seconds: int = 30,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _request(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            if self._client is not None:
                response = self._client.post(url, data=payload)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, data=payload)
        except httpx.HTTPError as exc:
            raise FacebookGraphError(f"facebook_graph_transport_error: {exc}", retryable=True) from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            raise FacebookGraphError(
                f"facebook_graph_request_failed status={response.status_code} detail={detail}",
                status_code=response.status_code,
                retryable=response.status_code in {408, 429} or response.status_code >= 500,
            )

        try:
            body = response.json()
        except ValueError as exc:  # pragma: no cover
            raise FacebookGraphError("facebook_graph_invalid_json_response", retryable=True) from exc

        if not isinstance(body, dict):
            raise FacebookGraphError("facebook_graph_invalid_payload", retryable=True)
        return body

    def publish_video(
        self,
        *,
        page_id: str,
        access_token: str,
        file_url: str,
        title: str,
        description: str,
    ) -> Dict[str, Any]:
        if not access_token.strip():
            raise FacebookGraphError("facebook_access_token_missing")
        if not page_id.strip():
            raise FacebookGraphError("facebook_page_id_missing")
        if not file_url.strip():
            raise FacebookGraphError("facebook_file_url_missing")

        return self._request(
            f"{page_id.strip()}/videos",
            {
                "access_token": access_token.strip(),
                "file_url": file_url.strip(),
                "title": title,
                "description": description,
            },
        )


@lru_cache(maxsize=1)
def get_facebook_graph_client() -> FacebookGraphClient:
    settings = get_settings()
    return FacebookGraphClient(
        base_url=settings.facebook_graph_api_base_url,
        timeout_seconds=settings.facebook_graph_api_timeout_seconds,
    )
