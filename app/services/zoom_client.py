# app/services/zoom_client.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from app.core.config import Settings
from app.core.errors import ExternalCallFailure

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class ZoomClientError(ExternalCallFailure):
    """
    Raised when the ZoomClient cannot obtain an access token or when a
    Zoom API call fails.

    `retryable` is True for timeouts, transport errors, rate limiting and
    5xx responses.
    """


class MeetingPlatformClient(Protocol):
    """
    What the reconciler needs from a meeting platform.
    """

    async def get_access_token(self) -> str:
        ...

    async def list_current_participants(self, meeting_id: str) -> List[Dict[str, Any]]:
        ...

    async def get_meeting(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        ...


@dataclass
class _TokenState:
    access_token: str
    expires_at: datetime


class ZoomClient:
    """
    Minimal Zoom REST API client using the server-to-server OAuth
    ("account_credentials") flow.

    Responsibilities
    ----------------
    - Fetch and cache an access token.
    - Fetch the live participant list of a meeting (the authoritative
      "currently present" snapshot) and meeting details.
    - Translate HTTP/transport failures into ZoomClientError.

    Notes
    -----
    - Token caching is in-memory for this process only.
    - A small safety margin is applied when calculating token expiry to avoid
      edge cases near expiration.
    - Rate limiting and retries are the caller's concern (see the polling
      reconciler); this client performs exactly one attempt per call.
    """

    def __init__(
        self,
        account_id: str,
        client_id: str,
        client_secret: str,
        base_url: str = "https://api.zoom.us/v2",
        oauth_url: str = "https://zoom.us/oauth/token",
        timeout_seconds: float = 10.0,
        page_size: int = 300,
    ) -> None:
        if not account_id or not client_id or not client_secret:
            raise ValueError("account_id, client_id and client_secret are required")

        self._account_id = account_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._oauth_url = oauth_url
        self._timeout_seconds = timeout_seconds
        self._page_size = page_size

        self._token_state: Optional[_TokenState] = None

    async def _fetch_token(self) -> _TokenState:
        """
        Fetch a fresh access token using account credentials.
        """
        params = {
            "grant_type": "account_credentials",
            "account_id": self._account_id,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                resp = await client.post(
                    self._oauth_url,
                    params=params,
                    auth=(self._client_id, self._client_secret),
                )
        except httpx.HTTPError as exc:
            raise ZoomClientError(
                f"Failed to reach Zoom OAuth endpoint: {exc}", retryable=True
            ) from exc

        if resp.status_code != 200:
            raise ZoomClientError(
                f"Failed to obtain Zoom token (status={resp.status_code}): {resp.text}",
                status_code=resp.status_code,
                retryable=resp.status_code in RETRYABLE_STATUS_CODES,
            )

        payload = resp.json()
        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")

        if not access_token or not isinstance(expires_in, (int, float)):
            raise ZoomClientError(
                "Invalid token response from Zoom (missing access_token/expires_in)"
            )

        # Apply a small safety margin so we refresh slightly before real expiry.
        now = datetime.now(tz=timezone.utc)
        safety_margin = 60  # seconds
        expires_at = now + timedelta(seconds=float(expires_in) - safety_margin)

        return _TokenState(access_token=access_token, expires_at=expires_at)

    async def get_access_token(self) -> str:
        """
        Return a valid access token, using a cached value if still valid.
        """
        now = datetime.now(tz=timezone.utc)
        if self._token_state and self._token_state.expires_at > now:
            return self._token_state.access_token

        self._token_state = await self._fetch_token()
        return self._token_state.access_token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Issue an authenticated request to the Zoom API.

        `path` is either an absolute URL or relative to the configured base_url.
        """
        token = await self.get_access_token()

        if path.startswith("http://") or path.startswith("https://"):
            url = path
        else:
            url = f"{self._base_url}/{path.lstrip('/')}"

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                resp = await client.request(
                    method=method.upper(),
                    url=url,
                    headers=headers,
                    params=params,
                )
        except httpx.HTTPError as exc:
            raise ZoomClientError(
                f"Zoom {method.upper()} {path} failed: {exc}", retryable=True
            ) from exc

        if resp.status_code == 401:
            # Token revoked or expired early: drop it so the next call refreshes.
            self._token_state = None

        return resp

    def _raise_for_status(self, method: str, resp: httpx.Response) -> None:
        if resp.status_code // 100 != 2:
            raise ZoomClientError(
                f"Zoom {method} failed (status={resp.status_code}): {resp.text}",
                status_code=resp.status_code,
                retryable=resp.status_code in RETRYABLE_STATUS_CODES
                or resp.status_code == 401,
            )

    async def list_current_participants(self, meeting_id: str) -> List[Dict[str, Any]]:
        """
        Return every participant currently in the meeting.

        Follows `next_page_token` pagination. A 404 means the meeting is not
        live (not started or already ended) and yields an empty list.
        """
        participants: List[Dict[str, Any]] = []
        next_page_token: str | None = None

        while True:
            params: Dict[str, Any] = {"type": "live", "page_size": self._page_size}
            if next_page_token:
                params["next_page_token"] = next_page_token

            resp = await self._request(
                "GET", f"/metrics/meetings/{meeting_id}/participants", params=params
            )
            if resp.status_code == 404:
                return []
            self._raise_for_status("GET participants", resp)

            payload = resp.json()
            for entry in payload.get("participants", []) or []:
                # Live metrics also list people who already left.
                if entry.get("leave_time") and entry.get("status") != "in_meeting":
                    continue
                participants.append(entry)

            next_page_token = payload.get("next_page_token") or None
            if not next_page_token:
                return participants

    async def get_meeting(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        """
        Return meeting details (topic, start_time, duration...) or None if
        the meeting does not exist.
        """
        resp = await self._request("GET", f"/meetings/{meeting_id}")
        if resp.status_code == 404:
            return None
        self._raise_for_status("GET meeting", resp)
        return resp.json()


def build_zoom_client(settings: Settings) -> Optional[ZoomClient]:
    """
    Construct a ZoomClient from settings, or None when credentials are not
    configured (polling is then unavailable, push and token sources still
    work).
    """
    if not settings.ZOOM_ACCOUNT_ID or not settings.ZOOM_CLIENT_ID or not settings.ZOOM_CLIENT_SECRET:
        return None
    return ZoomClient(
        account_id=settings.ZOOM_ACCOUNT_ID,
        client_id=settings.ZOOM_CLIENT_ID,
        client_secret=settings.ZOOM_CLIENT_SECRET,
        base_url=str(settings.ZOOM_BASE_URL or "https://api.zoom.us/v2"),
        oauth_url=str(settings.ZOOM_OAUTH_URL or "https://zoom.us/oauth/token"),
        timeout_seconds=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    )
