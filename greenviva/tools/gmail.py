"""Gmail REST API wrapper — message search/fetch, body decoding, and draft storage.

All calls go through one httpx.AsyncClient authenticated with an explicit
OAuth access token. Status codes are translated into the exception hierarchy
below so callers can tell "sign in again" apart from "try again later".
"""

import base64
import logging
import os
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
PAGE_SIZE = 100  # messages.list maximum is 500, smaller pages keep responses light

# 403 reasons that Gmail uses for quota errors instead of 429
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GmailError(Exception):
    """Any Gmail API or transport failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationExpired(GmailError):
    """The access token was rejected. Never retried here."""


class RateLimited(GmailError):
    """Gmail asked us to slow down."""


# ---------------------------------------------------------------------------
# Credentials (local single-user mode)
# ---------------------------------------------------------------------------

def load_credentials(token_path: str | None = None):
    """Load OAuth credentials from token.json, refreshing them if expired.

    Raises AuthenticationExpired if there is no usable token; run
    scripts/setup_gmail.py to create one.
    """
    from google.auth.exceptions import RefreshError
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from greenviva.config import GMAIL_SCOPES, GMAIL_TOKEN_PATH

    token_path = token_path or GMAIL_TOKEN_PATH
    creds = None
    if os.path.exists(token_path):
        creds = Credentials.from_authorized_user_file(token_path, GMAIL_SCOPES)
    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise AuthenticationExpired(f"Gmail token refresh failed: {e}") from e
            with open(token_path, "w") as f:
                f.write(creds.to_json())
        else:
            raise AuthenticationExpired(
                "Gmail OAuth token not found or invalid. "
                "Re-run scripts/setup_gmail.py to authorize Gmail access."
            )
    return creds


# ---------------------------------------------------------------------------
# Body decoding
# ---------------------------------------------------------------------------

def decode_base64url(data: str) -> str:
    """Decode Gmail's URL-safe base64 (padding optional) into text."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def encode_base64url(text: str) -> str:
    """Encode text as URL-safe base64 without padding (Gmail 'raw' format)."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _find_text_part(part: dict) -> dict | None:
    """Depth-first search for the first text/plain or text/html part with data."""
    if part.get("mimeType") in ("text/plain", "text/html") and part.get("body", {}).get("data"):
        return part
    for sub in part.get("parts", []):
        found = _find_text_part(sub)
        if found:
            return found
    return None


def extract_body(payload: dict) -> str:
    """Return the decoded body of a Gmail message payload.

    Single-part messages carry their data on the payload itself; multipart
    messages use the first plain-text or HTML part found.
    """
    data = payload.get("body", {}).get("data")
    if data:
        return decode_base64url(data)
    part = _find_text_part(payload)
    if part:
        return decode_base64url(part["body"]["data"])
    return ""


@dataclass
class GmailMessage:
    id: str
    headers: dict = field(default_factory=dict)  # lower-cased header name -> value
    body: str = ""

    def header(self, name: str) -> str:
        return self.headers.get(name.lower(), "")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GmailClient:
    """Async Gmail client bound to a single access token."""

    def __init__(self, token: str, http_client: httpx.AsyncClient | None = None):
        self._token = token
        self._client = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = http_client is None

    @property
    def token(self) -> str:
        return self._token

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            resp = await self._client.request(method, f"{BASE_URL}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise GmailError(f"Gmail request failed: {e}") from e

        if resp.status_code in (401, 403):
            if resp.status_code == 403 and _error_reason(resp) in _RATE_LIMIT_REASONS:
                raise RateLimited("Gmail quota exceeded", status_code=403)
            raise AuthenticationExpired(
                f"Gmail rejected the access token ({resp.status_code})",
                status_code=resp.status_code,
            )
        if resp.status_code == 429:
            raise RateLimited("Gmail rate limit hit", status_code=429)
        if resp.status_code >= 400:
            logger.error("Gmail %s %s failed: %s %s", method, path, resp.status_code, resp.text[:200])
            raise GmailError(f"Gmail API error {resp.status_code}", status_code=resp.status_code)
        return resp.json() if resp.content else {}

    # --- Messages ---

    async def list_message_ids(self, query: str, max_results: int = 500) -> list[str]:
        """Return ids of messages matching a Gmail search query, following pages."""
        ids: list[str] = []
        page_token = None
        while len(ids) < max_results:
            params = {"q": query, "maxResults": min(PAGE_SIZE, max_results - len(ids))}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", "/messages", params=params)
            ids.extend(m["id"] for m in data.get("messages", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        logger.debug("Query %r matched %d messages", query, len(ids))
        return ids

    async def get_message(self, message_id: str) -> GmailMessage:
        data = await self._request("GET", f"/messages/{message_id}", params={"format": "full"})
        payload = data.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        return GmailMessage(id=message_id, headers=headers, body=extract_body(payload))

    # --- Drafts ---

    async def list_drafts(self, query: str) -> list[str]:
        data = await self._request("GET", "/drafts", params={"q": query})
        return [d["id"] for d in data.get("drafts", [])]

    async def get_draft(self, draft_id: str, fmt: str = "raw") -> dict:
        return await self._request("GET", f"/drafts/{draft_id}", params={"format": fmt})

    async def create_draft(self, raw: str) -> dict:
        return await self._request("POST", "/drafts", json={"message": {"raw": raw}})

    async def update_draft(self, draft_id: str, raw: str) -> dict:
        return await self._request(
            "PUT", f"/drafts/{draft_id}", json={"id": draft_id, "message": {"raw": raw}}
        )


def _error_reason(resp: httpx.Response) -> str:
    try:
        errors = resp.json().get("error", {}).get("errors", [])
    except ValueError:
        return ""
    return errors[0].get("reason", "") if errors else ""
