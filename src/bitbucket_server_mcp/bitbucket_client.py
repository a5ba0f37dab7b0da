"""Bitbucket Server REST client wrapper.

Provides:
- one base URL (``{base_url}/rest/api/latest``) and one auth scheme per server
- finite timeouts, no redirects, no retries
- safe error translation (remote status and transport failures alike)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import BasicAuth, BearerToken, ServerConfig
from .errors import SafeError, bitbucket_api_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BinaryPayload:
    """Raw response body for non-text endpoints (archives)."""

    content: bytes
    content_type: str | None


def _remote_message(resp: httpx.Response) -> str:
    """Extract the most useful message from a Bitbucket error body."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict) and isinstance(first.get("message"), str):
                return first["message"]

    return resp.reason_phrase or f"HTTP {resp.status_code}"


class BitbucketClient:
    """Minimal Bitbucket Server REST client."""

    def __init__(
        self,
        *,
        config: ServerConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a Bitbucket REST client.

        Args:
            config: Server binding (base URL, credential, limits).
            transport: Optional httpx transport for tests.
        """
        self._api_base_url = config.api_base_url
        self._limits = config.limits
        self._transport = transport
        self._auth: httpx.Auth | None = None
        self._headers: dict[str, str] = {"Accept": "application/json"}

        credential = config.credential
        if isinstance(credential, BearerToken):
            self._headers["Authorization"] = f"Bearer {credential.token}"
        elif isinstance(credential, BasicAuth):
            self._auth = httpx.BasicAuth(credential.username, credential.password)
        else:
            raise SafeError(code="Config", message="Unsupported credential type")

    @property
    def api_base_url(self) -> str:
        return self._api_base_url

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(timeout=self._limits.timeout_s, connect=self._limits.connect_timeout_s)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        request_headers = dict(self._headers)
        if method in ("POST", "PUT", "DELETE"):
            # Bitbucket's XSRF filter rejects token-authenticated writes without this.
            request_headers["X-Atlassian-Token"] = "no-check"
        if headers:
            request_headers.update(headers)

        async with httpx.AsyncClient(
            base_url=self._api_base_url,
            auth=self._auth,
            follow_redirects=False,
            timeout=self._timeout(),
            transport=self._transport,
        ) as client:
            try:
                resp = await client.request(
                    method,
                    path,
                    params=params,
                    headers=request_headers,
                    json=json_body,
                )
            except httpx.TransportError as exc:
                logger.warning("Bitbucket %s %s failed: %s", method, path, type(exc).__name__)
                raise bitbucket_api_error(str(exc) or type(exc).__name__) from exc

        if resp.status_code >= 400:
            logger.warning("Bitbucket %s %s returned %s", method, path, resp.status_code)
            raise bitbucket_api_error(_remote_message(resp), status_code=resp.status_code)

        return resp

    @staticmethod
    def _decode_json(resp: httpx.Response) -> object:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise SafeError(code="BitbucketAPI", message="Bitbucket returned invalid JSON") from exc

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> object:
        """GET a JSON resource and return the decoded body."""
        resp = await self._request("GET", path, params=params, headers=headers)
        return self._decode_json(resp)

    async def get_text(self, path: str, *, params: dict[str, Any] | None = None) -> str:
        """GET a ``text/plain`` resource and return the body unmodified."""
        resp = await self._request("GET", path, params=params, headers={"Accept": "text/plain"})
        return resp.text

    async def get_bytes(self, path: str, *, params: dict[str, Any] | None = None) -> BinaryPayload:
        """GET a binary resource (e.g. an archive)."""
        resp = await self._request("GET", path, params=params, headers={"Accept": "*/*"})
        return BinaryPayload(content=resp.content, content_type=resp.headers.get("Content-Type"))

    async def post(self, path: str, body: Any = None) -> object:
        """POST a JSON body and return the decoded response."""
        resp = await self._request("POST", path, json_body=body)
        return self._decode_json(resp)

    async def delete(self, path: str) -> object:
        """DELETE a resource and return the decoded response, if any."""
        resp = await self._request("DELETE", path)
        return self._decode_json(resp)
