"""Shared test doubles.

``DummyBitbucket`` stands in for ``BitbucketClient``: it records every call and
answers from a route table keyed by ``(method, path)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from bitbucket_server_mcp.audit import AuditEvent
from bitbucket_server_mcp.bitbucket_client import BinaryPayload
from bitbucket_server_mcp.config import BearerToken, LimitsConfig, ServerConfig
from bitbucket_server_mcp.tools import Runtime


@dataclass
class DummyAudit:
    events: list[AuditEvent] = field(default_factory=list)

    def write_event(self, event: AuditEvent) -> None:
        self.events.append(event)


class DummyBitbucket:
    def __init__(self, routes: dict[tuple[str, str], object | Exception] | None = None) -> None:
        self._routes = routes or {}
        self.calls: list[dict[str, Any]] = []

    def _answer(self, method: str, path: str, **kwargs: Any) -> object:
        self.calls.append({"method": method, "path": path, **kwargs})
        key = (method, path)
        if key not in self._routes:
            raise AssertionError(f"Unexpected Bitbucket call: {key}")
        val = self._routes[key]
        if isinstance(val, Exception):
            raise val
        return val

    async def get(self, path: str, *, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> object:
        return self._answer("GET", path, params=params)

    async def get_text(self, path: str, *, params: dict[str, Any] | None = None) -> object:
        return self._answer("GET", path, params=params, accept="text/plain")

    async def get_bytes(self, path: str, *, params: dict[str, Any] | None = None) -> BinaryPayload:
        out = self._answer("GET", path, params=params)
        assert isinstance(out, BinaryPayload)
        return out

    async def post(self, path: str, body: Any = None) -> object:
        return self._answer("POST", path, body=body)

    async def delete(self, path: str) -> object:
        return self._answer("DELETE", path)


def make_config(
    *,
    default_project: str | None = "PROJ",
    default_reviewers: tuple[str, ...] = (),
    limits: LimitsConfig | None = None,
) -> ServerConfig:
    return ServerConfig(
        base_url="https://bitbucket.example.com",
        credential=BearerToken(token="tok"),
        default_project=default_project,
        default_reviewers=default_reviewers,
        limits=limits or LimitsConfig(),
    )


def make_runtime(
    routes: dict[tuple[str, str], object | Exception] | None = None,
    **config_kwargs: Any,
) -> Runtime:
    return Runtime(
        config=make_config(**config_kwargs),
        client=DummyBitbucket(routes),  # type: ignore[arg-type]
        audit=DummyAudit(),  # type: ignore[arg-type]
        logger=logging.getLogger("tests"),
    )
