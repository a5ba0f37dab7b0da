"""Safe error types and serialization helpers.

Errors returned to agents must be non-secret and stable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class SafeError(Exception):
    """An error safe to expose to agents.

    This must never include secrets (tokens, passwords, authorization headers).
    """

    code: str
    message: str
    hint: str | None = None
    status_code: int | None = None

    def __str__(self) -> str:
        return self.message


def invalid_params(message: str, hint: str | None = None) -> SafeError:
    """Error for invalid tool arguments (no network call is made)."""
    return SafeError(code="InvalidParams", message=message, hint=hint)


def method_not_found(name: str, available: list[str]) -> SafeError:
    """Error for a tool name outside the catalog."""
    return SafeError(
        code="MethodNotFound",
        message=f"Unknown tool: {name}",
        hint=f"Available tools: {', '.join(available)}",
    )


def bitbucket_api_error(message: str, *, status_code: int | None = None) -> SafeError:
    """Error for a failed Bitbucket call, remote status or transport alike."""
    return SafeError(code="BitbucketAPI", message=f"Bitbucket API error: {message}", status_code=status_code)


def to_error_result(
    *,
    code: str,
    message: str,
    hint: str | None = None,
    status_code: int | None = None,
) -> dict[str, Any]:
    """Build a standard tool error envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    details: dict[str, Any] = {}
    if hint:
        details["hint"] = hint
    if status_code is not None:
        details["status_code"] = status_code
    if details:
        error["details"] = details
    return {
        "content": [{"type": "error", "text": message}],
        "isError": True,
        "error": error,
    }


def safe_error_to_result(err: SafeError) -> dict[str, Any]:
    """Convert a SafeError into the standard tool error envelope."""
    return to_error_result(code=err.code, message=err.message, hint=err.hint, status_code=err.status_code)
