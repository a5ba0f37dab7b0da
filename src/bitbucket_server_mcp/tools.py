"""Tool registry and dispatch layer.

This module:
- defines the tool catalog (public contract surface)
- builds a per-server runtime from host-provided config
- resolves the project key, validates arguments into typed inputs and routes
  each call to exactly one operation handler
- normalizes failures into the standard error envelope
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from . import operations
from .audit import AuditLogger, Outcome, build_event, elapsed_ms, new_correlation_id
from .bitbucket_client import BitbucketClient
from .config import ServerConfig, load_config_from_env
from .errors import SafeError, invalid_params, method_not_found, safe_error_to_result
from .models import ARCHIVE_FORMATS, LINE_TYPES, MERGE_STRATEGIES, PULL_REQUEST_STATES
from .models import ArchiveOptions, CommentInput, DiffOptions, InlineCommentInput, MergeOptions, PageOptions
from .models import ProjectRef, PullRequestCreateInput, PullRequestRef, RepositoryRef

_PROJECT = {
    "type": "string",
    "minLength": 1,
    "description": "Bitbucket project key (defaults to BITBUCKET_DEFAULT_PROJECT)",
}
_REPOSITORY = {"type": "string", "minLength": 1, "description": "Repository slug"}
_PR_ID = {"type": "integer", "minimum": 1, "description": "Pull request ID"}
_PARENT_ID = {"type": "integer", "description": "Parent comment ID for replies"}
_LINE_TYPE = {
    "type": "string",
    "enum": list(LINE_TYPES),
    "description": "Type of line (default is CONTEXT)",
}
_LIMIT = {"type": "integer", "minimum": 1, "description": "Maximum number of results per page"}
_START = {"type": "integer", "minimum": 0, "description": "Index of the first result (paging)"}


def _pr_schema(extra: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    properties: dict[str, Any] = {"project": _PROJECT, "repository": _REPOSITORY, "prId": _PR_ID}
    properties.update(extra or {})
    return {
        "type": "object",
        "required": ["repository", "prId", *(required or [])],
        "properties": properties,
        "additionalProperties": False,
    }


TOOL_METADATA: dict[str, dict[str, Any]] = {
    "list_repositories": {
        "description": "List all repositories in a Bitbucket project.",
        "inputSchema": {
            "type": "object",
            "required": [],
            "properties": {"project": _PROJECT, "limit": _LIMIT, "start": _START},
            "additionalProperties": False,
        },
    },
    "list_pull_requests": {
        "description": "List pull requests for a repository in a Bitbucket project.",
        "inputSchema": {
            "type": "object",
            "required": ["repository"],
            "properties": {
                "project": _PROJECT,
                "repository": _REPOSITORY,
                "state": {
                    "type": "string",
                    "enum": list(PULL_REQUEST_STATES),
                    "description": "Pull request state filter (Bitbucket default is OPEN)",
                },
                "limit": _LIMIT,
                "start": _START,
            },
            "additionalProperties": False,
        },
    },
    "list_branches": {
        "description": "List all branches in a repository.",
        "inputSchema": {
            "type": "object",
            "required": ["repository"],
            "properties": {"project": _PROJECT, "repository": _REPOSITORY, "limit": _LIMIT, "start": _START},
            "additionalProperties": False,
        },
    },
    "get_repository_details": {
        "description": "Get details of a repository.",
        "inputSchema": {
            "type": "object",
            "required": ["repository"],
            "properties": {"project": _PROJECT, "repository": _REPOSITORY},
            "additionalProperties": False,
        },
    },
    "create_pull_request": {
        "description": "Create a new pull request. Reviewers default to BITBUCKET_DEFAULT_REVIEWERS.",
        "inputSchema": {
            "type": "object",
            "required": ["repository", "title", "sourceBranch", "targetBranch"],
            "properties": {
                "project": _PROJECT,
                "repository": _REPOSITORY,
                "title": {"type": "string", "minLength": 1, "description": "PR title"},
                "description": {"type": "string", "description": "PR description"},
                "sourceBranch": {"type": "string", "minLength": 1, "description": "Source branch name"},
                "targetBranch": {"type": "string", "minLength": 1, "description": "Target branch name"},
                "reviewers": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "List of reviewer usernames",
                },
            },
            "additionalProperties": False,
        },
    },
    "get_pull_request": {
        "description": "Get pull request details.",
        "inputSchema": _pr_schema(),
    },
    "merge_pull_request": {
        "description": "Merge a pull request.",
        "inputSchema": _pr_schema(
            {
                "message": {"type": "string", "description": "Merge commit message"},
                "strategy": {
                    "type": "string",
                    "enum": list(MERGE_STRATEGIES),
                    "description": "Merge strategy to use (default is merge-commit)",
                },
            }
        ),
    },
    "decline_pull_request": {
        "description": "Decline a pull request.",
        "inputSchema": _pr_schema({"message": {"type": "string", "description": "Reason for declining"}}),
    },
    "delete_pull_request": {
        "description": "Delete a pull request by declining it.",
        "inputSchema": _pr_schema({"message": {"type": "string", "description": "Reason for deleting/declining"}}),
    },
    "add_comment": {
        "description": "Add a comment to a pull request.",
        "inputSchema": _pr_schema(
            {
                "text": {"type": "string", "minLength": 1, "description": "Comment text"},
                "parentId": _PARENT_ID,
            },
            required=["text"],
        ),
    },
    "add_inline_comment": {
        "description": "Add an inline comment to a file in a pull request.",
        "inputSchema": _pr_schema(
            {
                "text": {"type": "string", "minLength": 1, "description": "Comment text"},
                "filePath": {"type": "string", "minLength": 1, "description": "Path to the file in the repository"},
                "line": {"type": "integer", "minimum": 1, "description": "Line number to comment on"},
                "lineType": _LINE_TYPE,
                "startColumn": {"type": "integer", "minimum": 0, "description": "Starting column for code highlight (optional)"},
                "endColumn": {"type": "integer", "minimum": 0, "description": "Ending column for code highlight (optional)"},
                "parentId": _PARENT_ID,
            },
            required=["text", "filePath", "line"],
        ),
    },
    "suggest_code_change": {
        "description": "Add a code suggestion comment to a file in a pull request.",
        "inputSchema": _pr_schema(
            {
                "filePath": {"type": "string", "minLength": 1, "description": "Path to the file in the repository"},
                "line": {"type": "integer", "minimum": 1, "description": "Line number to comment on"},
                "lineType": _LINE_TYPE,
                "message": {"type": "string", "description": "Comment message explaining the suggestion (optional)"},
                "suggestedCode": {"type": "string", "description": "The suggested code"},
                "originalCode": {"type": "string", "description": "The code being replaced (optional)"},
                "parentId": _PARENT_ID,
            },
            required=["filePath", "line", "suggestedCode"],
        ),
    },
    "get_diff": {
        "description": "Get pull request diff as plain text.",
        "inputSchema": _pr_schema(
            {"contextLines": {"type": "integer", "minimum": 0, "description": "Number of context lines (default 10)"}}
        ),
    },
    "get_reviews": {
        "description": "Get pull request reviews (approvals and review activities).",
        "inputSchema": _pr_schema(),
    },
    "get_pull_request_comments": {
        "description": "Get comment activities on a pull request.",
        "inputSchema": _pr_schema(),
    },
    "approve_pull_request": {
        "description": "Approve a pull request as the authenticated user.",
        "inputSchema": _pr_schema(),
    },
    "unapprove_pull_request": {
        "description": "Remove the authenticated user's approval from a pull request.",
        "inputSchema": _pr_schema(),
    },
    "get_repository_archive": {
        "description": "Download a repository archive (base64-encoded, size-limited).",
        "inputSchema": {
            "type": "object",
            "required": ["repository"],
            "properties": {
                "project": _PROJECT,
                "repository": _REPOSITORY,
                "format": {
                    "type": "string",
                    "enum": list(ARCHIVE_FORMATS),
                    "description": "Archive format (default is zip)",
                },
                "at": {"type": "string", "minLength": 1, "description": "Commit ID or ref to archive (default branch if omitted)"},
            },
            "additionalProperties": False,
        },
    },
}


@dataclass(frozen=True, slots=True)
class Runtime:
    """Per-server dependencies shared (read-only) across tool calls."""

    config: ServerConfig
    client: BitbucketClient
    audit: AuditLogger
    logger: logging.Logger


def build_runtime(
    config: ServerConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    logger: logging.Logger | None = None,
) -> Runtime:
    """Wire config, client, audit sink and logger into a runtime."""
    return Runtime(
        config=config,
        client=BitbucketClient(config=config, transport=transport),
        audit=AuditLogger(
            sink_path=config.audit_log_path,
            max_bytes=config.audit_max_bytes,
            max_backups=config.audit_max_backups,
        ),
        logger=logger or logging.getLogger("bitbucket_server_mcp"),
    )


def load_runtime_from_env() -> Runtime:
    """Load configuration from the environment and build a runtime (fail-fast)."""
    return build_runtime(load_config_from_env())


def _is_integer(v: Any) -> bool:
    if isinstance(v, bool):
        return False
    if isinstance(v, int):
        return True
    return isinstance(v, float) and v.is_integer()


def validate_tool_arguments(tool_name: str, arguments: dict[str, Any]) -> None:
    """Validate tool arguments against the tool's declared input schema.

    This is intentionally a minimal validator that enforces:
    - required fields
    - no extra properties when additionalProperties=false
    - basic JSON types (string/integer/array), string enums and bounds

    It does NOT implement full JSON Schema.
    """
    if tool_name not in TOOL_METADATA:
        raise method_not_found(tool_name, list(TOOL_METADATA))

    schema = TOOL_METADATA[tool_name]["inputSchema"]
    props: dict[str, Any] = schema.get("properties", {})
    required: list[str] = schema.get("required", [])
    additional = schema.get("additionalProperties", True)

    for k in required:
        if arguments.get(k) is None:
            raise invalid_params(f"Missing required field: {k}")

    if additional is False:
        extras = sorted(k for k in arguments if k not in props)
        if extras:
            raise invalid_params(f"Unexpected fields are not allowed: {', '.join(extras)}")

    for k, prop in props.items():
        v = arguments.get(k)
        if v is None:
            continue
        expected = prop.get("type")
        if expected == "string" and not isinstance(v, str):
            raise invalid_params(f"Field '{k}' must be a string")
        if expected == "integer" and not _is_integer(v):
            raise invalid_params(f"Field '{k}' must be an integer")
        if expected == "array":
            if not isinstance(v, list):
                raise invalid_params(f"Field '{k}' must be an array")
            if prop.get("items", {}).get("type") == "string" and not all(isinstance(i, str) for i in v):
                raise invalid_params(f"Field '{k}' must be an array of strings")

        enum = prop.get("enum")
        if enum is not None and v not in enum:
            raise invalid_params(f"Field '{k}' must be one of: {', '.join(enum)}")

        min_len = prop.get("minLength")
        if isinstance(min_len, int) and isinstance(v, str) and len(v) < min_len:
            raise invalid_params(f"Field '{k}' must be at least {min_len} characters")

        minimum = prop.get("minimum")
        if isinstance(minimum, int) and expected == "integer" and v < minimum:
            raise invalid_params(f"Field '{k}' must be >= {minimum}")


def resolve_project(config: ServerConfig, arguments: dict[str, Any]) -> str:
    """Return the explicit project argument, else the configured default."""
    raw = arguments.get("project")
    project = raw if raw not in (None, "") else config.default_project
    if not project:
        raise invalid_params(
            "Project must be provided either as a parameter or through "
            "BITBUCKET_DEFAULT_PROJECT environment variable"
        )
    return project


def _opt_int(arguments: dict[str, Any], key: str) -> int | None:
    v = arguments.get(key)
    return None if v is None else int(v)


def _opt_str(arguments: dict[str, Any], key: str) -> str | None:
    v = arguments.get(key)
    return v if isinstance(v, str) else None


def _repo_ref(arguments: dict[str, Any]) -> RepositoryRef:
    return RepositoryRef(project=arguments["project"], repository=arguments["repository"])


def _pr_ref(arguments: dict[str, Any]) -> PullRequestRef:
    return PullRequestRef(
        project=arguments["project"],
        repository=arguments["repository"],
        pr_id=int(arguments["prId"]),
    )


def _page_options(arguments: dict[str, Any]) -> PageOptions:
    return PageOptions(
        limit=_opt_int(arguments, "limit"),
        start=_opt_int(arguments, "start"),
        state=_opt_str(arguments, "state"),
    )


def _create_input(runtime: Runtime, arguments: dict[str, Any]) -> PullRequestCreateInput:
    reviewers = arguments.get("reviewers") or []
    if not reviewers:
        reviewers = list(runtime.config.default_reviewers)
    return PullRequestCreateInput(
        project=arguments["project"],
        repository=arguments["repository"],
        title=arguments["title"],
        source_branch=arguments["sourceBranch"],
        target_branch=arguments["targetBranch"],
        description=_opt_str(arguments, "description"),
        reviewers=tuple(reviewers),
    )


def _inline_comment(arguments: dict[str, Any], *, text_key: str) -> InlineCommentInput:
    return InlineCommentInput(
        file_path=arguments["filePath"],
        line=int(arguments["line"]),
        text=_opt_str(arguments, text_key),
        line_type=arguments.get("lineType") or "CONTEXT",
        start_column=_opt_int(arguments, "startColumn"),
        end_column=_opt_int(arguments, "endColumn"),
        parent_id=_opt_int(arguments, "parentId"),
        suggested_code=_opt_str(arguments, "suggestedCode"),
        original_code=_opt_str(arguments, "originalCode"),
    )


async def _tool_list_repositories(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.list_repositories(
        runtime.client, ProjectRef(project=arguments["project"]), _page_options(arguments)
    )


async def _tool_list_pull_requests(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.list_pull_requests(runtime.client, _repo_ref(arguments), _page_options(arguments))


async def _tool_list_branches(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.list_branches(runtime.client, _repo_ref(arguments), _page_options(arguments))


async def _tool_get_repository_details(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.get_repository_details(runtime.client, _repo_ref(arguments))


async def _tool_create_pull_request(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.create_pull_request(runtime.client, _create_input(runtime, arguments))


async def _tool_get_pull_request(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.get_pull_request(runtime.client, _pr_ref(arguments))


async def _tool_merge_pull_request(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    options = MergeOptions(
        message=_opt_str(arguments, "message"),
        strategy=arguments.get("strategy") or "merge-commit",
    )
    return await operations.merge_pull_request(runtime.client, _pr_ref(arguments), options)


async def _tool_decline_pull_request(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.decline_pull_request(runtime.client, _pr_ref(arguments), _opt_str(arguments, "message"))


async def _tool_add_comment(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    comment = CommentInput(text=arguments["text"], parent_id=_opt_int(arguments, "parentId"))
    return await operations.add_comment(runtime.client, _pr_ref(arguments), comment)


async def _tool_add_inline_comment(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    comment = _inline_comment(arguments, text_key="text")
    return await operations.add_inline_comment(runtime.client, _pr_ref(arguments), comment)


async def _tool_suggest_code_change(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    comment = _inline_comment(arguments, text_key="message")
    return await operations.add_inline_comment(runtime.client, _pr_ref(arguments), comment)


async def _tool_get_diff(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    context_lines = _opt_int(arguments, "contextLines")
    if context_lines is None:
        context_lines = runtime.config.limits.default_context_lines
    return await operations.get_diff(runtime.client, _pr_ref(arguments), DiffOptions(context_lines=context_lines))


async def _tool_get_reviews(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.get_reviews(runtime.client, _pr_ref(arguments))


async def _tool_get_pull_request_comments(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.get_pull_request_comments(runtime.client, _pr_ref(arguments))


async def _tool_approve_pull_request(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.approve_pull_request(runtime.client, _pr_ref(arguments))


async def _tool_unapprove_pull_request(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    return await operations.unapprove_pull_request(runtime.client, _pr_ref(arguments))


async def _tool_get_repository_archive(runtime: Runtime, arguments: dict[str, Any]) -> dict[str, Any]:
    options = ArchiveOptions(format=arguments.get("format") or "zip", at=_opt_str(arguments, "at"))
    return await operations.get_repository_archive(
        runtime.client,
        _repo_ref(arguments),
        options,
        max_bytes=runtime.config.limits.archive_max_bytes,
    )


_TOOL_FUNCS: dict[str, Callable[[Runtime, dict[str, Any]], Awaitable[dict[str, Any]]]] = {
    "list_repositories": _tool_list_repositories,
    "list_pull_requests": _tool_list_pull_requests,
    "list_branches": _tool_list_branches,
    "get_repository_details": _tool_get_repository_details,
    "create_pull_request": _tool_create_pull_request,
    "get_pull_request": _tool_get_pull_request,
    "merge_pull_request": _tool_merge_pull_request,
    "decline_pull_request": _tool_decline_pull_request,
    "delete_pull_request": _tool_decline_pull_request,
    "add_comment": _tool_add_comment,
    "add_inline_comment": _tool_add_inline_comment,
    "suggest_code_change": _tool_suggest_code_change,
    "get_diff": _tool_get_diff,
    "get_reviews": _tool_get_reviews,
    "get_pull_request_comments": _tool_get_pull_request_comments,
    "approve_pull_request": _tool_approve_pull_request,
    "unapprove_pull_request": _tool_unapprove_pull_request,
    "get_repository_archive": _tool_get_repository_archive,
}


async def dispatch_tool(runtime: Runtime, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Dispatch a tool call.

    Returns the handler's result envelope, or an error envelope for ``SafeError``
    failures (unknown tool, invalid parameters, Bitbucket API errors). Any other
    exception is audited and re-raised unchanged.
    """
    correlation_id = new_correlation_id()
    start = time.monotonic()
    audited: dict[str, Any] = arguments
    runtime.logger.info("Tool called: %s [%s]", name, correlation_id)

    def audit(outcome: Outcome, *, reason: str | None = None, status_code: int | None = None) -> None:
        runtime.audit.write_event(
            build_event(
                correlation_id=correlation_id,
                tool=name,
                arguments=audited,
                outcome=outcome,
                reason=reason,
                status_code=status_code,
                duration_ms=elapsed_ms(start),
            )
        )

    try:
        func = _TOOL_FUNCS.get(name)
        if func is None:
            raise method_not_found(name, list(TOOL_METADATA))

        audited = {**arguments, "project": resolve_project(runtime.config, arguments)}
        validate_tool_arguments(name, audited)

        result = await func(runtime, audited)

    except SafeError as err:
        outcome: Outcome = "denied" if err.code in {"InvalidParams", "MethodNotFound"} else "failed"
        runtime.logger.warning("Tool %s %s: %s", name, outcome, err.message)
        audit(outcome, reason=err.message, status_code=err.status_code)
        return safe_error_to_result(err)
    except Exception:
        runtime.logger.exception("Tool %s raised an unexpected error", name)
        audit("failed", reason="Internal error")
        raise

    audit("succeeded")
    return result
