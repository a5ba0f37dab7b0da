"""Operation handlers.

One coroutine per tool. Each takes the shared client plus already-validated
inputs, issues exactly one Bitbucket request and returns a result envelope:
``{"content": [{"type": "text", "text": ...}]}``.
"""

from __future__ import annotations

import base64
import json
from typing import Any

from .bitbucket_client import BitbucketClient
from .errors import SafeError
from .models import ArchiveOptions, CommentInput, DiffOptions, InlineCommentInput, MergeOptions, PageOptions
from .models import ProjectRef, PullRequestCreateInput, PullRequestRef, RepositoryRef

REVIEW_ACTIONS: frozenset[str] = frozenset({"APPROVED", "REVIEWED"})
COMMENT_ACTIONS: frozenset[str] = frozenset({"COMMENTED"})


def text_result(text: str) -> dict[str, Any]:
    """Wrap a string in the standard result envelope."""
    return {"content": [{"type": "text", "text": text}]}


def json_result(data: object) -> dict[str, Any]:
    """Pretty-print API data into the standard result envelope."""
    return text_result(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def enforce_max_bytes(*, data: bytes, max_bytes: int, what: str) -> None:
    """Enforce an upper bound on byte payloads."""
    if len(data) > max_bytes:
        raise SafeError(
            code="TooLarge",
            message=f"{what} exceeds size limit",
            hint=f"Limit is {max_bytes} bytes; request a narrower ref or use a Git client",
        )


def _filter_activities(data: object, actions: frozenset[str]) -> list[Any]:
    if not isinstance(data, dict) or not isinstance(data.get("values"), list):
        raise SafeError(code="BitbucketAPI", message="Unexpected activities response")
    return [a for a in data["values"] if isinstance(a, dict) and a.get("action") in actions]


def _branch_ref(branch: str, repo: RepositoryRef | PullRequestCreateInput) -> dict[str, Any]:
    return {
        "id": f"refs/heads/{branch}",
        "repository": {
            "slug": repo.repository,
            "project": {"key": repo.project},
        },
    }


def build_suggestion_text(comment: InlineCommentInput) -> str:
    """Render a code suggestion as a diff fence followed by the raw suggested code."""
    suggested = comment.suggested_code or ""
    title = comment.text or f"Suggestion for {comment.file_path} at line {comment.line}"

    lines = [title, "", "```diff"]
    if comment.original_code:
        lines.extend(f"- {line}" for line in comment.original_code.split("\n"))
    lines.extend(f"+ {line}" for line in suggested.split("\n"))
    lines.append("```")
    lines.extend(["", "Suggested code:", "```", suggested, "```"])
    return "\n".join(lines)


def build_inline_comment_payload(comment: InlineCommentInput) -> dict[str, Any]:
    """Build the comment body for an anchored (file/line) comment."""
    text = comment.text or ""
    if comment.suggested_code is not None:
        text = build_suggestion_text(comment)

    anchor: dict[str, Any] = {
        "diffType": "EFFECTIVE",
        "path": comment.file_path,
        "lineType": comment.line_type,
        "line": comment.line,
        "fileType": "TO",
    }
    if comment.start_column is not None and comment.end_column is not None:
        anchor["startColumn"] = comment.start_column
        anchor["endColumn"] = comment.end_column

    payload: dict[str, Any] = {"text": text, "anchor": anchor}
    if comment.parent_id is not None:
        payload["parent"] = {"id": comment.parent_id}
    return payload


async def list_repositories(client: BitbucketClient, ref: ProjectRef, options: PageOptions) -> dict[str, Any]:
    data = await client.get(f"/projects/{ref.project}/repos", params=options.to_params())
    return json_result(data)


async def list_pull_requests(client: BitbucketClient, ref: RepositoryRef, options: PageOptions) -> dict[str, Any]:
    data = await client.get(f"{ref.path}/pull-requests", params=options.to_params())
    return json_result(data)


async def list_branches(client: BitbucketClient, ref: RepositoryRef, options: PageOptions) -> dict[str, Any]:
    data = await client.get(f"{ref.path}/branches", params=options.to_params())
    return json_result(data)


async def get_repository_details(client: BitbucketClient, ref: RepositoryRef, _options: None = None) -> dict[str, Any]:
    data = await client.get(ref.path)
    return json_result(data)


async def create_pull_request(client: BitbucketClient, pr: PullRequestCreateInput, _options: None = None) -> dict[str, Any]:
    """Open a pull request from ``source_branch`` into ``target_branch``."""
    payload: dict[str, Any] = {"title": pr.title}
    if pr.description is not None:
        payload["description"] = pr.description
    payload["fromRef"] = _branch_ref(pr.source_branch, pr)
    payload["toRef"] = _branch_ref(pr.target_branch, pr)
    payload["reviewers"] = [{"user": {"name": name}} for name in pr.reviewers]

    data = await client.post(f"/projects/{pr.project}/repos/{pr.repository}/pull-requests", payload)
    return json_result(data)


async def get_pull_request(client: BitbucketClient, ref: PullRequestRef, _options: None = None) -> dict[str, Any]:
    data = await client.get(ref.path)
    return json_result(data)


async def merge_pull_request(client: BitbucketClient, ref: PullRequestRef, options: MergeOptions) -> dict[str, Any]:
    """Merge at the latest version (``version: -1`` skips the optimistic-lock check)."""
    payload: dict[str, Any] = {"version": -1, "strategy": options.strategy}
    if options.message is not None:
        payload["message"] = options.message
    data = await client.post(f"{ref.path}/merge", payload)
    return json_result(data)


async def decline_pull_request(client: BitbucketClient, ref: PullRequestRef, message: str | None = None) -> dict[str, Any]:
    """Decline a pull request. Bitbucket has no deletion here; "delete" declines too."""
    payload: dict[str, Any] = {"version": -1}
    if message is not None:
        payload["message"] = message
    data = await client.post(f"{ref.path}/decline", payload)
    return json_result(data)


async def add_comment(client: BitbucketClient, ref: PullRequestRef, comment: CommentInput) -> dict[str, Any]:
    payload: dict[str, Any] = {"text": comment.text}
    if comment.parent_id is not None:
        payload["parent"] = {"id": comment.parent_id}
    data = await client.post(f"{ref.path}/comments", payload)
    return json_result(data)


async def add_inline_comment(client: BitbucketClient, ref: PullRequestRef, comment: InlineCommentInput) -> dict[str, Any]:
    """Add a file/line anchored comment; also backs ``suggest_code_change``."""
    data = await client.post(f"{ref.path}/comments", build_inline_comment_payload(comment))
    return json_result(data)


async def get_diff(client: BitbucketClient, ref: PullRequestRef, options: DiffOptions) -> dict[str, Any]:
    # Already text; forwarded as-is.
    diff = await client.get_text(f"{ref.path}/diff", params={"contextLines": options.context_lines})
    return text_result(diff)


async def get_reviews(client: BitbucketClient, ref: PullRequestRef, _options: None = None) -> dict[str, Any]:
    data = await client.get(f"{ref.path}/activities")
    return json_result(_filter_activities(data, REVIEW_ACTIONS))


async def get_pull_request_comments(client: BitbucketClient, ref: PullRequestRef, _options: None = None) -> dict[str, Any]:
    data = await client.get(f"{ref.path}/activities")
    return json_result(_filter_activities(data, COMMENT_ACTIONS))


async def approve_pull_request(client: BitbucketClient, ref: PullRequestRef, _options: None = None) -> dict[str, Any]:
    data = await client.post(f"{ref.path}/approve")
    return json_result(data)


async def unapprove_pull_request(client: BitbucketClient, ref: PullRequestRef, _options: None = None) -> dict[str, Any]:
    data = await client.delete(f"{ref.path}/approve")
    return json_result(data)


async def get_repository_archive(
    client: BitbucketClient,
    ref: RepositoryRef,
    options: ArchiveOptions,
    *,
    max_bytes: int,
) -> dict[str, Any]:
    """Download a repository archive and return it base64-encoded."""
    params: dict[str, str] = {"format": options.format}
    if options.at is not None:
        params["at"] = options.at

    payload = await client.get_bytes(f"{ref.path}/archive", params=params)
    enforce_max_bytes(data=payload.content, max_bytes=max_bytes, what="Repository archive")

    return json_result(
        {
            "project": ref.project,
            "repository": ref.repository,
            "format": options.format,
            "at": options.at,
            "contentType": payload.content_type,
            "size": len(payload.content),
            "encoding": "base64",
            "content": base64.b64encode(payload.content).decode("ascii"),
        }
    )
