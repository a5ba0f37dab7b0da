"""Dispatcher behavior: project defaulting, validation, routing and error envelopes."""

from __future__ import annotations

import json

import pytest
from bitbucket_server_mcp import tools
from bitbucket_server_mcp.errors import bitbucket_api_error
from conftest import make_runtime

PR_PATH = "/projects/PROJ/repos/repo/pull-requests/7"


@pytest.mark.asyncio
async def test_create_pull_request_uses_default_reviewers() -> None:
    runtime = make_runtime(
        {("POST", "/projects/PROJ/repos/repo/pull-requests"): {"id": 1}},
        default_reviewers=("alice", "bob"),
    )

    out = await tools.dispatch_tool(
        runtime,
        "create_pull_request",
        {"repository": "repo", "title": "t", "sourceBranch": "feature", "targetBranch": "main"},
    )

    assert "error" not in out
    body = runtime.client.calls[0]["body"]
    assert body["reviewers"] == [{"user": {"name": "alice"}}, {"user": {"name": "bob"}}]


@pytest.mark.asyncio
async def test_create_pull_request_empty_reviewers_fall_back_to_defaults() -> None:
    runtime = make_runtime(
        {("POST", "/projects/PROJ/repos/repo/pull-requests"): {"id": 1}},
        default_reviewers=("alice",),
    )

    _ = await tools.dispatch_tool(
        runtime,
        "create_pull_request",
        {"repository": "repo", "title": "t", "sourceBranch": "f", "targetBranch": "main", "reviewers": []},
    )

    assert runtime.client.calls[0]["body"]["reviewers"] == [{"user": {"name": "alice"}}]


@pytest.mark.asyncio
async def test_create_pull_request_explicit_reviewers_win() -> None:
    runtime = make_runtime(
        {("POST", "/projects/PROJ/repos/repo/pull-requests"): {"id": 1}},
        default_reviewers=("alice",),
    )

    _ = await tools.dispatch_tool(
        runtime,
        "create_pull_request",
        {"repository": "repo", "title": "t", "sourceBranch": "f", "targetBranch": "main", "reviewers": ["carol"]},
    )

    assert runtime.client.calls[0]["body"]["reviewers"] == [{"user": {"name": "carol"}}]


@pytest.mark.asyncio
async def test_create_pull_request_rejects_malformed_input() -> None:
    runtime = make_runtime()

    out = await tools.dispatch_tool(
        runtime,
        "create_pull_request",
        {"repository": "repo", "title": 5, "sourceBranch": "f", "targetBranch": "main"},
    )

    assert out["error"]["code"] == "InvalidParams"
    assert runtime.client.calls == []


@pytest.mark.parametrize(
    "name,arguments",
    [
        ("list_repositories", {}),
        ("get_pull_request", {"repository": "repo", "prId": 1}),
        ("get_repository_archive", {"repository": "repo"}),
        ("get_pull_request_comments", {"repository": "repo", "prId": 1}),
    ],
)
@pytest.mark.asyncio
async def test_missing_project_without_default_is_invalid_params(name: str, arguments: dict) -> None:
    runtime = make_runtime(default_project=None)

    out = await tools.dispatch_tool(runtime, name, arguments)

    assert out["isError"] is True
    assert out["error"]["code"] == "InvalidParams"
    assert "BITBUCKET_DEFAULT_PROJECT" in out["error"]["message"]
    assert out["content"][0]["type"] == "error"
    assert runtime.client.calls == []


@pytest.mark.asyncio
async def test_default_project_applies_to_every_tool() -> None:
    runtime = make_runtime({("GET", "/projects/PROJ/repos"): {"values": []}})

    out = await tools.dispatch_tool(runtime, "list_repositories", {})

    assert "error" not in out
    assert runtime.client.calls[0]["path"] == "/projects/PROJ/repos"


@pytest.mark.asyncio
async def test_explicit_project_overrides_default() -> None:
    runtime = make_runtime({("GET", "/projects/OTHER/repos/repo"): {"slug": "repo"}})

    _ = await tools.dispatch_tool(runtime, "get_repository_details", {"project": "OTHER", "repository": "repo"})

    assert runtime.client.calls[0]["path"] == "/projects/OTHER/repos/repo"


@pytest.mark.asyncio
async def test_unknown_tool_is_method_not_found() -> None:
    runtime = make_runtime(default_project=None)

    out = await tools.dispatch_tool(runtime, "drop_database", {"repository": "repo"})

    assert out["error"]["code"] == "MethodNotFound"
    assert "Unknown tool: drop_database" in out["error"]["message"]
    assert runtime.client.calls == []


@pytest.mark.asyncio
async def test_get_diff_output_is_raw_body() -> None:
    raw = "diff --git a/a b/a\n-\"quoted\"\n+\ttabbed\n"
    runtime = make_runtime({("GET", f"{PR_PATH}/diff"): raw})

    out = await tools.dispatch_tool(runtime, "get_diff", {"repository": "repo", "prId": 7})

    assert out == {"content": [{"type": "text", "text": raw}]}
    assert runtime.client.calls[0]["params"] == {"contextLines": 10}


@pytest.mark.asyncio
async def test_get_diff_honors_zero_context_lines() -> None:
    runtime = make_runtime({("GET", f"{PR_PATH}/diff"): ""})

    _ = await tools.dispatch_tool(runtime, "get_diff", {"repository": "repo", "prId": 7, "contextLines": 0})

    assert runtime.client.calls[0]["params"] == {"contextLines": 0}


@pytest.mark.asyncio
async def test_get_reviews_via_dispatch() -> None:
    activities = {
        "values": [
            {"action": "COMMENTED"},
            {"action": "APPROVED"},
            {"action": "REVIEWED"},
            {"action": "OPENED"},
        ]
    }
    runtime = make_runtime({("GET", f"{PR_PATH}/activities"): activities})

    out = await tools.dispatch_tool(runtime, "get_reviews", {"repository": "repo", "prId": 7})

    assert json.loads(out["content"][0]["text"]) == [{"action": "APPROVED"}, {"action": "REVIEWED"}]


@pytest.mark.asyncio
async def test_inline_comment_with_only_start_column_has_no_columns() -> None:
    runtime = make_runtime({("POST", f"{PR_PATH}/comments"): {"id": 1}})

    _ = await tools.dispatch_tool(
        runtime,
        "add_inline_comment",
        {"repository": "repo", "prId": 7, "text": "t", "filePath": "a.py", "line": 4, "startColumn": 5},
    )

    anchor = runtime.client.calls[0]["body"]["anchor"]
    assert "startColumn" not in anchor
    assert "endColumn" not in anchor


@pytest.mark.asyncio
async def test_suggest_code_change_builds_suggestion_comment() -> None:
    runtime = make_runtime({("POST", f"{PR_PATH}/comments"): {"id": 1}})

    _ = await tools.dispatch_tool(
        runtime,
        "suggest_code_change",
        {
            "repository": "repo",
            "prId": 7,
            "filePath": "a.js",
            "line": 2,
            "suggestedCode": "foo();",
            "message": "Use foo",
        },
    )

    text = runtime.client.calls[0]["body"]["text"]
    assert text.startswith("Use foo\n")
    assert "```diff\n+ foo();\n```" in text
    assert "```\nfoo();\n```" in text
    assert not any(line.startswith("- ") for line in text.split("\n"))


@pytest.mark.asyncio
async def test_delete_and_decline_issue_identical_requests() -> None:
    runtime = make_runtime({("POST", f"{PR_PATH}/decline"): {"state": "DECLINED"}})
    args = {"repository": "repo", "prId": 7, "message": "stale"}

    declined = await tools.dispatch_tool(runtime, "decline_pull_request", dict(args))
    deleted = await tools.dispatch_tool(runtime, "delete_pull_request", dict(args))

    first, second = runtime.client.calls
    assert first == second
    assert first["body"] == {"version": -1, "message": "stale"}
    assert declined == deleted


@pytest.mark.asyncio
async def test_merge_rejects_unknown_strategy() -> None:
    runtime = make_runtime()

    out = await tools.dispatch_tool(
        runtime, "merge_pull_request", {"repository": "repo", "prId": 7, "strategy": "rebase"}
    )

    assert out["error"]["code"] == "InvalidParams"
    assert runtime.client.calls == []


@pytest.mark.asyncio
async def test_bitbucket_errors_become_error_envelope_with_status() -> None:
    runtime = make_runtime(
        {("GET", PR_PATH): bitbucket_api_error("Pull request 7 does not exist", status_code=404)}
    )

    out = await tools.dispatch_tool(runtime, "get_pull_request", {"repository": "repo", "prId": 7})

    assert out["isError"] is True
    assert out["error"]["code"] == "BitbucketAPI"
    assert out["error"]["message"] == "Bitbucket API error: Pull request 7 does not exist"
    assert out["error"]["details"] == {"status_code": 404}
    assert len(runtime.client.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_errors_propagate_unchanged() -> None:
    boom = RuntimeError("boom")
    runtime = make_runtime({("GET", PR_PATH): boom})

    with pytest.raises(RuntimeError) as exc:
        _ = await tools.dispatch_tool(runtime, "get_pull_request", {"repository": "repo", "prId": 7})

    assert exc.value is boom
    assert runtime.audit.events[-1].outcome == "failed"


@pytest.mark.asyncio
async def test_every_call_writes_one_audit_event() -> None:
    runtime = make_runtime({("POST", f"{PR_PATH}/approve"): {"approved": True}})

    _ = await tools.dispatch_tool(runtime, "approve_pull_request", {"repository": "repo", "prId": 7})
    _ = await tools.dispatch_tool(runtime, "approve_pull_request", {"repository": "repo"})

    events = runtime.audit.events
    assert [e.outcome for e in events] == ["succeeded", "denied"]
    assert (events[0].project, events[0].repository, events[0].pull_request_id) == ("PROJ", "repo", 7)
    assert events[1].target == "PROJ/repo"
    assert events[0].tool == "approve_pull_request"


def test_resolve_project_returns_project_key() -> None:
    config = make_runtime().config

    assert tools.resolve_project(config, {}) == "PROJ"
    assert tools.resolve_project(config, {"project": ""}) == "PROJ"
    assert tools.resolve_project(config, {"project": "OTHER"}) == "OTHER"
