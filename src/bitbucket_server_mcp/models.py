"""Typed tool inputs.

Raw MCP argument maps are converted into these structures once, at the dispatch
boundary; operation handlers only ever see validated values.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

MergeStrategy = Literal["merge-commit", "squash", "fast-forward"]
LineType = Literal["CONTEXT", "ADDED", "REMOVED"]
ArchiveFormat = Literal["zip", "tar", "tar.gz", "tgz"]

MERGE_STRATEGIES: tuple[str, ...] = ("merge-commit", "squash", "fast-forward")
LINE_TYPES: tuple[str, ...] = ("CONTEXT", "ADDED", "REMOVED")
ARCHIVE_FORMATS: tuple[str, ...] = ("zip", "tar", "tar.gz", "tgz")
PULL_REQUEST_STATES: tuple[str, ...] = ("OPEN", "DECLINED", "MERGED", "ALL")


@dataclass(frozen=True, slots=True)
class ProjectRef:
    project: str


@dataclass(frozen=True, slots=True)
class RepositoryRef:
    project: str
    repository: str

    @property
    def path(self) -> str:
        return f"/projects/{self.project}/repos/{self.repository}"


@dataclass(frozen=True, slots=True)
class PullRequestRef:
    project: str
    repository: str
    pr_id: int

    @property
    def path(self) -> str:
        return f"/projects/{self.project}/repos/{self.repository}/pull-requests/{self.pr_id}"


@dataclass(frozen=True, slots=True)
class PageOptions:
    """Paging (and, for pull requests, state) query parameters."""

    limit: int | None = None
    start: int | None = None
    state: str | None = None

    def to_params(self) -> dict[str, int | str] | None:
        params: dict[str, int | str] = {}
        if self.limit is not None:
            params["limit"] = self.limit
        if self.start is not None:
            params["start"] = self.start
        if self.state is not None:
            params["state"] = self.state
        return params or None


@dataclass(frozen=True, slots=True)
class PullRequestCreateInput:
    project: str
    repository: str
    title: str
    source_branch: str
    target_branch: str
    description: str | None = None
    reviewers: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MergeOptions:
    message: str | None = None
    strategy: MergeStrategy = "merge-commit"


@dataclass(frozen=True, slots=True)
class CommentInput:
    text: str
    parent_id: int | None = None


@dataclass(frozen=True, slots=True)
class InlineCommentInput:
    """Inline (anchored) comment, optionally rendered as a code suggestion.

    ``start_column``/``end_column`` are sent only when both are set.
    """

    file_path: str
    line: int
    text: str | None = None
    line_type: LineType = "CONTEXT"
    start_column: int | None = None
    end_column: int | None = None
    parent_id: int | None = None
    suggested_code: str | None = None
    original_code: str | None = None


@dataclass(frozen=True, slots=True)
class DiffOptions:
    context_lines: int = 10


@dataclass(frozen=True, slots=True)
class ArchiveOptions:
    format: ArchiveFormat = "zip"
    at: str | None = None
