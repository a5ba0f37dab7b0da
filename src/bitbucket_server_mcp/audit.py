"""Tool-call audit trail.

Every ``dispatch_tool`` call produces one JSON line on stderr and, when
``BITBUCKET_MCP_AUDIT_LOG_PATH`` is set, the same line appended to that file.
Events identify the Bitbucket target (project, repository, pull request) and the
outcome; other argument values such as comment text or credentials never appear.
"""

from __future__ import annotations

import json
import sys
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

Outcome = Literal["succeeded", "denied", "failed"]


def new_correlation_id() -> str:
    """Random id tying the audit line to the server log lines of one call."""
    return uuid.uuid4().hex


def elapsed_ms(start: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - start) * 1000)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    timestamp: str
    correlation_id: str
    tool: str
    outcome: Outcome
    project: str | None = None
    repository: str | None = None
    pull_request_id: int | None = None
    reason: str | None = None
    status_code: int | None = None
    duration_ms: int | None = None

    @property
    def target(self) -> str:
        """``PROJ/repo#7`` style label of what the call touched."""
        if self.project is None:
            return "<unknown>"
        label = self.project
        if self.repository is not None:
            label = f"{label}/{self.repository}"
        if self.pull_request_id is not None:
            label = f"{label}#{self.pull_request_id}"
        return label

    def to_json(self) -> str:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def build_event(
    *,
    correlation_id: str,
    tool: str,
    arguments: dict[str, Any],
    outcome: Outcome,
    reason: str | None = None,
    status_code: int | None = None,
    duration_ms: int | None = None,
) -> AuditEvent:
    """Build an event from raw tool arguments, keeping only the target fields."""
    pr_id = arguments.get("prId")
    return AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        correlation_id=correlation_id,
        tool=tool,
        outcome=outcome,
        project=_str_or_none(arguments.get("project")),
        repository=_str_or_none(arguments.get("repository")),
        pull_request_id=pr_id if isinstance(pr_id, int) and not isinstance(pr_id, bool) else None,
        reason=reason,
        status_code=status_code,
        duration_ms=duration_ms,
    )


def rotate(path: Path, *, max_bytes: int, max_backups: int) -> None:
    """Shift ``path`` to ``path.1`` (and older copies up) once it reaches ``max_bytes``.

    With no backups the file is truncated instead.
    """
    if not path.exists() or path.stat().st_size < max_bytes:
        return
    if max_backups <= 0:
        path.write_text("", encoding="utf-8")
        return
    Path(f"{path}.{max_backups}").unlink(missing_ok=True)
    for i in range(max_backups - 1, 0, -1):
        older = Path(f"{path}.{i}")
        if older.exists():
            older.replace(Path(f"{path}.{i + 1}"))
    path.replace(Path(f"{path}.1"))


class AuditLogger:
    """JSONL audit sink: stderr always, plus an optional size-rotated file."""

    def __init__(
        self,
        *,
        sink_path: Path | None,
        max_bytes: int = 5 * 1024 * 1024,
        max_backups: int = 2,
    ) -> None:
        self._sink_path = sink_path
        self._max_bytes = max_bytes
        self._max_backups = max_backups

    def write_event(self, event: AuditEvent) -> None:
        line = event.to_json()
        print(line, file=sys.stderr)
        if self._sink_path is None:
            return
        # A broken audit file must not fail the tool call; stderr already has the line.
        try:
            self._sink_path.parent.mkdir(parents=True, exist_ok=True)
            rotate(self._sink_path, max_bytes=self._max_bytes, max_backups=self._max_backups)
            with self._sink_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:  # pragma: no cover
            return
