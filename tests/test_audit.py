"""Audit trail tests: event content, file sink and rotation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from bitbucket_server_mcp.audit import AuditLogger, build_event, new_correlation_id


def _event(cid: str = "c", **kwargs):
    return build_event(
        correlation_id=cid,
        tool="get_pull_request",
        arguments=kwargs.pop("arguments", {"project": "PROJ", "repository": "repo"}),
        outcome=kwargs.pop("outcome", "succeeded"),
        **kwargs,
    )


def test_new_correlation_id_is_hex() -> None:
    cid = new_correlation_id()
    assert len(cid) == 32
    int(cid, 16)


def test_event_keeps_only_target_arguments() -> None:
    event = _event(arguments={"project": "PROJ", "repository": "repo", "prId": 7, "text": "secret review"})

    assert event.target == "PROJ/repo#7"
    assert "secret review" not in event.to_json()


def test_event_target_without_project() -> None:
    assert _event(arguments={}).target == "<unknown>"
    assert _event(arguments={"project": "PROJ", "prId": True}).pull_request_id is None


def test_audit_logger_writes_jsonl_to_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sink = tmp_path / "audit.jsonl"

    AuditLogger(sink_path=sink).write_event(
        _event(
            "abcd" * 8,
            arguments={"project": "PROJ", "repository": "repo", "prId": 3},
            outcome="failed",
            reason="Bitbucket API error: Not Found",
            status_code=404,
            duration_ms=12,
        )
    )

    lines = sink.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["correlation_id"] == "abcd" * 8
    assert payload["tool"] == "get_pull_request"
    assert payload["project"] == "PROJ"
    assert payload["repository"] == "repo"
    assert payload["pull_request_id"] == 3
    assert payload["outcome"] == "failed"
    assert payload["status_code"] == 404
    assert payload["duration_ms"] == 12
    assert payload["timestamp"].endswith("Z")

    assert capsys.readouterr().err.strip() == lines[0]


def test_audit_logger_omits_empty_fields(capsys: pytest.CaptureFixture[str]) -> None:
    AuditLogger(sink_path=None).write_event(_event())

    payload = json.loads(capsys.readouterr().err)
    assert "reason" not in payload
    assert "status_code" not in payload
    assert "pull_request_id" not in payload


def test_audit_logger_rotates_when_exceeding_max_bytes(tmp_path: Path) -> None:
    sink = tmp_path / "audit.jsonl"
    logger = AuditLogger(sink_path=sink, max_bytes=1, max_backups=2)

    for cid in ("c1", "c2", "c3"):
        logger.write_event(_event(cid))

    assert json.loads(sink.read_text(encoding="utf-8"))["correlation_id"] == "c3"
    assert json.loads((tmp_path / "audit.jsonl.1").read_text(encoding="utf-8"))["correlation_id"] == "c2"
    assert json.loads((tmp_path / "audit.jsonl.2").read_text(encoding="utf-8"))["correlation_id"] == "c1"


def test_audit_logger_truncates_without_backups(tmp_path: Path) -> None:
    sink = tmp_path / "audit.jsonl"
    logger = AuditLogger(sink_path=sink, max_bytes=1, max_backups=0)

    for cid in ("c1", "c2"):
        logger.write_event(_event(cid))

    lines = sink.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert not (tmp_path / "audit.jsonl.1").exists()
