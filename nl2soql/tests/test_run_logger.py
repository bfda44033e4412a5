import os
import time

from nl2soql.pipeline.run_logger import RunLogger, format_timeline


def test_format_timeline_sections():
    timeline = [
        {"phase": "context", "objects": ["Account"], "grounding": [], "degraded": True},
        {"phase": "plan", "plan": {"summary": "Count accounts", "relevant_tables": ["Account"]}, "errors": []},
        {"phase": "draft", "attempt": 0, "query": "SELECT Industry, COUNT(Id) FROM Account", "parse_errors": []},
        {"phase": "repair", "pass": 1, "errors_before": 1, "errors_after": 0, "actions": ["Added Industry to GROUP BY"]},
        {"phase": "final", "status": "valid", "soql": "SELECT Industry, COUNT(Id) FROM Account GROUP BY Industry"},
    ]
    text = format_timeline("accounts per industry", timeline, 2)

    assert "Query: accounts per industry" in text
    assert "Vector signal unavailable" in text
    assert "Repair pass 1: 1 -> 0 error(s)" in text
    assert "Applied: Added Industry to GROUP BY" in text
    assert "Status: ✓ VALID" in text


def test_old_runs_are_pruned(tmp_path):
    stale_time = time.time() - 3600
    for idx in range(3):
        old = tmp_path / f"old-{idx}"
        old.mkdir()
        os.utime(old, (stale_time + idx, stale_time + idx))

    logger = RunLogger(base_dir=str(tmp_path), retain=2)
    logger.start("accounts", "SCHEMA:", {})
    logger.finalize("valid")

    remaining = sorted(p.name for p in tmp_path.iterdir())
    assert len(remaining) == 2
    assert logger.run_dir.name in remaining
    assert "old-2" in remaining


def test_writes_are_skipped_before_start(tmp_path):
    logger = RunLogger(base_dir=str(tmp_path))
    logger.log_usage({"total_tokens": 1})
    logger.finalize("failed")
    assert list(tmp_path.iterdir()) == []
