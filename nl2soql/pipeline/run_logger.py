from __future__ import annotations

import json
import logging
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DEFAULT_LOG_DIR

logger = logging.getLogger(__name__)

DEFAULT_LOG_RETAIN = 20
SCHEMA_PREVIEW_LIMIT = 4000


def _utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _status_icon(ok: bool) -> str:
    return "✓" if ok else "✗"


def _clip(text: str, width: int = 80) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def format_timeline(nl_query: str, timeline: List[Dict[str, Any]], max_regenerations: int) -> str:
    """Render a compilation timeline into a human-readable string for log files."""
    lines: List[str] = ["=" * 80, "COMPILATION SUMMARY", "=" * 80]
    lines.append(f"Query: {nl_query}")
    lines.append(f"Max regenerations: {max_regenerations}")

    for entry in timeline:
        phase = entry.get("phase")
        if phase == "context":
            lines.append("")
            lines.append("┌─ CONTEXT")
            lines.append(f"│  Objects: {', '.join(entry.get('objects', []))}")
            grounded = entry.get("grounding", [])
            if grounded:
                lines.append(f"│  Grounded: {', '.join(grounded[:5])}{'...' if len(grounded) > 5 else ''}")
            if entry.get("degraded"):
                lines.append("│  Vector signal unavailable (lexical + graph only)")
            lines.append("└─")
        elif phase == "plan":
            lines.append("")
            lines.append("┌─ PLAN")
            plan = entry.get("plan") or {}
            lines.append(f"│  {_clip(str(plan.get('summary', '')))}")
            lines.append(f"│  Tables: {', '.join(plan.get('relevant_tables', []))}")
            for err in entry.get("errors", [])[:2]:
                lines.append(f"│    - {err}")
            lines.append(f"└─ {_status_icon(bool(entry.get('plan')))}")
        elif phase == "draft":
            lines.append("")
            lines.append(f"┌─ DRAFT {entry.get('attempt', 0)}")
            for ql in str(entry.get("query", "")).strip().split("\n"):
                lines.append(f"│    {ql}")
            parse_errors = entry.get("parse_errors", [])
            for err in parse_errors[:2]:
                lines.append(f"│    - Parse: {_clip(err, 60)}")
            lines.append(f"└─ {_status_icon(not parse_errors)} {'parsed' if not parse_errors else 'did not parse'}")
        elif phase == "repair":
            before, after = entry.get("errors_before", 0), entry.get("errors_after", 0)
            lines.append(f"│  Repair pass {entry.get('pass')}: {before} -> {after} error(s)")
            for action in entry.get("actions", [])[:3]:
                lines.append(f"│    - Applied: {_clip(action, 60)}")
            if entry.get("rolled_back"):
                lines.append("│    - Rolled back")
        elif phase == "limit":
            lines.append("│  Applied suggested LIMIT")
        elif phase == "regenerate":
            lines.append("")
            lines.append(f">>> REGENERATE ({entry.get('reason', '')})")
        elif phase == "final":
            status = str(entry.get("status", "unknown"))
            lines.append("")
            lines.append("┌─ FINAL RESULT")
            lines.append(f"│  Status: {_status_icon(status == 'valid')} {status.upper()}")
            if entry.get("soql"):
                lines.append(f"│  Query: {entry['soql']}")
            lines.append("└─")

    lines.append("")
    lines.append("=" * 80)
    return "\n".join(lines)


class RunLogger:
    """
    Per-compilation artifact writer.
    - Writes metadata, timeline, usage and summary files under one run directory.
    - Caps retained runs to avoid unbounded growth.
    """

    def __init__(self, base_dir: Optional[str] = None, retain: int = DEFAULT_LOG_RETAIN) -> None:
        self.base_dir = Path(base_dir or DEFAULT_LOG_DIR or (Path.cwd() / "nl2soql-logs"))
        self.retain = max(1, retain)
        self.run_dir: Optional[Path] = None

    def start(self, nl: str, schema_context: str, params: Dict[str, Any]) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d-%H%M%S")
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", nl.strip())[:36].strip("-") or "run"
        self.run_dir = self.base_dir / f"{stamp}-{slug}-{uuid.uuid4().hex[:6]}"
        self.run_dir.mkdir(parents=True, exist_ok=True)
        metadata = {
            "nl": nl,
            "params": params,
            "schema_preview": schema_context[:SCHEMA_PREVIEW_LIMIT],
            "started_at": _utc_timestamp(),
        }
        self._write_json(self.run_dir / "metadata.json", metadata)
        return self.run_dir

    def log_timeline(self, nl: str, timeline: List[Dict[str, Any]], max_regenerations: int) -> None:
        if not self.run_dir:
            return
        payload = {"nl": nl, "timeline": timeline, "logged_at": _utc_timestamp()}
        self._write_json(self.run_dir / "timeline.json", payload)
        text = format_timeline(nl, timeline, max_regenerations)
        self._write_text(self.run_dir / "timeline.txt", text)

    def log_usage(self, usage: Dict[str, Any]) -> None:
        if not self.run_dir:
            return
        self._write_json(self.run_dir / "usage.json", {"usage": usage, "logged_at": _utc_timestamp()})

    def finalize(self, status: str, extra: Optional[Dict[str, Any]] = None) -> None:
        if not self.run_dir:
            return
        summary = {"status": status, "finished_at": _utc_timestamp()}
        if extra:
            summary.update(extra)
        self._write_json(self.run_dir / "summary.json", summary)
        self._prune_old_runs()

    def _write_json(self, path: Path, payload: Dict[str, Any]) -> None:
        self._write_text(path, json.dumps(payload, indent=2, default=str))

    def _write_text(self, path: Path, text: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            # Artifact writing must never block compilation.
            logger.warning("could not write run artifact %s: %s", path, exc)

    def _prune_old_runs(self) -> None:
        try:
            candidates = [p for p in self.base_dir.iterdir() if p.is_dir()]
        except OSError:
            return
        candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for stale in candidates[self.retain :]:
            if self.run_dir and stale == self.run_dir:
                continue
            shutil.rmtree(stale, ignore_errors=True)


__all__ = ["RunLogger", "format_timeline", "DEFAULT_LOG_RETAIN"]
