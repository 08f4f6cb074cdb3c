"""Activity logging for MCP tool calls.

Every MCP tool invocation is appended to a JSONL file so developers can see
which knowledge their AI agent pulled from premise and what it recorded:
failures it reported, attempts it logged, assumptions it validated.

The log file lives beside the data directory unless PREMISE_LOG_PATH says
otherwise.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path

from premise.config import DEFAULT_DATA_DIR

logger = logging.getLogger(__name__)

RESULT_PREVIEW_LIMIT = 500
DEFAULT_LOG_NAME = "premise-activity.jsonl"

# Tools that change the knowledge base rather than just reading it
WRITE_TOOLS = frozenset({"report_failure", "record_attempt", "validate_assumption", "record_assumption"})


def resolve_log_path() -> Path:
    env_path = os.getenv("PREMISE_LOG_PATH")
    if env_path:
        return Path(env_path)
    data_dir = Path(os.getenv("PREMISE_DATA_DIR", str(DEFAULT_DATA_DIR)))
    return data_dir.parent / DEFAULT_LOG_NAME


def log_tool_call(
    tool_name: str,
    arguments: dict,
    result_text: str,
    error: str | None,
    duration_ms: int,
    project: str | None = None,
    log_path: Path | None = None,
) -> None:
    """Append a tool call entry to the activity log. Never raises."""
    entry = {
        "timestamp": datetime.now().isoformat(),
        "project": project,
        "tool_name": tool_name,
        "writes": tool_name in WRITE_TOOLS,
        "arguments": arguments,
        "result_preview": result_text[:RESULT_PREVIEW_LIMIT] if result_text else "",
        "error": error,
        "duration_ms": duration_ms,
    }
    try:
        path = log_path or resolve_log_path()
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        logger.debug(f"Could not write activity log: {e}")


def read_activity_log(
    limit: int = 20,
    tool_name: str | None = None,
    project: str | None = None,
    log_path: Path | None = None,
) -> list[dict]:
    """Read recent activity log entries, most recent first."""
    path = log_path or resolve_log_path()
    if not path.exists():
        return []

    entries: list[dict] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if tool_name and entry.get("tool_name") != tool_name:
            continue
        if project and entry.get("project") != project:
            continue
        entries.append(entry)

    entries.reverse()
    return entries[:limit]


def summarize_activity(entries: list[dict]) -> dict[str, dict]:
    """Per-tool call count, error count and mean duration."""
    summary: dict[str, dict] = {}
    for entry in entries:
        tool = entry.get("tool_name", "unknown")
        row = summary.setdefault(tool, {"calls": 0, "errors": 0, "total_ms": 0})
        row["calls"] += 1
        if entry.get("error"):
            row["errors"] += 1
        row["total_ms"] += int(entry.get("duration_ms") or 0)
    return {
        tool: {
            "calls": row["calls"],
            "errors": row["errors"],
            "avg_ms": round(row["total_ms"] / row["calls"]),
        }
        for tool, row in sorted(summary.items())
    }
