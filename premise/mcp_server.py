"""MCP server for premise.

Exposes a project's assumptions, concept graph, failure reports and retry
history to AI coding agents via the Model Context Protocol. Agents can pull
context before editing, report failures, and check a fix before trying it.

Usage:
    premise serve [--data-dir .premise] [--project NAME]

Configure in Claude Code (.mcp.json):
    {
      "mcpServers": {
        "premise": {
          "command": "premise",
          "args": ["serve"]
        }
      }
    }
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict

import mcp.server.stdio
import mcp.types as types
from mcp.server import Server

from premise.activity import log_tool_call
from premise.config import Config
from premise.core import ProjectCore
from premise.errors import PremiseError
from premise.models import (
    AssumptionKind,
    CodeLocation,
    DiffFingerprint,
    Evidence,
    FailureSignal,
)

server = Server("premise")

_core: ProjectCore | None = None


def configure(core: ProjectCore) -> None:
    global _core
    _core = core


def _get_core() -> ProjectCore:
    global _core
    if _core is None:
        _core = ProjectCore.open(Config.load())
    return _core


def _text(payload) -> list[types.TextContent]:
    if not isinstance(payload, str):
        payload = json.dumps(payload, indent=2, default=str)
    return [types.TextContent(type="text", text=payload)]


def _locations(values: list[str]) -> list[CodeLocation]:
    return [CodeLocation.parse(v) for v in values]


_LOCATION_LIST = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Code locations as 'path', 'path:LINE' or 'path:START-END'",
}


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="get_assumptions",
            description=(
                "List the recorded assumptions at a code location: preconditions, "
                "postconditions, invariants and dependencies the code relies on, with "
                "their validation status. Most recently validated first."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "location": {"type": "string", "description": "path, path:LINE or path:START-END"},
                },
                "required": ["location"],
            },
        ),
        types.Tool(
            name="get_concept_graph",
            description=(
                "Get the concepts (auth, caching, async flow, ...) detected in the project "
                "and the co-occurrence edges between them, optionally limited to a path prefix."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "scope": {"type": "string", "description": "Optional path prefix"},
                },
            },
        ),
        types.Tool(
            name="get_failure_report",
            description=(
                "Explain a recorded failure: its type, the assumptions most likely violated "
                "and why, the affected layer, prior fix attempts, and constraints that must "
                "keep holding."
            ),
            inputSchema={
                "type": "object",
                "properties": {"failure_id": {"type": "string"}},
                "required": ["failure_id"],
            },
        ),
        types.Tool(
            name="compose_context",
            description=(
                "IMPORTANT: Call this BEFORE changing code at a location. Returns the "
                "constraints, failed assumptions, known-bad fixes and related concepts for "
                "that location, trimmed to a token budget."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "location": {"type": "string"},
                    "token_budget": {"type": "integer", "description": "Default 1500"},
                },
                "required": ["location"],
            },
        ),
        types.Tool(
            name="check_retry",
            description=(
                "Check a proposed fix for a failure before applying it. Blocks fixes that "
                "touch the same places as an attempt that already failed, and suggests "
                "unresolved assumptions to work on instead."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "failure_id": {"type": "string"},
                    "locations": _LOCATION_LIST,
                    "concept_ids": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["failure_id", "locations"],
            },
        ),
        types.Tool(
            name="record_attempt",
            description="Record a fix attempt for a failure and, when known, whether it worked.",
            inputSchema={
                "type": "object",
                "properties": {
                    "failure_id": {"type": "string"},
                    "locations": _LOCATION_LIST,
                    "concept_ids": {"type": "array", "items": {"type": "string"}},
                    "outcome": {"type": "string", "enum": ["failed", "succeeded", "unknown"]},
                    "note": {"type": "string"},
                },
                "required": ["failure_id", "locations"],
            },
        ),
        types.Tool(
            name="report_failure",
            description=(
                "Report an observed failure (error type, message and where it happened). "
                "Returns the classified failure record; a repeat of a known failure "
                "increments its recurrence count."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "error_type": {"type": "string"},
                    "message": {"type": "string"},
                    "locations": _LOCATION_LIST,
                },
                "required": ["error_type", "message", "locations"],
            },
        ),
        types.Tool(
            name="validate_assumption",
            description=(
                "Mark an assumption valid or failed. A failed validation must name the "
                "failure that disproved it."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "assumption_id": {"type": "string"},
                    "outcome": {"type": "string", "enum": ["valid", "failed"]},
                    "failure_id": {"type": "string"},
                    "note": {"type": "string"},
                },
                "required": ["assumption_id", "outcome"],
            },
        ),
        types.Tool(
            name="record_assumption",
            description="Record an assumption the code at a location relies on.",
            inputSchema={
                "type": "object",
                "properties": {
                    "description": {"type": "string"},
                    "kind": {"type": "string", "enum": [k.value for k in AssumptionKind]},
                    "location": {"type": "string"},
                    "concept_ids": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["description", "kind", "location"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[types.TextContent]:
    start = time.time()
    result: list[types.TextContent] = []
    error: str | None = None
    try:
        result = await _dispatch_tool(name, arguments)
        return result
    except PremiseError as e:
        error = str(e)
        result = [types.TextContent(type="text", text=f"Error: {e}")]
        return result
    except (KeyError, ValueError) as e:
        error = f"Invalid arguments: {e}"
        result = [types.TextContent(type="text", text=f"Error: {error}")]
        return result
    except Exception as e:
        error = str(e)
        result = [types.TextContent(type="text", text=f"Error: {e}")]
        return result
    finally:
        duration_ms = int((time.time() - start) * 1000)
        result_text = result[0].text if result else ""
        project = _core.project_id if _core is not None else None
        log_tool_call(name, arguments, result_text, error, duration_ms, project=project)


async def _dispatch_tool(name: str, arguments: dict) -> list[types.TextContent]:
    """Route a tool call to the appropriate handler."""
    if name == "get_assumptions":
        return _handle_get_assumptions(arguments["location"])
    elif name == "get_concept_graph":
        return _handle_concept_graph(arguments.get("scope"))
    elif name == "get_failure_report":
        return await _handle_failure_report(arguments["failure_id"])
    elif name == "compose_context":
        return await _handle_compose(arguments["location"], int(arguments.get("token_budget", 1500)))
    elif name == "check_retry":
        return await _handle_check_retry(
            arguments["failure_id"], arguments["locations"], arguments.get("concept_ids", [])
        )
    elif name == "record_attempt":
        return await _handle_record_attempt(
            arguments["failure_id"],
            arguments["locations"],
            arguments.get("concept_ids", []),
            arguments.get("outcome", "unknown"),
            arguments.get("note", ""),
        )
    elif name == "report_failure":
        return await _handle_report_failure(
            arguments["error_type"], arguments["message"], arguments["locations"]
        )
    elif name == "validate_assumption":
        return await _handle_validate(
            arguments["assumption_id"],
            arguments["outcome"],
            arguments.get("failure_id"),
            arguments.get("note", ""),
        )
    elif name == "record_assumption":
        return await _handle_record_assumption(
            arguments["description"],
            arguments["kind"],
            arguments["location"],
            arguments.get("concept_ids", []),
        )
    else:
        return [types.TextContent(type="text", text=f"Unknown tool: {name}")]


def _assumption_view(a) -> dict:
    return {
        "id": a.id,
        "description": a.description,
        "kind": a.kind.value,
        "location": a.location.key,
        "status": a.status.value,
        "suspected": a.suspected,
        "orphaned": a.orphaned,
        "violations": len(a.violations),
        "last_validated_at": a.last_validated_at,
    }


def _handle_get_assumptions(location: str) -> list[types.TextContent]:
    core = _get_core()
    assumptions = core.get_assumptions(CodeLocation.parse(location))
    if not assumptions:
        return _text(f"No assumptions recorded at {location}.")
    return _text({
        "location": location,
        "count": len(assumptions),
        "assumptions": [_assumption_view(a) for a in assumptions],
    })


def _handle_concept_graph(scope: str | None) -> list[types.TextContent]:
    return _text(_get_core().get_concept_graph(scope))


async def _handle_failure_report(failure_id: str) -> list[types.TextContent]:
    report = await _get_core().explain_failure(failure_id)
    return _text(report.to_json())


async def _handle_compose(location: str, token_budget: int) -> list[types.TextContent]:
    package = await _get_core().compose(CodeLocation.parse(location), token_budget)
    if package.empty:
        return _text(f"No recorded knowledge relevant to {location}.")
    return _text(package.to_json())


async def _handle_check_retry(
    failure_id: str, locations: list[str], concept_ids: list[str]
) -> list[types.TextContent]:
    proposed = DiffFingerprint(tuple(_locations(locations)), tuple(concept_ids))
    check = await asyncio.to_thread(_get_core().check_before_attempt, failure_id, proposed)
    return _text(check.to_dict())


async def _handle_record_attempt(
    failure_id: str, locations: list[str], concept_ids: list[str], outcome: str, note: str
) -> list[types.TextContent]:
    fingerprint = DiffFingerprint(tuple(_locations(locations)), tuple(concept_ids))
    attempt = await asyncio.to_thread(_get_core().record_attempt, failure_id, fingerprint, outcome, note)
    return _text({
        "attempt_id": attempt.id,
        "failure_id": attempt.failure_id,
        "fingerprint": attempt.fingerprint.digest,
        "outcome": attempt.outcome.value,
    })


async def _handle_report_failure(
    error_type: str, message: str, locations: list[str]
) -> list[types.TextContent]:
    signal = FailureSignal(error_type=error_type, message=message, locations=_locations(locations))
    record = await _get_core().report_failure(signal)
    return _text({
        "failure_id": record.id,
        "failure_type": record.failure_type.value,
        "state": record.state.value,
        "recurrence_count": record.recurrence_count,
        "violated": [asdict(r) for r in record.violated],
    })


async def _handle_validate(
    assumption_id: str, outcome: str, failure_id: str | None, note: str
) -> list[types.TextContent]:
    evidence = Evidence(failure_id=failure_id, note=note)
    assumption = await asyncio.to_thread(_get_core().lifecycle.validate, assumption_id, outcome, evidence)
    return _text(_assumption_view(assumption))


async def _handle_record_assumption(
    description: str, kind: str, location: str, concept_ids: list[str]
) -> list[types.TextContent]:
    assumption = await asyncio.to_thread(
        _get_core().lifecycle.record_assumption,
        description,
        AssumptionKind(kind),
        CodeLocation.parse(location),
        related_concepts=concept_ids,
    )
    return _text(_assumption_view(assumption))


async def main() -> None:
    core = _get_core()
    try:
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await core.close()


if __name__ == "__main__":
    asyncio.run(main())
