"""CLI entry point for premise."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer
from rich import print as rprint
from rich.logging import RichHandler

from premise.activity import read_activity_log, summarize_activity
from premise.config import Config
from premise.core import ProjectCore
from premise.errors import PremiseError
from premise.models import CodeLocation
from premise.storage import snapshot

app = typer.Typer(help="Keep track of the assumptions your code relies on, for you and your AI agent.")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _load_config(data_dir: str | None, project: str | None) -> Config:
    config = Config.load()
    if data_dir:
        config.data_dir = Path(data_dir)
    if project:
        config.project_id = project
    for issue in config.validate():
        rprint(f"[red]Config error: {issue}[/red]")
        raise typer.Exit(1)
    return config


def _open_core(data_dir: str | None, project: str | None) -> ProjectCore:
    config = _load_config(data_dir, project)
    try:
        return ProjectCore.open(config)
    except PremiseError as e:
        rprint(f"[red]Could not open project {config.project_id}: {e}[/red]")
        raise typer.Exit(1)


def _write_env(project_dir: Path, project: str, anthropic_key: str) -> None:
    """Write or update .env file with premise settings."""
    env_path = project_dir / ".env"
    lines: list[str] = [f"PREMISE_PROJECT={project}"]
    if anthropic_key:
        lines.append(f"ANTHROPIC_API_KEY={anthropic_key}")

    our_keys = {"PREMISE_PROJECT", "ANTHROPIC_API_KEY"}
    if env_path.exists():
        for line in env_path.read_text().splitlines():
            key = line.split("=")[0].strip()
            if key and key not in our_keys:
                lines.append(line)

    env_path.write_text("\n".join(lines) + "\n")
    rprint(f"Settings saved to {env_path}")


def _write_mcp_config(project_dir: Path, project: str) -> None:
    """Create .mcp.json for per-project MCP server configuration."""
    import shutil

    mcp_config_path = project_dir / ".mcp.json"

    premise_bin = shutil.which("premise")
    if premise_bin:
        command, args = premise_bin, ["serve"]
    else:
        command, args = "python", ["-m", "premise.mcp_server"]

    config = {
        "mcpServers": {
            "premise": {
                "type": "stdio",
                "command": command,
                "args": args,
                "env": {
                    "PREMISE_PROJECT": project,
                    "PREMISE_DATA_DIR": str(project_dir / ".premise"),
                },
            }
        }
    }

    mcp_config_path.write_text(json.dumps(config, indent=2) + "\n")
    rprint(f"MCP config written to {mcp_config_path}")


def _update_gitignore(project_dir: Path) -> None:
    """Ensure .gitignore excludes local-only premise files.

    The knowledge snapshot itself stays tracked so teammates can merge it.
    """
    gitignore_path = project_dir / ".gitignore"
    entries_to_add = ["premise-activity.jsonl", ".premise/*.staging", ".premise/*.corrupt-*", ".env"]

    existing_lines: set[str] = set()
    if gitignore_path.exists():
        existing_lines = set(gitignore_path.read_text().splitlines())

    new_entries = [e for e in entries_to_add if e not in existing_lines]
    if new_entries:
        with open(gitignore_path, "a") as f:
            if existing_lines and not gitignore_path.read_text().endswith("\n"):
                f.write("\n")
            f.write("\n# premise\n")
            for entry in new_entries:
                f.write(f"{entry}\n")
        rprint(f"Added {', '.join(new_entries)} to .gitignore")


@app.command()
def init(
    project: str = typer.Option(None, help="Project id (default: directory name)"),
    anthropic_key: str = typer.Option(
        "", "--anthropic-key",
        help="Anthropic API key (optional, enables extraction and explanations)",
    ),
) -> None:
    """Initialize premise in a project directory.

    Writes .env, creates .mcp.json for Claude Code/Cursor, and adds local
    files to .gitignore. Run in your project root.
    """
    project_dir = Path.cwd()
    project = project or project_dir.name

    _write_env(project_dir, project, anthropic_key)
    _write_mcp_config(project_dir, project)
    _update_gitignore(project_dir)
    (project_dir / ".premise").mkdir(exist_ok=True)

    rprint(f"\n[green bold]premise initialized for {project}[/green bold]")
    rprint("\nNext steps:")
    rprint("  1. Restart your agent so it picks up the MCP server")
    rprint("  2. Commit .premise/ so teammates share the knowledge snapshot")


@app.command()
def serve(
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """Start the MCP server (called by Claude Code / Cursor automatically)."""
    import asyncio

    from premise import mcp_server

    mcp_server.configure(_open_core(data_dir, project))
    asyncio.run(mcp_server.main())


@app.command()
def stats(
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """Show what premise knows about the project."""
    core = _open_core(data_dir, project)
    s = core.stats()
    rprint(f"[bold]premise statistics for {s['project']}:[/bold]")
    rprint(f"  Version:        {s['version']}")
    rprint(f"  Last updated:   {s['updated_at'] or 'never'}")
    for kind, count in s["counts"].items():
        rprint(f"  {kind + 's:':<15} {count}")
    rprint(f"  Open failures:  {s['open_failures']}")
    if s["in_memory_only"]:
        rprint("[yellow]  Persistence unavailable: running in memory only[/yellow]")
    if not s["provider"]:
        rprint("[dim]  No ANTHROPIC_API_KEY: provider features disabled[/dim]")


@app.command()
def assumptions(
    location: str = typer.Argument(help="path, path:LINE or path:START-END"),
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """List the assumptions recorded at a code location."""
    core = _open_core(data_dir, project)
    found = core.get_assumptions(CodeLocation.parse(location))
    if not found:
        rprint(f"No assumptions recorded at {location}.")
        return
    colors = {"valid": "green", "failed": "red", "untested": "yellow"}
    for a in found:
        color = colors[a.status.value]
        flags = []
        if a.suspected:
            flags.append("suspected")
        if a.orphaned:
            flags.append("orphaned")
        suffix = f" [dim]({', '.join(flags)})[/dim]" if flags else ""
        rprint(f"  [{color}]{a.status.value:<8}[/{color}] {a.kind.value:<13} {a.description}{suffix}")
        rprint(f"           [dim]{a.id} @ {a.location}[/dim]")


@app.command()
def graph(
    scope: str = typer.Option(None, help="Only concepts under this path prefix"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """Show detected concepts and their relationships."""
    core = _open_core(data_dir, project)
    view = core.get_concept_graph(scope)
    if format == "json":
        print(json.dumps(view, indent=2))
        return
    if not view["concepts"]:
        rprint("No concepts detected yet.")
        return
    for c in view["concepts"]:
        stale = " [dim](stale)[/dim]" if c["stale"] else ""
        rprint(f"  [bold]{c['id']}[/bold] {c['category']} {c['signature']}{stale}")
        rprint(f"    {', '.join(c['locations']) or '-'}  confidence {c['confidence']:.2f}")
    if view["edges"]:
        rprint("\n[bold]Edges:[/bold]")
        for e in view["edges"]:
            rprint(f"  {e['source']} -- {e['target']}  ({e['weight']:.2f})")


@app.command()
def report(
    failure_id: str = typer.Argument(help="Failure record id"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """Explain a recorded failure."""
    core = _open_core(data_dir, project)
    try:
        result = core.get_failure_report(failure_id)
    except PremiseError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if format == "json":
        print(result.to_json())
    else:
        rprint(result.to_text())


@app.command()
def context(
    location: str = typer.Argument(help="Target location"),
    budget: int = typer.Option(1500, help="Token budget"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """Show the context package an AI request about LOCATION would get."""
    core = _open_core(data_dir, project)
    try:
        package = core.composer.compose(CodeLocation.parse(location), budget)
    except PremiseError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if format == "json":
        print(package.to_json())
        return
    if package.empty:
        rprint(f"No recorded knowledge relevant to {location}.")
        return
    print(package.render())
    rprint(
        f"\n[dim]~{package.estimated_tokens}/{package.token_budget} tokens, "
        f"{package.dropped} item(s) dropped[/dim]"
    )


@app.command()
def compact(
    retention_days: float = typer.Option(None, help="Keep records newer than this (default from config)"),
    data_dir: str = typer.Option(None, help="Data directory"),
    project: str = typer.Option(None, help="Project id"),
) -> None:
    """Remove old superseded and archived records."""
    core = _open_core(data_dir, project)
    removed = core.compact(retention_days)
    if not removed:
        rprint("Nothing to compact.")
        return
    for kind, count in sorted(removed.items()):
        rprint(f"  Removed {count} {kind}(s)")


@app.command()
def reconcile(
    file: Path = typer.Argument(help="Snapshot file produced by a merge tool"),
    output: Path = typer.Option(None, "--output", "-o", help="Write here instead of in place"),
) -> None:
    """Resolve duplicate entities in a merged snapshot and refresh its checksum."""
    try:
        decoded = snapshot.loads(file.read_text(encoding="utf-8"), verify=False)
        knowledge, resolved = snapshot.reconcile(decoded)
        snapshot.write_atomic(output or file, snapshot.dumps(knowledge))
    except (OSError, PremiseError) as e:
        rprint(f"[red]Reconciliation failed: {e}[/red]")
        raise typer.Exit(1)
    rprint(f"[green]Reconciled {resolved} duplicate(s)[/green] -> {output or file}")


@app.command()
def merge(
    ours: Path = typer.Argument(help="Our snapshot"),
    theirs: Path = typer.Argument(help="Their snapshot"),
    output: Path = typer.Option(..., "--output", "-o", help="Merged snapshot path"),
) -> None:
    """Merge two snapshots of the same project."""
    try:
        mine, _ = snapshot.reconcile(snapshot.loads(ours.read_text(encoding="utf-8"), verify=False))
        other, _ = snapshot.reconcile(snapshot.loads(theirs.read_text(encoding="utf-8"), verify=False))
        merged, resolved = snapshot.merge(mine, other)
        snapshot.write_atomic(output, snapshot.dumps(merged))
    except (OSError, ValueError, PremiseError) as e:
        rprint(f"[red]Merge failed: {e}[/red]")
        raise typer.Exit(1)
    rprint(f"[green]Merged {ours} and {theirs}[/green] ({resolved} conflicting record(s) reconciled)")
    rprint(f"  -> {output} at version {merged.version}")


@app.command()
def activity(
    limit: int = typer.Option(20, help="Number of entries to show"),
    tool: str = typer.Option(None, "--tool", help="Only show this tool"),
    project: str = typer.Option(None, "--project", "-p", help="Only show this project"),
    summary: bool = typer.Option(False, "--summary", help="Per-tool totals instead of entries"),
) -> None:
    """Show recent MCP tool calls made by your agent."""
    entries = read_activity_log(limit=limit, tool_name=tool, project=project)
    if not entries:
        rprint("No activity recorded yet.")
        return
    if summary:
        for name, row in summarize_activity(entries).items():
            errors = f", [red]{row['errors']} error(s)[/red]" if row["errors"] else ""
            rprint(f"  [bold]{name}[/bold]: {row['calls']} call(s), avg {row['avg_ms']}ms{errors}")
        return
    for e in entries:
        status = "[red]error[/red]" if e.get("error") else "[green]ok[/green]"
        marker = " [yellow]write[/yellow]" if e.get("writes") else ""
        rprint(f"  {e['timestamp'][:19]}  [bold]{e['tool_name']}[/bold]{marker} {status} ({e['duration_ms']}ms)")
        if e.get("arguments"):
            rprint(f"    [dim]{json.dumps(e['arguments'], default=str)[:120]}[/dim]")


if __name__ == "__main__":
    app()
