"""
Spreadsheet Agent Core — Operator CLI Entrypoint.

Inspects the control core without a workbook attached:
risk scoring, the persisted episodic memory and the approval audit trail.
"""

import argparse
import json
import logging
import sys
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from approval.audit import SQLiteAuditLog
from approval.gate import ApprovalGate
from entry.cli import CLIAdapter
from memory.episodic import EpisodicMemory
from memory.store import SQLiteEpisodeStore
from shared.config import Settings, load_settings
from shared.models import RiskLevel

# ─── Rich Console ───────────────────────────────────────────────

console = Console()

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


def setup_logging(level: str) -> None:
    """Configure logging."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_params(raw_value: str | None) -> dict[str, Any] | None:
    if not raw_value:
        return {}
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError:
        console.print("[bold red]Error:[/] --params must be valid JSON.")
        return None
    if not isinstance(parsed, dict):
        console.print("[bold red]Error:[/] --params must be a JSON object.")
        return None
    return parsed


# ─── Risk ───────────────────────────────────────────────────────

def cmd_risk(settings: Settings, operation: str, params_json: str | None, text: str | None, rows: int | None) -> int:
    params = _parse_params(params_json)
    if params is None:
        return 2

    gate = ApprovalGate(config=settings.approval)
    adapter = CLIAdapter()
    assessment = gate.assess_risk(operation, params, adapter.risk_context(text, rows))

    style = RISK_STYLES[assessment.risk_level]
    table = Table(box=box.SIMPLE_HEAVY, show_header=False, padding=(0, 1))
    table.add_column("Field", style="bold white")
    table.add_column("Value", style="white")
    table.add_row("Operation", operation)
    table.add_row("Risk level", Text(assessment.risk_level.value, style=style))
    table.add_row("Needs approval", "yes" if assessment.needs_approval else "no")
    table.add_row("Reversible", "yes" if assessment.reversible else "no")
    table.add_row("Reason", assessment.reason)
    table.add_row("Impact", assessment.impact_description)
    impact = assessment.estimated_impact
    if impact.cell_count is not None:
        table.add_row("Cells", str(impact.cell_count))
    if impact.row_count:
        table.add_row("Rows", str(impact.row_count))

    console.print(Panel(table, title="Risk Assessment", border_style=style.split()[-1], box=box.ROUNDED))
    return 0


# ─── Memory ─────────────────────────────────────────────────────

def _open_memory(settings: Settings) -> tuple[EpisodicMemory, SQLiteEpisodeStore]:
    store = SQLiteEpisodeStore(db_path=settings.memory.db_path)
    return EpisodicMemory(store=store, config=settings.memory), store


def cmd_memory_summary(settings: Settings) -> int:
    memory, store = _open_memory(settings)
    try:
        summary = memory.get_summary()
        table = Table(title="Episodic Memory", box=box.SIMPLE_HEAVY)
        table.add_column("Metric", style="bold cyan")
        table.add_column("Value", style="white")
        table.add_row("Episodes", str(summary["total_episodes"]))
        table.add_row("Success rate", f"{summary['success_rate'] * 100:.0f}%")
        table.add_row("Average duration", f"{summary['average_duration']:.1f}s")
        table.add_row("Experiences", str(len(memory.experiences)))
        for tool in summary["top_tools"]:
            table.add_row(f"Tool: {tool['name']}", str(tool["count"]))
        console.print(table)
    finally:
        store.close()
    return 0


def cmd_memory_analyze(settings: Settings) -> int:
    memory, store = _open_memory(settings)
    try:
        analysis = memory.analyze_patterns()
        tools_table = Table(title="Tool Statistics", box=box.SIMPLE_HEAVY)
        tools_table.add_column("Tool", style="cyan")
        tools_table.add_column("Uses", justify="right")
        tools_table.add_column("Success", justify="right")
        tools_table.add_column("Avg (s)", justify="right", style="dim")
        for name, stats in analysis["tool_stats"].items():
            tools_table.add_row(
                name,
                str(stats["usage_count"]),
                f"{stats['success_rate'] * 100:.0f}%",
                f"{stats['average_duration']:.2f}",
            )
        console.print(tools_table)

        for pattern in analysis["success_patterns"]:
            console.print(f"[green]✓[/] {pattern['pattern']} [dim](x{pattern['frequency']})[/]")
        for pattern in analysis["failure_patterns"]:
            console.print(
                f"[red]✗[/] {pattern['reason']} [dim](x{pattern['frequency']}: "
                f"{', '.join(pattern['affected_tools'])})[/]"
            )
        if analysis["recommendations"]:
            console.print(Panel(
                Text("\n".join(analysis["recommendations"]), style="yellow"),
                title="Recommendations",
                border_style="yellow",
                box=box.ROUNDED,
            ))
    finally:
        store.close()
    return 0


def cmd_memory_similar(settings: Settings, text: str, limit: int) -> int:
    memory, store = _open_memory(settings)
    try:
        request = CLIAdapter().read_input(text).user_message
        episodes = memory.find_similar(request, limit)
        if not episodes:
            console.print("[bold yellow]No episodes recorded yet.[/]")
            return 0
        table = Table(title="Similar Episodes", box=box.SIMPLE_HEAVY)
        table.add_column("Episode", style="dim")
        table.add_column("Request", style="white")
        table.add_column("Tags", style="cyan")
        table.add_column("Outcome")
        table.add_column("Ended", style="dim")
        for episode in episodes:
            table.add_row(
                episode.id,
                episode.user_request,
                ", ".join(episode.tags),
                episode.outcome,
                episode.end_time.isoformat(timespec="seconds"),
            )
        console.print(table)
    finally:
        store.close()
    return 0


def cmd_memory_experiences(settings: Settings, text: str, tool_name: str | None) -> int:
    memory, store = _open_memory(settings)
    try:
        experiences = memory.get_relevant_experiences(text, tool_name=tool_name)
        if not experiences:
            console.print("[bold yellow]No relevant experiences.[/]")
            return 0
        table = Table(title="Relevant Experiences", box=box.SIMPLE_HEAVY)
        table.add_column("Type", style="cyan")
        table.add_column("Uses", justify="right")
        table.add_column("Content", style="white")
        for experience in experiences:
            table.add_row(
                experience.type,
                str(experience.usage_count),
                json.dumps(experience.content.model_dump(exclude={"kind"}), ensure_ascii=False),
            )
        console.print(table)
    finally:
        store.close()
    return 0


# ─── Audit ──────────────────────────────────────────────────────

def cmd_audit_export(settings: Settings, fmt: str) -> int:
    audit_log = SQLiteAuditLog(db_path=settings.approval.audit_db_path)
    try:
        output = audit_log.export_csv() if fmt == "csv" else audit_log.export_json()
        sys.stdout.write(output)
        if output and not output.endswith("\n"):
            sys.stdout.write("\n")
    finally:
        audit_log.close()
    return 0


def cmd_audit_chain(settings: Settings, approval_id: str) -> int:
    audit_log = SQLiteAuditLog(db_path=settings.approval.audit_db_path)
    try:
        entries = audit_log.get_approval_chain(approval_id)
        if not entries:
            console.print(f"[bold yellow]No audit entries for[/] {approval_id}")
            return 1
        table = Table(title=f"Approval {approval_id}", box=box.SIMPLE_HEAVY)
        table.add_column("Time", style="dim")
        table.add_column("Action", style="cyan")
        table.add_column("Operation")
        table.add_column("Risk")
        table.add_column("By", style="dim")
        for entry in entries:
            table.add_row(
                entry.timestamp.isoformat(timespec="seconds"),
                entry.action,
                entry.operation_name or "",
                entry.risk_level or "",
                entry.decided_by or "",
            )
        console.print(table)
    finally:
        audit_log.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Spreadsheet agent control core")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    risk_parser = subparsers.add_parser("risk", help="Assess the risk of an operation")
    risk_parser.add_argument("operation", help="Operation or tool name, e.g. excel_delete_rows")
    risk_parser.add_argument("--params", default=None, help="JSON object of operation parameters")
    risk_parser.add_argument("--text", default=None, help="Natural-language request that triggered the operation")
    risk_parser.add_argument("--rows", type=int, default=None, help="Estimated affected rows")

    memory_parser = subparsers.add_parser("memory", help="Inspect episodic memory")
    memory_sub = memory_parser.add_subparsers(dest="memory_command")
    memory_sub.add_parser("summary", help="Episode statistics")
    memory_sub.add_parser("analyze", help="Success/failure patterns and recommendations")
    similar_parser = memory_sub.add_parser("similar", help="Episodes similar to a request")
    similar_parser.add_argument("text", help="Request text")
    similar_parser.add_argument("--limit", type=int, default=5, help="Max results")
    experiences_parser = memory_sub.add_parser("experiences", help="Experiences relevant to a request")
    experiences_parser.add_argument("text", help="Request text")
    experiences_parser.add_argument("--tool", default=None, help="Include failure/parameter experiences for a tool")

    audit_parser = subparsers.add_parser("audit", help="Inspect the approval audit trail")
    audit_sub = audit_parser.add_subparsers(dest="audit_command")
    export_parser = audit_sub.add_parser("export", help="Export all audit entries")
    export_parser.add_argument("--format", choices=["json", "csv"], default="json", help="Output format")
    chain_parser = audit_sub.add_parser("chain", help="Audit entries of one approval")
    chain_parser.add_argument("approval_id", help="Approval id, e.g. APP-20250101-001")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entrypoint with CLI args."""
    settings = load_settings()
    setup_logging(settings.log_level)

    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "risk":
        return cmd_risk(settings, args.operation, args.params, args.text, args.rows)
    if args.command == "memory":
        if args.memory_command == "summary":
            return cmd_memory_summary(settings)
        if args.memory_command == "analyze":
            return cmd_memory_analyze(settings)
        if args.memory_command == "similar":
            return cmd_memory_similar(settings, args.text, args.limit)
        if args.memory_command == "experiences":
            return cmd_memory_experiences(settings, args.text, args.tool)
    if args.command == "audit":
        if args.audit_command == "export":
            return cmd_audit_export(settings, args.format)
        if args.audit_command == "chain":
            return cmd_audit_chain(settings, args.approval_id)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
