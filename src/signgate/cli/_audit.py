"""Audit log inspection commands."""

from __future__ import annotations

import json
import sys

import click
from rich.console import Console
from rich.table import Table

from signgate.cli._engine import open_engine
from signgate.cli._perm import fmt_ts
from signgate.core.constants import AUDIT_PAGE_MAX, ExitCode

console = Console()


@click.group()
def audit_group() -> None:
    """Audit log inspection and verification."""


@audit_group.command("log")
@click.option("--caller", "caller_id", default="", help="Only entries for this caller")
@click.option("--limit", default=20, help=f"Entries per page (max {AUDIT_PAGE_MAX})")
@click.option("--offset", default=0, help="Entries to skip")
@click.option("--json", "as_json", is_flag=True, default=False)
def audit_log(caller_id: str, limit: int, offset: int, as_json: bool) -> None:
    """Show audit entries, newest first."""
    with open_engine(console) as engine:
        if caller_id:
            entries = engine.audit.for_caller(caller_id, limit, offset)
        else:
            entries = engine.audit.page(limit, offset)

    if as_json:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return

    if not entries:
        console.print("No audit entries.")
        return
    table = Table(title="Audit log")
    table.add_column("ID", justify="right")
    table.add_column("Time")
    table.add_column("Caller", style="cyan")
    table.add_column("Request")
    table.add_column("Kind")
    table.add_column("Decision")
    table.add_column("Auto")
    for e in entries:
        table.add_row(
            str(e.id),
            fmt_ts(e.timestamp),
            e.caller_id,
            e.request_type,
            "" if e.event_kind is None else str(e.event_kind),
            e.decision,
            "yes" if e.was_automatic else "no",
        )
    console.print(table)


@audit_group.command("verify")
@click.option("--json", "as_json", is_flag=True, default=False)
def audit_verify(as_json: bool) -> None:
    """Verify the audit hash chain.  Exits 6 if it is broken."""
    import asyncio

    with open_engine(console) as engine:
        result = asyncio.run(engine.verify_audit_chain())
        keyed = engine.audit.keyed

    if as_json:
        click.echo(
            json.dumps(
                {
                    "status": result.status.value,
                    "entry_id": result.entry_id,
                    "entries_checked": result.entries_checked,
                    "legacy_skipped": result.legacy_skipped,
                    "keyed": keyed,
                },
                indent=2,
            )
        )
    elif result.ok:
        console.print(
            f"[green]Audit chain {result.status}[/green] ({result.entries_checked} entries)"
        )
        if result.legacy_skipped:
            console.print(f"  {result.legacy_skipped} legacy entries without hashes were skipped.")
    else:
        console.print(f"[red]Audit chain {result.status}[/red] at entry {result.entry_id}")

    if not result.ok:
        sys.exit(ExitCode.AUDIT_CHAIN_BROKEN)
