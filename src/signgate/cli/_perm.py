"""Permission, risk, and evaluation commands."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import click
from rich.console import Console
from rich.table import Table

from signgate.cli._engine import fail_invalid, open_engine


def fmt_ts(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


def _parse_request_type(console: Console, value: str):
    from signgate.core.exceptions import InvalidInputError
    from signgate.core.models import RequestType

    try:
        return RequestType.parse(value)
    except InvalidInputError as exc:
        fail_invalid(console, exc)


# ---------------------------------------------------------------------------
# apps / permissions
# ---------------------------------------------------------------------------


def cmd_apps(as_json: bool, console: Console) -> None:
    with open_engine(console) as engine:
        apps = asyncio.run(engine.connected_apps())

    if as_json:
        rows = [
            {
                "caller_id": a.caller_id,
                "permission_count": a.permission_count,
                "last_used_time": a.last_used_time,
                "expires_at": a.expires_at,
            }
            for a in apps
        ]
        click.echo(json.dumps(rows, indent=2))
        return

    if not apps:
        console.print("No connected apps.")
        return
    table = Table(title="Connected apps")
    table.add_column("Caller", style="cyan")
    table.add_column("Permissions", justify="right")
    table.add_column("Last used")
    table.add_column("Expires")
    for a in apps:
        table.add_row(
            a.caller_id, str(a.permission_count), fmt_ts(a.last_used_time), fmt_ts(a.expires_at)
        )
    console.print(table)


def cmd_permissions(caller_id: str, as_json: bool, console: Console) -> None:
    from signgate.core.exceptions import InvalidInputError

    with open_engine(console) as engine:
        try:
            permissions = engine.store.permissions_for_caller(caller_id)
        except InvalidInputError as exc:
            fail_invalid(console, exc)

    if as_json:
        rows = [
            {
                "id": p.id,
                "request_type": p.request_type,
                "event_kind": p.event_kind,
                "decision": p.decision.value,
                "expires_at": p.expires_at,
                "created_at": p.created_at,
            }
            for p in permissions
        ]
        click.echo(json.dumps(rows, indent=2))
        return

    if not permissions:
        console.print(f"No active permissions for [cyan]{caller_id}[/cyan].")
        return
    table = Table(title=f"Permissions for {caller_id}")
    table.add_column("ID", justify="right")
    table.add_column("Request")
    table.add_column("Kind")
    table.add_column("Decision")
    table.add_column("Expires")
    for p in permissions:
        kind = "any" if p.is_generic else str(p.event_kind)
        table.add_row(str(p.id), p.request_type, kind, p.decision.value, fmt_ts(p.expires_at))
    console.print(table)


# ---------------------------------------------------------------------------
# grant / deny / ask / revoke
# ---------------------------------------------------------------------------


def cmd_decide(
    decision: str,
    caller_id: str,
    request_type: str,
    kind: int | None,
    duration: str,
    console: Console,
) -> None:
    from signgate.core.exceptions import InvalidInputError
    from signgate.core.models import Decision, PermissionDuration

    rtype = _parse_request_type(console, request_type)
    try:
        parsed_duration = PermissionDuration.parse(duration)
    except InvalidInputError as exc:
        fail_invalid(console, exc)

    with open_engine(console) as engine:
        try:
            if decision == Decision.ALLOW:
                permission = asyncio.run(engine.grant(caller_id, rtype, kind, parsed_duration))
            elif decision == Decision.DENY:
                permission = asyncio.run(engine.deny(caller_id, rtype, kind, parsed_duration))
            else:
                permission = asyncio.run(engine.set_ask(caller_id, rtype, kind))
        except InvalidInputError as exc:
            fail_invalid(console, exc)

    target = f"{caller_id} {rtype}" + (f" kind {kind}" if kind is not None else "")
    if permission is None:
        console.print(f"Recorded one-time [bold]{decision}[/bold] for {target} (not stored).")
    else:
        console.print(
            f"[green]Stored[/green] [bold]{permission.decision}[/bold] for {target}"
            f" (expires: {fmt_ts(permission.expires_at)})"
        )


def cmd_revoke(
    caller_id: str, request_type: str | None, kind: int | None, console: Console
) -> None:
    from signgate.core.exceptions import InvalidInputError

    rtype = _parse_request_type(console, request_type) if request_type else None
    with open_engine(console) as engine:
        try:
            removed = asyncio.run(engine.revoke(caller_id, rtype, kind))
        except InvalidInputError as exc:
            fail_invalid(console, exc)
    console.print(f"Revoked {removed} permission(s) for [cyan]{caller_id}[/cyan].")


# ---------------------------------------------------------------------------
# check / risk / kind / cleanup
# ---------------------------------------------------------------------------


def cmd_check(
    caller_id: str, request_type: str, kind: int | None, as_json: bool, console: Console
) -> None:
    from signgate.core.engine import SigningRequest
    from signgate.core.exceptions import InvalidInputError

    rtype = _parse_request_type(console, request_type)
    with open_engine(console) as engine:
        try:
            result = asyncio.run(engine.evaluate(SigningRequest(caller_id, rtype, kind)))
        except InvalidInputError as exc:
            fail_invalid(console, exc)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    colour = {"allow": "green", "deny": "red", "ask": "yellow"}[result.decision.value]
    label = result.decision.value.upper()
    console.print(f"Decision: [{colour}]{label}[/{colour}] ({result.outcome})")
    if result.reason:
        console.print(f"  Reason: {result.reason}")
    if result.risk is not None:
        console.print(
            f"  Risk score: {result.risk.score}  required auth: {result.required_auth.name}"
        )
        for reason in result.risk.reasons:
            console.print(f"    • {reason}")
    if result.warning:
        console.print(f"  [yellow]Warning:[/yellow] {result.warning}")


def cmd_risk(caller_id: str, kind: int | None, as_json: bool, console: Console) -> None:
    from signgate.core.exceptions import InvalidInputError

    with open_engine(console) as engine:
        try:
            assessment = asyncio.run(engine.assess(caller_id, kind))
        except InvalidInputError as exc:
            fail_invalid(console, exc)

    if as_json:
        click.echo(
            json.dumps(
                {
                    "score": assessment.score,
                    "factors": [f.value for f in assessment.factors],
                    "required_auth": assessment.required_auth.name,
                },
                indent=2,
            )
        )
        return

    console.print(f"Risk score: [bold]{assessment.score}[/bold]")
    console.print(f"Required auth: {assessment.required_auth.name}")
    for factor in assessment.factors:
        console.print(f"  +{factor.weight:<3} {factor.description}")


def cmd_kind(kind: int, console: Console) -> None:
    from signgate.core.kinds import is_sensitive, is_valid_kind, sensitivity_warning

    if not is_valid_kind(kind):
        fail_invalid(console, ValueError(f"event kind out of range: {kind}"))
    if is_sensitive(kind):
        console.print(f"Kind {kind}: [red]sensitive[/red]")
        console.print(f"  {sensitivity_warning(kind)}")
    else:
        console.print(f"Kind {kind}: [green]not sensitive[/green]")


def cmd_cleanup(as_json: bool, console: Console) -> None:
    with open_engine(console) as engine:
        result = asyncio.run(engine.cleanup_expired())

    if as_json:
        click.echo(
            json.dumps(
                {
                    "permissions": result.permissions,
                    "app_settings": result.app_settings,
                    "audit_entries": result.audit_entries,
                },
                indent=2,
            )
        )
        return
    console.print(
        f"Removed {result.permissions} permission(s), {result.app_settings} app setting(s), "
        f"{result.audit_entries} audit entr{'y' if result.audit_entries == 1 else 'ies'}."
    )
