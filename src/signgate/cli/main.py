"""
SignGate CLI entry point.

Commands:
  signgate apps                      - connected apps and last use
  signgate permissions CALLER        - a caller's active permissions
  signgate grant CALLER TYPE         - store ALLOW (--kind, --duration)
  signgate deny CALLER TYPE          - store DENY (--kind, --duration)
  signgate ask CALLER TYPE           - always prompt for this request
  signgate revoke CALLER [TYPE]      - delete one or all permissions
  signgate check CALLER TYPE         - evaluate a request as the engine would
  signgate risk CALLER               - show the risk assessment
  signgate kind N                    - classify an event kind
  signgate cleanup                   - expiry and audit retention sweep
  signgate audit log | verify        - inspect / verify the audit chain
  signgate db info | migrate         - database inspection
  signgate version                   - show version
"""

from __future__ import annotations

import click
from rich.console import Console

from signgate import __version__
from signgate.cli._audit import audit_group
from signgate.cli._db import db_group

console = Console()

_DURATIONS = ["once", "just_this_time", "1m", "5m", "10m", "1h", "1d", "forever"]


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "--version", "-V", message="signgate %(version)s")
def cli() -> None:
    """SignGate - local authorization policy engine for signing requests."""


cli.add_command(audit_group, name="audit")
cli.add_command(db_group, name="db")


# ---------------------------------------------------------------------------
# apps / permissions
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False)
def apps(as_json: bool) -> None:
    """List connected apps, most recently used first."""
    from signgate.cli._perm import cmd_apps

    cmd_apps(as_json=as_json, console=console)


@cli.command()
@click.argument("caller_id")
@click.option("--json", "as_json", is_flag=True, default=False)
def permissions(caller_id: str, as_json: bool) -> None:
    """Show a caller's active permissions."""
    from signgate.cli._perm import cmd_permissions

    cmd_permissions(caller_id=caller_id, as_json=as_json, console=console)


# ---------------------------------------------------------------------------
# grant / deny / ask / revoke
# ---------------------------------------------------------------------------


def _duration(value: str) -> str:
    return "just_this_time" if value == "once" else value


@cli.command()
@click.argument("caller_id")
@click.argument("request_type")
@click.option("--kind", type=int, default=None, help="Event kind (omit for any kind)")
@click.option("--duration", type=click.Choice(_DURATIONS), default="forever", show_default=True)
def grant(caller_id: str, request_type: str, kind: int | None, duration: str) -> None:
    """Allow CALLER to perform REQUEST_TYPE."""
    from signgate.cli._perm import cmd_decide

    cmd_decide("allow", caller_id, request_type, kind, _duration(duration), console=console)


@cli.command()
@click.argument("caller_id")
@click.argument("request_type")
@click.option("--kind", type=int, default=None, help="Event kind (omit for any kind)")
@click.option("--duration", type=click.Choice(_DURATIONS), default="forever", show_default=True)
def deny(caller_id: str, request_type: str, kind: int | None, duration: str) -> None:
    """Deny CALLER from performing REQUEST_TYPE."""
    from signgate.cli._perm import cmd_decide

    cmd_decide("deny", caller_id, request_type, kind, _duration(duration), console=console)


@cli.command()
@click.argument("caller_id")
@click.argument("request_type")
@click.option("--kind", type=int, default=None, help="Event kind (omit for any kind)")
def ask(caller_id: str, request_type: str, kind: int | None) -> None:
    """Always prompt before CALLER performs REQUEST_TYPE."""
    from signgate.cli._perm import cmd_decide

    cmd_decide("ask", caller_id, request_type, kind, "forever", console=console)


@cli.command()
@click.argument("caller_id")
@click.argument("request_type", required=False)
@click.option("--kind", type=int, default=None, help="Event kind of the permission to revoke")
def revoke(caller_id: str, request_type: str | None, kind: int | None) -> None:
    """Revoke one permission, or every permission of CALLER."""
    from signgate.cli._perm import cmd_revoke

    cmd_revoke(caller_id=caller_id, request_type=request_type, kind=kind, console=console)


# ---------------------------------------------------------------------------
# check / risk / kind / cleanup
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("caller_id")
@click.argument("request_type")
@click.option("--kind", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
def check(caller_id: str, request_type: str, kind: int | None, as_json: bool) -> None:
    """Evaluate one request and print the decision."""
    from signgate.cli._perm import cmd_check

    cmd_check(caller_id, request_type, kind, as_json=as_json, console=console)


@cli.command()
@click.argument("caller_id")
@click.option("--kind", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
def risk(caller_id: str, kind: int | None, as_json: bool) -> None:
    """Show the risk assessment for a pending request."""
    from signgate.cli._perm import cmd_risk

    cmd_risk(caller_id, kind, as_json=as_json, console=console)


@cli.command()
@click.argument("kind", type=int)
def kind(kind: int) -> None:
    """Classify an event kind."""
    from signgate.cli._perm import cmd_kind

    cmd_kind(kind, console=console)


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False)
def cleanup(as_json: bool) -> None:
    """Delete expired permissions and audit entries past retention."""
    from signgate.cli._perm import cmd_cleanup

    cmd_cleanup(as_json=as_json, console=console)


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False)
def version(as_json: bool) -> None:
    """Show version information."""
    import platform
    import sys as _sys

    if as_json:
        import json

        click.echo(
            json.dumps(
                {
                    "signgate": __version__,
                    "python": _sys.version.split()[0],
                    "platform": _sys.platform,
                    "arch": platform.machine(),
                },
                indent=2,
            )
        )
    else:
        console.print(f"signgate {__version__}")
        console.print(f"Python {_sys.version.split()[0]}")
        console.print(f"Platform: {_sys.platform} {platform.machine()}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
