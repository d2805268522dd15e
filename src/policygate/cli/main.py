"""CLI entry point for PolicyGate."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler

from policygate.cli.commands import console, load_engine, parse_params
from policygate.cli.output import print_decision
from policygate.core.config import load_environment
from policygate.errors import RuleParseError
from policygate.permissions.manager import tool_request
from policygate.permissions.rules import parse_allowed_tools, parse_disallowed_tools
from policygate.types.config import PermissionMode
from policygate.types.permissions import EvaluationContext, PermissionType


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.option("--config-dir", default=None, help="Config directory (default: $POLICYGATE_CONFIG_DIR or ~/.policygate)")
@click.option("--cwd", default=None, help="Working directory")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in PermissionMode]),
    default=None,
    help="Permission mode (default: from settings)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(
    ctx: click.Context,
    config_dir: str | None,
    cwd: str | None,
    mode: str | None,
    verbose: bool,
) -> None:
    """PolicyGate -- permission and policy decision engine.

    \b
    Usage:
      policygate check Bash -P command="npm test"
      policygate check Read -P file_path=/etc/passwd --no-interactive
      policygate rules parse "Bash(npm:*),Read"
      policygate policy validate policies.yaml
      policygate policy simulate Write -P file_path=/etc/hosts
      policygate permissions list --scope project
      policygate audit export --format csv
    """
    _configure_logging(verbose)
    load_environment(cwd)
    ctx.ensure_object(dict)
    ctx.obj.update(config_dir=config_dir, cwd=cwd, mode=mode)


@cli.command("check")
@click.argument("tool")
@click.option("--param", "-P", "params", multiple=True, help="Tool parameter as key=value")
@click.option(
    "--kind",
    type=click.Choice([k.value for k in PermissionType]),
    default=None,
    help="Override the permission type inferred from the tool",
)
@click.option("--allowed-tools", default=None, help="Extra allow rules, e.g. 'Bash(git:*),Read'")
@click.option("--disallowed-tools", default=None, help="Extra deny rules")
@click.option("--session", "-s", default="default", help="Session ID")
@click.option("--interactive/--no-interactive", default=None, help="Prompt when undecided (default: auto)")
@click.option("--rich/--no-rich", default=None, help="Rich prompt (default: auto)")
@click.option("--json", "as_json", is_flag=True, help="Print the decision as JSON")
@click.pass_obj
def check_cmd(
    obj: dict[str, Any],
    tool: str,
    params: tuple[str, ...],
    kind: str | None,
    allowed_tools: str | None,
    disallowed_tools: str | None,
    session: str,
    interactive: bool | None,
    rich: bool | None,
    as_json: bool,
) -> None:
    """Decide whether TOOL may run. Exits 1 when denied."""
    request = tool_request(tool, parse_params(params))
    if kind:
        request = dataclasses.replace(request, kind=PermissionType(kind))

    is_tty = sys.stdin.isatty()
    use_rich = rich if rich is not None else sys.stderr.isatty()
    approval = _create_approval_callback(
        obj.get("mode"), use_rich, interactive=interactive if interactive is not None else is_tty,
    )

    with load_engine(obj, approval=approval) as engine:
        try:
            if allowed_tools:
                engine.rules.extend(parse_allowed_tools(allowed_tools))
            if disallowed_tools:
                engine.rules.extend(parse_disallowed_tools(disallowed_tools))
        except RuleParseError as e:
            click.echo(f"Error: {e}", err=True)
            raise SystemExit(2)
        context = EvaluationContext.current(session_id=session, cwd=obj.get("cwd"))
        decision = asyncio.run(engine.check(request, context))

    if as_json:
        click.echo(json.dumps(decision.to_dict(), indent=2))
    else:
        print_decision(console, decision)
    if not decision.allowed:
        raise SystemExit(1)


def _create_approval_callback(
    mode: str | None, use_rich: bool, *, interactive: bool,
) -> Any | None:
    """Create an approval callback for the mode and terminal state.

    Returns None in bypass mode or when there is no one to ask; the
    engine then denies anything that would have prompted.
    """
    if mode == PermissionMode.BYPASS.value or not interactive:
        return None
    if use_rich:
        from policygate.ui.approval import RichApprovalCallback
        return RichApprovalCallback()
    from policygate.permissions.approval import StdinApprovalCallback
    return StdinApprovalCallback()


def _register_subcommands() -> None:
    """Register CLI subcommands."""
    from policygate.cli.commands import audit_cmd, permissions_cmd, policy_cmd, rules_cmd

    cli.add_command(rules_cmd, "rules")
    cli.add_command(policy_cmd, "policy")
    cli.add_command(permissions_cmd, "permissions")
    cli.add_command(audit_cmd, "audit")


_register_subcommands()


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
