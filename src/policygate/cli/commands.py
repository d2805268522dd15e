"""CLI subcommands for PolicyGate (rules, policy, permissions, audit)."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from policygate.cli.output import (
    matches_table,
    permissions_table,
    policies_table,
    print_decision,
    print_validation,
    rules_table,
)
from policygate.errors import PersistenceError, RuleParseError
from policygate.permissions.approval import ApprovalCallback
from policygate.permissions.manager import PermissionEngine, tool_request
from policygate.permissions.persistence import read_document
from policygate.permissions.policy import validate_policy
from policygate.permissions.rules import parse_rules
from policygate.types.permissions import Effect, EvaluationContext, RuleSource, Scope

console = Console()


def parse_params(items: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``key=value`` options into a parameter dict."""
    params: dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--param")
        params[key.strip()] = value
    return params


def load_engine(obj: Mapping[str, Any], approval: ApprovalCallback | None = None) -> PermissionEngine:
    """Build an engine from the group-level --config-dir/--cwd/--mode options."""
    return PermissionEngine.from_config_dir(
        obj.get("config_dir"),
        cwd=obj.get("cwd"),
        mode=obj.get("mode"),
        approval=approval,
    )


def policy_documents(data: Any) -> list[Any]:
    """Normalize a policy file body to a list of policy mappings."""
    if isinstance(data, Mapping):
        if "policies" in data:
            data = data["policies"]
        else:
            data = [data]
    return data if isinstance(data, list) else []


# --- rules subcommand ---

@click.group()
def rules_cmd() -> None:
    """Parse and inspect rule text."""


@rules_cmd.command("parse")
@click.argument("text", nargs=-1, required=True)
@click.option("--deny", is_flag=True, help="Parse as deny rules")
@click.option(
    "--source",
    type=click.Choice([s.value for s in RuleSource]),
    default=RuleSource.RUNTIME.value,
    help="Rule source (affects priority)",
)
def rules_parse(text: tuple[str, ...], deny: bool, source: str) -> None:
    """Parse rules such as 'Bash(npm:*),Read'."""
    effect = Effect.DENY if deny else Effect.ALLOW
    try:
        rules = [rule for part in text for rule in parse_rules(part, effect, RuleSource(source))]
    except RuleParseError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    console.print(rules_table(rules))


@rules_cmd.command("list")
@click.pass_obj
def rules_list(obj: dict[str, Any]) -> None:
    """List rules loaded from settings files."""
    with load_engine(obj) as engine:
        rules = list(engine.rules.rules)
    if not rules:
        click.echo("No rules configured.")
        return
    console.print(rules_table(rules))


# --- policy subcommand ---

@click.group()
def policy_cmd() -> None:
    """Validate, list and simulate policies."""


@policy_cmd.command("validate")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def policy_validate(files: tuple[str, ...]) -> None:
    """Validate policy documents (JSON, YAML or TOML)."""
    failed = False
    for file in files:
        try:
            documents = policy_documents(read_document(file))
        except PersistenceError as e:
            click.echo(f"Error: {e}", err=True)
            failed = True
            continue
        if not documents:
            click.echo(f"{file}: no policies found", err=True)
            failed = True
            continue
        for index, document in enumerate(documents):
            result = validate_policy(document)
            policy_id = document.get("id") if isinstance(document, Mapping) else None
            print_validation(console, f"{file}#{policy_id or index}", result)
            failed = failed or not result.valid
    if failed:
        raise SystemExit(1)


@policy_cmd.command("list")
@click.option("--file", "-f", "files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Extra policy file to load")
@click.pass_obj
def policy_list(obj: dict[str, Any], files: tuple[str, ...]) -> None:
    """List configured policies."""
    with load_engine(obj) as engine:
        for file in files:
            engine.policies.load(file)
        policies = engine.policies.list_policies()
    if not policies:
        click.echo("No policies found.")
        return
    console.print(policies_table(policies))


@policy_cmd.command("simulate")
@click.argument("tool")
@click.option("--param", "-P", "params", multiple=True, help="Tool parameter as key=value")
@click.option("--file", "-f", "files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Extra policy file to load")
@click.pass_obj
def policy_simulate(
    obj: dict[str, Any], tool: str, params: tuple[str, ...], files: tuple[str, ...],
) -> None:
    """Show every policy rule that would match a tool call."""
    request = tool_request(tool, parse_params(params))
    context = EvaluationContext.current(cwd=obj.get("cwd"))
    with load_engine(obj) as engine:
        for file in files:
            engine.policies.load(file)
        matches = engine.policies.simulate(request, context)
        decision = engine.policies.evaluate(request, context)
    if not matches:
        click.echo(f"No policy rules match {tool}.")
        return
    console.print(matches_table(matches))
    print_decision(console, decision)


# --- permissions subcommand ---

@click.group()
def permissions_cmd() -> None:
    """Inspect layered tool permissions."""


@permissions_cmd.command("list")
@click.option("--scope", type=click.Choice([s.value for s in Scope]), default=None,
              help="Only show one scope (default: effective merged view)")
@click.pass_obj
def permissions_list(obj: dict[str, Any], scope: str | None) -> None:
    """List tool permissions."""
    with load_engine(obj) as engine:
        entries = engine.permissions.get_permissions(Scope(scope) if scope else None)
    if not entries:
        click.echo("No tool permissions configured.")
        return
    console.print(permissions_table(entries))


# --- audit subcommand ---

def _audit_path(obj: Mapping[str, Any], log: str | None) -> Path:
    if log:
        return Path(log)
    from policygate.core.config import load_config

    return load_config(obj.get("cwd"), obj.get("config_dir")).audit_path


@click.group()
def audit_cmd() -> None:
    """Export and prune the decision audit log."""


@audit_cmd.command("export")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json")
@click.option("--archives", is_flag=True, help="Include rotated archives")
@click.option("--log", default=None, help="Audit log path (default: from settings)")
@click.option("--output", "-o", default=None, help="Write to file instead of stdout")
@click.pass_obj
def audit_export(
    obj: dict[str, Any], fmt: str, archives: bool, log: str | None, output: str | None,
) -> None:
    """Export audit entries as JSON or CSV."""
    from policygate.audit.export import export_audit_log

    text = export_audit_log(_audit_path(obj, log), fmt=fmt, include_archives=archives)
    if output:
        with open(output, "w") as f:
            f.write(text)
        click.echo(f"Audit log exported to {output}")
    else:
        click.echo(text)


@audit_cmd.command("prune")
@click.option("--max-age-days", default=90, help="Remove archives older than this (0 = keep)")
@click.option("--max-archives", default=0, help="Keep at most this many archives (0 = no limit)")
@click.option("--compress", is_flag=True, help="Gzip old archives instead of deleting")
@click.option("--log", default=None, help="Audit log path (default: from settings)")
@click.pass_obj
def audit_prune(
    obj: dict[str, Any], max_age_days: int, max_archives: int, compress: bool, log: str | None,
) -> None:
    """Apply retention to rotated audit archives."""
    from policygate.audit.retention import RetentionPolicy

    retention = RetentionPolicy(
        _audit_path(obj, log),
        max_age_days=max_age_days,
        max_archives=max_archives,
        compress=compress,
    )
    count = retention.enforce()
    action = "Compressed" if compress else "Removed"
    click.echo(f"{action} {count} archive(s).")
