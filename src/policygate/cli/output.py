"""Rich tables and panels for CLI output."""

from __future__ import annotations

import datetime
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

from policygate.permissions.layered import ToolPermission
from policygate.permissions.policy import Policy, ValidationResult
from policygate.permissions.rules import Rule
from policygate.types.permissions import Decision, Effect

STYLE_ALLOW = "bold #34d399"  # green
STYLE_DENY = "bold #f87171"  # red
STYLE_WARN = "#fbbf24"  # amber
STYLE_LABEL = "bold #94a3b8"  # slate
STYLE_MUTED = "#7c7c8a"


def effect_text(allowed: bool) -> Text:
    if allowed:
        return Text("allow", style=STYLE_ALLOW)
    return Text("deny", style=STYLE_DENY)


def print_decision(console: Console, decision: Decision) -> None:
    """Print a decision as a short labelled block."""
    verdict = Text("ALLOWED" if decision.allowed else "DENIED",
                   style=STYLE_ALLOW if decision.allowed else STYLE_DENY)
    console.print(verdict)

    rows: list[tuple[str, Any]] = [("Reason", decision.reason)]
    if decision.matched_rule:
        rows.append(("Rule", decision.matched_rule))
    if decision.matched_policy:
        rows.append(("Policy", decision.matched_policy))
    if decision.source is not None:
        rows.append(("Source", decision.source.value))
    if decision.resolution:
        rows.append(("Resolution", decision.resolution))
    if decision.priority:
        rows.append(("Priority", decision.priority))
    for label, value in rows:
        line = Text(f"  {label + ':':<12}", style=STYLE_LABEL)
        line.append(str(value))
        console.print(line)
    for violation in decision.violations:
        console.print(Text(f"  - {violation}", style=STYLE_DENY))
    for suggestion in decision.suggestions:
        console.print(Text(f"  > {suggestion}", style=STYLE_MUTED))


def rules_table(rules: list[Rule]) -> Table:
    table = Table(title="Parsed rules", title_justify="left")
    table.add_column("Rule")
    table.add_column("Tool")
    table.add_column("Matcher")
    table.add_column("Operand")
    table.add_column("Effect")
    table.add_column("Priority", justify="right")
    table.add_column("Specificity", justify="right")
    for rule in rules:
        operand = Text(rule.operand, style=STYLE_DENY) if rule.broken else rule.operand
        table.add_row(
            rule.raw,
            rule.tool,
            rule.matcher.value,
            operand,
            effect_text(rule.effect is Effect.ALLOW),
            str(rule.priority),
            str(rule.specificity),
        )
    return table


def policies_table(policies: list[Policy]) -> Table:
    table = Table(title="Policies", title_justify="left")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Priority", justify="right")
    table.add_column("Default")
    table.add_column("Rules", justify="right")
    table.add_column("Enabled")
    for policy in sorted(policies, key=lambda p: p.priority, reverse=True):
        table.add_row(
            policy.id,
            policy.name,
            str(policy.priority),
            effect_text(policy.effect is Effect.ALLOW),
            str(len(policy.rules)),
            "yes" if policy.enabled else Text("no", style=STYLE_MUTED),
        )
    return table


def matches_table(matches: list[dict[str, Any]]) -> Table:
    table = Table(title="Matching policy rules", title_justify="left")
    table.add_column("Policy")
    table.add_column("Rule")
    table.add_column("Effect")
    table.add_column("Priority", justify="right")
    table.add_column("Description")
    for match in matches:
        table.add_row(
            match["policy"],
            match["rule"],
            effect_text(match["effect"] == "allow"),
            str(match["priority"]),
            match["description"],
        )
    return table


def permissions_table(permissions: list[ToolPermission]) -> Table:
    table = Table(title="Tool permissions", title_justify="left")
    table.add_column("Scope")
    table.add_column("Tool")
    table.add_column("Effect")
    table.add_column("Priority", justify="right")
    table.add_column("Conditions", justify="right")
    table.add_column("Restrictions", justify="right")
    table.add_column("Expires")
    for perm in permissions:
        expires = ""
        if perm.expires_at is not None:
            expires = datetime.datetime.fromtimestamp(perm.expires_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(
            perm.scope.value,
            perm.tool,
            effect_text(perm.allowed),
            str(perm.priority),
            str(len(perm.conditions)),
            str(len(perm.restrictions)),
            expires,
        )
    return table


def print_validation(console: Console, source: str, result: ValidationResult) -> None:
    status = Text("valid", style=STYLE_ALLOW) if result.valid else Text("invalid", style=STYLE_DENY)
    console.print(Text(f"{source}: ", style=STYLE_LABEL) + status)
    for error in result.errors:
        console.print(Text(f"  error: {error}", style=STYLE_DENY))
    for warning in result.warnings:
        console.print(Text(f"  warning: {warning}", style=STYLE_WARN))
