"""Fluent builders and ready-made policies and tool-permission sets."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from policygate.permissions.conditions import parse_condition
from policygate.permissions.layered import ParameterRestriction, ToolPermission
from policygate.permissions.policy import Policy, PolicyRule
from policygate.types.permissions import Effect, PermissionType

WEEKDAYS = (1, 2, 3, 4, 5)


class PolicyBuilder:
    """Builds a :class:`Policy`. Defaults: priority 100, effect deny, enabled."""

    def __init__(self, policy_id: str, name: str) -> None:
        self._id = policy_id
        self._name = name
        self._description = ""
        self._priority = 100
        self._effect = Effect.DENY
        self._rules: list[PolicyRule] = []
        self._enabled = True

    def description(self, text: str) -> PolicyBuilder:
        self._description = text
        return self

    def priority(self, priority: int) -> PolicyBuilder:
        self._priority = priority
        return self

    def default_effect(self, effect: Effect | str) -> PolicyBuilder:
        self._effect = Effect(effect)
        return self

    def enabled(self, enabled: bool = True) -> PolicyBuilder:
        self._enabled = enabled
        return self

    def add_rule(self, rule: PolicyRule | dict[str, Any]) -> PolicyBuilder:
        self._rules.append(rule if isinstance(rule, PolicyRule) else PolicyRule.from_dict(rule))
        return self

    def build(self) -> Policy:
        if not self._id or not self._name:
            raise ValueError("Policy must have id and name")
        return Policy(
            id=self._id,
            name=self._name,
            priority=self._priority,
            effect=self._effect,
            rules=tuple(self._rules),
            enabled=self._enabled,
            description=self._description,
        )


class RuleBuilder:
    """Builds a :class:`PolicyRule` from individual condition leaves."""

    def __init__(self, rule_id: str, effect: Effect | str) -> None:
        self._id = rule_id
        self._effect = Effect(effect)
        self._description = ""
        self._priority = 0
        self._condition: dict[str, Any] = {}

    def description(self, text: str) -> RuleBuilder:
        self._description = text
        return self

    def priority(self, priority: int) -> RuleBuilder:
        self._priority = priority
        return self

    def type(self, *kinds: PermissionType | str) -> RuleBuilder:
        values = [k.value if isinstance(k, PermissionType) else k for k in kinds]
        self._condition["type"] = values[0] if len(values) == 1 else values
        return self

    def tool(self, tool: str | list[str] | re.Pattern[str]) -> RuleBuilder:
        self._condition["tool"] = tool
        return self

    def resource(self, resource: str | list[str] | re.Pattern[str]) -> RuleBuilder:
        self._condition["resource"] = resource
        return self

    def path(self, *patterns: str) -> RuleBuilder:
        self._condition["path"] = patterns[0] if len(patterns) == 1 else list(patterns)
        return self

    def time_range(self, start: str | None = None, end: str | None = None) -> RuleBuilder:
        self._condition["timeRange"] = {k: v for k, v in (("start", start), ("end", end)) if v}
        return self

    def days_of_week(self, *days: int) -> RuleBuilder:
        self._condition["daysOfWeek"] = list(days)
        return self

    def environment(self, **expected: str | dict[str, str]) -> RuleBuilder:
        self._condition["environment"] = expected
        return self

    def custom(self, predicate: Callable[..., bool] | str) -> RuleBuilder:
        """A callable (never persisted) or the id of a registered predicate."""
        self._condition["custom"] = predicate
        return self

    def build(self) -> PolicyRule:
        if not self._id:
            raise ValueError("Rule must have id and effect")
        return PolicyRule(
            id=self._id,
            effect=self._effect,
            condition=parse_condition(self._condition),
            priority=self._priority,
            description=self._description,
        )


# -- Policy templates --------------------------------------------------------


def read_only_policy(policy_id: str = "read-only") -> Policy:
    return (
        PolicyBuilder(policy_id, "Read-Only Mode")
        .description("Allow only read operations, deny all write/delete/execute operations")
        .priority(1000)
        .default_effect(Effect.DENY)
        .add_rule(
            RuleBuilder("allow-reads", Effect.ALLOW)
            .description("Allow all read operations")
            .type(PermissionType.FILE_READ)
            .build()
        )
        .add_rule(
            RuleBuilder("deny-writes", Effect.DENY)
            .description("Deny all write operations")
            .type(PermissionType.FILE_WRITE, PermissionType.FILE_DELETE)
            .build()
        )
        .add_rule(
            RuleBuilder("deny-bash", Effect.DENY)
            .description("Deny all bash commands")
            .type(PermissionType.BASH_COMMAND)
            .build()
        )
        .build()
    )


def work_hours_policy(
    policy_id: str = "work-hours", start: str = "09:00", end: str = "18:00",
) -> Policy:
    return (
        PolicyBuilder(policy_id, "Work Hours Policy")
        .description(f"Allow operations only during work hours ({start}-{end})")
        .priority(500)
        .default_effect(Effect.DENY)
        .add_rule(
            RuleBuilder("work-hours-allow", Effect.ALLOW)
            .description("Allow operations during work hours")
            .time_range(start, end)
            .days_of_week(*WEEKDAYS)
            .build()
        )
        .build()
    )


def path_whitelist_policy(policy_id: str, allowed_paths: list[str]) -> Policy:
    return (
        PolicyBuilder(policy_id, "Path Whitelist")
        .description("Allow operations only in specified paths")
        .priority(800)
        .default_effect(Effect.DENY)
        .add_rule(
            RuleBuilder("path-whitelist", Effect.ALLOW)
            .description("Allow operations in whitelisted paths")
            .type(PermissionType.FILE_READ, PermissionType.FILE_WRITE, PermissionType.FILE_DELETE)
            .path(*allowed_paths)
            .build()
        )
        .build()
    )


# -- Tool-permission templates -----------------------------------------------


def read_only() -> list[ToolPermission]:
    reason = "Read-only mode"
    allowed = ("Read", "Glob", "Grep", "WebFetch")
    denied = ("Write", "Edit", "MultiEdit", "Bash")
    return [ToolPermission(tool=t, allowed=True, reason=reason) for t in allowed] + [
        ToolPermission(tool=t, allowed=False, reason=reason) for t in denied
    ]


def safe() -> list[ToolPermission]:
    return [
        ToolPermission(
            tool="Bash",
            allowed=True,
            restrictions=(
                ParameterRestriction(
                    parameter="command",
                    kind="blacklist",
                    values=("rm", "sudo", "chmod", "chown", "dd", "mkfs"),
                    description="Dangerous commands not allowed",
                ),
            ),
            reason="Safe mode",
        ),
        ToolPermission(
            tool="Write",
            allowed=True,
            restrictions=(
                ParameterRestriction(
                    parameter="file_path",
                    kind="pattern",
                    pattern=r"^(?!/etc|/sys|/proc)",
                    description="System directories not allowed",
                ),
            ),
            reason="Safe mode",
        ),
    ]


def project_only(project_dir: str) -> list[ToolPermission]:
    condition = parse_condition({
        "context": {"field": "workingDirectory", "operator": "contains", "value": project_dir},
    })
    return [
        ToolPermission(tool="*", allowed=True, conditions=(condition,), reason="Project-only mode"),
    ]


def time_restricted(start_hour: int, end_hour: int) -> list[ToolPermission]:
    """Allow everything from ``start_hour:00`` up to, not including, ``end_hour:00``."""
    if not 0 <= start_hour < end_hour <= 24:
        raise ValueError("Hours must satisfy 0 <= start_hour < end_hour <= 24")
    condition = parse_condition({
        "timeRange": {"start": f"{start_hour:02d}:00", "end": f"{end_hour - 1:02d}:59"},
    })
    return [
        ToolPermission(tool="*", allowed=True, conditions=(condition,), reason="Time-restricted mode"),
    ]
