"""Match concrete tool calls against parsed rules."""

from __future__ import annotations

import os
from typing import Any

from policygate.permissions.patterns import CASE_INSENSITIVE_FS, glob_match
from policygate.permissions.rules import MatcherKind, Rule
from policygate.types.permissions import PermissionType

FILE_TOOLS = frozenset({"Read", "Write", "Edit", "MultiEdit"})
SEARCH_TOOLS = frozenset({"Glob", "Grep"})
URL_TOOLS = frozenset({"WebFetch", "WebSearch"})
COMMAND_TOOLS = frozenset({"Bash"})

TOOL_KINDS: dict[str, PermissionType] = {
    "Read": PermissionType.FILE_READ,
    "Glob": PermissionType.FILE_READ,
    "Grep": PermissionType.FILE_READ,
    "Write": PermissionType.FILE_WRITE,
    "Edit": PermissionType.FILE_WRITE,
    "MultiEdit": PermissionType.FILE_WRITE,
    "Bash": PermissionType.BASH_COMMAND,
    "WebFetch": PermissionType.NETWORK_REQUEST,
    "WebSearch": PermissionType.NETWORK_REQUEST,
}


def kind_for_tool(tool_name: str) -> PermissionType:
    """Best-effort permission category for a tool name."""
    if tool_name in TOOL_KINDS:
        return TOOL_KINDS[tool_name]
    if tool_name.startswith("mcp__"):
        return PermissionType.MCP_SERVER
    return PermissionType.SYSTEM_CONFIG


def extract_parameter(tool_name: str, params: dict[str, Any]) -> str | None:
    """The parameter a tool's rules are matched against, if the tool has one."""
    if tool_name in COMMAND_TOOLS:
        value = params.get("command")
    elif tool_name in FILE_TOOLS:
        value = params.get("file_path") or params.get("path")
    elif tool_name in SEARCH_TOOLS:
        value = params.get("path")
    elif tool_name in URL_TOOLS:
        value = params.get("url")
    else:
        return None
    return value if isinstance(value, str) and value else None


def tool_matches(tool_name: str, pattern: str) -> bool:
    """Rule tool match: exact name, or the ``*`` wildcard."""
    return pattern == "*" or pattern == tool_name


def matches(rule: Rule, tool_name: str, params: dict[str, Any] | None = None) -> bool:
    """Check whether a tool call matches a rule."""
    if rule.broken:
        return False
    if not tool_matches(tool_name, rule.tool):
        return False
    if not rule.has_params or rule.matcher is MatcherKind.ANY:
        return True

    params = params or {}
    if tool_name in COMMAND_TOOLS:
        command = params.get("command")
        return isinstance(command, str) and bool(command) and _compare(rule, command)
    if tool_name in FILE_TOOLS:
        return _match_path(rule, params.get("file_path") or params.get("path"))
    if tool_name in SEARCH_TOOLS:
        search_path = params.get("path")
        if not search_path:
            # Searching from the current directory is never privileged by itself.
            return True
        return _match_path(rule, search_path)
    if tool_name in URL_TOOLS:
        url = params.get("url")
        return isinstance(url, str) and bool(url) and _compare(rule, url, ignore_case=True)
    return any(
        _compare(rule, value) for value in params.values() if isinstance(value, str)
    )


def _match_path(rule: Rule, value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    normalized = os.path.normpath(value)
    match rule.matcher:
        case MatcherKind.PREFIX:
            return normalized.startswith(os.path.normpath(rule.operand))
        case MatcherKind.EXACT:
            return normalized == os.path.normpath(rule.operand)
        case MatcherKind.GLOB:
            return glob_match(normalized, rule.operand, ignore_case=CASE_INSENSITIVE_FS)
        case _:
            return _compare(rule, normalized)


def _compare(rule: Rule, value: str, *, ignore_case: bool = False) -> bool:
    """Per-kind comparison for non-path values."""
    match rule.matcher:
        case MatcherKind.ANY:
            return True
        case MatcherKind.PREFIX:
            return value.startswith(rule.operand)
        case MatcherKind.EXACT:
            return value == rule.operand
        case MatcherKind.GLOB:
            return glob_match(value, rule.operand, ignore_case=ignore_case, pathname=False)
        case MatcherKind.REGEX:
            return rule.compiled is not None and bool(rule.compiled.search(value))
        case _:
            return False
