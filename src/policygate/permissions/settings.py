"""The ``permissions`` block of settings.json: tool, path, command and network lists.

Each category is checked deny-first. A non-empty allow list is closed: a value
that matches none of its patterns is denied at that layer.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from policygate.permissions.conditions import path_matches, resolve_path
from policygate.permissions.patterns import first_token, glob_match
from policygate.types.config import DEFAULT_AUDIT_MAX_SIZE, AuditConfig
from policygate.types.permissions import (
    FILE_KINDS,
    Decision,
    PermissionRequest,
    PermissionType,
    RuleSource,
)


@dataclass(frozen=True, slots=True)
class PatternList:
    allow: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.allow and not self.deny

    def to_dict(self) -> dict[str, list[str]]:
        data: dict[str, list[str]] = {}
        if self.allow:
            data["allow"] = list(self.allow)
        if self.deny:
            data["deny"] = list(self.deny)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> PatternList:
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            allow=tuple(str(p) for p in data.get("allow") or ()),
            deny=tuple(str(p) for p in data.get("deny") or ()),
        )

    def union(self, other: PatternList) -> PatternList:
        return PatternList(
            allow=_dedupe(self.allow + other.allow),
            deny=_dedupe(self.deny + other.deny),
        )


def _dedupe(items: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


def matches_pattern(value: str, pattern: str) -> bool:
    """Exact, glob when the pattern has ``*`` or ``?``, otherwise substring."""
    if value == pattern:
        return True
    if "*" in pattern or "?" in pattern:
        return glob_match(value, pattern, pathname=False)
    return pattern in value


def _decide(candidates: list[str], patterns: PatternList, match: Any) -> bool | None:
    if any(match(value, p) for p in patterns.deny for value in candidates):
        return False
    if patterns.allow:
        return any(match(value, p) for p in patterns.allow for value in candidates)
    return None


@dataclass(frozen=True, slots=True)
class SettingsPermissions:
    """Parsed ``permissions`` block."""

    tools: PatternList = field(default_factory=PatternList)
    paths: PatternList = field(default_factory=PatternList)
    commands: PatternList = field(default_factory=PatternList)
    network: PatternList = field(default_factory=PatternList)
    audit: AuditConfig = field(default_factory=AuditConfig)

    @classmethod
    def from_dict(cls, data: Any) -> SettingsPermissions:
        if not isinstance(data, Mapping):
            return cls()
        audit = data.get("audit") if isinstance(data.get("audit"), Mapping) else {}
        return cls(
            tools=PatternList.from_dict(data.get("tools")),
            paths=PatternList.from_dict(data.get("paths")),
            commands=PatternList.from_dict(data.get("commands")),
            network=PatternList.from_dict(data.get("network")),
            audit=AuditConfig(
                enabled=bool(audit.get("enabled", False)),
                log_file=audit.get("logFile"),
                max_size=int(audit.get("maxSize") or DEFAULT_AUDIT_MAX_SIZE),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in ("tools", "paths", "commands", "network"):
            patterns: PatternList = getattr(self, name)
            if not patterns.empty:
                data[name] = patterns.to_dict()
        audit: dict[str, Any] = {"enabled": self.audit.enabled, "maxSize": self.audit.max_size}
        if self.audit.log_file:
            audit["logFile"] = self.audit.log_file
        data["audit"] = audit
        return data

    def union(self, other: SettingsPermissions) -> SettingsPermissions:
        """Combine user and project settings. *other*'s audit block wins when enabled."""
        return SettingsPermissions(
            tools=self.tools.union(other.tools),
            paths=self.paths.union(other.paths),
            commands=self.commands.union(other.commands),
            network=self.network.union(other.network),
            audit=other.audit if other.audit.enabled else self.audit,
        )

    # -- Per-category checks ---------------------------------------------

    def check_tool(self, tool: str) -> bool | None:
        return _decide([tool], self.tools, matches_pattern)

    def check_path(self, file_path: str, cwd: str) -> bool | None:
        resolved = resolve_path(file_path, cwd)
        return _decide([resolved], self.paths, lambda v, p: path_matches(v, p, cwd))

    def check_command(self, command: str) -> bool | None:
        return _decide([command, first_token(command)], self.commands, matches_pattern)

    def check_network(self, url: str) -> bool | None:
        try:
            host = urlsplit(url).hostname or url
        except ValueError:
            host = url
        return _decide([host, url], self.network, matches_pattern)

    def check(self, request: PermissionRequest, cwd: str) -> Decision | None:
        """First category to produce an answer decides; None when none applies."""
        result = self.check_tool(request.tool)
        if result is not None:
            return _decision(result, "Tool")

        resource = request.resource
        if not resource:
            return None
        if request.kind in FILE_KINDS:
            result = self.check_path(resource, cwd)
            if result is not None:
                return _decision(result, "Path")
        elif request.kind is PermissionType.BASH_COMMAND:
            result = self.check_command(resource)
            if result is not None:
                return _decision(result, "Command")
        elif request.kind is PermissionType.NETWORK_REQUEST:
            result = self.check_network(resource)
            if result is not None:
                return _decision(result, "Network")
        return None


def _decision(allowed: bool, category: str) -> Decision:
    verdict = "allowed" if allowed else "denied"
    return Decision(
        allowed=allowed,
        reason=f"{category} {verdict} by config",
        matched_rule=f"settings:{category.lower()}",
        source=RuleSource.SETTINGS,
    )
