"""Request, context and decision types shared by every permission layer."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class PermissionType(Enum):
    """Coarse category of a privileged action."""

    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_DELETE = "file_delete"
    BASH_COMMAND = "bash_command"
    NETWORK_REQUEST = "network_request"
    MCP_SERVER = "mcp_server"
    PLUGIN_INSTALL = "plugin_install"
    SYSTEM_CONFIG = "system_config"


FILE_KINDS = frozenset({
    PermissionType.FILE_READ,
    PermissionType.FILE_WRITE,
    PermissionType.FILE_DELETE,
})


class Effect(Enum):
    """Effect of a matching rule."""

    ALLOW = "allow"
    DENY = "deny"


class RuleSource(Enum):
    """Where a rule came from. Also the tie-break order for equal priorities."""

    CLI = "cli"
    POLICY = "policy"
    PROJECT = "project"
    SETTINGS = "settings"
    SESSION = "session"
    RUNTIME = "runtime"


SOURCE_WEIGHTS: dict[RuleSource, int] = {
    RuleSource.CLI: 50,
    RuleSource.POLICY: 40,
    RuleSource.PROJECT: 30,
    RuleSource.SETTINGS: 20,
    RuleSource.SESSION: 10,
    RuleSource.RUNTIME: 0,
}


class Scope(Enum):
    """Layer of the flat tool-permission store."""

    GLOBAL = "global"
    PROJECT = "project"
    SESSION = "session"


# session > project > global, independent of numeric priority
SCOPE_RANK: dict[Scope, int] = {Scope.GLOBAL: 0, Scope.PROJECT: 1, Scope.SESSION: 2}


class AnswerScope(Enum):
    """Lifetime of a human answer."""

    ONCE = "once"
    SESSION = "session"
    ALWAYS = "always"


@dataclass(frozen=True, slots=True)
class PermissionRequest:
    """A request to perform one privileged action."""

    kind: PermissionType
    tool: str
    description: str = ""
    resource: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Per-call evaluation context. Timestamps are epoch seconds."""

    working_directory: str
    session_id: str = "default"
    timestamp: float = field(default_factory=time.time)
    environment: dict[str, str] = field(default_factory=dict)
    user: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def current(
        cls, *, session_id: str = "default", cwd: str | None = None,
    ) -> EvaluationContext:
        """Build a context from the running process."""
        return cls(
            working_directory=cwd or os.getcwd(),
            session_id=session_id,
            environment=dict(os.environ),
            user=os.environ.get("USER") or os.environ.get("USERNAME"),
        )


@dataclass(frozen=True, slots=True)
class Decision:
    """Final or candidate outcome of a permission evaluation."""

    allowed: bool
    reason: str
    matched_rule: str | None = None
    matched_policy: str | None = None
    priority: int = 0
    violations: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()
    source: RuleSource | None = None
    specificity: int = 0
    created_at: float = 0.0
    scope: str | None = None
    user_decided: bool = False
    resolution: str | None = None

    def __post_init__(self) -> None:
        if not self.reason:
            raise ValueError("Decision requires a non-empty reason")

    @property
    def matched(self) -> bool:
        return self.matched_rule is not None or self.matched_policy is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "allowed": self.allowed,
            "reason": self.reason,
            "priority": self.priority,
        }
        if self.matched_rule is not None:
            data["matchedRule"] = self.matched_rule
        if self.matched_policy is not None:
            data["matchedPolicy"] = self.matched_policy
        if self.violations:
            data["violations"] = list(self.violations)
        if self.suggestions:
            data["suggestions"] = list(self.suggestions)
        if self.source is not None:
            data["source"] = self.source.value
        if self.scope is not None:
            data["scope"] = self.scope
        if self.resolution is not None:
            data["resolution"] = self.resolution
        return data


@dataclass(frozen=True, slots=True)
class PromptAnswer:
    """What the interactive prompt returned."""

    allowed: bool
    remember: bool = False
    scope: AnswerScope = AnswerScope.ONCE
    timed_out: bool = False
    cancelled: bool = False


@dataclass(frozen=True, slots=True)
class RememberedPermission:
    """A remembered human answer."""

    kind: PermissionType
    pattern: str
    allowed: bool
    scope: AnswerScope
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "pattern": self.pattern,
            "allowed": self.allowed,
            "scope": self.scope.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RememberedPermission:
        return cls(
            kind=PermissionType(data["type"]),
            pattern=str(data.get("pattern", "*")),
            allowed=bool(data["allowed"]),
            scope=AnswerScope(data.get("scope", "always")),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """One immutable line of the audit log."""

    timestamp: str
    kind: PermissionType
    tool: str
    decision: Effect
    reason: str
    resource: str | None = None
    scope: str | None = None
    user_decided: bool = False

    @classmethod
    def from_decision(
        cls, request: PermissionRequest, decision: Decision,
    ) -> AuditEntry:
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            kind=request.kind,
            tool=request.tool,
            resource=request.resource,
            decision=Effect.ALLOW if decision.allowed else Effect.DENY,
            reason=decision.reason,
            scope=decision.scope,
            user_decided=decision.user_decided,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "tool": self.tool,
        }
        if self.resource is not None:
            data["resource"] = self.resource
        data["decision"] = self.decision.value
        data["reason"] = self.reason
        if self.scope is not None:
            data["scope"] = self.scope
        data["user_decided"] = self.user_decided
        return data
