"""Flat tool permissions layered across global, project and session scopes.

Each scope maps a tool pattern to one :class:`ToolPermission`. The merged
view is rebuilt on every mutation according to the :class:`InheritanceConfig`
and swapped in as one tuple, so a concurrent ``is_allowed`` sees either the
old or the new view, never a mix.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from policygate.permissions.conditions import (
    Condition,
    condition_to_dict,
    evaluate_all,
    parse_condition,
)
from policygate.permissions.matcher import extract_parameter, kind_for_tool
from policygate.permissions.patterns import first_token, glob_match, try_compile_regex
from policygate.permissions.persistence import Persister, load_document
from policygate.permissions.registry import UNSERIALIZABLE_PREDICATE, PredicateRegistry
from policygate.permissions.resolver import default_decision
from policygate.types.config import InheritanceConfig, MergeStrategy
from policygate.types.permissions import (
    SCOPE_RANK,
    Decision,
    EvaluationContext,
    PermissionRequest,
    RuleSource,
    Scope,
)

logger = logging.getLogger(__name__)

FILE_VERSION = "1.0.0"

RESTRICTION_KINDS = frozenset({"whitelist", "blacklist", "pattern", "validator", "range"})

_SCOPE_SOURCES = {
    Scope.GLOBAL: RuleSource.SETTINGS,
    Scope.PROJECT: RuleSource.PROJECT,
    Scope.SESSION: RuleSource.SESSION,
}


@dataclass(frozen=True, slots=True)
class ParameterRestriction:
    """Validation applied to one parameter after a permission matched."""

    parameter: str
    kind: str
    values: tuple[Any, ...] = ()
    pattern: str | None = None
    validator: Callable[[Any], bool] | str | None = None
    min: float | None = None
    max: float | None = None
    required: bool = False
    description: str = ""
    compiled: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.kind == "pattern" and self.pattern is not None:
            object.__setattr__(self, "compiled", try_compile_regex(self.pattern))

    def check(self, value: Any, registry: PredicateRegistry | None = None) -> bool:
        """True when *value* satisfies the restriction. Unknown kinds fail."""
        match self.kind:
            case "whitelist":
                return _in_values(value, self.values)
            case "blacklist":
                return not _in_values(value, self.values)
            case "pattern":
                return (
                    isinstance(value, str)
                    and self.compiled is not None
                    and bool(self.compiled.search(value))
                )
            case "validator":
                fn = self._validator(registry)
                if fn is None:
                    return False
                try:
                    return bool(fn(value))
                except Exception:
                    logger.warning(
                        "Validator for parameter %r raised; treating as violation",
                        self.parameter, exc_info=True,
                    )
                    return False
            case "range":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    return False
                if self.min is not None and value < self.min:
                    return False
                if self.max is not None and value > self.max:
                    return False
                return True
            case _:
                return False

    def _validator(self, registry: PredicateRegistry | None) -> Callable[[Any], bool] | None:
        if callable(self.validator):
            return self.validator
        if isinstance(self.validator, str):
            fn = registry.get(self.validator) if registry is not None else None
            if fn is None:
                logger.warning("Unknown validator %r; treating as violation", self.validator)
            return fn
        return None

    @property
    def violation(self) -> str:
        return self.description or f"Parameter '{self.parameter}' violates restriction"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"parameter": self.parameter, "type": self.kind}
        if self.values:
            data["values"] = list(self.values)
        if self.pattern is not None:
            data["pattern"] = self.pattern
        if isinstance(self.validator, str):
            data["validator"] = self.validator
        elif callable(self.validator):
            data["validator"] = UNSERIALIZABLE_PREDICATE
        if self.min is not None:
            data["min"] = self.min
        if self.max is not None:
            data["max"] = self.max
        if self.required:
            data["required"] = True
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ParameterRestriction:
        kind = str(data.get("type", data.get("kind", "")))
        if kind not in RESTRICTION_KINDS:
            logger.warning("Unknown restriction type %r; it will always fail", kind)
        return cls(
            parameter=str(data["parameter"]),
            kind=kind,
            values=tuple(data.get("values") or ()),
            pattern=data.get("pattern"),
            validator=data.get("validator"),
            min=data.get("min"),
            max=data.get("max"),
            required=bool(data.get("required", False)),
            description=str(data.get("description", "")),
        )


def _in_values(value: Any, values: tuple[Any, ...]) -> bool:
    if value in values:
        return True
    return isinstance(value, str) and first_token(value) in values


@dataclass(frozen=True, slots=True)
class ToolPermission:
    """One layered-store entry."""

    tool: str
    allowed: bool
    priority: int = 0
    conditions: tuple[Condition, ...] = ()
    restrictions: tuple[ParameterRestriction, ...] = ()
    scope: Scope = Scope.SESSION
    reason: str = ""
    expires_at: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tool": self.tool, "allowed": self.allowed, "priority": self.priority}
        if self.conditions:
            data["conditions"] = [condition_to_dict(c) for c in self.conditions]
        if self.restrictions:
            data["parameterRestrictions"] = [r.to_dict() for r in self.restrictions]
        data["scope"] = self.scope.value
        if self.reason:
            data["reason"] = self.reason
        if self.expires_at is not None:
            data["expiresAt"] = self.expires_at
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], scope: Scope | None = None) -> ToolPermission:
        return cls(
            tool=str(data["tool"]),
            allowed=bool(data["allowed"]),
            priority=int(data.get("priority", 0) or 0),
            conditions=tuple(parse_condition(c) for c in data.get("conditions") or ()),
            restrictions=tuple(
                ParameterRestriction.from_dict(r) for r in data.get("parameterRestrictions") or ()
            ),
            scope=scope or Scope(data.get("scope", "session")),
            reason=str(data.get("reason", "")),
            expires_at=data.get("expiresAt"),
            metadata=dict(data.get("metadata") or {}),
        )


def merge_permissions(base: ToolPermission, override: ToolPermission) -> ToolPermission:
    """Combine two entries for the same pattern: lists concatenate, max priority wins."""
    return replace(
        override,
        conditions=base.conditions + override.conditions,
        restrictions=base.restrictions + override.restrictions,
        priority=max(base.priority, override.priority),
    )


def tool_pattern_matches(tool_name: str, pattern: str) -> bool:
    return tool_name == pattern or glob_match(tool_name, pattern, pathname=False)


def build_suggestions(permission: ToolPermission, violations: list[str]) -> list[str]:
    suggestions: list[str] = []
    if not permission.allowed:
        suggestions.append(f"Tool '{permission.tool}' is not allowed in current context")
        if permission.reason:
            suggestions.append(f"Reason: {permission.reason}")
        suggestions.append(f"Permission scope: {permission.scope.value}")
    if violations:
        suggestions.append("Parameter violations detected:")
        suggestions.extend(f"  - {v}" for v in violations)
    whitelists = [r for r in permission.restrictions if r.kind == "whitelist" and r.values]
    if whitelists:
        suggestions.append("Allowed parameter values:")
        for restriction in whitelists:
            values = ", ".join(str(v) for v in restriction.values)
            suggestions.append(f"  {restriction.parameter}: {values}")
    return suggestions


class LayeredPermissionStore:
    """Tool permissions at global, project and session scope."""

    def __init__(
        self,
        registry: PredicateRegistry | None = None,
        *,
        inheritance: InheritanceConfig | None = None,
        global_path: str | Path | None = None,
        project_path: str | Path | None = None,
        persister: Persister | None = None,
        default_allow: bool = True,
    ) -> None:
        self._registry = registry
        self._inheritance = inheritance or InheritanceConfig()
        self._paths: dict[Scope, Path | None] = {
            Scope.GLOBAL: Path(global_path) if global_path is not None else None,
            Scope.PROJECT: Path(project_path) if project_path is not None else None,
            Scope.SESSION: None,
        }
        self._persister = persister
        self._default_allow = default_allow
        self._lock = threading.Lock()
        self._scopes: dict[Scope, dict[str, ToolPermission]] = {s: {} for s in Scope}
        self._merged: tuple[ToolPermission, ...] = ()

    # -- Loading and saving ------------------------------------------------

    def load(self) -> None:
        """Read the global and project files. Missing or corrupt files are skipped."""
        for scope in (Scope.GLOBAL, Scope.PROJECT):
            path = self._paths[scope]
            if path is None:
                continue
            data = load_document(path, default={})
            if not isinstance(data, Mapping):
                logger.warning("Ignoring %s: expected an object", path)
                continue
            self._load_config(data, scope)

    def _load_config(self, data: Mapping[str, Any], scope: Scope) -> None:
        entries: dict[str, ToolPermission] = {}
        for item in data.get("permissions") or ():
            try:
                permission = ToolPermission.from_dict(item, scope)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid tool permission %r: %s", item, exc)
                continue
            entries[permission.tool] = permission
        with self._lock:
            if isinstance(data.get("inheritance"), Mapping):
                self._inheritance = _merge_inheritance(self._inheritance, data["inheritance"])
            self._scopes[scope] = entries
            self._rebuild()

    def _save(self, scope: Scope) -> None:
        path = self._paths.get(scope)
        if path is None or self._persister is None:
            return
        # Submission order matches mutation order.
        with self._lock:
            document = self._document(list(self._scopes[scope].values()))
            self._persister.submit(path, document)

    def _document(self, permissions: list[ToolPermission]) -> dict[str, Any]:
        return {
            "version": FILE_VERSION,
            "inheritance": self._inheritance.to_dict(),
            "permissions": [p.to_dict() for p in permissions],
        }

    # -- Merging -----------------------------------------------------------

    def _rebuild(self) -> None:
        """Recompute the merged view. Caller holds the lock."""
        config = self._inheritance
        merged: dict[str, ToolPermission] = {}
        extras: list[ToolPermission] = []

        if config.inherit_global:
            merged.update(self._scopes[Scope.GLOBAL])

        if config.inherit_project:
            for key, permission in self._scopes[Scope.PROJECT].items():
                existing = merged.get(key)
                match config.merge_strategy:
                    case MergeStrategy.MERGE if existing is not None:
                        merged[key] = merge_permissions(existing, permission)
                    case MergeStrategy.UNION if existing is not None:
                        extras.append(permission)
                    case _:
                        if existing is None or config.override_global:
                            merged[key] = permission

        for key, permission in self._scopes[Scope.SESSION].items():
            merged[key] = permission
            extras = [e for e in extras if e.tool != key]

        view = list(merged.values()) + extras
        view.sort(key=lambda p: (SCOPE_RANK[p.scope], p.priority), reverse=True)
        self._merged = tuple(view)

    # -- Evaluation --------------------------------------------------------

    def applicable(self, tool_name: str, now: float | None = None) -> list[ToolPermission]:
        """Non-expired merged entries whose pattern matches, in evaluation order."""
        now = time.time() if now is None else now
        return [
            p for p in self._merged
            if tool_pattern_matches(tool_name, p.tool) and not p.expired(now)
        ]

    def match(
        self,
        tool_name: str,
        params: dict[str, Any] | None,
        context: EvaluationContext,
    ) -> Decision | None:
        """The decision of the first entry whose conditions hold, or None."""
        params = params or {}
        request = PermissionRequest(
            kind=kind_for_tool(tool_name),
            tool=tool_name,
            resource=extract_parameter(tool_name, params),
            details=dict(params),
        )
        for permission in self.applicable(tool_name, context.timestamp):
            if not evaluate_all(permission.conditions, request, context, self._registry):
                continue

            violations = self._violations(permission, params)
            if violations:
                return self._decision(
                    permission,
                    allowed=False,
                    reason="Parameter restrictions violated",
                    violations=violations,
                )
            if permission.allowed:
                return self._decision(
                    permission, allowed=True,
                    reason=permission.reason or "Permission granted by matching rule",
                )
            return self._decision(
                permission, allowed=False,
                reason=permission.reason or "Permission denied by matching rule",
            )
        return None

    def is_allowed(
        self,
        tool_name: str,
        params: dict[str, Any] | None,
        context: EvaluationContext,
    ) -> Decision:
        decision = self.match(tool_name, params, context)
        if decision is None:
            return default_decision(self._default_allow)
        return decision

    def _violations(self, permission: ToolPermission, params: dict[str, Any]) -> list[str]:
        violations: list[str] = []
        for restriction in permission.restrictions:
            if restriction.parameter not in params or params[restriction.parameter] is None:
                if restriction.required:
                    violations.append(f"Required parameter '{restriction.parameter}' is missing")
                continue
            if not restriction.check(params[restriction.parameter], self._registry):
                violations.append(restriction.violation)
        return violations

    @staticmethod
    def _decision(
        permission: ToolPermission,
        *,
        allowed: bool,
        reason: str,
        violations: list[str] | None = None,
    ) -> Decision:
        suggestions = [] if allowed else build_suggestions(permission, violations or [])
        return Decision(
            allowed=allowed,
            reason=reason,
            matched_rule=permission.tool,
            priority=permission.priority,
            violations=tuple(violations or ()),
            suggestions=tuple(suggestions),
            source=_SCOPE_SOURCES[permission.scope],
            specificity=1 if (permission.conditions or permission.restrictions) else 0,
            scope=permission.scope.value,
        )

    def check_parameter(
        self,
        tool_name: str,
        parameter: str,
        value: Any,
        now: float | None = None,
    ) -> bool:
        """Whether *value* passes every restriction on *parameter* for *tool_name*."""
        for permission in self.applicable(tool_name, now):
            for restriction in permission.restrictions:
                if restriction.parameter == parameter and not restriction.check(value, self._registry):
                    return False
        return True

    # -- Mutation ----------------------------------------------------------

    def add_permission(
        self, permission: ToolPermission | Mapping[str, Any], scope: Scope = Scope.SESSION,
    ) -> ToolPermission:
        if isinstance(permission, Mapping):
            permission = ToolPermission.from_dict(permission, scope)
        stored = replace(permission, scope=scope)
        with self._lock:
            self._scopes[scope] = {**self._scopes[scope], stored.tool: stored}
            self._rebuild()
        self._save(scope)
        return stored

    def add_permissions(
        self, permissions: list[ToolPermission], scope: Scope = Scope.SESSION,
    ) -> None:
        with self._lock:
            entries = dict(self._scopes[scope])
            for permission in permissions:
                entries[permission.tool] = replace(permission, scope=scope)
            self._scopes[scope] = entries
            self._rebuild()
        self._save(scope)

    def remove_permission(self, tool: str, scope: Scope | None = None) -> bool:
        scopes = [scope] if scope is not None else list(Scope)
        removed = False
        with self._lock:
            for s in scopes:
                if tool in self._scopes[s]:
                    removed = True
                    self._scopes[s] = {k: p for k, p in self._scopes[s].items() if k != tool}
            self._rebuild()
        for s in scopes:
            self._save(s)
        return removed

    def update_permission(
        self, tool: str, scope: Scope = Scope.SESSION, **changes: Any,
    ) -> bool:
        """Apply field changes to one entry. Tool and scope cannot change."""
        changes.pop("tool", None)
        changes.pop("scope", None)
        with self._lock:
            existing = self._scopes[scope].get(tool)
            if existing is None:
                return False
            self._scopes[scope] = {**self._scopes[scope], tool: replace(existing, **changes)}
            self._rebuild()
        self._save(scope)
        return True

    def clear(self, scope: Scope | None = None) -> None:
        scopes = [scope] if scope is not None else list(Scope)
        with self._lock:
            for s in scopes:
                self._scopes[s] = {}
            self._rebuild()
        for s in scopes:
            self._save(s)

    def cleanup_expired(self, now: float | None = None) -> int:
        """Delete expired entries from every scope. Returns how many were removed."""
        now = time.time() if now is None else now
        removed = 0
        touched: list[Scope] = []
        with self._lock:
            for scope, entries in self._scopes.items():
                kept = {k: p for k, p in entries.items() if not p.expired(now)}
                if len(kept) != len(entries):
                    removed += len(entries) - len(kept)
                    self._scopes[scope] = kept
                    touched.append(scope)
            self._rebuild()
        for scope in touched:
            self._save(scope)
        return removed

    @property
    def inheritance(self) -> InheritanceConfig:
        return self._inheritance

    def set_inheritance(self, **changes: Any) -> InheritanceConfig:
        with self._lock:
            if isinstance(changes.get("merge_strategy"), str):
                changes["merge_strategy"] = MergeStrategy(changes["merge_strategy"])
            self._inheritance = replace(self._inheritance, **changes)
            self._rebuild()
        return self._inheritance

    # -- Queries -----------------------------------------------------------

    def get_permissions(self, scope: Scope | None = None) -> list[ToolPermission]:
        if scope is not None:
            return list(self._scopes[scope].values())
        return list(self._merged)

    def get_tool_permission(self, tool: str) -> ToolPermission | None:
        for scope in (Scope.SESSION, Scope.PROJECT, Scope.GLOBAL):
            permission = self._scopes[scope].get(tool)
            if permission is not None:
                return permission
        return None

    def stats(self) -> dict[str, int]:
        merged = self._merged
        return {
            "total": len(merged),
            "allowed": sum(1 for p in merged if p.allowed),
            "denied": sum(1 for p in merged if not p.allowed),
            "conditional": sum(1 for p in merged if p.conditions),
            "restricted_parameters": sum(len(p.restrictions) for p in merged),
        }

    def query(
        self,
        *,
        allowed: bool | None = None,
        scope: Scope | None = None,
        has_conditions: bool | None = None,
        has_restrictions: bool | None = None,
        tool_pattern: str | None = None,
    ) -> list[ToolPermission]:
        results = self.get_permissions(scope)
        if allowed is not None:
            results = [p for p in results if p.allowed is allowed]
        if has_conditions is not None:
            results = [p for p in results if bool(p.conditions) is has_conditions]
        if has_restrictions is not None:
            results = [p for p in results if bool(p.restrictions) is has_restrictions]
        if tool_pattern:
            results = [p for p in results if tool_pattern_matches(p.tool, tool_pattern)]
        return results

    # -- Import / export ---------------------------------------------------

    def export(self, scope: Scope | None = None) -> str:
        return json.dumps(self._document(self.get_permissions(scope)), indent=2)

    def import_(self, config: str | Mapping[str, Any], scope: Scope = Scope.SESSION) -> bool:
        """Replace *scope* with the permissions in *config*. Returns False on bad input."""
        try:
            data = json.loads(config) if isinstance(config, str) else config
            if not isinstance(data, Mapping):
                raise ValueError("expected an object")
            entries = {
                p.tool: p
                for p in (ToolPermission.from_dict(item, scope) for item in data.get("permissions") or ())
            }
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Failed to import permissions: %s", exc)
            return False
        with self._lock:
            if isinstance(data.get("inheritance"), Mapping):
                self._inheritance = _merge_inheritance(self._inheritance, data["inheritance"])
            self._scopes[scope] = entries
            self._rebuild()
        self._save(scope)
        return True


def _merge_inheritance(current: InheritanceConfig, data: Mapping[str, Any]) -> InheritanceConfig:
    return InheritanceConfig.from_dict({**current.to_dict(), **data})
