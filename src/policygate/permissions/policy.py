"""Policy store: named, prioritized bundles of condition-bearing rules.

Policies are evaluated in priority order. Each enabled policy contributes at
most one candidate (its first matching rule); candidates from all policies
are then resolved with deny-precedence. A policy's own ``effect`` is
descriptive only and never produces a candidate.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from policygate.errors import InvalidPolicyError, PolicyNotFoundError
from policygate.permissions.conditions import (
    ALWAYS,
    Condition,
    condition_to_dict,
    evaluate,
    parse_condition,
    validate_condition,
)
from policygate.permissions.persistence import (
    Persister,
    dump_document,
    load_document,
    write_text_atomic,
)
from policygate.permissions.registry import PredicateRegistry
from policygate.permissions.resolver import resolve
from policygate.types.permissions import (
    Decision,
    Effect,
    EvaluationContext,
    PermissionRequest,
    RuleSource,
)

logger = logging.getLogger(__name__)

_EFFECTS = ("allow", "deny")


@dataclass(frozen=True, slots=True)
class PolicyRule:
    """One rule inside a policy."""

    id: str
    effect: Effect
    condition: Condition = ALWAYS
    priority: int = 0
    description: str = ""

    def to_dict(self, *, strip_custom: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id}
        if self.description:
            data["description"] = self.description
        data["condition"] = condition_to_dict(self.condition, strip_custom=strip_custom)
        data["effect"] = self.effect.value
        if self.priority:
            data["priority"] = self.priority
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PolicyRule:
        return cls(
            id=str(data["id"]),
            effect=Effect(data["effect"]),
            condition=parse_condition(data.get("condition")),
            priority=int(data.get("priority", 0) or 0),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True, slots=True)
class Policy:
    """A named, independently toggleable bundle of rules."""

    id: str
    name: str
    priority: int = 100
    effect: Effect = Effect.DENY
    rules: tuple[PolicyRule, ...] = ()
    enabled: bool = True
    description: str = ""
    version: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, *, strip_custom: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.description:
            data["description"] = self.description
        if self.version is not None:
            data["version"] = self.version
        data["rules"] = [r.to_dict(strip_custom=strip_custom) for r in self.rules]
        data["priority"] = self.priority
        data["effect"] = self.effect.value
        data["enabled"] = self.enabled
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Policy:
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            priority=int(data.get("priority", 100)),
            effect=Effect(data.get("effect", "deny")),
            rules=tuple(PolicyRule.from_dict(r) for r in data.get("rules", [])),
            enabled=bool(data.get("enabled", True)),
            description=str(data.get("description", "")),
            version=data.get("version"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def validate_policy(policy: Policy | Mapping[str, Any]) -> ValidationResult:
    """Check a policy document without raising."""
    data = policy.to_dict(strip_custom=False) if isinstance(policy, Policy) else policy
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(data, Mapping):
        return ValidationResult(valid=False, errors=("Policy must be an object",))

    if not data.get("id") or not isinstance(data.get("id"), str):
        errors.append("Policy must have a valid id")
    if not data.get("name") or not isinstance(data.get("name"), str):
        errors.append("Policy must have a valid name")
    priority = data.get("priority")
    if isinstance(priority, bool) or not isinstance(priority, (int, float)):
        errors.append("Policy must have a numeric priority")
        priority = None
    if data.get("effect") not in _EFFECTS:
        errors.append('Policy effect must be "allow" or "deny"')

    rules = data.get("rules")
    if not isinstance(rules, (list, tuple)):
        errors.append("Policy must have an array of rules")
        rules = []
    else:
        for index, rule in enumerate(rules):
            errors.extend(_validate_rule(rule, index))
        ids = [r.get("id") for r in rules if isinstance(r, Mapping)]
        duplicates = sorted({str(i) for i in ids if ids.count(i) > 1})
        if duplicates:
            errors.append(f"Duplicate rule IDs: {', '.join(duplicates)}")

    if not rules:
        warnings.append("Policy has no rules (will always use default effect)")
    if priority is not None and priority < 0:
        warnings.append("Negative priority may cause unexpected evaluation order")

    return ValidationResult(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


def _validate_rule(rule: Any, index: int) -> list[str]:
    if not isinstance(rule, Mapping):
        return [f"Rule {index} must be an object"]
    errors: list[str] = []
    if not rule.get("id") or not isinstance(rule.get("id"), str):
        errors.append(f"Rule {index} must have a valid id")
    if rule.get("effect") not in _EFFECTS:
        errors.append(f'Rule {index} effect must be "allow" or "deny"')
    priority = rule.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, (int, float)):
        errors.append(f"Rule {index} priority must be numeric")
    condition = rule.get("condition", {})
    if not isinstance(condition, Mapping):
        errors.append(f"Rule {index} must have a condition object")
    else:
        errors.extend(validate_condition(condition, f"Rule {index}"))
    return errors


def _coerce(policy: Policy | Mapping[str, Any]) -> Policy:
    result = validate_policy(policy)
    if not result.valid:
        raise InvalidPolicyError(list(result.errors))
    for warning in result.warnings:
        logger.debug("Policy %s: %s", _policy_id(policy), warning)
    return policy if isinstance(policy, Policy) else Policy.from_dict(policy)


class PolicyStore:
    """Holds policies behind an atomically swapped, pre-sorted snapshot."""

    def __init__(
        self,
        registry: PredicateRegistry | None = None,
        *,
        path: str | Path | None = None,
        persister: Persister | None = None,
    ) -> None:
        self._registry = registry
        self._path = Path(path) if path is not None else None
        self._persister = persister
        self._lock = threading.Lock()
        self._policies: dict[str, Policy] = {}
        self._added_at: dict[str, float] = {}
        # Enabled policies by priority desc, each with its rules by priority desc.
        self._snapshot: tuple[tuple[Policy, float, tuple[PolicyRule, ...]], ...] = ()

    # -- Mutation ------------------------------------------------------------

    def _commit(self) -> None:
        """Rebuild the snapshot. Caller holds the lock."""
        enabled = [p for p in self._policies.values() if p.enabled]
        enabled.sort(key=lambda p: p.priority, reverse=True)
        self._snapshot = tuple(
            (p, self._added_at[p.id], tuple(sorted(p.rules, key=lambda r: r.priority, reverse=True)))
            for p in enabled
        )

    def _changed(self) -> None:
        if self._path is None or self._persister is None:
            return
        # Submission order matches mutation order.
        with self._lock:
            self._persister.submit(self._path, self.export())

    def add_policy(self, policy: Policy | Mapping[str, Any]) -> Policy:
        """Validate and store a policy, replacing any policy with the same id."""
        stored = self._store(policy)
        self._changed()
        return stored

    def _store(self, policy: Policy | Mapping[str, Any]) -> Policy:
        stored = _coerce(policy)
        with self._lock:
            self._policies = {**self._policies, stored.id: stored}
            self._added_at = {**self._added_at, stored.id: time.time()}
            self._commit()
        return stored

    def remove_policy(self, policy_id: str) -> bool:
        with self._lock:
            removed = policy_id in self._policies
            self._policies = {k: p for k, p in self._policies.items() if k != policy_id}
            self._added_at = {k: t for k, t in self._added_at.items() if k != policy_id}
            self._commit()
        if removed:
            self._changed()
        return removed

    def update_policy(self, policy_id: str, **changes: Any) -> Policy:
        """Apply field changes to a stored policy and re-validate it."""
        with self._lock:
            current = self._policies.get(policy_id)
            if current is None:
                raise PolicyNotFoundError(policy_id)
            if "rules" in changes:
                changes["rules"] = tuple(
                    r if isinstance(r, PolicyRule) else PolicyRule.from_dict(r)
                    for r in changes["rules"]
                )
            if isinstance(changes.get("effect"), str):
                changes["effect"] = Effect(changes["effect"])
            updated = _coerce(replace(current, **changes))
            if updated.id != policy_id:
                raise InvalidPolicyError(["Policy id cannot be changed"])
            self._policies = {**self._policies, policy_id: updated}
            self._commit()
        self._changed()
        return updated

    def enable(self, policy_id: str) -> None:
        self._set_enabled(policy_id, True)

    def disable(self, policy_id: str) -> None:
        self._set_enabled(policy_id, False)

    def _set_enabled(self, policy_id: str, enabled: bool) -> None:
        with self._lock:
            current = self._policies.get(policy_id)
            if current is None:
                raise PolicyNotFoundError(policy_id)
            self._policies = {**self._policies, policy_id: replace(current, enabled=enabled)}
            self._commit()
        self._changed()

    def clear(self) -> None:
        with self._lock:
            self._policies = {}
            self._added_at = {}
            self._commit()
        self._changed()

    # -- Queries -------------------------------------------------------------

    def get_policy(self, policy_id: str) -> Policy | None:
        return self._policies.get(policy_id)

    def list_policies(self) -> list[Policy]:
        return sorted(self._policies.values(), key=lambda p: p.priority, reverse=True)

    def stats(self) -> dict[str, int]:
        policies = list(self._policies.values())
        enabled = sum(1 for p in policies if p.enabled)
        return {
            "total": len(policies),
            "enabled": enabled,
            "disabled": len(policies) - enabled,
            "rules": sum(len(p.rules) for p in policies),
        }

    # -- Evaluation ----------------------------------------------------------

    def candidates(
        self, request: PermissionRequest, context: EvaluationContext,
    ) -> list[Decision]:
        """First matching rule of every enabled policy, as candidate decisions."""
        found: list[Decision] = []
        for policy, added_at, rules in self._snapshot:
            for rule in rules:
                if evaluate(rule.condition, request, context, self._registry):
                    found.append(self._decision(policy, rule, added_at))
                    break
        return found

    def evaluate(
        self,
        request: PermissionRequest,
        context: EvaluationContext,
        default: Decision | None = None,
    ) -> Decision:
        return resolve(self.candidates(request, context), default)

    def simulate(
        self, request: PermissionRequest, context: EvaluationContext,
    ) -> list[dict[str, Any]]:
        """Every matching rule across enabled policies, highest priority first."""
        matches: list[dict[str, Any]] = []
        for policy, _, rules in self._snapshot:
            for rule in rules:
                if evaluate(rule.condition, request, context, self._registry):
                    matches.append({
                        "policy": policy.id,
                        "rule": rule.id,
                        "effect": rule.effect.value,
                        "priority": policy.priority,
                        "rule_priority": rule.priority,
                        "description": rule.description,
                    })
        return matches

    @staticmethod
    def _decision(policy: Policy, rule: PolicyRule, added_at: float) -> Decision:
        return Decision(
            allowed=rule.effect is Effect.ALLOW,
            reason=rule.description or f"Matched rule {rule.id} in policy {policy.name}",
            matched_rule=rule.id,
            matched_policy=policy.id,
            priority=policy.priority,
            source=RuleSource.POLICY,
            specificity=0 if rule.condition.is_empty else 1,
            created_at=added_at,
        )

    # -- Persistence ---------------------------------------------------------

    def export(self, policy_ids: list[str] | None = None) -> list[dict[str, Any]]:
        """Serializable policies. Callable custom predicates are stripped."""
        policies = self.list_policies()
        if policy_ids is not None:
            policies = [p for p in policies if p.id in policy_ids]
        return [p.to_dict(strip_custom=True) for p in policies]

    def import_(self, data: Any, *, replace_all: bool = False) -> int:
        """Add every valid policy from *data*; invalid ones are skipped with a warning."""
        count = self._import(data, replace_all=replace_all)
        self._changed()
        return count

    def _import(self, data: Any, *, replace_all: bool = False) -> int:
        if isinstance(data, Mapping):
            data = data.get("policies", [data] if "id" in data else [])
        if not isinstance(data, list):
            logger.warning("Policy document must be a list of policies")
            return 0
        if replace_all:
            with self._lock:
                self._policies = {}
                self._added_at = {}
                self._commit()
        count = 0
        for item in data:
            try:
                self._store(item)
            except InvalidPolicyError as exc:
                logger.warning("Skipping policy %r: %s", _policy_id(item), exc)
                continue
            count += 1
        return count

    def load(self, path: str | Path) -> int:
        """Load policies from a JSON, YAML or TOML document without re-persisting them."""
        return self._import(load_document(path, default=[]))

    def save(self, path: str | Path, policy_ids: list[str] | None = None) -> None:
        """Write policies as JSON or YAML. Raises PersistenceError on failure."""
        text = dump_document(path, self.export(policy_ids))
        write_text_atomic(path, text)


def _policy_id(item: Any) -> Any:
    return item.get("id") if isinstance(item, Mapping) else getattr(item, "id", None)
