"""Allow/deny lists of parsed rules, resolved with deny-precedence."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any

from policygate.permissions.matcher import matches
from policygate.permissions.resolver import resolve
from policygate.permissions.rules import Rule, parse_rule
from policygate.types.permissions import Decision, Effect, RuleSource


def rule_decision(rule: Rule) -> Decision:
    """The candidate decision produced by a matching rule."""
    return Decision(
        allowed=rule.effect is Effect.ALLOW,
        reason=f"Matched {rule.effect.value} rule: {rule.raw}",
        matched_rule=rule.raw,
        priority=rule.priority,
        source=rule.source,
        specificity=rule.specificity,
        created_at=rule.created_at,
    )


class RuleSet:
    """Mutable holder of an immutable rule snapshot.

    Mutators build a new tuple and swap it under a lock; readers take the
    current tuple once per call and never see a half-applied change.
    """

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._lock = threading.Lock()
        self._rules: tuple[Rule, ...] = tuple(rules or ())

    @property
    def rules(self) -> tuple[Rule, ...]:
        return self._rules

    @property
    def allow_rules(self) -> list[Rule]:
        return [r for r in self._rules if r.effect is Effect.ALLOW]

    @property
    def deny_rules(self) -> list[Rule]:
        return [r for r in self._rules if r.effect is Effect.DENY]

    def add(self, rule: Rule) -> None:
        with self._lock:
            self._rules = (*self._rules, rule)

    def add_text(
        self,
        text: str,
        effect: Effect = Effect.ALLOW,
        source: RuleSource = RuleSource.RUNTIME,
    ) -> Rule:
        """Parse and add one rule. RuleParseError propagates."""
        rule = parse_rule(text, effect, source)
        self.add(rule)
        return rule

    def extend(self, rules: list[Rule]) -> None:
        with self._lock:
            self._rules = (*self._rules, *rules)

    def remove(self, raw: str, effect: Effect | None = None) -> bool:
        """Remove rules whose text equals *raw*. Returns True if any were removed."""
        raw = raw.strip()
        with self._lock:
            kept = tuple(
                r for r in self._rules
                if not (r.raw == raw and (effect is None or r.effect is effect))
            )
            removed = len(kept) != len(self._rules)
            self._rules = kept
        return removed

    def clear(self) -> None:
        with self._lock:
            self._rules = ()

    def clear_by_source(self, source: RuleSource) -> None:
        with self._lock:
            self._rules = tuple(r for r in self._rules if r.source is not source)

    def matching_rules(self, tool_name: str, params: dict[str, Any] | None = None) -> list[Rule]:
        snapshot = self._rules
        return [r for r in snapshot if matches(r, tool_name, params)]

    def candidates(self, tool_name: str, params: dict[str, Any] | None = None) -> list[Decision]:
        return [rule_decision(r) for r in self.matching_rules(tool_name, params)]

    def check(
        self,
        tool_name: str,
        params: dict[str, Any] | None = None,
        default: Decision | None = None,
    ) -> Decision:
        """Resolve every matching rule. Falls back to *default* when none match."""
        return resolve(self.candidates(tool_name, params), default)

    def export(self) -> dict[str, list[str]]:
        snapshot = self._rules
        return {
            "allow": [r.raw for r in snapshot if r.effect is Effect.ALLOW],
            "deny": [r.raw for r in snapshot if r.effect is Effect.DENY],
        }

    def import_(
        self,
        data: dict[str, list[str]],
        source: RuleSource = RuleSource.SETTINGS,
        *,
        replace_all: bool = False,
    ) -> None:
        """Load ``{"allow": [...], "deny": [...]}``. RuleParseError propagates."""
        parsed = [parse_rule(text, Effect.ALLOW, source) for text in data.get("allow", [])]
        parsed += [parse_rule(text, Effect.DENY, source) for text in data.get("deny", [])]
        with self._lock:
            self._rules = tuple(parsed) if replace_all else (*self._rules, *parsed)

    def stats(self) -> dict[str, Any]:
        snapshot = self._rules
        return {
            "total": len(snapshot),
            "allow": sum(1 for r in snapshot if r.effect is Effect.ALLOW),
            "deny": sum(1 for r in snapshot if r.effect is Effect.DENY),
            "by_source": dict(Counter(r.source.value for r in snapshot)),
            "by_tool": dict(Counter(r.tool for r in snapshot)),
        }

    def __len__(self) -> int:
        return len(self._rules)
