"""Tests for candidate resolution and the RuleSet."""

from __future__ import annotations

import threading

import pytest

from policygate.errors import RuleParseError
from policygate.permissions.resolver import (
    DENY_PRECEDENCE,
    NO_MATCH_REASON,
    PRIORITY_ORDER,
    default_decision,
    rank,
    resolve,
)
from policygate.permissions.rules import parse_rule
from policygate.permissions.ruleset import RuleSet, rule_decision
from policygate.types.permissions import Decision, Effect, RuleSource


def _candidate(allowed: bool, priority: int, **kwargs: object) -> Decision:
    return Decision(
        allowed=allowed,
        reason=f"{'allow' if allowed else 'deny'} p{priority}",
        priority=priority,
        **kwargs,  # type: ignore[arg-type]
    )


class TestResolve:
    def test_no_candidates_uses_default(self) -> None:
        decision = resolve([])
        assert decision.allowed is True
        assert decision.reason == NO_MATCH_REASON
        assert resolve([], default_decision(False)).allowed is False

    def test_single_candidate_untouched(self) -> None:
        only = _candidate(True, 5)
        assert resolve([only]) is only

    def test_deny_beats_higher_priority_allow(self) -> None:
        decision = resolve([_candidate(True, 5000), _candidate(False, 1)])
        assert decision.allowed is False
        assert decision.resolution == DENY_PRECEDENCE
        assert decision.reason == "deny p1 (deny takes precedence)"

    def test_deny_only_keeps_reason(self) -> None:
        decision = resolve([_candidate(False, 1), _candidate(False, 9)])
        assert decision.reason == "deny p9"
        assert decision.resolution == DENY_PRECEDENCE

    def test_allows_ordered_by_priority(self) -> None:
        decision = resolve([_candidate(True, 1), _candidate(True, 7), _candidate(True, 3)])
        assert decision.priority == 7
        assert decision.resolution == PRIORITY_ORDER

    def test_tie_breaks(self) -> None:
        settings = _candidate(True, 10, source=RuleSource.SETTINGS)
        cli = _candidate(True, 10, source=RuleSource.CLI)
        assert resolve([settings, cli]).source is RuleSource.CLI

        broad = _candidate(True, 10, source=RuleSource.CLI, specificity=0)
        narrow = _candidate(True, 10, source=RuleSource.CLI, specificity=1)
        assert resolve([narrow, broad]).specificity == 1

        older = _candidate(True, 10, created_at=1.0)
        newer = _candidate(True, 10, created_at=2.0)
        assert resolve([newer, older]).created_at == 2.0

    def test_unknown_source_ranks_lowest(self) -> None:
        assert rank(_candidate(True, 0)) < rank(_candidate(True, 0, source=RuleSource.RUNTIME))

    def test_decision_requires_reason(self) -> None:
        with pytest.raises(ValueError):
            Decision(allowed=True, reason="")


class TestRuleSet:
    def test_deny_precedence_over_allow(self) -> None:
        rules = RuleSet()
        rules.add_text("Bash(npm:*)")
        rules.add_text("Bash(npm publish:*)", Effect.DENY)
        decision = rules.check("Bash", {"command": "npm publish --tag next"})
        assert decision.allowed is False
        assert decision.matched_rule == "Bash(npm publish:*)"
        assert decision.reason.endswith("(deny takes precedence)")
        assert rules.check("Bash", {"command": "npm test"}).allowed is True

    def test_no_match_falls_back(self) -> None:
        rules = RuleSet([parse_rule("Read")])
        decision = rules.check("Write", {"file_path": "x"}, default_decision(False))
        assert decision.allowed is False
        assert not decision.matched

    def test_rule_decision_fields(self) -> None:
        rule = parse_rule("Bash(git:*)", Effect.ALLOW, RuleSource.PROJECT)
        decision = rule_decision(rule)
        assert decision.reason == "Matched allow rule: Bash(git:*)"
        assert decision.source is RuleSource.PROJECT
        assert decision.priority == 130
        assert decision.specificity == 1

    def test_remove_and_clear(self) -> None:
        rules = RuleSet()
        rules.add_text("Read")
        rules.add_text("Read", Effect.DENY)
        assert rules.remove("Read", Effect.DENY) is True
        assert [r.effect for r in rules.rules] == [Effect.ALLOW]
        assert rules.remove("Write") is False
        rules.clear()
        assert len(rules) == 0

    def test_clear_by_source(self) -> None:
        rules = RuleSet()
        rules.add_text("Read", source=RuleSource.CLI)
        rules.add_text("Write", source=RuleSource.SETTINGS)
        rules.clear_by_source(RuleSource.CLI)
        assert [r.tool for r in rules.rules] == ["Write"]

    def test_add_text_propagates_parse_error(self) -> None:
        with pytest.raises(RuleParseError):
            RuleSet().add_text("bad rule")

    def test_export_import(self) -> None:
        rules = RuleSet()
        rules.import_({"allow": ["Read", "Bash(git:*)"], "deny": ["Bash(rm:*)"]})
        assert rules.export() == {"allow": ["Read", "Bash(git:*)"], "deny": ["Bash(rm:*)"]}
        assert all(r.source is RuleSource.SETTINGS for r in rules.rules)

        rules.import_({"allow": ["Glob"]}, replace_all=True)
        assert rules.export() == {"allow": ["Glob"], "deny": []}

    def test_stats(self) -> None:
        rules = RuleSet()
        rules.add_text("Read", source=RuleSource.CLI)
        rules.add_text("Bash(rm:*)", Effect.DENY)
        rules.add_text("Bash(git:*)")
        stats = rules.stats()
        assert stats["total"] == 3
        assert stats["allow"] == 2
        assert stats["deny"] == 1
        assert stats["by_source"] == {"cli": 1, "runtime": 2}
        assert stats["by_tool"] == {"Read": 1, "Bash": 2}

    def test_readers_see_whole_snapshots(self) -> None:
        rules = RuleSet()

        def writer(n: int) -> None:
            for i in range(200):
                rules.add_text(f"Bash(cmd{n}x{i}:*)")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(rules) == 800
