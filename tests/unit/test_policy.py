"""Tests for the policy store, validation and policy builders."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
import yaml

from policygate.errors import InvalidPolicyError, PersistenceError, PolicyNotFoundError
from policygate.permissions.persistence import Persister
from policygate.permissions.policy import Policy, PolicyRule, PolicyStore, validate_policy
from policygate.permissions.registry import UNSERIALIZABLE_PREDICATE, PredicateRegistry
from policygate.permissions.templates import (
    PolicyBuilder,
    RuleBuilder,
    path_whitelist_policy,
    read_only_policy,
    work_hours_policy,
)
from policygate.types.permissions import (
    Effect,
    EvaluationContext,
    PermissionRequest,
    PermissionType,
    RuleSource,
)
from tests.conftest import make_context


def _write(resource: str) -> PermissionRequest:
    return PermissionRequest(kind=PermissionType.FILE_WRITE, tool="Write", resource=resource)


def _allow_all() -> dict:
    return {
        "id": "allow-all",
        "name": "Allow everything",
        "priority": 100,
        "effect": "allow",
        "rules": [{"id": "allow", "effect": "allow", "condition": {}}],
    }


def _deny_config() -> dict:
    return {
        "id": "deny-config",
        "name": "Protect agent config",
        "priority": 200,
        "effect": "deny",
        "rules": [{
            "id": "deny-config-writes",
            "effect": "deny",
            "description": "Agent configuration is read-only",
            "condition": {"type": "file_write", "path": "**/.claude/**"},
        }],
    }


@pytest.fixture
def store() -> PolicyStore:
    return PolicyStore()


class TestValidatePolicy:
    def test_valid(self) -> None:
        result = validate_policy(_deny_config())
        assert result.valid
        assert result.errors == ()

    def test_missing_fields(self) -> None:
        result = validate_policy({"rules": []})
        assert not result.valid
        assert "Policy must have a valid id" in result.errors
        assert "Policy must have a valid name" in result.errors
        assert "Policy must have a numeric priority" in result.errors
        assert 'Policy effect must be "allow" or "deny"' in result.errors

    def test_bool_priority_rejected(self) -> None:
        data = {**_allow_all(), "priority": True}
        assert "Policy must have a numeric priority" in validate_policy(data).errors

    def test_duplicate_rule_ids(self) -> None:
        data = _allow_all()
        data["rules"] = [
            {"id": "r", "effect": "allow"},
            {"id": "r", "effect": "deny"},
        ]
        assert "Duplicate rule IDs: r" in validate_policy(data).errors

    def test_rule_errors(self) -> None:
        data = _allow_all()
        data["rules"] = [
            "not a rule",
            {"effect": "maybe", "condition": {"timeRange": {"start": "9"}}},
        ]
        errors = validate_policy(data).errors
        assert "Rule 0 must be an object" in errors
        assert "Rule 1 must have a valid id" in errors
        assert 'Rule 1 effect must be "allow" or "deny"' in errors
        assert any(e.startswith("Rule 1: timeRange.start") for e in errors)

    def test_warnings(self) -> None:
        data = {**_allow_all(), "rules": [], "priority": -5}
        result = validate_policy(data)
        assert result.valid
        assert "Policy has no rules (will always use default effect)" in result.warnings
        assert "Negative priority may cause unexpected evaluation order" in result.warnings

    def test_accepts_policy_object(self) -> None:
        assert validate_policy(read_only_policy()).valid


class TestPolicyStore:
    def test_add_rejects_invalid(self, store: PolicyStore) -> None:
        with pytest.raises(InvalidPolicyError) as exc_info:
            store.add_policy({"id": "x"})
        assert "Policy must have a valid name" in exc_info.value.errors
        assert store.list_policies() == []

    def test_add_replaces_same_id(self, store: PolicyStore) -> None:
        store.add_policy(_allow_all())
        store.add_policy({**_allow_all(), "name": "Renamed"})
        assert [p.name for p in store.list_policies()] == ["Renamed"]

    def test_list_sorted_by_priority(self, store: PolicyStore) -> None:
        store.add_policy(_allow_all())
        store.add_policy(_deny_config())
        assert [p.id for p in store.list_policies()] == ["deny-config", "allow-all"]

    def test_remove(self, store: PolicyStore) -> None:
        store.add_policy(_allow_all())
        assert store.remove_policy("allow-all") is True
        assert store.remove_policy("allow-all") is False

    def test_update(self, store: PolicyStore) -> None:
        store.add_policy(_allow_all())
        updated = store.update_policy("allow-all", priority=5, effect="deny")
        assert updated.priority == 5
        assert updated.effect is Effect.DENY
        with pytest.raises(PolicyNotFoundError):
            store.update_policy("missing", priority=1)
        with pytest.raises(InvalidPolicyError):
            store.update_policy("allow-all", name="")

    def test_enable_disable(self, store: PolicyStore, context: EvaluationContext) -> None:
        store.add_policy(_deny_config())
        request = _write("/home/u/.claude/settings.json")
        store.disable("deny-config")
        assert store.candidates(request, context) == []
        assert store.stats() == {"total": 1, "enabled": 0, "disabled": 1, "rules": 1}
        store.enable("deny-config")
        assert len(store.candidates(request, context)) == 1
        with pytest.raises(PolicyNotFoundError):
            store.enable("missing")

    def test_no_match_uses_default(self, store: PolicyStore, context: EvaluationContext) -> None:
        store.add_policy(_deny_config())
        decision = store.evaluate(_write("/tmp/x"), context)
        assert decision.allowed is True
        assert not decision.matched


class TestPolicyEvaluation:
    def test_allow_all_with_config_protection(
        self, store: PolicyStore, context: EvaluationContext,
    ) -> None:
        store.add_policy(_allow_all())
        store.add_policy(_deny_config())

        assert store.evaluate(_write("/home/u/notes.txt"), context).allowed is True

        decision = store.evaluate(_write("/home/u/.claude/settings.json"), context)
        assert decision.allowed is False
        assert decision.matched_policy == "deny-config"
        assert decision.matched_rule == "deny-config-writes"
        assert decision.source is RuleSource.POLICY
        assert decision.reason == "Agent configuration is read-only (deny takes precedence)"

    def test_deny_wins_regardless_of_policy_priority(
        self, store: PolicyStore, context: EvaluationContext,
    ) -> None:
        store.add_policy({**_allow_all(), "priority": 10_000})
        store.add_policy({**_deny_config(), "priority": 1})
        assert store.evaluate(_write("/a/.claude/x"), context).allowed is False

    def test_first_matching_rule_per_policy(
        self, store: PolicyStore, context: EvaluationContext,
    ) -> None:
        store.add_policy({
            "id": "p",
            "name": "P",
            "priority": 1,
            "effect": "deny",
            "rules": [
                {"id": "low-deny", "effect": "deny", "priority": 1},
                {"id": "high-allow", "effect": "allow", "priority": 9},
            ],
        })
        candidates = store.candidates(_write("/x"), context)
        assert [c.matched_rule for c in candidates] == ["high-allow"]

    def test_default_reason_names_rule_and_policy(
        self, store: PolicyStore, context: EvaluationContext,
    ) -> None:
        store.add_policy(_allow_all())
        decision = store.evaluate(_write("/x"), context)
        assert decision.reason == "Matched rule allow in policy Allow everything"

    def test_registered_custom_predicate(self, context: EvaluationContext) -> None:
        registry = PredicateRegistry()
        registry.register("ci-only", lambda request, ctx: ctx.environment.get("CI") == "true")
        store = PolicyStore(registry)
        store.add_policy({
            "id": "ci",
            "name": "CI guard",
            "priority": 1,
            "effect": "deny",
            "rules": [{"id": "no-ci-writes", "effect": "deny", "condition": {"custom": "ci-only"}}],
        })
        assert store.evaluate(_write("/x"), context).allowed is False
        assert store.evaluate(_write("/x"), make_context()).allowed is True

    def test_simulate_lists_every_match(
        self, store: PolicyStore, context: EvaluationContext,
    ) -> None:
        store.add_policy(_allow_all())
        store.add_policy(_deny_config())
        matches = store.simulate(_write("/home/u/.claude/x"), context)
        assert [(m["policy"], m["effect"]) for m in matches] == [
            ("deny-config", "deny"),
            ("allow-all", "allow"),
        ]
        assert matches[0]["description"] == "Agent configuration is read-only"
        assert matches[0]["priority"] == 200


class TestPolicyPersistence:
    def test_export_import(self, store: PolicyStore) -> None:
        store.add_policy(_allow_all())
        store.add_policy(_deny_config())
        exported = store.export()

        fresh = PolicyStore()
        assert fresh.import_(exported) == 2
        assert fresh.export() == exported

    def test_export_subset(self, store: PolicyStore) -> None:
        store.add_policy(_allow_all())
        store.add_policy(_deny_config())
        assert [p["id"] for p in store.export(["allow-all"])] == ["allow-all"]

    def test_import_shapes(self, store: PolicyStore) -> None:
        assert store.import_({"policies": [_allow_all()]}) == 1
        assert store.import_(_deny_config()) == 1
        assert store.import_("nonsense") == 0
        assert store.import_([_allow_all(), {"id": "broken"}], replace_all=True) == 1
        assert [p.id for p in store.list_policies()] == ["allow-all"]

    def test_callable_predicates_exported_as_placeholder(self, store: PolicyStore) -> None:
        rule = RuleBuilder("r", Effect.DENY).type("file_write").custom(lambda r, c: True).build()
        store.add_policy(PolicyBuilder("p", "P").add_rule(rule).build())
        assert store.export()[0]["rules"][0]["condition"] == {
            "type": "file_write", "custom": UNSERIALIZABLE_PREDICATE,
        }

    def test_round_trip_keeps_gated_allow_closed(self, context: EvaluationContext) -> None:
        store = PolicyStore()
        store.add_policy({
            "id": "p",
            "name": "P",
            "priority": 1,
            "effect": "deny",
            "rules": [
                {
                    "id": "gated",
                    "effect": "allow",
                    "priority": 10,
                    "condition": {"type": "bash_command", "custom": lambda r, c: False},
                },
                {"id": "deny-bash", "effect": "deny", "condition": {"type": "bash_command"}},
            ],
        })
        bash = PermissionRequest(kind=PermissionType.BASH_COMMAND, tool="Bash", resource="ls")
        before = store.evaluate(bash, context)

        restored = PolicyStore()
        restored.import_(store.export())
        after = restored.evaluate(bash, context)

        assert before.allowed is after.allowed is False
        assert before.matched_rule == after.matched_rule == "deny-bash"

    def test_save_and_load_json(self, store: PolicyStore, tmp_path: Path) -> None:
        store.add_policy(_deny_config())
        path = tmp_path / "policies.json"
        store.save(path)
        assert json.loads(path.read_text())[0]["id"] == "deny-config"

        loaded = PolicyStore()
        assert loaded.load(path) == 1

    def test_save_and_load_yaml(self, store: PolicyStore, tmp_path: Path) -> None:
        store.add_policy(_deny_config())
        path = tmp_path / "policies.yaml"
        store.save(path)
        assert yaml.safe_load(path.read_text())[0]["name"] == "Protect agent config"
        assert PolicyStore().load(path) == 1

    def test_load_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "policies.toml"
        path.write_text(
            '[[policies]]\nid = "t"\nname = "T"\npriority = 1\neffect = "deny"\n'
            '[[policies.rules]]\nid = "r"\neffect = "deny"\n'
            '[policies.rules.condition]\ntype = "bash_command"\n'
        )
        store = PolicyStore()
        assert store.load(path) == 1
        assert store.get_policy("t").rules[0].condition.predicates[0].operand == "bash_command"

    def test_save_toml_unsupported(self, store: PolicyStore, tmp_path: Path) -> None:
        with pytest.raises(PersistenceError):
            store.save(tmp_path / "policies.toml")

    def test_corrupt_file_loads_nothing(self, tmp_path: Path) -> None:
        path = tmp_path / "policies.json"
        path.write_text("{not json")
        assert PolicyStore().load(path) == 0
        assert PolicyStore().load(tmp_path / "missing.json") == 0

    def test_mutations_are_persisted(self, tmp_path: Path) -> None:
        persister = Persister()
        path = tmp_path / "store" / "policies.json"
        store = PolicyStore(path=path, persister=persister)
        store.add_policy(_allow_all())
        store.add_policy(_deny_config())
        store.remove_policy("allow-all")
        persister.close()
        assert [p["id"] for p in json.loads(path.read_text())] == ["deny-config"]

    def test_concurrent_mutations_persist_latest_state(self, tmp_path: Path) -> None:
        persister = Persister()
        path = tmp_path / "policies.json"
        store = PolicyStore(path=path, persister=persister)

        def writer(worker: int) -> None:
            for i in range(25):
                store.add_policy({**_allow_all(), "id": f"p-{worker}-{i}"})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        persister.close()
        saved = json.loads(path.read_text())
        assert len(saved) == 100
        assert saved == store.export()

    def test_load_does_not_persist(self, tmp_path: Path) -> None:
        source = tmp_path / "project-policies.json"
        source.write_text(json.dumps([_allow_all()]))
        persister = Persister()
        target = tmp_path / "policies.json"
        store = PolicyStore(path=target, persister=persister)
        assert store.load(source) == 1
        persister.close()
        assert not target.exists()


class TestPolicyTemplates:
    def test_read_only_policy(self, context: EvaluationContext) -> None:
        store = PolicyStore()
        store.add_policy(read_only_policy())
        read = PermissionRequest(kind=PermissionType.FILE_READ, tool="Read", resource="/a")
        bash = PermissionRequest(kind=PermissionType.BASH_COMMAND, tool="Bash", resource="ls")
        assert store.evaluate(read, context).allowed is True
        assert store.evaluate(_write("/a"), context).allowed is False
        assert store.evaluate(bash, context).reason == "Deny all bash commands"

    def test_work_hours_policy(self) -> None:
        store = PolicyStore()
        store.add_policy(work_hours_policy())
        request = _write("/x")
        assert store.evaluate(request, make_context(hour=10)).matched
        assert not store.evaluate(request, make_context(hour=20)).matched

    def test_path_whitelist_policy(self, context: EvaluationContext) -> None:
        policy = path_whitelist_policy("paths", ["/srv/app/**"])
        store = PolicyStore()
        store.add_policy(policy)
        assert store.evaluate(_write("/srv/app/main.py"), context).matched
        assert not store.evaluate(_write("/etc/hosts"), context).matched

    def test_builders(self) -> None:
        rule = (
            RuleBuilder("r", "allow")
            .description("weekday mornings")
            .priority(3)
            .type(PermissionType.BASH_COMMAND)
            .tool("Bash")
            .resource("git:*")
            .time_range("08:00", "12:00")
            .days_of_week(1, 2)
            .environment(CI="true")
            .build()
        )
        policy = (
            PolicyBuilder("p", "P").priority(7).default_effect("allow").enabled(False)
            .description("d").add_rule(rule).build()
        )
        assert isinstance(policy, Policy)
        assert policy.enabled is False
        assert policy.effect is Effect.ALLOW
        assert isinstance(policy.rules[0], PolicyRule)
        assert policy.rules[0].to_dict()["condition"]["resource"] == "git:*"
        assert validate_policy(policy).valid

    def test_builder_requires_ids(self) -> None:
        with pytest.raises(ValueError):
            PolicyBuilder("", "x").build()
        with pytest.raises(ValueError):
            RuleBuilder("", "deny").build()
