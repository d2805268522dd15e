"""PolicyGate: permission and policy decisions for privileged tool calls.

Usage:
    import policygate

    engine = policygate.PermissionEngine.from_config_dir()
    decision = await engine.check_tool("Bash", {"command": "npm test"})
    if not decision.allowed:
        print(decision.reason)
"""

from policygate.errors import (
    InvalidPolicyError,
    PatternCompileError,
    PermissionDeniedError,
    PersistenceError,
    PolicyGateError,
    PolicyNotFoundError,
    RuleParseError,
)
from policygate.permissions.layered import LayeredPermissionStore, ParameterRestriction, ToolPermission
from policygate.permissions.manager import PermissionEngine, requires_permission, tool_request
from policygate.permissions.policy import Policy, PolicyRule, PolicyStore, ValidationResult, validate_policy
from policygate.permissions.registry import PredicateRegistry
from policygate.permissions.rules import Rule, parse_rule, parse_rules
from policygate.permissions.ruleset import RuleSet
from policygate.types.config import EngineConfig, InheritanceConfig, MergeStrategy, PermissionMode
from policygate.types.permissions import (
    AnswerScope,
    Decision,
    Effect,
    EvaluationContext,
    PermissionRequest,
    PermissionType,
    PromptAnswer,
    RuleSource,
    Scope,
)

__version__ = "0.1.0"

__all__ = [
    # Engine
    "PermissionEngine",
    "requires_permission",
    "tool_request",
    # Stores
    "LayeredPermissionStore",
    "ParameterRestriction",
    "Policy",
    "PolicyRule",
    "PolicyStore",
    "PredicateRegistry",
    "Rule",
    "RuleSet",
    "ToolPermission",
    "ValidationResult",
    "parse_rule",
    "parse_rules",
    "validate_policy",
    # Types
    "AnswerScope",
    "Decision",
    "Effect",
    "EngineConfig",
    "EvaluationContext",
    "InheritanceConfig",
    "MergeStrategy",
    "PermissionMode",
    "PermissionRequest",
    "PermissionType",
    "PromptAnswer",
    "RuleSource",
    "Scope",
    # Errors
    "InvalidPolicyError",
    "PatternCompileError",
    "PermissionDeniedError",
    "PersistenceError",
    "PolicyGateError",
    "PolicyNotFoundError",
    "RuleParseError",
]
