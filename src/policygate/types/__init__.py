"""Type definitions for PolicyGate."""

from policygate.types.config import (
    AuditConfig,
    EngineConfig,
    InheritanceConfig,
    MergeStrategy,
    PermissionMode,
)
from policygate.types.permissions import (
    AnswerScope,
    AuditEntry,
    Decision,
    Effect,
    EvaluationContext,
    PermissionRequest,
    PermissionType,
    PromptAnswer,
    RememberedPermission,
    RuleSource,
    Scope,
)

__all__ = [
    "AnswerScope",
    "AuditConfig",
    "AuditEntry",
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
    "RememberedPermission",
    "RuleSource",
    "Scope",
]
