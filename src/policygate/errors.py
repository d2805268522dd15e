"""Exception types raised by PolicyGate."""

from __future__ import annotations


class PolicyGateError(Exception):
    """Base class for all PolicyGate errors."""


class RuleParseError(PolicyGateError, ValueError):
    """Rule text does not follow ``Tool``, ``Tool()`` or ``Tool(pattern)``."""

    def __init__(self, rule: str, message: str) -> None:
        self.rule = rule
        super().__init__(f'Failed to parse rule "{rule}": {message}')


class PatternCompileError(PolicyGateError, ValueError):
    """A regular expression in a rule or restriction failed to compile."""

    def __init__(self, pattern: str, message: str) -> None:
        self.pattern = pattern
        super().__init__(f"Invalid pattern {pattern!r}: {message}")


class PersistenceError(PolicyGateError, OSError):
    """A permission/policy file could not be read or written."""

    def __init__(self, path: object, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class PolicyNotFoundError(PolicyGateError, KeyError):
    """No policy is registered under the given id."""

    def __init__(self, policy_id: str) -> None:
        self.policy_id = policy_id
        super().__init__(f"Policy not found: {policy_id}")

    def __str__(self) -> str:
        return f"Policy not found: {self.policy_id}"


class InvalidPolicyError(PolicyGateError, ValueError):
    """A policy failed validation and was not stored."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Invalid policy: {', '.join(self.errors)}")


class PermissionDeniedError(PolicyGateError, PermissionError):
    """Raised by :func:`requires_permission` wrappers when a check denies."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Permission denied: {reason}")
