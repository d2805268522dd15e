"""Declarative condition language for policy rules and tool permissions.

A condition is a mapping. Logical keys (``and``, ``or``, ``not``) hold nested
conditions; every other key is a leaf predicate. All keys present in one
mapping must hold (implicit AND)::

    {"type": "file_write", "path": "**/.claude/**"}
    {"or": [{"tool": "Bash"}, {"tool": {"regex": "^mcp__"}}]}
    {"timeRange": {"start": "09:00", "end": "18:00"}, "daysOfWeek": [1, 2, 3, 4, 5]}
    {"environment": {"CI": "true", "BRANCH": {"regex": "^release/"}}}
    {"context": {"field": "workingDirectory", "operator": "contains", "value": "/srv"}}
    {"custom": "is-business-hours"}

Evaluation is fail-closed: an unknown key, an unknown operator, a broken
pattern or an unregistered custom predicate makes the whole condition false,
including under ``not``.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from policygate.errors import PatternCompileError
from policygate.permissions.patterns import (
    CASE_INSENSITIVE_FS,
    compile_regex,
    glob_match,
    has_glob_chars,
)
from policygate.permissions.registry import UNSERIALIZABLE_PREDICATE, PredicateRegistry
from policygate.permissions.rules import MatcherKind, classify_pattern
from policygate.types.permissions import EvaluationContext, PermissionRequest

logger = logging.getLogger(__name__)

LOGICAL_KEYS = ("and", "or", "not")
LEAF_KEYS = frozenset({
    "type", "tool", "resource", "path", "timeRange", "dateRange",
    "daysOfWeek", "environment", "context", "custom",
})
CONTEXT_OPERATORS = frozenset({
    "equals", "notEquals", "contains", "notContains", "matches",
    "notMatches", "range", "in", "notIn",
})

_TIME_RE = re.compile(r"^\d{2}:\d{2}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class _FailClosed(Exception):
    """Raised inside evaluation to force the whole condition to false."""


@dataclass(frozen=True, slots=True)
class Predicate:
    """One leaf predicate. ``compiled`` caches any regex found in the operand."""

    key: str
    operand: Any
    compiled: Any = field(default=None, repr=False, compare=False)
    broken: bool = False


@dataclass(frozen=True, slots=True)
class Condition:
    """A parsed condition tree. An empty condition always holds."""

    predicates: tuple[Predicate, ...] = ()
    all_of: tuple[Condition, ...] | None = None
    any_of: tuple[Condition, ...] | None = None
    negate: Condition | None = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.predicates
            and self.all_of is None
            and self.any_of is None
            and self.negate is None
        )

    @property
    def broken(self) -> bool:
        if any(p.broken for p in self.predicates):
            return True
        children = list(self.all_of or ()) + list(self.any_of or ())
        if self.negate is not None:
            children.append(self.negate)
        return any(child.broken for child in children)


ALWAYS = Condition()


# -- Parsing -----------------------------------------------------------------


def parse_condition(data: Mapping[str, Any] | Condition | None) -> Condition:
    """Build a Condition from its mapping form.

    Invalid regexes and unknown keys do not raise: the predicate is marked
    broken and the condition will never hold.
    """
    if data is None:
        return ALWAYS
    if isinstance(data, Condition):
        return data
    if not isinstance(data, Mapping):
        logger.warning("Condition must be a mapping, got %r", type(data).__name__)
        return Condition(predicates=(Predicate(key="<invalid>", operand=data, broken=True),))

    all_of = any_of = None
    negate = None
    predicates: list[Predicate] = []
    for key, value in data.items():
        if key == "and":
            all_of = tuple(parse_condition(c) for c in _as_list(value))
        elif key == "or":
            any_of = tuple(parse_condition(c) for c in _as_list(value))
        elif key == "not":
            negate = parse_condition(value)
        else:
            predicates.append(_parse_predicate(key, value))
    return Condition(
        predicates=tuple(predicates), all_of=all_of, any_of=any_of, negate=negate,
    )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _parse_predicate(key: str, operand: Any) -> Predicate:
    if key not in LEAF_KEYS:
        logger.warning("Unknown condition key %r; condition will never match", key)
        return Predicate(key=key, operand=operand, broken=True)
    try:
        compiled = _compile_operand(key, operand)
    except PatternCompileError as exc:
        logger.warning("%s; condition will never match", exc)
        return Predicate(key=key, operand=operand, broken=True)
    return Predicate(key=key, operand=operand, compiled=compiled)


def _regex_source(value: Any) -> str | re.Pattern[str] | None:
    """Regex operands are ``re.Pattern`` objects or ``{"regex": "..."}`` mappings."""
    if isinstance(value, re.Pattern):
        return value
    if isinstance(value, Mapping) and "regex" in value:
        return str(value["regex"])
    return None


def _compile_operand(key: str, operand: Any) -> Any:
    if key in ("tool", "resource"):
        source = _regex_source(operand)
        return compile_regex(source) if source is not None else None
    if key == "environment" and isinstance(operand, Mapping):
        compiled: dict[str, re.Pattern[str]] = {}
        for env_key, expected in operand.items():
            source = _regex_source(expected)
            if source is not None:
                compiled[env_key] = compile_regex(source)
        return compiled
    if key == "context" and isinstance(operand, Mapping):
        if operand.get("operator") in ("matches", "notMatches"):
            source = _regex_source(operand.get("value"))
            return compile_regex(source if source is not None else str(operand.get("value", "")))
    return None


def condition_to_dict(condition: Condition, *, strip_custom: bool = True) -> dict[str, Any]:
    """Serialize a condition.

    When stripping, a callable custom predicate is replaced by
    :data:`UNSERIALIZABLE_PREDICATE`, an id no registry resolves, so the
    reloaded leaf evaluates false instead of vanishing.
    """
    data: dict[str, Any] = {}
    for predicate in condition.predicates:
        if predicate.key == "custom" and callable(predicate.operand) and strip_custom:
            data["custom"] = UNSERIALIZABLE_PREDICATE
            continue
        data[predicate.key] = _operand_to_json(predicate.operand)
    if condition.all_of is not None:
        data["and"] = [condition_to_dict(c, strip_custom=strip_custom) for c in condition.all_of]
    if condition.any_of is not None:
        data["or"] = [condition_to_dict(c, strip_custom=strip_custom) for c in condition.any_of]
    if condition.negate is not None:
        data["not"] = condition_to_dict(condition.negate, strip_custom=strip_custom)
    return data


def _operand_to_json(operand: Any) -> Any:
    if isinstance(operand, re.Pattern):
        return {"regex": operand.pattern}
    if isinstance(operand, Mapping):
        return {k: _operand_to_json(v) for k, v in operand.items()}
    if isinstance(operand, (list, tuple, set, frozenset)):
        return [_operand_to_json(v) for v in operand]
    return operand


# -- Evaluation --------------------------------------------------------------


def evaluate(
    condition: Condition | Mapping[str, Any] | None,
    request: PermissionRequest,
    context: EvaluationContext,
    registry: PredicateRegistry | None = None,
) -> bool:
    """Evaluate a condition tree against a request and context."""
    cond = parse_condition(condition) if not isinstance(condition, Condition) else condition
    if cond.broken:
        return False
    try:
        return _evaluate(cond, request, context, registry)
    except _FailClosed:
        return False


def evaluate_all(
    conditions: tuple[Condition, ...] | list[Condition],
    request: PermissionRequest,
    context: EvaluationContext,
    registry: PredicateRegistry | None = None,
) -> bool:
    """AND over a list of conditions. An empty list holds."""
    return all(evaluate(c, request, context, registry) for c in conditions)


def _evaluate(
    cond: Condition,
    request: PermissionRequest,
    context: EvaluationContext,
    registry: PredicateRegistry | None,
) -> bool:
    if cond.all_of is not None and not all(
        _evaluate(c, request, context, registry) for c in cond.all_of
    ):
        return False
    if cond.any_of is not None and not any(
        _evaluate(c, request, context, registry) for c in cond.any_of
    ):
        return False
    if cond.negate is not None and _evaluate(cond.negate, request, context, registry):
        return False
    for predicate in cond.predicates:
        evaluator = _EVALUATORS.get(predicate.key)
        if evaluator is None:
            raise _FailClosed(predicate.key)
        if not evaluator(predicate, request, context, registry):
            return False
    return True


def match_value(value: str, operand: Any, compiled: re.Pattern[str] | None = None) -> bool:
    """String, list, regex or glob match using the rule-pattern classification."""
    if compiled is not None:
        return bool(compiled.search(value))
    if isinstance(operand, re.Pattern):
        return bool(operand.search(value))
    if isinstance(operand, (list, tuple, set, frozenset)):
        return any(match_value(value, item) for item in operand)
    if isinstance(operand, Mapping):
        source = _regex_source(operand)
        if source is None:
            raise _FailClosed("invalid operand")
        return bool(compile_regex(source).search(value))
    kind, pattern = classify_pattern(str(operand))
    match kind:
        case MatcherKind.ANY:
            return True
        case MatcherKind.PREFIX:
            return value.startswith(pattern)
        case MatcherKind.GLOB:
            return glob_match(value, pattern, pathname=False)
        case _:
            return value == pattern


def _type_matches(pred: Predicate, request: PermissionRequest, *_: Any) -> bool:
    kinds = _as_list(pred.operand)
    return request.kind.value in {getattr(k, "value", k) for k in kinds}


def _tool_matches(pred: Predicate, request: PermissionRequest, *_: Any) -> bool:
    return match_value(request.tool, pred.operand, pred.compiled)


def _resource_matches(pred: Predicate, request: PermissionRequest, *_: Any) -> bool:
    if request.resource is None:
        return False
    return match_value(request.resource, pred.operand, pred.compiled)


def resolve_path(value: str, cwd: str) -> str:
    expanded = os.path.expanduser(value)
    if not os.path.isabs(expanded):
        expanded = os.path.join(cwd, expanded)
    return os.path.normpath(expanded)


def path_matches(resolved: str, pattern: str, cwd: str) -> bool:
    """Glob-match an absolute path. Plain patterns act as directory prefixes."""
    if not has_glob_chars(pattern):
        return resolved.startswith(resolve_path(pattern, cwd))
    if not (pattern.startswith("/") or pattern.startswith("**") or pattern.startswith("~")):
        pattern = os.path.join(cwd, pattern)
    return glob_match(resolved, os.path.expanduser(pattern), ignore_case=CASE_INSENSITIVE_FS)


def _path_matches(
    pred: Predicate, request: PermissionRequest, context: EvaluationContext, *_: Any,
) -> bool:
    if not request.resource:
        return False
    resolved = resolve_path(request.resource, context.working_directory)
    return any(
        path_matches(resolved, str(p), context.working_directory)
        for p in _as_list(pred.operand)
    )


def parse_hhmm(value: str) -> int:
    if not isinstance(value, str) or not _TIME_RE.match(value):
        raise _FailClosed(f"bad time {value!r}")
    hours, minutes = int(value[:2]), int(value[3:])
    if hours > 23 or minutes > 59:
        raise _FailClosed(f"bad time {value!r}")
    return hours * 60 + minutes


def _local_time(context: EvaluationContext) -> datetime:
    return datetime.fromtimestamp(context.timestamp)


def _time_range(
    pred: Predicate, request: PermissionRequest, context: EvaluationContext, *_: Any,
) -> bool:
    window = pred.operand
    if not isinstance(window, Mapping):
        raise _FailClosed("timeRange")
    now = _local_time(context)
    current = now.hour * 60 + now.minute
    if window.get("start") and current < parse_hhmm(window["start"]):
        return False
    if window.get("end") and current > parse_hhmm(window["end"]):
        return False
    return True


def _date_range(
    pred: Predicate, request: PermissionRequest, context: EvaluationContext, *_: Any,
) -> bool:
    window = pred.operand
    if not isinstance(window, Mapping):
        raise _FailClosed("dateRange")
    for bound in ("start", "end"):
        value = window.get(bound)
        if value and (not isinstance(value, str) or not _DATE_RE.match(value)):
            raise _FailClosed(f"bad date {value!r}")
    today = _local_time(context).date().isoformat()
    if window.get("start") and today < window["start"]:
        return False
    if window.get("end") and today > window["end"]:
        return False
    return True


def _days_of_week(
    pred: Predicate, request: PermissionRequest, context: EvaluationContext, *_: Any,
) -> bool:
    # 0=Sunday .. 6=Saturday
    day = (_local_time(context).weekday() + 1) % 7
    return day in {int(d) for d in _as_list(pred.operand)}


def _environment(
    pred: Predicate, request: PermissionRequest, context: EvaluationContext, *_: Any,
) -> bool:
    expected = pred.operand
    if not isinstance(expected, Mapping):
        raise _FailClosed("environment")
    compiled: dict[str, re.Pattern[str]] = pred.compiled or {}
    for key, value in expected.items():
        actual = context.environment.get(key)
        if actual is None:
            return False
        if key in compiled:
            if not compiled[key].search(actual):
                return False
        elif actual != str(value):
            return False
    return True


def _context_field(context: EvaluationContext, name: str) -> Any:
    fields: dict[str, Any] = {
        "workingDirectory": context.working_directory,
        "sessionId": context.session_id,
        "timestamp": context.timestamp,
        "user": context.user,
        **context.metadata,
    }
    return fields.get(name)


def _context(
    pred: Predicate, request: PermissionRequest, context: EvaluationContext, *_: Any,
) -> bool:
    spec = pred.operand
    if not isinstance(spec, Mapping) or spec.get("operator") not in CONTEXT_OPERATORS:
        raise _FailClosed("context operator")
    actual = _context_field(context, str(spec.get("field", "")))
    expected = spec.get("value")
    match spec["operator"]:
        case "equals":
            return actual == expected
        case "notEquals":
            return actual != expected
        case "contains":
            return _contains(actual, expected)
        case "notContains":
            return not _contains(actual, expected)
        case "matches":
            return isinstance(actual, str) and bool(pred.compiled.search(actual))
        case "notMatches":
            return not (isinstance(actual, str) and bool(pred.compiled.search(actual)))
        case "range":
            if isinstance(actual, (int, float)) and isinstance(expected, (list, tuple)) and len(expected) == 2:
                return expected[0] <= actual <= expected[1]
            return False
        case "in":
            return isinstance(expected, (list, tuple)) and actual in expected
        case "notIn":
            return not isinstance(expected, (list, tuple)) or actual not in expected
    raise _FailClosed("context operator")


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected in actual
    if isinstance(actual, (list, tuple)):
        return expected in actual
    return False


def _custom(
    pred: Predicate,
    request: PermissionRequest,
    context: EvaluationContext,
    registry: PredicateRegistry | None,
) -> bool:
    fn: Callable[..., bool] | None
    if callable(pred.operand):
        fn = pred.operand
    else:
        fn = registry.get(str(pred.operand)) if registry is not None else None
        if fn is None:
            logger.warning("Unknown custom predicate %r; treating as false", pred.operand)
            raise _FailClosed("custom")
    try:
        return bool(fn(request, context))
    except Exception:
        logger.warning("Custom predicate %r raised; treating as false", pred.operand, exc_info=True)
        raise _FailClosed("custom") from None


_EVALUATORS: dict[str, Callable[..., bool]] = {
    "type": _type_matches,
    "tool": _tool_matches,
    "resource": _resource_matches,
    "path": _path_matches,
    "timeRange": _time_range,
    "dateRange": _date_range,
    "daysOfWeek": _days_of_week,
    "environment": _environment,
    "context": _context,
    "custom": _custom,
}


# -- Validation --------------------------------------------------------------


def validate_condition(data: Any, where: str) -> list[str]:
    """Field-level errors for a condition mapping. Never raises."""
    if not isinstance(data, Mapping):
        return [f"{where}: condition must be an object"]

    errors: list[str] = []
    if "and" in data and not isinstance(data["and"], (list, tuple)):
        errors.append(f'{where}: "and" must be an array')
    if "or" in data and not isinstance(data["or"], (list, tuple)):
        errors.append(f'{where}: "or" must be an array')
    if "not" in data and not isinstance(data["not"], Mapping):
        errors.append(f'{where}: "not" must be an object')

    for key in ("and", "or"):
        if isinstance(data.get(key), (list, tuple)):
            for i, child in enumerate(data[key]):
                errors.extend(validate_condition(child, f"{where}.{key}[{i}]"))
    if isinstance(data.get("not"), Mapping):
        errors.extend(validate_condition(data["not"], f"{where}.not"))

    for key in data:
        if key not in LOGICAL_KEYS and key not in LEAF_KEYS:
            errors.append(f"{where}: unknown condition key {key!r}")

    for key, fmt, label in (
        ("timeRange", _TIME_RE, "HH:MM"),
        ("dateRange", _DATE_RE, "YYYY-MM-DD"),
    ):
        window = data.get(key)
        if window is None:
            continue
        if not isinstance(window, Mapping):
            errors.append(f"{where}: {key} must be an object")
            continue
        for bound in ("start", "end"):
            value = window.get(bound)
            if value and (not isinstance(value, str) or not fmt.match(value)):
                errors.append(f"{where}: {key}.{bound} must be in {label} format")

    days = data.get("daysOfWeek")
    if days is not None and not all(
        isinstance(d, int) and 0 <= d <= 6 for d in _as_list(days)
    ):
        errors.append(f"{where}: daysOfWeek must contain integers 0-6")

    ctx = data.get("context")
    if ctx is not None and (
        not isinstance(ctx, Mapping) or ctx.get("operator") not in CONTEXT_OPERATORS
    ):
        errors.append(f"{where}: context.operator must be one of {sorted(CONTEXT_OPERATORS)}")

    for key in ("tool", "resource"):
        source = _regex_source(data.get(key))
        if isinstance(source, str):
            try:
                compile_regex(source)
            except PatternCompileError as exc:
                errors.append(f"{where}: {key} {exc}")
    return errors
