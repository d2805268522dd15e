"""Permission rule syntax: ``Tool``, ``Tool()`` and ``Tool(pattern)``.

Examples::

    Bash                 every Bash command
    Bash(npm:*)          commands starting with "npm"
    Bash(npm install:*)  commands starting with "npm install"
    Read(/home/u/**)     files below /home/u
    Write(src/*.ts)      .ts files directly in src
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum

from policygate.errors import RuleParseError
from policygate.permissions.patterns import has_glob_chars, try_compile_regex
from policygate.types.permissions import SOURCE_WEIGHTS, Effect, RuleSource

RULE_PATTERN = re.compile(r"^([A-Za-z][A-Za-z0-9_-]*)(?:\(([^)]*)\))?$")

_PREFIX_PATTERN = re.compile(r"^(.+?):\*$")

DENY_WEIGHT = 1000
PARAMS_WEIGHT = 100


class MatcherKind(Enum):
    """How a rule's parameter pattern is compared."""

    ANY = "any"
    PREFIX = "prefix"
    EXACT = "exact"
    GLOB = "glob"
    REGEX = "regex"


@dataclass(frozen=True, slots=True)
class Rule:
    """A parsed rule. The matcher kind is fixed at parse time."""

    raw: str
    tool: str
    effect: Effect
    matcher: MatcherKind = MatcherKind.ANY
    operand: str = "*"
    has_params: bool = False
    priority: int = 0
    source: RuleSource = RuleSource.RUNTIME
    created_at: float = field(default_factory=time.time)
    description: str = ""
    compiled: re.Pattern[str] | None = field(default=None, repr=False, compare=False)
    broken: bool = False  # permanently non-matching

    @property
    def specificity(self) -> int:
        return 1 if self.has_params else 0


def calculate_priority(effect: Effect, source: RuleSource, has_params: bool) -> int:
    """Derived priority: deny +1000, parameterized +100, plus source weight."""
    priority = DENY_WEIGHT if effect is Effect.DENY else 0
    if has_params:
        priority += PARAMS_WEIGHT
    return priority + SOURCE_WEIGHTS.get(source, 0)


def classify_pattern(pattern: str) -> tuple[MatcherKind, str]:
    """Classify a parameter pattern, returning the kind and its operand."""
    if pattern in ("", "*"):
        return MatcherKind.ANY, "*"
    prefix = _PREFIX_PATTERN.match(pattern)
    if prefix:
        return MatcherKind.PREFIX, prefix.group(1)
    if has_glob_chars(pattern):
        return MatcherKind.GLOB, pattern
    return MatcherKind.EXACT, pattern


def parse_rule(
    text: str,
    effect: Effect = Effect.ALLOW,
    source: RuleSource = RuleSource.RUNTIME,
    priority: int | None = None,
) -> Rule:
    """Parse one rule string.

    Raises RuleParseError when the text is empty or malformed.
    """
    trimmed = text.strip()
    if not trimmed:
        raise RuleParseError(text, "Rule string cannot be empty")

    match = RULE_PATTERN.match(trimmed)
    if match is None:
        raise RuleParseError(text, "Invalid rule syntax")

    tool, param_str = match.group(1), match.group(2)
    has_params = param_str is not None
    kind, operand = classify_pattern(param_str.strip()) if has_params else (MatcherKind.ANY, "*")

    return Rule(
        raw=trimmed,
        tool=tool,
        effect=effect,
        matcher=kind,
        operand=operand,
        has_params=has_params,
        priority=priority if priority is not None else calculate_priority(effect, source, has_params),
        source=source,
    )


def split_rules(text: str) -> list[str]:
    """Split a comma-separated rule list at parenthesis depth zero."""
    segments: list[str] = []
    current: list[str] = []
    depth = 0
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        elif char == "," and depth == 0:
            segment = "".join(current).strip()
            if segment:
                segments.append(segment)
            current = []
            continue
        current.append(char)
    segment = "".join(current).strip()
    if segment:
        segments.append(segment)
    return segments


def parse_rules(
    text: str,
    effect: Effect = Effect.ALLOW,
    source: RuleSource = RuleSource.RUNTIME,
) -> list[Rule]:
    """Parse a comma-separated list such as ``"Bash(git:*),Read"``."""
    return [parse_rule(segment, effect, source) for segment in split_rules(text)]


def regex_rule(
    tool: str,
    pattern: str | re.Pattern[str],
    effect: Effect = Effect.ALLOW,
    source: RuleSource = RuleSource.RUNTIME,
    priority: int | None = None,
) -> Rule:
    """Build a rule with a regex parameter matcher, bypassing text parsing.

    A pattern that fails to compile yields a rule that never matches.
    """
    if not RULE_PATTERN.match(tool) or "(" in tool:
        raise RuleParseError(tool, "Invalid tool name")
    compiled = try_compile_regex(pattern)
    source_text = pattern.pattern if isinstance(pattern, re.Pattern) else pattern
    return Rule(
        raw=f"{tool}(/{source_text}/)",
        tool=tool,
        effect=effect,
        matcher=MatcherKind.REGEX,
        operand=source_text,
        has_params=True,
        priority=priority if priority is not None else calculate_priority(effect, source, True),
        source=source,
        compiled=compiled,
        broken=compiled is None,
    )


def parse_allowed_tools(text: str, source: RuleSource = RuleSource.CLI) -> list[Rule]:
    """Parse an ``--allowed-tools`` style list."""
    return parse_rules(text, Effect.ALLOW, source)


def parse_disallowed_tools(text: str, source: RuleSource = RuleSource.CLI) -> list[Rule]:
    """Parse a ``--disallowed-tools`` style list."""
    return parse_rules(text, Effect.DENY, source)


def bash_rule(
    command_pattern: str,
    effect: Effect = Effect.ALLOW,
    source: RuleSource = RuleSource.RUNTIME,
) -> Rule:
    """``bash_rule("npm")`` is ``Bash(npm:*)``; patterns containing ``:`` are kept."""
    pattern = command_pattern if ":" in command_pattern else f"{command_pattern}:*"
    return parse_rule(f"Bash({pattern})", effect, source)


def path_rule(
    tool: str,
    path_pattern: str,
    effect: Effect = Effect.ALLOW,
    source: RuleSource = RuleSource.RUNTIME,
) -> Rule:
    return parse_rule(f"{tool}({path_pattern})", effect, source)
