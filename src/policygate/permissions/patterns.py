"""Glob and regex helpers shared by the matcher, conditions and settings layers."""

from __future__ import annotations

import functools
import logging
import re
import sys

from policygate.errors import PatternCompileError

logger = logging.getLogger(__name__)

# Maximum allowed length for a regex pattern to mitigate ReDoS.
MAX_REGEX_LEN = 1024

GLOB_CHARS = re.compile(r"[*?\[\]{}]")

# Filesystems on these platforms are case-insensitive by default.
CASE_INSENSITIVE_FS = sys.platform in ("win32", "darwin")


def has_glob_chars(pattern: str) -> bool:
    return bool(GLOB_CHARS.search(pattern))


def _translate(pattern: str, pathname: bool) -> str:
    """Translate a glob into a regex body.

    With *pathname* set, ``*`` and ``?`` stop at ``/`` and ``**`` crosses
    directories (``**/`` also matches zero directories). Without it, every
    wildcard matches any character.
    """
    star = "[^/]*" if pathname else ".*"
    one = "[^/]" if pathname else "."
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                j = i + 2
                if j < n and pattern[j] == "/":
                    out.append("(?:.*/)?")
                    i = j + 1
                else:
                    out.append(".*")
                    i = j
                continue
            out.append(star)
        elif c == "?":
            out.append(one)
        elif c == "[":
            j = pattern.find("]", i + 2)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                negate = body.startswith("!")
                if negate:
                    body = body[1:]
                body = body.replace("\\", "\\\\")
                if not negate and body.startswith("^"):
                    body = "\\" + body
                out.append(f"[{'^' if negate else ''}{body}]")
                i = j + 1
                continue
        elif c == "{":
            j = pattern.find("}", i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                alternatives = pattern[i + 1:j].split(",")
                out.append(
                    "(?:" + "|".join(_translate(a, pathname) for a in alternatives) + ")"
                )
                i = j + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@functools.lru_cache(maxsize=512)
def compile_glob(
    pattern: str, *, ignore_case: bool = False, pathname: bool = True,
) -> re.Pattern[str]:
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    return re.compile(rf"\A{_translate(pattern, pathname)}\Z", flags)


def glob_match(
    value: str, pattern: str, *, ignore_case: bool = False, pathname: bool = True,
) -> bool:
    """Match *value* against a glob. Dotfiles are matched like any other name."""
    return bool(
        compile_glob(pattern, ignore_case=ignore_case, pathname=pathname).match(value)
    )


def compile_regex(pattern: str | re.Pattern[str]) -> re.Pattern[str]:
    """Compile a user-supplied regex, raising PatternCompileError on failure."""
    if isinstance(pattern, re.Pattern):
        return pattern
    if len(pattern) > MAX_REGEX_LEN:
        raise PatternCompileError(pattern, f"exceeds {MAX_REGEX_LEN} chars")
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise PatternCompileError(pattern, str(exc)) from exc


def try_compile_regex(pattern: str | re.Pattern[str]) -> re.Pattern[str] | None:
    """Compile a regex, logging and returning None when it is invalid."""
    try:
        return compile_regex(pattern)
    except PatternCompileError as exc:
        logger.warning("%s; the owning rule will never match", exc)
        return None


def first_token(value: str) -> str:
    """First whitespace-delimited token of a command string."""
    parts = value.strip().split(None, 1)
    return parts[0] if parts else ""
