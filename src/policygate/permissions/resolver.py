"""Deny-biased resolution of candidate decisions."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from policygate.types.permissions import SOURCE_WEIGHTS, Decision

DENY_PRECEDENCE = "deny-precedence"
PRIORITY_ORDER = "priority-order"

NO_MATCH_REASON = "No matching rule; allowed by default"


def default_decision(allowed: bool = True) -> Decision:
    """The decision returned when no rule in any layer matched."""
    if allowed:
        return Decision(allowed=True, reason=NO_MATCH_REASON)
    return Decision(allowed=False, reason="No matching rule; denied by default")


def rank(decision: Decision) -> tuple[int, int, int, float]:
    """Sort key: priority, then source weight, then specificity, then recency."""
    weight = SOURCE_WEIGHTS.get(decision.source, -1) if decision.source is not None else -1
    return (decision.priority, weight, decision.specificity, decision.created_at)


def resolve(
    candidates: Iterable[Decision], default: Decision | None = None,
) -> Decision:
    """Pick one decision from all matching candidates.

    Any deny wins over every allow, whatever their priorities. Within the
    winning effect the highest :func:`rank` wins.
    """
    pool = list(candidates)
    if not pool:
        return default if default is not None else default_decision()
    if len(pool) == 1:
        return pool[0]

    denies = [d for d in pool if not d.allowed]
    if denies:
        winner = max(denies, key=rank)
        overridden = len(denies) < len(pool)
        return _annotate(
            winner,
            DENY_PRECEDENCE,
            f"{winner.reason} (deny takes precedence)" if overridden else winner.reason,
        )
    return _annotate(max(pool, key=rank), PRIORITY_ORDER, None)


def _annotate(decision: Decision, resolution: str, reason: str | None) -> Decision:
    return replace(decision, reason=reason or decision.reason, resolution=resolution)
