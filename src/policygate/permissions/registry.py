"""Named registry for in-process predicates and restriction validators.

Persisted conditions and restrictions reference callables by id; the callable
itself is registered once at process start and never written to disk.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

# Written in place of a callable that cannot be persisted. Never registrable.
UNSERIALIZABLE_PREDICATE = "<unserializable>"


class PredicateRegistry:
    """Maps string ids to predicate callables."""

    def __init__(self) -> None:
        self._predicates: dict[str, Callable[..., bool]] = {}

    def register(
        self, name: str, fn: Callable[..., bool] | None = None,
    ) -> Any:
        """Register *fn* under *name*. Usable as a decorator when *fn* is omitted."""
        if name == UNSERIALIZABLE_PREDICATE:
            raise ValueError(f"{name!r} is reserved")
        if fn is None:
            def decorator(func: Callable[..., bool]) -> Callable[..., bool]:
                self._predicates[name] = func
                return func
            return decorator
        self._predicates[name] = fn
        return fn

    def unregister(self, name: str) -> None:
        self._predicates.pop(name, None)

    def get(self, name: str) -> Callable[..., bool] | None:
        return self._predicates.get(name)

    def names(self) -> list[str]:
        return sorted(self._predicates)

    def __contains__(self, name: object) -> bool:
        return name in self._predicates
