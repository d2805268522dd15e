"""Remembered human answers: durable ``always`` entries and in-memory session ones."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

from policygate.permissions.persistence import Persister, load_document
from policygate.types.permissions import (
    AnswerScope,
    PermissionRequest,
    RememberedPermission,
)

logger = logging.getLogger(__name__)


def permission_key(request: PermissionRequest) -> str:
    return f"{request.kind.value}:{request.resource or '*'}"


class RememberedStore:
    """Answers the user asked to remember.

    ``always`` answers are written to ``permissions.json`` as a side effect of
    :meth:`remember`; ``session`` answers live only as long as this object.
    """

    def __init__(
        self, path: str | Path | None = None, persister: Persister | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._persister = persister
        self._lock = threading.Lock()
        self._always: tuple[RememberedPermission, ...] = ()
        self._session: dict[str, bool] = {}

    def load(self) -> None:
        if self._path is None:
            return
        data = load_document(self._path, default=[])
        if not isinstance(data, list):
            logger.warning("Ignoring %s: expected a list", self._path)
            return
        entries: list[RememberedPermission] = []
        for item in data:
            try:
                entries.append(RememberedPermission.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping remembered permission %r: %s", item, exc)
        with self._lock:
            self._always = tuple(e for e in entries if e.scope is AnswerScope.ALWAYS)

    @property
    def entries(self) -> tuple[RememberedPermission, ...]:
        return self._always

    def lookup(self, request: PermissionRequest) -> bool | None:
        """Durable answer for *request*, if one was remembered."""
        resource = request.resource or "*"
        for entry in self._always:
            if entry.kind is request.kind and entry.pattern in (resource, "*"):
                return entry.allowed
        return None

    def session_lookup(self, request: PermissionRequest) -> bool | None:
        return self._session.get(permission_key(request))

    def remember(
        self, request: PermissionRequest, allowed: bool, scope: AnswerScope,
    ) -> None:
        if scope is AnswerScope.ONCE:
            return
        if scope is AnswerScope.SESSION:
            with self._lock:
                self._session = {**self._session, permission_key(request): allowed}
            return

        entry = RememberedPermission(
            kind=request.kind,
            pattern=request.resource or "*",
            allowed=allowed,
            scope=scope,
            timestamp=time.time(),
        )
        with self._lock:
            kept = tuple(
                e for e in self._always
                if not (e.kind is entry.kind and e.pattern == entry.pattern)
            )
            self._always = (*kept, entry)
        self._persist()

    def forget(self, request: PermissionRequest) -> bool:
        resource = request.resource or "*"
        with self._lock:
            kept = tuple(
                e for e in self._always
                if not (e.kind is request.kind and e.pattern == resource)
            )
            removed = len(kept) != len(self._always)
            self._always = kept
        if removed:
            self._persist()
        return removed

    def clear_session(self) -> None:
        with self._lock:
            self._session = {}

    def export(self) -> list[dict[str, object]]:
        return [e.to_dict() for e in self._always]

    def import_(self, data: list[dict[str, object]]) -> None:
        entries = [RememberedPermission.from_dict(item) for item in data]
        with self._lock:
            self._always = tuple(e for e in entries if e.scope is AnswerScope.ALWAYS)
        self._persist()

    def _persist(self) -> None:
        if self._path is not None and self._persister is not None:
            self._persister.submit(self._path, self.export())
