"""AuditSink: append-only JSONL decision log with size-based rotation."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import IO, Any

from policygate.types.config import DEFAULT_AUDIT_MAX_SIZE, AuditConfig
from policygate.types.permissions import AuditEntry, Decision, PermissionRequest

logger = logging.getLogger(__name__)


def archive_path(log_path: Path, stamp_ms: int) -> Path:
    return log_path.with_name(f"{log_path.name}.{stamp_ms}")


class AuditSink:
    """Serialized writer for :class:`AuditEntry` records.

    Every append and rotation happens under one lock, so concurrent decisions
    never interleave partial lines and no append lands in a file that is
    being renamed. When the current file exceeds ``max_size`` bytes it is
    renamed to ``<name>.<epoch-ms>`` before the next append.

    Write failures are logged and swallowed: auditing never blocks a decision.
    """

    def __init__(
        self,
        log_path: str | Path,
        *,
        enabled: bool = True,
        max_size: int = DEFAULT_AUDIT_MAX_SIZE,
    ) -> None:
        self._log_path = Path(log_path).expanduser()
        self._enabled = enabled
        self._max_size = max_size
        self._lock = threading.Lock()
        self._handle: IO[str] | None = None
        self._entry_count = 0

    @classmethod
    def from_config(cls, config: AuditConfig, default_path: Path) -> AuditSink:
        path = Path(config.log_file).expanduser() if config.log_file else default_path
        return cls(path, enabled=config.enabled, max_size=config.max_size)

    # -- Context manager support ------------------------------------------

    def __enter__(self) -> AuditSink:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._close_handle()

    def _close_handle(self) -> None:
        if self._handle is not None:
            self._handle.flush()
            self._handle.close()
            self._handle = None

    # -- Properties -------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    @property
    def log_path(self) -> Path:
        return self._log_path

    @property
    def entry_count(self) -> int:
        return self._entry_count

    # -- Core write -------------------------------------------------------

    def record(self, request: PermissionRequest, decision: Decision) -> None:
        """Append one entry for a final decision."""
        if self._enabled:
            self.write(AuditEntry.from_decision(request, decision))

    def write(self, entry: AuditEntry) -> None:
        if not self._enabled:
            return
        line = json.dumps(entry.to_dict(), separators=(",", ":")) + "\n"
        with self._lock:
            try:
                self._rotate_if_needed()
                if self._handle is None:
                    self._log_path.parent.mkdir(parents=True, exist_ok=True)
                    self._handle = open(self._log_path, "a", encoding="utf-8")  # noqa: SIM115
                self._handle.write(line)
                self._handle.flush()
                self._entry_count += 1
            except OSError as exc:
                logger.warning("Failed to write audit log %s: %s", self._log_path, exc)
                self._close_handle()

    def _rotate_if_needed(self) -> None:
        """Rename the log when it exceeds max_size. Caller holds the lock."""
        try:
            size = self._log_path.stat().st_size
        except FileNotFoundError:
            return
        if size <= self._max_size:
            return
        self._close_handle()
        target = self._archive_target()
        self._log_path.rename(target)
        logger.debug("Rotated audit log to %s", target)

    def _archive_target(self) -> Path:
        stamp = int(time.time() * 1000)
        target = archive_path(self._log_path, stamp)
        while target.exists():
            stamp += 1
            target = archive_path(self._log_path, stamp)
        return target

    def rotate(self) -> Path | None:
        """Force a rotation now. Returns the archive path, if a file was rotated."""
        with self._lock:
            if not self._log_path.exists():
                return None
            self._close_handle()
            target = self._archive_target()
            self._log_path.rename(target)
            return target


def read_entries(log_path: str | Path) -> list[dict[str, Any]]:
    """Read a JSONL audit file. Corrupt lines are skipped with a warning."""
    path = Path(log_path)
    if not path.exists():
        return []
    entries: list[dict[str, Any]] = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError as exc:
                logger.warning("%s line %d: invalid JSON (%s)", path, lineno, exc)
    return entries


def list_archives(log_path: str | Path) -> list[Path]:
    """Rotated archives of *log_path*, oldest first."""
    path = Path(log_path)
    if not path.parent.exists():
        return []
    archives = [
        p for p in path.parent.glob(f"{path.name}.*")
        if p.name[len(path.name) + 1:].isdigit()
    ]
    return sorted(archives, key=lambda p: int(p.name[len(path.name) + 1:]))
