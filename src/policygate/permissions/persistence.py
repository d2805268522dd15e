"""File persistence for permission, policy and remembered-answer stores.

Writes are atomic (temp file + rename) and, through :class:`Persister`,
fire-and-forget relative to the mutation that triggered them. Read helpers
raise :class:`PersistenceError`; the ``load_*`` variants log and fall back.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import tomllib
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any

import yaml

from policygate.errors import PersistenceError

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


def write_json_atomic(path: str | Path, data: Any) -> None:
    """Write *data* as JSON to *path* atomically."""
    write_text_atomic(path, json.dumps(data, indent=2) + "\n")


def write_text_atomic(path: str | Path, text: str) -> None:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise PersistenceError(path, f"write failed: {exc}") from exc


def read_document(path: str | Path) -> Any:
    """Parse a JSON, YAML or TOML file by extension."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PersistenceError(path, f"read failed: {exc}") from exc

    suffix = path.suffix.lower()
    try:
        if suffix in YAML_SUFFIXES:
            return yaml.safe_load(text)
        if suffix == ".toml":
            return tomllib.loads(text)
        return json.loads(text)
    except (ValueError, yaml.YAMLError) as exc:
        raise PersistenceError(path, f"parse failed: {exc}") from exc


def load_document(path: str | Path, default: Any = None) -> Any:
    """Like :func:`read_document` but returns *default* for missing or corrupt files."""
    path = Path(path)
    if not path.exists():
        return default
    try:
        data = read_document(path)
    except PersistenceError as exc:
        logger.warning("%s; using defaults", exc)
        return default
    return default if data is None else data


def dump_document(path: str | Path, data: Any) -> str:
    """Serialize *data* for *path*'s format (JSON or YAML)."""
    suffix = Path(path).suffix.lower()
    if suffix in YAML_SUFFIXES:
        return yaml.safe_dump(data, sort_keys=False)
    if suffix == ".toml":
        raise PersistenceError(path, "writing TOML is not supported; use .json or .yaml")
    return json.dumps(data, indent=2) + "\n"


class Persister:
    """Serializes background writes on one worker thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="policygate-io")
        self._pending: list[Future[None]] = []
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, path: str | Path, data: Any) -> None:
        """Queue an atomic JSON write. Failures are logged, never raised."""
        if self._closed:
            logger.warning("Persister closed; dropping write to %s", path)
            return
        future = self._executor.submit(self._write, Path(path), data)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    @staticmethod
    def _write(path: Path, data: Any) -> None:
        try:
            write_json_atomic(path, data)
        except PersistenceError as exc:
            logger.warning("Failed to persist %s", exc)

    def flush(self) -> None:
        """Block until every queued write has finished."""
        with self._lock:
            pending, self._pending = self._pending, []
        for future in pending:
            future.result()

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._executor.shutdown(wait=True)
