"""RetentionPolicy: age/count-based cleanup of rotated audit archives."""

from __future__ import annotations

import gzip
import shutil
import time
from pathlib import Path

from policygate.audit.logger import list_archives


class RetentionPolicy:
    """Prunes ``<log>.<timestamp>`` archives. The live log is never touched."""

    def __init__(
        self,
        log_path: str | Path,
        *,
        max_age_days: int = 90,
        max_archives: int = 0,
        compress: bool = False,
    ) -> None:
        self._log_path = Path(log_path)
        self._max_age_days = max_age_days
        self._max_archives = max_archives
        self._compress = compress

    def enforce(self, now: float | None = None) -> int:
        """Delete (or gzip) old archives. Returns the number of archives handled."""
        archives = list_archives(self._log_path)
        now = time.time() if now is None else now
        removed = 0

        if self._max_age_days > 0:
            cutoff_ms = (now - self._max_age_days * 86400) * 1000
            for archive in list(archives):
                if _stamp(archive) < cutoff_ms:
                    self._remove_or_compress(archive)
                    archives.remove(archive)
                    removed += 1

        if self._max_archives > 0 and len(archives) > self._max_archives:
            excess = archives[: len(archives) - self._max_archives]
            for archive in excess:
                self._remove_or_compress(archive)
                removed += 1

        return removed

    def _remove_or_compress(self, path: Path) -> None:
        if self._compress:
            self._gzip_file(path)
        else:
            path.unlink()

    @staticmethod
    def _gzip_file(path: Path) -> Path:
        gz_path = path.with_name(path.name + ".gz")
        with open(path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        path.unlink()
        return gz_path


def _stamp(archive: Path) -> int:
    return int(archive.name.rsplit(".", 1)[1])


def prune_archives(
    log_path: str | Path, *, max_age_days: int = 90, max_archives: int = 0,
) -> int:
    """Convenience wrapper around :class:`RetentionPolicy`."""
    return RetentionPolicy(
        log_path, max_age_days=max_age_days, max_archives=max_archives,
    ).enforce()
