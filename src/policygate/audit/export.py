"""Export audit logs in JSON/CSV format for review."""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from typing import Any

from policygate.audit.logger import list_archives, read_entries

CSV_FIELDS = [
    "timestamp", "kind", "tool", "resource", "decision", "reason", "scope", "user_decided",
]


def export_audit_log(
    log_path: str | Path,
    *,
    fmt: str = "json",
    include_archives: bool = False,
) -> str:
    """Export the audit log, optionally prefixed by its rotated archives.

    Args:
        log_path: The current audit log file.
        fmt: Output format, "json" or "csv".
        include_archives: Also read ``<log>.<timestamp>`` archives, oldest first.
    """
    if fmt not in ("json", "csv"):
        raise ValueError(f"Unsupported export format: {fmt!r}")
    path = Path(log_path)
    entries: list[dict[str, Any]] = []
    if include_archives:
        for archive in list_archives(path):
            entries.extend(read_entries(archive))
    entries.extend(read_entries(path))

    if fmt == "csv":
        return _to_csv(entries)
    return json.dumps(entries, indent=2)


def _to_csv(entries: list[dict[str, Any]]) -> str:
    if not entries:
        return ""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for entry in entries:
        writer.writerow(entry)
    return output.getvalue()
