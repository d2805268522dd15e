"""Decision audit log."""

from policygate.audit.export import export_audit_log
from policygate.audit.logger import AuditSink, list_archives, read_entries
from policygate.audit.retention import RetentionPolicy, prune_archives

__all__ = [
    "AuditSink",
    "RetentionPolicy",
    "export_audit_log",
    "list_archives",
    "prune_archives",
    "read_entries",
]
