"""Configuration types for PolicyGate."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class PermissionMode(Enum):
    """Coarse permission modes applied before any rule is consulted."""

    DEFAULT = "default"  # Full rule waterfall, then ask
    ACCEPT_EDITS = "acceptEdits"  # Auto-approve file reads/writes
    PLAN = "plan"  # No execution at all
    BYPASS = "bypassPermissions"  # Auto-approve everything
    DONT_ASK = "dontAsk"  # Never prompt; decide from allowed dirs
    DELEGATE = "delegate"  # Same waterfall as DEFAULT

    @classmethod
    def parse(cls, value: str | PermissionMode) -> PermissionMode:
        """Accept either the enum, its value, or its snake_case name."""
        if isinstance(value, PermissionMode):
            return value
        for mode in cls:
            if value in (mode.value, mode.name.lower()):
                return mode
        raise ValueError(f"Unknown permission mode: {value!r}")


class MergeStrategy(Enum):
    """How project-scope tool permissions combine with global ones."""

    OVERRIDE = "override"
    MERGE = "merge"
    UNION = "union"


DEFAULT_AUDIT_MAX_SIZE = 10 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class AuditConfig:
    """Configuration for the decision audit log."""

    enabled: bool = False
    log_file: str | None = None
    max_size: int = DEFAULT_AUDIT_MAX_SIZE


@dataclass(frozen=True, slots=True)
class InheritanceConfig:
    """Scope inheritance for the layered tool-permission store."""

    inherit_global: bool = True
    inherit_project: bool = True
    override_global: bool = True
    merge_strategy: MergeStrategy = MergeStrategy.OVERRIDE

    def to_dict(self) -> dict[str, object]:
        return {
            "inheritGlobal": self.inherit_global,
            "inheritProject": self.inherit_project,
            "overrideGlobal": self.override_global,
            "mergeStrategy": self.merge_strategy.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> InheritanceConfig:
        try:
            strategy = MergeStrategy(data.get("mergeStrategy", "override"))
        except ValueError:
            strategy = MergeStrategy.OVERRIDE
        return cls(
            inherit_global=bool(data.get("inheritGlobal", True)),
            inherit_project=bool(data.get("inheritProject", True)),
            override_global=bool(data.get("overrideGlobal", True)),
            merge_strategy=strategy,
        )


@dataclass(slots=True)
class EngineConfig:
    """Configuration for one PermissionEngine instance."""

    mode: PermissionMode = PermissionMode.DEFAULT
    config_dir: Path | None = None
    project_dir: Path | None = None
    allowed_dirs: list[str] = field(default_factory=list)
    prompt_timeout: float = 300.0
    default_allow: bool = True
    audit: AuditConfig = field(default_factory=AuditConfig)
