"""Configuration loading (settings.json, config.toml, policy files, .env)."""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from policygate.permissions.persistence import load_document
from policygate.permissions.settings import SettingsPermissions
from policygate.types.config import EngineConfig, PermissionMode

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "POLICYGATE_CONFIG_DIR"
PROJECT_DIR_NAME = ".policygate"

SETTINGS_FILE = "settings.json"
CONFIG_TOML = "config.toml"
TOOL_PERMISSIONS_FILE = "tool-permissions.json"
POLICIES_FILE = "policies.json"
REMEMBERED_FILE = "permissions.json"
AUDIT_FILE = "permissions-audit.log"

POLICY_FILE_NAMES = ("policies.json", "policies.yaml", "policies.yml", "policies.toml")


def resolve_config_dir(explicit: str | Path | None = None) -> Path:
    """``explicit``, else ``$POLICYGATE_CONFIG_DIR``, else ``~/.policygate``."""
    if explicit:
        return Path(explicit).expanduser()
    if env := os.environ.get(CONFIG_DIR_ENV):
        return Path(env).expanduser()
    return Path.home() / PROJECT_DIR_NAME


def resolve_project_dir(cwd: str | Path | None = None) -> Path:
    return Path(cwd or Path.cwd()) / PROJECT_DIR_NAME


def load_environment(cwd: str | Path | None = None) -> bool:
    """Load ``.env`` from *cwd* (or the nearest parent). Existing vars win."""
    if cwd is not None:
        env_path = Path(cwd) / ".env"
        if env_path.exists():
            return load_dotenv(env_path)
    return load_dotenv()


def load_toml_config(*dirs: Path) -> dict[str, Any]:
    """Read ``config.toml`` from each directory; later directories override earlier ones."""
    merged: dict[str, Any] = {}
    for d in dirs:
        toml_path = d / CONFIG_TOML
        if not toml_path.exists():
            continue
        try:
            with open(toml_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring %s: %s", toml_path, exc)
            continue
        for section, values in data.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section] = {**merged[section], **values}
            else:
                merged[section] = values
    return merged


def load_settings(path: Path) -> dict[str, Any]:
    data = load_document(path, default={})
    if not isinstance(data, Mapping):
        logger.warning("Ignoring %s: expected an object", path)
        return {}
    return dict(data)


def find_policy_files(*dirs: Path) -> list[Path]:
    return [d / name for d in dirs for name in POLICY_FILE_NAMES if (d / name).exists()]


@dataclass(slots=True)
class LoadedConfig:
    """Everything read from disk for one engine."""

    config_dir: Path
    project_dir: Path
    settings: SettingsPermissions = field(default_factory=SettingsPermissions)
    allow_rules: list[str] = field(default_factory=list)
    deny_rules: list[str] = field(default_factory=list)
    default_mode: PermissionMode | None = None
    engine: dict[str, Any] = field(default_factory=dict)
    policy_files: list[Path] = field(default_factory=list)

    @property
    def global_permissions_path(self) -> Path:
        return self.config_dir / TOOL_PERMISSIONS_FILE

    @property
    def project_permissions_path(self) -> Path:
        return self.project_dir / TOOL_PERMISSIONS_FILE

    @property
    def remembered_path(self) -> Path:
        return self.config_dir / REMEMBERED_FILE

    @property
    def policies_path(self) -> Path:
        return self.config_dir / POLICIES_FILE

    @property
    def audit_path(self) -> Path:
        log_file = self.settings.audit.log_file
        return Path(log_file).expanduser() if log_file else self.config_dir / AUDIT_FILE


def load_config(
    cwd: str | Path | None = None, config_dir: str | Path | None = None,
) -> LoadedConfig:
    """Read user and project configuration. Missing or bad files degrade to defaults."""
    user_dir = resolve_config_dir(config_dir)
    project_dir = resolve_project_dir(cwd)
    loaded = LoadedConfig(config_dir=user_dir, project_dir=project_dir)

    for settings_dir in (user_dir, project_dir):
        data = load_settings(settings_dir / SETTINGS_FILE)
        block = data.get("permissions")
        if isinstance(block, Mapping):
            loaded.settings = loaded.settings.union(SettingsPermissions.from_dict(block))
            loaded.allow_rules += [str(r) for r in block.get("allow") or () if isinstance(r, str)]
            loaded.deny_rules += [str(r) for r in block.get("deny") or () if isinstance(r, str)]
        mode = data.get("defaultMode")
        if mode is None and isinstance(block, Mapping):
            mode = block.get("defaultMode")
        if mode:
            try:
                loaded.default_mode = PermissionMode.parse(mode)
            except ValueError as exc:
                logger.warning("%s in %s", exc, settings_dir / SETTINGS_FILE)

    loaded.engine = load_toml_config(user_dir, project_dir).get("engine", {})
    loaded.policy_files = find_policy_files(user_dir, project_dir)
    return loaded


def engine_config(
    loaded: LoadedConfig, *, mode: PermissionMode | str | None = None,
) -> EngineConfig:
    """Build an EngineConfig. Precedence for mode: argument, settings.json, config.toml."""
    section = loaded.engine
    resolved_mode = PermissionMode.DEFAULT
    for candidate in (mode, loaded.default_mode, section.get("mode")):
        if candidate:
            try:
                resolved_mode = PermissionMode.parse(candidate)
                break
            except ValueError as exc:
                logger.warning("%s; ignoring", exc)

    return EngineConfig(
        mode=resolved_mode,
        config_dir=loaded.config_dir,
        project_dir=loaded.project_dir,
        allowed_dirs=[str(d) for d in section.get("allowed_dirs", [])],
        prompt_timeout=float(section.get("prompt_timeout", 300.0)),
        default_allow=bool(section.get("default_allow", True)),
        audit=loaded.settings.audit,
    )
