"""PermissionEngine: the single entry point for permission checks.

Evaluation order (after mode dispatch):

1. settings.json tool, path, command and network lists (first answer wins)
2. configured rules: rule text, enabled policies and explicit tool
   permissions, resolved together with deny-precedence
3. remembered ``always`` answers
4. remembered ``session`` answers
5. built-in default rules (allow, deny, or ask)
6. the interactive prompt; without one, deny

Modes:
- BYPASS: allow everything
- PLAN: deny everything
- ACCEPT_EDITS: allow file reads and writes, everything else as DEFAULT
- DONT_ASK: allow reads, allow writes/deletes under allowed directories, deny the rest
- DEFAULT / DELEGATE: the full order above
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from policygate.audit.logger import AuditSink
from policygate.core.config import AUDIT_FILE, engine_config, load_config
from policygate.errors import PermissionDeniedError, RuleParseError
from policygate.permissions.approval import ApprovalCallback, await_answer, describe_request
from policygate.permissions.conditions import resolve_path
from policygate.permissions.defaults import DefaultAction, DefaultRule, default_rules
from policygate.permissions.layered import LayeredPermissionStore, ToolPermission
from policygate.permissions.matcher import (
    COMMAND_TOOLS,
    FILE_TOOLS,
    SEARCH_TOOLS,
    URL_TOOLS,
    extract_parameter,
    kind_for_tool,
)
from policygate.permissions.persistence import Persister
from policygate.permissions.policy import Policy, PolicyStore, ValidationResult, validate_policy
from policygate.permissions.registry import PredicateRegistry
from policygate.permissions.remembered import RememberedStore
from policygate.permissions.resolver import resolve
from policygate.permissions.rules import Rule, parse_rule
from policygate.permissions.ruleset import RuleSet
from policygate.permissions.settings import SettingsPermissions
from policygate.types.config import EngineConfig, PermissionMode
from policygate.types.permissions import (
    Decision,
    Effect,
    EvaluationContext,
    PermissionRequest,
    PermissionType,
    RuleSource,
    Scope,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

EXPORT_VERSION = "1.0.0"


def request_params(request: PermissionRequest) -> dict[str, Any]:
    """Tool parameters for rule matching, filling the tool's key from ``resource``."""
    params = dict(request.details)
    if request.resource is None:
        return params
    if request.tool in COMMAND_TOOLS:
        params.setdefault("command", request.resource)
    elif request.tool in FILE_TOOLS:
        if "file_path" not in params and "path" not in params:
            params["file_path"] = request.resource
    elif request.tool in SEARCH_TOOLS:
        params.setdefault("path", request.resource)
    elif request.tool in URL_TOOLS:
        params.setdefault("url", request.resource)
    return params


def tool_request(
    tool_name: str, params: dict[str, Any] | None = None, description: str = "",
) -> PermissionRequest:
    """Build a request for a tool call, inferring its kind and resource."""
    params = params or {}
    return PermissionRequest(
        kind=kind_for_tool(tool_name),
        tool=tool_name,
        description=description,
        resource=extract_parameter(tool_name, params),
        details=dict(params),
    )


class PermissionEngine:
    """Decides whether privileged actions may run.

    Construct one per process and pass it to every collaborator. Call
    :meth:`close` (or use as a context manager) to flush pending writes.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        approval: ApprovalCallback | None = None,
        registry: PredicateRegistry | None = None,
        settings: SettingsPermissions | None = None,
        rules: RuleSet | None = None,
        policies: PolicyStore | None = None,
        permissions: LayeredPermissionStore | None = None,
        remembered: RememberedStore | None = None,
        audit: AuditSink | None = None,
        persister: Persister | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._approval = approval
        self._registry = registry or PredicateRegistry()
        self._persister = persister or Persister()
        self._settings = settings or SettingsPermissions()
        self._rules = rules or RuleSet()
        self._policies = policies or PolicyStore(self._registry)
        self._permissions = permissions or LayeredPermissionStore(
            self._registry, default_allow=self._config.default_allow,
        )
        self._remembered = remembered or RememberedStore()
        self._default_rules: list[DefaultRule] = default_rules()
        self._allowed_dirs: list[str] = []
        for d in self._config.allowed_dirs:
            self.add_allowed_dir(d)
        self._audit = audit if audit is not None else self._audit_from_config()
        self._closed = False

    @classmethod
    def from_config_dir(
        cls,
        config_dir: str | Path | None = None,
        *,
        cwd: str | Path | None = None,
        mode: PermissionMode | str | None = None,
        approval: ApprovalCallback | None = None,
        registry: PredicateRegistry | None = None,
    ) -> PermissionEngine:
        """Build an engine from the user and project configuration files."""
        loaded = load_config(cwd, config_dir)
        config = engine_config(loaded, mode=mode)
        registry = registry or PredicateRegistry()
        persister = Persister()

        rules = RuleSet()
        for texts, effect in ((loaded.allow_rules, Effect.ALLOW), (loaded.deny_rules, Effect.DENY)):
            for text in texts:
                try:
                    rules.add_text(text, effect, RuleSource.SETTINGS)
                except RuleParseError as exc:
                    logger.warning("Ignoring rule from settings: %s", exc)

        policies = PolicyStore(registry, path=loaded.policies_path, persister=persister)
        for path in loaded.policy_files:
            policies.load(path)

        permissions = LayeredPermissionStore(
            registry,
            global_path=loaded.global_permissions_path,
            project_path=loaded.project_permissions_path,
            persister=persister,
            default_allow=config.default_allow,
        )
        permissions.load()

        remembered = RememberedStore(loaded.remembered_path, persister)
        remembered.load()

        return cls(
            config,
            approval=approval,
            registry=registry,
            settings=loaded.settings,
            rules=rules,
            policies=policies,
            permissions=permissions,
            remembered=remembered,
            persister=persister,
        )

    def _audit_from_config(self) -> AuditSink | None:
        if not self._config.audit.enabled:
            return None
        config_dir = self._config.config_dir or Path.home() / ".policygate"
        return AuditSink.from_config(self._config.audit, config_dir / AUDIT_FILE)

    # -- Lifecycle ---------------------------------------------------------

    def __enter__(self) -> PermissionEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def flush(self) -> None:
        self._persister.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._persister.close()
        if self._audit is not None:
            self._audit.close()

    # -- Properties --------------------------------------------------------

    @property
    def mode(self) -> PermissionMode:
        return self._config.mode

    def set_mode(self, mode: PermissionMode | str) -> None:
        self._config.mode = PermissionMode.parse(mode)

    @property
    def registry(self) -> PredicateRegistry:
        return self._registry

    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def policies(self) -> PolicyStore:
        return self._policies

    @property
    def permissions(self) -> LayeredPermissionStore:
        return self._permissions

    @property
    def remembered(self) -> RememberedStore:
        return self._remembered

    @property
    def settings(self) -> SettingsPermissions:
        return self._settings

    def set_settings(self, settings: SettingsPermissions) -> None:
        """Replace the settings.json layer, including its audit configuration."""
        self._settings = settings
        self._config.audit = settings.audit
        if self._audit is not None:
            self._audit.close()
        self._audit = self._audit_from_config()

    @property
    def audit(self) -> AuditSink | None:
        return self._audit

    @property
    def approval(self) -> ApprovalCallback | None:
        return self._approval

    @approval.setter
    def approval(self, callback: ApprovalCallback | None) -> None:
        self._approval = callback

    # -- Allowed directories -----------------------------------------------

    def add_allowed_dir(self, directory: str | Path) -> None:
        resolved = os.path.normpath(os.path.abspath(os.path.expanduser(str(directory))))
        if resolved not in self._allowed_dirs:
            self._allowed_dirs.append(resolved)

    @property
    def allowed_dirs(self) -> list[str]:
        return list(self._allowed_dirs)

    def is_path_allowed(self, file_path: str, cwd: str | None = None) -> bool:
        """True when *file_path* is under the working directory or an allowed directory."""
        cwd = os.path.normpath(cwd or os.getcwd())
        resolved = resolve_path(file_path, cwd)
        return any(_within(resolved, d) for d in (cwd, *self._allowed_dirs))

    # -- Checking ----------------------------------------------------------

    async def check(
        self,
        request: PermissionRequest,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Decision:
        """Decide *request*. May suspend on the interactive prompt.

        *timeout* bounds that prompt for this call only; it defaults to
        ``EngineConfig.prompt_timeout``. Timeout and cancellation both deny.
        """
        context = context or EvaluationContext.current()

        match self._config.mode:
            case PermissionMode.BYPASS:
                decision = Decision(allowed=True, reason="Permissions bypassed")
            case PermissionMode.PLAN:
                decision = Decision(allowed=False, reason="Plan mode - no execution")
            case PermissionMode.DONT_ASK:
                decision = self._auto_decide(request, context)
            case PermissionMode.ACCEPT_EDITS if request.kind in (
                PermissionType.FILE_READ, PermissionType.FILE_WRITE,
            ):
                decision = Decision(allowed=True, reason="Auto-accept edits mode")
            case _:
                decision = await self._check_with_rules(request, context, cancel_event, timeout)

        if self._audit is not None:
            self._audit.record(request, decision)
        return decision

    async def check_tool(
        self,
        tool_name: str,
        params: dict[str, Any] | None = None,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> Decision:
        return await self.check(
            tool_request(tool_name, params), context, cancel_event=cancel_event, timeout=timeout,
        )

    def _auto_decide(self, request: PermissionRequest, context: EvaluationContext) -> Decision:
        if request.kind is PermissionType.FILE_READ:
            return Decision(allowed=True, reason="File reads allowed in dontAsk mode")
        if request.resource and request.kind in (PermissionType.FILE_WRITE, PermissionType.FILE_DELETE):
            if self.is_path_allowed(request.resource, context.working_directory):
                return Decision(allowed=True, reason="Path is within allowed directories")
        return Decision(allowed=False, reason="Auto-denied in dontAsk mode")

    def configured_candidates(
        self, request: PermissionRequest, context: EvaluationContext,
    ) -> list[Decision]:
        """Candidates from rule text, enabled policies and explicit tool permissions."""
        params = request_params(request)
        candidates = self._rules.candidates(request.tool, params)
        candidates += self._policies.candidates(request, context)
        explicit = self._permissions.match(request.tool, params, context)
        if explicit is not None:
            candidates.append(explicit)
        return candidates

    async def _check_with_rules(
        self,
        request: PermissionRequest,
        context: EvaluationContext,
        cancel_event: asyncio.Event | None,
        timeout: float | None = None,
    ) -> Decision:
        settings = self._settings.check(request, context.working_directory)
        if settings is not None:
            return settings

        candidates = self.configured_candidates(request, context)
        if candidates:
            return resolve(candidates)

        remembered = self._remembered.lookup(request)
        if remembered is not None:
            return Decision(allowed=remembered, reason="Previously remembered", scope="always")

        session = self._remembered.session_lookup(request)
        if session is not None:
            return Decision(allowed=session, reason="Session permission", scope="session")

        for rule in self._default_rules:
            if not rule.matches(request):
                continue
            if rule.action is DefaultAction.ALLOW:
                return Decision(allowed=True, reason="Matched allow rule", source=RuleSource.RUNTIME)
            if rule.action is DefaultAction.DENY:
                return Decision(allowed=False, reason="Matched deny rule", source=RuleSource.RUNTIME)
            break

        return await self._ask(request, cancel_event, timeout)

    async def _ask(
        self,
        request: PermissionRequest,
        cancel_event: asyncio.Event | None,
        timeout: float | None = None,
    ) -> Decision:
        if self._approval is None:
            return Decision(allowed=False, reason="No matching rule and no approval prompt available")

        answer = await await_answer(
            self._approval,
            request,
            describe_request(request),
            timeout=self._config.prompt_timeout if timeout is None else timeout,
            cancel_event=cancel_event,
        )
        if answer.timed_out:
            return Decision(allowed=False, reason="Permission prompt timed out")
        if answer.cancelled:
            return Decision(allowed=False, reason="Permission prompt cancelled")

        if answer.remember:
            self._remembered.remember(request, answer.allowed, answer.scope)
        return Decision(
            allowed=answer.allowed,
            reason="Allowed by user" if answer.allowed else "Denied by user",
            scope=answer.scope.value,
            user_decided=True,
        )

    # -- Rules, policies and permissions -----------------------------------

    def add_rule(
        self,
        rule: Rule | str,
        effect: Effect = Effect.ALLOW,
        source: RuleSource = RuleSource.RUNTIME,
    ) -> Rule:
        """Add a rule. Text is parsed; RuleParseError propagates."""
        if isinstance(rule, str):
            rule = parse_rule(rule, effect, source)
        self._rules.add(rule)
        return rule

    def remove_rule(self, raw: str, effect: Effect | None = None) -> bool:
        return self._rules.remove(raw, effect)

    def add_default_rule(self, rule: DefaultRule) -> None:
        """Prepend a built-in style rule so it is consulted first."""
        self._default_rules.insert(0, rule)

    def validate_policy(self, policy: Policy | Mapping[str, Any]) -> ValidationResult:
        return validate_policy(policy)

    def add_policy(self, policy: Policy | Mapping[str, Any]) -> Policy:
        return self._policies.add_policy(policy)

    def remove_policy(self, policy_id: str) -> bool:
        return self._policies.remove_policy(policy_id)

    def add_permission(
        self, permission: ToolPermission | Mapping[str, Any], scope: Scope = Scope.SESSION,
    ) -> ToolPermission:
        return self._permissions.add_permission(permission, scope)

    def remove_permission(self, tool: str, scope: Scope | None = None) -> bool:
        return self._permissions.remove_permission(tool, scope)

    def clear_session_permissions(self) -> None:
        """Forget session answers and session-scope tool permissions."""
        self._remembered.clear_session()
        self._permissions.clear(Scope.SESSION)

    # -- Import / export ---------------------------------------------------

    def export(self) -> dict[str, Any]:
        """Everything configurable, in the on-disk JSON formats."""
        return {
            "version": EXPORT_VERSION,
            "mode": self._config.mode.value,
            "allowedDirs": list(self._allowed_dirs),
            "settings": self._settings.to_dict(),
            "rules": self._rules.export(),
            "policies": self._policies.export(),
            "inheritance": self._permissions.inheritance.to_dict(),
            "toolPermissions": {
                scope.value: [p.to_dict() for p in self._permissions.get_permissions(scope)]
                for scope in Scope
            },
            "remembered": self._remembered.export(),
        }

    def import_(self, data: Mapping[str, Any]) -> None:
        """Replace configuration with an :meth:`export` document."""
        if "mode" in data:
            self.set_mode(data["mode"])
        for d in data.get("allowedDirs") or ():
            self.add_allowed_dir(d)
        if isinstance(data.get("settings"), Mapping):
            self.set_settings(SettingsPermissions.from_dict(data["settings"]))
        if isinstance(data.get("rules"), Mapping):
            self._rules.import_(data["rules"], RuleSource.RUNTIME, replace_all=True)
        if "policies" in data:
            self._policies.import_(data["policies"], replace_all=True)
        tool_permissions = data.get("toolPermissions")
        if isinstance(tool_permissions, Mapping):
            for scope in Scope:
                self._permissions.import_(
                    {
                        "inheritance": data.get("inheritance") or {},
                        "permissions": tool_permissions.get(scope.value) or [],
                    },
                    scope,
                )
        if isinstance(data.get("remembered"), list):
            self._remembered.import_(data["remembered"])


def _within(path: str, directory: str) -> bool:
    prefix = directory if directory.endswith(os.sep) else directory + os.sep
    return path == directory or path.startswith(prefix)


def requires_permission(
    engine: PermissionEngine | Callable[[], PermissionEngine],
    kind: PermissionType,
    describe: Callable[[Any], str] | None = None,
) -> Callable[[F], F]:
    """Guard an async tool callable with a permission check.

    The first mapping argument (or the keyword arguments) supplies the resource
    (``file_path``, ``path``, ``command`` or ``url``). Raises
    :class:`PermissionDeniedError` when the check denies.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            target = engine if isinstance(engine, PermissionEngine) else engine()
            payload = next((a for a in args if isinstance(a, Mapping)), kwargs or None)
            resource = None
            details: dict[str, Any] = {}
            if isinstance(payload, Mapping):
                details = dict(payload)
                for key in ("file_path", "path", "command", "url"):
                    if isinstance(payload.get(key), str):
                        resource = payload[key]
                        break
            request = PermissionRequest(
                kind=kind,
                tool=fn.__name__,
                description=describe(payload) if describe else f"Execute {fn.__name__}",
                resource=resource,
                details=details,
            )
            decision = await target.check(request)
            if not decision.allowed:
                raise PermissionDeniedError(decision.reason)
            return await fn(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator

