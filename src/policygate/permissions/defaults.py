"""Built-in default rules consulted after every configured layer."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from policygate.types.permissions import PermissionRequest, PermissionType


class DefaultAction(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(frozen=True, slots=True)
class DefaultRule:
    """Kind plus optional resource pattern. A string pattern is a substring test."""

    kind: PermissionType
    action: DefaultAction
    pattern: str | re.Pattern[str] | None = None

    def matches(self, request: PermissionRequest) -> bool:
        if request.kind is not self.kind:
            return False
        if self.pattern is None:
            return True
        if isinstance(self.pattern, str):
            return request.resource is not None and self.pattern in request.resource
        return bool(self.pattern.search(request.resource or ""))


# Refuses any command carrying shell metacharacters: ; & | ` $( > < or newline.
SAFE_COMMANDS = re.compile(
    r"^(?![^\n]*[;&|`<>\n])(?!.*\$\()"
    r"(ls|pwd|cat|head|tail|grep|find|echo|which|node --version|npm --version"
    r"|git status|git log|git diff)(?:\s|$)"
)
DANGEROUS_COMMANDS = re.compile(r"^(rm|sudo|chmod|chown|mv|dd)(?:\s|$)")


def default_rules() -> list[DefaultRule]:
    """A fresh copy of the built-in list, first match wins."""
    return [
        DefaultRule(PermissionType.FILE_READ, DefaultAction.ALLOW),
        DefaultRule(PermissionType.BASH_COMMAND, DefaultAction.ALLOW, SAFE_COMMANDS),
        DefaultRule(PermissionType.FILE_DELETE, DefaultAction.ASK),
        DefaultRule(PermissionType.BASH_COMMAND, DefaultAction.ASK, DANGEROUS_COMMANDS),
        DefaultRule(PermissionType.NETWORK_REQUEST, DefaultAction.ASK),
        DefaultRule(PermissionType.MCP_SERVER, DefaultAction.ASK),
        DefaultRule(PermissionType.PLUGIN_INSTALL, DefaultAction.ASK),
        DefaultRule(PermissionType.SYSTEM_CONFIG, DefaultAction.ASK),
    ]
