"""Rich-formatted approval prompt for permission requests."""

from __future__ import annotations

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from policygate.permissions.approval import DENY, parse_choice
from policygate.types.permissions import PermissionRequest, PromptAnswer

STYLE_ACCENT = "#fbbf24"
STYLE_BODY = "#94a3b8"
STYLE_MUTED = "#7c7c8a"

CHOICES = (
    ("y", "allow once"),
    ("n", "deny"),
    ("a", "allow for this session"),
    ("A", "always allow"),
    ("N", "never allow"),
)


class RichApprovalCallback:
    """Rich-formatted interactive approval prompt."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    async def request_approval(
        self, request: PermissionRequest, description: str,
    ) -> PromptAnswer:
        """Show a styled prompt and wait for one of y/n/a/A/N."""
        title = Text(f" ◆ {request.tool} ", style=f"bold {STYLE_ACCENT}")
        body = Text(description, style=STYLE_BODY)
        body.append(f"\n{request.kind.value}", style=STYLE_MUTED)
        if request.resource and request.resource not in description:
            body.append(f"  {request.resource}", style=STYLE_MUTED)
        body.append("\n")
        for key, label in CHOICES:
            body.append(f"\n  [{key}] ", style=f"bold {STYLE_ACCENT}")
            body.append(label, style=STYLE_BODY)

        self._console.print()
        self._console.print(Panel(
            body,
            title=title,
            border_style=STYLE_ACCENT,
            expand=False,
            padding=(0, 1),
        ))

        loop = asyncio.get_running_loop()
        prompt_text = (
            f"[bold {STYLE_ACCENT}]Allow?[/bold {STYLE_ACCENT}] "
            f"[{STYLE_MUTED}](y/n/a/A/N)[/{STYLE_MUTED}] › "
        )
        try:
            self._console.print(prompt_text, end="")
            answer = await loop.run_in_executor(None, lambda: input(""))
        except (EOFError, KeyboardInterrupt):
            self._console.print()
            return DENY
        return parse_choice(answer)
