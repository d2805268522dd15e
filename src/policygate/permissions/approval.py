"""Approval callback protocol and the fail-closed prompt suspension point."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol, runtime_checkable

from policygate.types.permissions import AnswerScope, PermissionRequest, PromptAnswer

logger = logging.getLogger(__name__)

CHOICES_HELP = (
    "  [y] Yes, allow once\n"
    "  [n] No, deny\n"
    "  [a] Always allow for this session\n"
    "  [A] Always allow (remember)\n"
    "  [N] Never allow (remember)"
)

DENY = PromptAnswer(allowed=False)


@runtime_checkable
class ApprovalCallback(Protocol):
    """Protocol for asking a human whether to allow a request."""

    async def request_approval(
        self, request: PermissionRequest, description: str,
    ) -> PromptAnswer:
        """Ask the user. Must not assume it will be awaited to completion."""
        ...


def describe_request(request: PermissionRequest) -> str:
    """Build a human-readable one-line description of a request."""
    if request.description:
        return request.description
    details = request.details
    if request.tool == "Bash" and request.resource:
        return f"Run command: {request.resource}"
    if request.tool == "Write" and request.resource:
        content = details.get("content", "")
        lines = content.count("\n") + 1 if isinstance(content, str) and content else 0
        return f"Write {request.resource} ({lines} lines)"
    if request.tool in ("Edit", "MultiEdit") and request.resource:
        return f"Edit {request.resource}"
    if request.tool == "Read" and request.resource:
        return f"Read {request.resource}"
    if request.tool in ("WebFetch", "WebSearch") and request.resource:
        return f"Fetch URL: {request.resource}"
    if request.tool.startswith("mcp__"):
        parts = request.tool.split("__", 2)
        short = parts[-1] if len(parts) > 1 else request.tool
        return f"MCP tool: {short}"
    if request.resource:
        return f"{request.tool} {request.kind.value}: {request.resource}"
    args_str = json.dumps(details, default=str)
    if len(args_str) > 80:
        args_str = args_str[:77] + "..."
    return f"{request.tool}({args_str})"


def parse_choice(answer: str) -> PromptAnswer:
    """Map a y/n/a/A/N answer to a PromptAnswer. Anything else denies."""
    match answer.strip():
        case "y" | "Y" | "yes":
            return PromptAnswer(allowed=True, scope=AnswerScope.ONCE)
        case "a":
            return PromptAnswer(allowed=True, remember=True, scope=AnswerScope.SESSION)
        case "A":
            return PromptAnswer(allowed=True, remember=True, scope=AnswerScope.ALWAYS)
        case "N":
            return PromptAnswer(allowed=False, remember=True, scope=AnswerScope.ALWAYS)
        case _:
            return PromptAnswer(allowed=False, scope=AnswerScope.ONCE)


class StdinApprovalCallback:
    """Plain-text approval prompt using stdin/stdout."""

    async def request_approval(
        self, request: PermissionRequest, description: str,
    ) -> PromptAnswer:
        loop = asyncio.get_running_loop()
        prompt = (
            f"\nAllow {request.tool} ({request.kind.value})? {description}\n"
            f"{CHOICES_HELP}\nYour choice [y/n/a/A/N] > "
        )
        try:
            answer = await loop.run_in_executor(None, lambda: input(prompt))
        except (EOFError, KeyboardInterrupt):
            return DENY
        return parse_choice(answer)


async def await_answer(
    callback: ApprovalCallback,
    request: PermissionRequest,
    description: str,
    *,
    timeout: float | None,
    cancel_event: asyncio.Event | None = None,
) -> PromptAnswer:
    """Wait for the callback, denying on timeout, cancellation or error.

    Cancelling the task that awaits this coroutine still propagates
    ``CancelledError`` after the prompt task is cancelled.
    """
    prompt = asyncio.ensure_future(callback.request_approval(request, description))
    waiters: set[asyncio.Future[object]] = {prompt}
    cancelled = None
    if cancel_event is not None:
        cancelled = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancelled)

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        prompt.cancel()
        raise
    finally:
        if cancelled is not None and not cancelled.done():
            cancelled.cancel()

    if cancelled is not None and cancelled in done:
        prompt.cancel()
        logger.info("Permission prompt for %s cancelled; denying", request.tool)
        return PromptAnswer(allowed=False, cancelled=True)

    if prompt not in done:
        prompt.cancel()
        logger.warning("Permission prompt for %s timed out after %ss; denying", request.tool, timeout)
        return PromptAnswer(allowed=False, timed_out=True)

    if prompt.cancelled():
        logger.info("Permission prompt for %s was cancelled; denying", request.tool)
        return PromptAnswer(allowed=False, cancelled=True)
    exc = prompt.exception()
    if exc is not None:
        logger.warning("Permission prompt for %s failed: %s; denying", request.tool, exc)
        return DENY
    answer = prompt.result()
    if not isinstance(answer, PromptAnswer):
        logger.warning("Approval callback returned %r; denying", answer)
        return DENY
    return answer
