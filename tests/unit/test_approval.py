"""Tests for approval answers, prompt descriptions and the prompt wait."""

from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from policygate.permissions.approval import (
    ApprovalCallback,
    StdinApprovalCallback,
    await_answer,
    describe_request,
    parse_choice,
)
from policygate.types.permissions import AnswerScope, PermissionRequest, PermissionType, PromptAnswer
from policygate.ui.approval import RichApprovalCallback
from tests.conftest import FailingApproval, ScriptedApproval


def _bash(command: str = "ls") -> PermissionRequest:
    return PermissionRequest(kind=PermissionType.BASH_COMMAND, tool="Bash", resource=command)


class TestParseChoice:
    @pytest.mark.parametrize("answer, allowed, scope, remember", [
        ("y", True, AnswerScope.ONCE, False),
        ("yes", True, AnswerScope.ONCE, False),
        (" Y ", True, AnswerScope.ONCE, False),
        ("a", True, AnswerScope.SESSION, True),
        ("A", True, AnswerScope.ALWAYS, True),
        ("N", False, AnswerScope.ALWAYS, True),
        ("n", False, AnswerScope.ONCE, False),
        ("", False, AnswerScope.ONCE, False),
        ("maybe", False, AnswerScope.ONCE, False),
    ])
    def test_choices(
        self, answer: str, allowed: bool, scope: AnswerScope, remember: bool,
    ) -> None:
        result = parse_choice(answer)
        assert result.allowed is allowed
        assert result.scope is scope
        assert result.remember is remember


class TestDescribeRequest:
    def test_explicit_description_wins(self) -> None:
        request = PermissionRequest(
            kind=PermissionType.BASH_COMMAND, tool="Bash", resource="ls", description="List",
        )
        assert describe_request(request) == "List"

    def test_per_tool(self) -> None:
        assert describe_request(_bash("make")) == "Run command: make"
        write = PermissionRequest(
            kind=PermissionType.FILE_WRITE, tool="Write", resource="a.txt",
            details={"content": "one\ntwo"},
        )
        assert describe_request(write) == "Write a.txt (2 lines)"
        fetch = PermissionRequest(
            kind=PermissionType.NETWORK_REQUEST, tool="WebFetch", resource="https://x",
        )
        assert describe_request(fetch) == "Fetch URL: https://x"
        mcp = PermissionRequest(kind=PermissionType.MCP_SERVER, tool="mcp__github__create_issue")
        assert describe_request(mcp) == "MCP tool: create_issue"

    def test_fallback_truncates(self) -> None:
        request = PermissionRequest(
            kind=PermissionType.SYSTEM_CONFIG, tool="Configure", details={"value": "x" * 200},
        )
        text = describe_request(request)
        assert text.startswith("Configure(")
        assert text.endswith("...)")


class TestAwaitAnswer:
    @pytest.mark.asyncio
    async def test_returns_answer(self) -> None:
        answer = PromptAnswer(allowed=True)
        result = await await_answer(ScriptedApproval(answer), _bash(), "d", timeout=1.0)
        assert result is answer

    @pytest.mark.asyncio
    async def test_timeout_denies(self) -> None:
        slow = ScriptedApproval(PromptAnswer(allowed=True), delay=5.0)
        result = await await_answer(slow, _bash(), "d", timeout=0.05)
        assert result.allowed is False
        assert result.timed_out is True

    @pytest.mark.asyncio
    async def test_cancel_event_denies(self) -> None:
        slow = ScriptedApproval(PromptAnswer(allowed=True), delay=5.0)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        result = await await_answer(slow, _bash(), "d", timeout=2.0, cancel_event=cancel)
        assert result.allowed is False
        assert result.cancelled is True

    @pytest.mark.asyncio
    async def test_callback_error_denies(self) -> None:
        result = await await_answer(FailingApproval(), _bash(), "d", timeout=1.0)
        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_wrong_return_type_denies(self) -> None:
        class Sloppy:
            async def request_approval(self, request: PermissionRequest, description: str) -> bool:
                return True

        result = await await_answer(Sloppy(), _bash(), "d", timeout=1.0)  # type: ignore[arg-type]
        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_outer_cancellation_propagates(self) -> None:
        slow = ScriptedApproval(PromptAnswer(allowed=True), delay=5.0)
        task = asyncio.ensure_future(await_answer(slow, _bash(), "d", timeout=None))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestPromptCallbacks:
    def test_protocol(self) -> None:
        assert isinstance(StdinApprovalCallback(), ApprovalCallback)
        assert isinstance(RichApprovalCallback(), ApprovalCallback)

    @pytest.mark.asyncio
    async def test_stdin_prompt(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("builtins.input", lambda prompt="": "A")
        answer = await StdinApprovalCallback().request_approval(_bash(), "Run command: ls")
        assert answer.allowed is True
        assert answer.scope is AnswerScope.ALWAYS

    @pytest.mark.asyncio
    async def test_rich_prompt_renders_choices(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("builtins.input", lambda prompt="": "a")
        out = io.StringIO()
        callback = RichApprovalCallback(Console(file=out, width=100, color_system=None))
        answer = await callback.request_approval(_bash("npm test"), "Run command: npm test")
        assert answer.scope is AnswerScope.SESSION
        rendered = out.getvalue()
        assert "Bash" in rendered
        assert "Run command: npm test" in rendered
        assert "never allow" in rendered

    @pytest.mark.asyncio
    async def test_rich_prompt_eof_denies(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def eof(prompt: str = "") -> str:
            raise EOFError

        monkeypatch.setattr("builtins.input", eof)
        callback = RichApprovalCallback(Console(file=io.StringIO()))
        answer = await callback.request_approval(_bash(), "Run command: ls")
        assert answer.allowed is False
