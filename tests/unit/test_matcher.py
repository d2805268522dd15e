"""Tests for matching tool calls against parsed rules."""

from __future__ import annotations

from policygate.permissions.matcher import (
    extract_parameter,
    kind_for_tool,
    matches,
    tool_matches,
)
from policygate.permissions.patterns import first_token, glob_match, has_glob_chars
from policygate.permissions.rules import parse_rule, regex_rule
from policygate.types.permissions import PermissionType


class TestToolName:
    def test_exact_and_wildcard(self) -> None:
        assert tool_matches("Bash", "Bash")
        assert tool_matches("Bash", "*")
        assert not tool_matches("Bash", "Bas")

    def test_tool_only_rule_matches_any_params(self) -> None:
        rule = parse_rule("Bash")
        assert matches(rule, "Bash", {"command": "anything"})
        assert matches(rule, "Bash", {})
        assert not matches(rule, "Read", {"file_path": "x"})

    def test_star_tool(self) -> None:
        assert matches(parse_rule("*"), "mcp__x__y", {})


class TestCommandMatching:
    def test_prefix(self) -> None:
        rule = parse_rule("Bash(npm:*)")
        assert matches(rule, "Bash", {"command": "npm install express"})
        assert not matches(rule, "Bash", {"command": "yarn add express"})

    def test_multiword_prefix(self) -> None:
        rule = parse_rule("Bash(git status:*)")
        assert matches(rule, "Bash", {"command": "git status --short"})
        assert not matches(rule, "Bash", {"command": "git push"})

    def test_exact(self) -> None:
        rule = parse_rule("Bash(ls)")
        assert matches(rule, "Bash", {"command": "ls"})
        assert not matches(rule, "Bash", {"command": "ls -la"})

    def test_missing_command(self) -> None:
        assert not matches(parse_rule("Bash(ls)"), "Bash", {})

    def test_regex(self) -> None:
        rule = regex_rule("Bash", r"^git (status|log)\b")
        assert matches(rule, "Bash", {"command": "git log -3"})
        assert not matches(rule, "Bash", {"command": "git push"})

    def test_broken_regex_never_matches(self) -> None:
        rule = regex_rule("Bash", "[unclosed")
        assert not matches(rule, "Bash", {"command": "[unclosed"})


class TestPathMatching:
    def test_glob(self) -> None:
        rule = parse_rule("Write(src/**/*.ts)")
        assert matches(rule, "Write", {"file_path": "src/app/index.ts"})
        assert matches(rule, "Write", {"file_path": "src/index.ts"})
        assert not matches(rule, "Write", {"file_path": "bin/app"})

    def test_single_star_stays_in_directory(self) -> None:
        rule = parse_rule("Write(src/*.ts)")
        assert matches(rule, "Write", {"file_path": "src/a.ts"})
        assert not matches(rule, "Write", {"file_path": "src/deep/a.ts"})

    def test_normalized_before_compare(self) -> None:
        rule = parse_rule("Read(/etc/hosts)")
        assert matches(rule, "Read", {"file_path": "/etc/./hosts"})
        assert matches(rule, "Read", {"file_path": "/etc/x/../hosts"})

    def test_path_fallback_key(self) -> None:
        assert matches(parse_rule("Edit(/tmp:*)"), "Edit", {"path": "/tmp/file"})

    def test_search_without_path_matches(self) -> None:
        rule = parse_rule("Grep(/secret/**)")
        assert matches(rule, "Grep", {"pattern": "password"})
        assert not matches(rule, "Grep", {"pattern": "password", "path": "/public/x"})


class TestUrlAndGenericMatching:
    def test_url_glob_ignores_case(self) -> None:
        rule = parse_rule("WebFetch(https://*.example.com/*)")
        assert matches(rule, "WebFetch", {"url": "HTTPS://API.EXAMPLE.COM/v1"})
        assert not matches(rule, "WebFetch", {"url": "https://evil.com/"})

    def test_generic_tool_any_string_param(self) -> None:
        rule = parse_rule("mcp__db__query(SELECT:*)")
        assert matches(rule, "mcp__db__query", {"limit": 5, "sql": "SELECT * FROM t"})
        assert not matches(rule, "mcp__db__query", {"sql": "DROP TABLE t"})


class TestToolCategories:
    def test_kind_for_tool(self) -> None:
        assert kind_for_tool("Read") is PermissionType.FILE_READ
        assert kind_for_tool("Edit") is PermissionType.FILE_WRITE
        assert kind_for_tool("Bash") is PermissionType.BASH_COMMAND
        assert kind_for_tool("WebFetch") is PermissionType.NETWORK_REQUEST
        assert kind_for_tool("mcp__github__list") is PermissionType.MCP_SERVER
        assert kind_for_tool("Unknown") is PermissionType.SYSTEM_CONFIG

    def test_extract_parameter(self) -> None:
        assert extract_parameter("Bash", {"command": "ls"}) == "ls"
        assert extract_parameter("Read", {"path": "/a"}) == "/a"
        assert extract_parameter("WebFetch", {"url": "https://x"}) == "https://x"
        assert extract_parameter("Bash", {}) is None
        assert extract_parameter("Custom", {"command": "ls"}) is None


class TestPatternHelpers:
    def test_glob_braces_and_classes(self) -> None:
        assert glob_match("a.py", "*.{py,ts}")
        assert glob_match("b.ts", "*.{py,ts}")
        assert glob_match("file1", "file[0-9]")
        assert not glob_match("filex", "file[0-9]")
        assert glob_match("filex", "file[!0-9]")

    def test_globstar_zero_dirs(self) -> None:
        assert glob_match("/home/u/.claude/settings.json", "**/.claude/**")
        assert glob_match("src/x.ts", "src/**/*.ts")

    def test_has_glob_chars(self) -> None:
        assert has_glob_chars("*.py")
        assert not has_glob_chars("/etc/hosts")

    def test_first_token(self) -> None:
        assert first_token("  rm -rf /") == "rm"
        assert first_token("") == ""
