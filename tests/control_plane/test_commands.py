"""Unit tests for workspace command construction."""

from __future__ import annotations

from godex.control_plane.execution.commands import (
    CommandSpec,
    agent_message_command,
    detect_test_command,
    git_diff_command,
    parse_test_command,
    resolve_test_command,
)


def test_agent_message_command_sandboxed() -> None:
    spec = agent_message_command("fix the bug")
    assert spec == CommandSpec("codex", ["-a", "never", "-s", "workspace-write", "exec", "fix the bug"])


def test_agent_message_command_full_access() -> None:
    spec = agent_message_command("go", codex_bin="/opt/codex", full_access=True)
    assert spec.command == "/opt/codex"
    assert spec.args == ["--dangerously-bypass-approvals-and-sandbox", "exec", "go"]


def test_git_diff_command() -> None:
    assert git_diff_command().args == ["diff"]
    assert git_diff_command(staged=True).args == ["diff", "--staged"]


def test_parse_test_command_allowlist() -> None:
    assert parse_test_command(" pnpm test ") == CommandSpec("pnpm", ["test"])
    assert parse_test_command("python -m pytest") == CommandSpec("python", ["-m", "pytest"])
    assert parse_test_command("rm -rf /") is None
    assert parse_test_command(None) is None


def test_detect_test_command(tmp_path) -> None:
    assert detect_test_command(tmp_path) is None

    (tmp_path / "pyproject.toml").write_text("[project]\n")
    assert detect_test_command(tmp_path) == CommandSpec("python", ["-m", "pytest"])

    (tmp_path / "package.json").write_text("{}")
    assert detect_test_command(tmp_path) == CommandSpec("npm", ["test"])

    (tmp_path / "pnpm-lock.yaml").write_text("")
    assert detect_test_command(tmp_path) == CommandSpec("pnpm", ["test"])


def test_resolve_test_command_precedence(tmp_path) -> None:
    (tmp_path / "package.json").write_text("{}")

    assert resolve_test_command("pytest", "pnpm test", tmp_path) == CommandSpec("pytest", [])
    assert resolve_test_command(None, "pnpm test", tmp_path) == CommandSpec("pnpm", ["test"])
    assert resolve_test_command("unsupported", "also bad", tmp_path) == CommandSpec("npm", ["test"])
