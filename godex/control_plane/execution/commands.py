"""Argument vectors for the commands a workspace can run.

Only a fixed set of test commands is accepted from callers; anything else
falls back to the workspace override and then to detection from the repo's
lock/manifest files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class CommandSpec:
    command: str
    args: list[str] = field(default_factory=list)


# Exact strings accepted as test commands.
SUPPORTED_TEST_COMMANDS: dict[str, CommandSpec] = {
    "pnpm test": CommandSpec("pnpm", ["test"]),
    "npm test": CommandSpec("npm", ["test"]),
    "pytest": CommandSpec("pytest", []),
    "python -m pytest": CommandSpec("python", ["-m", "pytest"]),
}


def agent_message_command(prompt: str, *, codex_bin: str = "codex", full_access: bool = False) -> CommandSpec:
    """Non-interactive agent CLI invocation for a workspace message."""
    if full_access:
        return CommandSpec(codex_bin, ["--dangerously-bypass-approvals-and-sandbox", "exec", prompt])
    return CommandSpec(codex_bin, ["-a", "never", "-s", "workspace-write", "exec", prompt])


def git_status_command() -> CommandSpec:
    return CommandSpec("git", ["status"])


def git_diff_command(*, staged: bool = False) -> CommandSpec:
    return CommandSpec("git", ["diff", "--staged"] if staged else ["diff"])


def parse_test_command(command: str | None) -> CommandSpec | None:
    if not command:
        return None
    return SUPPORTED_TEST_COMMANDS.get(command.strip())


def detect_test_command(repo_path: str | Path) -> CommandSpec | None:
    """Guess the test runner from files at the repository root."""
    root = Path(repo_path)
    if (root / "pnpm-lock.yaml").exists():
        return CommandSpec("pnpm", ["test"])
    if (root / "package.json").exists():
        return CommandSpec("npm", ["test"])
    if (root / "pyproject.toml").exists():
        return CommandSpec("python", ["-m", "pytest"])
    return None


def resolve_test_command(
    requested: str | None,
    override: str | None,
    repo_path: str | Path,
) -> CommandSpec | None:
    """Requested command, then the workspace override, then detection."""
    return parse_test_command(requested) or parse_test_command(override) or detect_test_command(repo_path)
