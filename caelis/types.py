"""Policy, routing and command types shared by the execution runtime."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import IO, Any, Protocol, runtime_checkable


class PermissionMode(str, Enum):
    """Top-level execution authorization strategy."""

    DEFAULT = "default"
    FULL_CONTROL = "full_control"

    def __str__(self) -> str:
        return self.value


class SandboxPolicyType(str, Enum):
    """High-level sandbox data boundary semantics."""

    READ_ONLY = "read_only"
    WORKSPACE_WRITE = "workspace_write"
    DANGER_FULL = "danger_full_access"
    EXTERNAL = "external_sandbox"

    def __str__(self) -> str:
        return self.value


class ExecutionRoute(str, Enum):
    """Where one command should run."""

    SANDBOX = "sandbox"
    HOST = "host"

    def __str__(self) -> str:
        return self.value


class SandboxPermission(str, Enum):
    """Lets tools ask for host escalation."""

    AUTO = "auto"
    REQUIRE_ESCALATED = "require_escalated"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SandboxPolicy:
    """Backend-agnostic sandbox policy summary."""

    type: SandboxPolicyType | str | None = None
    network_access: bool = False
    writable_roots: tuple[str, ...] = ()
    read_only_subpaths: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "writable_roots", tuple(self.writable_roots or ()))
        object.__setattr__(
            self, "read_only_subpaths", tuple(self.read_only_subpaths or ())
        )


@dataclass(frozen=True)
class EscalationReason:
    """Why a command has to leave the sandbox path."""

    message: str


@dataclass(frozen=True)
class CommandDecision:
    """Routing result for one command request."""

    route: ExecutionRoute
    escalation: EscalationReason | None = None


@dataclass(frozen=True)
class CommandRequest:
    """One command execution request; timeouts are seconds, 0 means none."""

    command: str
    directory: str = ""
    timeout: float = 0.0
    idle_timeout: float = 0.0


@dataclass
class CommandResult:
    """One command execution result."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


@runtime_checkable
class CommandRunner(Protocol):
    """Executes shell commands for tools."""

    def run(self, request: CommandRequest) -> CommandResult:
        """Run the request and return its output; raise on failure."""


@runtime_checkable
class FileSystem(Protocol):
    """File operations for tools, on the host or in an isolated sandbox."""

    def getwd(self) -> str:
        """Return the working directory."""

    def user_home_dir(self) -> str:
        """Return the user's home directory."""

    def open(self, path: str) -> IO[bytes]:
        """Open a file for binary reading."""

    def read_dir(self, path: str) -> list[os.DirEntry[str]]:
        """List the entries of a directory."""

    def stat(self, path: str) -> os.stat_result:
        """Return file status."""

    def read_file(self, path: str) -> bytes:
        """Return the contents of a file."""

    def write_file(self, path: str, data: bytes, perm: int) -> None:
        """Write data to a file with the given permission bits."""

    def glob(self, pattern: str) -> list[str]:
        """Return the paths matching a pattern."""

    def walk(self, root: str) -> Iterator[tuple[str, list[str], list[str]]]:
        """Walk a directory tree."""


@dataclass
class Config:
    """Settings used to build an execution runtime."""

    permission_mode: PermissionMode | str | None = None
    sandbox_type: str = ""
    safe_commands: tuple[str, ...] = ()
    sandbox_policy: SandboxPolicy = field(default_factory=SandboxPolicy)
    file_system: Any = None
    host_runner: Any = None
    sandbox_runner: Any = None


_SHELL_META = set("|;&><`$\\")


def normalize_sandbox_policy_type(
    policy_type: SandboxPolicyType | str | None,
    mode: PermissionMode | str | None,
) -> SandboxPolicyType:
    """Return a known policy type, falling back on one that fits the mode."""
    if policy_type is not None:
        try:
            return SandboxPolicyType(policy_type)
        except ValueError:
            pass
    if mode == PermissionMode.FULL_CONTROL:
        return SandboxPolicyType.DANGER_FULL
    return SandboxPolicyType.WORKSPACE_WRITE


def normalize_string_list(values: Iterable[str] | None) -> tuple[str, ...]:
    """Trim, drop blanks and de-duplicate while keeping order."""
    out: dict[str, None] = {}
    for raw in values or ():
        trimmed = raw.strip()
        if trimmed:
            out.setdefault(trimmed, None)
    return tuple(out)


def derive_sandbox_policy(
    mode: PermissionMode | str | None, policy: SandboxPolicy
) -> SandboxPolicy:
    """Fill in a complete sandbox policy for the given permission mode."""
    kind = normalize_sandbox_policy_type(policy.type, mode)
    if kind is SandboxPolicyType.READ_ONLY:
        policy = replace(
            policy,
            type=kind,
            network_access=False,
            writable_roots=(),
            read_only_subpaths=(),
        )
    elif kind is SandboxPolicyType.WORKSPACE_WRITE:
        policy = replace(
            policy,
            type=kind,
            network_access=True,
            writable_roots=policy.writable_roots or (".",),
            read_only_subpaths=policy.read_only_subpaths or (".git", ".codex"),
        )
    elif kind is SandboxPolicyType.EXTERNAL:
        policy = replace(policy, type=kind)
    else:
        policy = replace(
            policy,
            type=SandboxPolicyType.DANGER_FULL,
            network_access=True,
            writable_roots=(),
            read_only_subpaths=(),
        )
    return replace(
        policy,
        writable_roots=normalize_string_list(policy.writable_roots),
        read_only_subpaths=normalize_string_list(policy.read_only_subpaths),
    )


def has_shell_meta(command: str) -> bool:
    """Report whether the command holds shell meta characters."""
    return any(ch in _SHELL_META for ch in command)


def base_command(command: str) -> str:
    """Return the base name of the command's first word."""
    fields = command.split()
    if not fields:
        return ""
    first = fields[0].rstrip("/")
    if not first:
        return "/"
    return first.rsplit("/", 1)[-1]


def is_allowed_command(base: str, allowlist: Iterable[str] | None) -> bool:
    """Report whether base is in the allowlist."""
    if not base:
        return False
    return any(one.strip() == base for one in allowlist or ())


def default_safe_commands() -> list[str]:
    """Return the commands allowed inside the sandbox by default."""
    return [
        "pwd", "ls", "find", "cat", "head", "tail", "wc", "echo", "grep", "sed", "awk", "rg",
    ]