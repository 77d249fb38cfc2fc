"""Seatbelt (sandbox-exec) sandbox backend."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from collections.abc import Callable, Sequence

from caelis.errors import ErrorCode
from caelis.host import _run_request, resolve_host_work_dir
from caelis.types import (
    CommandRequest,
    CommandResult,
    Config,
    SandboxPolicy,
    SandboxPolicyType,
    normalize_string_list,
)

SEATBELT_SANDBOX_TYPE = "seatbelt"

CommandFactory = Callable[..., Sequence[str]]


def _default_command(name: str, *args: str) -> list[str]:
    return [name, *args]


class SeatbeltSandboxFactory:
    """Builds seatbelt command runners."""

    type = SEATBELT_SANDBOX_TYPE

    def build(self, config: Config) -> "SeatbeltRunner":
        return SeatbeltRunner(config.sandbox_policy)


class SeatbeltRunner:
    """Runs commands under sandbox-exec with a generated profile."""

    def __init__(
        self,
        policy: SandboxPolicy | None = None,
        command_factory: CommandFactory | None = None,
        look_path: Callable[[str], str | None] | None = None,
        platform: str | None = None,
    ) -> None:
        self.policy = policy if policy is not None else SandboxPolicy()
        self.command_factory = command_factory or _default_command
        self.look_path = look_path or shutil.which
        self.platform = platform if platform is not None else sys.platform

    def probe(self, timeout: float = 3.0) -> None:
        """Raise RuntimeError unless sandbox-exec is usable here."""
        if self.platform != "darwin":
            raise RuntimeError(
                f"seatbelt sandbox is only supported on darwin (current={self.platform})"
            )
        try:
            found = self.look_path("sandbox-exec")
        except Exception as exc:
            raise RuntimeError(
                f"seatbelt sandbox unavailable: sandbox-exec not found: {exc}"
            ) from exc
        if not found:
            raise RuntimeError(
                "seatbelt sandbox unavailable: sandbox-exec not found: "
                "executable file not found in $PATH"
            )
        argv = self.command_factory(
            "sandbox-exec",
            "-p",
            "(version 1) (allow default)",
            "/bin/sh",
            "-lc",
            "echo seatbelt-probe",
        )
        try:
            completed = subprocess.run(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=timeout if timeout and timeout > 0 else None,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RuntimeError(f"seatbelt sandbox probe failed: {exc}") from exc
        if completed.returncode != 0:
            status = f"exit status {completed.returncode}"
            message = completed.stderr.decode("utf-8", errors="replace").strip()
            if not message:
                raise RuntimeError(f"seatbelt sandbox probe failed: {status}")
            raise RuntimeError(
                f"seatbelt sandbox probe failed: {status}; stderr={message}"
            )

    def run(self, request: CommandRequest) -> CommandResult:
        try:
            work_dir = resolve_host_work_dir(request.directory)
        except OSError as exc:
            raise RuntimeError(
                f"tool: resolve seatbelt workdir failed: {exc}"
            ) from exc
        profile = build_seatbelt_profile(self.policy, work_dir)
        argv = self.command_factory(
            "sandbox-exec", "-p", profile, "bash", "-lc", request.command
        )
        cwd = request.directory if request.directory.strip() else None
        return _run_request(
            argv,
            request,
            cwd=cwd,
            label="tool: seatbelt sandbox command",
            timeout_code=ErrorCode.SANDBOX_COMMAND_TIMEOUT,
            idle_code=ErrorCode.SANDBOX_IDLE_TIMEOUT,
        )


def build_seatbelt_profile(policy: SandboxPolicy, work_dir: str) -> str:
    """Return the SBPL profile text for a policy rooted at work_dir."""
    lines = [
        "(version 1)",
        "(deny default)",
        '(import "system.sb")',
        "(allow process*)",
        "(allow signal (target self))",
        "(allow sysctl-read)",
        "(allow file-read*)",
    ]
    if policy.network_access:
        lines.append("(allow network*)")
    lines.extend(
        f"(allow file-write* (subpath {sbpl_string(root)}))"
        for root in seatbelt_writable_roots(policy, work_dir)
    )
    lines.extend(
        f"(deny file-write* (subpath {sbpl_string(sub)}))"
        for sub in seatbelt_read_only_subpaths(policy, work_dir)
    )
    return "\n".join(lines)


def seatbelt_writable_roots(policy: SandboxPolicy, work_dir: str) -> tuple[str, ...]:
    """Return the writable roots, plus temp and cache dirs, for a policy."""
    if policy.type == SandboxPolicyType.READ_ONLY:
        return ()
    roots = [
        resolved
        for resolved in (
            resolve_seatbelt_path(work_dir, one) for one in policy.writable_roots
        )
        if resolved
    ]
    tmp = (os.environ.get("TMPDIR") or "/tmp").strip()
    if tmp:
        roots.append(os.path.normpath(tmp))
    home = os.path.expanduser("~")
    if home != "~" and home.strip():
        roots.extend(
            [
                os.path.join(home, "Library", "Caches"),
                os.path.join(home, ".cache"),
                os.path.join(home, ".npm"),
            ]
        )
    return normalize_string_list(roots)


def seatbelt_read_only_subpaths(
    policy: SandboxPolicy, work_dir: str
) -> tuple[str, ...]:
    """Return the policy's read-only subpaths resolved against work_dir."""
    values = (
        resolve_seatbelt_path(work_dir, one) for one in policy.read_only_subpaths
    )
    return normalize_string_list(value for value in values if value)


def resolve_seatbelt_path(base_dir: str, value: str) -> str:
    """Resolve value against base_dir; return "" when it cannot be resolved."""
    trimmed = value.strip()
    if not trimmed:
        return ""
    if os.path.isabs(trimmed):
        return os.path.normpath(trimmed)
    if not base_dir.strip():
        return ""
    return os.path.normpath(os.path.join(base_dir, trimmed))


_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def sbpl_string(value: str) -> str:
    """Return value as a double-quoted, escaped string literal."""
    parts = ['"']
    for ch in value:
        if ch in _ESCAPES:
            parts.append(_ESCAPES[ch])
        elif ch.isprintable():
            parts.append(ch)
        else:
            code = ord(ch)
            if code < 0x80:
                parts.append(f"\\x{code:02x}")
            elif code <= 0xFFFF:
                parts.append(f"\\u{code:04x}")
            else:
                parts.append(f"\\U{code:08x}")
    parts.append('"')
    return "".join(parts)