"""Execution runtime: sandbox selection, fallback and command routing."""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

from caelis.docker import DOCKER_SANDBOX_TYPE, DockerSandboxFactory
from caelis.errors import CodedError, ErrorCode
from caelis.host import HostFileSystem, HostRunner
from caelis.seatbelt import SEATBELT_SANDBOX_TYPE, SeatbeltSandboxFactory
from caelis.types import (
    CommandDecision,
    Config,
    EscalationReason,
    ExecutionRoute,
    PermissionMode,
    SandboxPermission,
    SandboxPolicy,
    base_command,
    default_safe_commands,
    derive_sandbox_policy,
    has_shell_meta,
    is_allowed_command,
)

PROBE_TIMEOUT = 3.0


@runtime_checkable
class SandboxFactory(Protocol):
    """Builds one sandbox command runner for its sandbox type."""

    type: str

    def build(self, config: Config) -> Any:
        """Return a command runner for config; raise if it cannot be built."""


class SandboxRegistry:
    """Thread-safe mapping from sandbox type to factory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._factories: dict[str, SandboxFactory] = {}

    def register(self, factory: SandboxFactory) -> None:
        """Add factory; raise ValueError if it is invalid or its type is taken."""
        kind = getattr(factory, "type", "") if factory is not None else ""
        if not kind:
            raise ValueError("execenv: invalid sandbox factory")
        with self._lock:
            if kind in self._factories:
                raise ValueError(f'execenv: duplicated sandbox factory "{kind}"')
            self._factories[kind] = factory

    def get(self, sandbox_type: str) -> SandboxFactory | None:
        """Return the factory registered for sandbox_type, or None."""
        with self._lock:
            return self._factories.get(sandbox_type)


_default_registry = SandboxRegistry()
_default_registry.register(DockerSandboxFactory())
_default_registry.register(SeatbeltSandboxFactory())


def default_registry() -> SandboxRegistry:
    """Return the process-wide registry holding the built-in backends."""
    return _default_registry


def register_sandbox_factory(factory: SandboxFactory) -> None:
    """Register factory in the process-wide registry."""
    _default_registry.register(factory)


@dataclass
class ExecutionRuntime:
    """Execution primitives together with the derived security policy."""

    permission_mode: PermissionMode
    sandbox_policy: SandboxPolicy
    file_system: Any
    host_runner: Any
    safe_commands: tuple[str, ...]
    deny_meta_chars: bool = True
    sandbox_type: str = ""
    sandbox_runner: Any = None
    fallback_to_host: bool = False
    fallback_reason: str = ""
    _closers: list[Any] = field(default_factory=list, repr=False)
    _close_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _closed: bool = field(default=False, repr=False)
    _close_error: BaseException | None = field(default=None, repr=False)

    def decide_route(
        self,
        command: str,
        sandbox_permission: SandboxPermission | str = SandboxPermission.AUTO,
    ) -> CommandDecision:
        """Decide whether command runs in the sandbox or needs host escalation."""
        if self.permission_mode == PermissionMode.FULL_CONTROL:
            return CommandDecision(route=ExecutionRoute.HOST)

        if self.fallback_to_host:
            message = "sandbox unavailable, host execution requires approval"
            reason = self.fallback_reason.strip()
            if reason:
                message = f"{message}: {reason}"
            return CommandDecision(
                route=ExecutionRoute.HOST, escalation=EscalationReason(message)
            )

        if sandbox_permission == SandboxPermission.REQUIRE_ESCALATED:
            return CommandDecision(
                route=ExecutionRoute.HOST,
                escalation=EscalationReason(
                    "sandbox_permissions=require_escalated requested"
                ),
            )
        reason = self._sandbox_safety_reason(command)
        if reason is not None:
            return CommandDecision(
                route=ExecutionRoute.HOST, escalation=EscalationReason(reason)
            )
        return CommandDecision(route=ExecutionRoute.SANDBOX)

    def _sandbox_safety_reason(self, command: str) -> str | None:
        reasons = []
        if self.deny_meta_chars and has_shell_meta(command):
            reasons.append("shell meta characters detected")
        base = base_command(command)
        if not is_allowed_command(base, self.safe_commands):
            if not base:
                reasons.append("empty command")
            else:
                reasons.append(f'command "{base}" is outside safe command set')
        return "; ".join(reasons) if reasons else None

    def close(self) -> None:
        """Release sandbox resources once; re-raise the first failure seen."""
        with self._close_lock:
            if not self._closed:
                self._closed = True
                for closer in self._closers:
                    try:
                        closer.close()
                    except Exception as exc:  # keep closing the rest
                        if self._close_error is None:
                            self._close_error = exc
            error = self._close_error
        if error is not None:
            raise error

    def __enter__(self) -> "ExecutionRuntime":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def close_runtime(runtime: Any) -> None:
    """Close runtime if it has resources to release."""
    if runtime is None:
        return
    closer = getattr(runtime, "close", None)
    if callable(closer):
        closer()


def default_sandbox_type_for_platform(platform: str | None = None) -> str:
    """Return the sandbox backend used by default on platform."""
    platform = sys.platform if platform is None else platform
    if platform == "darwin":
        return SEATBELT_SANDBOX_TYPE
    return DOCKER_SANDBOX_TYPE


def sandbox_type_candidates_for_platform(
    requested: str, platform: str | None = None
) -> list[str]:
    """Return the sandbox types to try for a request on platform."""
    platform = sys.platform if platform is None else platform
    value = (requested or "").strip().lower()
    if platform.strip().lower() == "darwin":
        if not value or value == SEATBELT_SANDBOX_TYPE:
            return [SEATBELT_SANDBOX_TYPE]
        return []
    if not value:
        return [DOCKER_SANDBOX_TYPE]
    return [value]


def _normalize_mode(mode: PermissionMode | str | None) -> PermissionMode:
    if mode is None or mode == "":
        return PermissionMode.DEFAULT
    try:
        return PermissionMode(mode)
    except ValueError:
        raise ValueError(f'execenv: invalid permission mode "{mode}"') from None


def _probe(runner: Any) -> None:
    prober = getattr(runner, "probe", None)
    if callable(prober):
        prober(timeout=PROBE_TIMEOUT)


def new_runtime(
    config: Config | None = None,
    platform: str | None = None,
    registry: SandboxRegistry | None = None,
) -> ExecutionRuntime:
    """Build a runtime for config, choosing and probing a sandbox backend.

    Raises ValueError for an invalid permission mode and CodedError with
    SANDBOX_UNSUPPORTED when the requested sandbox cannot be used here.
    An unavailable sandbox does not raise: the runtime falls back to the host.
    """
    config = config if config is not None else Config()
    platform = sys.platform if platform is None else platform
    registry = registry if registry is not None else _default_registry

    mode = _normalize_mode(config.permission_mode)
    resolved_policy = derive_sandbox_policy(mode, config.sandbox_policy)
    runtime = ExecutionRuntime(
        permission_mode=mode,
        sandbox_policy=resolved_policy,
        file_system=config.file_system if config.file_system is not None else HostFileSystem(),
        host_runner=config.host_runner if config.host_runner is not None else HostRunner(),
        safe_commands=tuple(config.safe_commands) or tuple(default_safe_commands()),
    )
    if mode == PermissionMode.FULL_CONTROL:
        return runtime

    requested = (config.sandbox_type or "").strip().lower()
    if platform.lower() == "darwin" and requested and requested != SEATBELT_SANDBOX_TYPE:
        raise CodedError(
            ErrorCode.SANDBOX_UNSUPPORTED,
            f'execenv: sandbox type "{requested}" is unsupported on darwin, '
            f'expected "{SEATBELT_SANDBOX_TYPE}"',
        )
    candidates = sandbox_type_candidates_for_platform(requested, platform)
    if not candidates:
        raise CodedError(
            ErrorCode.SANDBOX_UNSUPPORTED, "execenv: no sandbox backend candidates"
        )
    runtime.sandbox_type = candidates[0]

    sandbox_runner = config.sandbox_runner
    if sandbox_runner is None:
        failures = []
        for candidate in candidates:
            factory = registry.get(candidate)
            if factory is None:
                if requested == candidate:
                    raise CodedError(
                        ErrorCode.SANDBOX_UNSUPPORTED,
                        f'execenv: unknown sandbox type "{candidate}"',
                    )
                failures.append(f"{candidate}: unknown sandbox type")
                continue
            build_config = replace(
                config,
                permission_mode=mode,
                sandbox_type=candidate,
                sandbox_policy=resolved_policy,
            )
            try:
                built = factory.build(build_config)
            except Exception as exc:
                failures.append(f"{candidate}: init failed: {exc}")
                continue
            try:
                _probe(built)
            except Exception as exc:
                failures.append(f"{candidate}: unavailable: {exc}")
                continue
            runtime.sandbox_type = candidate
            sandbox_runner = built
            break
        if sandbox_runner is None:
            runtime.fallback_to_host = True
            runtime.fallback_reason = "; ".join(failures)
            return runtime
    else:
        try:
            _probe(sandbox_runner)
        except Exception as exc:
            runtime.fallback_to_host = True
            runtime.fallback_reason = (
                f'sandbox backend "{runtime.sandbox_type}" unavailable: {exc}'
            )
            return runtime

    runtime.sandbox_runner = sandbox_runner
    if callable(getattr(sandbox_runner, "close", None)):
        runtime._closers.append(sandbox_runner)
    return runtime