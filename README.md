# caelis

`caelis` decides where a shell command should run and runs it there.

Commands that tools want to execute are routed either to a sandbox
(a long-lived Docker container on Linux, `sandbox-exec` profiles on macOS)
or to the host. Routing follows a permission mode, an allow-list of safe
commands and a check for shell meta characters. When no sandbox backend is
available, the runtime falls back to the host and marks every host command
as needing approval.

## Modules

- `caelis.types` – enums, dataclasses and policy helpers
  (`PermissionMode`, `SandboxPolicyType`, `SandboxPolicy`, `ExecutionRoute`,
  `SandboxPermission`, `CommandRequest`, `CommandResult`, `CommandDecision`,
  `Config`, `derive_sandbox_policy`, `base_command`, `has_shell_meta`, ...).
- `caelis.errors` – `ErrorCode`, `CodedError`, approval errors and the
  current-approver hook.
- `caelis.host` – `HostRunner`, `HostFileSystem`, and `run_watched`, the
  process supervisor with deadline and idle-output limits.
- `caelis.docker` – `DockerRunner` and `DockerSandboxFactory`.
- `caelis.seatbelt` – `SeatbeltRunner`, `SeatbeltSandboxFactory` and
  `build_seatbelt_profile`.
- `caelis.runtime` – `new_runtime`, `ExecutionRuntime`, `SandboxRegistry`.
- `caelis.envload` – `.env` loading.
- `caelis.version` – `version_string`.

## Concepts

- **Permission mode** (`PermissionMode`): `default` routes through the
  sandbox where possible; `full_control` always runs on the host.
- **Sandbox policy** (`SandboxPolicy`, `SandboxPolicyType`): `read_only`,
  `workspace_write`, `danger_full_access` or `external_sandbox`. When the
  type is not given it is derived from the permission mode
  (`derive_sandbox_policy`): `workspace_write` for `default`,
  `danger_full_access` for `full_control`. `workspace_write` defaults to
  writable root `.`, read-only subpaths `.git` and `.codex`, and network
  access on.
- **Route decision** (`CommandDecision`): `ExecutionRoute.SANDBOX` or
  `ExecutionRoute.HOST`, with an optional `EscalationReason` explaining why
  the command has to leave the sandbox.
- **Runners**: `HostRunner`, `DockerRunner` and `SeatbeltRunner` all accept a
  `CommandRequest` (timeouts in seconds, `0` meaning none) and return a
  `CommandResult` with `stdout`, `stderr` and `exit_code`.

## Building a runtime

```python
from caelis.types import Config, PermissionMode, SandboxPermission, ExecutionRoute
from caelis.runtime import new_runtime, close_runtime

runtime = new_runtime(Config(permission_mode=PermissionMode.DEFAULT))
try:
    decision = runtime.decide_route("ls -la", SandboxPermission.AUTO)
    if decision.route is ExecutionRoute.SANDBOX:
        print("runs in the sandbox")
    else:
        print("needs host execution:", decision.escalation)
finally:
    close_runtime(runtime)
```

`ExecutionRuntime` is also a context manager; `close()` releases the
sandbox runner once and re-raises the first cleanup failure.

`new_runtime` picks a sandbox backend for the platform
(`default_sandbox_type_for_platform`, `sandbox_type_candidates_for_platform`),
probes it, and falls back to the host when it is unavailable, recording why
in `fallback_reason`. On macOS any sandbox type other than `seatbelt` raises
a `CodedError` with `ErrorCode.SANDBOX_UNSUPPORTED`, as does an explicitly
requested type that no factory is registered for. An invalid permission mode
raises `ValueError`. Extra backends are added with
`register_sandbox_factory`, or with a private `SandboxRegistry` passed as
`registry=`.

A command is routed to the sandbox only when its first word is in the safe
command set (`default_safe_commands()` unless `Config.safe_commands` is
given) and it contains none of `| ; & > < ` $ \`.

## Running commands on the host

```python
from caelis.host import HostRunner
from caelis.types import CommandRequest

result = HostRunner().run(CommandRequest(command="echo hello", timeout=5))
print(result.stdout)
```

Commands run in their own process group under `bash -lc` with a
non-interactive environment (`sandbox_env`). A command that exceeds its
timeout, or produces no output for longer than its idle timeout, is killed
together with its children. A non-zero exit raises `RuntimeError`; every
error raised after the process started carries the partial `CommandResult`
as its `result` attribute.

## Docker and seatbelt sandboxes

`DockerRunner` starts one container per runner on first use, mounting the
working directory at `/workspace` (read-only for a `read_only` policy), and
runs later commands in it with `docker exec`. Commands in directories
outside the mounted root run in a one-shot `docker run --rm` container.
`close()` removes the session container. The runner reads
`CAELIS_SANDBOX_DOCKER_IMAGE` (default `alpine:3.20`) and
`CAELIS_SANDBOX_DOCKER_NETWORK` (default `bridge`; forced to `none` when the
sandbox policy denies network access).

`SeatbeltRunner` wraps each command in `sandbox-exec -p <profile>`, where the
profile from `build_seatbelt_profile` allows reads everywhere, network only
when the policy allows it, and writes only under the policy's writable roots
plus the temp and cache directories.

## Errors

Failures carry a stable machine-readable code:

```python
from caelis.errors import CodedError, ErrorCode, error_code_of, is_error_code
from caelis.host import HostRunner
from caelis.types import CommandRequest

try:
    HostRunner().run(CommandRequest(command="sleep 10", timeout=0.1))
except CodedError as err:
    assert is_error_code(err, ErrorCode.HOST_COMMAND_TIMEOUT)
    print(error_code_of(err))
```

`ApprovalRequiredError` and `ApprovalAbortedError` report approval
outcomes (`is_approval_aborted` checks for the latter along the cause
chain); an application installs its own `Approver` with
`with use_approver(...):` and tools look it up with `current_approver()`.

## Environment files

`load_nearest()` walks from the current directory (or the `start` directory
given) up to the filesystem root, loads the first `.env` file it finds into
`os.environ` without overriding variables that are already set, and returns
its path, or `None` when there is none.

## What it does not do

The package is a library only: it has no command-line program, no
interactive approval prompt and no agent or model loop. It decides routes
and runs commands; asking a user for approval is left to the application
through the `Approver` protocol.