"""Docker sandbox backend with a persistent per-runner session container."""

from __future__ import annotations

import itertools
import os
import posixpath
import subprocess
import threading
import time
from collections.abc import Callable, Sequence

from caelis.errors import ErrorCode
from caelis.host import _describe_exit, _run_request, resolve_host_work_dir
from caelis.types import CommandRequest, CommandResult, Config, SandboxPolicyType

DOCKER_SANDBOX_TYPE = "docker"
WORKSPACE_DIR = "/workspace"
DEFAULT_IMAGE = "alpine:3.20"
IMAGE_ENV_KEY = "CAELIS_SANDBOX_DOCKER_IMAGE"
DEFAULT_NETWORK = "bridge"
NETWORK_ENV_KEY = "CAELIS_SANDBOX_DOCKER_NETWORK"
SESSION_NAME = "caelis-sandbox"
SETUP_TIMEOUT = 20.0
CLOSE_TIMEOUT = 3.0

_ENV_ARGS = (
    "-e", "CI=1",
    "-e", "TERM=dumb",
    "-e", "GIT_TERMINAL_PROMPT=0",
    "-e", "PAGER=cat",
    "-e", "NO_COLOR=1",
)
_KEEPALIVE = "trap 'exit 0' TERM INT; while :; do sleep 3600; done"

CommandFactory = Callable[..., Sequence[str]]

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def _default_command(name: str, *args: str) -> list[str]:
    return [name, *args]


def next_container_name() -> str:
    """Return a fresh session container name unique to this process."""
    with _counter_lock:
        number = next(_counter)
    return f"{SESSION_NAME}-{os.getpid()}-{number}"


def rel_within_root(root: str, target: str) -> str | None:
    """Return target relative to root, or None when it lies outside root."""
    root = os.path.normpath(root)
    target = os.path.normpath(target)
    try:
        rel = os.path.relpath(target, root)
    except ValueError:
        return None
    if rel == ".." or rel.startswith(".." + os.sep):
        return None
    return rel


class DockerSandboxFactory:
    """Builds docker command runners."""

    type = DOCKER_SANDBOX_TYPE

    def build(self, config: Config) -> "DockerRunner":
        return DockerRunner.from_config(config)


class DockerRunner:
    """Runs commands inside a long-lived docker container mounting the workspace."""

    def __init__(
        self,
        image: str = DEFAULT_IMAGE,
        network: str = DEFAULT_NETWORK,
        read_only: bool = False,
        setup_timeout: float = SETUP_TIMEOUT,
        container: str | None = None,
        command_factory: CommandFactory | None = None,
    ) -> None:
        self.image = image
        self.network = network
        self.read_only = read_only
        self.setup_timeout = setup_timeout
        self.command_factory = command_factory or _default_command
        self._lock = threading.Lock()
        self._container = container if container and container.strip() else ""
        self._root_dir = ""
        self._started = False
        self._closed = False

    @classmethod
    def from_config(cls, config: Config | None = None) -> "DockerRunner":
        """Build a runner from environment defaults and the config's policy."""
        config = config if config is not None else Config()
        image = os.environ.get(IMAGE_ENV_KEY, "").strip() or DEFAULT_IMAGE
        network = os.environ.get(NETWORK_ENV_KEY, "").strip().lower() or DEFAULT_NETWORK
        policy = config.sandbox_policy
        read_only = policy.type == SandboxPolicyType.READ_ONLY
        if policy.type not in (None, "") and not policy.network_access:
            network = "none"
        return cls(
            image=image,
            network=network,
            read_only=read_only,
            container=next_container_name(),
        )

    @property
    def container(self) -> str:
        with self._lock:
            return self._container

    @property
    def started(self) -> bool:
        with self._lock:
            return self._started

    def __enter__(self) -> "DockerRunner":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run_command(self, *args: str, timeout: float | None = None) -> None:
        argv = self.command_factory("docker", *args)
        try:
            completed = subprocess.run(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=timeout if timeout and timeout > 0 else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError("context deadline exceeded") from exc
        except OSError as exc:
            raise RuntimeError(str(exc)) from exc
        if completed.returncode != 0:
            status = _describe_exit(completed.returncode)
            message = completed.stderr.decode("utf-8", errors="replace").strip()
            if not message:
                raise RuntimeError(status)
            raise RuntimeError(f"{status}; stderr={message}")

    def probe(self, timeout: float = 3.0) -> None:
        """Raise RuntimeError unless the docker daemon and image are usable."""
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None

        def remaining() -> float | None:
            if deadline is None:
                return None
            return max(0.001, deadline - time.monotonic())

        try:
            self._run_command(
                "version", "--format", "{{.Server.Version}}", timeout=remaining()
            )
        except RuntimeError as exc:
            raise RuntimeError(f"docker probe failed: {exc}") from exc
        try:
            self._run_command("image", "inspect", self.image, timeout=remaining())
        except RuntimeError as inspect_err:
            try:
                self._run_command("pull", self.image, timeout=remaining())
            except RuntimeError as pull_err:
                raise RuntimeError(
                    f'docker image "{self.image}" unavailable: inspect failed: '
                    f"{inspect_err}; pull failed: {pull_err}"
                ) from pull_err
        try:
            self._run_command(
                "run", "--rm", "--network", "none", self.image,
                "sh", "-lc", "echo sandbox-ready",
                timeout=remaining(),
            )
        except RuntimeError as exc:
            raise RuntimeError(
                f'docker image "{self.image}" is not runnable for shell sandbox: {exc}'
            ) from exc

    def run(self, request: CommandRequest) -> CommandResult:
        try:
            host_dir = resolve_host_work_dir(request.directory)
        except OSError as exc:
            raise RuntimeError(f"tool: resolve docker workdir failed: {exc}") from exc
        try:
            self._ensure_session(host_dir)
        except RuntimeError as exc:
            raise RuntimeError(
                f"tool: docker sandbox session unavailable: {exc}"
            ) from exc

        container_dir = self._container_work_dir(host_dir)
        if container_dir is not None:
            args = [
                "exec", "-w", container_dir, *_ENV_ARGS,
                self.container, "sh", "-lc", request.command,
            ]
            mode = "exec"
        else:
            # Directories outside the mounted workspace get a one-shot container.
            args = [
                "run", "--rm", "--network", self.network, *_ENV_ARGS,
                "-v", self._mount_arg(host_dir), "-w", WORKSPACE_DIR,
                self.image, "sh", "-lc", request.command,
            ]
            mode = "run"
        return _run_request(
            self.command_factory("docker", *args),
            request,
            cwd=None,
            label="tool: docker sandbox command",
            timeout_code=ErrorCode.SANDBOX_COMMAND_TIMEOUT,
            idle_code=ErrorCode.SANDBOX_IDLE_TIMEOUT,
            context=f"mode={mode} network={self.network}",
        )

    def close(self) -> None:
        """Remove the session container; later calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            started = self._started
            container = self._container
        if not started or not container.strip():
            return
        try:
            self._run_command("rm", "-f", container, timeout=CLOSE_TIMEOUT)
        except RuntimeError as exc:
            if "no such container" in str(exc).lower():
                return
            raise RuntimeError(
                f'docker sandbox cleanup failed for "{container}": {exc}'
            ) from exc

    def _ensure_session(self, work_dir: str) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("sandbox closed")
            if self._started:
                return
            if not self._container.strip():
                self._container = next_container_name()
            container = self._container
            root_dir = work_dir if work_dir.strip() else "."

        self._run_command(
            "run", "-d", "--rm", "--name", container,
            "--network", self.network, *_ENV_ARGS,
            "-v", self._mount_arg(root_dir), "-w", WORKSPACE_DIR,
            self.image, "sh", "-lc", _KEEPALIVE,
            timeout=self.setup_timeout,
        )

        with self._lock:
            closed = self._closed
            if not closed:
                self._root_dir = root_dir
                self._started = True
        if closed:
            try:
                self._run_command("rm", "-f", container)
            except RuntimeError:
                pass
            raise RuntimeError("sandbox closed")

    def _mount_arg(self, host_dir: str) -> str:
        mount = f"{host_dir}:{WORKSPACE_DIR}"
        return mount + ":ro" if self.read_only else mount

    def _container_work_dir(self, host_dir: str) -> str | None:
        with self._lock:
            root_dir = self._root_dir
        if not root_dir.strip():
            return None
        rel = rel_within_root(root_dir, host_dir)
        if rel is None:
            return None
        if rel == ".":
            return WORKSPACE_DIR
        return posixpath.join(WORKSPACE_DIR, rel.replace(os.sep, "/"))