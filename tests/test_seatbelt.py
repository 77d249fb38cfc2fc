import os

import pytest

from caelis.errors import CodedError, ErrorCode, is_error_code
from caelis.seatbelt import (
    SeatbeltRunner,
    SeatbeltSandboxFactory,
    build_seatbelt_profile,
    resolve_seatbelt_path,
    sbpl_string,
    seatbelt_read_only_subpaths,
    seatbelt_writable_roots,
)
from caelis.types import CommandRequest, Config, SandboxPolicy, SandboxPolicyType


def _fixed(*argv):
    def factory(name, *args):
        return list(argv)

    return factory


def test_seatbelt_factory_builds_runner():
    policy = SandboxPolicy(type=SandboxPolicyType.READ_ONLY)
    runner = SeatbeltSandboxFactory().build(Config(sandbox_policy=policy))
    assert isinstance(runner, SeatbeltRunner)
    assert runner.policy == policy
    assert SeatbeltSandboxFactory.type == "seatbelt"


def test_probe_unsupported_platform():
    runner = SeatbeltRunner(platform="linux")
    with pytest.raises(RuntimeError, match="only supported on darwin"):
        runner.probe()


def test_probe_missing_binary():
    runner = SeatbeltRunner(platform="darwin", look_path=lambda name: None)
    with pytest.raises(RuntimeError, match="sandbox-exec not found"):
        runner.probe()


def test_probe_look_path_error_is_reported():
    def look_path(name):
        raise FileNotFoundError("not found")

    runner = SeatbeltRunner(platform="darwin", look_path=look_path)
    with pytest.raises(RuntimeError, match="sandbox-exec not found: not found"):
        runner.probe()


def test_probe_runs_sandbox_exec():
    calls = []

    def factory(name, *args):
        calls.append(" ".join([name, *args]))
        return ["bash", "-lc", "echo ok"]

    runner = SeatbeltRunner(
        platform="darwin",
        look_path=lambda name: "/usr/bin/sandbox-exec",
        command_factory=factory,
    )
    assert runner.probe() is None
    assert len(calls) == 1
    assert "sandbox-exec -p" in calls[0]


def test_probe_failure_includes_stderr():
    runner = SeatbeltRunner(
        platform="darwin",
        look_path=lambda name: "/usr/bin/sandbox-exec",
        command_factory=_fixed("bash", "-lc", "echo denied >&2; exit 1"),
    )
    with pytest.raises(RuntimeError, match="probe failed: exit status 1; stderr=denied"):
        runner.probe()


def test_run_builds_profile_and_executes():
    captured = {}

    def factory(name, *args):
        captured["name"] = name
        captured["args"] = list(args)
        return ["bash", "-lc", "echo seatbelt-ok"]

    runner = SeatbeltRunner(
        policy=SandboxPolicy(
            type=SandboxPolicyType.WORKSPACE_WRITE,
            network_access=True,
            writable_roots=(".",),
            read_only_subpaths=(".git",),
        ),
        platform="darwin",
        command_factory=factory,
    )
    result = runner.run(CommandRequest(command="echo hi"))
    assert result.stdout.strip() == "seatbelt-ok"
    assert captured["name"] == "sandbox-exec"
    args = captured["args"]
    assert len(args) >= 5 and args[0] == "-p"
    assert args[2:] == ["bash", "-lc", "echo hi"]
    profile = args[1]
    assert "(allow network*)" in profile
    assert "(allow file-write*" in profile
    assert "(deny file-write* (subpath" in profile and ".git" in profile


def test_run_read_only_disables_network():
    captured = {}

    def factory(name, *args):
        captured["profile"] = args[1]
        return ["bash", "-lc", "echo ok"]

    runner = SeatbeltRunner(
        policy=SandboxPolicy(type=SandboxPolicyType.READ_ONLY, network_access=False),
        platform="darwin",
        command_factory=factory,
    )
    result = runner.run(CommandRequest(command="echo hi"))
    assert result.stdout == "ok\n"
    assert "(allow network*)" not in captured["profile"]
    assert "(allow file-write*" not in captured["profile"]


def test_run_timeout():
    runner = SeatbeltRunner(
        policy=SandboxPolicy(
            type=SandboxPolicyType.WORKSPACE_WRITE,
            network_access=True,
            writable_roots=(".",),
        ),
        platform="darwin",
        command_factory=_fixed("bash", "-lc", "sleep 1"),
    )
    with pytest.raises(CodedError) as excinfo:
        runner.run(CommandRequest(command="echo hi", timeout=0.05))
    assert "timed out after" in str(excinfo.value)
    assert is_error_code(excinfo.value, ErrorCode.SANDBOX_COMMAND_TIMEOUT)


def test_run_idle_timeout():
    runner = SeatbeltRunner(
        policy=SandboxPolicy(
            type=SandboxPolicyType.WORKSPACE_WRITE,
            network_access=True,
            writable_roots=(".",),
        ),
        platform="darwin",
        command_factory=_fixed("bash", "-lc", "echo hi && sleep 1"),
    )
    with pytest.raises(CodedError) as excinfo:
        runner.run(CommandRequest(command="echo hi", timeout=3.0, idle_timeout=0.12))
    assert "produced no output" in str(excinfo.value)
    assert is_error_code(excinfo.value, ErrorCode.SANDBOX_IDLE_TIMEOUT)


def test_run_failure_reports_exit():
    runner = SeatbeltRunner(
        platform="darwin", command_factory=_fixed("bash", "-lc", "exit 4")
    )
    with pytest.raises(RuntimeError) as excinfo:
        runner.run(CommandRequest(command="false"))
    assert "tool: seatbelt sandbox command failed: exit status 4" in str(excinfo.value)
    assert excinfo.value.result.exit_code == 4


def test_build_profile_includes_system_rules():
    profile = build_seatbelt_profile(
        SandboxPolicy(
            type=SandboxPolicyType.WORKSPACE_WRITE,
            network_access=True,
            writable_roots=(".",),
        ),
        "/tmp/work",
    )
    assert '(import "system.sb")' in profile
    assert "(allow process*)" in profile
    assert '(allow file-write* (subpath "/tmp/work"))' in profile


def test_build_profile_read_only_exact():
    profile = build_seatbelt_profile(
        SandboxPolicy(type=SandboxPolicyType.READ_ONLY), "/tmp/work"
    )
    assert profile == "\n".join(
        [
            "(version 1)",
            "(deny default)",
            '(import "system.sb")',
            "(allow process*)",
            "(allow signal (target self))",
            "(allow sysctl-read)",
            "(allow file-read*)",
        ]
    )


def test_writable_roots_include_temp_and_caches(monkeypatch, tmp_path):
    home = tmp_path / "home"
    temp = tmp_path / "temp"
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("TMPDIR", str(temp) + "/")
    policy = SandboxPolicy(
        type=SandboxPolicyType.WORKSPACE_WRITE,
        writable_roots=(".", "/abs/x", "."),
    )
    assert seatbelt_writable_roots(policy, "/tmp/work") == (
        "/tmp/work",
        "/abs/x",
        str(temp),
        os.path.join(str(home), "Library", "Caches"),
        os.path.join(str(home), ".cache"),
        os.path.join(str(home), ".npm"),
    )


def test_writable_roots_empty_for_read_only():
    policy = SandboxPolicy(type=SandboxPolicyType.READ_ONLY, writable_roots=(".",))
    assert seatbelt_writable_roots(policy, "/tmp/work") == ()


def test_read_only_subpaths_resolved_and_deduplicated():
    policy = SandboxPolicy(read_only_subpaths=(".git", " .git ", "/etc", ""))
    assert seatbelt_read_only_subpaths(policy, "/tmp/work") == (
        "/tmp/work/.git",
        "/etc",
    )


@pytest.mark.parametrize(
    ("base", "value", "expected"),
    [
        ("/tmp/w", "", ""),
        ("/tmp/w", "   ", ""),
        ("/tmp/w", "/a/../b", "/b"),
        ("/tmp/w", "x/./y", "/tmp/w/x/y"),
        ("", "x", ""),
    ],
)
def test_resolve_seatbelt_path(base, value, expected):
    assert resolve_seatbelt_path(base, value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("/tmp/work", '"/tmp/work"'),
        ('a"b', '"a\\"b"'),
        ("a\\b", '"a\\\\b"'),
        ("line\nbreak", '"line\\nbreak"'),
        ("\x01", '"\\x01"'),
    ],
)
def test_sbpl_string(value, expected):
    assert sbpl_string(value) == expected