import json
import os
from types import SimpleNamespace

import pytest

from ocb_install import executil
from ocb_install.errors import CommandError, InfrastructureError


def _records(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_trace_writes_jsonl(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")

    executil.trace("unit.event", answer=42)

    log_file = tmp_path / executil.LOG_NAME
    data = _records(log_file)
    assert data[-1]["event"] == "unit.event"
    assert data[-1]["answer"] == 42
    assert data[-1]["level"] == "TRACE"
    assert data[-1]["run"] == executil.RUN_ID


def test_log_level_filters_trace(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_LEVEL", "WARN")

    executil.trace("quiet")
    executil.log("ERROR", "loud")

    events = [r["event"] for r in _records(tmp_path / executil.LOG_NAME)]
    assert events == ["loud"]


def test_run_returns_result(monkeypatch):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen.update(kwargs)
        return SimpleNamespace(returncode=0, stdout="done", stderr="")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    result = executil.run(["true"], cwd="/tmp")
    assert (result.rc, result.out) == (0, "done")
    assert seen["cwd"] == "/tmp"
    assert seen["capture_output"] is True


def test_run_raises_on_failure(monkeypatch):
    monkeypatch.setattr(
        executil.subprocess, "run", lambda cmd, **kwargs: SimpleNamespace(returncode=1, stdout="bad", stderr="oops")
    )
    with pytest.raises(executil.subprocess.CalledProcessError) as exc:
        executil.run(["false"], check=True)
    assert exc.value.stderr == "oops"

    assert executil.run(["false"], check=False).rc == 1


def test_run_missing_binary(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    assert executil.run(["no-such-tool"], check=False).rc == 127
    with pytest.raises(FileNotFoundError):
        executil.run(["no-such-tool"], check=True)


def test_append_jsonl(tmp_path):
    path = tmp_path / "data" / "log.jsonl"
    executil.append_jsonl(str(path), {"foo": "bar"})
    text = path.read_text(encoding="utf-8").strip()
    assert json.loads(text) == {"foo": "bar"}


def test_udev_settle(monkeypatch):
    calls = []

    def fake_run(cmd, check=False):
        calls.append(cmd)

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    executil.udev_settle()
    assert calls[0] == ["udevadm", "settle"]


def test_ensure_tool_present(monkeypatch):
    monkeypatch.setattr(executil.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(executil, "run", lambda *a, **k: pytest.fail("should not build"))
    assert executil.ensure_tool("git") == "/usr/bin/git"


def test_ensure_tool_builds_with_nix(monkeypatch):
    monkeypatch.setenv("PATH", "/bin")
    built = []

    def fake_which(name):
        return "/nix/store/abc-git/bin/git" if os.environ["PATH"].startswith("/nix/store") else None

    def fake_run(cmd, **kwargs):
        built.append(cmd)
        return SimpleNamespace(rc=0, out="/nix/store/abc-git\n", err="")

    monkeypatch.setattr(executil.shutil, "which", fake_which)
    monkeypatch.setattr(executil, "run", fake_run)

    assert executil.ensure_tool("git") == "/nix/store/abc-git/bin/git"
    assert built[0][:2] == ["nix-build", "--no-out-link"]
    assert built[0][-2:] == ["-A", "git"]
    assert os.environ["PATH"].split(os.pathsep)[0] == "/nix/store/abc-git/bin"


def test_run_timeout_is_reported_as_rc_124(monkeypatch):
    def hang(cmd, **kwargs):
        raise executil.subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(executil.subprocess, "run", hang)

    result = executil.run(["git", "ls-remote"], check=False, timeout=5)
    assert result.rc == executil.TIMEOUT_RC == 124
    assert "timed out after 5s" in result.err

    with pytest.raises(executil.subprocess.CalledProcessError) as exc:
        executil.run(["git", "fetch"], check=True, timeout=5)
    assert exc.value.returncode == 124


def test_run_checked_raises_command_error(monkeypatch):
    monkeypatch.setattr(
        executil.subprocess, "run", lambda cmd, **kwargs: SimpleNamespace(returncode=2, stdout="", stderr="no disk")
    )
    with pytest.raises(CommandError) as exc:
        executil.run_checked(["parted", "-s", "/dev/sda", "print"], result="FAIL_PARTITION")
    assert (exc.value.rc, exc.value.stderr, exc.value.result) == (2, "no disk", "FAIL_PARTITION")


def test_run_redacts_output_and_passes_input(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path)])
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
    seen = {}

    def fake_run(cmd, **kwargs):
        seen.update(kwargs)
        return SimpleNamespace(returncode=0, stdout="plaintext-key", stderr="")

    monkeypatch.setattr(executil.subprocess, "run", fake_run)
    assert executil.run(["age", "--decrypt"], input="sealed", redact=True).out == "plaintext-key"

    assert seen["input"] == "sealed"
    assert "plaintext-key" not in (tmp_path / executil.LOG_NAME).read_text(encoding="utf-8")


def test_ensure_tool_build_failure(monkeypatch):
    monkeypatch.setattr(executil.shutil, "which", lambda name: None)

    def fail(cmd, **kwargs):
        raise executil.subprocess.CalledProcessError(1, cmd, "", "error: attribute 'nope' missing")

    monkeypatch.setattr(executil, "run", fail)
    with pytest.raises(CommandError) as exc:
        executil.ensure_tool("nope")
    assert "attribute 'nope' missing" in str(exc.value)

    monkeypatch.setattr(executil, "run", lambda cmd, **kwargs: SimpleNamespace(rc=0, out="/nix/store/abc-nope\n"))
    with pytest.raises(InfrastructureError):
        executil.ensure_tool("nope")
