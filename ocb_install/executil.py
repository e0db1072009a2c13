from __future__ import annotations

"""Subprocess wrapper, JSONL trace logging and tool bootstrap."""

import datetime as _dt
import json
import os
import shutil
import subprocess
import time
import uuid
from typing import Sequence

from .errors import CommandError, InfrastructureError
from .paths import ocb_logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "nixos_install.jsonl"
# Re-runs append to the same file.
RUN_ID = uuid.uuid4().hex[:12]


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        ocb_logs_dir(),
        "/var/log/ocb-install",
        "/tmp/ocb-install-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        candidate = os.path.expanduser(d)
        try:
            os.makedirs(candidate, exist_ok=True)
            LOG_PATH = os.path.join(candidate, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


TIMEOUT_RC = 124

LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("OCB_LOG_LEVEL", "TRACE").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "run": RUN_ID, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = 60.0,
    env: dict | None = None,
    cwd: str | None = None,
    capture: bool = True,
    input: str | None = None,
    redact: bool = False,
) -> Result:
    """Run ``cmd`` and record it in the trace log.

    ``capture=False`` lets the child write straight to the console, which the
    long-running installer and the verbose handshake probes need. ``redact``
    keeps the child's stdout out of the log (decrypted key material).

    A command that outlives ``timeout`` is reported with rc 124, like
    coreutils ``timeout``; with ``check`` it raises ``CalledProcessError``.
    """

    trace("exec.start", cmd=list(cmd), cwd=cwd)
    started = time.time()
    env2 = dict(env) if env is not None else os.environ.copy()
    env2.setdefault("OCB_LOG_LEVEL", LOG_LEVEL)
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env2,
            cwd=cwd,
            input=input,
        )
    except FileNotFoundError as exc:
        dur = time.time() - started
        log("ERROR", "exec.missing", cmd=list(cmd), error=str(exc), dur=dur)
        if check:
            raise
        return Result(127, "", str(exc), dur)
    except subprocess.TimeoutExpired as exc:
        dur = time.time() - started
        err = f"timed out after {timeout:g}s"
        log("WARN", "exec.timeout", cmd=list(cmd), timeout=timeout, dur=dur)
        if check:
            raise subprocess.CalledProcessError(TIMEOUT_RC, list(cmd), "", err) from exc
        return Result(TIMEOUT_RC, "", err, dur)
    dur = time.time() - started
    out = proc.stdout or ""
    err = proc.stderr or ""
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, out="<redacted>" if redact else out, err=err)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), out, err)
    return Result(proc.returncode, out, err, dur)


def run_checked(cmd: Sequence[str], result: str | None = None, **kwargs) -> Result:
    """``run(check=True)`` for fatal steps: failures surface as ``CommandError``."""

    try:
        return run(cmd, check=True, **kwargs)
    except subprocess.CalledProcessError as exc:
        raise CommandError.from_called_process(exc, result=result) from exc


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def ensure_tool(name: str, attr: str | None = None) -> str:
    """Make ``name`` available on ``PATH``, building it with Nix when missing."""

    found = shutil.which(name)
    if found:
        return found
    print(f"downloading missing required software package '{name}'...")
    cmd = ["nix-build", "--no-out-link", "-E", "(import <nixpkgs> {})", "-A", attr or name]
    try:
        res = run(cmd, check=True, timeout=None)
    except subprocess.CalledProcessError as exc:
        raise CommandError.from_called_process(exc) from exc
    lines = (res.out or "").strip().splitlines()
    if not lines:
        raise InfrastructureError(f"nix-build printed no store path for {attr or name}")
    store_path = lines[-1]
    os.environ["PATH"] = os.path.join(store_path, "bin") + os.pathsep + os.environ.get("PATH", "")
    trace("exec.ensure_tool", tool=name, store_path=store_path)
    found = shutil.which(name)
    if not found:
        raise InfrastructureError(f"{name} not found after nix-build of {attr or name}")
    return found


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass
