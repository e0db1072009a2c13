"""Git-over-SSH access to the remote secret store."""

from __future__ import annotations

import json
import os
import shlex
import stat
from subprocess import CalledProcessError
from typing import Optional

from . import paths
from .errors import CommandError
from .executil import Result, run, trace


def _ensure_dir_secure(path: str) -> None:
    os.makedirs(path, mode=0o700, exist_ok=True)
    os.chmod(path, 0o700)
    st = os.stat(path)
    if stat.S_IMODE(st.st_mode) != 0o700:
        raise PermissionError(f"directory {path} must have mode 0700")


def _write_secure(path: str, data: str) -> None:
    if os.path.exists(path):
        os.chmod(path, 0o600)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(path, 0o400)
    st = os.stat(path)
    if stat.S_IMODE(st.st_mode) != 0o400:
        raise PermissionError(f"keyfile {path} must have mode 0400")


def parse_records(text: str) -> dict[str, str]:
    """Map hostname -> sealed key from the master file; later lines win."""

    records: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            trace("secret_store.bad_record", line=lineno)
            continue
        host = entry.get("hostname")
        key = entry.get("encrypted_key")
        if host and key:
            records[host] = key
    return records


class GitSecretStore:
    """Secret transport backed by a Git repository reachable over SSH.

    Every git invocation authenticates with ``key_file`` only
    (``IdentitiesOnly``) and never reads the user's SSH config, so the
    rescue image's defaults cannot interfere.
    """

    def __init__(
        self,
        key_file: str,
        workdir: str,
        url: Optional[str] = None,
        branch: Optional[str] = None,
    ):
        self.key_file = key_file
        self.workdir = workdir
        self.url = url or paths.repo_url()
        self.branch = branch or paths.repo_branch()

    def ssh_command(self, verbose: bool = False) -> str:
        parts = [
            "ssh", "-F", "none",
            "-o", "IdentitiesOnly=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-i", self.key_file,
        ]
        if verbose:
            parts.append("-v")
        return " ".join(shlex.quote(p) for p in parts)

    def env(self, verbose: bool = False) -> dict:
        env = os.environ.copy()
        env["GIT_SSH_COMMAND"] = self.ssh_command(verbose)
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    def _git(self, args: list[str], *, check: bool = True, cwd: Optional[str] = None, verbose: bool = False,
             timeout: float = 300.0) -> Result:
        cmd = ["git", *args]
        try:
            return run(cmd, check=check, env=self.env(verbose), cwd=cwd, timeout=timeout)
        except CalledProcessError as exc:
            raise CommandError.from_called_process(exc) from exc

    # -- auth --------------------------------------------------------------

    def probe(self, verbose: bool = False) -> Result:
        """Check that the key is authorised; no side effects."""

        return self._git(["ls-remote", "--heads", self.url, self.branch], check=False, verbose=verbose, timeout=120.0)

    # -- repository --------------------------------------------------------

    @property
    def checkout(self) -> str:
        return os.path.join(self.workdir, "repo")

    def clone_into(self, dest: str) -> str:
        self._git(["clone", "--filter=blob:none", "--single-branch", "--branch", self.branch, self.url, dest],
                  timeout=600.0)
        return dest

    def clone(self) -> str:
        """Clone the default branch, or refresh an existing clone."""

        _ensure_dir_secure(self.workdir)
        if os.path.isdir(os.path.join(self.checkout, ".git")):
            self.pull()
            return self.checkout
        return self.clone_into(self.checkout)

    def pull(self, verbose: bool = False) -> None:
        self._git(["fetch", "origin", self.branch], cwd=self.checkout, verbose=verbose)
        self._git(["checkout", "--force", "-B", self.branch, f"origin/{self.branch}"], cwd=self.checkout)

    @property
    def master_file(self) -> str:
        return os.path.join(self.checkout, paths.MASTER_SECRETS_FILE)

    def read_record(self, hostname: str) -> Optional[str]:
        """The sealed key recorded for ``hostname``, if any."""

        try:
            with open(self.master_file, "r", encoding="utf-8") as fh:
                return parse_records(fh.read()).get(hostname)
        except FileNotFoundError:
            return None

    def master_recipients(self) -> list[str]:
        """Public keys of the key holders every record is also sealed for."""

        try:
            with open(os.path.join(self.checkout, paths.RECIPIENTS_FILE), "r", encoding="utf-8") as fh:
                lines = [line.strip() for line in fh]
        except FileNotFoundError:
            return []
        return [line for line in lines if line and not line.startswith("#")]

    # -- sealing -----------------------------------------------------------

    def seal(self, secret: str, recipients: list[str]) -> str:
        if not recipients:
            raise ValueError("at least one recipient is required")
        cmd = ["age", "--encrypt", "--armor"]
        for recipient in recipients:
            cmd += ["--recipient", recipient]
        try:
            return run(cmd, check=True, input=secret, timeout=60.0).out
        except CalledProcessError as exc:
            raise CommandError.from_called_process(exc) from exc

    def unseal(self, sealed: str) -> str:
        """Decrypt ``sealed`` with the transport key; it is the host's age identity."""

        cmd = ["age", "--decrypt", "--identity", self.key_file]
        try:
            return run(cmd, check=True, input=sealed, timeout=60.0, redact=True).out
        except CalledProcessError as exc:
            raise CommandError.from_called_process(exc) from exc

    def append_record(self, hostname: str, key: str, recipients: list[str]) -> None:
        """Seal ``key`` for ``recipients`` and the master recipients, then append it."""

        sealed_for = list(dict.fromkeys([*recipients, *self.master_recipients()]))
        sealed = self.seal(key, sealed_for)
        os.makedirs(os.path.dirname(self.master_file), exist_ok=True)
        line = json.dumps({"hostname": hostname, "encrypted_key": sealed}, sort_keys=True)
        needs_newline = False
        if os.path.exists(self.master_file) and os.path.getsize(self.master_file) > 0:
            with open(self.master_file, "rb") as fh:
                fh.seek(-1, os.SEEK_END)
                needs_newline = fh.read(1) != b"\n"
        with open(self.master_file, "a", encoding="utf-8") as fh:
            if needs_newline:
                fh.write("\n")
            fh.write(line + "\n")
        trace("secret_store.record_appended", hostname=hostname, recipients=len(sealed_for))

    def propose(self, branch: str, message: str) -> None:
        """Commit the master file on ``branch`` and push it."""

        self._git(["checkout", "-b", branch], cwd=self.checkout)
        self._git(["add", paths.MASTER_SECRETS_FILE], cwd=self.checkout)
        self._git(
            ["-c", f"user.name={paths.ROBOT_NAME}", "-c", f"user.email={paths.ROBOT_EMAIL}",
             "commit", "--message", message],
            cwd=self.checkout,
        )
        self._git(["push", "--set-upstream", "origin", branch], cwd=self.checkout)
        trace("secret_store.pushed", branch=branch)

    def derive_keyfile(self, hostname: str, out_dir: str) -> Optional[str]:
        """Write the host's key to ``out_dir`` if the default branch has it.

        Returns the keyfile path, or ``None`` while the record is absent.
        """

        sealed = self.read_record(hostname)
        if not sealed:
            return None
        key = self.unseal(sealed).strip()
        _ensure_dir_secure(out_dir)
        path = os.path.join(out_dir, paths.KEYFILE_NAME)
        _write_secure(path, key)
        return path

    def with_key(self, key_file: str) -> "GitSecretStore":
        return GitSecretStore(key_file, self.workdir, url=self.url, branch=self.branch)
