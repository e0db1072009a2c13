"""Human-gated exchange of the transport key and the data-volume key.

Both phases poll the secret store until a person acts (registering the
host's public key, merging the pull request carrying its encryption key).
The polling loops have no timeout; they end on success or on operator
cancellation. Every attempt is side-effect free apart from refreshing the
local clone and the derived keyfile, so an interrupted run can simply be
started again.
"""

from __future__ import annotations

import base64
import enum
import os
import secrets
import threading
import time
from typing import Callable, Optional

from . import paths
from .errors import CommandError, HandshakeCancelled
from .executil import run_checked, trace
from .model import ApprovalState, AuthHandshakeState, KeyMaterialRecord

POLL_INTERVAL = 10
VERBOSE_EVERY = 18  # ~3 minutes at POLL_INTERVAL
BRANCH_PREFIX = "installer_commit_enc_key"
KEY_BYTES = 64


class HandshakeState(enum.Enum):
    AUTH_PENDING = "auth_pending"
    AUTH_APPROVED = "auth_approved"
    KEY_ABSENT = "key_absent"
    KEY_PRESENT = "key_present"
    KEY_APPROVED = "key_approved"


def ensure_keypair(key_file: str, hostname: str) -> AuthHandshakeState:
    """Generate the host's SSH key once; later runs reuse it."""

    pub_file = key_file + ".pub"
    if not os.path.exists(key_file):
        os.makedirs(os.path.dirname(key_file) or ".", exist_ok=True)
        run_checked(
            ["ssh-keygen", "-a", "100", "-t", "ed25519", "-N", "", "-C", f"tunnel@{hostname}", "-f", key_file],
        )
        trace("handshake.keypair_generated", path=key_file)
    elif not os.path.exists(pub_file):
        res = run_checked(["ssh-keygen", "-y", "-f", key_file])
        with open(pub_file, "w", encoding="utf-8") as fh:
            fh.write(res.out.strip() + "\n")
    os.chmod(key_file, 0o400)
    with open(pub_file, "r", encoding="utf-8") as fh:
        public_key = fh.read().strip()
    return AuthHandshakeState(private_key=key_file, public_key=public_key)


def new_branch_name(hostname: str) -> str:
    return f"{BRANCH_PREFIX}_{hostname}_{secrets.token_hex(4)}"


def new_key_material() -> str:
    return base64.b64encode(os.urandom(KEY_BYTES)).decode("ascii")


class Poller:
    """Fixed-interval polling with periodic verbose attempts."""

    def __init__(
        self,
        interval: float = POLL_INTERVAL,
        verbose_every: int = VERBOSE_EVERY,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional[threading.Event] = None,
    ):
        self.interval = interval
        self.verbose_every = verbose_every
        self.sleep = sleep
        self.cancel = cancel or threading.Event()

    def until(self, attempt: Callable[[bool], bool], what: str) -> int:
        """Call ``attempt(verbose)`` until it returns True; returns the attempt count."""

        count = 0
        while True:
            if self.cancel.is_set():
                raise HandshakeCancelled(f"cancelled while waiting for {what}")
            count += 1
            verbose = count % self.verbose_every == 0
            try:
                if attempt(verbose):
                    trace("handshake.poll_done", what=what, attempts=count)
                    return count
            except CommandError as exc:
                # transport trouble is just "not ready yet"
                trace("handshake.poll_error", what=what, attempt=count, error=str(exc))
                if verbose:
                    print(f"attempt {count} failed: {exc}")
            except KeyboardInterrupt as exc:
                raise HandshakeCancelled(f"interrupted while waiting for {what}") from exc
            if count == 1 or verbose:
                print(f"waiting for {what} (attempt {count}, retrying every {self.interval:g}s, Ctrl+C to abort)...")
            try:
                self.sleep(self.interval)
            except KeyboardInterrupt as exc:
                raise HandshakeCancelled(f"interrupted while waiting for {what}") from exc


class SecretExchangeCoordinator:
    def __init__(self, store, hostname: str, auth: AuthHandshakeState, poller: Optional[Poller] = None,
                 secrets_dir: Optional[str] = None):
        self.store = store
        self.hostname = hostname
        self.auth = auth
        self.poller = poller or Poller()
        self.secrets_dir = secrets_dir or paths.secrets_dir()
        self.state = HandshakeState.AUTH_PENDING
        self.record = KeyMaterialRecord(hostname=hostname)

    def _transition(self, state: HandshakeState) -> None:
        trace("handshake.state", hostname=self.hostname, old=self.state.value, new=state.value)
        self.state = state

    # -- auth phase --------------------------------------------------------

    def _probe(self, verbose: bool) -> bool:
        res = self.store.probe(verbose=verbose)
        if verbose:
            print(f"verbose connection attempt exited with code {res.rc}; output follows:")
            for text in (res.out, res.err):
                if text and text.strip():
                    print(text.rstrip())
        return res.rc == 0

    def authorize(self) -> AuthHandshakeState:
        if self._probe(False):
            self.auth.remote_authorized = True
            self._transition(HandshakeState.AUTH_APPROVED)
            return self.auth
        web = paths.repo_web_url()
        print(
            "\nThis host is not yet authorised to access the configuration repository.\n"
            f"Register the following public key for host \"{self.hostname}\" at {web}/settings/keys\n"
            "(or ask an administrator to do so):\n\n"
            f"{self.auth.public_key}\n"
        )
        self.poller.until(self._probe, "the public key to be authorised")
        self.auth.remote_authorized = True
        self._transition(HandshakeState.AUTH_APPROVED)
        return self.auth

    # -- key phase ---------------------------------------------------------

    def _derived_path(self) -> str:
        return os.path.join(self.secrets_dir, paths.KEYFILE_NAME)

    def _clear_stale_keyfile(self) -> None:
        path = self._derived_path()
        if os.path.exists(path):
            os.chmod(path, 0o600)
            os.remove(path)

    def _key_ready(self, verbose: bool) -> bool:
        self.store.pull(verbose=verbose)
        self.store.derive_keyfile(self.hostname, self.secrets_dir)
        ready = os.path.exists(self._derived_path())
        if verbose and not ready:
            print(f"no key for \"{self.hostname}\" on the default branch yet")
        return ready

    def obtain_key(self) -> str:
        """Return the path of the host's decrypted keyfile, proposing a key if needed."""

        if self.state is not HandshakeState.AUTH_APPROVED:
            raise RuntimeError("the key phase needs an authorised transport key")
        self._clear_stale_keyfile()
        self.store.clone()
        keyfile = self.store.derive_keyfile(self.hostname, self.secrets_dir)
        if keyfile:
            self._transition(HandshakeState.KEY_PRESENT)
            self.record.approval_state = ApprovalState.MERGED
            self._transition(HandshakeState.KEY_APPROVED)
            return keyfile

        self._transition(HandshakeState.KEY_ABSENT)
        branch = new_branch_name(self.hostname)
        key = new_key_material()
        self.record.key = key
        self.store.append_record(self.hostname, key, [self.auth.public_key])
        self.store.propose(branch, f"Add encryption key for host {self.hostname}")
        self.record.branch = branch
        self.record.approval_state = ApprovalState.PROPOSED
        print(
            f"\nA new encryption key for \"{self.hostname}\" was pushed on branch \"{branch}\".\n"
            "Open the following URL, create the pull request and have it merged:\n\n"
            f"  {paths.repo_web_url()}/pull/new/{branch}\n"
        )
        self.poller.until(self._key_ready, "the encryption key pull request to be merged")
        self.record.approval_state = ApprovalState.MERGED
        self._transition(HandshakeState.KEY_APPROVED)
        return self._derived_path()
