"""Top-level provisioning state machine."""
from __future__ import annotations

import os
import socket
import time
from typing import Callable, Optional

from . import handoff, partitioning, paths
from .devices import await_devices, disk_size_bytes
from .executil import append_jsonl, ensure_tool, resolve_log_path, trace
from .handshake import Poller, SecretExchangeCoordinator, ensure_keypair
from .luks import EncryptedVolumeManager
from .model import CRYPT_NAME, HostIntent, ProvisionedVolumes, ProvisioningStage
from .secret_store import GitSecretStore
from .volumes import VolumeProvisioner

COUNTDOWN_SECONDS = 10


def current_hostname() -> str:
    return socket.gethostname()


def is_install_mode(hostname: Optional[str] = None) -> bool:
    """True when running on the rescue image rather than an installed host."""

    return (hostname or current_hostname()) == paths.rescue_hostname()


class StageLedger:
    """Records which stage was entered last, in memory and in the run log.

    Only used for diagnostics; a failed run is recovered by starting over.
    """

    def __init__(self, status_file: Optional[str] = None):
        self.entries: list[dict] = []
        self.status_file = status_file

    @property
    def current(self) -> Optional[ProvisioningStage]:
        return self.entries[-1]["stage"] if self.entries else None

    def enter(self, stage: ProvisioningStage, **fields) -> None:
        entry = {"stage": stage, "ts": int(time.time()), **fields}
        self.entries.append(entry)
        trace("sequencer.stage", stage=stage.value, **fields)
        if self.status_file:
            append_jsonl(self.status_file, {"event": "STAGE", "stage": stage.value, "ts": entry["ts"], **fields})

    def stages(self) -> list[ProvisioningStage]:
        return [e["stage"] for e in self.entries]


class ProvisioningSequencer:
    def __init__(
        self,
        intent: HostIntent,
        *,
        root: Optional[str] = None,
        key_file: Optional[str] = None,
        store=None,
        repo_url: Optional[str] = None,
        branch: Optional[str] = None,
        volumes: Optional[VolumeProvisioner] = None,
        luks: Optional[EncryptedVolumeManager] = None,
        installer=handoff,
        poller: Optional[Poller] = None,
        waiter=await_devices,
        disk_size: Callable[[str], int] = disk_size_bytes,
        ensure_tool: Callable[[str], str] = ensure_tool,
        ledger: Optional[StageLedger] = None,
        assume_yes: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.intent = intent
        self.root = root or (paths.target_root() if intent.is_fresh_install else "/")
        self.key_file = key_file or self._default_key_file()
        self.store = store or GitSecretStore(
            self.key_file, os.path.join(paths.secrets_dir(), "store"), url=repo_url, branch=branch,
        )
        self.volumes = volumes or VolumeProvisioner(self.root, waiter=waiter)
        self.luks = luks or EncryptedVolumeManager(waiter=waiter)
        self.installer = installer
        self.poller = poller
        self.waiter = waiter
        self.disk_size = disk_size
        self.ensure_tool = ensure_tool
        self.ledger = ledger or StageLedger(resolve_log_path())
        self.assume_yes = assume_yes
        self.sleep = sleep
        self.provisioned: Optional[ProvisionedVolumes] = None
        self.keyfile: Optional[str] = None
        self.data_opened = False

    def _default_key_file(self) -> str:
        if not self.intent.is_fresh_install:
            installed = os.path.join(paths.local_dir("/"), handoff.TUNNEL_KEY_NAME)
            if os.path.exists(installed):
                return installed
        return paths.tunnel_key_file()

    def _countdown(self) -> None:
        if self.assume_yes:
            return
        print(f"about to ERASE {self.intent.target_disk} and install host \"{self.intent.hostname}\"")
        print("(Press [Ctrl+C] *now* to abort)")
        print("--> countdown before proceeding: ", end="", flush=True)
        for remaining in range(COUNTDOWN_SECONDS - 1, -1, -1):
            print(f"{remaining} ", end="", flush=True)
            self.sleep(1)
        print("GO!")

    def run(self) -> list[ProvisioningStage]:
        intent = self.intent
        try:
            self.ledger.enter(ProvisioningStage.PARSE_INTENT, hostname=intent.hostname,
                              fresh=intent.is_fresh_install, encrypted=intent.create_encrypted_volume)
            intent.validate()

            self.ledger.enter(ProvisioningStage.WAIT_PREREQS)
            self.ensure_tool("git")
            if intent.create_encrypted_volume:
                self.ensure_tool("age")
            plan = None
            if intent.is_fresh_install:
                self.waiter([intent.target_disk])
                plan = partitioning.plan(intent, self.disk_size(intent.target_disk))
                self._countdown()

            if plan is not None:
                self.ledger.enter(ProvisioningStage.PARTITION, disk=plan.disk, label=plan.label_type)
                part_paths = self.volumes.partition(intent, plan)

                self.ledger.enter(ProvisioningStage.BUILD_VOLUMES)
                self.provisioned = self.volumes.build(intent, part_paths)

            self.ledger.enter(ProvisioningStage.AUTH_HANDSHAKE)
            auth = ensure_keypair(self.key_file, intent.hostname)
            coordinator = SecretExchangeCoordinator(self.store, intent.hostname, auth, poller=self.poller)
            coordinator.authorize()

            if intent.create_encrypted_volume:
                self.ledger.enter(ProvisioningStage.KEY_HANDSHAKE)
                self.keyfile = coordinator.obtain_key()

                self.ledger.enter(ProvisioningStage.OPEN_ENCRYPTED_VOLUME)
                device = intent.resolved_data_device()
                try:
                    self.luks.setup_data_volume(device, self.keyfile, self.root)
                finally:
                    self.data_opened = CRYPT_NAME in self.luks.opened

            self.ledger.enter(ProvisioningStage.HANDOFF)
            persisted = handoff.persist_keypair(self.key_file, self.root)
            self.installer.install(self.store.with_key(persisted), self.root, intent.hostname, intent.is_fresh_install)

            self.ledger.enter(ProvisioningStage.CLEANUP)
            if intent.is_fresh_install:
                self.cleanup()
            self.ledger.enter(ProvisioningStage.DONE)
            return self.ledger.stages()
        except BaseException:
            if intent.is_fresh_install and (self.provisioned is not None or self.data_opened):
                self.ledger.enter(ProvisioningStage.CLEANUP, aborted=True)
                self.cleanup()
            raise
        finally:
            self._discard_keyfile()

    def cleanup(self) -> list[str]:
        """Unmount and close everything; failures are logged, never raised."""

        failed = []
        if self.provisioned is not None:
            failed += self.volumes.teardown(self.provisioned)
        if self.data_opened and not self.luks.close(CRYPT_NAME):
            failed.append(f"cryptsetup close {CRYPT_NAME}")
        self.provisioned = None
        self.data_opened = False
        for item in failed:
            print(f"warning: cleanup step failed: {item}")
        trace("sequencer.cleanup", failed=failed)
        return failed

    def _discard_keyfile(self) -> None:
        if not self.keyfile or not os.path.exists(self.keyfile):
            return
        try:
            os.chmod(self.keyfile, 0o600)
            os.remove(self.keyfile)
        except OSError as exc:
            trace("sequencer.keyfile_remove_failed", path=self.keyfile, error=str(exc))
