"""Encrypted data volume lifecycle."""

from __future__ import annotations

import os
from subprocess import CalledProcessError
from typing import Optional

from .devices import await_devices
from .errors import CommandError, SafetyError
from .executil import run, trace, udev_settle
from .model import CRYPT_NAME, Mounts
from .volumes import FilesystemBuilder, by_label

DATA_LABEL = "nixos_data"
DATA_MOUNT = "opt"
HOME_SOURCE = ".home"

# Fixed policy, not configurable.
LUKS_FORMAT_ARGS = [
    "--type", "luks2",
    "--cipher", "aes-xts-plain64",
    "--key-size", "512",
    "--hash", "sha512",
    "--use-random",
]


class EncryptedVolumeManager:
    def __init__(self, fs: Optional[FilesystemBuilder] = None, waiter=await_devices):
        self.fs = fs or FilesystemBuilder()
        self.waiter = waiter
        # mappings this manager opened or adopted
        self.opened: list[str] = []

    def is_luks(self, device: str) -> bool:
        return run(["cryptsetup", "isLuks", device], check=False, timeout=60.0).rc == 0

    def format(self, device: str, keyfile: str) -> str:
        if self.is_luks(device):
            raise SafetyError(
                f"{device} already contains an encrypted container. Refusing to overwrite it.\n"
                f"If you are sure its contents can be destroyed, wipe it manually first with:\n"
                f"  cryptsetup erase {device} && wipefs --all {device}\n"
                f"and run the installer again.",
                state={"device": device},
            )
        cmd = ["cryptsetup", "--verbose", "--batch-mode", *LUKS_FORMAT_ARGS, "luksFormat", device, keyfile]
        try:
            run(cmd, check=True, timeout=360.0)
        except CalledProcessError as exc:
            raise CommandError.from_called_process(exc) from exc
        udev_settle()
        return device

    def backing_device(self, name: str = CRYPT_NAME) -> Optional[str]:
        """The device behind an active mapping, from ``cryptsetup status``."""

        res = run(["cryptsetup", "status", name], check=False, timeout=60.0)
        if res.rc != 0:
            return None
        for line in (res.out or "").splitlines():
            key, _, value = line.strip().partition(":")
            if key == "device" and value.strip():
                return value.strip()
        return None

    def open(self, device: str, keyfile: str, name: str = CRYPT_NAME) -> str:
        mapped = f"/dev/mapper/{name}"
        if os.path.exists(mapped):
            backing = self.backing_device(name)
            if backing and os.path.realpath(backing) == os.path.realpath(device):
                trace("luks.already_open", device=device, name=name)
                self.opened.append(name)
                return mapped
            raise SafetyError(
                f"{mapped} is already open on {backing or 'an unknown device'}, not on {device}.\n"
                f"Close it with \"cryptsetup close {name}\" and run the installer again.",
                state={"device": device, "mapping": name, "backing": backing},
            )
        try:
            run(["cryptsetup", "open", device, name, "--key-file", keyfile], check=True, timeout=60.0)
        except CalledProcessError as exc:
            raise CommandError.from_called_process(exc) from exc
        self.opened.append(name)
        udev_settle()
        return mapped

    def close(self, name: str = CRYPT_NAME) -> bool:
        res = run(["cryptsetup", "close", name], check=False, timeout=60.0)
        if res.rc != 0:
            trace("luks.close_failed", name=name, rc=res.rc, err=(res.err or "").strip())
        elif name in self.opened:
            self.opened.remove(name)
        return res.rc == 0

    def setup_data_volume(self, device: str, keyfile: str, root: str) -> Mounts:
        """Format ``device``, build the data filesystem and mount it under ``root``.

        ``<root>/opt/.home`` is bind-mounted onto ``<root>/home`` so user data
        lives on the encrypted volume and survives a reinstall of the root
        filesystem.
        """

        self.waiter([device])
        self.format(device, keyfile)
        mapped = self.open(device, keyfile)
        self.waiter([mapped])
        # bulk data: keep only 1% reserved blocks
        self.fs.ext4(mapped, DATA_LABEL, reserved_pct=1)
        self.waiter([by_label(DATA_LABEL)])
        return self.mount_data(root)

    def mount_data(self, root: str) -> Mounts:
        data = os.path.join(root, DATA_MOUNT)
        home = os.path.join(root, "home")
        self.fs.mount(by_label(DATA_LABEL), data)
        self.fs.bind(os.path.join(data, HOME_SOURCE), home)
        return Mounts(root=root, boot=os.path.join(root, "boot"), data=data, home=home)
