from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigurationError

VG_NAME = "LVMVolGroup"
ROOT_LV = "nixos_root"
DATA_LV = "nixos_data"
CRYPT_NAME = "nixos_data_decrypted"


class BootMode(enum.Enum):
    UEFI = "uefi"
    LEGACY = "legacy"


class DeviceKind(enum.Enum):
    BLOCK_DEVICE = "block"
    SYMLINK = "symlink"
    MOUNT_LABEL = "label"


class ApprovalState(enum.Enum):
    PENDING = "pending"
    PROPOSED = "proposed"
    MERGED = "merged"


class ProvisioningStage(enum.Enum):
    PARSE_INTENT = "parse_intent"
    WAIT_PREREQS = "wait_prereqs"
    PARTITION = "partition"
    BUILD_VOLUMES = "build_volumes"
    AUTH_HANDSHAKE = "auth_handshake"
    KEY_HANDSHAKE = "key_handshake"
    OPEN_ENCRYPTED_VOLUME = "open_encrypted_volume"
    HANDOFF = "handoff"
    CLEANUP = "cleanup"
    DONE = "done"


@dataclass(frozen=True)
class HostIntent:
    hostname: str
    is_fresh_install: bool
    boot_mode: BootMode = BootMode.UEFI
    create_encrypted_volume: bool = True
    target_disk: Optional[str] = None
    root_size_gib: Optional[int] = None
    data_device: Optional[str] = None

    def validate(self) -> "HostIntent":
        if not self.hostname:
            raise ConfigurationError("a hostname is required (-H)")
        if self.is_fresh_install:
            if not self.target_disk:
                raise ConfigurationError("a target disk is required for a fresh install (-d)")
            if not self.root_size_gib or self.root_size_gib <= 0:
                raise ConfigurationError("a positive root size in GiB is required for a fresh install (-r)")
        if self.create_encrypted_volume and not self.resolved_data_device():
            raise ConfigurationError(
                "an encrypted data volume was requested but no data device is known; "
                "pass one with -p or disable the data volume with -D"
            )
        return self

    def resolved_data_device(self) -> Optional[str]:
        """The device that will carry the encrypted container, if any."""

        if self.data_device:
            return self.data_device
        if self.is_fresh_install:
            return f"/dev/{VG_NAME}/{DATA_LV}"
        return None

    @property
    def creates_data_lv(self) -> bool:
        return self.is_fresh_install and self.create_encrypted_volume and not self.data_device


@dataclass(frozen=True)
class DeviceExpectation:
    path: str
    kind: DeviceKind = DeviceKind.BLOCK_DEVICE


@dataclass(frozen=True)
class PartitionSpec:
    index: int
    name: str
    fs_type: str
    start_mib: int
    end_mib: Optional[int]  # None: rest of the disk
    flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class PartitionPlan:
    disk: str
    boot_mode: BootMode
    label_type: str
    partitions: tuple[PartitionSpec, ...]

    def by_name(self, name: str) -> PartitionSpec:
        for part in self.partitions:
            if part.name == name:
                return part
        raise KeyError(name)


@dataclass
class KeyMaterialRecord:
    hostname: str
    key: Optional[str] = None
    approval_state: ApprovalState = ApprovalState.PENDING
    branch: Optional[str] = None


@dataclass
class AuthHandshakeState:
    private_key: str
    public_key: str
    remote_authorized: bool = False


@dataclass
class ProvisionedVolumes:
    root: str
    boot: str
    efi: Optional[str] = None
    data_device: Optional[str] = None
    swapfile: Optional[str] = None
    mounted: list[str] = field(default_factory=list)


@dataclass
class Mounts:
    root: str
    boot: str
    efi: Optional[str] = None
    data: Optional[str] = None
    home: Optional[str] = None
