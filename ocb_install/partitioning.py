"""Partition table planning & application."""
from __future__ import annotations

import re

from .errors import ConfigurationError
from .executil import run, run_checked, udev_settle
from .model import BootMode, HostIntent, PartitionPlan, PartitionSpec

ESP_MIB = 512
BOOT_MIB = 512
# Room for the partition tables and the boot partitions.
RESERVED_GIB = 2

ESP_NAME = "ESP"
BOOT_NAME = "nixos_boot"
LVM_NAME = "nixos_lvm"


def _base_device(dev: str) -> str:
    m = re.match(r"^(/dev/(?:nvme\d+n\d+|mmcblk\d+|loop\d+))(?:p\d+)?$", dev)
    if m:
        return m.group(1)
    return re.sub(r"\d+$", "", dev)


def partition_path(disk: str, index: int) -> str:
    # nvme0n1 / mmcblk0 need a ``p`` separator, sda does not
    suffix = "p" if disk[-1:].isdigit() else ""
    return f"{disk}{suffix}{index}"


def guard_not_live_root(target: str):
    root_src = (run(["findmnt", "-no", "SOURCE", "/"], check=False).out or "").strip()
    if root_src.startswith("/dev/") and _base_device(root_src) == _base_device(target):
        raise ConfigurationError(
            f"target {target} shares its base device with the live root {root_src}",
            result="FAIL_INVALID_DEVICE",
        )


def max_root_size_gib(disk_bytes: int) -> int:
    return disk_bytes // 2 ** 30 - RESERVED_GIB


def validate_root_size(root_size_gib: int, disk_bytes: int) -> None:
    limit = max_root_size_gib(disk_bytes)
    if root_size_gib > limit:
        raise ConfigurationError(
            f"the requested root partition size ({root_size_gib} GiB) is larger than "
            f"the maximum of {limit} GiB available on this disk",
            result="FAIL_ROOT_SIZE",
            state={"root_size_gib": root_size_gib, "max_root_size_gib": limit},
        )


def plan(intent: HostIntent, disk_bytes: int) -> PartitionPlan:
    """Compute the partition table for ``intent``; pure, no side effects."""

    if not intent.target_disk:
        raise ConfigurationError("no target disk to partition")
    validate_root_size(intent.root_size_gib or 0, disk_bytes)

    if intent.boot_mode is BootMode.UEFI:
        esp_end = ESP_MIB
        boot_end = esp_end + BOOT_MIB
        parts = (
            PartitionSpec(1, ESP_NAME, "fat32", 1, esp_end, ("esp",)),
            PartitionSpec(2, BOOT_NAME, "ext4", esp_end, boot_end),
            PartitionSpec(3, LVM_NAME, "ext4", boot_end, None, ("lvm",)),
        )
        label = "gpt"
    else:
        boot_end = BOOT_MIB
        parts = (
            PartitionSpec(1, BOOT_NAME, "ext4", 1, boot_end, ("boot",)),
            PartitionSpec(2, LVM_NAME, "ext4", boot_end, None, ("lvm",)),
        )
        label = "msdos"
    return PartitionPlan(disk=intent.target_disk, boot_mode=intent.boot_mode, label_type=label, partitions=parts)


class PartitionTableWriter:
    """Applies a :class:`PartitionPlan` with ``parted``; destroys the disk."""

    def commands(self, plan: PartitionPlan) -> list[list[str]]:
        cmds = [["parted", "-s", "-a", "optimal", plan.disk, "--", "mklabel", plan.label_type]]
        for part in plan.partitions:
            end = "100%" if part.end_mib is None else f"{part.end_mib}MiB"
            if plan.label_type == "gpt":
                mkpart = ["mkpart", part.name, part.fs_type, f"{part.start_mib}MiB", end]
            else:
                mkpart = ["mkpart", "primary", part.fs_type, f"{part.start_mib}MiB", end]
            cmds.append(["parted", "-s", "-a", "optimal", plan.disk, "--", *mkpart])
            for flag in part.flags:
                cmds.append(["parted", "-s", plan.disk, "--", "set", str(part.index), flag, "on"])
        return cmds

    def wipe(self, disk: str) -> None:
        run_checked(["wipefs", "--all", "--force", disk])

    def apply(self, plan: PartitionPlan) -> list[str]:
        self.wipe(plan.disk)
        for cmd in self.commands(plan):
            run_checked(cmd, timeout=60.0)
        run(["partprobe", plan.disk], check=False)
        udev_settle()
        return [partition_path(plan.disk, p.index) for p in plan.partitions]
