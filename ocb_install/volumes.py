"""LVM stack, filesystems, mounts and build swap on a freshly partitioned disk."""
from __future__ import annotations

import os
from subprocess import CalledProcessError
from typing import Optional

from .devices import await_devices, mem_total_kib
from .errors import CommandError
from .executil import run, trace, udev_settle
from .model import (
    CRYPT_NAME,
    DATA_LV,
    ROOT_LV,
    VG_NAME,
    DeviceExpectation,
    DeviceKind,
    HostIntent,
    PartitionPlan,
    ProvisionedVolumes,
)
from .partitioning import BOOT_NAME, ESP_NAME, LVM_NAME, PartitionTableWriter, partition_path

SWAP_SIZE = "4G"
# Below this, nix builds on the live image exhaust the tmpfs-backed store.
LOW_MEMORY_KIB = 8 * 1024 * 1024
RW_STORE = "/nix/.rw-store"
RW_STORE_SIZE = "4G"

ROOT_LABEL = "nixos_root"
BOOT_LABEL = "nixos_boot"
EFI_LABEL = "EFI"


def by_label(label: str) -> str:
    return f"/dev/disk/by-label/{label}"


def _checked(cmd: list[str], timeout: float | None = 120.0) -> None:
    try:
        run(cmd, check=True, timeout=timeout)
    except CalledProcessError as exc:
        raise CommandError.from_called_process(exc) from exc


class VolumeManager:
    """LVM and device-mapper operations."""

    def close_mapping(self, name: str) -> None:
        if not os.path.exists(f"/dev/mapper/{name}"):
            return
        run(["cryptsetup", "close", name], check=False, timeout=60.0)

    def remove_vg(self, vg: str) -> None:
        probe = run(["vgs", "--noheadings", "-o", "vg_name", vg], check=False)
        if probe.rc != 0:
            trace("volumes.vg_absent", vg=vg)
            return
        run(["vgchange", "-an", vg], check=False, timeout=60.0)
        _checked(["vgremove", "--force", "--yes", vg])

    def wipe_existing(self) -> None:
        """Drop leftovers from a previous run; missing pieces are fine."""

        self.close_mapping(CRYPT_NAME)
        self.remove_vg(VG_NAME)
        udev_settle()

    def create_pv_vg(self, pv: str, vg: str = VG_NAME) -> None:
        _checked(["pvcreate", "--force", "--yes", pv])
        _checked(["vgcreate", vg, pv])

    def create_lv(self, name: str, *, size_gib: Optional[int] = None, vg: str = VG_NAME) -> str:
        cmd = ["lvcreate", "--yes", "--wipesignatures", "y", "-n", name]
        if size_gib is None:
            cmd += ["-l", "100%FREE"]
        else:
            cmd += ["-L", f"{size_gib}G"]
        _checked(cmd + [vg])
        return f"/dev/{vg}/{name}"


class FilesystemBuilder:
    def vfat(self, dev: str, label: str) -> None:
        _checked(["mkfs.vfat", "-F", "32", "-n", label, dev], timeout=360.0)

    def ext4(self, dev: str, label: str, *, inode_size: Optional[int] = None, reserved_pct: Optional[int] = None) -> None:
        cmd = ["mkfs.ext4", "-F", "-e", "remount-ro", "-L", label]
        if inode_size:
            cmd += ["-I", str(inode_size)]
        if reserved_pct is not None:
            cmd += ["-m", str(reserved_pct)]
        _checked(cmd + [dev], timeout=360.0)

    def mount(self, dev: str, target: str, *, opts: Optional[list[str]] = None) -> None:
        os.makedirs(target, exist_ok=True)
        cmd = ["mount"]
        if opts:
            cmd += ["-o", ",".join(opts)]
        _checked(cmd + [dev, target], timeout=60.0)

    def bind(self, src: str, target: str) -> None:
        os.makedirs(src, exist_ok=True)
        os.makedirs(target, exist_ok=True)
        _checked(["mount", "--bind", src, target], timeout=60.0)

    def umount(self, target: str) -> bool:
        res = run(["umount", "--recursive", target], check=False, timeout=60.0)
        if res.rc != 0:
            trace("volumes.umount_failed", target=target, rc=res.rc, err=(res.err or "").strip())
        return res.rc == 0


class VolumeProvisioner:
    def __init__(
        self,
        root: str,
        tables: Optional[PartitionTableWriter] = None,
        lvm: Optional[VolumeManager] = None,
        fs: Optional[FilesystemBuilder] = None,
        waiter=await_devices,
    ):
        self.root = root
        self.tables = tables or PartitionTableWriter()
        self.lvm = lvm or VolumeManager()
        self.fs = fs or FilesystemBuilder()
        self.waiter = waiter

    def _wait(self, paths, intent: HostIntent) -> None:
        self.waiter(paths, rescan_disk=intent.target_disk)

    def provision(self, intent: HostIntent, plan: PartitionPlan) -> ProvisionedVolumes:
        """Erase ``plan.disk`` and build the LVM stack and system filesystems."""

        return self.build(intent, self.partition(intent, plan))

    def partition(self, intent: HostIntent, plan: PartitionPlan) -> dict[str, str]:
        """Clear leftovers of earlier runs and write the partition table."""

        self.lvm.wipe_existing()
        self.tables.apply(plan)
        part_paths = {p.name: partition_path(plan.disk, p.index) for p in plan.partitions}
        self._wait(part_paths.values(), intent)
        return part_paths

    def build(self, intent: HostIntent, part_paths: dict[str, str]) -> ProvisionedVolumes:
        self.lvm.create_pv_vg(part_paths[LVM_NAME])
        root_lv = self.lvm.create_lv(ROOT_LV, size_gib=intent.root_size_gib)
        lvs = [root_lv]
        if intent.creates_data_lv:
            lvs.append(self.lvm.create_lv(DATA_LV))
        self._wait(lvs, intent)

        efi = part_paths.get(ESP_NAME)
        if efi:
            self.fs.vfat(efi, EFI_LABEL)
        # 256-byte inodes can store timestamps past 2038
        self.fs.ext4(part_paths[BOOT_NAME], BOOT_LABEL, inode_size=256)
        self.fs.ext4(root_lv, ROOT_LABEL)
        labels = [ROOT_LABEL, BOOT_LABEL] + ([EFI_LABEL] if efi else [])
        self._wait([DeviceExpectation(by_label(l), DeviceKind.MOUNT_LABEL) for l in labels], intent)

        vols = ProvisionedVolumes(
            root=root_lv,
            boot=part_paths[BOOT_NAME],
            efi=efi,
            data_device=intent.resolved_data_device() if intent.create_encrypted_volume else None,
        )
        try:
            self.mount_system(vols)
            vols.swapfile = self.enable_build_swap()
            self.grow_rw_store()
        except BaseException:
            # the caller never sees these volumes
            self.teardown(vols)
            raise
        return vols

    def mount_system(self, vols: ProvisionedVolumes) -> None:
        boot = os.path.join(self.root, "boot")
        self.fs.mount(by_label(ROOT_LABEL), self.root)
        vols.mounted.append(self.root)
        self.fs.mount(by_label(BOOT_LABEL), boot)
        vols.mounted.append(boot)
        if vols.efi:
            efi = os.path.join(boot, "efi")
            self.fs.mount(by_label(EFI_LABEL), efi, opts=["umask=0077"])
            vols.mounted.append(efi)

    def enable_build_swap(self) -> str:
        swapfile = os.path.join(self.root, "swapfile")
        _checked(["fallocate", "-l", SWAP_SIZE, swapfile])
        os.chmod(swapfile, 0o600)
        _checked(["mkswap", swapfile])
        _checked(["swapon", swapfile])
        return swapfile

    def grow_rw_store(self, meminfo: str = "/proc/meminfo") -> bool:
        total = mem_total_kib(meminfo)
        if total >= LOW_MEMORY_KIB:
            return False
        trace("volumes.low_memory", mem_total_kib=total, rw_store=RW_STORE)
        _checked(["mount", "-o", f"remount,size={RW_STORE_SIZE}", RW_STORE])
        return True

    def teardown(self, vols: ProvisionedVolumes) -> list[str]:
        """Best-effort: disable swap and unmount; returns what failed."""

        failed = []
        if vols.swapfile:
            res = run(["swapoff", vols.swapfile], check=False, timeout=120.0)
            if res.rc != 0:
                failed.append(f"swapoff {vols.swapfile}")
            else:
                try:
                    os.remove(vols.swapfile)
                except OSError as exc:
                    trace("volumes.swapfile_remove_failed", path=vols.swapfile, error=str(exc))
                    failed.append(f"rm {vols.swapfile}")
        if vols.mounted and not self.fs.umount(vols.mounted[0]):
            failed.append(f"umount {vols.mounted[0]}")
        return failed
