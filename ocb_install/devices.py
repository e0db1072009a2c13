"""Device node waiting and block-device probing."""
from __future__ import annotations

import os
import re
import stat
import time
from typing import Callable, Iterable, Optional

from .errors import DeviceTimeout, InfrastructureError
from .executil import run, trace, udev_settle
from .model import DeviceExpectation


def _as_path(item) -> str:
    if isinstance(item, DeviceExpectation):
        return item.path
    return str(item)


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def rescan_partitions(disk: str) -> None:
    run(["partprobe", disk], check=False, timeout=60.0)


def await_devices(
    paths: Iterable,
    timeout: int = 60,
    rescan_disk: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until every path in ``paths`` is a block device.

    Device nodes, ``/dev/disk/by-label`` links and LVM/mapper nodes are created
    asynchronously by the kernel and udev after partitioning and volume
    commands return. Poll once per second for ``timeout`` seconds. When
    ``rescan_disk`` is given the partition table of that disk is re-read on
    every round; ``stat`` follows symlinks so label links count once their
    target exists. Raises :class:`DeviceTimeout` naming the missing paths.
    """

    wanted = sorted({_as_path(p) for p in paths})
    if not wanted:
        return
    trace("devices.await.start", paths=wanted, timeout=timeout)
    for _ in wanted:
        udev_settle()

    countdown = timeout
    while True:
        missing = [p for p in wanted if not is_block_device(p)]
        if not missing:
            trace("devices.await.ready", paths=wanted, waited=timeout - countdown)
            return
        if countdown <= 0:
            break
        for _ in missing:
            if rescan_disk:
                rescan_partitions(rescan_disk)
            udev_settle()
        trace("devices.await.retry", missing=missing, remaining=countdown)
        sleep(1)
        countdown -= 1

    raise DeviceTimeout(missing, timeout)


def disk_size_bytes(disk: str) -> int:
    res = run(["blockdev", "--getsize64", disk], check=False)
    try:
        return int((res.out or "").strip())
    except ValueError as exc:
        raise InfrastructureError(
            f"unable to read the size of {disk}: {(res.err or '').strip() or 'no output'}",
            result="FAIL_INVALID_DEVICE",
        ) from exc


def mem_total_kib(meminfo: str = "/proc/meminfo") -> int:
    with open(meminfo, "r", encoding="utf-8") as fh:
        for line in fh:
            match = re.match(r"MemTotal:\s+(\d+)\s+kB", line)
            if match:
                return int(match.group(1))
    return 0
