"""CLI entrypoint for the host installer."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, Optional

from . import paths
from .devices import is_block_device
from .errors import ConfigurationError, HandshakeCancelled, InfrastructureError, ProvisionError
from .executil import RUN_ID, append_jsonl, resolve_log_path, trace
from .model import BootMode, HostIntent
from .partitioning import guard_not_live_root
from .sequencer import ProvisioningSequencer, current_hostname, is_install_mode

PROG = "ocb-install"
VERSION = "v2024.03.0"

# Referenced by the installation documentation; never renumber.
RESULT_CODES: Dict[str, int] = {
    "OK": 0,
    "FAIL_USAGE": 1,
    "FAIL_NOT_ROOT": 2,
    "FAIL_MISSING_DIR": 3,
    "FAIL_INVALID_DEVICE": 4,
    "FAIL_ROOT_SIZE": 5,
    "FAIL_ENCRYPTED_EXISTS": 6,
    "FAIL_BOOT_MODE": 7,
    "FAIL_DEVICE_TIMEOUT": 8,
    "FAIL_COMMAND": 9,
    "FAIL_INSTALLER": 10,
    "FAIL_UNHANDLED": 12,
    "FAIL_CANCELLED": 130,
}

CLI_START_MONO = time.perf_counter()


def echo_info(*parts: object) -> None:
    print(f"{PROG}:", *parts)


def echo_err(*parts: object) -> None:
    print(f"{PROG}: ERROR:", *parts, file=sys.stderr)


def _emit_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"result": kind, "run": RUN_ID, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    raise SystemExit(RESULT_CODES.get(kind, 1))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Partition, encrypt and install an MSF-OCB NixOS host.",
        add_help=False,
    )
    parser.add_argument("--help", action="help", help="show this help message and exit")
    parser.add_argument("-H", "--hostname", required=True, help="name of the host to install")
    parser.add_argument("-d", "--device", help="disk to ERASE and install on (install mode only)")
    parser.add_argument("-r", "--root-size", type=int, default=25, help="root LV size in GiB (default: 25)")
    parser.add_argument("-D", "--no-encrypted-volume", dest="encrypted", action="store_false",
                        help="do not create the encrypted data volume")
    parser.add_argument("-l", "--legacy-boot", action="store_true", help="install for legacy BIOS boot")
    parser.add_argument("-p", "--data-device", help="use this device for the encrypted data volume")
    parser.add_argument("--repo", default=None, help="override the configuration repository URL")
    parser.add_argument("--branch", default=None, help="override the configuration repository branch")
    parser.add_argument("-y", "--yes", dest="assume_yes", action="store_true", help="skip the abort countdown")
    parser.add_argument("--version", action="version", version=f"{PROG} {VERSION}")
    return parser


def intent_from_args(args: argparse.Namespace, install_mode: bool) -> HostIntent:
    return HostIntent(
        hostname=args.hostname,
        is_fresh_install=install_mode,
        boot_mode=BootMode.LEGACY if args.legacy_boot else BootMode.UEFI,
        create_encrypted_volume=args.encrypted,
        target_disk=args.device if install_mode else None,
        root_size_gib=args.root_size if install_mode else None,
        data_device=args.data_device,
    )


def preflight(intent: HostIntent, efi_dir: str = "/sys/firmware/efi") -> None:
    """Checks that must pass before anything is touched."""

    if os.geteuid() != 0:
        raise InfrastructureError("this script should be run using 'sudo' or as super-user 'root'",
                                  result="FAIL_NOT_ROOT")
    booted_uefi = os.path.isdir(efi_dir)
    if intent.is_fresh_install:
        if not intent.target_disk or not is_block_device(intent.target_disk):
            raise ConfigurationError(f"{intent.target_disk!r} is not a valid block device",
                                     result="FAIL_INVALID_DEVICE")
        guard_not_live_root(intent.target_disk)
        if intent.boot_mode is BootMode.UEFI and not booted_uefi:
            raise ConfigurationError(
                "UEFI install requested but the system was not booted in UEFI mode; "
                "pass -l for a legacy install or reboot in UEFI mode",
                result="FAIL_BOOT_MODE",
            )
        if intent.boot_mode is BootMode.LEGACY and booted_uefi:
            raise ConfigurationError(
                "legacy install requested but the system was booted in UEFI mode; "
                "drop -l or reboot in legacy mode",
                result="FAIL_BOOT_MODE",
            )
    elif not os.path.isdir(paths.NIXOS_CFG_DIR):
        raise InfrastructureError(f"standard NixOS config directory \"{paths.NIXOS_CFG_DIR}\" does NOT exist",
                                  result="FAIL_MISSING_DIR")
    if intent.data_device and not is_block_device(intent.data_device):
        raise ConfigurationError(f"data device {intent.data_device!r} is not a block device",
                                 result="FAIL_INVALID_DEVICE")


def _main_impl(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    running_on = current_hostname()
    install_mode = is_install_mode(running_on)
    intent = intent_from_args(args, install_mode)
    trace("cli.args", hostname=args.hostname, install_mode=install_mode, running_on=running_on,
          device=args.device, root_size=args.root_size, encrypted=args.encrypted,
          legacy=args.legacy_boot, data_device=args.data_device)

    echo_info(f"{VERSION}, {'installing' if install_mode else 'reconfiguring'} host \"{intent.hostname}\"")
    try:
        intent.validate()
        preflight(intent)
    except ProvisionError as exc:
        echo_err(str(exc))
        if exc.result in ("FAIL_USAGE", "FAIL_INVALID_DEVICE", "FAIL_BOOT_MODE"):
            parser.print_usage(sys.stderr)
        _emit_result(exc.result, {"why": str(exc), "hostname": intent.hostname, **exc.state})

    sequencer = ProvisioningSequencer(intent, repo_url=args.repo, branch=args.branch, assume_yes=args.assume_yes)
    try:
        stages = sequencer.run()
    except HandshakeCancelled as exc:
        echo_err(f"{exc}; re-run the installer to resume")
        _emit_result(exc.result, {"why": str(exc), "stage": _stage(sequencer)})
    except ProvisionError as exc:
        echo_err(str(exc))
        _emit_result(exc.result, {"why": str(exc), "stage": _stage(sequencer), **exc.state})
    echo_info(f"host \"{intent.hostname}\" completed successfully"
              + ("; you can now reboot" if install_mode else ""))
    _emit_result("OK", {"hostname": intent.hostname, "stages": [s.value for s in stages]})
    return 0


def _stage(sequencer: ProvisioningSequencer) -> Optional[str]:
    current = sequencer.ledger.current
    return current.value if current else None


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        echo_err("aborted by operator")
        _emit_result("FAIL_CANCELLED")
    except Exception as exc:  # noqa: BLE001
        echo_err(f"unexpected failure: {exc}")
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
