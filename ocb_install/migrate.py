"""One-off move of a running host from the 2-repo to the 1-repo configuration layout."""

from __future__ import annotations

import argparse
import os
import shutil
import socket
import sys
import time
from subprocess import CalledProcessError
from typing import Callable, Optional

from . import handoff, paths
from .errors import ProvisionError
from .executil import ensure_tool, run, run_checked, trace
from .secret_store import GitSecretStore

PROG = "ocb-migrate"
VERSION = "v2023.01.17.0-ALPHA0"

RESULT_CODES = {
    "MIGRATE_OK": 0,
    "FAIL_MIGRATE": 1,
    "FAIL_NOT_ROOT": 102,
    "FAIL_MISSING_DIR": 102,
    "FAIL_TUNNEL_KEY": 103,
    "FAIL_2REPO_EXISTS": 104,
    "FAIL_1REPO_EXISTS": 105,
}


class MigrationError(ProvisionError):
    pass


def echo_info(*parts: object) -> None:
    print(f"{PROG}:", *parts)


def echo_err(*parts: object) -> None:
    print(f"{PROG}: ERROR:", *parts, file=sys.stderr)


def check_preconditions(cfg_dir: str, key_file: str, euid: Optional[int] = None) -> None:
    if (os.geteuid() if euid is None else euid) != 0:
        raise MigrationError("this script should be run using command 'sudo' or as super-user 'root'!",
                             result="FAIL_NOT_ROOT")
    if not os.path.isdir(cfg_dir):
        raise MigrationError(f"standard NixOS config directory \"{cfg_dir}\" does NOT exist!",
                             result="FAIL_MISSING_DIR")
    if not os.access(key_file, os.R_OK):
        raise MigrationError(
            f"organisation tunnel private key file \"{key_file}\" does NOT exist or is NOT readable by the current user!",
            result="FAIL_TUNNEL_KEY",
        )
    if os.path.isdir(cfg_dir + ".2repo"):
        raise MigrationError(f"old 2-repo NixOS config directory \"{cfg_dir}.2repo\" already exists!",
                             result="FAIL_2REPO_EXISTS")
    if os.path.isdir(cfg_dir + ".1repo"):
        raise MigrationError(f"new 1-repo NixOS config directory \"{cfg_dir}.1repo\" already exists!",
                             result="FAIL_1REPO_EXISTS")


def countdown(seconds: int = 10, sleep: Callable[[float], None] = time.sleep) -> None:
    print("(Press [Ctrl+C] *now* to abort)")
    print("\n--> countdown before proceeding: ", end="", flush=True)
    for remaining in range(seconds - 1, -1, -1):
        print(f"{remaining} ", end="", flush=True)
        sleep(1)
    print("GO!")


def migrate(store: GitSecretStore, hostname: str, cfg_dir: str = paths.NIXOS_CFG_DIR) -> None:
    old_dir = cfg_dir + ".2repo"
    new_dir = cfg_dir + ".1repo"

    echo_info(f"downloading MSF-OCB NixOS configuration files into \"{new_dir}\"...")
    os.makedirs(new_dir)
    st = os.stat(cfg_dir)
    os.chmod(new_dir, st.st_mode & 0o7777)
    os.chown(new_dir, st.st_uid, st.st_gid)
    store.clone_into(new_dir)

    shutil.copytree(os.path.join(cfg_dir, paths.LOCAL_DIR), os.path.join(new_dir, paths.LOCAL_DIR),
                    symlinks=True, dirs_exist_ok=True)
    os.rename(cfg_dir, old_dir)
    os.rename(new_dir, cfg_dir)
    trace("migrate.swapped", old=old_dir, new=cfg_dir)

    echo_info("generating NixOS configuration...")
    handoff.generate_hardware_config("/")
    handoff.link_settings(cfg_dir, hostname)

    echo_info("rebuilding the configuration of this NixOS system...")
    run_checked(["nixos-rebuild", "switch"], timeout=None, capture=False)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROG, description="MSF-OCB NixOS 2-repo to 1-repo migration")
    parser.add_argument("-y", "--yes", dest="assume_yes", action="store_true", help="skip the abort countdown")
    parser.add_argument("--version", action="version", version=f"{PROG} {VERSION}")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    print("MSF-OCB custom NixOS Linux config 2-repo to 1-repo migration script")
    print(f"{PROG} {VERSION}\n")
    run(["nixos-version"], check=False, capture=False)

    hostname = socket.gethostname()
    cfg_dir = paths.NIXOS_CFG_DIR
    key_file = os.path.join(paths.local_dir("/"), handoff.TUNNEL_KEY_NAME)
    try:
        check_preconditions(cfg_dir, key_file)
    except MigrationError as exc:
        echo_err(str(exc))
        return RESULT_CODES[exc.result]

    store = GitSecretStore(key_file, paths.secrets_dir())
    echo_info("parameters:")
    print(f"- GitHub.com private repository (@branch): \"{store.url}@{store.branch}\"\n")
    echo_info(f"about to start migrating to one MSF-OCB NixOS repo for host \"{hostname}\"...")
    if not args.assume_yes:
        countdown()
    try:
        ensure_tool("git")
        migrate(store, hostname, cfg_dir)
    except (ProvisionError, CalledProcessError, OSError) as exc:
        echo_err(f"migration failed: {exc}")
        if os.path.isdir(cfg_dir + ".2repo"):
            echo_err(f"the previous configuration was kept in \"{cfg_dir}.2repo\"")
        trace("migrate.failed", error=str(exc))
        return RESULT_CODES["FAIL_MIGRATE"]
    echo_info(f"migrating to one MSF-OCB NixOS repo completed successfully for host \"{hostname}\".")
    return RESULT_CODES["MIGRATE_OK"]


if __name__ == "__main__":
    sys.exit(main())
