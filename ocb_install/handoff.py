"""Configuration checkout and hand-off to the NixOS installer."""
from __future__ import annotations

import os
import shutil
from subprocess import CalledProcessError

from . import paths
from .errors import CommandError, ConfigurationError, InfrastructureError
from .executil import run, trace

TUNNEL_KEY_NAME = "id_tunnel"


def persist_keypair(key_file: str, root: str) -> str:
    """Copy the transport keypair into ``<root>/etc/nixos/local``."""

    local = paths.local_dir(root)
    os.makedirs(local, exist_ok=True)
    os.chmod(local, 0o700)
    dst = os.path.join(local, TUNNEL_KEY_NAME)
    if os.path.abspath(dst) != os.path.abspath(key_file):
        for existing in (dst, dst + ".pub"):
            if os.path.exists(existing):
                os.chmod(existing, 0o600)
        shutil.copyfile(key_file, dst)
        shutil.copyfile(key_file + ".pub", dst + ".pub")
    os.chmod(dst, 0o400)
    os.chmod(dst + ".pub", 0o444)
    trace("handoff.keypair_persisted", path=dst)
    return dst


def _checked(cmd, env=None, cwd=None, timeout=None, capture=True, result=None):
    try:
        return run(cmd, check=True, env=env, cwd=cwd, timeout=timeout, capture=capture)
    except CalledProcessError as exc:
        raise CommandError.from_called_process(exc, result=result) from exc


def checkout_config(store, root: str) -> str:
    """Clone the configuration repository into ``<root>/etc/nixos``.

    An existing checkout is fast-forwarded to the default branch instead;
    ``local/`` is untracked and survives both.
    """

    cfg = paths.cfg_dir(root)
    env = store.env()
    if os.path.isdir(os.path.join(cfg, ".git")):
        _checked(["git", "fetch", "origin", store.branch], env=env, cwd=cfg, timeout=600)
        _checked(["git", "checkout", "--force", "-B", store.branch, f"origin/{store.branch}"], env=env, cwd=cfg)
        return cfg
    if os.path.isdir(cfg) and os.listdir(cfg):
        if root == "/":
            raise InfrastructureError(
                f"{cfg} exists but is not a checkout of the configuration repository; "
                "run ocb-migrate first",
            )
        staging = cfg + ".clone"
        shutil.rmtree(staging, ignore_errors=True)
        store.clone_into(staging)
        for entry in os.listdir(staging):
            shutil.move(os.path.join(staging, entry), os.path.join(cfg, entry))
        os.rmdir(staging)
        return cfg
    os.makedirs(os.path.dirname(cfg), exist_ok=True)
    store.clone_into(cfg)
    return cfg


def link_settings(cfg: str, hostname: str) -> str:
    profile = os.path.join(paths.HOSTS_DIR, f"{hostname}.nix")
    if not os.path.isfile(os.path.join(cfg, profile)):
        raise ConfigurationError(
            f"no host profile {profile} in the configuration repository; add one for \"{hostname}\" first",
        )
    link = os.path.join(cfg, "settings.nix")
    if os.path.islink(link) or os.path.exists(link):
        os.remove(link)
    os.symlink(profile, link)
    return link


def generate_hardware_config(root: str) -> None:
    # filesystems are declared statically in the host profile
    cmd = ["nixos-generate-config", "--no-filesystems"]
    if root != "/":
        cmd += ["--root", root]
    _checked(cmd, timeout=300)


def install(store, root: str, hostname: str, fresh: bool) -> None:
    """Check out the configuration for ``hostname`` and build it into ``root``."""

    cfg = checkout_config(store, root)
    generate_hardware_config(root)
    link_settings(cfg, hostname)
    env = store.env()
    if fresh:
        cmd = ["nixos-install", "--no-root-passwd", "--max-jobs", "4", "--root", root]
    else:
        cmd = ["nixos-rebuild", "switch"]
    print(f"running {' '.join(cmd)} ...")
    _checked(cmd, env=env, timeout=None, capture=False, result="FAIL_INSTALLER")
