from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_LOG_DIR = "/var/log/ocb-install"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def _env(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value if value else default


def ocb_logs_dir() -> str:
    """Return the directory for the JSONL run log.

    Overridable via ``OCB_LOG_DIR``; the fallback candidates live in
    :mod:`ocb_install.executil`.
    """

    return _expand(_env("OCB_LOG_DIR", _DEFAULT_LOG_DIR))


def target_root() -> str:
    return _env("OCB_TARGET_ROOT", "/mnt")


def secrets_dir() -> str:
    """Volatile, access-restricted directory for the decrypted keyfile."""

    return _env("OCB_SECRETS_DIR", "/run/.secrets")


def tunnel_key_file() -> str:
    """Private key reused across invocations on the rescue image."""

    return _env("OCB_KEY_FILE", "/tmp/id_tunnel")


def rescue_hostname() -> str:
    return _env("OCB_RESCUE_HOSTNAME", "nixos")


def github_org() -> str:
    return _env("OCB_GITHUB_ORG", "MSF-OCB")


def repo_name() -> str:
    return _env("OCB_REPO_NAME", "NixOS-OCB")


def repo_branch() -> str:
    return _env("OCB_REPO_BRANCH", "main")


def repo_url(org: str | None = None, name: str | None = None) -> str:
    return f"git@github.com:{org or github_org()}/{name or repo_name()}.git"


def repo_web_url(org: str | None = None, name: str | None = None) -> str:
    return f"https://github.com/{org or github_org()}/{name or repo_name()}"


NIXOS_CFG_DIR = "/etc/nixos"
# Relative to the configuration checkout.
LOCAL_DIR = "local"
MASTER_SECRETS_FILE = "org-config/secrets/master/encryption-keys.jsonl"
RECIPIENTS_FILE = "org-config/secrets/master/recipients.txt"
HOSTS_DIR = "org-config/hosts"
KEYFILE_NAME = "keyfile"

ROBOT_NAME = "OCB NixOS Robot"
ROBOT_EMAIL = "69807852+nixos-ocb@users.noreply.github.com"


def cfg_dir(root: str = "/") -> str:
    return os.path.join(root, NIXOS_CFG_DIR.lstrip("/"))


def local_dir(root: str = "/") -> str:
    return os.path.join(cfg_dir(root), LOCAL_DIR)
