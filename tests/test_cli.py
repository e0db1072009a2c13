import json
from types import SimpleNamespace

import pytest

from ocb_install import cli
from ocb_install.errors import ConfigurationError, DeviceTimeout, InfrastructureError
from ocb_install.model import BootMode, HostIntent, ProvisioningStage


def _fresh(**kwargs):
    base = dict(hostname="benuc001", is_fresh_install=True, target_disk="/dev/sda", root_size_gib=25)
    base.update(kwargs)
    return HostIntent(**base)


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    monkeypatch.setattr(cli, "is_block_device", lambda path: True)
    monkeypatch.setattr(cli, "guard_not_live_root", lambda target: None)


@pytest.fixture
def records(monkeypatch, tmp_path):
    out = []
    monkeypatch.setattr(cli, "append_jsonl", lambda path, payload: out.append(payload))
    monkeypatch.setattr(cli, "resolve_log_path", lambda: str(tmp_path / "run.jsonl"))
    return out


def test_emit_result_records_and_exits(records, capsys):
    with pytest.raises(SystemExit) as exc:
        cli._emit_result("FAIL_ROOT_SIZE", extra={"why": "too big"})

    assert exc.value.code == cli.RESULT_CODES["FAIL_ROOT_SIZE"]
    assert records[0]["result"] == "FAIL_ROOT_SIZE"
    printed = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert printed["why"] == "too big"
    assert "timing_total_ms" in printed


def test_preflight_requires_root(monkeypatch):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 1000)
    with pytest.raises(InfrastructureError) as exc:
        cli.preflight(_fresh())
    assert exc.value.result == "FAIL_NOT_ROOT"


def test_preflight_rejects_non_block_device(as_root, monkeypatch):
    monkeypatch.setattr(cli, "is_block_device", lambda path: False)
    with pytest.raises(ConfigurationError) as exc:
        cli.preflight(_fresh())
    assert exc.value.result == "FAIL_INVALID_DEVICE"


def test_preflight_boot_mode_mismatch(as_root, tmp_path):
    efi = tmp_path / "efi"
    with pytest.raises(ConfigurationError) as exc:
        cli.preflight(_fresh(), efi_dir=str(efi))
    assert exc.value.result == "FAIL_BOOT_MODE"

    efi.mkdir()
    cli.preflight(_fresh(), efi_dir=str(efi))
    with pytest.raises(ConfigurationError):
        cli.preflight(_fresh(boot_mode=BootMode.LEGACY), efi_dir=str(efi))


def test_intent_ignores_disk_flags_when_reconfiguring():
    args = cli.build_parser().parse_args(["-H", "benuc001", "-d", "/dev/sda", "-r", "40", "-p", "/dev/sdb", "-l"])

    fresh = cli.intent_from_args(args, install_mode=True)
    assert (fresh.target_disk, fresh.root_size_gib, fresh.boot_mode) == ("/dev/sda", 40, BootMode.LEGACY)

    reconf = cli.intent_from_args(args, install_mode=False)
    assert reconf.target_disk is None and reconf.root_size_gib is None
    assert reconf.data_device == "/dev/sdb"


def test_parser_defaults():
    args = cli.build_parser().parse_args(["-H", "benuc001"])
    assert args.root_size == 25
    assert args.encrypted is True
    assert not args.assume_yes


def test_main_usage_error(records, monkeypatch):
    monkeypatch.setattr(cli, "current_hostname", lambda: "nixos")
    monkeypatch.setattr(cli, "is_install_mode", lambda hostname: True)

    with pytest.raises(SystemExit) as exc:
        cli.main(["-H", "benuc001"])

    assert exc.value.code == cli.RESULT_CODES["FAIL_USAGE"]
    assert records[-1]["result"] == "FAIL_USAGE"


class _FakeSequencer:
    error = None

    def __init__(self, intent, **kwargs):
        self.intent = intent
        self.kwargs = kwargs
        self.ledger = SimpleNamespace(current=ProvisioningStage.BUILD_VOLUMES)

    def run(self):
        if self.error:
            raise self.error
        return [ProvisioningStage.PARSE_INTENT, ProvisioningStage.DONE]


def test_main_success(records, monkeypatch):
    monkeypatch.setattr(cli, "current_hostname", lambda: "nixos")
    monkeypatch.setattr(cli, "is_install_mode", lambda hostname: True)
    monkeypatch.setattr(cli, "preflight", lambda intent: None)
    monkeypatch.setattr(cli, "ProvisioningSequencer", _FakeSequencer)

    with pytest.raises(SystemExit) as exc:
        cli.main(["-H", "benuc001", "-d", "/dev/sda", "-y"])

    assert exc.value.code == 0
    assert records[-1]["result"] == "OK"
    assert records[-1]["stages"] == ["parse_intent", "done"]


def test_main_maps_failures_to_result_codes(records, monkeypatch):
    class Failing(_FakeSequencer):
        error = DeviceTimeout(["/dev/LVMVolGroup/nixos_root"], 60)

    monkeypatch.setattr(cli, "current_hostname", lambda: "nixos")
    monkeypatch.setattr(cli, "is_install_mode", lambda hostname: True)
    monkeypatch.setattr(cli, "preflight", lambda intent: None)
    monkeypatch.setattr(cli, "ProvisioningSequencer", Failing)

    with pytest.raises(SystemExit) as exc:
        cli.main(["-H", "benuc001", "-d", "/dev/sda"])

    assert exc.value.code == cli.RESULT_CODES["FAIL_DEVICE_TIMEOUT"]
    assert records[-1]["stage"] == "build_volumes"
    assert records[-1]["missing"] == ["/dev/LVMVolGroup/nixos_root"]


def test_main_unexpected_error(records, monkeypatch):
    class Broken(_FakeSequencer):
        error = ValueError("boom")

    monkeypatch.setattr(cli, "current_hostname", lambda: "benuc001")
    monkeypatch.setattr(cli, "is_install_mode", lambda hostname: False)
    monkeypatch.setattr(cli, "preflight", lambda intent: None)
    monkeypatch.setattr(cli, "ProvisioningSequencer", Broken)

    with pytest.raises(SystemExit) as exc:
        cli.main(["-H", "benuc001", "-D"])

    assert exc.value.code == cli.RESULT_CODES["FAIL_UNHANDLED"]
