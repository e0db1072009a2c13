import os
from types import SimpleNamespace

import pytest

from ocb_install import handoff, migrate
from ocb_install.errors import CommandError


@pytest.fixture
def layout(tmp_path):
    cfg = tmp_path / "nixos"
    (cfg / "local").mkdir(parents=True)
    key = cfg / "local" / "id_tunnel"
    key.write_text("PRIVATE", encoding="utf-8")
    return SimpleNamespace(cfg=str(cfg), key=str(key))


@pytest.mark.parametrize(
    "setup,expected",
    [
        (lambda l: None, None),
        (lambda l: os.remove(l.key), "FAIL_TUNNEL_KEY"),
        (lambda l: os.mkdir(l.cfg + ".2repo"), "FAIL_2REPO_EXISTS"),
        (lambda l: os.mkdir(l.cfg + ".1repo"), "FAIL_1REPO_EXISTS"),
    ],
)
def test_preconditions(layout, setup, expected):
    setup(layout)
    if expected is None:
        migrate.check_preconditions(layout.cfg, layout.key, euid=0)
        return
    with pytest.raises(migrate.MigrationError) as exc:
        migrate.check_preconditions(layout.cfg, layout.key, euid=0)
    assert exc.value.result == expected


def test_preconditions_root_and_directory(layout, tmp_path):
    with pytest.raises(migrate.MigrationError) as exc:
        migrate.check_preconditions(layout.cfg, layout.key, euid=1000)
    assert migrate.RESULT_CODES[exc.value.result] == 102

    with pytest.raises(migrate.MigrationError) as exc:
        migrate.check_preconditions(str(tmp_path / "missing"), layout.key, euid=0)
    assert migrate.RESULT_CODES[exc.value.result] == 102


def test_migrate_swaps_directories(layout, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return SimpleNamespace(rc=0, out="", err="")

    def clone_into(dest):
        os.makedirs(os.path.join(dest, "org-config", "hosts"))
        with open(os.path.join(dest, "org-config", "hosts", "benuc001.nix"), "w", encoding="utf-8") as fh:
            fh.write("{ }\n")
        return dest

    monkeypatch.setattr(migrate, "run", fake_run)
    monkeypatch.setattr(migrate, "run_checked", fake_run)
    monkeypatch.setattr(handoff, "run", fake_run)
    store = SimpleNamespace(clone_into=clone_into)

    migrate.migrate(store, "benuc001", layout.cfg)

    assert os.path.isdir(layout.cfg + ".2repo")
    assert not os.path.exists(layout.cfg + ".1repo")
    assert os.path.exists(os.path.join(layout.cfg, "local", "id_tunnel"))
    assert os.readlink(os.path.join(layout.cfg, "settings.nix")) == "org-config/hosts/benuc001.nix"
    assert calls == [["nixos-generate-config", "--no-filesystems"], ["nixos-rebuild", "switch"]]


def test_main_reports_precondition_code(monkeypatch):
    def refuse(cfg_dir, key_file):
        raise migrate.MigrationError("exists", result="FAIL_2REPO_EXISTS")

    monkeypatch.setattr(migrate, "run", lambda cmd, **kwargs: SimpleNamespace(rc=0, out="", err=""))
    monkeypatch.setattr(migrate, "check_preconditions", refuse)

    assert migrate.main(["-y"]) == 104


def test_main_reports_failed_rebuild(layout, monkeypatch, capsys):
    def clone_into(dest):
        os.makedirs(os.path.join(dest, "org-config", "hosts"))
        open(os.path.join(dest, "org-config", "hosts", "benuc001.nix"), "w").close()
        return dest

    def failing_rebuild(cmd, **kwargs):
        raise CommandError(cmd, 1, "error: attribute missing")

    monkeypatch.setattr(migrate.paths, "NIXOS_CFG_DIR", layout.cfg)
    monkeypatch.setattr(migrate.socket, "gethostname", lambda: "benuc001")
    monkeypatch.setattr(migrate, "run", lambda cmd, **kwargs: SimpleNamespace(rc=0, out="", err=""))
    monkeypatch.setattr(handoff, "run", lambda cmd, **kwargs: SimpleNamespace(rc=0, out="", err=""))
    monkeypatch.setattr(migrate, "run_checked", failing_rebuild)
    monkeypatch.setattr(migrate, "check_preconditions", lambda cfg_dir, key_file: None)
    monkeypatch.setattr(migrate, "ensure_tool", lambda name: name)
    monkeypatch.setattr(migrate.GitSecretStore, "clone_into", lambda self, dest: clone_into(dest))

    assert migrate.main(["-y"]) == migrate.RESULT_CODES["FAIL_MIGRATE"] == 1

    err = capsys.readouterr().err
    assert "migration failed" in err and "attribute missing" in err
    assert f"{layout.cfg}.2repo" in err
