import pytest

from ocb_install import executil


@pytest.fixture(autouse=True)
def _isolated_run_log(tmp_path, monkeypatch):
    """Keep the JSONL run log of every test inside its own tmp_path."""

    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)


@pytest.fixture(autouse=True)
def _no_operator_overrides(monkeypatch):
    for name in ("OCB_TARGET_ROOT", "OCB_KEY_FILE", "OCB_REPO_BRANCH", "OCB_GITHUB_ORG", "OCB_REPO_NAME"):
        monkeypatch.delenv(name, raising=False)
