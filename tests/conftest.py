import pytest


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path):
    # Settings are read from the environment on every get_settings() call.
    monkeypatch.setenv("TZ", "UTC")
    monkeypatch.setenv("STORE_PATH", str(tmp_path / "store.json"))
    monkeypatch.setenv("USER_ID", "u1")
