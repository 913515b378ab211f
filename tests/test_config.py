from __future__ import annotations

import json
from pathlib import Path

import pytest

from echgui.config import CONFIG_ENV, DEFAULTS, ConfigManager, default_config_path


def test_writes_defaults_on_first_run(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    cfg = ConfigManager(path)
    assert json.loads(path.read_text(encoding="utf-8")) == DEFAULTS
    assert cfg.get("log_max_lines") == 500


def test_fills_missing_keys(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"backend_url": "http://10.0.0.2:9000"}), encoding="utf-8")
    cfg = ConfigManager(path)
    assert cfg.get("backend_url") == "http://10.0.0.2:9000"
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["reconcile_seconds"] == DEFAULTS["reconcile_seconds"]


def test_set_persists(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    ConfigManager(path).set("log_level", "DEBUG")
    assert ConfigManager(path).get("log_level") == "DEBUG"


def test_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        ConfigManager(path)


def test_path_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(CONFIG_ENV, str(tmp_path / "custom.json"))
    assert default_config_path() == tmp_path / "custom.json"
    monkeypatch.delenv(CONFIG_ENV)
    assert default_config_path() == Path("config.json")
