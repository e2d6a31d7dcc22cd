"""Tests for configuration loading."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from radiomonitor import config as config_module
from radiomonitor.config import ConfigError, coerce_env_value, load_config, parse_log_level


def write_config(tmp_path: Path, text: str) -> str:
    path = tmp_path / "radiomonitor.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


@pytest.fixture(autouse=True)
def no_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "os_environ_items", lambda: [])


def test_load_yaml(tmp_path: Path) -> None:
    path = write_config(
        tmp_path,
        """
server:
  port: 9000
storage:
  uri: mongodb://db:27017/?replicaSet=rs0
  connect_retries: 3
registry:
  data_dir: /srv/radio
ingest:
  dedup_window_s: 2.5
""",
    )

    cfg = load_config(path)

    assert cfg.server.port == 9000
    assert cfg.storage.backend == "mongo"
    assert cfg.storage.connect_retries == 3
    assert cfg.registry.talkgroups_dir == Path("/srv/radio/talkgroups")
    assert cfg.registry.alias_file == Path("/srv/radio/system-alias.csv")
    assert cfg.ingest.dedup_window_s == 2.5


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = write_config(tmp_path, "storage:\n  backend: memory\nregistry:\n  watch: true\n")
    monkeypatch.setattr(
        config_module,
        "os_environ_items",
        lambda: [
            ("RADIOMONITOR__REGISTRY__WATCH", "false"),
            ("RADIOMONITOR__SERVER__PORT", "8100"),
            ("RADIOMONITOR__BOGUS__KEY", "ignored"),
            ("RADIOMONITOR__TOO__MANY__PARTS", "ignored"),
            ("HOME", "/root"),
        ],
    )

    cfg = load_config(path)

    assert cfg.registry.watch is False
    assert cfg.server.port == 8100


def test_missing_file_uses_defaults_and_requires_mongo_uri(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="storage.uri"):
        load_config(str(tmp_path / "missing.yaml"))


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    path = write_config(tmp_path, "storage:\n  backend: memory\n  colour: blue\n")

    with pytest.raises(ConfigError):
        load_config(path)


def test_non_mapping_section_is_rejected(tmp_path: Path) -> None:
    path = write_config(tmp_path, "storage: memory\n")

    with pytest.raises(ConfigError):
        load_config(path)


def test_unknown_backend_is_rejected(tmp_path: Path) -> None:
    path = write_config(tmp_path, "storage:\n  backend: redis\n")

    with pytest.raises(ConfigError):
        load_config(path)


def test_coerce_env_value() -> None:
    assert coerce_env_value("TRUE") is True
    assert coerce_env_value("42") == 42
    assert coerce_env_value("0.5") == 0.5
    assert coerce_env_value("mongodb://db") == "mongodb://db"


@pytest.mark.parametrize(
    ("value", "expected"),
    [("debug", logging.DEBUG), ("Warn", logging.WARNING), ("10", 10), (None, logging.INFO), ("nonsense", logging.INFO)],
)
def test_parse_log_level(value: str | None, expected: int) -> None:
    assert parse_log_level(value) == expected
