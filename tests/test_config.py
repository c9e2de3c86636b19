from __future__ import annotations

import json
import logging

from typer.testing import CliRunner

from collabcanvas.cli import app as cli_app
from collabcanvas.config import feature_flags
from collabcanvas.config.settings import SyncSettings, load_settings
from collabcanvas.logging_config import (
    RequestContextFilter,
    StructuredJsonFormatter,
    init_logging,
    reset_request_id,
    set_request_id,
)


def _write_config(tmp_path, payload) -> None:
    (tmp_path / "collabcanvas.json").write_text(json.dumps(payload), encoding="utf-8")


def test_settings_defaults() -> None:
    settings = SyncSettings()
    assert settings.lease_timeout == 5.0
    assert settings.paste_offset == 80.0
    assert settings.presence_max_age == 120.0
    assert settings.as_dict()["storage_backend"] == "memory"


def test_settings_merge_rejects_bad_values() -> None:
    merged = SyncSettings().merged(
        {
            "lease_timeout": "7.5",
            "undo_depth": -1,
            "paste_offset": True,
            "cursor_interval": "fast",
            "storage_backend": "sqlite",
            "unknown": 1,
        }
    )
    assert merged.lease_timeout == 7.5
    assert merged.undo_depth == 200
    assert merged.paste_offset == 80.0
    assert merged.cursor_interval == SyncSettings().cursor_interval
    assert merged.storage_backend == "memory"


def test_settings_file_then_env(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_config(tmp_path, {"sync": {"lease_timeout": 8, "storage_backend": "json"}})
    settings = load_settings(refresh=True)
    assert settings.lease_timeout == 8.0
    assert settings.storage_backend == "json"

    monkeypatch.setenv("COLLABCANVAS_LEASE_TIMEOUT", "3")
    assert load_settings().lease_timeout == 3.0


def test_feature_flags_from_file(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert feature_flags.load_feature_flags(refresh=True)["enable_collaboration"] is True

    _write_config(tmp_path, {"features": {"enable_presence": False, "enable_share_codes": "no"}})
    flags = feature_flags.refresh_cache()
    assert flags["enable_presence"] is False
    assert flags["enable_share_codes"] is True
    assert feature_flags.is_enabled("enable_presence") is False
    assert feature_flags.is_enabled("missing_flag") is False
    assert feature_flags.is_enabled("missing_flag", default=True) is True


def test_feature_flags_env_overrides_file_and_logs(tmp_path, monkeypatch, caplog) -> None:
    monkeypatch.chdir(tmp_path)
    _write_config(tmp_path, {"features": {"enable_presence": False}})
    monkeypatch.setenv("COLLABCANVAS_FEATURE_ENABLE_PRESENCE", "yes")
    monkeypatch.setenv("COLLABCANVAS_FEATURE_ENABLE_SHARE_CODES", "maybe")

    with caplog.at_level(logging.INFO, logger="collabcanvas.config.feature_flags"):
        flags = feature_flags.refresh_cache()

    assert flags["enable_presence"] is True
    assert flags["enable_share_codes"] is True
    messages = [record.getMessage() for record in caplog.records]
    assert "Feature enable_presence set to False by collabcanvas.json" in messages
    assert "Feature enable_presence set to True by environment" in messages
    assert any("COLLABCANVAS_FEATURE_ENABLE_SHARE_CODES" in message for message in messages)

    monkeypatch.setenv("COLLABCANVAS_FEATURE_ENABLE_COLLABORATION", "off")
    assert feature_flags.is_enabled("enable_collaboration") is False


def test_json_formatter_includes_request_id_and_extras() -> None:
    record = logging.LogRecord("collabcanvas.request", logging.INFO, __file__, 1, "http_request", (), None)
    record.http = {"path": "/health", "status_code": 200}
    record.opaque = object()
    token = set_request_id("req-1")
    try:
        RequestContextFilter().filter(record)
    finally:
        reset_request_id(token)
    payload = json.loads(StructuredJsonFormatter().format(record))
    assert payload["message"] == "http_request"
    assert payload["request_id"] == "req-1"
    assert payload["extra"]["http"] == {"path": "/health", "status_code": 200}
    assert payload["extra"]["opaque"].startswith("<object")


def test_init_logging_writes_json_file(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("COLLABCANVAS_LOG_FILE", "unused")
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_path = init_logging(tmp_path, level="debug")
        logging.getLogger("collabcanvas.test").info("hello", extra={"canvas": "c1"})
        for handler in root.handlers:
            handler.flush()
        line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["message"] == "hello"
        assert entry["extra"]["canvas"] == "c1"
        assert root.level == logging.DEBUG
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)


def test_cli_settings_command(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli_app, ["settings"])
    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["sync"]["lease_timeout"] == 5.0
    assert payload["features"]["enable_collaboration"] is True
