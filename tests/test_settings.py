from __future__ import annotations

import json
from pathlib import Path

import pytest

from settings import DEFAULT_BINDINGS, Settings, load_bindings, load_settings


def test_defaults_without_environment():
    settings = load_settings({})

    assert settings == Settings()
    assert settings.backend_url == "http://localhost:8188"
    assert settings.upload_max_retries == 3
    assert settings.upload_retry_delay == 2.0
    assert settings.upload_timeout == 60.0
    assert settings.poll_interval == 1.0
    assert settings.poll_timeout == 600.0
    assert settings.bindings == DEFAULT_BINDINGS


def test_environment_overrides():
    settings = load_settings(
        {
            "COMFY_BASE_URL": "http://gpu-box:8188/",
            "DEFAULT_FRAME": "plain.png",
            "UPLOAD_MAX_RETRIES": "5",
            "UPLOAD_RETRY_DELAY": "0.5",
            "UPLOAD_OVERWRITE": "true",
            "POLL_MAX_TICKS": "120",
            "LOG_LEVEL": "debug",
        }
    )

    assert settings.backend_url == "http://gpu-box:8188"
    assert settings.default_frame == "plain.png"
    assert settings.upload_max_retries == 5
    assert settings.upload_retry_delay == 0.5
    assert settings.upload_overwrite is True
    assert settings.poll_max_ticks == 120
    assert settings.log_level == "DEBUG"


def test_invalid_numbers_fall_back_to_defaults():
    settings = load_settings({"UPLOAD_MAX_RETRIES": "many", "POLL_INTERVAL": "soon"})

    assert settings.upload_max_retries == 3
    assert settings.poll_interval == 1.0


def test_zero_poll_timeout_disables_deadline():
    assert load_settings({"POLL_TIMEOUT": "0"}).poll_timeout is None


def test_bindings_path_is_merged_over_defaults(tmp_path: Path):
    path = tmp_path / "bindings.json"
    path.write_text(json.dumps({"output_node": "45"}), encoding="utf-8")

    settings = load_settings({"PORTRAIT_BINDINGS_PATH": str(path)})

    assert settings.bindings["output_node"] == "45"
    assert settings.bindings["subject"] == DEFAULT_BINDINGS["subject"]


def test_bindings_file_must_be_object(tmp_path: Path):
    path = tmp_path / "bindings.json"
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError):
        load_bindings(str(path))


def test_zero_poll_max_ticks_disables_cap():
    assert load_settings({"POLL_MAX_TICKS": "0"}).poll_max_ticks is None


def test_zero_upload_retries_still_attempts_once():
    assert load_settings({"UPLOAD_MAX_RETRIES": "0"}).upload_max_retries == 1
