"""Tests for core/config.py - YAML loading with environment expansion."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest

from core import config as config_module
from core.config import (
    SchedulerConfig,
    dict_to_dataclass,
    expand_env_vars,
    get_config_dir,
    get_scheduler_config,
    load_yaml,
    set_config_dir,
)
from jobs.job_types import EncodingMode

REPO_CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"


@pytest.fixture(autouse=True)
def restore_config_dir():
    yield
    config_module._config_dir = None
    config_module._scheduler_config = None


class TestExpandEnvVars:
    def test_default_used_when_unset(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("ENCODING_TEST_VAR", None)
            assert expand_env_vars("${ENCODING_TEST_VAR:-42}") == "42"

    def test_environment_wins(self):
        with patch.dict(os.environ, {"ENCODING_TEST_VAR": "7"}):
            assert expand_env_vars("${ENCODING_TEST_VAR:-42}") == "7"

    def test_unset_without_default_left_alone(self):
        os.environ.pop("ENCODING_TEST_MISSING", None)
        assert expand_env_vars("${ENCODING_TEST_MISSING}") == "${ENCODING_TEST_MISSING}"

    def test_nested(self):
        with patch.dict(os.environ, {"ENCODING_TEST_HOST": "db.local"}):
            data = {"a": ["${ENCODING_TEST_HOST}", 3], "b": {"c": "x-${ENCODING_TEST_HOST}"}}
            assert expand_env_vars(data) == {"a": ["db.local", 3], "b": {"c": "x-db.local"}}


class TestDictToDataclass:
    def test_coerces_expanded_strings(self):
        cfg = dict_to_dataclass(
            {"lease_duration_sec": "120", "webhook_timeout_sec": "2.5", "db_path": "/tmp/x.db"},
            SchedulerConfig,
        )
        assert cfg.lease_duration_sec == 120
        assert cfg.webhook_timeout_sec == 2.5
        assert cfg.db_path == "/tmp/x.db"

    def test_unknown_keys_ignored(self):
        cfg = dict_to_dataclass({"not_a_field": 1, "server_port": 9000}, SchedulerConfig)
        assert cfg.server_port == 9000

    def test_bool_and_enum(self):
        @dataclass
        class Sample:
            enabled: bool = False
            mode: EncodingMode = EncodingMode.AUTO
            label: Optional[str] = None

        sample = dict_to_dataclass({"enabled": "yes", "mode": "self"}, Sample)
        assert sample.enabled is True
        assert sample.mode == EncodingMode.SELF

    def test_requires_dataclass(self):
        with pytest.raises(TypeError):
            dict_to_dataclass({}, dict)


def test_repo_config_matches_defaults():
    set_config_dir(REPO_CONFIG_DIR)
    env = {k: v for k, v in os.environ.items() if not k.startswith("ENCODING_")}
    with patch.dict(os.environ, env, clear=True):
        cfg = get_scheduler_config(reload=True)
    defaults = SchedulerConfig()

    assert cfg.lease_duration_sec == defaults.lease_duration_sec
    assert cfg.retry_backoff_base_sec == defaults.retry_backoff_base_sec
    assert cfg.short_video_threshold_bytes == defaults.short_video_threshold_bytes
    assert cfg.server_port == defaults.server_port
    assert cfg.webhook_signature_header == "X-SPK-Signature"
    assert not cfg.db_path


def test_env_overrides_lease_duration():
    set_config_dir(REPO_CONFIG_DIR)
    with patch.dict(os.environ, {"ENCODING_LEASE_SEC": "90", "ENCODING_PORT": "9100"}):
        cfg = get_scheduler_config(reload=True)
    assert cfg.lease_duration_sec == 90
    assert cfg.server_port == 9100


def test_missing_file_uses_defaults(temp_dir):
    set_config_dir(temp_dir)
    assert get_config_dir() == temp_dir
    assert get_scheduler_config() == SchedulerConfig()


def test_custom_file(temp_dir):
    (temp_dir / "encoding").mkdir()
    (temp_dir / "encoding" / "scheduler.yaml").write_text(
        "lease_duration_sec: 45\nretry_backoff_base_sec: 5\n"
    )
    set_config_dir(temp_dir)

    cfg = get_scheduler_config()
    assert cfg.lease_duration_sec == 45
    assert cfg.retry_backoff_base_sec == 5
    assert cfg.default_max_attempts == 3
    assert get_scheduler_config() is cfg


def test_load_yaml_missing(temp_dir):
    with pytest.raises(FileNotFoundError):
        load_yaml(temp_dir / "nope.yaml")


def test_load_yaml_empty_file(temp_dir):
    path = temp_dir / "empty.yaml"
    path.write_text("")
    assert load_yaml(path) == {}
