import json
from pathlib import Path

import pytest

from sharad.config import Config, load_config, save_config
from sharad.errors import ConfigError


def test_defaults():
    config = load_config(env={})
    assert config.max_retries == 3
    assert config.context_window == 10
    assert config.language == "English"
    assert config.provider_format == "koboldcpp"


def test_file_values(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_retries": 5, "language": "Deutsch"}))
    config = load_config(path, env={})
    assert config.max_retries == 5
    assert config.language == "Deutsch"


def test_env_overrides_file(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_retries": 5}))
    config = load_config(path, env={"SHARAD_MAX_RETRIES": "1", "SHARAD_DEBUG": "true"})
    assert config.max_retries == 1
    assert config.debug is True


def test_unknown_option_is_rejected(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"retries": 5}))
    with pytest.raises(ConfigError):
        load_config(path, env={})


def test_invalid_values_are_rejected():
    with pytest.raises(ConfigError):
        load_config(env={"SHARAD_MAX_RETRIES": "-1"})
    with pytest.raises(ConfigError):
        load_config(env={"SHARAD_PROVIDER_FORMAT": "carrier-pigeon"})


def test_missing_or_broken_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.json", env={})
    broken = tmp_path / "broken.json"
    broken.write_text("{")
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_config(broken, env={})


def test_backoff_doubles_and_caps():
    config = Config(backoff_base=1.0, backoff_max=5.0)
    assert [config.backoff(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_save_and_reload(tmp_path: Path):
    path = tmp_path / "nested" / "config.json"
    save_config(Config(model="mistral-7b", request_timeout=30), path)
    config = load_config(path, env={})
    assert config.model == "mistral-7b"
    assert config.request_timeout == 30
