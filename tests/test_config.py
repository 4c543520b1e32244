"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from pailstore.config import DEFAULT_MAX_UPLOAD_SIZE, PailStoreConfig, load_config

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "pailstore.example.yaml"


def _write(tmp_path, data) -> Path:
    path = tmp_path / "pailstore.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults():
    config = PailStoreConfig()
    assert config.server.host == "0.0.0.0"
    assert config.server.port == 4000
    assert config.server.max_upload_size == DEFAULT_MAX_UPLOAD_SIZE
    assert config.storage.data_dir == "./data"
    assert config.auth.max_clock_skew_seconds == 900
    assert config.multipart.ttl_seconds == 86400
    assert config.multipart.sweep_interval_seconds == 3600
    assert config.cors.allow_origins == ["*"]
    assert config.observability.metrics is True


def test_storage_subdirectories():
    config = PailStoreConfig()
    config.storage.data_dir = "/srv/pail"
    assert config.storage.buckets_dir == Path("/srv/pail/buckets")
    assert config.storage.keys_dir == Path("/srv/pail/keys")
    assert config.storage.multipart_dir == Path("/srv/pail/multipart")


def test_load_full_file(tmp_path):
    path = _write(
        tmp_path,
        {
            "server": {"port": 9000, "log_format": "json", "max_upload_size": 1024},
            "storage": {"data_dir": "/var/lib/pailstore"},
            "auth": {"max_clock_skew_seconds": 0},
            "multipart": {"ttl_seconds": 60, "sweep_interval_seconds": 5},
            "cors": {"allow_origins": "https://example.com", "max_age": 60},
            "observability": {"metrics": False},
        },
    )
    config = load_config(path)
    assert config.server.port == 9000
    assert config.server.log_format == "json"
    assert config.server.max_upload_size == 1024
    assert config.storage.data_dir == "/var/lib/pailstore"
    assert config.auth.max_clock_skew_seconds == 0
    assert config.multipart.ttl_seconds == 60
    assert config.cors.allow_origins == ["https://example.com"]
    assert config.cors.max_age == 60
    assert config.observability.metrics is False
    assert config.observability.health_check is True


def test_nested_local_root_dir(tmp_path):
    path = _write(tmp_path, {"storage": {"local": {"root_dir": "/mnt/blobs"}}})
    assert load_config(path).storage.data_dir == "/mnt/blobs"


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == PailStoreConfig()


def test_unknown_keys_ignored(tmp_path):
    path = _write(tmp_path, {"server": {"port": 4100, "workers": 8}, "extra": {"a": 1}})
    assert load_config(path).server.port == 4100


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_wrong_type(tmp_path):
    path = _write(tmp_path, {"server": {"port": "not-a-port"}})
    with pytest.raises(ValidationError):
        load_config(path)


def test_example_config_loads():
    config = load_config(EXAMPLE_CONFIG)
    assert config == PailStoreConfig()
