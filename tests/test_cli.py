"""Tests for the pailstore and pailstore-admin command-line interfaces."""

import json
import os
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest

from pailstore import admin_cli, cli
from pailstore.keystore import write_key_file

from conftest import make_key


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


def _admin(data_dir, command, *argv) -> int:
    common = ["--config", "/nonexistent.yaml", "--data-dir", str(data_dir)]
    return admin_cli.main([command, *common, *argv])


class TestServerCli:
    def test_defaults(self):
        args = cli.parse_args([])
        assert args.config == Path("pailstore.yaml")
        assert args.port is None

    def test_overrides_applied(self, tmp_path):
        args = cli.parse_args(
            [
                "--config", str(tmp_path / "missing.yaml"),
                "--host", "127.0.0.1",
                "--port", "9999",
                "--data-dir", "/srv/pail",
                "--log-format", "json",
                "--shutdown-timeout", "5",
            ]
        )
        config = cli.build_config(args)
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 9999
        assert config.storage.data_dir == "/srv/pail"
        assert config.server.log_format == "json"
        assert config.server.shutdown_timeout == 5

    def test_config_file_read(self, tmp_path):
        path = tmp_path / "pailstore.yaml"
        path.write_text("server:\n  port: 4321\n")
        config = cli.build_config(cli.parse_args(["--config", str(path)]))
        assert config.server.port == 4321

    def test_bad_config_exits_nonzero(self, tmp_path):
        path = tmp_path / "pailstore.yaml"
        path.write_text("server:\n  port: [not, a, port]\n")
        assert cli.main(["--config", str(path)]) == 1

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["--log-level", "CHATTY"])


class TestGenKey:
    def test_creates_bucket_and_key(self, data_dir, capsys):
        assert _admin(data_dir, "gen-key", "photos") == 0

        assert (data_dir / "buckets" / "photos").is_dir()
        (key_file,) = (data_dir / "keys").glob("*.json")
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600
        payload = json.loads(key_file.read_text())
        assert payload["bucket"] == "photos"
        assert sorted(payload["permissions"]) == ["delete", "put"]

        out = capsys.readouterr().out
        assert payload["access_key_id"] in out
        assert payload["secret_key"] in out

    def test_custom_permissions(self, data_dir):
        assert _admin(data_dir, "gen-key", "photos", "--permissions", "put") == 0
        (key_file,) = (data_dir / "keys").glob("*.json")
        assert json.loads(key_file.read_text())["permissions"] == ["put"]

    def test_invalid_bucket_name(self, data_dir, capsys):
        assert _admin(data_dir, "gen-key", "Bad_Name") == 1
        assert "invalid bucket name" in capsys.readouterr().err
        assert not (data_dir / "keys").exists()

    def test_invalid_permission(self, data_dir):
        assert _admin(data_dir, "gen-key", "photos", "--permissions", "put,admin") == 1


class TestListKeys:
    def test_newest_first_without_secrets(self, data_dir, capsys):
        old = make_key("AKIAOLDKEY", "old-secret", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        new = make_key("AKIANEWKEY", "new-secret", created_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
        write_key_file(data_dir / "keys", old)
        write_key_file(data_dir / "keys", new)

        assert _admin(data_dir, "list-keys") == 0
        out = capsys.readouterr().out
        assert out.index("AKIANEWKEY") < out.index("AKIAOLDKEY")
        assert "old-secret" not in out
        assert "new-secret" not in out

    def test_empty(self, data_dir, capsys):
        assert _admin(data_dir, "list-keys") == 0
        assert "No access keys found" in capsys.readouterr().out


class TestListBuckets:
    def test_stats(self, data_dir, capsys):
        bucket = data_dir / "buckets" / "photos"
        (bucket / "nested").mkdir(parents=True)
        (bucket / "a.bin").write_bytes(b"x" * 1024)
        (bucket / "nested" / "b.bin").write_bytes(b"x" * 512)
        write_key_file(data_dir / "keys", make_key(bucket="photos"))

        assert _admin(data_dir, "list-buckets") == 0
        out = capsys.readouterr().out
        assert "photos" in out
        assert "Objects:         2" in out
        assert "Total Size:      1.5 KB" in out
        assert "Access Keys:     1" in out

    def test_empty(self, data_dir, capsys):
        assert _admin(data_dir, "list-buckets") == 0
        assert "No buckets found" in capsys.readouterr().out

    @pytest.mark.parametrize(
        "size,expected",
        [(0, "0 B"), (1023, "1023 B"), (1536, "1.5 KB"), (5 * 1024**2, "5.0 MB"), (3 * 1024**3, "3.0 GB")],
    )
    def test_format_size(self, size, expected):
        assert admin_cli.format_size(size) == expected


class TestRevokeKey:
    def test_force(self, data_dir):
        write_key_file(data_dir / "keys", make_key("AKIAREVOKEME", "secret"))
        assert _admin(data_dir, "revoke-key", "AKIAREVOKEME", "--force") == 0
        assert not (data_dir / "keys" / "AKIAREVOKEME.json").exists()

    def test_confirmation_declined(self, data_dir, monkeypatch):
        write_key_file(data_dir / "keys", make_key("AKIAKEEPME", "secret"))
        monkeypatch.setattr("builtins.input", lambda _prompt: "n")
        assert _admin(data_dir, "revoke-key", "AKIAKEEPME") == 1
        assert (data_dir / "keys" / "AKIAKEEPME.json").exists()

    def test_confirmation_accepted(self, data_dir, monkeypatch):
        write_key_file(data_dir / "keys", make_key("AKIAREVOKEME", "secret"))
        monkeypatch.setattr("builtins.input", lambda _prompt: "yes")
        assert _admin(data_dir, "revoke-key", "AKIAREVOKEME") == 0
        assert not (data_dir / "keys" / "AKIAREVOKEME.json").exists()

    def test_unknown_key(self, data_dir):
        assert _admin(data_dir, "revoke-key", "AKIANOBODY", "--force") == 1


class TestPresign:
    def test_prints_presigned_url(self, data_dir, capsys):
        write_key_file(data_dir / "keys", make_key("AKIAPRESIGN", "secret", bucket="photos"))
        assert _admin(
            data_dir, "presign", "PUT", "photos", "a/b.txt",
            "--expires", "600", "--endpoint", "https://files.example.com",
        ) == 0

        url = urlsplit(capsys.readouterr().out.strip())
        assert url.netloc == "files.example.com"
        assert url.path == "/photos/a/b.txt"
        query = parse_qs(url.query)
        assert query["X-Amz-Expires"] == ["600"]
        assert query["X-Amz-Credential"][0].startswith("AKIAPRESIGN/")
        assert "X-Amz-Signature" in query

    def test_uses_newest_key(self, data_dir, capsys):
        now = datetime.now(timezone.utc)
        write_key_file(
            data_dir / "keys",
            make_key("AKIAOLDER", "s", bucket="photos", created_at=now - timedelta(days=1)),
        )
        write_key_file(data_dir / "keys", make_key("AKIANEWER", "s", bucket="photos", created_at=now))
        assert _admin(data_dir, "presign", "GET", "photos", "k") == 0
        assert "AKIANEWER%2F" in capsys.readouterr().out

    def test_no_key_for_bucket(self, data_dir):
        write_key_file(data_dir / "keys", make_key("AKIAELSEWHERE", "s", bucket="videos"))
        assert _admin(data_dir, "presign", "PUT", "photos", "k") == 1
