"""Tests for bucket name, object key and part number validation."""

import os

import pytest

from pailstore.errors import ErrorKind, InvalidRequestError
from pailstore.validation import (
    parse_part_number,
    resolve_object_path,
    validate_bucket_name,
    validate_object_key,
)


class TestValidateBucketName:
    @pytest.mark.parametrize("name", ["abc", "my-bucket", "bucket123", "a" * 63, "0-0"])
    def test_valid(self, name):
        validate_bucket_name(name)

    @pytest.mark.parametrize(
        "name",
        ["ab", "a" * 64, "My-Bucket", "-bucket", "bucket-", "my_bucket", "my.bucket", ""],
    )
    def test_invalid(self, name):
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_bucket_name(name)
        assert exc_info.value.kind is ErrorKind.INVALID_BUCKET_NAME


class TestValidateObjectKey:
    @pytest.mark.parametrize("key", ["file.txt", "a/b/c.txt", "dots..in..name", "spa ce.txt"])
    def test_valid(self, key):
        validate_object_key(key)

    @pytest.mark.parametrize(
        "key", ["", "/", "/abs", "../up", "a/../b", "a/..", "tab\tkey", "nul\x00key"]
    )
    def test_invalid(self, key):
        with pytest.raises(InvalidRequestError) as exc_info:
            validate_object_key(key)
        assert exc_info.value.kind is ErrorKind.INVALID_KEY

    def test_too_long(self):
        with pytest.raises(InvalidRequestError):
            validate_object_key("k" * 1025)


class TestResolveObjectPath:
    def test_inside_bucket(self, tmp_path):
        path = resolve_object_path(tmp_path, "a/b.txt")
        assert path == tmp_path.resolve() / "a" / "b.txt"

    def test_symlink_escape_rejected(self, tmp_path):
        bucket = tmp_path / "bucket"
        bucket.mkdir()
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, bucket / "escape")

        with pytest.raises(InvalidRequestError) as exc_info:
            resolve_object_path(bucket, "escape/secret.txt")
        assert exc_info.value.kind is ErrorKind.PATH_TRAVERSAL

    def test_dotdot_rejected(self, tmp_path):
        with pytest.raises(InvalidRequestError) as exc_info:
            resolve_object_path(tmp_path / "bucket", "../other/file")
        assert exc_info.value.kind is ErrorKind.PATH_TRAVERSAL

    def test_bucket_root_rejected(self, tmp_path):
        with pytest.raises(InvalidRequestError) as exc_info:
            resolve_object_path(tmp_path, ".")
        assert exc_info.value.kind is ErrorKind.INVALID_KEY


class TestParsePartNumber:
    @pytest.mark.parametrize("value,expected", [("1", 1), ("10000", 10000), ("42", 42)])
    def test_valid(self, value, expected):
        assert parse_part_number(value) == expected

    @pytest.mark.parametrize("value", ["0", "10001", "-1", "abc", ""])
    def test_invalid(self, value):
        with pytest.raises(InvalidRequestError):
            parse_part_number(value)
