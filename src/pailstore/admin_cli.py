"""CLI entry point for pailstore-admin: access key and bucket management."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from pailstore.auth import presign_url
from pailstore.config import PailStoreConfig, load_config
from pailstore.errors import PailStoreError
from pailstore.keystore import (
    DEFAULT_PERMISSIONS,
    KeyStore,
    generate_access_key,
    key_file_path,
    remove_key_file,
    write_key_file,
)
from pailstore.listing import walk_keys
from pailstore.storage import LocalBlobStorage
from pailstore.validation import validate_bucket_name, validate_object_key

_BUCKET_RULES = """Bucket names must:
  - Be 3-63 characters long
  - Contain only lowercase letters, numbers, and hyphens
  - Start and end with a letter or number"""


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", type=Path, default=Path("pailstore.yaml"),
        help="Config file path (default: pailstore.yaml)",
    )
    parser.add_argument(
        "--data-dir", type=str, default=None,
        help="Data directory (overrides config)",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pailstore-admin",
        description="PailStore access key and bucket administration",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_parser = subparsers.add_parser("gen-key", help="Generate an access key for a bucket")
    _add_common(gen_parser)
    gen_parser.add_argument("bucket", help="Bucket the key is bound to")
    gen_parser.add_argument(
        "--permissions", type=str, default=",".join(sorted(DEFAULT_PERMISSIONS)),
        help="Comma-separated permissions (default: delete,put)",
    )

    list_keys_parser = subparsers.add_parser("list-keys", help="List access keys")
    _add_common(list_keys_parser)

    list_buckets_parser = subparsers.add_parser(
        "list-buckets", help="List buckets with object counts and sizes"
    )
    _add_common(list_buckets_parser)

    revoke_parser = subparsers.add_parser("revoke-key", help="Delete an access key")
    _add_common(revoke_parser)
    revoke_parser.add_argument("access_key_id", help="Access key id to revoke")
    revoke_parser.add_argument(
        "--force", action="store_true", default=False,
        help="Skip the confirmation prompt",
    )

    presign_parser = subparsers.add_parser("presign", help="Print a presigned URL")
    _add_common(presign_parser)
    presign_parser.add_argument("method", help="HTTP method, e.g. PUT or DELETE")
    presign_parser.add_argument("bucket")
    presign_parser.add_argument("key")
    presign_parser.add_argument(
        "--expires", type=int, default=3600,
        help="Validity window in seconds (default: 3600)",
    )
    presign_parser.add_argument(
        "--endpoint", type=str, default=None,
        help="Server base URL (default: http://localhost:<configured port>)",
    )
    presign_parser.add_argument(
        "--access-key-id", type=str, default=None,
        help="Key to sign with (default: the newest key bound to the bucket)",
    )

    return parser.parse_args(argv)


def _load(args: argparse.Namespace) -> PailStoreConfig:
    config = load_config(args.config) if args.config.exists() else PailStoreConfig()
    if args.data_dir is not None:
        config.storage.data_dir = args.data_dir
    return config


def format_size(num_bytes: int) -> str:
    """Human-readable size: ``512 B``, ``1.5 KB``, ``2.0 MB``, ``1.2 GB``."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    for unit, factor in (("KB", 1024), ("MB", 1024**2)):
        if num_bytes < factor * 1024:
            return f"{num_bytes / factor:.1f} {unit}"
    return f"{num_bytes / 1024**3:.1f} GB"


def _bucket_stats(bucket_dir: Path) -> tuple[int, int]:
    keys = walk_keys(bucket_dir)
    total = sum(os.stat(bucket_dir / key).st_size for key in keys)
    return len(keys), total


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_gen_key(args: argparse.Namespace, config: PailStoreConfig) -> int:
    try:
        validate_bucket_name(args.bucket)
    except PailStoreError:
        print(f"Error: invalid bucket name: {args.bucket}\n{_BUCKET_RULES}", file=sys.stderr)
        return 1

    permissions = {p.strip() for p in args.permissions.split(",") if p.strip()}
    invalid = permissions - DEFAULT_PERMISSIONS
    if invalid or not permissions:
        print(
            f"Error: invalid permissions: {', '.join(sorted(invalid)) or '(none)'}",
            file=sys.stderr,
        )
        return 1

    bucket_path = LocalBlobStorage(config.storage.data_dir).create_bucket(args.bucket)
    key = generate_access_key(args.bucket, permissions)
    path = write_key_file(config.storage.keys_dir, key)

    print("Access key created.")
    print()
    print(f"Bucket:          {key.bucket}")
    print(f"Access Key ID:   {key.access_key_id}")
    print(f"Secret Key:      {key.secret_key}")
    print(f"Permissions:     {','.join(sorted(key.permissions))}")
    print()
    print("Save the secret key now. It will not be displayed again.")
    print(f"Key file:          {path}")
    print(f"Bucket directory:  {bucket_path}")
    return 0


def cmd_list_keys(args: argparse.Namespace, config: PailStoreConfig) -> int:
    store = KeyStore(config.storage.keys_dir)
    store.reload()
    keys = sorted(store.list_keys(), key=lambda k: k.created_at, reverse=True)
    if not keys:
        print("No access keys found.")
        print("Create one with: pailstore-admin gen-key BUCKET")
        return 0

    print(f"{'ACCESS KEY ID':<22} {'BUCKET':<24} {'PERMISSIONS':<12} CREATED")
    for key in keys:
        print(
            f"{key.access_key_id:<22} {key.bucket:<24} "
            f"{','.join(sorted(key.permissions)):<12} {key.created_at.isoformat()}"
        )
    print()
    print(f"Total: {len(keys)} key{'s' if len(keys) != 1 else ''}")
    return 0


def cmd_list_buckets(args: argparse.Namespace, config: PailStoreConfig) -> int:
    storage = LocalBlobStorage(config.storage.data_dir)
    buckets = storage.list_buckets()
    if not buckets:
        print("No buckets found.")
        print("Create one with: pailstore-admin gen-key BUCKET")
        return 0

    store = KeyStore(config.storage.keys_dir)
    store.reload()
    key_counts: dict[str, int] = {}
    for key in store.list_keys():
        key_counts[key.bucket] = key_counts.get(key.bucket, 0) + 1

    for name in buckets:
        try:
            count, total = _bucket_stats(storage.buckets_dir / name)
        except OSError as exc:
            print(f"Error: cannot read bucket {name}: {exc}", file=sys.stderr)
            return 1
        print(f"Bucket:          {name}")
        print(f"Objects:         {count}")
        print(f"Total Size:      {format_size(total)}")
        print(f"Access Keys:     {key_counts.get(name, 0)}")
        print()
    print(f"Total: {len(buckets)} bucket{'s' if len(buckets) != 1 else ''}")
    return 0


def cmd_revoke_key(args: argparse.Namespace, config: PailStoreConfig) -> int:
    keys_dir = config.storage.keys_dir
    if not key_file_path(keys_dir, args.access_key_id).exists():
        print(f"Error: access key not found: {args.access_key_id}", file=sys.stderr)
        return 1

    if not args.force:
        answer = input(f"Revoke access key {args.access_key_id}? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    remove_key_file(keys_dir, args.access_key_id)
    print(f"Revoked access key {args.access_key_id}.")
    print("Send SIGHUP to the running server to apply the change immediately.")
    return 0


def cmd_presign(args: argparse.Namespace, config: PailStoreConfig) -> int:
    try:
        validate_bucket_name(args.bucket)
        validate_object_key(args.key)
    except PailStoreError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    store = KeyStore(config.storage.keys_dir)
    store.reload()
    if args.access_key_id:
        key = store.lookup(args.access_key_id)
        if key is None or key.bucket != args.bucket:
            print(
                f"Error: access key {args.access_key_id} not found for bucket {args.bucket}",
                file=sys.stderr,
            )
            return 1
    else:
        candidates = sorted(
            (k for k in store.list_keys() if k.bucket == args.bucket),
            key=lambda k: k.created_at,
            reverse=True,
        )
        if not candidates:
            print(f"Error: no access key bound to bucket {args.bucket}", file=sys.stderr)
            return 1
        key = candidates[0]

    endpoint = args.endpoint or f"http://localhost:{config.server.port}"
    print(
        presign_url(
            method=args.method,
            endpoint=endpoint,
            path=f"/{args.bucket}/{args.key}",
            access_key_id=key.access_key_id,
            secret_key=key.secret_key,
            expires=args.expires,
            region=config.server.region,
        )
    )
    return 0


_COMMANDS = {
    "gen-key": cmd_gen_key,
    "list-keys": cmd_list_keys,
    "list-buckets": cmd_list_buckets,
    "revoke-key": cmd_revoke_key,
    "presign": cmd_presign,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = _load(args)
    except Exception as e:
        print(f"Error reading config: {e}", file=sys.stderr)
        return 1

    return _COMMANDS[args.command](args, config)


def entry_point() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
