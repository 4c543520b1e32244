"""CLI entry point for the PailStore server."""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn

from pailstore.config import PailStoreConfig, load_config
from pailstore.logging_config import configure_logging
from pailstore.server import create_app

logger = logging.getLogger("pailstore")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="pailstore",
        description="PailStore - S3-compatible file server with per-bucket access keys",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("pailstore.yaml"),
        help="Path to YAML configuration file (default: pailstore.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host address to bind to (overrides config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (overrides config)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Data directory holding buckets, keys and multipart parts (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=int,
        default=None,
        help="Graceful shutdown timeout in seconds (default: 30)",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PailStoreConfig:
    """Load the config file and apply command-line overrides.

    A missing config file is not an error: defaults are used, which keeps
    ``pailstore --data-dir /srv/files`` usable without any YAML.

    Raises:
        yaml.YAMLError: If the config file is not valid YAML.
        pydantic.ValidationError: If a value has the wrong type.
    """
    if args.config.exists():
        config = load_config(args.config)
    else:
        logger.warning("Config file %s not found, using defaults", args.config)
        config = PailStoreConfig()

    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.data_dir is not None:
        config.storage.data_dir = args.data_dir
    if args.log_level is not None:
        config.server.log_level = args.log_level
    if args.log_format is not None:
        config.server.log_format = args.log_format
    if args.shutdown_timeout is not None:
        config.server.shutdown_timeout = args.shutdown_timeout
    return config


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the PailStore server.

    Loads configuration, applies CLI overrides, and starts the server
    using uvicorn. SIGTERM handling is provided by uvicorn's built-in
    graceful shutdown; SIGHUP reloads access keys.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Process exit code.
    """
    args = parse_args(argv)

    # Basic stderr logging until the config tells us level and format
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    try:
        config = build_config(args)
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return 1

    configure_logging(
        level=config.server.log_level,
        fmt=config.server.log_format,
    )

    logger.info(
        "Starting PailStore on %s:%d (data_dir=%s)",
        config.server.host,
        config.server.port,
        config.storage.data_dir,
    )

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        timeout_graceful_shutdown=config.server.shutdown_timeout,
        timeout_keep_alive=5,
    )
    return 0


def entry_point() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
