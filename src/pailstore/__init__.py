"""PailStore: S3-compatible file server with per-bucket access keys."""

__version__ = "0.1.0"
