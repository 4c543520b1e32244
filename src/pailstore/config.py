"""Configuration loading and Pydantic models for PailStore."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_MAX_UPLOAD_SIZE = 5 * 1024 * 1024 * 1024  # 5 GiB


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 4000
    region: str = "us-east-1"
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30
    max_upload_size: int = DEFAULT_MAX_UPLOAD_SIZE


class StorageConfig(BaseModel):
    """On-disk layout configuration.

    Buckets live under ``{data_dir}/buckets``, access key files under
    ``{data_dir}/keys`` and in-flight multipart parts under
    ``{data_dir}/multipart``.
    """

    data_dir: str = "./data"

    @property
    def buckets_dir(self) -> Path:
        return Path(self.data_dir) / "buckets"

    @property
    def keys_dir(self) -> Path:
        return Path(self.data_dir) / "keys"

    @property
    def multipart_dir(self) -> Path:
        return Path(self.data_dir) / "multipart"


class AuthConfig(BaseModel):
    """Request authentication settings."""

    # 0 disables the header-auth clock skew check
    max_clock_skew_seconds: int = 900


class MultipartConfig(BaseModel):
    """Multipart upload session lifecycle."""

    ttl_seconds: int = 86400
    sweep_interval_seconds: int = 3600


class CorsConfig(BaseModel):
    """CORS policy applied to every route."""

    allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    allow_credentials: bool = True
    max_age: int = 600


class ObservabilityConfig(BaseModel):
    """Metrics and health check toggles."""

    metrics: bool = True
    health_check: bool = True


class PailStoreConfig(BaseModel):
    """Top-level PailStore configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    multipart: MultipartConfig = Field(default_factory=MultipartConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    known = (
        "host",
        "port",
        "region",
        "log_level",
        "log_format",
        "shutdown_timeout",
        "max_upload_size",
    )
    return {name: data[name] for name in known if name in data}


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Accepts both ``storage.data_dir`` and the nested
    ``storage.local.root_dir`` spelling.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {}
    local_section = data.get("local")
    if isinstance(local_section, dict) and "root_dir" in local_section:
        result["data_dir"] = local_section["root_dir"]
    if "data_dir" in data:
        result["data_dir"] = data["data_dir"]
    return result


def _parse_auth(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the auth section from YAML data."""
    if data is None:
        return {}
    if "max_clock_skew_seconds" in data:
        return {"max_clock_skew_seconds": data["max_clock_skew_seconds"]}
    return {}


def _parse_multipart(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the multipart section from YAML data."""
    if data is None:
        return {}
    return {
        name: data[name] for name in ("ttl_seconds", "sweep_interval_seconds") if name in data
    }


def _parse_cors(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the cors section. A bare string origin is promoted to a list."""
    if data is None:
        return {}
    result: dict[str, Any] = {}
    origins = data.get("allow_origins")
    if isinstance(origins, str):
        result["allow_origins"] = [origins]
    elif origins is not None:
        result["allow_origins"] = list(origins)
    for name in ("allow_credentials", "max_age"):
        if name in data:
            result[name] = data[name]
    return result


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> PailStoreConfig:
    """Load a PailStoreConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated PailStoreConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value has the wrong type.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return PailStoreConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        auth=AuthConfig(**_parse_auth(raw.get("auth"))),
        multipart=MultipartConfig(**_parse_multipart(raw.get("multipart"))),
        cors=CorsConfig(**_parse_cors(raw.get("cors"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
