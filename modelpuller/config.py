"""Configuration of the puller and the puller server."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

__all__ = [
    "PathEscapeError",
    "StorageConfigError",
    "PullerConfiguration",
    "PullerServerConfiguration",
    "secure_join",
    "puller_config_from_env",
    "server_config_from_env",
]

log = logging.getLogger(__name__)

DEFAULT_ROOT_MODEL_DIR = "/models"
DEFAULT_STORAGE_CONFIG_DIR = "/storage-config"
DEFAULT_PORT = 8084
DEFAULT_MODEL_SERVER_ENDPOINT = "port:8085"


class PathEscapeError(ValueError):
    """Raised when a joined path would resolve outside its root directory."""


class StorageConfigError(Exception):
    """Raised when a storage configuration cannot be found, read or parsed."""


def secure_join(root: str, path: str) -> str:
    """Join *path* under *root* so that the result cannot leave *root*.

    ``..`` components are clamped at the root. If a symbolic link inside
    the root would lead the result outside of it, PathEscapeError is raised.
    """
    parts: list[str] = []
    for component in path.replace(os.sep, "/").split("/"):
        if component in ("", "."):
            continue
        if component == "..":
            if parts:
                parts.pop()
            continue
        parts.append(component)

    joined = os.path.join(root, *parts)

    real_root = os.path.realpath(root)
    real_joined = os.path.realpath(joined)
    if os.path.commonpath([real_root, real_joined]) != real_root:
        raise PathEscapeError(f"path {path!r} escapes root directory {root!r}")
    return joined


def _env_string(environ: Mapping[str, str], key: str, default: str) -> str:
    return environ.get(key, default)


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"environment variable {key} is not an integer: {raw!r}") from exc


@dataclass
class PullerConfiguration:
    """Where models are stored locally and where storage secrets are mounted."""

    root_model_dir: str = DEFAULT_ROOT_MODEL_DIR
    storage_configuration_dir: str = DEFAULT_STORAGE_CONFIG_DIR

    def get_storage_configuration(self, storage_key: str) -> dict[str, Any]:
        """Read the JSON storage configuration stored under *storage_key*."""
        config_path = secure_join(self.storage_configuration_dir, storage_key)
        log.debug("Reading storage credentials")

        if not os.path.exists(config_path):
            raise StorageConfigError(f"Storage secretKey not found: {storage_key}")

        try:
            with open(config_path, "rb") as handle:
                raw = handle.read()
        except OSError as exc:
            raise StorageConfigError(
                f"Could not read storage configuration from {config_path}: {exc}"
            ) from exc

        try:
            storage_config = json.loads(raw)
        except ValueError as exc:
            raise StorageConfigError(
                f"Could not parse storage configuration json from {config_path}: {exc}"
            ) from exc
        if not isinstance(storage_config, dict):
            raise StorageConfigError(
                f"Could not parse storage configuration json from {config_path}: "
                "expected a JSON object"
            )

        if storage_config.get("type") == "s3" and "default_bucket" in storage_config:
            if "bucket" in storage_config:
                log.info(
                    "Both bucket and default_bucket params were provided in S3 "
                    "storage config, ignoring default_bucket (bucket=%r, default_bucket=%r)",
                    storage_config["bucket"],
                    storage_config["default_bucket"],
                )
            else:
                storage_config["bucket"] = storage_config["default_bucket"]

        return storage_config


@dataclass
class PullerServerConfiguration:
    """Port of the puller server and the endpoint of the model runtime."""

    port: int = DEFAULT_PORT
    model_server_endpoint: str = DEFAULT_MODEL_SERVER_ENDPOINT


def puller_config_from_env(environ: Mapping[str, str] | None = None) -> PullerConfiguration:
    """Build a PullerConfiguration from ROOT_MODEL_DIR and STORAGE_CONFIG_DIR."""
    env = os.environ if environ is None else environ
    return PullerConfiguration(
        root_model_dir=_env_string(env, "ROOT_MODEL_DIR", DEFAULT_ROOT_MODEL_DIR),
        storage_configuration_dir=_env_string(
            env, "STORAGE_CONFIG_DIR", DEFAULT_STORAGE_CONFIG_DIR
        ),
    )


def server_config_from_env(
    environ: Mapping[str, str] | None = None,
) -> PullerServerConfiguration:
    """Build a PullerServerConfiguration from PORT and MODEL_SERVER_ENDPOINT."""
    env = os.environ if environ is None else environ
    return PullerServerConfiguration(
        port=_env_int(env, "PORT", DEFAULT_PORT),
        model_server_endpoint=_env_string(
            env, "MODEL_SERVER_ENDPOINT", DEFAULT_MODEL_SERVER_ENDPOINT
        ),
    )