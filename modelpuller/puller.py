"""Pull model files from remote storage into the local model directory."""

from __future__ import annotations

import enum
import json
import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import (
    PathEscapeError,
    PullerConfiguration,
    StorageConfigError,
    secure_join,
)
from .dotpath import OverrideError, apply_parameter_overrides

__all__ = [
    "StatusCode",
    "ModelMeshError",
    "LoadModelRequest",
    "ModelKeyInfo",
    "Target",
    "PullCommand",
    "PullManager",
    "Puller",
    "model_disk_size",
]

log = logging.getLogger(__name__)

PARAMETER_KEY_TYPE = "type"
DEFAULT_STORAGE_KEY = "default"
SCHEMA_FALLBACK_NAME = "_schema.json"

_GO_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class StatusCode(enum.IntEnum):
    """gRPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class ModelMeshError(Exception):
    """An error carrying a gRPC status code."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __str__(self) -> str:
        return self.message


def _status_code(exc: BaseException) -> StatusCode:
    if isinstance(exc, ModelMeshError):
        return exc.code
    return StatusCode.UNKNOWN


@dataclass
class LoadModelRequest:
    """A request to load a model into the runtime."""

    model_id: str = ""
    model_path: str = ""
    model_type: str = ""
    model_key: str = ""


def _dump_value(value: Any) -> str:
    text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in _GO_JSON_ESCAPES.items():
        text = text.replace(char, escaped)
    return text


@dataclass
class ModelKeyInfo:
    """The JSON document passed in the model key of a load request."""

    model_type: Any = None
    bucket: str = ""
    disk_size_bytes: int = 0
    schema_path: str | None = None
    storage_key: str | None = None
    storage_params: dict[str, str] | None = None

    @classmethod
    def from_json(cls, text: str) -> ModelKeyInfo:
        """Parse a model key; raise ValueError if it is not valid."""
        data = json.loads(text)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("model key must be a JSON object")

        info = cls(model_type=data.get("model_type"))

        bucket = data.get("bucket")
        if bucket is not None:
            if not isinstance(bucket, str):
                raise ValueError("'bucket' must be a string")
            info.bucket = bucket

        size = data.get("disk_size_bytes")
        if size is not None:
            if isinstance(size, bool) or not isinstance(size, int):
                raise ValueError("'disk_size_bytes' must be an integer")
            info.disk_size_bytes = size

        for name in ("schema_path", "storage_key"):
            value = data.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"'{name}' must be a string")
            setattr(info, name, value)

        params = data.get("storage_params")
        if params is not None:
            if not isinstance(params, dict):
                raise ValueError("'storage_params' must be an object")
            for key, value in params.items():
                if value is not None and not isinstance(value, str):
                    raise ValueError(f"storage parameter '{key}' must be a string")
            info.storage_params = {k: (v or "") for k, v in params.items()}

        return info

    def to_json(self) -> str:
        """Serialise compactly, omitting empty optional fields."""
        fields: list[tuple[str, Any]] = []
        if self.model_type is not None:
            fields.append(("model_type", self.model_type))
        if self.bucket:
            fields.append(("bucket", self.bucket))
        fields.append(("disk_size_bytes", self.disk_size_bytes))
        if self.schema_path is not None:
            fields.append(("schema_path", self.schema_path))
        if self.storage_key is not None:
            fields.append(("storage_key", self.storage_key))
        if self.storage_params:
            fields.append(("storage_params", self.storage_params))
        body = ",".join(f"{_dump_value(k)}:{_dump_value(v)}" for k, v in fields)
        return "{" + body + "}"


@dataclass(frozen=True)
class Target:
    """One remote path to fetch and the local name to store it under."""

    remote_path: str
    local_path: str


@dataclass
class PullCommand:
    """Everything a pull manager needs to fetch a model."""

    storage_type: str
    storage_config: dict[str, Any]
    directory: str
    targets: list[Target] = field(default_factory=list)


class PullManager(Protocol):
    """Fetches the targets of a pull command into its directory."""

    def pull(self, command: PullCommand) -> None:
        """Download every target; raise on failure."""
        ...


def _base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _tree_size(path: str, info: os.stat_result) -> int:
    if not os.path.isdir(path) or os.path.islink(path):
        return info.st_size
    total = 0
    with os.scandir(path) as entries:
        for entry in sorted(entries, key=lambda e: e.name):
            total += _tree_size(entry.path, entry.stat(follow_symlinks=False))
    return total


def model_disk_size(path: str) -> int:
    """Total size of the regular files at or below *path*; symlinks are not followed.

    Raises OSError if the path or anything below it cannot be read.
    """
    return _tree_size(path, os.lstat(path))


class Puller:
    """Pulls models from storage and manages the local model directory."""

    def __init__(self, config: PullerConfiguration, pull_manager: PullManager) -> None:
        self.config = config
        self.pull_manager = pull_manager
        log.info("Initializing Puller (dir=%s)", config.root_model_dir)

    def _storage_config_for(self, model_key: ModelKeyInfo) -> dict[str, Any]:
        if model_key.storage_key is None:
            storage_type = (model_key.storage_params or {}).get(PARAMETER_KEY_TYPE, "")
            key = (
                f"{DEFAULT_STORAGE_KEY}_{storage_type}"
                if storage_type
                else DEFAULT_STORAGE_KEY
            )
            try:
                return self.config.get_storage_configuration(key)
            except (StorageConfigError, PathEscapeError):
                return {}
        try:
            return self.config.get_storage_configuration(model_key.storage_key)
        except (StorageConfigError, PathEscapeError) as exc:
            raise StorageConfigError(
                f"Did not find storage config for key {model_key.storage_key}: {exc}"
            ) from exc

    def process_load_model_request(self, request: LoadModelRequest) -> LoadModelRequest:
        """Pull the model files and rewrite *request* in place to point at them.

        The model path and schema path become local paths, the size on disk is
        added to the model key and storage parameters are removed from it.
        """
        try:
            model_key = ModelKeyInfo.from_json(request.model_key)
        except ValueError as exc:
            raise ValueError(
                "Invalid modelKey in LoadModelRequest. Error processing JSON "
                f"'{request.model_key}': {exc}"
            ) from exc

        storage_config = self._storage_config_for(model_key)

        if model_key.bucket and storage_config.get("bucket") is not None:
            log.warning(
                'use of ModelKey["bucket"] is deprecated, use '
                'ModelKey["storage_params"]["bucket"] instead'
            )
            storage_config["bucket"] = model_key.bucket

        try:
            apply_parameter_overrides(storage_config, model_key.storage_params)
        except OverrideError as exc:
            raise OverrideError(
                "Unable to merge storage parameters from the storage config and "
                f"the Predictor Storage field: {exc}"
            ) from exc

        storage_type = storage_config.get(PARAMETER_KEY_TYPE)
        if not isinstance(storage_type, str):
            raise ValueError("Predictor Storage field missing")

        model_filename = _base(request.model_path)
        targets = [Target(remote_path=request.model_path, local_path=model_filename)]

        schema_filename = ""
        if model_key.schema_path is not None:
            schema_filename = _base(model_key.schema_path)
            if schema_filename == model_filename:
                schema_filename = SCHEMA_FALLBACK_NAME
            targets.append(
                Target(remote_path=model_key.schema_path, local_path=schema_filename)
            )

        model_dir = secure_join(self.config.root_model_dir, request.model_id)

        command = PullCommand(
            storage_type=storage_type,
            storage_config=storage_config,
            directory=model_dir,
            targets=targets,
        )
        try:
            self.pull_manager.pull(command)
        except Exception as exc:
            raise ModelMeshError(
                _status_code(exc),
                f"Failed to pull model from storage due to error: {exc}",
            ) from exc

        model_full_path = secure_join(model_dir, model_filename)
        request.model_path = model_full_path

        if model_key.schema_path is not None:
            model_key.schema_path = secure_join(model_dir, schema_filename)

        try:
            model_key.disk_size_bytes = model_disk_size(model_full_path)
        except OSError:
            log.exception(
                "Model disk size will not be included in the LoadModelRequest "
                "(model_key=%r)",
                model_key,
            )

        model_key.storage_key = None
        model_key.storage_params = None
        model_key.bucket = ""

        request.model_key = model_key.to_json()
        return request

    def cleanup_model(self, model_id: str) -> None:
        """Delete the local files of a model; a missing model is not an error."""
        path = secure_join(self.config.root_model_dir, model_id)
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.remove(path)
        except OSError as exc:
            log.error(
                "Model unload failed to delete files from the local filesystem "
                "(local_dir=%s)",
                path,
            )
            raise OSError(
                f"Failed to delete model from local filesystem: {exc}"
            ) from exc

    def clear_local_model_storage(self, exclude: str) -> None:
        """Remove every entry of the model directory except the one named *exclude*."""
        with os.scandir(self.config.root_model_dir) as entries:
            doomed = [entry for entry in entries if entry.name != exclude]
        for entry in doomed:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)

    def list_models(self) -> list[str]:
        """Names of the entries in the model directory, sorted."""
        return sorted(os.listdir(self.config.root_model_dir))


def _mapping_or_empty(value: Mapping[str, Any] | None) -> dict[str, Any]:
    return dict(value) if value else {}