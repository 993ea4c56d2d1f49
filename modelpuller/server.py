"""The puller server: pulls models before passing requests on to the model runtime."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from .config import PullerServerConfiguration
from .modelstate import ModelStateManager
from .puller import LoadModelRequest, ModelMeshError, Puller, StatusCode

__all__ = [
    "PURGE_EXCLUDE_PREFIXES",
    "UnloadModelRequest",
    "LoadModelResponse",
    "UnloadModelResponse",
    "RuntimeStatus",
    "RuntimeStatusResponse",
    "ModelRuntimeClient",
    "PullerServer",
]

log = logging.getLogger(__name__)

PURGE_EXCLUDE_PREFIXES: tuple[str, ...] = ("_",)


@dataclass
class UnloadModelRequest:
    """A request to unload a model from the runtime."""

    model_id: str = ""


@dataclass
class LoadModelResponse:
    """The runtime's answer to a load request."""

    size_in_bytes: int = 0


@dataclass
class UnloadModelResponse:
    """The runtime's answer to an unload request."""


class RuntimeStatus(enum.Enum):
    """State reported by the model runtime."""

    STARTING = "starting"
    READY = "ready"
    FAILING = "failing"


@dataclass
class RuntimeStatusResponse:
    """Status of the model runtime."""

    status: RuntimeStatus = RuntimeStatus.STARTING


class ModelRuntimeClient(Protocol):
    """Client of the model runtime that the puller server sits in front of."""

    def load_model(self, request: LoadModelRequest) -> Any:
        """Load a model whose files are already local."""
        ...

    def unload_model(self, request: UnloadModelRequest) -> Any:
        """Unload a model."""
        ...

    def predict_model_size(self, request: Any) -> Any:
        """Predict the size of a model that is not loaded yet."""
        ...

    def model_size(self, request: Any) -> Any:
        """Size of a loaded model."""
        ...

    def runtime_status(self, request: Any) -> RuntimeStatusResponse:
        """Status of the runtime."""
        ...


def _code_of(exc: BaseException) -> StatusCode:
    return exc.code if isinstance(exc, ModelMeshError) else StatusCode.UNKNOWN


class _ServerHandler:
    """Adapts the server's direct operations to the state manager."""

    def __init__(self, server: PullerServer) -> None:
        self._server = server

    def load_model(self, request: LoadModelRequest) -> Any:
        return self._server._load_model(request)

    def unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        return self._server._unload_model(request)


class PullerServer:
    """Front of the model runtime that fetches model files before loading."""

    def __init__(
        self,
        config: PullerServerConfiguration,
        puller: Puller,
        runtime_client: ModelRuntimeClient,
    ) -> None:
        self.config = config
        self.puller = puller
        self.runtime_client = runtime_client
        self.state_manager = ModelStateManager(_ServerHandler(self))

    def load_model(self, request: LoadModelRequest, timeout: float | None = None) -> Any:
        """Pull a model and load it into the runtime; waits until it is loaded."""
        log.info("Enqueuing loading of the model")
        return self.state_manager.load_model(request, timeout)

    def unload_model(
        self, request: UnloadModelRequest, timeout: float | None = None
    ) -> UnloadModelResponse:
        """Unload a model from the runtime and delete its local files."""
        log.info("Enqueuing unloading of the model")
        return self.state_manager.unload_model(request, timeout)

    def predict_model_size(self, request: Any) -> Any:
        """Pass the request straight to the runtime."""
        log.info("Predicting model size (model_id=%s)", getattr(request, "model_id", ""))
        return self.runtime_client.predict_model_size(request)

    def model_size(self, request: Any) -> Any:
        """Pass the request straight to the runtime."""
        log.info("Getting model size (model_id=%s)", getattr(request, "model_id", ""))
        return self.runtime_client.model_size(request)

    def runtime_status(self, request: Any) -> RuntimeStatusResponse:
        """Runtime status; once ready, purge every previously loaded model first."""
        log.info("Getting runtime status")
        response = self.runtime_client.runtime_status(request)
        if response.status is not RuntimeStatus.READY:
            return response

        log.info("Unloading all prior loaded models to return to zero state")
        try:
            self.unload_all()
        except Exception:
            log.exception("Error unloading all models")
            raise
        return response

    def unload_all(self) -> None:
        """Unload and delete every local model except those with an excluded prefix."""
        for model_id in self.puller.list_models():
            if model_id.startswith(PURGE_EXCLUDE_PREFIXES):
                log.info("Skipping purge because it is excluded from deletion: %s", model_id)
                continue
            try:
                self.runtime_client.unload_model(UnloadModelRequest(model_id=model_id))
            except Exception as exc:
                if _code_of(exc) is not StatusCode.NOT_FOUND:
                    log.error("Error requesting unload of model %s: %s", model_id, exc)
                    raise
            self.puller.cleanup_model(model_id)

    def _load_model(self, request: LoadModelRequest) -> Any:
        log.info(
            "Loading model (model_id=%s, model_path=%s, model_type=%s)",
            request.model_id,
            request.model_path,
            request.model_type,
        )
        try:
            request = self.puller.process_load_model_request(request)
        except Exception:
            log.exception("Failed to pull model from storage (model_id=%s)", request.model_id)
            raise

        try:
            return self.runtime_client.load_model(request)
        except Exception as exc:
            log.error("Model runtime failed to load model %s: %s", request.model_id, exc)
            raise ModelMeshError(
                _code_of(exc), f"Failed to load model due to model runtime error: {exc}"
            ) from exc

    def _unload_model(self, request: UnloadModelRequest) -> UnloadModelResponse:
        log.info("Unloading model (model_id=%s)", request.model_id)
        try:
            self.runtime_client.unload_model(request)
        except Exception as exc:
            code = _code_of(exc)
            if code is StatusCode.NOT_FOUND:
                log.info("Unload request for model not found in the runtime: %s", exc)
            else:
                log.error("Failed to unload model from runtime: %s", exc)
                raise ModelMeshError(code, "Failed to unload model from runtime") from exc

        try:
            self.puller.cleanup_model(request.model_id)
        except Exception as exc:
            raise ModelMeshError(
                _code_of(exc), f"Failed to delete model from local filesystem: {exc}"
            ) from exc
        return UnloadModelResponse()