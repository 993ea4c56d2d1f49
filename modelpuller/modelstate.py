"""Serialise load and unload requests per model while running models in parallel."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Protocol

__all__ = ["RequestRejected", "ModelHandler", "ModelStateManager", "STATE_MANAGER_CAPACITY"]

log = logging.getLogger(__name__)

STATE_MANAGER_CAPACITY = 25


class RequestRejected(RuntimeError):
    """Raised when a request cannot be queued because the queue is full."""


class ModelHandler(Protocol):
    """Carries out load and unload requests."""

    def load_model(self, request: Any) -> Any:
        """Load the model named by the request."""
        ...

    def unload_model(self, request: Any) -> Any:
        """Unload the model named by the request."""
        ...


@dataclass
class _ModelQueue:
    pending: deque[tuple[Future, Callable[[], Any]]] = field(default_factory=deque)
    running: bool = False


class ModelStateManager:
    """Runs requests for the same model one at a time, in arrival order.

    Requests for different models run concurrently. A model's bookkeeping is
    dropped as soon as it has no pending work.
    """

    def __init__(self, handler: ModelHandler, capacity: int = STATE_MANAGER_CAPACITY) -> None:
        self.handler = handler
        self.capacity = capacity
        self._lock = threading.Lock()
        self._queues: dict[str, _ModelQueue] = {}

    def load_model(self, request: Any, timeout: float | None = None) -> Any:
        """Queue a load request and wait for its response."""
        return self._submit(request, lambda: self.handler.load_model(request), timeout)

    def unload_model(self, request: Any, timeout: float | None = None) -> Any:
        """Queue an unload request and wait for its response."""
        return self._submit(request, lambda: self.handler.unload_model(request), timeout)

    def active_models(self) -> list[str]:
        """Identifiers of the models with requests queued or running, sorted."""
        with self._lock:
            return sorted(self._queues)

    def _submit(self, request: Any, call: Callable[[], Any], timeout: float | None) -> Any:
        model_id = request.model_id
        future: Future = Future()
        with self._lock:
            queue = self._queues.get(model_id)
            if queue is None:
                queue = _ModelQueue()
                self._queues[model_id] = queue
            if len(queue.pending) >= self.capacity:
                if not queue.pending and not queue.running:
                    del self._queues[model_id]
                raise RequestRejected("Unable to send load/unload model request")
            queue.pending.append((future, call))
            start = not queue.running
            queue.running = True
        if start:
            threading.Thread(
                target=self._drain, args=(model_id, queue), daemon=True
            ).start()
        try:
            return future.result(timeout)
        except FutureTimeoutError:
            raise TimeoutError("Context cancelled while waiting for response") from None

    def _drain(self, model_id: str, queue: _ModelQueue) -> None:
        while True:
            with self._lock:
                future, call = queue.pending.popleft()
            try:
                outcome, error = call(), None
            except Exception as exc:  # delivered to the waiting caller
                outcome, error = None, exc
            with self._lock:
                finished = not queue.pending
                if finished:
                    queue.running = False
                    if self._queues.get(model_id) is queue:
                        del self._queues[model_id]
            if error is None:
                future.set_result(outcome)
            else:
                future.set_exception(error)
            if finished:
                return