"""Multi-model classification dispatch and result aggregation.

A ``ClassificationDispatcher`` runs one image through either the selected
classifier or every classifier (compare mode), collects a formatted result
string per model, and tracks whether the request is still loading.

Request lifecycle::

    idle -> dispatched (n pending) -> one result recorded per model -> complete

Every model runs as its own asyncio task whose blocking inference happens on
the ``InferencePool`` threads. All writes to the shared state go through
``_record``, which holds the state lock, drops results that belong to a
superseded request, and clears the loading flag exactly once when the last
expected result arrives.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from classifyx.errors import InferenceError
from classifyx.ml.model_registry import ModelIdentifier

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine
    from typing import Any

    import numpy as np
    from numpy.typing import NDArray

    from classifyx.ml.image_classifier import ClassificationResult, ImageClassifier
    from classifyx.ml.inference import InferencePool

logger = logging.getLogger(__name__)

FAILURE_PREFIX = "Classification failed"


class ClassifierSource(Protocol):
    """Anything that can hand out a classifier per identifier."""

    def handle_for(self, identifier: ModelIdentifier) -> ImageClassifier: ...


@dataclass(frozen=True)
class DispatcherState:
    """Immutable snapshot of the dispatcher, passed to listeners."""

    results: dict[ModelIdentifier, str] = field(default_factory=dict)
    is_loading: bool = False
    generation: int = 0
    models: tuple[ModelIdentifier, ...] = ()


def effective_models(current_model: ModelIdentifier, compare_mode: bool) -> tuple[ModelIdentifier, ...]:
    """Return the models a request runs: all of them in compare mode, else the current one."""
    if compare_mode:
        return tuple(ModelIdentifier)
    return (ModelIdentifier(current_model),)


def format_result(result: ClassificationResult) -> str:
    """Render the top prediction as ``"<label> (<percent>%)"``."""
    return f"{result.label} ({round(result.confidence * 100)}%)"


def format_failure(exc: BaseException) -> str:
    description = str(exc) or type(exc).__name__
    return f"{FAILURE_PREFIX}: {description}"


class ClassificationDispatcher:
    """Dispatches an image to one or more classifiers and aggregates their results.

    ``classify`` must be called from a running event loop. It returns as soon
    as the per-model tasks are scheduled; observe progress through
    ``results``/``is_loading``, ``subscribe``, or ``wait``.
    """

    def __init__(self, registry: ClassifierSource, pool: InferencePool) -> None:
        self._registry = registry
        self._pool = pool

        self._lock = threading.Lock()
        self._results: dict[ModelIdentifier, str] = {}
        self._is_loading = False
        self._generation = 0
        self._models: tuple[ModelIdentifier, ...] = ()
        self._done: asyncio.Event | None = None

        self._listeners: list[Callable[[DispatcherState], None]] = []
        self._tasks: set[asyncio.Task[None]] = set()

    # -- Observation --------------------------------------------------------

    @property
    def results(self) -> dict[ModelIdentifier, str]:
        with self._lock:
            return dict(self._results)

    @property
    def is_loading(self) -> bool:
        with self._lock:
            return self._is_loading

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def snapshot(self) -> DispatcherState:
        with self._lock:
            return self._snapshot_locked()

    def subscribe(self, listener: Callable[[DispatcherState], None]) -> Callable[[], None]:
        """Register a listener called after every state change.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- Commands -----------------------------------------------------------

    def classify(
        self,
        image: NDArray[np.uint8],
        current_model: ModelIdentifier,
        compare_mode: bool,
    ) -> asyncio.Task[None]:
        """Start classifying ``image`` and return without waiting for any model.

        Args:
            image: Decoded HxWx3 RGB uint8 array.
            current_model: Model used when ``compare_mode`` is off.
            compare_mode: Run every model instead of just ``current_model``.

        Returns:
            A task that finishes once every model has recorded a result.
            Awaiting it is optional.

        Raises:
            ValueError: If the image is empty.
        """
        if image is None or image.size == 0:
            raise ValueError("Cannot classify an empty image")

        models = effective_models(current_model, compare_mode)
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._models = models
            self._results = {}
            self._is_loading = True
            if self._done is not None:
                self._done.set()
            self._done = asyncio.Event()
            state = self._snapshot_locked()
        self._notify(state)

        logger.debug("Dispatching request %d to %s", generation, ", ".join(models))
        model_tasks = [
            self._spawn(self._classify_one(generation, model, image), f"classify-{model}-{generation}")
            for model in models
        ]
        return self._spawn(self._gather(model_tasks), f"classify-request-{generation}")

    def reset(self) -> None:
        """Forget the current request, e.g. because a new image was selected.

        Results from requests still in flight are discarded when they arrive.
        """
        with self._lock:
            self._generation += 1
            self._models = ()
            self._results = {}
            self._is_loading = False
            if self._done is not None:
                self._done.set()
            state = self._snapshot_locked()
        self._notify(state)

    async def wait(self) -> DispatcherState:
        """Wait until the current request completes or is superseded, then return a snapshot."""
        with self._lock:
            done = self._done
        if done is not None:
            await done.wait()
        return self.snapshot()

    # -- Internal -----------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task: asyncio.Task[None] = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _gather(tasks: list[asyncio.Task[None]]) -> None:
        await asyncio.gather(*tasks)

    async def _classify_one(self, generation: int, model: ModelIdentifier, image: NDArray[np.uint8]) -> None:
        try:
            handle = self._registry.handle_for(model)
            predictions = await self._pool.run(handle.classify, image)
            if not predictions:
                raise InferenceError(model, "No predictions returned")
            text = format_result(predictions[0])
        except Exception as exc:
            logger.warning("Classification with %s failed: %s", model, exc)
            text = format_failure(exc)
        self._record(generation, model, text)

    def _record(self, generation: int, model: ModelIdentifier, text: str) -> bool:
        """Write one model's result. Returns False if the write was discarded."""
        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding stale %s result from request %d", model, generation)
                return False
            if model in self._results or model not in self._models:
                return False

            self._results[model] = text
            if self._is_loading and len(self._results) == len(self._models):
                self._is_loading = False
                if self._done is not None:
                    self._done.set()
            state = self._snapshot_locked()

        self._notify(state)
        return True

    def _snapshot_locked(self) -> DispatcherState:
        return DispatcherState(
            results=dict(self._results),
            is_loading=self._is_loading,
            generation=self._generation,
            models=self._models,
        )

    def _notify(self, state: DispatcherState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Dispatcher listener %r failed", listener)
