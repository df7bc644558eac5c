"""ImageNet classifiers backed by ONNX Runtime sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from classifyx.errors import InferenceError
from classifyx.ml.preprocessing import prepare_input, softmax

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from classifyx.ml.model_registry import ModelSpec


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


class OnnxImageClassifier:
    """A loaded model bound to its inference session and label set.

    Instances are created once by the model registry and never mutated.
    ``classify`` blocks for the duration of inference and is meant to be run
    on the inference thread pool.
    """

    def __init__(
        self,
        spec: ModelSpec,
        session: InferenceSession,
        labels: list[str],
        top_k: int = 5,
    ) -> None:
        self._spec = spec
        self._session = session
        self._labels = labels
        self._top_k = top_k
        self._input_name: str = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return str(self._spec.identifier)

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        tensor = prepare_input(image, self._spec.input_size, self._spec.mean, self._spec.std)
        outputs = self._session.run(None, {self._input_name: tensor})
        if not outputs:
            raise InferenceError(self.model_name, "Model produced no output")

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size == 0:
            raise InferenceError(self.model_name, "Model produced an empty score vector")
        if scores.size != len(self._labels):
            raise InferenceError(
                self.model_name,
                f"Model produced {scores.size} scores for {len(self._labels)} labels",
            )

        # Some exports already end in a softmax layer.
        if (scores < 0).any() or not np.isclose(scores.sum(), 1.0, atol=1e-3):
            scores = softmax(scores)

        top = np.argsort(scores)[::-1][: self._top_k]
        return [ClassificationResult(label=self._labels[i], confidence=float(scores[i])) for i in top]
