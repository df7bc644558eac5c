"""Model registry: download, load, and hold the pretrained classifiers.

Both ImageNet classifiers are fetched from HuggingFace (unless already present
in the local models directory), bound to ONNX Runtime InferenceSessions, and
kept for the lifetime of the process. Loading is all-or-nothing.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from classifyx.errors import ModelLoadError
from classifyx.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from classifyx.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model identifiers and static metadata
# ---------------------------------------------------------------------------


class ModelIdentifier(StrEnum):
    """Supported classifiers. Declaration order is the comparison order."""

    MOBILENET_V2 = "MobileNetV2"
    RESNET50 = "ResNet50"


IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)

LABELS_FILENAME = "imagenet_classes.txt"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    identifier: ModelIdentifier
    filename: str
    input_size: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    license: str


MODEL_SPECS: dict[ModelIdentifier, ModelSpec] = {
    ModelIdentifier.MOBILENET_V2: ModelSpec(
        identifier=ModelIdentifier.MOBILENET_V2,
        filename="mobilenetv2.onnx",
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        license="Apache-2.0",
    ),
    ModelIdentifier.RESNET50: ModelSpec(
        identifier=ModelIdentifier.RESNET50,
        filename="resnet50.onnx",
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        license="BSD-3-Clause",
    ),
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ModelRegistry:
    """Holds one ready-to-use classifier per ModelIdentifier."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._handles: dict[ModelIdentifier, OnnxImageClassifier] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @staticmethod
    def identifiers() -> list[ModelIdentifier]:
        """Return every supported identifier in declaration order."""
        return list(ModelIdentifier)

    def initialize(self) -> None:
        """Load every model and bind it to the inference backend.

        Raises:
            ModelLoadError: If any model or the label file fails to load. The
                registry stays empty in that case.
        """
        with self._lock:
            if self._handles:
                return

            try:
                self._models_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ModelLoadError(str(self._models_dir), str(exc)) from exc
            labels = self._load_labels()

            handles: dict[ModelIdentifier, OnnxImageClassifier] = {}
            for identifier in ModelIdentifier:
                spec = MODEL_SPECS[identifier]
                try:
                    path = self.ensure_downloaded(spec.filename)
                    session = InferenceSession(
                        str(path),
                        sess_options=self._session_options,
                        providers=self._providers,
                    )
                except Exception as exc:
                    raise ModelLoadError(identifier, str(exc)) from exc
                handles[identifier] = OnnxImageClassifier(spec, session, labels, top_k=self._settings.top_k)
                logger.info("Loaded session for %s from %s", identifier, path)

            self._handles = handles

    def handle_for(self, identifier: ModelIdentifier) -> OnnxImageClassifier:
        """Return the classifier for an identifier."""
        with self._lock:
            if not self._handles:
                raise RuntimeError("ModelRegistry.initialize() has not been called")
            return self._handles[ModelIdentifier(identifier)]

    def loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return [str(identifier) for identifier in self._handles]

    def ensure_downloaded(self, filename: str) -> Path:
        """Download a file from the models repo unless it is already present locally."""
        local = self._models_dir / filename
        if local.exists():
            return local

        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.models_repo,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def shutdown(self) -> None:
        """Drop all sessions."""
        with self._lock:
            self._handles.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _load_labels(self) -> list[str]:
        try:
            path = self.ensure_downloaded(LABELS_FILENAME)
            lines = path.read_text(encoding="utf-8").splitlines()
        except Exception as exc:
            raise ModelLoadError(LABELS_FILENAME, str(exc)) from exc

        labels = [line.strip() for line in lines if line.strip()]
        if not labels:
            raise ModelLoadError(LABELS_FILENAME, "label file is empty")
        return labels

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
