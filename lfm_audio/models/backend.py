"""Execution backend for the exported sub-models.

The core only needs ``run(named inputs) -> named outputs``; ``OnnxSession``
provides that over onnxruntime. Tests substitute in-memory fakes.
"""

import logging
import time
from pathlib import Path
from typing import Protocol

import numpy as np
import onnxruntime as ort

logger = logging.getLogger(__name__)


class ExecutionBackend(Protocol):
    def run(self, inputs: dict[str, np.ndarray]) -> dict[str, np.ndarray]: ...


def default_providers(device: str) -> list[str]:
    """Execution providers for a device, CPU always last as fallback."""
    if device == "cuda" and "CUDAExecutionProvider" in ort.get_available_providers():
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    if device == "cuda":
        logger.warning("CUDAExecutionProvider not available, falling back to CPU")
    return ["CPUExecutionProvider"]


def onnx_file_name(name: str, quantization: str | None = None) -> str:
    suffix = f"_{quantization}" if quantization else ""
    return f"{name}{suffix}.onnx"


class OnnxSession:
    """Named-tensor wrapper around ``onnxruntime.InferenceSession``."""

    def __init__(self, session: ort.InferenceSession, name: str = ""):
        self._session = session
        self.name = name
        self.input_names = [i.name for i in session.get_inputs()]
        self.output_names = [o.name for o in session.get_outputs()]
        self._unknown: set[str] = set()

    @classmethod
    def load(
        cls,
        path: str | Path,
        providers: list[str] | None = None,
    ) -> "OnnxSession":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"ONNX model not found: {path}")

        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

        t0 = time.perf_counter()
        # External data (.onnx_data, .onnx_data_N) is resolved next to the model file.
        session = ort.InferenceSession(
            str(path),
            sess_options=options,
            providers=providers or ["CPUExecutionProvider"],
        )
        logger.info("Session created for %s in %.1fs", path.name, time.perf_counter() - t0)
        return cls(session, name=path.stem)

    def run(self, inputs: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        feeds = {k: v for k, v in inputs.items() if k in self.input_names}
        unknown = set(inputs) - set(feeds) - self._unknown
        if unknown:
            # Warned once per name.
            logger.warning("%s ignores inputs not in the graph: %s", self.name, sorted(unknown))
            self._unknown.update(unknown)
        outputs = self._session.run(None, feeds)
        return dict(zip(self.output_names, outputs))


def load_session(
    model_dir: str | Path,
    name: str,
    quantization: str | None = None,
    providers: list[str] | None = None,
) -> OnnxSession:
    """Load ``<model_dir>/onnx/<name>[_<quant>].onnx``."""
    path = Path(model_dir) / "onnx" / onnx_file_name(name, quantization)
    logger.info("Loading %s", path.name)
    return OnnxSession.load(path, providers=providers)
