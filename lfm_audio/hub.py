"""Model download from the HuggingFace Hub."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from huggingface_hub import snapshot_download

from lfm_audio.config import SUB_MODELS, LoadConfig
from lfm_audio.models.backend import onnx_file_name

logger = logging.getLogger(__name__)


@dataclass
class LoadProgress:
    stage: str  # "download", "loading" or "done"
    percent: float
    file_name: str = ""


ProgressCallback = Callable[[LoadProgress], None]

# Configs, tokenizer and raw embedding tables.
SHARED_PATTERNS = ["*.json", "onnx/*.json", "onnx/*.bin"]


def allow_patterns(load_config: LoadConfig, name: str) -> list[str]:
    """Files of one sub-model, including external ``.onnx_data[_N]`` shards."""
    file_name = onnx_file_name(name, load_config.quantization_for(name))
    return [f"onnx/{file_name}", f"onnx/{file_name}_data*"]


def download_model(
    load_config: LoadConfig | None = None,
    progress_callback: ProgressCallback | None = None,
) -> Path:
    """Download the selected quantisation of every sub-model.

    Files already present in the local directory are not fetched again.
    """
    load_config = load_config or LoadConfig()
    model_dir = load_config.get_model_dir()

    def report(percent: float, file_name: str = "") -> None:
        if progress_callback is not None:
            progress_callback(LoadProgress("download", percent, file_name))

    groups = [("config", SHARED_PATTERNS)]
    groups += [(name, allow_patterns(load_config, name)) for name in SUB_MODELS]

    logger.info("Downloading %s to %s", load_config.repo_id, model_dir)
    for i, (label, patterns) in enumerate(groups):
        report(100.0 * i / len(groups), label)
        snapshot_download(
            repo_id=load_config.repo_id,
            local_dir=model_dir,
            allow_patterns=patterns,
        )
    report(100.0)

    return model_dir
