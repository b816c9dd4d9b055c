"""Embedding tables for text tokens and audio codebooks.

Two interchangeable strategies back the same ``Embedding`` interface:

- ``DirectEmbedding`` gathers rows from a flat float32 weight buffer
  (``<name>.bin`` + ``<name>.json`` metadata) without touching the backend.
- ``SessionEmbedding`` runs the exported embedding graph.

The strategy is chosen once at load time (see ``load_audio_embedding``).
"""

import json
import logging
from pathlib import Path
from typing import Protocol, Sequence

import numpy as np

from lfm_audio.config import SpecialTokens
from lfm_audio.errors import ConfigMismatch, WeightsNotLoaded
from lfm_audio.models.backend import ExecutionBackend

logger = logging.getLogger(__name__)


class Embedding(Protocol):
    hidden_size: int

    def lookup(self, ids: Sequence[int]) -> np.ndarray:
        """Return float32 embeddings of shape ``[len(ids), hidden_size]``."""
        ...

    def release(self) -> None:
        """Drop the weights. Later lookups raise ``WeightsNotLoaded``."""
        ...


class DirectEmbedding:
    """Row gather from a read-only ``[vocab, hidden]`` table."""

    def __init__(self, weight: np.ndarray):
        if weight.ndim != 2:
            raise ConfigMismatch(f"Embedding weight must be 2-D, got {weight.shape}")
        self.weight = weight
        self.weight.setflags(write=False)
        self.vocab_size, self.hidden_size = weight.shape

    def lookup(self, ids: Sequence[int]) -> np.ndarray:
        if self.weight is None:
            raise WeightsNotLoaded("Embedding table not loaded")
        ids = np.asarray(ids, dtype=np.int64)
        if ids.size and (ids.min() < 0 or ids.max() >= self.vocab_size):
            raise IndexError(f"Token id out of range [0, {self.vocab_size})")
        return np.take(self.weight, ids, axis=0)

    def release(self) -> None:
        self.weight = None

    @classmethod
    def from_files(cls, bin_path: str | Path, meta_path: str | Path) -> "DirectEmbedding":
        with open(meta_path, encoding="utf-8") as f:
            meta = json.load(f)

        vocab_size, hidden_size = meta["vocab_size"], meta["hidden_size"]
        weight = np.fromfile(bin_path, dtype=np.float32)
        if weight.size != vocab_size * hidden_size:
            raise ConfigMismatch(
                f"{Path(bin_path).name} has {weight.size} elements, "
                f"expected {vocab_size} x {hidden_size}"
            )

        logger.info(
            "Loaded %s: [%d, %d] (%.1f MB)",
            Path(bin_path).stem,
            vocab_size,
            hidden_size,
            weight.nbytes / 1e6,
        )
        return cls(weight.reshape(vocab_size, hidden_size))


class SessionEmbedding:
    """Embedding computed by the ``audio_embedding`` graph."""

    def __init__(self, backend: ExecutionBackend, hidden_size: int):
        self.backend = backend
        self.hidden_size = hidden_size

    def lookup(self, ids: Sequence[int]) -> np.ndarray:
        if self.backend is None:
            raise WeightsNotLoaded("audio_embedding not loaded")
        codes = np.asarray(ids, dtype=np.int64).reshape(1, -1)
        outputs = self.backend.run({"audio_codes": codes})
        return np.asarray(outputs["audio_embeds"], dtype=np.float32).reshape(
            len(ids), self.hidden_size
        )

    def release(self) -> None:
        self.backend = None


class AudioFeedback:
    """Sums the codebook embeddings of one frame into a decoder input."""

    def __init__(
        self,
        embedding: Embedding,
        num_codebooks: int = SpecialTokens.NUM_CODEBOOKS,
        codebook_vocab: int = SpecialTokens.CODEBOOK_VOCAB,
    ):
        self.embedding = embedding
        self.num_codebooks = num_codebooks
        self.codebook_vocab = codebook_vocab

    def tokens(self, frame: Sequence[int]) -> list[int]:
        if len(frame) != self.num_codebooks:
            raise ValueError(f"Expected {self.num_codebooks} codes, got {len(frame)}")
        return [i * self.codebook_vocab + int(code) for i, code in enumerate(frame)]

    def __call__(self, frame: Sequence[int]) -> np.ndarray:
        embeds = self.embedding.lookup(self.tokens(frame))
        return embeds.sum(axis=0, dtype=np.float32)


def load_table(model_dir: str | Path, name: str) -> DirectEmbedding | None:
    """Load ``onnx/<name>.bin`` if both it and its metadata exist."""
    onnx_dir = Path(model_dir) / "onnx"
    bin_path, meta_path = onnx_dir / f"{name}.bin", onnx_dir / f"{name}.json"
    if not bin_path.exists() or not meta_path.exists():
        logger.info("%s.bin not found", name)
        return None
    return DirectEmbedding.from_files(bin_path, meta_path)


def load_audio_embedding(
    model_dir: str | Path,
    hidden_size: int,
    session_loader,
) -> Embedding:
    """Prefer the direct table, fall back to the exported graph."""
    table = load_table(model_dir, "audio_embedding")
    if table is not None:
        logger.info("Using direct audio embedding lookup")
        return table
    return SessionEmbedding(session_loader("audio_embedding"), hidden_size)
