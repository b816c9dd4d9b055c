"""Audio frame sampler: one decoder hidden state in, eight codebook indices out."""

import logging

import numpy as np

from lfm_audio.config import DepthformerConfig
from lfm_audio.errors import WeightsNotLoaded
from lfm_audio.models.backend import ExecutionBackend
from lfm_audio.models.sampling import sample_top_k

logger = logging.getLogger(__name__)


class AudioFrameSampler:
    """Runs the depthformer once per codebook with a per-frame key/value cache.

    The cache starts empty for every frame and only lives across the eight
    codebook steps. Input tensors are allocated once and refilled, so a
    sampler instance must not be shared between threads.
    """

    def __init__(
        self,
        backend: ExecutionBackend | None,
        hidden_size: int,
        config: DepthformerConfig | None = None,
    ):
        self.backend = backend
        self.hidden_size = hidden_size
        self.config = config or DepthformerConfig()

        cfg = self.config
        empty = (cfg.num_layers, 1, 0, cfg.num_kv_heads, cfg.head_dim)
        self._hidden = np.zeros((1, hidden_size), dtype=np.float32)
        self._step_idx = np.zeros((), dtype=np.int64)
        self._prev_token = np.zeros((1,), dtype=np.int64)
        self._empty_keys = np.zeros(empty, dtype=np.float32)
        self._empty_values = np.zeros(empty, dtype=np.float32)

    def sample(
        self,
        hidden_state: np.ndarray,
        temperature: float,
        top_k: int,
        rng: np.random.Generator,
    ) -> list[int]:
        if self.backend is None:
            raise WeightsNotLoaded("Depthformer not loaded")

        self._hidden[0] = hidden_state
        past_keys, past_values = self._empty_keys, self._empty_values
        prev_token = 0
        codes = []

        for codebook in range(self.config.num_codebooks):
            self._step_idx[...] = codebook
            self._prev_token[0] = prev_token

            outputs = self.backend.run({
                "hidden_states": self._hidden,
                "step_idx": self._step_idx,
                "prev_token": self._prev_token,
                "past_keys": past_keys,
                "past_values": past_values,
            })

            logits = np.asarray(outputs["logits"]).reshape(-1)
            token = sample_top_k(logits, temperature, top_k, rng)
            codes.append(token)
            prev_token = token

            past_keys = outputs["new_keys"]
            past_values = outputs["new_values"]

        return codes
