"""Single decoder call over a conversation cache."""

import logging
from dataclasses import dataclass

import numpy as np

from lfm_audio.config import ModelConfig
from lfm_audio.errors import WeightsNotLoaded
from lfm_audio.models.backend import ExecutionBackend
from lfm_audio.models.cache import ConversationState

logger = logging.getLogger(__name__)


@dataclass
class DecoderOutput:
    logits: np.ndarray  # (vocab,)
    hidden_state: np.ndarray  # (hidden,)


class DecoderStepper:
    """Feeds embeddings through the decoder and commits the new cache.

    The first call of a conversation (the prefill) feeds the whole prompt;
    every later call during generation feeds exactly one position.
    """

    def __init__(self, backend: ExecutionBackend | None, config: ModelConfig):
        self.backend = backend
        self.config = config

    def step(self, embeds: np.ndarray, conversation: ConversationState) -> DecoderOutput:
        if self.backend is None:
            raise WeightsNotLoaded("Decoder not loaded")

        embeds = np.asarray(embeds, dtype=np.float32)
        if embeds.ndim == 1:
            embeds = embeds[None, :]
        step_len, hidden = embeds.shape
        if hidden != self.config.hidden_size:
            raise ValueError(f"Expected hidden size {self.config.hidden_size}, got {hidden}")

        base = None if conversation.is_active else conversation.fresh_entries(self.config)

        feeds = {
            "inputs_embeds": embeds[None, :, :],
            "attention_mask": np.ones((1, conversation.seq_len + step_len), dtype=np.int64),
        }
        feeds.update(conversation.feeds(base))

        outputs = self.backend.run(feeds)
        conversation.commit(outputs, step_len, base)

        logits = outputs["logits"]
        hidden_states = outputs["hidden_states"]
        return DecoderOutput(
            logits=np.asarray(logits[0, -1], dtype=np.float32),
            hidden_state=np.asarray(hidden_states[0, -1], dtype=np.float32),
        )
