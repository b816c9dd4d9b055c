"""Per-layer decoder cache and the conversation that owns it.

LFM2 mixes short-convolution blocks, which carry a fixed-size rolling
state, with attention blocks, which carry a growing key/value history.
The decoder returns fresh ``present*`` tensors after every call and the
whole cache is replaced with them.

The cache is never truncated: a long conversation grows the attention
history without bound until ``reset()``.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import numpy as np

from lfm_audio.config import ModelConfig
from lfm_audio.errors import ConfigMismatch

logger = logging.getLogger(__name__)


@dataclass
class ConvState:
    """Rolling state of a short-convolution block, ``[1, hidden, conv_len]``."""

    state: np.ndarray


@dataclass
class AttnState:
    """Key/value history of an attention block, ``[1, kv_heads, seq, head_dim]``."""

    key: np.ndarray
    value: np.ndarray

    @property
    def seq_len(self) -> int:
        return self.key.shape[2]


CacheEntry = ConvState | AttnState


def conv_input_name(idx: int) -> str:
    return f"past_conv.{idx}"


def conv_output_name(idx: int) -> str:
    return f"present_conv.{idx}"


def attn_input_names(idx: int) -> tuple[str, str]:
    return f"past_key_values.{idx}.key", f"past_key_values.{idx}.value"


def attn_output_names(idx: int) -> tuple[str, str]:
    return f"present.{idx}.key", f"present.{idx}.value"


class ConversationState:
    """Decoder cache plus the number of positions fed since the last reset.

    A conversation is driven by one turn at a time. ``turn()`` guards
    against a second caller entering while a turn is in progress.
    """

    def __init__(self, config: ModelConfig | None = None):
        self.config = config
        self.entries: list[CacheEntry] = []
        self.seq_len = 0
        self._lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        return bool(self.entries)

    def initialize(self, config: ModelConfig | None = None) -> None:
        """Allocate zero conv states and empty attention histories."""
        self.entries = self.fresh_entries(config)
        self.seq_len = 0
        logger.debug("Initialized cache for %d layers", len(self.entries))

    def fresh_entries(self, config: ModelConfig | None = None) -> list[CacheEntry]:
        """Zero entries for a first turn. The conversation itself is not touched."""
        if config is not None:
            self.config = config
        if self.config is None:
            raise ValueError("ConversationState needs a ModelConfig to initialize")

        cfg = self.config
        entries: list[CacheEntry] = []
        for idx in range(cfg.num_layers):
            if cfg.is_conv(idx):
                entries.append(
                    ConvState(np.zeros((1, cfg.hidden_size, cfg.conv_cache_len), dtype=np.float32))
                )
            else:
                shape = (1, cfg.num_kv_heads, 0, cfg.head_dim)
                entries.append(
                    AttnState(np.zeros(shape, dtype=np.float32), np.zeros(shape, dtype=np.float32))
                )
        return entries

    def feeds(self, entries: list[CacheEntry] | None = None) -> dict[str, np.ndarray]:
        """Cache tensors under the decoder's input names."""
        feeds = {}
        for idx, entry in enumerate(self.entries if entries is None else entries):
            if isinstance(entry, ConvState):
                feeds[conv_input_name(idx)] = entry.state
            else:
                key_name, value_name = attn_input_names(idx)
                feeds[key_name] = entry.key
                feeds[value_name] = entry.value
        return feeds

    def commit(
        self,
        outputs: dict[str, np.ndarray],
        step_len: int,
        base: list[CacheEntry] | None = None,
    ) -> None:
        """Replace every entry with the decoder's ``present*`` outputs.

        ``base`` gives the layer layout when the call was fed from
        ``fresh_entries()``. Nothing is changed unless every layer validates,
        so a failed first turn leaves the conversation uninitialized.
        """
        new_len = self.seq_len + step_len
        entries: list[CacheEntry] = []

        for idx, entry in enumerate(self.entries if base is None else base):
            if isinstance(entry, ConvState):
                name = conv_output_name(idx)
                if name not in outputs:
                    raise ConfigMismatch(f"Decoder output {name} missing")
                entries.append(ConvState(outputs[name]))
                continue

            key_name, value_name = attn_output_names(idx)
            if key_name not in outputs or value_name not in outputs:
                raise ConfigMismatch(f"Decoder output {key_name}/value missing")
            new_entry = AttnState(outputs[key_name], outputs[value_name])
            if new_entry.seq_len != new_len:
                raise ConfigMismatch(
                    f"Layer {idx} cache has {new_entry.seq_len} positions, expected {new_len}"
                )
            entries.append(new_entry)

        # Only swap in once every layer has been validated.
        self.entries = entries
        self.seq_len = new_len

    def reset(self) -> None:
        with self.turn():
            self.entries = []
            self.seq_len = 0
        logger.info("Conversation reset")

    @contextmanager
    def turn(self) -> Iterator["ConversationState"]:
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("A turn is already running on this conversation")
        try:
            yield self
        finally:
            self._lock.release()
