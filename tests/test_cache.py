"""Tests for the conversation cache and the decoder stepper."""

import threading

import numpy as np
import pytest

from lfm_audio.errors import ConfigMismatch, WeightsNotLoaded
from lfm_audio.models.cache import AttnState, ConversationState, ConvState
from lfm_audio.models.decoder import DecoderStepper

from fakes import HIDDEN, FakeDecoder


def present(config, seq_len, conv_value=0.0):
    outputs = {}
    for idx in range(config.num_layers):
        if config.is_conv(idx):
            outputs[f"present_conv.{idx}"] = np.full(
                (1, config.hidden_size, config.conv_cache_len), conv_value, dtype=np.float32
            )
        else:
            kv = np.zeros((1, config.num_kv_heads, seq_len, config.head_dim), dtype=np.float32)
            outputs[f"present.{idx}.key"] = kv
            outputs[f"present.{idx}.value"] = kv.copy()
    return outputs


class TestConversationState:
    """Tests for ConversationState."""

    def test_initialize(self, model_config):
        """Test zero conv states and empty attention histories."""
        conversation = ConversationState(model_config)

        assert not conversation.is_active
        conversation.initialize()

        assert conversation.is_active
        assert conversation.seq_len == 0
        assert isinstance(conversation.entries[0], ConvState)
        assert conversation.entries[0].state.shape == (1, HIDDEN, 3)
        assert isinstance(conversation.entries[1], AttnState)
        assert conversation.entries[1].key.shape == (1, 2, 0, 4)

    def test_initialize_without_config(self):
        """Test that a config is required."""
        with pytest.raises(ValueError):
            ConversationState().initialize()

    def test_feeds(self, model_config):
        """Test decoder input names."""
        conversation = ConversationState(model_config)
        conversation.initialize()

        assert sorted(conversation.feeds()) == sorted([
            "past_conv.0",
            "past_key_values.1.key",
            "past_key_values.1.value",
            "past_conv.2",
            "past_key_values.3.key",
            "past_key_values.3.value",
        ])

    def test_commit(self, model_config):
        """Test that commit replaces entries and advances the length."""
        conversation = ConversationState(model_config)
        conversation.initialize()

        conversation.commit(present(model_config, 5, conv_value=1.0), 5)
        conversation.commit(present(model_config, 6, conv_value=2.0), 1)

        assert conversation.seq_len == 6
        assert conversation.entries[1].seq_len == 6
        assert conversation.entries[0].state[0, 0, 0] == 2.0

    def test_commit_wrong_length(self, model_config):
        """Test that a history of the wrong length leaves the cache untouched."""
        conversation = ConversationState(model_config)
        conversation.initialize()
        conversation.commit(present(model_config, 3, conv_value=1.0), 3)

        with pytest.raises(ConfigMismatch):
            conversation.commit(present(model_config, 5, conv_value=9.0), 1)

        assert conversation.seq_len == 3
        assert conversation.entries[0].state[0, 0, 0] == 1.0

    def test_commit_missing_output(self, model_config):
        """Test that a missing output is reported."""
        conversation = ConversationState(model_config)
        conversation.initialize()
        outputs = present(model_config, 1)
        del outputs["present_conv.2"]

        with pytest.raises(ConfigMismatch):
            conversation.commit(outputs, 1)

    def test_reset(self, model_config):
        """Test that reset clears the cache."""
        conversation = ConversationState(model_config)
        conversation.initialize()
        conversation.commit(present(model_config, 4), 4)

        conversation.reset()

        assert not conversation.is_active
        assert conversation.seq_len == 0

    def test_concurrent_turn_rejected(self, model_config):
        """Test that a second turn cannot start while one is running."""
        conversation = ConversationState(model_config)
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with conversation.turn():
                entered.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert entered.wait(5)
            with pytest.raises(RuntimeError):
                with conversation.turn():
                    pass
            with pytest.raises(RuntimeError):
                conversation.reset()
        finally:
            release.set()
            worker.join()

        with conversation.turn():
            pass


class TestDecoderStepper:
    """Tests for DecoderStepper."""

    def test_prefill_then_steps(self, model_config):
        """Test that positions accumulate across calls."""
        backend = FakeDecoder(model_config, script=[42, 43])
        stepper = DecoderStepper(backend, model_config)
        conversation = ConversationState()

        out = stepper.step(np.zeros((5, HIDDEN)), conversation)

        assert conversation.seq_len == 5
        assert out.logits.shape == (model_config.vocab_size,)
        assert int(np.argmax(out.logits)) == 42
        assert out.hidden_state.shape == (HIDDEN,)

        out = stepper.step(np.zeros(HIDDEN), conversation)

        assert conversation.seq_len == 6
        assert int(np.argmax(out.logits)) == 43
        assert out.hidden_state[0] == 1.0
        assert backend.fed[1].shape == (1, HIDDEN)

    def test_wrong_hidden_size(self, model_config):
        """Test input validation."""
        stepper = DecoderStepper(FakeDecoder(model_config), model_config)

        with pytest.raises(ValueError):
            stepper.step(np.zeros((2, HIDDEN + 1)), ConversationState())

    def test_not_loaded(self, model_config):
        """Test that a missing decoder fails loudly."""
        stepper = DecoderStepper(None, model_config)

        with pytest.raises(WeightsNotLoaded):
            stepper.step(np.zeros(HIDDEN), ConversationState())

    def test_failed_prefill_leaves_conversation_inactive(self, model_config):
        """Test that only a committed first call activates the conversation."""

        class BrokenDecoder:
            def run(self, inputs):
                raise RuntimeError("session failed")

        stepper = DecoderStepper(BrokenDecoder(), model_config)
        conversation = ConversationState()

        with pytest.raises(RuntimeError):
            stepper.step(np.zeros((5, HIDDEN)), conversation)

        assert not conversation.is_active
        assert conversation.seq_len == 0

    def test_bad_prefill_output_leaves_conversation_inactive(self, model_config):
        """Test that a prefill whose outputs fail validation is not committed."""

        class ShortDecoder(FakeDecoder):
            def run(self, inputs):
                outputs = super().run(inputs)
                del outputs["present.1.key"]
                return outputs

        stepper = DecoderStepper(ShortDecoder(model_config), model_config)
        conversation = ConversationState()

        with pytest.raises(ConfigMismatch):
            stepper.step(np.zeros((5, HIDDEN)), conversation)

        assert not conversation.is_active
