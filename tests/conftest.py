"""Shared fixtures."""

import numpy as np
import pytest

from lfm_audio.config import ModelConfig, SpecialTokens
from lfm_audio.engine import LfmAudio
from lfm_audio.models.embedding import DirectEmbedding
from lfm_audio.models.tokenizer import LfmTokenizer

from fakes import (
    HIDDEN,
    VOCAB,
    CharTokenizer,
    FakeAudioEncoder,
    FakeDecoder,
    FakeDepthformer,
    FakeDetokenizer,
)


@pytest.fixture
def model_config():
    return ModelConfig(
        hidden_size=HIDDEN,
        num_layers=4,
        num_kv_heads=2,
        head_dim=4,
        conv_cache_len=3,
        layer_types=("conv", "full_attention", "conv", "full_attention"),
        vocab_size=VOCAB,
    )


@pytest.fixture
def tokenizer():
    return LfmTokenizer(CharTokenizer())


@pytest.fixture
def text_table():
    rng = np.random.default_rng(0)
    return DirectEmbedding(rng.standard_normal((VOCAB, HIDDEN)).astype(np.float32))


@pytest.fixture
def audio_table():
    rng = np.random.default_rng(1)
    rows = SpecialTokens.NUM_CODEBOOKS * SpecialTokens.CODEBOOK_VOCAB
    return DirectEmbedding(rng.standard_normal((rows, HIDDEN)).astype(np.float32))


@pytest.fixture
def make_engine(model_config, tokenizer, text_table, audio_table):
    """Factory for engines over fake backends."""

    def factory(script=(), frames=(), **kwargs):
        components = dict(
            config=model_config,
            tokenizer=tokenizer,
            decoder=FakeDecoder(model_config, script),
            text_embedding=text_table,
            audio_embedding=audio_table,
            audio_encoder=FakeAudioEncoder(),
            depthformer=FakeDepthformer(frames),
            detokenizer=FakeDetokenizer(),
            seed=0,
        )
        components.update(kwargs)
        return LfmAudio.from_components(**components)

    return factory
