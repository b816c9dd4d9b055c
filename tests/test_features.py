"""Tests for the mel front end and the audio encoder."""

import numpy as np
import pytest

from lfm_audio.config import MelConfig
from lfm_audio.errors import WeightsNotLoaded
from lfm_audio.models.features import AudioEncoder, MelFrontend

from fakes import HIDDEN, FakeAudioEncoder


def sine(seconds=0.5, sample_rate=16000, freq=440.0):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (0.3 * np.sin(2 * np.pi * freq * t)).astype(np.float32)


class TestMelFrontend:
    """Tests for MelFrontend."""

    def test_shape_and_dtype(self):
        """Test one frame per hop plus the centred frame."""
        features = MelFrontend()(sine(0.5), 16000)

        assert features.shape == (8000 // 160 + 1, 128)
        assert features.dtype == np.float32
        assert np.all(np.isfinite(features))

    def test_normalized_per_feature(self):
        """Test zero mean per mel band."""
        features = MelFrontend()(sine(1.0), 16000)

        np.testing.assert_allclose(features.mean(axis=0), 0.0, atol=1e-3)

    def test_without_normalization(self):
        """Test raw log-mel output."""
        frontend = MelFrontend(MelConfig(normalize=False))

        features = frontend(np.zeros(1600, dtype=np.float32), 16000)

        np.testing.assert_allclose(features, np.log(2**-24), rtol=1e-5)

    def test_peak_band_follows_frequency(self):
        """Test that a higher tone lights up a higher mel band."""
        frontend = MelFrontend(MelConfig(normalize=False))

        low = frontend(sine(freq=300.0), 16000).mean(axis=0).argmax()
        high = frontend(sine(freq=3000.0), 16000).mean(axis=0).argmax()

        assert high > low

    def test_wrong_sample_rate(self):
        """Test that audio must already be at 16 kHz."""
        with pytest.raises(ValueError):
            MelFrontend()(sine(sample_rate=24000), 24000)

    def test_empty(self):
        """Test empty audio."""
        with pytest.raises(ValueError):
            MelFrontend()(np.zeros(0, dtype=np.float32), 16000)

    def test_stereo(self):
        """Test that multi-channel input is rejected."""
        with pytest.raises(ValueError):
            MelFrontend()(np.zeros((2, 1600), dtype=np.float32), 16000)


class TestAudioEncoder:
    """Tests for AudioEncoder."""

    def test_encode(self):
        """Test the graph inputs and the output embeddings."""
        backend = FakeAudioEncoder()
        encoder = AudioEncoder(backend)

        embeds = encoder.encode(sine(0.5), 16000)

        assert backend.mel_shapes == [(1, 51, 128)]
        assert embeds.shape == (51 // 4 + 1, HIDDEN)
        assert encoder.sample_rate == 16000

    def test_not_loaded(self):
        """Test that a missing encoder fails loudly."""
        with pytest.raises(WeightsNotLoaded):
            AudioEncoder(None).encode(sine(), 16000)
