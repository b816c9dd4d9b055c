"""Waveform synthesis from generated audio frames.

The audio detokenizer maps codebook frames to per-step STFT features laid
out as ``[log-magnitude | phase]`` over ``n_fft // 2 + 1`` bins. The
waveform is rebuilt here with an inverse real FFT, a Hann window and
overlap-add with "same" padding, then peak-normalised.
"""

import logging
import time
from typing import Sequence

import numpy as np

from lfm_audio.config import IstftConfig, SpecialTokens
from lfm_audio.errors import InsufficientFrames, InvalidWaveform, WeightsNotLoaded
from lfm_audio.models import fft
from lfm_audio.models.backend import ExecutionBackend

logger = logging.getLogger(__name__)


def hann_window(length: int) -> np.ndarray:
    """Symmetric Hann window, zero at both ends."""
    if length == 1:
        return np.ones(1)
    i = np.arange(length)
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * i / (length - 1)))


def frames_to_codes(frames: Sequence[Sequence[int]]) -> np.ndarray:
    """``[T, 8]`` frames to the detokenizer's ``[1, 8, T]`` int64 layout."""
    codes = np.asarray(frames, dtype=np.int64)
    if codes.ndim != 2 or codes.shape[1] != SpecialTokens.NUM_CODEBOOKS:
        raise ValueError(f"Expected frames of {SpecialTokens.NUM_CODEBOOKS} codes, got {codes.shape}")
    codes = np.minimum(codes, SpecialTokens.MAX_AUDIO_CODE)
    return np.ascontiguousarray(codes.T[None, :, :])


def features_to_spectrum(features: np.ndarray, n_bins: int) -> np.ndarray:
    """``[T, 2 * n_bins]`` log-magnitude/phase features to ``[T, n_bins]`` complex bins."""
    features = np.asarray(features, dtype=np.float64)
    if features.shape[-1] != 2 * n_bins:
        raise ValueError(f"Expected {2 * n_bins} features per frame, got {features.shape[-1]}")
    magnitude = np.exp(features[..., :n_bins])
    phase = features[..., n_bins:]
    return magnitude * np.cos(phase) + 1j * magnitude * np.sin(phase)


def istft_same(spectrum: np.ndarray, config: IstftConfig) -> np.ndarray:
    """Inverse STFT with "same" padding.

    The ``(win - hop) // 2`` samples of padding at each end are trimmed,
    leaving ``T * hop`` samples for ``T`` frames.
    """
    num_frames = spectrum.shape[0]
    window = hann_window(config.win_length)

    frames = fft.irfft(spectrum, config.n_fft)[:, : config.win_length] * window

    hop, win = config.hop_length, config.win_length
    output_size = (num_frames - 1) * hop + win
    audio = np.zeros(output_size)
    envelope = np.zeros(output_size)
    window_sq = window * window
    for t in range(num_frames):
        start = t * hop
        audio[start : start + win] += frames[t]
        envelope[start : start + win] += window_sq

    nonzero = envelope > 1e-8
    audio[nonzero] /= envelope[nonzero]

    pad = (win - hop) // 2
    return audio[pad : output_size - pad]


def normalize_peak(audio: np.ndarray, peak: float = 0.9) -> np.ndarray:
    """Scale so the largest absolute sample equals ``peak``."""
    if not np.all(np.isfinite(audio)):
        raise InvalidWaveform("Synthesized waveform contains NaN or Inf")

    max_val = float(np.max(np.abs(audio))) if audio.size else 0.0
    if max_val == 0.0:
        logger.warning("Synthesized waveform is all zeros")
        return audio.astype(np.float32)
    return (audio / max_val * peak).astype(np.float32)


class WaveformSynthesizer:
    """Audio frames to 24 kHz mono PCM via the detokenizer and an inverse STFT."""

    def __init__(self, detokenizer: ExecutionBackend | None, config: IstftConfig | None = None):
        self.detokenizer = detokenizer
        self.config = config or IstftConfig()

    @property
    def sample_rate(self) -> int:
        return self.config.sample_rate

    def synthesize(self, features: np.ndarray) -> np.ndarray:
        """STFT features ``[T, 2 * n_bins]`` to a normalised waveform."""
        spectrum = features_to_spectrum(features, self.config.n_bins)
        audio = istft_same(spectrum, self.config)
        return normalize_peak(audio, self.config.peak)

    def _decode(self, frames: Sequence[Sequence[int]]) -> np.ndarray:
        if len(frames) < 2:
            raise InsufficientFrames(f"Need at least 2 audio frames, got {len(frames)}")
        if self.detokenizer is None:
            raise WeightsNotLoaded("Audio detokenizer not loaded")

        t0 = time.perf_counter()
        outputs = self.detokenizer.run({"audio_codes": frames_to_codes(frames)})
        features = np.asarray(outputs["stft_features"])[0]
        t1 = time.perf_counter()

        audio = self.synthesize(features)
        t2 = time.perf_counter()
        logger.info(
            "Decoded %d frames -> %d samples (%.2fs): detokenizer %.0fms, istft %.0fms",
            len(frames),
            audio.shape[0],
            audio.shape[0] / self.sample_rate,
            (t1 - t0) * 1000,
            (t2 - t1) * 1000,
        )
        return audio

    def decode(self, frames: Sequence[Sequence[int]]) -> np.ndarray:
        """Audio frames to waveform. Unusable input yields an empty array."""
        try:
            return self._decode(frames)
        except InsufficientFrames as e:
            logger.warning("%s", e)
        except InvalidWaveform as e:
            logger.error("%s", e)
        return np.zeros(0, dtype=np.float32)
