"""Log-mel front end for the audio encoder."""

import logging

import numpy as np
import torch
import torchaudio

from lfm_audio.config import MelConfig
from lfm_audio.errors import WeightsNotLoaded
from lfm_audio.models.backend import ExecutionBackend

logger = logging.getLogger(__name__)


class MelFrontend:
    """Pre-emphasis, STFT power spectrum, Slaney mel bands, log, per-feature norm."""

    def __init__(self, config: MelConfig | None = None):
        self.config = config or MelConfig()
        cfg = self.config
        self.window = torch.hann_window(cfg.win_length, periodic=False)
        self.filterbank = torchaudio.functional.melscale_fbanks(
            n_freqs=cfg.n_fft // 2 + 1,
            f_min=0.0,
            f_max=cfg.sample_rate / 2,
            n_mels=cfg.n_mels,
            sample_rate=cfg.sample_rate,
            norm="slaney",
            mel_scale="slaney",
        )

    @torch.inference_mode()
    def __call__(self, audio: np.ndarray, sample_rate: int) -> np.ndarray:
        """Mono float PCM to ``[frames, n_mels]`` float32 features."""
        cfg = self.config
        if sample_rate != cfg.sample_rate:
            raise ValueError(
                f"Expected {cfg.sample_rate} Hz audio, got {sample_rate} Hz "
                "(resample with AudioProcessor.resample)"
            )

        x = torch.from_numpy(np.ascontiguousarray(audio, dtype=np.float32))
        if x.ndim != 1:
            raise ValueError(f"Expected mono audio, got shape {tuple(x.shape)}")
        if x.numel() == 0:
            raise ValueError("Audio is empty")

        if cfg.preemphasis:
            x = torch.cat([x[:1], x[1:] - cfg.preemphasis * x[:-1]])

        spec = torch.stft(
            x,
            n_fft=cfg.n_fft,
            hop_length=cfg.hop_length,
            win_length=cfg.win_length,
            window=self.window,
            center=True,
            pad_mode="constant",
            return_complex=True,
        )
        power = spec.abs().pow(2)  # (freq, frames)
        mel = torch.log(power.T @ self.filterbank + cfg.log_guard)

        if cfg.normalize and mel.shape[0] > 1:
            mean = mel.mean(dim=0, keepdim=True)
            std = mel.std(dim=0, keepdim=True)
            mel = (mel - mean) / (std + 1e-5)

        return mel.numpy().astype(np.float32)


class AudioEncoder:
    """Mel features through the ``audio_encoder`` graph to decoder-space embeddings."""

    def __init__(self, backend: ExecutionBackend | None, frontend: MelFrontend | None = None):
        self.backend = backend
        self.frontend = frontend or MelFrontend()

    @property
    def sample_rate(self) -> int:
        return self.frontend.config.sample_rate

    def encode(self, audio: np.ndarray, sample_rate: int) -> np.ndarray:
        """Return ``[L, hidden]`` audio embeddings."""
        if self.backend is None:
            raise WeightsNotLoaded("Audio encoder not loaded")

        mel = self.frontend(audio, sample_rate)
        outputs = self.backend.run({
            "mel_spectrogram": mel[None, :, :],
            "mel_lengths": np.array([mel.shape[0]], dtype=np.int64),
        })
        embeds = np.asarray(outputs["audio_embeddings"], dtype=np.float32)[0]
        logger.info("Encoded %d mel frames -> %d audio embeddings", mel.shape[0], embeds.shape[0])
        return embeds
