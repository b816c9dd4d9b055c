"""Audio helpers: WAV/PCM conversion, resampling, chunking and turn detection."""

import io
import logging
import wave
from typing import Iterator

import numpy as np
from scipy import signal

logger = logging.getLogger(__name__)


class AudioProcessor:
    """Conversions between float PCM arrays and WAV/PCM bytes."""

    def __init__(self, sample_rate: int = 24000):
        self.sample_rate = sample_rate

    def numpy_to_pcm_bytes(self, audio: np.ndarray, dtype: str = "int16") -> bytes:
        audio = np.clip(audio, -1.0, 1.0)
        if dtype == "int16":
            return (audio * 32767).astype(np.int16).tobytes()
        if dtype == "float32":
            return audio.astype(np.float32).tobytes()
        raise ValueError(f"Unsupported PCM dtype: {dtype}")

    def pcm_to_wav_bytes(self, pcm_data: bytes, sample_rate: int | None = None) -> bytes:
        """Wrap 16-bit mono PCM in a WAV container."""
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(sample_rate or self.sample_rate)
            wf.writeframes(pcm_data)
        return buffer.getvalue()

    def numpy_to_wav_bytes(self, audio: np.ndarray, sample_rate: int | None = None) -> bytes:
        return self.pcm_to_wav_bytes(self.numpy_to_pcm_bytes(audio), sample_rate)

    def read_wav(self, audio_bytes: bytes) -> tuple[np.ndarray, int]:
        """Read 16-bit WAV bytes into mono float32 and the file's sample rate."""
        with wave.open(io.BytesIO(audio_bytes), "rb") as wf:
            sample_rate = wf.getframerate()
            channels = wf.getnchannels()
            if wf.getsampwidth() != 2:
                raise ValueError(f"Only 16-bit WAV is supported, got {8 * wf.getsampwidth()}-bit")
            audio_data = wf.readframes(wf.getnframes())

        audio = np.frombuffer(audio_data, dtype=np.int16).astype(np.float32) / 32768.0
        if channels > 1:
            audio = audio.reshape(-1, channels).mean(axis=1)
        return audio, sample_rate

    def resample(self, audio: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
        if orig_sr == target_sr:
            return audio
        num_samples = int(round(len(audio) * target_sr / orig_sr))
        return signal.resample(audio, num_samples).astype(np.float32)


class StreamingAudioBuffer:
    """Accumulates audio and hands it out in fixed-size chunks."""

    def __init__(self, sample_rate: int = 24000, chunk_samples: int = 4800):
        self.sample_rate = sample_rate
        self.chunk_samples = chunk_samples
        self._buffer = np.zeros(0, dtype=np.float32)

    @property
    def buffered_samples(self) -> int:
        return len(self._buffer)

    def add(self, audio: np.ndarray) -> None:
        self._buffer = np.concatenate([self._buffer, np.asarray(audio, dtype=np.float32)])

    def get_chunks(self) -> Iterator[np.ndarray]:
        while len(self._buffer) >= self.chunk_samples:
            chunk = self._buffer[: self.chunk_samples]
            self._buffer = self._buffer[self.chunk_samples :]
            yield chunk

    def flush(self) -> np.ndarray | None:
        if len(self._buffer) == 0:
            return None
        remaining = self._buffer
        self._buffer = np.zeros(0, dtype=np.float32)
        return remaining


class TurnDetector:
    """Energy-based voice activity detection that splits a stream into user turns.

    Audio is judged in hops: a hop whose RMS reaches ``threshold`` is
    speech. A turn closes once ``silence_ms`` of trailing silence has
    accumulated, and is dropped if it holds less than ``min_turn_ms`` of
    audio up to its last speech hop.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        hop_ms: int = 800,
        threshold: float = 0.015,
        silence_ms: int = 1200,
        min_turn_ms: int = 800,
    ):
        self.sample_rate = sample_rate
        self.hop_ms = hop_ms
        self.hop_samples = sample_rate * hop_ms // 1000
        self.threshold = threshold
        self.silence_ms = silence_ms
        self.min_turn_ms = min_turn_ms

        self._pending = np.zeros(0, dtype=np.float32)
        self._turn: list[np.ndarray] = []
        self._speech_hops = 0  # hops in the turn up to and including the last speech hop
        self._silence = 0

    @property
    def in_turn(self) -> bool:
        return bool(self._turn)

    @staticmethod
    def rms(audio: np.ndarray) -> float:
        return float(np.sqrt(np.mean(np.square(audio, dtype=np.float64)))) if audio.size else 0.0

    def add(self, audio: np.ndarray) -> list[np.ndarray]:
        """Feed audio and return any turns completed by it."""
        self._pending = np.concatenate([self._pending, np.asarray(audio, dtype=np.float32)])
        turns = []

        while len(self._pending) >= self.hop_samples:
            hop = self._pending[: self.hop_samples]
            self._pending = self._pending[self.hop_samples :]

            if self.rms(hop) >= self.threshold:
                self._turn.append(hop)
                self._speech_hops = len(self._turn)
                self._silence = 0
            elif self._turn:
                self._turn.append(hop)
                self._silence += self.hop_ms
                if self._silence >= self.silence_ms:
                    turn = self._close()
                    if turn is not None:
                        turns.append(turn)

        return turns

    def flush(self) -> np.ndarray | None:
        """Close the open turn, if any, regardless of trailing silence."""
        self._pending = np.zeros(0, dtype=np.float32)
        return self._close() if self._turn else None

    def _close(self) -> np.ndarray | None:
        speech = self._turn[: self._speech_hops]
        self._turn = []
        self._speech_hops = 0
        self._silence = 0

        duration_ms = len(speech) * self.hop_ms
        if duration_ms < self.min_turn_ms:
            logger.debug("Dropped %dms turn", duration_ms)
            return None
        logger.info("Detected %dms turn", duration_ms)
        return np.concatenate(speech)
