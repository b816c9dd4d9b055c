"""Audio utilities."""

from lfm_audio.utils.audio import AudioProcessor, StreamingAudioBuffer, TurnDetector

__all__ = ["AudioProcessor", "StreamingAudioBuffer", "TurnDetector"]
