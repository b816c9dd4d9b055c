"""LFM-Audio: multimodal text and audio generation with the LFM2.5-Audio ONNX export.

Features:
- Speech recognition, speech synthesis and interleaved text+audio chat
- Multi-turn conversations with an explicit, resettable decoder cache
- Independent conversations per ``ConversationState``
- Waveform reconstruction with a general-length FFT inverse STFT
- Singleton accessor: weights loaded once per process

Usage:
    from lfm_audio import get_instance

    engine = get_instance()

    # Speech recognition (16 kHz mono float PCM)
    text = engine.transcribe(audio, 16000)

    # Speech synthesis
    result = engine.generate_speech("Hello world")
    wav = engine.to_wav_bytes(engine.decode_audio_codes(result.audio_frames))

    # Interleaved conversation
    turn = engine.generate_interleaved(audio, 16000)
    print(turn.text)
    waveform = engine.decode_audio_codes(turn.audio_frames)
    engine.reset()
"""

from lfm_audio.config import GenerationConfig, LoadConfig, ModelConfig, SpecialTokens
from lfm_audio.engine import LfmAudio, SpeechResult, get_instance, reset_instance
from lfm_audio.errors import (
    ConfigMismatch,
    GenerationError,
    InsufficientFrames,
    InvalidWaveform,
    LfmAudioError,
    WeightsNotLoaded,
)
from lfm_audio.hub import LoadProgress
from lfm_audio.models.cache import ConversationState
from lfm_audio.models.inference import TurnResult

__version__ = "0.1.0"
__all__ = [
    "ConfigMismatch",
    "ConversationState",
    "GenerationConfig",
    "GenerationError",
    "InsufficientFrames",
    "InvalidWaveform",
    "LfmAudio",
    "LfmAudioError",
    "LoadConfig",
    "LoadProgress",
    "ModelConfig",
    "SpecialTokens",
    "SpeechResult",
    "TurnResult",
    "WeightsNotLoaded",
    "get_instance",
    "reset_instance",
]
