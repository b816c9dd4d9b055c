"""LFM-Audio models."""

from lfm_audio.models.backend import ExecutionBackend, OnnxSession, load_session
from lfm_audio.models.cache import AttnState, ConversationState, ConvState
from lfm_audio.models.decoder import DecoderOutput, DecoderStepper
from lfm_audio.models.depthformer import AudioFrameSampler
from lfm_audio.models.embedding import (
    AudioFeedback,
    DirectEmbedding,
    Embedding,
    SessionEmbedding,
)
from lfm_audio.models.features import AudioEncoder, MelFrontend
from lfm_audio.models.inference import PromptBuilder, TurnResult, TurnRunner
from lfm_audio.models.scheduler import Modality, ModalityScheduler, Signal
from lfm_audio.models.tokenizer import LfmTokenizer
from lfm_audio.models.vocoder import WaveformSynthesizer

__all__ = [
    "AttnState",
    "AudioEncoder",
    "AudioFeedback",
    "AudioFrameSampler",
    "ConvState",
    "ConversationState",
    "DecoderOutput",
    "DecoderStepper",
    "DirectEmbedding",
    "Embedding",
    "ExecutionBackend",
    "LfmTokenizer",
    "MelFrontend",
    "Modality",
    "ModalityScheduler",
    "OnnxSession",
    "PromptBuilder",
    "SessionEmbedding",
    "Signal",
    "TurnResult",
    "TurnRunner",
    "WaveformSynthesizer",
    "load_session",
]
