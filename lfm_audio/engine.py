"""LFM2.5-Audio engine: speech recognition, speech synthesis and interleaved chat.

Weights are loaded once per ``LfmAudio`` instance and are shared by every
conversation. Conversation state lives in ``ConversationState`` objects;
the engine owns a default one for the multi-turn operations, and callers
can pass their own to run independent conversations side by side.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np

from lfm_audio.config import (
    DepthformerConfig,
    GenerationConfig,
    IstftConfig,
    LoadConfig,
    MelConfig,
    ModelConfig,
)
from lfm_audio.errors import WeightsNotLoaded
from lfm_audio.hub import LoadProgress, ProgressCallback, download_model
from lfm_audio.models.backend import (
    ExecutionBackend,
    default_providers,
    load_session,
    onnx_file_name,
)
from lfm_audio.models.cache import ConversationState
from lfm_audio.models.decoder import DecoderStepper
from lfm_audio.models.depthformer import AudioFrameSampler
from lfm_audio.models.embedding import (
    AudioFeedback,
    Embedding,
    load_audio_embedding,
    load_table,
)
from lfm_audio.models.features import AudioEncoder, MelFrontend
from lfm_audio.models.inference import (
    FrameCallback,
    PromptBuilder,
    TokenCallback,
    TurnResult,
    TurnRunner,
)
from lfm_audio.models.scheduler import ModalityScheduler
from lfm_audio.models.tokenizer import LfmTokenizer
from lfm_audio.models.vocoder import WaveformSynthesizer
from lfm_audio.utils.audio import AudioProcessor

logger = logging.getLogger(__name__)

# Singleton instance
_instance: "LfmAudio | None" = None
_instance_lock = threading.Lock()


@dataclass
class SpeechResult:
    """Output of ``generate_speech``."""

    audio_frames: list[list[int]] = field(default_factory=list)
    text_output: str = ""
    stop_reason: str = "max_tokens"


class LfmAudio:
    """Multimodal generation over the LFM2.5-Audio ONNX export.

    Example:
        engine = LfmAudio()

        # Speech recognition (16 kHz mono float PCM)
        text = engine.transcribe(audio, 16000)

        # Speech synthesis
        result = engine.generate_speech("Hello world!")
        waveform = engine.decode_audio_codes(result.audio_frames)

        # Multi-turn interleaved conversation
        turn = engine.generate_interleaved(audio, 16000)
        turn = engine.generate_interleaved_from_text("And then?")
        engine.reset()
    """

    def __init__(
        self,
        model_dir: str | Path | None = None,
        load_config: LoadConfig | None = None,
        progress_callback: ProgressCallback | None = None,
        seed: int | None = None,
    ):
        """Download (if needed) and load every sub-model.

        Args:
            model_dir: Local export directory. If None, downloads from HuggingFace.
            load_config: Repo, cache, device and per-sub-model quantisation.
            progress_callback: Receives ``LoadProgress`` updates.
            seed: Seed for sampling. If None, sampling is not reproducible.
        """
        load_config = load_config or LoadConfig()
        if model_dir is not None:
            load_config = replace(load_config, model_dir=str(model_dir))
        self.load_config = load_config
        self._progress_callback = progress_callback

        model_dir = self._ensure_model()
        self._load_models(model_dir, seed)

    @classmethod
    def from_components(
        cls,
        config: ModelConfig,
        tokenizer: LfmTokenizer,
        decoder: ExecutionBackend | None,
        text_embedding: Embedding | None,
        audio_embedding: Embedding | None = None,
        audio_encoder: ExecutionBackend | None = None,
        depthformer: ExecutionBackend | None = None,
        detokenizer: ExecutionBackend | None = None,
        mel_config: MelConfig | None = None,
        depthformer_config: DepthformerConfig | None = None,
        istft_config: IstftConfig | None = None,
        seed: int | None = None,
    ) -> "LfmAudio":
        """Build an engine from already-loaded backends and tables."""
        engine = cls.__new__(cls)
        engine.load_config = LoadConfig()
        engine._progress_callback = None
        engine._setup(
            config=config,
            tokenizer=tokenizer,
            decoder=decoder,
            text_embedding=text_embedding,
            audio_embedding=audio_embedding,
            audio_encoder=audio_encoder,
            depthformer=depthformer,
            detokenizer=detokenizer,
            mel_config=mel_config,
            depthformer_config=depthformer_config,
            istft_config=istft_config,
            seed=seed,
        )
        return engine

    def _report(self, stage: str, percent: float, file_name: str = "") -> None:
        if self._progress_callback is not None:
            self._progress_callback(LoadProgress(stage, percent, file_name))

    def _ensure_model(self) -> Path:
        """Ensure model files are available."""
        if self.load_config.model_dir is not None:
            return Path(self.load_config.model_dir)
        return download_model(self.load_config, self._progress_callback)

    def _load_models(self, model_dir: Path, seed: int | None) -> None:
        lc = self.load_config
        providers = default_providers(lc.device)
        logger.info("Loading models from %s", model_dir)
        t0 = time.perf_counter()

        def load(name: str):
            return load_session(model_dir, name, lc.quantization_for(name), providers)

        def load_optional(name: str):
            path = model_dir / "onnx" / onnx_file_name(name, lc.quantization_for(name))
            if not path.exists():
                logger.warning("%s not found, %s not loaded", path.name, name)
                return None
            return load(name)

        self._report("loading", 0, "tokenizer")
        tokenizer = LfmTokenizer.from_pretrained(model_dir)

        self._report("loading", 5, "config.json")
        config = ModelConfig.from_pretrained(model_dir)
        logger.info(
            "Model config: hidden=%d layers=%d kv_heads=%d head_dim=%d",
            config.hidden_size,
            config.num_layers,
            config.num_kv_heads,
            config.head_dim,
        )

        self._report("loading", 10, onnx_file_name("decoder", lc.quantization_for("decoder")))
        decoder = load("decoder")

        self._report("loading", 30, "embed_tokens")
        text_embedding = load_table(model_dir, "embed_tokens")
        if text_embedding is None:
            logger.warning("embed_tokens not found, text prompts unavailable")

        self._report("loading", 50, "audio_encoder")
        audio_encoder = load("audio_encoder")

        self._report("loading", 65, "audio_embedding")
        audio_embedding = load_audio_embedding(model_dir, config.hidden_size, load)

        self._report("loading", 85, "audio_detokenizer")
        detokenizer = load_optional("audio_detokenizer")

        self._report("loading", 95, "vocoder_depthformer")
        depthformer = load_optional("vocoder_depthformer")

        self._setup(
            config=config,
            tokenizer=tokenizer,
            decoder=decoder,
            text_embedding=text_embedding,
            audio_embedding=audio_embedding,
            audio_encoder=audio_encoder,
            depthformer=depthformer,
            detokenizer=detokenizer,
            mel_config=MelConfig.from_pretrained(model_dir),
            seed=seed,
        )
        self._report("done", 100)
        logger.info("Models loaded in %.1fs", time.perf_counter() - t0)

    def _setup(
        self,
        config: ModelConfig,
        tokenizer: LfmTokenizer,
        decoder: ExecutionBackend | None,
        text_embedding: Embedding | None,
        audio_embedding: Embedding | None = None,
        audio_encoder: ExecutionBackend | None = None,
        depthformer: ExecutionBackend | None = None,
        detokenizer: ExecutionBackend | None = None,
        mel_config: MelConfig | None = None,
        depthformer_config: DepthformerConfig | None = None,
        istft_config: IstftConfig | None = None,
        seed: int | None = None,
    ) -> None:
        self.config = config
        self.tokenizer = tokenizer
        self.text_embedding = text_embedding
        self.depthformer_config = depthformer_config or DepthformerConfig()
        self._depthformer = depthformer
        self._seed = seed
        self._local = threading.local()

        self.decoder = DecoderStepper(decoder, config)
        self.audio_encoder = AudioEncoder(audio_encoder, MelFrontend(mel_config))
        self.feedback = AudioFeedback(audio_embedding) if audio_embedding is not None else None
        self.synthesizer = WaveformSynthesizer(detokenizer, istft_config)
        self.prompts = PromptBuilder(tokenizer, text_embedding)
        self.runner = TurnRunner(self.decoder, text_embedding, tokenizer, self.feedback)
        self.conversation = ConversationState(config)

    # =========================================================================
    # Per-thread sampling state
    # =========================================================================

    def _rng(self) -> np.random.Generator:
        rng = getattr(self._local, "rng", None)
        if rng is None:
            rng = self._local.rng = np.random.default_rng(self._seed)
        return rng

    def _frame_sampler(self) -> AudioFrameSampler | None:
        if self._depthformer is None:
            return None
        sampler = getattr(self._local, "frame_sampler", None)
        if sampler is None or sampler.backend is not self._depthformer:
            sampler = self._local.frame_sampler = AudioFrameSampler(
                self._depthformer, self.config.hidden_size, self.depthformer_config
            )
        return sampler

    def _require_text(self) -> None:
        if self.decoder.backend is None:
            raise WeightsNotLoaded("Decoder not loaded")
        if self.text_embedding is None:
            raise WeightsNotLoaded("embed_tokens not loaded")

    def _require_audio_output(self) -> None:
        if self._depthformer is None:
            raise WeightsNotLoaded("Depthformer not loaded - required for audio generation")
        if self.feedback is None:
            raise WeightsNotLoaded("Audio embedding not loaded - required for audio generation")

    def _run(
        self,
        conversation: ConversationState,
        content: list,
        scheduler: ModalityScheduler,
        config: GenerationConfig,
        on_token: TokenCallback | None,
        on_audio_frame: FrameCallback | None,
        cancel: threading.Event | None,
        force_audio_start: bool = False,
        commit: bool = True,
    ) -> TurnResult:
        with conversation.turn():
            first_turn = not conversation.is_active
            logger.info(
                "%s (cache seq_len=%d)",
                "First turn" if first_turn else "Continuing conversation",
                conversation.seq_len,
            )
            prompt = self.prompts.build(content, config.system_prompt, first_turn)
            return self.runner.run(
                conversation,
                prompt,
                scheduler,
                config,
                self._rng(),
                frame_sampler=self._frame_sampler(),
                on_token=on_token,
                on_audio_frame=on_audio_frame,
                cancel=cancel,
                force_audio_start=force_audio_start,
                commit=commit,
            )

    # =========================================================================
    # Public operations
    # =========================================================================

    def transcribe(
        self,
        audio: np.ndarray,
        sample_rate: int,
        config: GenerationConfig | None = None,
        on_token: TokenCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        """Transcribe 16 kHz mono speech. Does not touch the conversation.

        Args:
            audio: Mono float PCM.
            sample_rate: Must equal the encoder's rate (16000).
            config: Defaults to ``GenerationConfig.asr()``.
            on_token: Streaming callback ``(text_so_far, token_id)``.
            cancel: Set to stop between steps.

        Returns:
            The transcript.
        """
        config = config or GenerationConfig.asr()
        self._require_text()
        embeds = self.audio_encoder.encode(audio, sample_rate)

        result = self._run(
            ConversationState(self.config),
            [embeds],
            ModalityScheduler.text_only(self.tokenizer.eos_token_id),
            config,
            on_token,
            None,
            cancel,
            commit=False,
        )
        return result.text

    def generate_speech(
        self,
        text: str,
        config: GenerationConfig | None = None,
        on_token: TokenCallback | None = None,
        on_audio_frame: FrameCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> SpeechResult:
        """Synthesize speech for ``text``. Does not touch the conversation.

        The model normally writes ``<|audio_start|>`` itself; if it ends its
        text first, audio generation is started anyway.
        """
        if not text:
            raise ValueError("Text cannot be empty")
        config = config or GenerationConfig.tts()
        self._require_text()
        self._require_audio_output()

        result = self._run(
            ConversationState(self.config),
            [text],
            ModalityScheduler.sequential(self.tokenizer.eos_token_id),
            config,
            on_token,
            on_audio_frame,
            cancel,
            force_audio_start=True,
            commit=False,
        )
        return SpeechResult(
            audio_frames=result.audio_frames,
            text_output=result.text,
            stop_reason=result.stop_reason,
        )

    def generate_interleaved(
        self,
        audio: np.ndarray,
        sample_rate: int,
        prompt: str = "",
        config: GenerationConfig | None = None,
        conversation: ConversationState | None = None,
        on_token: TokenCallback | None = None,
        on_audio_frame: FrameCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TurnResult:
        """Answer a spoken user turn with interleaved text and audio.

        Args:
            audio: Mono float PCM of the user turn.
            sample_rate: Must equal the encoder's rate (16000).
            prompt: Optional text placed after the audio in the user turn.
            config: Defaults to ``GenerationConfig.interleaved()``.
            conversation: Defaults to the engine's own conversation.
            on_token: Streaming callback ``(text_so_far, token_id)``.
            on_audio_frame: Streaming callback ``(frame, frame_count)``.
            cancel: Set to stop between steps; the turn is still committed.

        Returns:
            TurnResult with the text and the kept audio frames.
        """
        config = config or GenerationConfig.interleaved()
        self._require_text()
        self._require_audio_output()
        embeds = self.audio_encoder.encode(audio, sample_rate)

        content = [embeds, prompt] if prompt else [embeds]
        return self._run(
            conversation or self.conversation,
            content,
            ModalityScheduler.interleaved(config.n_text, config.n_audio, self.tokenizer.eos_token_id),
            config,
            on_token,
            on_audio_frame,
            cancel,
        )

    def generate_interleaved_from_text(
        self,
        text: str,
        config: GenerationConfig | None = None,
        conversation: ConversationState | None = None,
        on_token: TokenCallback | None = None,
        on_audio_frame: FrameCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TurnResult:
        """Answer a typed user turn with interleaved text and audio."""
        config = config or GenerationConfig.interleaved()
        self._require_text()
        self._require_audio_output()

        return self._run(
            conversation or self.conversation,
            [text],
            ModalityScheduler.interleaved(config.n_text, config.n_audio, self.tokenizer.eos_token_id),
            config,
            on_token,
            on_audio_frame,
            cancel,
        )

    def generate_text_only(
        self,
        text: str,
        config: GenerationConfig | None = None,
        conversation: ConversationState | None = None,
        on_token: TokenCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> TurnResult:
        """Answer a typed user turn with text only."""
        config = config or GenerationConfig.chat()
        self._require_text()

        return self._run(
            conversation or self.conversation,
            [text],
            ModalityScheduler.text_only(self.tokenizer.eos_token_id),
            config,
            on_token,
            None,
            cancel,
        )

    def decode_audio_codes(self, frames: list[list[int]]) -> np.ndarray:
        """Audio frames to 24 kHz float PCM; fewer than 2 frames give an empty array."""
        return self.synthesizer.decode(frames)

    def to_wav_bytes(self, audio: np.ndarray) -> bytes:
        return AudioProcessor(self.sample_rate).numpy_to_wav_bytes(audio)

    def new_conversation(self) -> ConversationState:
        return ConversationState(self.config)

    def reset(self) -> None:
        """Start a new conversation on the engine's own state."""
        self.conversation.reset()

    def dispose(self) -> None:
        """Release sessions and tables. The engine is unusable afterwards."""
        self.conversation = ConversationState(self.config)
        self.decoder.backend = None
        self.audio_encoder.backend = None
        self.synthesizer.detokenizer = None
        if self.text_embedding is not None:
            self.text_embedding.release()
        if self.feedback is not None:
            self.feedback.embedding.release()
        self.text_embedding = None
        self.prompts.text_embedding = None
        self.runner.text_embedding = None
        self.feedback = None
        self.runner.feedback = None
        self._depthformer = None
        self._local = threading.local()
        logger.info("Engine disposed")

    @property
    def sample_rate(self) -> int:
        """Output sample rate."""
        return self.synthesizer.sample_rate

    @property
    def input_sample_rate(self) -> int:
        return self.audio_encoder.sample_rate


def get_instance(
    model_dir: str | Path | None = None,
    load_config: LoadConfig | None = None,
    progress_callback: ProgressCallback | None = None,
) -> LfmAudio:
    """Get or create the process-wide engine.

    Only the loaded weights are shared. Subsequent calls return the same
    instance, ignoring any different parameters. Use ``new_conversation()``
    for conversations that must not share the engine's default one.
    """
    global _instance

    if _instance is not None:
        return _instance

    with _instance_lock:
        if _instance is not None:
            return _instance

        logger.info("Creating singleton LfmAudio instance...")
        _instance = LfmAudio(
            model_dir=model_dir,
            load_config=load_config,
            progress_callback=progress_callback,
        )
        return _instance


def reset_instance() -> None:
    """Dispose and drop the process-wide engine."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            logger.info("Resetting singleton LfmAudio instance")
            _instance.dispose()
            _instance = None
