"""Prompt construction and the per-turn generation loop.

A turn is: prefill the prompt, run the modality scheduler until it stops
(or a step/time budget runs out), then feed ``<|im_end|>`` so the
conversation cache holds the closed assistant turn.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Literal, Sequence

import numpy as np
from tqdm import tqdm

from lfm_audio.config import GenerationConfig, SpecialTokens
from lfm_audio.errors import GenerationError, WeightsNotLoaded
from lfm_audio.models.cache import ConversationState
from lfm_audio.models.decoder import DecoderOutput, DecoderStepper
from lfm_audio.models.depthformer import AudioFrameSampler
from lfm_audio.models.embedding import AudioFeedback, Embedding
from lfm_audio.models.sampling import sample_token
from lfm_audio.models.scheduler import EMITTED, Modality, ModalityScheduler, Signal
from lfm_audio.models.tokenizer import (
    ASSISTANT_OPEN,
    SYSTEM_TEMPLATE,
    USER_OPEN,
    LfmTokenizer,
)

logger = logging.getLogger(__name__)

StopReason = Literal["end_of_turn", "end_of_audio", "max_tokens", "cancelled", "timeout"]
TokenCallback = Callable[[str, int], None]
FrameCallback = Callable[[list[int], int], None]


@dataclass
class TurnResult:
    """Output of one assistant turn."""

    text: str = ""
    text_tokens: list[int] = field(default_factory=list)
    audio_frames: list[list[int]] = field(default_factory=list)
    stop_reason: StopReason = "max_tokens"
    steps: int = 0
    prompt_length: int = 0


class PromptBuilder:
    """Builds the prefill embeddings of a user turn.

    Content parts are strings (tokenized) or ``[n, hidden]`` embedding
    arrays (spliced in as-is). Adjacent strings are tokenized together.
    """

    def __init__(self, tokenizer: LfmTokenizer, text_embedding: Embedding):
        self.tokenizer = tokenizer
        self.text_embedding = text_embedding

    def user_open(self, system_prompt: str, first_turn: bool) -> str:
        if first_turn:
            return SYSTEM_TEMPLATE.format(system=system_prompt) + USER_OPEN
        return USER_OPEN

    def embed_text(self, text: str) -> np.ndarray:
        ids = self.tokenizer.encode(text)
        if not ids:
            return np.zeros((0, self.text_embedding.hidden_size), dtype=np.float32)
        return self.text_embedding.lookup(ids)

    def build(
        self,
        content: Sequence[str | np.ndarray],
        system_prompt: str,
        first_turn: bool,
    ) -> np.ndarray:
        parts: list[str | np.ndarray] = [self.user_open(system_prompt, first_turn)]
        parts.extend(content)
        parts.append(ASSISTANT_OPEN)

        pieces = []
        pending = ""
        for part in parts:
            if isinstance(part, str):
                pending += part
                continue
            if pending:
                pieces.append(self.embed_text(pending))
                pending = ""
            pieces.append(np.asarray(part, dtype=np.float32))
        if pending:
            pieces.append(self.embed_text(pending))

        return np.concatenate(pieces, axis=0)


class TurnRunner:
    """Drives one turn of decoder steps under a ``ModalityScheduler``."""

    def __init__(
        self,
        decoder: DecoderStepper,
        text_embedding: Embedding,
        tokenizer: LfmTokenizer,
        feedback: AudioFeedback | None = None,
    ):
        self.decoder = decoder
        self.text_embedding = text_embedding
        self.tokenizer = tokenizer
        self.feedback = feedback

    def _feed_token(self, token: int, conversation: ConversationState) -> DecoderOutput:
        return self.decoder.step(self.text_embedding.lookup([token]), conversation)

    def _close_turn(self, conversation: ConversationState) -> None:
        """Feed ``<|im_end|>`` after a failed step so the next turn starts clean."""
        try:
            self._feed_token(SpecialTokens.IM_END, conversation)
        except Exception:
            logger.exception("Could not close the failed turn, reset() the conversation")

    def run(
        self,
        conversation: ConversationState,
        prompt_embeds: np.ndarray,
        scheduler: ModalityScheduler,
        config: GenerationConfig,
        rng: np.random.Generator,
        frame_sampler: AudioFrameSampler | None = None,
        on_token: TokenCallback | None = None,
        on_audio_frame: FrameCallback | None = None,
        cancel: threading.Event | None = None,
        force_audio_start: bool = False,
        commit: bool = True,
    ) -> TurnResult:
        """Generate one assistant turn on ``conversation``.

        Args:
            conversation: Cache to extend. Initialized on first use.
            prompt_embeds: ``[L, hidden]`` prefill embeddings.
            scheduler: Fresh scheduler for this turn.
            config: Sampling parameters and step/time budgets.
            rng: Random generator for text and audio sampling.
            frame_sampler: Required if the scheduler can enter AUDIO.
            on_token: Called with the decoded text so far and the new token id.
            on_audio_frame: Called with each kept frame and the frame count.
            cancel: Checked between steps; when set the turn stops early.
            force_audio_start: Feed ``<|audio_start|>`` if the model ends
                its text before producing any audio.
            commit: Feed ``<|im_end|>`` after the loop.

        Returns:
            TurnResult with whatever was produced, and why it stopped.

        Raises:
            GenerationError: A step failed. ``partial`` holds the output so far.
                With ``commit`` the turn is still closed with ``<|im_end|>``
                when the decoder allows it.
        """
        result = TurnResult(prompt_length=int(prompt_embeds.shape[0]))
        deadline = time.monotonic() + config.max_seconds if config.max_seconds else None

        t0 = time.perf_counter()
        try:
            out = self.decoder.step(prompt_embeds, conversation)
        except WeightsNotLoaded:
            raise
        except Exception as e:
            raise GenerationError("Prefill failed", partial=result) from e
        logger.info(
            "Prefill: %.0fms, %d positions, cache %d",
            (time.perf_counter() - t0) * 1000,
            result.prompt_length,
            conversation.seq_len,
        )

        steps = range(config.max_new_tokens)
        iterator = tqdm(steps) if config.show_progress else steps
        t1 = time.perf_counter()

        try:
            for _ in iterator:
                if cancel is not None and cancel.is_set():
                    result.stop_reason = "cancelled"
                    break
                if deadline is not None and time.monotonic() > deadline:
                    result.stop_reason = "timeout"
                    break

                scheduler.tick()
                result.steps += 1

                if scheduler.state is Modality.AUDIO:
                    out, signal = self._audio_step(
                        out, conversation, scheduler, config, rng, frame_sampler, result, on_audio_frame
                    )
                else:
                    out, signal = self._text_step(
                        out, conversation, scheduler, config, rng, result, on_token, force_audio_start
                    )

                if scheduler.finished:
                    result.stop_reason = (
                        "end_of_audio" if signal is Signal.END_OF_AUDIO else "end_of_turn"
                    )
                    break

            if commit:
                self._feed_token(SpecialTokens.IM_END, conversation)
        except WeightsNotLoaded:
            raise
        except Exception as e:
            result.text = self.tokenizer.decode(result.text_tokens)
            if commit:
                self._close_turn(conversation)
            raise GenerationError(
                f"Generation failed after {result.steps} steps", partial=result
            ) from e

        result.text = self.tokenizer.decode(result.text_tokens)
        elapsed = time.perf_counter() - t1
        logger.info(
            "Turn finished (%s): %d text tokens, %d audio frames in %.2fs (%.1f steps/s), cache %d",
            result.stop_reason,
            len(result.text_tokens),
            len(result.audio_frames),
            elapsed,
            result.steps / elapsed if elapsed > 0 else 0.0,
            conversation.seq_len,
        )
        return result

    def _text_step(
        self,
        out: DecoderOutput,
        conversation: ConversationState,
        scheduler: ModalityScheduler,
        config: GenerationConfig,
        rng: np.random.Generator,
        result: TurnResult,
        on_token: TokenCallback | None,
        force_audio_start: bool,
    ) -> tuple[DecoderOutput, Signal]:
        token = sample_token(out.logits, config.text_temperature, rng)
        signal = scheduler.on_text(token)

        if signal is Signal.END_OF_TURN:
            if force_audio_start and not scheduler.audio_seen:
                logger.warning("Model ended its text before audio, forcing <|audio_start|>")
                scheduler.force_audio()
                return self._feed_token(SpecialTokens.AUDIO_START, conversation), Signal.AUDIO_START
            return out, signal

        if signal in EMITTED:
            result.text_tokens.append(token)
            if on_token is not None:
                on_token(self.tokenizer.decode(result.text_tokens), token)
        else:
            logger.debug("Control token %d (%s)", token, signal.name)

        return self._feed_token(token, conversation), signal

    def _audio_step(
        self,
        out: DecoderOutput,
        conversation: ConversationState,
        scheduler: ModalityScheduler,
        config: GenerationConfig,
        rng: np.random.Generator,
        frame_sampler: AudioFrameSampler | None,
        result: TurnResult,
        on_audio_frame: FrameCallback | None,
    ) -> tuple[DecoderOutput, Signal]:
        if frame_sampler is None or self.feedback is None:
            raise WeightsNotLoaded("Audio generation needs the depthformer and audio embedding")

        frame = frame_sampler.sample(
            out.hidden_state, config.audio_temperature, config.audio_top_k, rng
        )
        end_of_audio = SpecialTokens.is_end_of_audio(frame)
        signal = scheduler.on_frame(end_of_audio)

        if end_of_audio:
            logger.info("End of audio after %d frames", len(result.audio_frames))
            if scheduler.finished:
                return out, signal
            # Not kept, but fed back with every codebook at the sentinel.
            feed = [SpecialTokens.END_OF_AUDIO] * SpecialTokens.NUM_CODEBOOKS
        else:
            feed = SpecialTokens.clamp_frame(frame)
            result.audio_frames.append(feed)
            if on_audio_frame is not None:
                on_audio_frame(feed, len(result.audio_frames))
            if len(result.audio_frames) % 50 == 0:
                logger.info("Generated %d audio frames", len(result.audio_frames))

        return self.decoder.step(self.feedback(feed), conversation), signal
