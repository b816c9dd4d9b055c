"""Modality scheduler deciding whether the next step yields text or audio.

The scheduler is a small state machine over ``TEXT``, ``AUDIO`` and the
terminal ``DONE`` state. Every generation step calls ``tick()`` once, then
reports what was sampled with ``on_text`` or ``on_frame``. Those map the
sample onto a ``Signal`` and the transition table gives the next state.

Three modes share the same machine:

- interleaved: text runs of ``n_text`` steps alternate with audio runs of
  ``n_audio`` steps. Once ``<|text_end|>`` is seen audio is no longer cut
  short by its budget.
- sequential (speech synthesis): text until ``<|audio_start|>``, then audio
  until the end-of-audio frame, with no budgets.
- text only (transcription, chat): audio sentinels are ordinary tokens.
"""

import enum
import logging

from lfm_audio.config import SpecialTokens

logger = logging.getLogger(__name__)


class Modality(enum.Enum):
    TEXT = "text"
    AUDIO = "audio"
    DONE = "done"


class Signal(enum.Enum):
    TEXT_TOKEN = "text_token"
    TEXT_BUDGET_SPENT = "text_budget_spent"
    AUDIO_START = "audio_start"
    TEXT_END = "text_end"
    END_OF_TURN = "end_of_turn"
    AUDIO_FRAME = "audio_frame"
    AUDIO_BUDGET_SPENT = "audio_budget_spent"
    END_OF_AUDIO = "end_of_audio"


TRANSITIONS: dict[tuple[Modality, Signal], Modality] = {
    (Modality.TEXT, Signal.TEXT_TOKEN): Modality.TEXT,
    (Modality.TEXT, Signal.TEXT_BUDGET_SPENT): Modality.AUDIO,
    (Modality.TEXT, Signal.AUDIO_START): Modality.AUDIO,
    (Modality.TEXT, Signal.TEXT_END): Modality.AUDIO,
    (Modality.TEXT, Signal.END_OF_TURN): Modality.DONE,
    (Modality.AUDIO, Signal.AUDIO_FRAME): Modality.AUDIO,
    (Modality.AUDIO, Signal.AUDIO_BUDGET_SPENT): Modality.TEXT,
    (Modality.AUDIO, Signal.END_OF_AUDIO): Modality.TEXT,
}

SEQUENTIAL_TRANSITIONS = {
    **TRANSITIONS,
    (Modality.AUDIO, Signal.END_OF_AUDIO): Modality.DONE,
}

# Signals whose sample is part of the output (the rest are control only).
EMITTED = frozenset({
    Signal.TEXT_TOKEN,
    Signal.TEXT_BUDGET_SPENT,
    Signal.TEXT_END,
    Signal.AUDIO_FRAME,
    Signal.AUDIO_BUDGET_SPENT,
})


class ModalityScheduler:
    """Counter-driven TEXT/AUDIO state machine.

    ``n_text``/``n_audio`` of ``None`` means the run is unbounded.
    """

    def __init__(
        self,
        n_text: int | None = 6,
        n_audio: int | None = 12,
        eos_token_id: int | None = None,
        transitions: dict[tuple[Modality, Signal], Modality] = TRANSITIONS,
        audio_enabled: bool = True,
    ):
        if n_text is not None and n_text <= 0:
            raise ValueError("n_text must be positive")
        if n_audio is not None and n_audio <= 0:
            raise ValueError("n_audio must be positive")

        self.n_text = n_text
        self.n_audio = n_audio
        self.eos_token_id = eos_token_id
        self.transitions = transitions
        self.audio_enabled = audio_enabled

        self.state = Modality.TEXT
        self.text_done = False
        self.countdown = self._budget(Modality.TEXT)
        self.audio_seen = False

    @classmethod
    def interleaved(cls, n_text: int = 6, n_audio: int = 12, eos_token_id: int | None = None):
        return cls(n_text=n_text, n_audio=n_audio, eos_token_id=eos_token_id)

    @classmethod
    def sequential(cls, eos_token_id: int | None = None):
        return cls(
            n_text=None,
            n_audio=None,
            eos_token_id=eos_token_id,
            transitions=SEQUENTIAL_TRANSITIONS,
        )

    @classmethod
    def text_only(cls, eos_token_id: int | None = None):
        return cls(n_text=None, n_audio=None, eos_token_id=eos_token_id, audio_enabled=False)

    @property
    def finished(self) -> bool:
        return self.state is Modality.DONE

    def _budget(self, state: Modality) -> int | None:
        if state is Modality.TEXT:
            return self.n_text
        if state is Modality.AUDIO:
            return self.n_audio
        return None

    def _spent(self) -> bool:
        return self.countdown is not None and self.countdown <= 0

    def tick(self) -> None:
        """Count one generation step against the current run."""
        if self.countdown is not None:
            self.countdown -= 1

    def _apply(self, signal: Signal) -> Signal:
        try:
            new_state = self.transitions[(self.state, signal)]
        except KeyError:
            raise RuntimeError(f"No transition from {self.state.name} on {signal.name}") from None

        if new_state is not self.state:
            logger.debug("%s -> %s on %s", self.state.name, new_state.name, signal.name)
            self.countdown = self._budget(new_state)
        if new_state is Modality.AUDIO:
            self.audio_seen = True
        self.state = new_state
        return signal

    def classify_text(self, token: int) -> Signal:
        if token == SpecialTokens.IM_END or token == self.eos_token_id:
            return Signal.END_OF_TURN
        if not self.audio_enabled:
            return Signal.TEXT_TOKEN
        if token == SpecialTokens.AUDIO_START:
            return Signal.AUDIO_START
        if token == SpecialTokens.TEXT_END and self.n_text is not None:
            return Signal.TEXT_END
        if self.n_text is not None and (self._spent() or self.text_done):
            return Signal.TEXT_BUDGET_SPENT
        return Signal.TEXT_TOKEN

    def on_text(self, token: int) -> Signal:
        """Advance on a sampled text token and return its signal."""
        if self.state is not Modality.TEXT:
            raise RuntimeError(f"Text token sampled in {self.state.name} state")
        signal = self.classify_text(token)
        if signal is Signal.TEXT_END:
            self.text_done = True
        return self._apply(signal)

    def classify_frame(self, end_of_audio: bool) -> Signal:
        if end_of_audio:
            return Signal.END_OF_AUDIO
        if self._spent() and not self.text_done:
            return Signal.AUDIO_BUDGET_SPENT
        return Signal.AUDIO_FRAME

    def on_frame(self, end_of_audio: bool) -> Signal:
        """Advance on a sampled audio frame and return its signal."""
        if self.state is not Modality.AUDIO:
            raise RuntimeError(f"Audio frame sampled in {self.state.name} state")
        return self._apply(self.classify_frame(end_of_audio))

    def force_audio(self) -> None:
        """Enter AUDIO as if ``<|audio_start|>`` had been sampled."""
        if self.audio_seen:
            raise RuntimeError("Audio already started in this turn")
        self.state = Modality.AUDIO
        self.countdown = self._budget(Modality.AUDIO)
        self.audio_seen = True
