"""Tests for the modality scheduler."""

import pytest

from lfm_audio.config import SpecialTokens
from lfm_audio.models.scheduler import EMITTED, Modality, ModalityScheduler, Signal

TEXT = 300
EOS = 2


def run_text(scheduler, token=TEXT):
    scheduler.tick()
    return scheduler.on_text(token)


def run_frame(scheduler, end_of_audio=False):
    scheduler.tick()
    return scheduler.on_frame(end_of_audio)


class TestInterleaved:
    """Tests for interleaved text/audio runs."""

    def test_alternating_runs(self):
        """Test runs of n_text tokens and n_audio frames."""
        scheduler = ModalityScheduler.interleaved(n_text=2, n_audio=3, eos_token_id=EOS)
        states = []
        for _ in range(10):
            if scheduler.state is Modality.TEXT:
                run_text(scheduler)
            else:
                run_frame(scheduler)
            states.append(scheduler.state)

        t, a = Modality.TEXT, Modality.AUDIO
        assert states == [t, a, a, a, t, t, a, a, a, t]

    def test_budget_token_is_emitted(self):
        """Test that the token that spends the text budget is still output."""
        scheduler = ModalityScheduler.interleaved(n_text=1, n_audio=1)

        signal = run_text(scheduler)

        assert signal is Signal.TEXT_BUDGET_SPENT
        assert signal in EMITTED
        assert scheduler.state is Modality.AUDIO

    def test_text_end_switches_immediately(self):
        """Test that <|text_end|> enters audio and lifts the audio budget."""
        scheduler = ModalityScheduler.interleaved(n_text=6, n_audio=2)

        signal = run_text(scheduler, SpecialTokens.TEXT_END)

        assert signal is Signal.TEXT_END
        assert scheduler.state is Modality.AUDIO
        assert scheduler.text_done
        for _ in range(10):
            assert run_frame(scheduler) is Signal.AUDIO_FRAME
        assert scheduler.state is Modality.AUDIO

    def test_end_of_audio_returns_to_text(self):
        """Test that end of audio hands back to text with a fresh budget."""
        scheduler = ModalityScheduler.interleaved(n_text=3, n_audio=12)
        run_text(scheduler, SpecialTokens.AUDIO_START)

        signal = run_frame(scheduler, end_of_audio=True)

        assert signal is Signal.END_OF_AUDIO
        assert signal not in EMITTED
        assert scheduler.state is Modality.TEXT
        assert scheduler.countdown == 3

    def test_text_after_text_end_goes_back_to_audio(self):
        """Test that text is not resumed once <|text_end|> was seen."""
        scheduler = ModalityScheduler.interleaved(n_text=6, n_audio=12)
        run_text(scheduler, SpecialTokens.TEXT_END)
        run_frame(scheduler, end_of_audio=True)

        signal = run_text(scheduler)

        assert signal is Signal.TEXT_BUDGET_SPENT
        assert scheduler.state is Modality.AUDIO

    def test_end_of_turn(self):
        """Test that <|im_end|> and EOS finish the turn."""
        for token in (SpecialTokens.IM_END, EOS):
            scheduler = ModalityScheduler.interleaved(eos_token_id=EOS)

            assert run_text(scheduler, token) is Signal.END_OF_TURN
            assert scheduler.finished

    def test_no_steps_after_done(self):
        """Test that the finished machine rejects further samples."""
        scheduler = ModalityScheduler.interleaved()
        run_text(scheduler, SpecialTokens.IM_END)

        with pytest.raises(RuntimeError):
            scheduler.on_text(TEXT)
        with pytest.raises(RuntimeError):
            scheduler.on_frame(False)

    def test_frame_in_text_state(self):
        """Test that a frame in TEXT is an error."""
        scheduler = ModalityScheduler.interleaved()

        with pytest.raises(RuntimeError):
            scheduler.on_frame(False)

    def test_invalid_budgets(self):
        """Test budget validation."""
        with pytest.raises(ValueError):
            ModalityScheduler(n_text=0)
        with pytest.raises(ValueError):
            ModalityScheduler(n_audio=-1)


class TestSequential:
    """Tests for speech synthesis ordering."""

    def test_text_then_audio_then_done(self):
        """Test that audio_start enters audio and end of audio finishes."""
        scheduler = ModalityScheduler.sequential(eos_token_id=EOS)

        for _ in range(20):
            assert run_text(scheduler) is Signal.TEXT_TOKEN
        assert run_text(scheduler, SpecialTokens.AUDIO_START) is Signal.AUDIO_START
        for _ in range(50):
            assert run_frame(scheduler) is Signal.AUDIO_FRAME
        run_frame(scheduler, end_of_audio=True)

        assert scheduler.finished
        assert scheduler.audio_seen

    def test_text_end_is_plain_text(self):
        """Test that <|text_end|> does not switch modality."""
        scheduler = ModalityScheduler.sequential()

        assert run_text(scheduler, SpecialTokens.TEXT_END) is Signal.TEXT_TOKEN
        assert scheduler.state is Modality.TEXT

    def test_force_audio(self):
        """Test forcing audio when the model ends without starting it."""
        scheduler = ModalityScheduler.sequential()

        scheduler.force_audio()

        assert scheduler.state is Modality.AUDIO
        assert scheduler.audio_seen
        with pytest.raises(RuntimeError):
            scheduler.force_audio()


class TestTextOnly:
    """Tests for text-only turns."""

    def test_audio_sentinels_are_text(self):
        """Test that audio sentinels never switch modality."""
        scheduler = ModalityScheduler.text_only(eos_token_id=EOS)

        for token in (SpecialTokens.AUDIO_START, SpecialTokens.TEXT_END, TEXT):
            assert run_text(scheduler, token) is Signal.TEXT_TOKEN
        assert not scheduler.audio_seen
        assert scheduler.countdown is None

    def test_im_end_finishes(self):
        """Test end of turn."""
        scheduler = ModalityScheduler.text_only(eos_token_id=EOS)

        assert run_text(scheduler, EOS) is Signal.END_OF_TURN
        assert scheduler.finished
