"""Exceptions raised by lfm_audio."""


class LfmAudioError(Exception):
    """Base class for lfm_audio errors."""


class WeightsNotLoaded(LfmAudioError, RuntimeError):
    """An operation needed a table or session that is not loaded."""


class ConfigMismatch(LfmAudioError, ValueError):
    """Loaded data disagrees with its declared shape or config."""


class InvalidWaveform(LfmAudioError):
    """The synthesized signal contains NaN or Inf."""


class InsufficientFrames(LfmAudioError):
    """Fewer than two audio frames were given to the synthesizer."""


class GenerationError(LfmAudioError):
    """A decode step failed after the turn had started.

    ``partial`` holds whatever text and audio was produced before the failure.
    """

    def __init__(self, message: str, partial=None):
        super().__init__(message)
        self.partial = partial
