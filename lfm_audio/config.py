"""Configuration for LFM-Audio inference."""

import json
from dataclasses import dataclass, field
from pathlib import Path

from lfm_audio.errors import ConfigMismatch

DEFAULT_REPO_ID = "LiquidAI/LFM2.5-Audio-1.5B-ONNX"

# LFM2-1.2B backbone: 10 short-conv blocks, 6 grouped-query attention blocks.
LFM2_LAYER_TYPES = (
    "conv", "conv", "full_attention", "conv",
    "conv", "full_attention", "conv", "conv",
    "full_attention", "conv", "full_attention", "conv",
    "full_attention", "conv", "full_attention", "conv",
)

SUB_MODELS = (
    "decoder",
    "audio_encoder",
    "audio_embedding",
    "audio_detokenizer",
    "vocoder_depthformer",
)


class SpecialTokens:
    """Special token ids and audio codebook constants."""

    IM_END = 7
    AUDIO_START = 128
    TEXT_START = 129
    TEXT_END = 130
    MIXED_START = 131
    MIXED_END = 132

    NUM_CODEBOOKS = 8
    CODEBOOK_VOCAB = 2049
    END_OF_AUDIO = 2048
    MAX_AUDIO_CODE = 2047

    @classmethod
    def audio_token(cls, codebook: int, code: int) -> int:
        """Index of a codebook value in the shared audio embedding table."""
        if not 0 <= codebook < cls.NUM_CODEBOOKS:
            raise ValueError(f"Codebook {codebook} out of range")
        if not 0 <= code < cls.CODEBOOK_VOCAB:
            raise ValueError(f"Code {code} out of range")
        return codebook * cls.CODEBOOK_VOCAB + code

    @classmethod
    def is_end_of_audio(cls, frame) -> bool:
        # Only the first codebook carries the end-of-audio marker.
        return int(frame[0]) == cls.END_OF_AUDIO

    @classmethod
    def clamp_frame(cls, frame) -> list[int]:
        return [min(int(c), cls.MAX_AUDIO_CODE) for c in frame]


@dataclass(frozen=True)
class ModelConfig:
    """Backbone dimensions. Immutable once loaded."""

    hidden_size: int = 2048
    num_layers: int = 16
    num_kv_heads: int = 8
    head_dim: int = 64
    conv_cache_len: int = 3
    layer_types: tuple[str, ...] = LFM2_LAYER_TYPES
    vocab_size: int = 65536

    def __post_init__(self):
        if len(self.layer_types) != self.num_layers:
            raise ConfigMismatch(
                f"layer_types has {len(self.layer_types)} entries, "
                f"expected num_layers={self.num_layers}"
            )
        for layer_type in self.layer_types:
            if layer_type not in ("conv", "attention", "full_attention"):
                raise ConfigMismatch(f"Unknown layer type: {layer_type}")

    def is_conv(self, idx: int) -> bool:
        return self.layer_types[idx] == "conv"

    @classmethod
    def from_dict(cls, data: dict) -> "ModelConfig":
        lfm = data.get("lfm", data)
        hidden_size = lfm.get("hidden_size", 2048)
        layer_types = tuple(lfm.get("layer_types") or LFM2_LAYER_TYPES)
        return cls(
            hidden_size=hidden_size,
            num_layers=lfm.get("num_hidden_layers", len(layer_types) or 16),
            num_kv_heads=lfm.get("num_key_value_heads", 8),
            head_dim=hidden_size // lfm.get("num_attention_heads", 32),
            conv_cache_len=lfm.get("conv_L_cache", 3),
            layer_types=layer_types,
            vocab_size=lfm.get("vocab_size", 65536),
        )

    @classmethod
    def from_pretrained(cls, path: str | Path) -> "ModelConfig":
        path = Path(path)
        if path.is_dir():
            path = path / "config.json"

        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True)
class DepthformerConfig:
    """Audio-frame sampler (depthformer) cache layout."""

    num_layers: int = 6
    num_kv_heads: int = 8
    head_dim: int = 32
    num_codebooks: int = SpecialTokens.NUM_CODEBOOKS
    codebook_vocab: int = SpecialTokens.CODEBOOK_VOCAB


@dataclass(frozen=True)
class MelConfig:
    """Audio encoder front-end parameters."""

    sample_rate: int = 16000
    n_fft: int = 512
    win_length: int = 400
    hop_length: int = 160
    n_mels: int = 128
    preemphasis: float = 0.97
    log_guard: float = 2**-24
    normalize: bool = True

    @classmethod
    def from_pretrained(cls, model_dir: str | Path) -> "MelConfig":
        """Read the preprocessor section if the export ships one."""
        path = Path(model_dir) / "preprocessor_config.json"
        if not path.exists():
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        return cls(
            sample_rate=data.get("sample_rate", cls.sample_rate),
            n_fft=data.get("n_fft", cls.n_fft),
            win_length=data.get("win_length", cls.win_length),
            hop_length=data.get("hop_length", cls.hop_length),
            n_mels=data.get("n_mels", data.get("features", cls.n_mels)),
            preemphasis=data.get("preemph", cls.preemphasis),
            normalize=data.get("normalize", "per_feature") not in (None, False, "none"),
        )


@dataclass(frozen=True)
class IstftConfig:
    """Waveform reconstruction parameters (fixed for this model)."""

    n_fft: int = 1280
    hop_length: int = 320
    win_length: int = 1280
    sample_rate: int = 24000
    peak: float = 0.9

    @property
    def n_bins(self) -> int:
        return self.n_fft // 2 + 1


@dataclass
class GenerationConfig:
    """Sampling and scheduling parameters for one turn."""

    max_new_tokens: int = 1024
    text_temperature: float = 1.0
    audio_temperature: float = 1.0
    audio_top_k: int = 4
    n_text: int = 6
    n_audio: int = 12
    system_prompt: str = "Respond with interleaved text and audio."
    max_seconds: float | None = None
    show_progress: bool = False

    def __post_init__(self):
        if self.max_new_tokens <= 0:
            raise ValueError("max_new_tokens must be positive")
        if self.text_temperature < 0 or self.audio_temperature < 0:
            raise ValueError("temperature must be non-negative")
        if self.audio_top_k <= 0:
            raise ValueError("audio_top_k must be positive")

    @classmethod
    def asr(cls, **overrides) -> "GenerationConfig":
        values = dict(max_new_tokens=100, text_temperature=0.0, system_prompt="Perform ASR.")
        values.update(overrides)
        return cls(**values)

    @classmethod
    def tts(cls, **overrides) -> "GenerationConfig":
        values = dict(
            max_new_tokens=1024,
            text_temperature=0.7,
            audio_temperature=0.8,
            audio_top_k=64,
            system_prompt="Perform TTS. Use the UK female voice.",
        )
        values.update(overrides)
        return cls(**values)

    @classmethod
    def interleaved(cls, **overrides) -> "GenerationConfig":
        return cls(**overrides)

    @classmethod
    def chat(cls, **overrides) -> "GenerationConfig":
        values = dict(
            max_new_tokens=256,
            text_temperature=0.7,
            system_prompt="You are a helpful assistant.",
        )
        values.update(overrides)
        return cls(**values)


@dataclass
class LoadConfig:
    """Where model files come from and how sessions are created."""

    repo_id: str = DEFAULT_REPO_ID
    model_dir: str | None = None
    cache_dir: str | None = None
    device: str = "cpu"
    quantization: dict[str, str | None] = field(
        default_factory=lambda: {name: "q4" for name in SUB_MODELS}
    )

    def get_cache_dir(self) -> Path:
        if self.cache_dir is not None:
            return Path(self.cache_dir)
        return Path.home() / ".cache" / "lfm-audio"

    def get_model_dir(self) -> Path:
        if self.model_dir is not None:
            return Path(self.model_dir)
        return self.get_cache_dir() / "models" / self.repo_id.replace("/", "--")

    def quantization_for(self, name: str) -> str | None:
        return self.quantization.get(name)
