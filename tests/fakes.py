"""In-memory stand-ins for the exported sub-models and the tokenizer."""

import numpy as np

from lfm_audio.config import ModelConfig, SpecialTokens

HIDDEN = 16
VOCAB = 512
CHAR_OFFSET = 200

SPECIAL_IDS = {
    "<|startoftext|>": 1,
    "<|endoftext|>": 2,
    "<|im_start|>": 6,
    "<|im_end|>": SpecialTokens.IM_END,
    "<|audio_start|>": SpecialTokens.AUDIO_START,
    "<|text_start|>": SpecialTokens.TEXT_START,
    "<|text_end|>": SpecialTokens.TEXT_END,
}
EOS_ID = SPECIAL_IDS["<|endoftext|>"]


class _Encoding:
    def __init__(self, ids):
        self.ids = ids


class CharTokenizer:
    """Character-level tokenizer with the ``tokenizers.Tokenizer`` surface we use."""

    def token_to_id(self, token):
        if token in SPECIAL_IDS:
            return SPECIAL_IDS[token]
        if len(token) == 1:
            return ord(token) + CHAR_OFFSET
        return None

    def get_vocab_size(self):
        return VOCAB

    def encode(self, s, add_special_tokens=True):
        ids = []
        i = 0
        while i < len(s):
            for token, token_id in SPECIAL_IDS.items():
                if s.startswith(token, i):
                    ids.append(token_id)
                    i += len(token)
                    break
            else:
                ids.append(ord(s[i]) + CHAR_OFFSET)
                i += 1
        return _Encoding(ids)

    def decode(self, ids, skip_special_tokens=True):
        special = set(SPECIAL_IDS.values())
        chars = []
        for i in ids:
            if i >= CHAR_OFFSET:
                chars.append(chr(i - CHAR_OFFSET))
            elif not skip_special_tokens and i in special:
                chars.append(next(k for k, v in SPECIAL_IDS.items() if v == i))
        return "".join(chars)


def char_id(c: str) -> int:
    return ord(c) + CHAR_OFFSET


class FakeDecoder:
    """Decoder whose ``i``-th call puts all logit mass on ``script[i]``.

    Once the script is exhausted it answers ``<|im_end|>``. Every call
    checks the cache and mask shapes against the positions fed so far.
    """

    def __init__(self, config: ModelConfig, script=()):
        self.config = config
        self.script = list(script)
        self.calls = 0
        self.fed: list[np.ndarray] = []

    def run(self, inputs):
        cfg = self.config
        embeds = inputs["inputs_embeds"]
        step_len = embeds.shape[1]
        total = inputs["attention_mask"].shape[1]
        self.fed.append(embeds[0].copy())

        outputs = {}
        for idx in range(cfg.num_layers):
            if cfg.is_conv(idx):
                state = inputs[f"past_conv.{idx}"]
                assert state.shape == (1, cfg.hidden_size, cfg.conv_cache_len)
                outputs[f"present_conv.{idx}"] = state + 1.0
            else:
                key = inputs[f"past_key_values.{idx}.key"]
                value = inputs[f"past_key_values.{idx}.value"]
                assert key.shape[2] + step_len == total
                new = np.zeros((1, cfg.num_kv_heads, step_len, cfg.head_dim), dtype=np.float32)
                outputs[f"present.{idx}.key"] = np.concatenate([key, new], axis=2)
                outputs[f"present.{idx}.value"] = np.concatenate([value, new], axis=2)

        target = self.script[self.calls] if self.calls < len(self.script) else SpecialTokens.IM_END
        logits = np.zeros((1, step_len, cfg.vocab_size), dtype=np.float32)
        logits[0, -1, target] = 50.0
        hidden = np.full((1, step_len, cfg.hidden_size), float(self.calls), dtype=np.float32)
        outputs["logits"] = logits
        outputs["hidden_states"] = hidden

        self.calls += 1
        return outputs


class FakeDepthformer:
    """Depthformer that emits the frames of ``frames`` one after another.

    Once exhausted it emits end-of-audio frames.
    """

    def __init__(self, frames=(), num_layers=6, num_kv_heads=8, head_dim=32):
        self.frames = [list(f) for f in frames]
        self.frame_index = -1
        self.shape = (num_layers, 1, num_kv_heads, head_dim)
        self.prev_tokens = []

    def run(self, inputs):
        step = int(inputs["step_idx"])
        past_keys = inputs["past_keys"]
        assert past_keys.shape[2] == step
        assert inputs["hidden_states"].ndim == 2

        if step == 0:
            self.frame_index += 1
        self.prev_tokens.append(int(inputs["prev_token"][0]))

        if self.frame_index < len(self.frames):
            code = self.frames[self.frame_index][step]
        else:
            code = SpecialTokens.END_OF_AUDIO

        logits = np.zeros((1, SpecialTokens.CODEBOOK_VOCAB), dtype=np.float32)
        logits[0, code] = 50.0
        layers, batch, heads, dim = self.shape
        grown = np.zeros((layers, batch, step + 1, heads, dim), dtype=np.float32)
        return {"logits": logits, "new_keys": grown, "new_values": grown.copy()}


class FakeAudioEncoder:
    """Maps ``T`` mel frames to ``T // 4 + 1`` embeddings."""

    def __init__(self, hidden_size=HIDDEN):
        self.hidden_size = hidden_size
        self.mel_shapes = []

    def run(self, inputs):
        mel = inputs["mel_spectrogram"]
        self.mel_shapes.append(mel.shape)
        assert int(inputs["mel_lengths"][0]) == mel.shape[1]
        length = mel.shape[1] // 4 + 1
        return {"audio_embeddings": np.ones((1, length, self.hidden_size), dtype=np.float32)}


def tone_features(num_frames: int, bin_index: int, n_fft: int = 1280, hop: int = 320) -> np.ndarray:
    """STFT features of a stationary cosine centred on ``bin_index``."""
    n_bins = n_fft // 2 + 1
    log_mag = np.full((num_frames, n_bins), -30.0)
    log_mag[:, bin_index] = 0.0
    phase = np.zeros((num_frames, n_bins))
    phase[:, bin_index] = 2 * np.pi * bin_index * hop * np.arange(num_frames) / n_fft
    return np.concatenate([log_mag, phase], axis=1)


class FakeDetokenizer:
    """Returns a pure tone with one STFT frame per audio frame."""

    def __init__(self, bin_index=50):
        self.bin_index = bin_index
        self.codes = []

    def run(self, inputs):
        codes = inputs["audio_codes"]
        self.codes.append(codes)
        features = tone_features(codes.shape[2], self.bin_index)
        return {"stft_features": features[None].astype(np.float32)}


