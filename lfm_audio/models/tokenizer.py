"""LFM-Audio tokenizer based on the HuggingFace ``tokenizers`` library."""

import json
from pathlib import Path

from tokenizers import Tokenizer

# Special tokens
BOS_TOKEN = "<|startoftext|>"
EOS_TOKEN = "<|endoftext|>"
IM_START_TOKEN = "<|im_start|>"
IM_END_TOKEN = "<|im_end|>"
AUDIO_START_TOKEN = "<|audio_start|>"
TEXT_START_TOKEN = "<|text_start|>"
TEXT_END_TOKEN = "<|text_end|>"

SYSTEM_TEMPLATE = f"{BOS_TOKEN}{IM_START_TOKEN}system\n{{system}}{IM_END_TOKEN}\n"
USER_OPEN = f"{IM_START_TOKEN}user\n"
ASSISTANT_OPEN = f"{IM_END_TOKEN}\n{IM_START_TOKEN}assistant\n"


class LfmTokenizer:
    """Thin wrapper exposing encode/decode and the end-of-sequence id."""

    def __init__(self, tokenizer: Tokenizer, eos_token: str = EOS_TOKEN) -> None:
        self._tokenizer = tokenizer
        self.eos_token_id = tokenizer.token_to_id(eos_token)

    @property
    def vocab_size(self) -> int:
        return self._tokenizer.get_vocab_size()

    def get_token_id(self, token: str) -> int:
        token_id = self._tokenizer.token_to_id(token)
        if token_id is None:
            raise KeyError(f"Unknown token: {token}")
        return token_id

    def encode(self, s: str) -> list[int]:
        # Prompts already carry their special tokens.
        return self._tokenizer.encode(s, add_special_tokens=False).ids

    def decode(self, tokens: list[int], skip_special_tokens: bool = True) -> str:
        return self._tokenizer.decode(tokens, skip_special_tokens=skip_special_tokens)

    @classmethod
    def from_pretrained(cls, path: str | Path) -> "LfmTokenizer":
        path = Path(path)
        tokenizer = Tokenizer.from_file(str(path / "tokenizer.json"))

        eos_token = EOS_TOKEN
        config_path = path / "tokenizer_config.json"
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                eos = json.load(f).get("eos_token", EOS_TOKEN)
            # Older configs store AddedToken dicts.
            eos_token = eos["content"] if isinstance(eos, dict) else eos

        return cls(tokenizer, eos_token=eos_token)
