"""
Tokenizers
----------
Chunk sizes are measured in real model tokens.  The default is tiktoken's
BPE encoder; deployments that embed with a HuggingFace-hosted model (e.g.
jinaai/jina-embeddings-v3) can count with that model's own tokenizer via the
optional `hf` extra so chunk budgets line up with the provider's context
window exactly.
"""
from __future__ import annotations

from typing import Protocol

import tiktoken
from loguru import logger

from ragindex.config import ChunkingConfig
from ragindex.errors import ValidationError


class Tokenizer(Protocol):
    name: str

    def encode(self, text: str) -> list[int]: ...

    def decode(self, ids: list[int]) -> str: ...

    def count(self, text: str) -> int: ...


class TiktokenTokenizer:
    def __init__(self, encoding: str = "cl100k_base") -> None:
        self.name = f"tiktoken:{encoding}"
        self._enc = tiktoken.get_encoding(encoding)

    def encode(self, text: str) -> list[int]:
        return self._enc.encode(text, disallowed_special=())

    def decode(self, ids: list[int]) -> str:
        return self._enc.decode(ids)

    def count(self, text: str) -> int:
        return len(self.encode(text))


class HuggingFaceTokenizer:
    """Tokenizer of a HuggingFace model; needs `pip install ragindex[hf]`."""

    def __init__(self, model_name: str) -> None:
        from transformers import AutoTokenizer

        self.name = f"hf:{model_name}"
        self._tok = AutoTokenizer.from_pretrained(model_name, trust_remote_code=True)

    def encode(self, text: str) -> list[int]:
        return self._tok.encode(text, add_special_tokens=False)

    def decode(self, ids: list[int]) -> str:
        return self._tok.decode(ids, skip_special_tokens=True, clean_up_tokenization_spaces=False)

    def count(self, text: str) -> int:
        return len(self.encode(text))


def build_tokenizer(cfg: ChunkingConfig) -> Tokenizer:
    if cfg.tokenizer == "tiktoken":
        tok: Tokenizer = TiktokenTokenizer(cfg.tokenizer_model)
    elif cfg.tokenizer == "huggingface":
        tok = HuggingFaceTokenizer(cfg.tokenizer_model)
    else:
        raise ValidationError(f"Unknown tokenizer backend: {cfg.tokenizer!r}")
    logger.info(f"[Tokenizer] Using {tok.name}")
    return tok
