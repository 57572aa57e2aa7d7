"""Token counting used to size conversation windows."""

import threading
from typing import Protocol, runtime_checkable

import tiktoken

from chatloop.utils.logging import get_logger

logger = get_logger(__name__)

# Close approximation for models without a published encoding
DEFAULT_ENCODING_MODEL = "gpt-4"


@runtime_checkable
class Tokenizer(Protocol):
    """Anything that can count tokens in a piece of text."""

    def count(self, text: str) -> int: ...


class CharTokenizer:
    """Heuristic tokenizer: roughly 4 characters per token."""

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return len(text) // self.chars_per_token


class TiktokenTokenizer:
    """Tokenizer backed by a tiktoken encoding."""

    def __init__(self, encoding: tiktoken.Encoding):
        self.encoding = encoding

    @classmethod
    def for_model(cls, model: str) -> "TiktokenTokenizer":
        try:
            encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            encoding = tiktoken.encoding_for_model(DEFAULT_ENCODING_MODEL)
        return cls(encoding)

    def count(self, text: str) -> int:
        return len(self.encoding.encode(text, disallowed_special=()))


_tokenizers: dict[str, Tokenizer] = {}
_tokenizers_lock = threading.Lock()


def get_tokenizer(model: str) -> Tokenizer:
    """Get the shared tokenizer for a model.

    Tokenizers are created once per model id and shared by every agent in the
    process. If no tiktoken encoding can be loaded the heuristic tokenizer is
    cached instead.
    """
    tokenizer = _tokenizers.get(model)
    if tokenizer is not None:
        return tokenizer

    with _tokenizers_lock:
        tokenizer = _tokenizers.get(model)
        if tokenizer is None:
            try:
                tokenizer = TiktokenTokenizer.for_model(model)
            except Exception as e:
                logger.warning(f"No tiktoken encoding for {model}, falling back to heuristic tokenizer: {e}")
                tokenizer = CharTokenizer()
            _tokenizers[model] = tokenizer
    return tokenizer


def clear_tokenizer_cache() -> None:
    """Forget all cached tokenizers."""
    with _tokenizers_lock:
        _tokenizers.clear()
