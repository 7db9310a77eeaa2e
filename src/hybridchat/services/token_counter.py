"""Token counting for usage reporting."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

import tiktoken

logger = logging.getLogger(__name__)

FALLBACK_ENCODING = "cl100k_base"


class TokenCounter:
    """Count tokens with a fixed tokenizer.

    Counts are informational only. Any tokenizer failure is logged and
    reported as zero so usage reporting never changes the outcome of a turn.
    """

    def __init__(self, model: str = "gpt-4") -> None:
        self._model = model
        self._encoder: Any = None

    def _get_encoder(self) -> Any:
        if self._encoder is None:
            try:
                self._encoder = tiktoken.encoding_for_model(self._model)
            except KeyError:
                self._encoder = tiktoken.get_encoding(FALLBACK_ENCODING)
        return self._encoder

    def count(self, text: str | None) -> int:
        if not text:
            return 0
        try:
            return len(self._get_encoder().encode(text))
        except Exception as exc:  # tokenizer download or encode failure
            logger.warning("Token counting failed: %s", exc)
            return 0

    def count_message(self, message: Mapping[str, Any]) -> int:
        content = message.get("content")
        if isinstance(content, list):
            text = " ".join(
                str(part.get("text", ""))
                for part in content
                if isinstance(part, Mapping) and part.get("type") == "text"
            )
        else:
            text = str(content or "")
        return self.count(str(message.get("role", ""))) + self.count(text)

    def count_messages(self, messages: Iterable[Mapping[str, Any]]) -> int:
        return sum(self.count_message(message) for message in messages)


__all__ = ["TokenCounter"]
