from __future__ import annotations

from hybridchat.services.token_counter import TokenCounter


class WordEncoder:
    def encode(self, text: str) -> list[str]:
        return text.split()


class BrokenEncoder:
    def encode(self, text: str) -> list[str]:
        raise RuntimeError("encoding file unavailable")


def _counter(encoder: object) -> TokenCounter:
    counter = TokenCounter("gpt-4")
    counter._encoder = encoder
    return counter


def test_counts_text_and_messages() -> None:
    counter = _counter(WordEncoder())

    assert counter.count("one two three") == 3
    assert counter.count(None) == 0
    assert counter.count_message({"role": "user", "content": "hi there"}) == 3
    assert counter.count_message(
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "what is this"},
                {"type": "image_url", "image_url": {"url": "data:..."}},
            ],
        }
    ) == 4
    assert counter.count_messages(
        [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi"}]
    ) == 5


def test_failures_count_as_zero() -> None:
    counter = _counter(BrokenEncoder())

    assert counter.count("anything at all") == 0
    assert counter.count_messages([{"role": "user", "content": "hello"}]) == 0
