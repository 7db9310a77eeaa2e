from __future__ import annotations

import pytest

from hybridchat.chat.modes import ChatMode, select_chat_mode


@pytest.mark.parametrize(
    ("has_image", "documents", "tools", "expected"),
    [
        (True, 3, 2, ChatMode.MULTIMODAL),
        (True, 0, 0, ChatMode.MULTIMODAL),
        (False, 1, 5, ChatMode.HYBRID),
        (False, 0, 3, ChatMode.EXTENSIONS),
        (False, 0, 0, ChatMode.EXTENSIONS),
    ],
)
def test_mode_priority(has_image: bool, documents: int, tools: int, expected: ChatMode) -> None:
    assert select_chat_mode(has_image, documents, tools) is expected


def test_mode_values_are_wire_strings() -> None:
    assert ChatMode.HYBRID == "hybrid"
    assert ChatMode.MULTIMODAL.value == "multimodal"
