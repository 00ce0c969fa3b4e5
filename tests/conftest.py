"""Shared pytest fixtures used across the test suite."""

from __future__ import annotations

import threading
from typing import Callable, List, Optional, Sequence, Union

import cv2
import numpy as np
import pytest


# ── Synthetic images ───────────────────────────────────────────────────

def draw_ruled_table(
    width: int = 800,
    height: int = 1000,
    left: int = 100,
    top: int = 150,
    columns: int = 6,
    rows: int = 15,
    cell_w: int = 100,
    cell_h: int = 50,
) -> np.ndarray:
    """White page with a black ruled grid."""
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    right = left + columns * cell_w
    bottom = top + rows * cell_h
    for r in range(rows + 1):
        y = top + r * cell_h
        cv2.line(img, (left, y), (right, y), (0, 0, 0), 2)
    for c in range(columns + 1):
        x = left + c * cell_w
        cv2.line(img, (x, top), (x, bottom), (0, 0, 0), 2)
    return img


def draw_ink_blocks(
    spans: Sequence[tuple],
    width: int = 600,
    height: int = 400,
) -> np.ndarray:
    """White page with solid dark blocks over the given x-spans."""
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    for x0, x1 in spans:
        img[40:height - 40, x0:x1] = 30
    return img


@pytest.fixture
def ruled_sheet() -> np.ndarray:
    return draw_ruled_table()


@pytest.fixture
def blank_page() -> np.ndarray:
    return np.full((900, 600, 3), 255, dtype=np.uint8)


@pytest.fixture
def six_column_page() -> np.ndarray:
    """Six text columns of 80 px separated by 20 px gaps."""
    return draw_ink_blocks([(10 + i * 100, 90 + i * 100) for i in range(6)])


@pytest.fixture
def three_gap_page() -> np.ndarray:
    """Four text blocks, i.e. only three gaps."""
    return draw_ink_blocks([(10, 140), (160, 290), (310, 440), (460, 590)])


# ── Fake recognizer ────────────────────────────────────────────────────

class FakeRecognizer:
    """Returns canned replies in call order; an Exception entry is raised."""

    name = "fake"

    def __init__(self, replies: Union[str, Sequence[Union[str, Exception]]]) -> None:
        self._replies: List[Union[str, Exception]] = (
            [replies] if isinstance(replies, str) else list(replies)
        )
        self._repeat = isinstance(replies, str)
        self._lock = threading.Lock()
        self.calls: List[dict] = []

    def recognize(self, image_bytes: bytes, prompt: str, timeout: Optional[float] = None) -> str:
        with self._lock:
            self.calls.append({"bytes": len(image_bytes), "prompt": prompt, "timeout": timeout})
            reply = self._replies[0] if self._repeat else self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def fake_recognizer() -> Callable[..., FakeRecognizer]:
    return FakeRecognizer
