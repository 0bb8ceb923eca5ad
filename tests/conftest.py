from __future__ import annotations

import threading
from io import BytesIO
from typing import Callable

import numpy as np
import pytest
from PIL import Image

from vocab_engine.extractor import WordExtractor
from vocab_engine.ocr import Recognizer
from vocab_engine.types import ExtractedGrammar, ExtractedWord, ExtractionResult, OcrResult, TileInfo


def png_bytes(width: int, height: int, color=(255, 255, 255)) -> bytes:
    out = BytesIO()
    Image.new("RGB", (width, height), color=color).save(out, format="PNG")
    return out.getvalue()


def noise_png_bytes(width: int, height: int, seed: int = 0) -> bytes:
    """Incompressible image: PNG size grows linearly with the row count."""
    rng = np.random.default_rng(seed)
    arr = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    out = BytesIO()
    Image.fromarray(arr).save(out, format="PNG")
    return out.getvalue()


class StubRecognizer(Recognizer):
    """Recognizer driven by a per-tile callback; records the tiles it saw."""

    name = "stub"

    def __init__(self, fn: Callable[[TileInfo], list[OcrResult]]):
        self.fn = fn
        self.seen: list[TileInfo] = []
        self.deadlines: list[float | None] = []
        self._lock = threading.Lock()

    def recognize(
        self,
        tile: TileInfo,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> list[OcrResult]:
        with self._lock:
            self.seen.append(tile)
            self.deadlines.append(deadline)
        return self.fn(tile)


class StubExtractor(WordExtractor):
    def __init__(
        self,
        words: list[ExtractedWord] | None = None,
        grammar: list[ExtractedGrammar] | None = None,
    ):
        self.words = words or []
        self.grammar = grammar or []
        self.calls: list[str] = []

    def request(self, text: str) -> ExtractionResult:
        self.calls.append(text)
        return ExtractionResult(vocabulary=tuple(self.words), grammar=tuple(self.grammar))


@pytest.fixture(autouse=True)
def _no_api_keys(monkeypatch):
    """Keep a developer's real keys out of the tests."""
    for name in ("OCR_API_KEY", "GEMINI_API_KEY", "ENABLE_UPSCALE", "EXTRACT_GRAMMAR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def small_png() -> bytes:
    return png_bytes(120, 80)


