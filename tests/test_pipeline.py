"""End-to-end pipeline runs with stub recognizer/extractor."""
from __future__ import annotations

import threading
import time

import pytest

from conftest import StubExtractor, StubRecognizer, noise_png_bytes, png_bytes
from vocab_engine.config import (
    OcrConfig,
    PipelineConfig,
    TilingConfig,
    UpscaleConfig,
    WordExtractorConfig,
)
from vocab_engine.errors import (
    ExtractionSchemaError,
    ImageDecodeError,
    PipelineCancelledError,
    RecognitionError,
)
from vocab_engine.pipeline import VocabularyPipeline, run_pipeline
from vocab_engine.tiling import plan_bands
from vocab_engine.types import BoundingBox, ExtractedGrammar, ExtractedWord, OcrResult


def _pipeline(recognizer, extractor, **cfg) -> VocabularyPipeline:
    return VocabularyPipeline(cfg=PipelineConfig(**cfg), recognizer=recognizer, extractor=extractor)


class TestSingleTile:
    def test_round_trip(self, small_png):
        recognizer = StubRecognizer(
            lambda tile: [
                OcrResult("친구", BoundingBox(60, 10, 30, 20)),
                OcrResult("사랑해", BoundingBox(10, 10, 40, 20)),
            ]
        )
        extractor = StubExtractor(
            [
                ExtractedWord("사랑", "love", 0.4),
                ExtractedWord("친구", "friend", 0.7),
                ExtractedWord("사랑", "love", 0.9),
            ]
        )
        result = _pipeline(recognizer, extractor).run(small_png)

        assert [ln.line for ln in result.lines] == ["사랑해 친구"]
        assert extractor.calls == ["사랑해 친구"]
        assert result.words == (ExtractedWord("사랑", "love", 0.9), ExtractedWord("친구", "friend", 0.7))
        assert len(result.tiles) == 1
        assert result.upscaled is False
        assert result.text == "사랑해 친구"

    def test_no_text_is_success_with_no_words(self, small_png):
        extractor = StubExtractor([ExtractedWord("사랑", "love", 1)])
        result = _pipeline(StubRecognizer(lambda tile: []), extractor).run(small_png)
        assert result.lines == ()
        assert result.words == ()
        assert result.grammar == ()

    def test_grammar_patterns_carried_through(self, small_png):
        recognizer = StubRecognizer(lambda tile: [OcrResult("집에 가고 싶어", BoundingBox(10, 10, 90, 20))])
        extractor = StubExtractor(
            [ExtractedWord("집", "house", 50, sense_key="home")],
            grammar=[
                ExtractedGrammar("-고 싶다", "want to", 80, sense_key="desire"),
                ExtractedGrammar("-고 싶다", "want to", 60, sense_key="desire"),
            ],
        )
        result = _pipeline(recognizer, extractor).run(small_png)
        assert result.words == (ExtractedWord("집", "house", 50, sense_key="home"),)
        assert result.grammar == (ExtractedGrammar("-고 싶다", "want to", 80, sense_key="desire"),)
        assert extractor.calls == []

    def test_upscaled_coordinates(self):
        recognizer = StubRecognizer(lambda tile: [OcrResult("크다", BoundingBox(0, 0, tile.width, 10))])
        result = _pipeline(recognizer, StubExtractor(), upscale=UpscaleConfig(enabled=True, scale=2.0)).run(
            png_bytes(30, 20)
        )
        assert result.upscaled is True
        assert recognizer.seen[0].width == 60
        assert result.lines[0].bbox.width == 60

    def test_bad_image(self):
        with pytest.raises(ImageDecodeError):
            _pipeline(StubRecognizer(lambda tile: []), StubExtractor()).run(b"garbage")

    def test_extraction_failure_propagates(self, small_png):
        class BadExtractor(StubExtractor):
            def request(self, text):
                raise ExtractionSchemaError("no candidate text")

        recognizer = StubRecognizer(lambda tile: [OcrResult("안녕", BoundingBox(1, 1, 10, 10))])
        with pytest.raises(ExtractionSchemaError) as exc_info:
            _pipeline(recognizer, BadExtractor()).run(small_png)
        assert exc_info.value.stage == "extraction"


class TestTiledRun:
    def _tiled(self, height: int = 300, overlap: float = 0.3):
        image = noise_png_bytes(60, height, seed=7)
        tiling = TilingConfig(file_size_threshold=len(image) // 3, overlap_percentage=overlap)
        return image, tiling

    def test_every_tile_recognized_in_parallel(self):
        image, tiling = self._tiled()
        recognizer = StubRecognizer(lambda tile: [])
        result = _pipeline(recognizer, StubExtractor(), tiling=tiling).run(image)
        assert len(result.tiles) > 1
        assert sorted(t.index for t in recognizer.seen) == list(range(len(result.tiles)))

    def test_overlap_text_reported_once(self):
        image, tiling = self._tiled()
        bands = plan_bands(
            300,
            len(image),
            file_size_threshold=tiling.file_size_threshold,
            overlap_percentage=tiling.overlap_percentage,
        )
        # Inside the band shared by tiles 0 and 1.
        global_y = bands[1][0] + 2

        def recognize(tile):
            local_y = global_y - tile.start_y
            if 0 <= local_y and local_y + 10 <= tile.height:
                return [OcrResult("안녕", BoundingBox(5, local_y, 30, 10))]
            return []

        recognizer = StubRecognizer(recognize)
        result = _pipeline(recognizer, StubExtractor(), tiling=tiling).run(image)

        assert [ln.line for ln in result.lines] == ["안녕"]
        assert result.lines[0].bbox == BoundingBox(5, global_y, 30, 10)
        assert result.stats.duplicates_removed >= 1

    def test_one_tile_failure_fails_invocation(self):
        image, tiling = self._tiled()

        def recognize(tile):
            if tile.index == 1:
                raise RecognitionError("OCR API HTTP error: 502", status_code=502)
            return [OcrResult("안녕", BoundingBox(0, 0, 10, 10))]

        extractor = StubExtractor()
        with pytest.raises(RecognitionError) as exc_info:
            _pipeline(StubRecognizer(recognize), extractor, tiling=tiling).run(image)
        assert exc_info.value.status_code == 502
        assert extractor.calls == []

    def test_unexpected_exception_wrapped(self):
        image, tiling = self._tiled()

        def recognize(tile):
            raise KeyError("boom")

        with pytest.raises(RecognitionError):
            _pipeline(StubRecognizer(recognize), StubExtractor(), tiling=tiling).run(image)


class TestCancellation:
    def test_deadline_passed_to_recognizer(self, small_png):
        recognizer = StubRecognizer(lambda tile: [])
        before = time.monotonic()
        _pipeline(recognizer, StubExtractor()).run(small_png, timeout=30)
        (deadline,) = recognizer.deadlines
        assert before + 30 <= deadline <= time.monotonic() + 30

    def test_no_timeout_no_deadline(self, small_png):
        recognizer = StubRecognizer(lambda tile: [])
        _pipeline(recognizer, StubExtractor()).run(small_png)
        assert recognizer.deadlines == [None]

    def test_cancelled_before_start(self, small_png):
        cancel = threading.Event()
        cancel.set()
        extractor = StubExtractor()
        with pytest.raises(PipelineCancelledError):
            _pipeline(StubRecognizer(lambda tile: []), extractor).run(small_png, cancel=cancel)
        assert extractor.calls == []

    def test_deadline_stops_slow_recognition(self, small_png):
        release = threading.Event()

        def recognize(tile):
            release.wait(5)
            return []

        started = time.monotonic()
        try:
            with pytest.raises(PipelineCancelledError, match="deadline"):
                _pipeline(StubRecognizer(recognize), StubExtractor()).run(small_png, timeout=0.2)
        finally:
            release.set()
        assert time.monotonic() - started < 4

    def test_cancel_from_another_thread(self, small_png):
        cancel = threading.Event()
        release = threading.Event()

        def recognize(tile):
            cancel.set()
            release.wait(5)
            return []

        try:
            with pytest.raises(PipelineCancelledError, match="cancelled"):
                _pipeline(StubRecognizer(recognize), StubExtractor()).run(small_png, cancel=cancel)
        finally:
            release.set()


class TestRunPipeline:
    def test_entry_point_with_stubs(self, small_png):
        recognizer = StubRecognizer(lambda tile: [OcrResult("학교", BoundingBox(5, 5, 30, 15))])
        extractor = StubExtractor([ExtractedWord("학교", "school", 77)])
        result = run_pipeline(
            small_png,
            TilingConfig(),
            OcrConfig(),
            WordExtractorConfig(),
            recognizer=recognizer,
            word_extractor=extractor,
        )
        assert result.text == "학교"
        assert [w.to_dict() for w in result.words] == [
            {
                "korean": "학교",
                "english": "school",
                "importance_score": 77,
                "sense_key": "",
                "chapter_example": "",
                "global_example": "",
            }
        ]
