from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from io import BytesIO

from PIL import Image

from .config import (
    OcrConfig,
    PipelineConfig,
    ReconcileConfig,
    TilingConfig,
    UpscaleConfig,
    WordExtractorConfig,
)
from .errors import ImageDecodeError, PipelineCancelledError, PipelineError, RecognitionError
from .extractor import GeminiWordExtractor, WordExtractor
from .ocr import Recognizer, build_recognizer
from .reconcile import Reconciler, combine_lines
from .tiling import Tiler
from .types import ExtractionResult, OcrResultWithContext, PipelineResult, TileInfo
from .upscale import Upscaler


logger = logging.getLogger(__name__)

# How often the join loop re-checks cancellation/deadline.
_POLL_INTERVAL_S = 0.05


@dataclass
class VocabularyPipeline:
    """One chapter page image in, reconciled lines + vocabulary out.

    Stateless across invocations; `run` may be called repeatedly.
    """

    cfg: PipelineConfig
    recognizer: Recognizer
    extractor: WordExtractor
    upscaler: Upscaler = field(init=False)
    tiler: Tiler = field(init=False)
    reconciler: Reconciler = field(init=False)

    def __post_init__(self) -> None:
        self.upscaler = Upscaler(self.cfg.upscale)
        self.tiler = Tiler(self.cfg.tiling)
        self.reconciler = Reconciler(self.cfg.reconcile)

    def run(
        self,
        image_bytes: bytes,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> PipelineResult:
        """Run every stage; raise a PipelineError subclass naming the failed stage."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        cancel = cancel or threading.Event()

        logger.info("Pipeline started: %d bytes", len(image_bytes))

        processed = self.upscaler.upscale(image_bytes)
        upscaled = processed is not image_bytes

        tiles = self.tiler.create_tiles(processed)
        image_size = _image_size(processed)

        results = self._recognize_all(tiles, cancel, deadline)
        self._check_cancel(cancel, deadline)

        lines, stats = self.reconciler.reconcile(results, image_size)
        text = combine_lines(lines)
        if not text.strip():
            logger.warning("No text detected in image, skipping word extraction")
            extracted = ExtractionResult()
        else:
            extracted = self.extractor.extract_all(text)

        logger.info(
            "Pipeline completed: %d lines, %d words, %d grammar patterns",
            len(lines),
            len(extracted.vocabulary),
            len(extracted.grammar),
        )
        return PipelineResult(
            lines=tuple(lines),
            words=extracted.vocabulary,
            grammar=extracted.grammar,
            tiles=tuple(t.metadata() for t in tiles),
            stats=stats,
            upscaled=upscaled,
        )

    def _recognize_all(
        self,
        tiles: list[TileInfo],
        cancel: threading.Event,
        deadline: float | None,
    ) -> list[OcrResultWithContext]:
        """Fan out one recognition call per tile and join them all.

        Any tile failure fails the whole invocation; cancellation stops the
        pool without waiting for in-flight calls.
        """
        # Own event so a tile failure can stop sibling backoffs without
        # touching the caller's event.
        abort = threading.Event()
        per_tile: dict[int, list[OcrResultWithContext]] = {}

        workers = min(self.cfg.ocr.max_workers, len(tiles)) or 1
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ocr-tile")
        futures: dict[Future, TileInfo] = {
            executor.submit(self._recognize_tile, tile, abort, deadline): tile for tile in tiles
        }
        try:
            pending = set(futures)
            while pending:
                self._check_cancel(cancel, deadline)
                done, pending = wait(pending, timeout=_POLL_INTERVAL_S, return_when=FIRST_EXCEPTION)
                for fut in done:
                    tile = futures[fut]
                    exc = fut.exception()
                    if exc is not None:
                        logger.error("Tile %d OCR failed: %s", tile.index, exc)
                        if isinstance(exc, RecognitionError):
                            raise exc
                        raise RecognitionError(f"tile {tile.index}: {exc}", tile_index=tile.index) from exc
                    per_tile[tile.index] = fut.result()
        except PipelineError:
            abort.set()
            raise
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        ordered: list[OcrResultWithContext] = []
        for tile in tiles:
            ordered.extend(per_tile[tile.index])
        logger.info("Recognized %d tiles, %d detections", len(tiles), len(ordered))
        return ordered

    def _recognize_tile(
        self,
        tile: TileInfo,
        abort: threading.Event,
        deadline: float | None,
    ) -> list[OcrResultWithContext]:
        results = self.recognizer.recognize(tile, cancel=abort, deadline=deadline)
        logger.debug("Tile %d: %d detections", tile.index, len(results))
        return [OcrResultWithContext.from_tile(r, tile) for r in results]

    @staticmethod
    def _check_cancel(cancel: threading.Event, deadline: float | None) -> None:
        if cancel.is_set():
            raise PipelineCancelledError("invocation cancelled by caller")
        if deadline is not None and time.monotonic() >= deadline:
            raise PipelineCancelledError("invocation deadline exceeded")


def _image_size(image_bytes: bytes) -> tuple[int, int]:
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            return img.size
    except Exception as e:
        raise ImageDecodeError(f"cannot read image size: {e}") from e


def run_pipeline(
    image_bytes: bytes,
    tiling: TilingConfig,
    ocr: OcrConfig,
    extractor: WordExtractorConfig,
    *,
    upscale: UpscaleConfig | None = None,
    reconcile: ReconcileConfig | None = None,
    recognizer: Recognizer | None = None,
    word_extractor: WordExtractor | None = None,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
) -> PipelineResult:
    """Job orchestrator entry point.

    Builds the HTTP-backed recognizer/extractor from config unless stubs
    are passed in.
    """
    cfg = PipelineConfig(
        tiling=tiling,
        upscale=upscale or UpscaleConfig(),
        ocr=ocr,
        extractor=extractor,
        reconcile=reconcile or ReconcileConfig(),
    )
    pipeline = VocabularyPipeline(
        cfg=cfg,
        recognizer=recognizer or build_recognizer(ocr),
        extractor=word_extractor or GeminiWordExtractor(extractor),
    )
    return pipeline.run(image_bytes, cancel=cancel, timeout=timeout)
