from __future__ import annotations

import base64
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from io import BytesIO
from typing import Any

import numpy as np
import requests
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import OcrConfig
from .errors import ConfigError, RateLimitError, RecognitionError
from .types import BoundingBox, OcrResult, TileInfo


logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_S = 10.0


class Recognizer(ABC):
    """Text recognition capability: tile bytes in, tile-local spans out.

    Implementations must raise RecognitionError when the service is
    unavailable; an empty list means the tile has no text. `deadline` is a
    time.monotonic() value; blocking calls should not outlive it.
    """

    name = "recognizer"

    @abstractmethod
    def recognize(
        self,
        tile: TileInfo,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> list[OcrResult]:
        ...


# ─── OCR.space response schema ────────────────────────────────────────────────


class _Word(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str = Field(alias="WordText")
    left: float = Field(alias="Left")
    top: float = Field(alias="Top")
    width: float = Field(alias="Width")
    height: float = Field(alias="Height")


class _Line(BaseModel):
    model_config = ConfigDict(extra="ignore")

    words: list[_Word] = Field(default_factory=list, alias="Words")


class _TextOverlay(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lines: list[_Line] | None = Field(default=None, alias="Lines")


class _ParsedResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text_overlay: _TextOverlay | None = Field(default=None, alias="TextOverlay")


class OcrSpaceResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    exit_code: int = Field(alias="OCRExitCode")
    is_errored: bool = Field(default=False, alias="IsErroredOnProcessing")
    error_message: Any = Field(default=None, alias="ErrorMessage")
    parsed_results: list[_ParsedResult] | None = Field(default=None, alias="ParsedResults")


def _poly_to_box(poly: list[list[float]] | list[tuple[float, float]]) -> BoundingBox:
    xs = [p[0] for p in poly]
    ys = [p[1] for p in poly]
    x0, y0, x1, y1 = min(xs), min(ys), max(xs), max(ys)
    return BoundingBox(int(x0), int(y0), int(x1) - int(x0), int(y1) - int(y0))


def detect_image_format(buffer: bytes) -> tuple[str, str]:
    """Return (mime_type, ocr.space filetype) from the buffer signature."""
    if buffer[:4] == b"\x89PNG":
        return "image/png", "PNG"
    if buffer[:3] == b"\xff\xd8\xff":
        return "image/jpeg", "JPG"
    logger.warning("Unknown image format, defaulting to JPEG")
    return "image/jpeg", "JPG"


def parse_ocr_response(payload: Any) -> list[OcrResult]:
    """Convert an OCR.space JSON body into tile-local OcrResults.

    Raises RecognitionError for malformed bodies or service-side errors.
    """
    try:
        resp = OcrSpaceResponse.model_validate(payload)
    except ValidationError as e:
        raise RecognitionError(f"malformed OCR response: {e.error_count()} validation errors") from e

    if resp.exit_code != 1 or resp.is_errored:
        msg = resp.error_message
        if isinstance(msg, list):
            msg = "; ".join(str(m) for m in msg)
        raise RecognitionError(f"OCR failed (exit code {resp.exit_code}): {msg or 'unknown error'}")

    results: list[OcrResult] = []
    for parsed in resp.parsed_results or []:
        lines = parsed.text_overlay.lines if parsed.text_overlay else None
        for line in lines or []:
            for w in line.words:
                text = w.text.strip()
                if not text:
                    continue
                results.append(
                    OcrResult(
                        text=text,
                        bbox=BoundingBox(
                            x=max(0, round(w.left)),
                            y=max(0, round(w.top)),
                            width=max(0, round(w.width)),
                            height=max(0, round(w.height)),
                        ),
                    )
                )
    logger.debug("OCR response parsed: %d words", len(results))
    return results


@dataclass
class OcrSpaceRecognizer(Recognizer):
    """OCR.space HTTP API client."""

    cfg: OcrConfig
    session: requests.Session | None = None

    name = "ocrspace"

    def __post_init__(self) -> None:
        if not self.cfg.api_key:
            raise ConfigError("OCR_API_KEY not configured")

    def recognize(
        self,
        tile: TileInfo,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> list[OcrResult]:
        logger.debug(
            "Recognizing tile %d (start_y=%d, %d bytes)", tile.index, tile.start_y, len(tile.buffer)
        )
        payload = self._with_backoff(lambda: self._post(tile.buffer, deadline), tile.index, cancel)
        try:
            results = parse_ocr_response(payload)
        except RecognitionError as e:
            e.tile_index = tile.index
            raise
        if not results:
            logger.warning("Tile %d OCR returned zero results", tile.index)
        return results

    def _request_timeout(self, deadline: float | None) -> tuple[float, float]:
        """(connect, read) timeouts for one request, capped by the time left.

        requests applies the read timeout per socket read, so a slow trickle
        of bytes can still overrun it slightly.
        """
        read = self.cfg.timeout_s
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RecognitionError("invocation deadline exceeded before OCR request")
            read = min(read, remaining)
        return min(_CONNECT_TIMEOUT_S, read), read

    def _post(self, buffer: bytes, deadline: float | None = None) -> Any:
        mime, filetype = detect_image_format(buffer)
        data = {
            "base64Image": f"data:{mime};base64,{base64.b64encode(buffer).decode('ascii')}",
            "language": self.cfg.language,
            "isOverlayRequired": "true",
            "detectOrientation": "false",
            "isCreateSearchablePdf": "false",
            "isSearchablePdfHideTextLayer": "false",
            "scale": "true" if self.cfg.scale else "false",
            "isTable": "false",
            "OCREngine": str(self.cfg.ocr_engine),
            "filetype": filetype,
        }
        post = self.session.post if self.session is not None else requests.post
        try:
            response = post(
                self.cfg.endpoint,
                headers={"apikey": self.cfg.api_key},
                data=data,
                timeout=self._request_timeout(deadline),
            )
        except requests.exceptions.RequestException as e:
            raise RecognitionError(f"OCR request failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitError("OCR API rate limit exceeded", status_code=429)
        if not response.ok:
            raise RecognitionError(f"OCR API HTTP error: {response.status_code}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise RecognitionError(f"OCR API returned invalid JSON: {e}") from e

    def _with_backoff(self, fn, tile_index: int, cancel: threading.Event | None) -> Any:
        attempt = 0
        while True:
            try:
                return fn()
            except RateLimitError as e:
                if attempt >= self.cfg.max_retries:
                    logger.error("Tile %d: rate limited after %d retries", tile_index, attempt)
                    e.tile_index = tile_index
                    raise
                delay = min(self.cfg.initial_backoff_s * (2 ** attempt), self.cfg.max_backoff_s)
                logger.warning(
                    "Tile %d: rate limit hit, retry %d/%d in %.1fs",
                    tile_index,
                    attempt + 1,
                    self.cfg.max_retries,
                    delay,
                )
                waiter = cancel or threading.Event()
                if waiter.wait(delay):
                    raise RecognitionError("cancelled during rate-limit backoff", tile_index=tile_index) from e
                attempt += 1
            except RecognitionError as e:
                e.tile_index = tile_index
                raise


@dataclass
class EasyOcrRecognizer(Recognizer):
    """Offline recognizer backed by the easyocr package (optional extra)."""

    cfg: OcrConfig
    _reader: Any | None = None
    _lock: threading.Lock | None = None

    name = "easyocr"

    # OCR.space language codes -> easyocr codes
    _LANGS = {"kor": "ko", "eng": "en", "jpn": "ja", "chs": "ch_sim", "cht": "ch_tra"}

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _get_reader(self) -> Any:
        # Model loading is not thread-safe; readtext is called per tile afterwards.
        with self._lock:
            if self._reader is None:
                import easyocr

                langs = [self._LANGS.get(code.strip(), code.strip()) for code in self.cfg.language.split(",")]
                self._reader = easyocr.Reader(langs, gpu=False)
            return self._reader

    def recognize(
        self,
        tile: TileInfo,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> list[OcrResult]:
        try:
            reader = self._get_reader()
            with Image.open(BytesIO(tile.buffer)) as img:
                arr = np.array(img.convert("RGB"))
            raw = reader.readtext(arr)
        except Exception as e:
            raise RecognitionError(f"easyocr failed: {e}", tile_index=tile.index) from e

        results: list[OcrResult] = []
        for poly, text, _confidence in raw:
            text = str(text).strip()
            if not text:
                continue
            results.append(OcrResult(text=text, bbox=_poly_to_box(poly)))
        return results


def build_recognizer(cfg: OcrConfig) -> Recognizer:
    if cfg.provider == "easyocr":
        return EasyOcrRecognizer(cfg)
    return OcrSpaceRecognizer(cfg)
