from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .utils import load_json


DEFAULT_FILE_SIZE_THRESHOLD = 1_000_000
DEFAULT_OVERLAP_PERCENTAGE = 0.10
DEFAULT_UPSCALE_FACTOR = 2.0
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"


@dataclass(frozen=True)
class TilingConfig:
    file_size_threshold: int = DEFAULT_FILE_SIZE_THRESHOLD
    overlap_percentage: float = DEFAULT_OVERLAP_PERCENTAGE
    tile_format: str = "JPEG"  # JPEG|PNG
    tile_quality: int = 85

    def __post_init__(self) -> None:
        if self.file_size_threshold <= 0:
            raise ConfigError(f"file_size_threshold must be > 0, got {self.file_size_threshold}")
        if not (0.0 <= self.overlap_percentage < 1.0):
            raise ConfigError(f"overlap_percentage must be in [0, 1), got {self.overlap_percentage}")
        if self.tile_format.upper() not in ("JPEG", "PNG"):
            raise ConfigError(f"tile_format must be JPEG or PNG, got {self.tile_format}")
        if not (1 <= self.tile_quality <= 100):
            raise ConfigError(f"tile_quality must be in [1, 100], got {self.tile_quality}")


@dataclass(frozen=True)
class UpscaleConfig:
    enabled: bool = False
    scale: float = DEFAULT_UPSCALE_FACTOR

    def __post_init__(self) -> None:
        if not math.isfinite(self.scale) or self.scale <= 1.0:
            raise ConfigError(f"upscale scale must be > 1.0, got {self.scale}")


@dataclass(frozen=True)
class OcrConfig:
    api_key: str = field(default="", repr=False)
    language: str = "kor"
    ocr_engine: int = 2
    # OCR.space rejects images above 5000x5000 px once its own scaling kicks in.
    scale: bool = False
    provider: str = "ocrspace"  # ocrspace|easyocr
    endpoint: str = "https://api.ocr.space/parse/image"
    timeout_s: float = 60.0
    max_workers: int = 8
    max_retries: int = 3
    initial_backoff_s: float = 1.0
    max_backoff_s: float = 30.0

    def __post_init__(self) -> None:
        if self.ocr_engine not in (1, 2):
            raise ConfigError(f"ocr_engine must be 1 or 2, got {self.ocr_engine}")
        if self.provider not in ("ocrspace", "easyocr"):
            raise ConfigError(f"unknown ocr provider: {self.provider}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.timeout_s <= 0:
            raise ConfigError(f"timeout_s must be > 0, got {self.timeout_s}")
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.initial_backoff_s < 0 or self.max_backoff_s < self.initial_backoff_s:
            raise ConfigError("backoff must satisfy 0 <= initial_backoff_s <= max_backoff_s")


@dataclass(frozen=True)
class WordExtractorConfig:
    api_key: str = field(default="", repr=False)
    model: str = DEFAULT_GEMINI_MODEL
    endpoint: str = "https://generativelanguage.googleapis.com/v1beta/models"
    timeout_s: float = 120.0
    # Also ask for grammar patterns alongside the vocabulary.
    extract_grammar: bool = False

    def __post_init__(self) -> None:
        if not self.model.strip():
            raise ConfigError("extractor model must not be empty")
        if self.timeout_s <= 0:
            raise ConfigError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass(frozen=True)
class ReconcileConfig:
    """Seam reconciliation thresholds.

    Ratios are relative to the median detection height of the page so they
    hold after upscaling.
    """

    dedup_iou_threshold: float = 0.5
    line_tolerance_ratio: float = 0.25
    horizontal_gap_ratio: float = 2.0
    line_merge_similarity: float = 0.9

    def __post_init__(self) -> None:
        if not (0.0 < self.dedup_iou_threshold <= 1.0):
            raise ConfigError(f"dedup_iou_threshold must be in (0, 1], got {self.dedup_iou_threshold}")
        if not (0.0 < self.line_merge_similarity <= 1.0):
            raise ConfigError(f"line_merge_similarity must be in (0, 1], got {self.line_merge_similarity}")
        if self.line_tolerance_ratio < 0 or self.horizontal_gap_ratio < 0:
            raise ConfigError("line_tolerance_ratio and horizontal_gap_ratio must be >= 0")


@dataclass(frozen=True)
class PipelineConfig:
    tiling: TilingConfig = field(default_factory=TilingConfig)
    upscale: UpscaleConfig = field(default_factory=UpscaleConfig)
    ocr: OcrConfig = field(default_factory=OcrConfig)
    extractor: WordExtractorConfig = field(default_factory=WordExtractorConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)


def _env_flag(name: str) -> bool | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true")


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    sec = data.get(name, {})
    if not isinstance(sec, dict):
        raise ConfigError(f"config section '{name}' must be an object")
    return dict(sec)


def _build(cls: type, values: dict[str, Any], name: str) -> Any:
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigError(f"invalid '{name}' config: {e}") from e


def load_config(config_path: str | Path | None = None) -> PipelineConfig:
    """Load a PipelineConfig from JSON, filling secrets from the environment.

    Environment fallbacks (only used when the file leaves them unset):
    - OCR_API_KEY -> ocr.api_key
    - GEMINI_API_KEY -> extractor.api_key
    - ENABLE_UPSCALE=1|true -> upscale.enabled
    - EXTRACT_GRAMMAR=1|true -> extractor.extract_grammar
    """
    data: dict[str, Any] = {}
    if config_path is not None:
        try:
            loaded = load_json(config_path)
        except (OSError, ValueError) as e:
            raise ConfigError(f"failed to read config {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError("config root must be an object")
        data = loaded

    ocr = _section(data, "ocr")
    ocr.setdefault("api_key", os.environ.get("OCR_API_KEY", ""))

    extractor = _section(data, "extractor")
    extractor.setdefault("api_key", os.environ.get("GEMINI_API_KEY", ""))
    if "extract_grammar" not in extractor:
        env_grammar = _env_flag("EXTRACT_GRAMMAR")
        if env_grammar is not None:
            extractor["extract_grammar"] = env_grammar

    upscale = _section(data, "upscale")
    if "enabled" not in upscale:
        env_enabled = _env_flag("ENABLE_UPSCALE")
        if env_enabled is not None:
            upscale["enabled"] = env_enabled

    return PipelineConfig(
        tiling=_build(TilingConfig, _section(data, "tiling"), "tiling"),
        upscale=_build(UpscaleConfig, upscale, "upscale"),
        ocr=_build(OcrConfig, ocr, "ocr"),
        extractor=_build(WordExtractorConfig, extractor, "extractor"),
        reconcile=_build(ReconcileConfig, _section(data, "reconcile"), "reconcile"),
    )
