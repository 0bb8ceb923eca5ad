from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned rectangle in pixel coordinates (x/y = top-left)."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def shifted(self, dy: int) -> "BoundingBox":
        return BoundingBox(self.x, self.y + dy, self.width, self.height)

    def union(self, other: "BoundingBox") -> "BoundingBox":
        x0 = min(self.x, other.x)
        y0 = min(self.y, other.y)
        x1 = max(self.right, other.right)
        y1 = max(self.bottom, other.bottom)
        return BoundingBox(x0, y0, x1 - x0, y1 - y0)

    def iou(self, other: "BoundingBox") -> float:
        """Intersection over Union; 0.0 for disjoint or empty boxes."""
        iw = max(0, min(self.right, other.right) - max(self.x, other.x))
        ih = max(0, min(self.bottom, other.bottom) - max(self.y, other.y))
        intersection = iw * ih
        if intersection == 0:
            return 0.0
        union = self.area + other.area - intersection
        if union <= 0:
            return 0.0
        return intersection / union

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class TileInfo:
    buffer: bytes = field(repr=False)
    start_y: int
    width: int
    height: int
    index: int = 0

    @property
    def context(self) -> BoundingBox:
        """Placement of this tile in full-image coordinates."""
        return BoundingBox(0, self.start_y, self.width, self.height)

    def metadata(self) -> "TileMetadata":
        return TileMetadata(
            index=self.index,
            start_y=self.start_y,
            width=self.width,
            height=self.height,
            buffer_size=len(self.buffer),
        )


@dataclass(frozen=True)
class TileMetadata:
    index: int
    start_y: int
    width: int
    height: int
    buffer_size: int


@dataclass(frozen=True)
class OcrResult:
    text: str
    bbox: BoundingBox  # tile-local


@dataclass(frozen=True)
class OcrResultWithContext:
    text: str
    bbox: BoundingBox  # tile-local
    tile_context: BoundingBox

    @classmethod
    def from_tile(cls, result: OcrResult, tile: TileInfo) -> "OcrResultWithContext":
        return cls(text=result.text, bbox=result.bbox, tile_context=tile.context)


@dataclass(frozen=True)
class OcrLineResult:
    line: str
    bbox: BoundingBox  # full-image

    def to_dict(self) -> dict[str, Any]:
        return {"line": self.line, "bbox": self.bbox.to_dict()}


@dataclass(frozen=True)
class ExtractedWord:
    """A vocabulary term.

    `sense_key` is a short English gloss that tells homonyms apart (e.g. 배
    as "pear" vs "ship"); two entries with the same term but different
    sense keys are distinct vocabulary.
    """

    korean: str
    english: str
    importance_score: float
    sense_key: str = ""
    chapter_example: str = ""
    global_example: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "korean": self.korean,
            "english": self.english,
            "importance_score": self.importance_score,
            "sense_key": self.sense_key,
            "chapter_example": self.chapter_example,
            "global_example": self.global_example,
        }


@dataclass(frozen=True)
class ExtractedGrammar(ExtractedWord):
    """A grammar pattern (e.g. -고 싶다); `korean` holds the pattern."""


@dataclass(frozen=True)
class ExtractionResult:
    vocabulary: tuple[ExtractedWord, ...] = ()
    grammar: tuple[ExtractedGrammar, ...] = ()


@dataclass(frozen=True)
class ReconcileStats:
    detections_in: int = 0
    detections_dropped_degenerate: int = 0
    duplicates_removed: int = 0
    lines_merged: int = 0
    lines_out: int = 0


@dataclass(frozen=True)
class PipelineResult:
    lines: tuple[OcrLineResult, ...]
    words: tuple[ExtractedWord, ...]
    tiles: tuple[TileMetadata, ...] = ()
    stats: ReconcileStats = field(default_factory=ReconcileStats)
    upscaled: bool = False
    grammar: tuple[ExtractedGrammar, ...] = ()

    @property
    def text(self) -> str:
        return "\n".join(line.line for line in self.lines)
