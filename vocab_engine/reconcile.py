"""Tile seam reconciliation.

Turns per-tile detections (tile-local boxes) into deduplicated text lines in
full-image coordinates:

1. lift   - shift each box by its tile's start_y, clip to the image, drop
            blank or degenerate detections
2. dedupe - the same span seen by two adjacent tiles inside their overlap
            band is kept once: the untruncated copy, else the one that sits
            more centrally in its tile
3. group  - greedy line grouping by increasing y
4. assemble - left-to-right text, union bbox; near-identical overlapping
            lines collapse into the longer one
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher

import numpy as np

from .config import ReconcileConfig
from .types import BoundingBox, OcrLineResult, OcrResultWithContext, ReconcileStats
from .utils import clamp_int, normalize_text


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Detection:
    text: str
    key: str  # normalized text
    bbox: BoundingBox  # global
    tile_context: BoundingBox
    order: int  # input position, for stable tie-breaks

    @property
    def edge_distance(self) -> float:
        """Distance of the box center from its tile's vertical midpoint."""
        tile_mid = self.tile_context.y + self.tile_context.height / 2
        return abs(self.bbox.center_y - tile_mid)


@dataclass
class _LineGroup:
    members: list[_Detection] = field(default_factory=list)
    top: int = 0
    bottom: int = 0
    left: int = 0
    right: int = 0

    def add(self, det: _Detection) -> None:
        b = det.bbox
        if not self.members:
            self.top, self.bottom, self.left, self.right = b.y, b.bottom, b.x, b.right
        else:
            self.top = min(self.top, b.y)
            self.bottom = max(self.bottom, b.bottom)
            self.left = min(self.left, b.x)
            self.right = max(self.right, b.right)
        self.members.append(det)


def lift(
    results: list[OcrResultWithContext],
    image_size: tuple[int, int],
) -> tuple[list[_Detection], int]:
    """Translate tile-local boxes to image coordinates.

    Returns (detections, dropped_count).
    """
    img_w, img_h = image_size
    out: list[_Detection] = []
    dropped = 0
    for i, r in enumerate(results):
        text = r.text.strip()
        b = r.bbox.shifted(r.tile_context.y)
        x0 = clamp_int(b.x, 0, img_w)
        y0 = clamp_int(b.y, 0, img_h)
        x1 = clamp_int(b.right, 0, img_w)
        y1 = clamp_int(b.bottom, 0, img_h)
        bbox = BoundingBox(x0, y0, x1 - x0, y1 - y0)
        if not text or bbox.is_degenerate:
            dropped += 1
            continue
        out.append(
            _Detection(
                text=text,
                key=normalize_text(text),
                bbox=bbox,
                tile_context=r.tile_context,
                order=i,
            )
        )
    return out, dropped


def _same_span(a: _Detection, b: _Detection, similarity: float) -> bool:
    """True when two keys read as the same span, one possibly cut short by a tile edge."""
    if a.key == b.key:
        return True
    if a.key and b.key and (a.key in b.key or b.key in a.key):
        return True
    return _text_similarity(a.key, b.key) >= similarity


def dedupe_overlap(
    detections: list[_Detection],
    iou_threshold: float,
    similarity: float = 0.9,
) -> list[_Detection]:
    """Drop cross-tile duplicates produced by the overlap band.

    A tile edge can truncate a span, so texts that contain one another or
    are near-identical count as the same span. Candidates are visited
    longest text first, then most central, so the keeper of each duplicate
    cluster is the copy least likely to be truncated.
    """
    ranked = sorted(detections, key=lambda d: (-len(d.key), d.edge_distance, d.tile_context.y, d.order))
    kept: list[_Detection] = []
    for det in ranked:
        duplicate = any(
            k.tile_context != det.tile_context
            and k.bbox.iou(det.bbox) > iou_threshold
            and _same_span(k, det, similarity)
            for k in kept
        )
        if not duplicate:
            kept.append(det)
    kept.sort(key=lambda d: d.order)
    return kept


def _median_height(detections: list[_Detection]) -> float:
    if not detections:
        return 0.0
    return float(np.median([d.bbox.height for d in detections]))


def group_lines(
    detections: list[_Detection],
    *,
    line_tolerance: float,
    horizontal_gap: float,
) -> list[_LineGroup]:
    groups: list[_LineGroup] = []
    for det in sorted(detections, key=lambda d: (d.bbox.y, d.bbox.x, d.order)):
        cy = det.bbox.center_y
        target = None
        for g in groups:
            in_span = g.top - line_tolerance <= cy <= g.bottom + line_tolerance
            adjacent = det.bbox.x - g.right <= horizontal_gap and g.left - det.bbox.right <= horizontal_gap
            if in_span and adjacent:
                target = g
                break
        if target is None:
            target = _LineGroup()
            groups.append(target)
        target.add(det)
    return groups


def assemble(group: _LineGroup) -> OcrLineResult:
    members = sorted(group.members, key=lambda d: (d.bbox.x, d.bbox.y, d.order))
    bbox = members[0].bbox
    for m in members[1:]:
        bbox = bbox.union(m.bbox)
    return OcrLineResult(line=" ".join(m.text for m in members), bbox=bbox)


def _text_similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, normalize_text(a), normalize_text(b)).ratio()


def merge_similar_lines(
    lines: list[OcrLineResult],
    *,
    similarity: float,
    iou_threshold: float,
) -> list[OcrLineResult]:
    """Collapse lines that are both textually similar and spatially overlapping.

    The longer text wins; seam truncation shortens lines, it never adds text.
    """
    kept: list[OcrLineResult] = []
    for line in sorted(lines, key=lambda ln: -len(ln.line)):
        if any(
            k.bbox.iou(line.bbox) > iou_threshold and _text_similarity(k.line, line.line) >= similarity
            for k in kept
        ):
            continue
        kept.append(line)
    return kept


def reading_order(lines: list[OcrLineResult]) -> list[OcrLineResult]:
    return sorted(lines, key=lambda ln: (ln.bbox.y, ln.bbox.x, ln.line))


def combine_lines(lines: list[OcrLineResult]) -> str:
    return "\n".join(ln.line for ln in reading_order(lines))


@dataclass(frozen=True)
class Reconciler:
    cfg: ReconcileConfig = field(default_factory=ReconcileConfig)

    def reconcile(
        self,
        results: list[OcrResultWithContext],
        image_size: tuple[int, int],
    ) -> tuple[list[OcrLineResult], ReconcileStats]:
        """Reconcile all tiles' detections into lines.

        `results` must hold every tile's detections (the full, ordered set);
        `image_size` is (width, height) of the recognized image.
        """
        detections, dropped = lift(results, image_size)

        tiles = {d.tile_context for d in detections}
        if len(tiles) > 1:
            deduped = dedupe_overlap(
                detections,
                self.cfg.dedup_iou_threshold,
                similarity=self.cfg.line_merge_similarity,
            )
        else:
            deduped = detections

        median_h = _median_height(deduped)
        groups = group_lines(
            deduped,
            line_tolerance=self.cfg.line_tolerance_ratio * median_h,
            horizontal_gap=self.cfg.horizontal_gap_ratio * median_h,
        )
        assembled = [assemble(g) for g in groups]
        lines = merge_similar_lines(
            assembled,
            similarity=self.cfg.line_merge_similarity,
            iou_threshold=self.cfg.dedup_iou_threshold,
        )
        lines = reading_order(lines)

        stats = ReconcileStats(
            detections_in=len(results),
            detections_dropped_degenerate=dropped,
            duplicates_removed=len(detections) - len(deduped),
            lines_merged=len(assembled) - len(lines),
            lines_out=len(lines),
        )
        logger.info(
            "Reconciled %d detections from %d tiles into %d lines (%d duplicates removed)",
            len(results),
            len(tiles),
            len(lines),
            stats.duplicates_removed,
        )
        return lines, stats
