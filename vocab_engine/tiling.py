from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from io import BytesIO

from PIL import Image

from .config import TilingConfig
from .errors import ImageDecodeError
from .types import TileInfo


logger = logging.getLogger(__name__)


def needs_tiling(image_bytes: bytes, threshold: int) -> bool:
    return len(image_bytes) >= threshold


def plan_bands(
    height: int,
    byte_size: int,
    *,
    file_size_threshold: int,
    overlap_percentage: float,
) -> list[tuple[int, int]]:
    """Return (start_y, band_height) pairs covering [0, height).

    Band height is the largest row count whose estimated byte cost
    (byte_size / height per row) stays below the threshold. Consecutive bands
    start `band_height * (1 - overlap)` rows apart; the last band is stretched
    or shortened so it ends exactly at `height`.
    """
    if height <= 0:
        return []
    if byte_size < file_size_threshold:
        return [(0, height)]

    bytes_per_row = byte_size / height
    # Strictly below threshold: rows * bytes_per_row < threshold.
    band_height = math.ceil(file_size_threshold / bytes_per_row) - 1
    band_height = max(1, min(height, band_height))
    stride = max(1, math.floor(band_height * (1.0 - overlap_percentage)))

    bands: list[tuple[int, int]] = []
    start = 0
    while True:
        if start + band_height >= height:
            bands.append((start, height - start))
            break
        bands.append((start, band_height))
        start += stride
    return bands


@dataclass(frozen=True)
class Tiler:
    cfg: TilingConfig

    def create_tiles(self, image_bytes: bytes) -> list[TileInfo]:
        try:
            img = Image.open(BytesIO(image_bytes))
            width, height = img.size
        except Exception as e:
            raise ImageDecodeError(f"cannot read image metadata: {e}") from e

        logger.debug(
            "Tiling %dx%d image, %d bytes (threshold=%d, overlap=%.2f)",
            width,
            height,
            len(image_bytes),
            self.cfg.file_size_threshold,
            self.cfg.overlap_percentage,
        )

        if not needs_tiling(image_bytes, self.cfg.file_size_threshold):
            img.close()
            logger.debug("Image does not need tiling, returning single tile")
            return [TileInfo(buffer=image_bytes, start_y=0, width=width, height=height, index=0)]

        bands = plan_bands(
            height,
            len(image_bytes),
            file_size_threshold=self.cfg.file_size_threshold,
            overlap_percentage=self.cfg.overlap_percentage,
        )

        tiles: list[TileInfo] = []
        try:
            with img:
                img.load()
                for i, (start_y, band_h) in enumerate(bands):
                    band = img.crop((0, start_y, width, start_y + band_h))
                    tiles.append(
                        TileInfo(
                            buffer=self._encode(band),
                            start_y=start_y,
                            width=width,
                            height=band_h,
                            index=i,
                        )
                    )
                    logger.debug("Tile %d: start_y=%d height=%d", i, start_y, band_h)
        except OSError as e:
            raise ImageDecodeError(f"cannot decode image for tiling: {e}") from e

        logger.info("Created %d tiles for %d px tall image", len(tiles), height)
        return tiles

    def _encode(self, band: Image.Image) -> bytes:
        out = BytesIO()
        if self.cfg.tile_format.upper() == "JPEG":
            if band.mode not in ("RGB", "L"):
                band = band.convert("RGB")
            band.save(out, format="JPEG", quality=self.cfg.tile_quality)
        else:
            band.save(out, format="PNG")
        return out.getvalue()


def create_tiles(image_bytes: bytes, cfg: TilingConfig | None = None) -> list[TileInfo]:
    return Tiler(cfg or TilingConfig()).create_tiles(image_bytes)
