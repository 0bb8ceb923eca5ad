from __future__ import annotations

import logging
from io import BytesIO

from PIL import Image


logger = logging.getLogger(__name__)


def stitch_images(buffers: list[bytes]) -> bytes:
    """Stack chapter page images top-to-bottom into one PNG.

    Canvas width is the widest page; narrower pages are left-aligned on white.
    """
    if not buffers:
        raise ValueError("No images provided for stitching")

    pages: list[Image.Image] = []
    try:
        for i, buf in enumerate(buffers):
            try:
                img = Image.open(BytesIO(buf))
                img.load()
            except Exception as e:
                raise ValueError(f"Invalid image at index {i}: {e}") from e
            pages.append(img.convert("RGB"))
            img.close()

        width = max(p.width for p in pages)
        height = sum(p.height for p in pages)
        if width == 0 or height == 0:
            raise ValueError("Invalid image dimensions")

        logger.debug("Stitching %d images into %dx%d", len(pages), width, height)
        canvas = Image.new("RGB", (width, height), color=(255, 255, 255))
        y = 0
        for p in pages:
            canvas.paste(p, (0, y))
            y += p.height

        out = BytesIO()
        canvas.save(out, format="PNG")
    finally:
        for p in pages:
            p.close()

    data = out.getvalue()
    logger.info("Stitched %d images: %dx%d, %d bytes", len(buffers), width, height, len(data))
    return data
