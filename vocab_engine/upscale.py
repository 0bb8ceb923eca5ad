from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image

from .config import UpscaleConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Upscaler:
    cfg: UpscaleConfig

    def upscale(self, image_bytes: bytes) -> bytes:
        """Resample the image by `cfg.scale` and re-encode as PNG.

        Best-effort: never raises. On any failure the original buffer is
        returned unchanged (the same object), so callers can detect a no-op
        with `is`.
        """
        if not self.cfg.enabled:
            logger.debug("Upscaling disabled, returning original image")
            return image_bytes

        try:
            with Image.open(BytesIO(image_bytes)) as img:
                img.load()
                w, h = img.size
                new_size = (max(1, round(w * self.cfg.scale)), max(1, round(h * self.cfg.scale)))
                logger.debug(
                    "Upscaling %sx%s (%s) -> %sx%s", w, h, img.format, new_size[0], new_size[1]
                )
                # PNG cannot hold CMYK; palette images resample badly.
                if img.mode not in ("RGB", "RGBA", "L", "LA"):
                    img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
                resized = img.resize(new_size, resample=Image.Resampling.LANCZOS)

            out = BytesIO()
            resized.save(out, format="PNG")
            data = out.getvalue()
        except Exception as e:
            logger.error("Image upscaling failed, returning original: %s", e)
            return image_bytes

        logger.info(
            "Image upscaled x%.2f: %d -> %d bytes", self.cfg.scale, len(image_bytes), len(data)
        )
        return data


def upscale_image(image_bytes: bytes, cfg: UpscaleConfig | None = None) -> bytes:
    return Upscaler(cfg or UpscaleConfig()).upscale(image_bytes)
