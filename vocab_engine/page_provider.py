from __future__ import annotations

import logging
import zipfile
from io import BytesIO
from pathlib import Path


logger = logging.getLogger(__name__)

MAX_ZIP_SIZE = 100 * 1024 * 1024
MAX_IMAGES_PER_ZIP = 500
MAX_IMAGE_SIZE = 10 * 1024 * 1024
IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp"}


def is_image_buffer(buf: bytes) -> bool:
    """Signature check for PNG, JPEG and WEBP."""
    if len(buf) < 4:
        return False
    if buf[:4] == b"\x89PNG":
        return True
    if buf[:3] == b"\xff\xd8\xff":
        return True
    return len(buf) >= 12 and buf[:4] == b"RIFF" and buf[8:12] == b"WEBP"


def extract_images_from_zip(zip_bytes: bytes) -> list[bytes]:
    """Return image payloads of a chapter archive, in archive name order."""
    if len(zip_bytes) > MAX_ZIP_SIZE:
        raise ValueError(f"Zip file size ({len(zip_bytes)}) exceeds max size ({MAX_ZIP_SIZE})")

    try:
        zf = zipfile.ZipFile(BytesIO(zip_bytes))
    except zipfile.BadZipFile as e:
        raise ValueError("Invalid zip file format") from e

    images: list[bytes] = []
    with zf:
        names = sorted(info.filename for info in zf.infolist() if not info.is_dir())
        for name in names:
            if Path(name).suffix.lower() not in IMAGE_EXTS:
                logger.debug("Skipping non-image file %s", name)
                continue
            info = zf.getinfo(name)
            if info.file_size == 0:
                logger.warning("Skipping empty file %s", name)
                continue
            if info.file_size > MAX_IMAGE_SIZE:
                raise ValueError(f"Image {name} size ({info.file_size}) exceeds max size ({MAX_IMAGE_SIZE})")
            data = zf.read(name)
            if not is_image_buffer(data):
                logger.warning("Skipping invalid image file %s", name)
                continue
            images.append(data)

    if not images:
        raise ValueError("No valid images found in zip file")
    if len(images) > MAX_IMAGES_PER_ZIP:
        raise ValueError(f"Too many images ({len(images)}) in zip, max is {MAX_IMAGES_PER_ZIP}")

    logger.info("Extracted %d images from zip (%d entries)", len(images), len(names))
    return images


def load_chapter_images(input_path: str | Path) -> list[bytes]:
    """Load chapter page images from an image file, a folder or a zip archive."""
    src = Path(input_path)
    if src.is_dir():
        files = sorted(p for p in src.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTS)
        images = [p.read_bytes() for p in files]
        images = [b for b in images if is_image_buffer(b)]
        if not images:
            raise ValueError(f"No images found in folder: {src}")
        return images

    if not src.is_file():
        raise ValueError(f"Input not found: {src}")

    if src.suffix.lower() == ".zip":
        return extract_images_from_zip(src.read_bytes())

    data = src.read_bytes()
    if not is_image_buffer(data):
        raise ValueError(f"Unsupported image file: {src}")
    return [data]
