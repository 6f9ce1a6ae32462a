"""Lossy WebP re-encoding for fetched JPEG and PNG images."""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

from PIL import Image

from .errors import DecodeError

DEFAULT_QUALITY = 80
WEBP_EXTENSION = ".webp"


@dataclass(frozen=True)
class Transcoded:
    data: bytes
    # None when the original bytes were kept
    extension: Optional[str] = None

    @property
    def converted(self) -> bool:
        return self.extension is not None


def has_alpha(img: Image.Image) -> bool:
    if img.mode in ("RGBA", "LA", "PA"):
        return True
    return "transparency" in img.info


def encode_webp(data: bytes, quality: int = DEFAULT_QUALITY) -> bytes:
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            if has_alpha(img):
                img = img.convert("RGBA")
            else:
                img = img.convert("RGB")
            out = BytesIO()
            img.save(out, format="WEBP", quality=quality)
            return out.getvalue()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(str(e)) from e


def transcode(data: bytes, quality: int = DEFAULT_QUALITY) -> Transcoded:
    """Re-encode ``data`` as WebP, keeping transparency when there is any.

    Anything Pillow cannot decode comes back untouched with no extension, so
    the caller keeps the original file name.
    """
    try:
        return Transcoded(encode_webp(data, quality), WEBP_EXTENSION)
    except DecodeError as e:
        logging.debug("webp conversion skipped: %s", e)
        return Transcoded(data)
