"""PNG/base64 conversions shared by the transport clients."""

from __future__ import annotations

import base64
import binascii
import io

from PIL import Image, UnidentifiedImageError

from storyflow.errors import ProviderError


def image_to_png_bytes(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def image_to_base64(image: Image.Image) -> str:
    return base64.b64encode(image_to_png_bytes(image)).decode("ascii")


def image_from_bytes(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.load()
            return im.copy()
    except (UnidentifiedImageError, OSError) as exc:
        raise ProviderError(f"Failed to decode generated image: {exc}") from exc


def image_from_base64(encoded: str) -> Image.Image:
    # Strip a data URI prefix ("data:image/png;base64,...") if present
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        data = base64.b64decode(encoded, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ProviderError(f"Failed to decode generated image: {exc}") from exc
    return image_from_bytes(data)
