"""Pillow codec adapter.

Stateless helpers that turn source bytes into derivative bytes. Each function
works on images it owns, so calls are safe to run concurrently on a thread
pool (Pillow releases the GIL while decoding, resampling and encoding).
"""

import io
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from media_pipeline.core.config import settings
from media_pipeline.modules.derivatives.errors import DecodeError, TranscodeError
from media_pipeline.modules.derivatives.models import DerivativeSpec, Encoding

# Encoder options on top of quality, per encoding
ENCODER_OPTIONS = {
    Encoding.WEBP: {"method": 4},
    Encoding.AVIF: {"speed": 6},
}


def decode_source(source_bytes: bytes, max_pixels: Optional[int] = None) -> Image.Image:
    """Decode the first frame of an image and bake in its EXIF orientation.

    Args:
        source_bytes: Encoded source image
        max_pixels: Decompression-bomb ceiling (defaults to settings)

    Returns:
        Image.Image: Fully loaded, upright image

    Raises:
        DecodeError: If the bytes are not a readable image
    """
    if not source_bytes:
        raise DecodeError("Source is empty")

    max_pixels = max_pixels or settings.MAX_IMAGE_PIXELS
    try:
        image = Image.open(io.BytesIO(source_bytes))
        width, height = image.size
        if width * height > max_pixels:
            raise DecodeError(f"Source is {width}x{height}, above the {max_pixels} pixel limit")
        image.load()
        # exif_transpose returns a copy without the orientation tag
        return ImageOps.exif_transpose(image)
    except DecodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Unreadable source image: {e}") from e
    except (OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"Corrupt source image: {e}") from e


def resize_to_width(image: Image.Image, target_width: Optional[int]) -> Image.Image:
    """Scale to ``target_width`` keeping the aspect ratio. Never enlarges.

    Always returns a new image so the caller owns its pixels.
    """
    width, height = image.size
    if target_width is None or width <= target_width:
        return image.copy()

    new_height = max(1, round(height * target_width / width))
    return image.resize((target_width, new_height), Image.Resampling.LANCZOS)


def _prepare_mode(image: Image.Image) -> Image.Image:
    """Convert to a mode every delivery encoder accepts."""
    if image.mode in ("RGB", "RGBA"):
        return image
    has_alpha = "A" in image.getbands() or "transparency" in image.info
    return image.convert("RGBA" if has_alpha else "RGB")


def encode(image: Image.Image, encoding: Encoding, quality: int) -> bytes:
    """Encode an image.

    Raises:
        TranscodeError: If the encoder is unavailable or fails
    """
    encoding = Encoding(encoding)
    options = dict(ENCODER_OPTIONS.get(encoding, {}))
    icc_profile = image.info.get("icc_profile")
    if icc_profile:
        options["icc_profile"] = icc_profile

    output = io.BytesIO()
    try:
        _prepare_mode(image).save(output, format=encoding.pil_format, quality=quality, **options)
    except KeyError as e:
        raise TranscodeError(f"No {encoding.value} encoder available") from e
    except (OSError, ValueError, MemoryError) as e:
        raise TranscodeError(f"{encoding.value} encode failed: {e}") from e
    return output.getvalue()


def build_tier_base(
    source_bytes: bytes,
    target_width: Optional[int],
    max_pixels: Optional[int] = None,
) -> Image.Image:
    """Decode, orient and resize once for a tier."""
    image = decode_source(source_bytes, max_pixels)
    try:
        return resize_to_width(image, target_width)
    except (OSError, ValueError, MemoryError) as e:
        raise TranscodeError(f"Resize to width {target_width} failed: {e}") from e


def transform(source_bytes: bytes, spec: DerivativeSpec, max_pixels: Optional[int] = None) -> bytes:
    """Produce the encoded bytes for one derivative from raw source bytes."""
    base = build_tier_base(source_bytes, spec.target_width, max_pixels)
    return encode(base, spec.encoding, spec.quality)
