"""
raster.py - The 8-bit grayscale raster shared by every downstream stage.

Both input paths end here: DICOM pixel data after windowing, and plain
PNG/JPEG files after Pillow has decoded them.  Feature extraction and
classification only ever see a GrayscaleRaster, never the source format.
"""

import io
import logging
from dataclasses import dataclass, field

import numpy as np
from PIL import Image, UnidentifiedImageError

from modality_probe.errors import ImageDecodeError, MalformedRasterError

logger = logging.getLogger(__name__)

# 16-bit grayscale as Pillow opens it (PNG, TIFF); "I" is 32-bit signed.
_WIDE_GRAY_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I")


@dataclass(frozen=True)
class GrayscaleRaster:
    """Row-major 8-bit intensities, one byte per pixel."""
    width: int
    height: int
    samples: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise MalformedRasterError(
                f"Raster dimensions must be positive, got {self.width}x{self.height}."
            )
        if len(self.samples) != self.width * self.height:
            raise MalformedRasterError(
                f"Raster {self.width}x{self.height} needs {self.width * self.height} "
                f"samples, got {len(self.samples)}."
            )

    @classmethod
    def from_array(cls, array: np.ndarray) -> "GrayscaleRaster":
        """Build from a 2-D array; values are expected to be in 0..255."""
        if array.ndim != 2:
            raise MalformedRasterError(f"Expected a 2-D array, got shape {array.shape}.")
        height, width = array.shape
        return cls(width=width, height=height, samples=array.astype(np.uint8).tobytes())

    def as_array(self) -> np.ndarray:
        """Read-only (height, width) uint8 view of the samples."""
        return np.frombuffer(self.samples, dtype=np.uint8).reshape(self.height, self.width)

    def to_rgba(self) -> bytes:
        """Expand to RGBA bytes (R=G=B=value, A=255) for a display surface."""
        gray = self.as_array()
        rgba = np.empty((self.height, self.width, 4), dtype=np.uint8)
        rgba[..., :3] = gray[..., None]
        rgba[..., 3] = 255
        return rgba.tobytes()


def fit_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """
    Scale (width, height) so the longest side is at most *max_dimension*.

    Never upscales; each side is floored and kept at least 1 pixel.
    """
    longest = max(width, height)
    if longest <= max_dimension:
        return width, height
    # Integer arithmetic so exact fits are not floored away by rounding.
    return (
        max(1, width * max_dimension // longest),
        max(1, height * max_dimension // longest),
    )


def resize_raster(raster: GrayscaleRaster, max_dimension: int) -> GrayscaleRaster:
    """Downsample *raster* to fit within *max_dimension* (no-op if it already fits)."""
    target = fit_dimensions(raster.width, raster.height, max_dimension)
    if target == (raster.width, raster.height):
        return raster

    image = Image.fromarray(raster.as_array())
    resized = image.resize(target, Image.Resampling.LANCZOS)
    logger.debug(
        "Resized raster %dx%d -> %dx%d",
        raster.width, raster.height, target[0], target[1],
    )
    return GrayscaleRaster(width=target[0], height=target[1], samples=resized.tobytes())


def decode_image(data: bytes) -> GrayscaleRaster:
    """
    Decode PNG/JPEG/... bytes with Pillow into a grayscale raster.

    Raises
    ------
    ImageDecodeError
        Pillow does not recognise the bytes as an image, or the image is
        larger than Pillow's decompression-bomb limit.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            original_format = image.format or "Unknown"
            if image.mode in _WIDE_GRAY_MODES:
                gray = _scale_wide_gray(image)
            else:
                # Flatten transparency onto black before dropping to luminance.
                if image.mode in ("RGBA", "LA", "P"):
                    image = image.convert("RGBA")
                    background = Image.new("RGBA", image.size, (0, 0, 0, 255))
                    image = Image.alpha_composite(background, image)
                gray = image.convert("L")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageDecodeError(f"Could not decode image: {exc}") from exc

    logger.debug("Decoded %s image %dx%d", original_format, gray.width, gray.height)
    return GrayscaleRaster(width=gray.width, height=gray.height, samples=gray.tobytes())


def _scale_wide_gray(image: Image.Image) -> Image.Image:
    """Map 0..65535 samples onto 0..255 instead of letting convert("L") clip them."""
    wide = np.asarray(image).astype(np.float64)
    narrow = np.rint(np.clip(wide, 0, 65535) / 257.0).astype(np.uint8)
    return Image.fromarray(narrow)
