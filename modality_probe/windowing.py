"""
windowing.py - Rescale, window and invert raw DICOM samples to 8-bit.

WHY THIS MATTERS
----------------
Stored pixel values are scanner integers, not display intensities.  The
rescale formula turns them into a physical scale (Hounsfield Units for CT;
usually the identity for MRI):

    value = sample * RescaleSlope + RescaleIntercept

A window (centre, width) then selects which part of that scale fills the
0-255 display range.  Values below centre - width/2 go black, values above
centre + width/2 go white.  When the file carries no window, one is derived
from the data's own min/max so the whole range is visible.

MONOCHROME1 images store "higher = darker", so they are inverted last.

References
----------
- DICOM PS3.3 C.7.6.3.1: Image Pixel Description Macro
- DICOM PS3.3 C.11.2.1.2: Window Center and Window Width
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from modality_probe.decoder import (
    PHOTOMETRIC_MONOCHROME1,
    PHOTOMETRIC_MONOCHROME2,
    PIXEL_SIGNED,
    PIXEL_UNSIGNED,
    DicomRecord,
)
from modality_probe.errors import MissingPixelDataError, UnsupportedBitDepthError
from modality_probe.raster import GrayscaleRaster

logger = logging.getLogger(__name__)

SUPPORTED_BIT_DEPTHS = (8, 16)


@dataclass(frozen=True)
class NormalizeParams:
    """Everything :func:`normalize` needs to interpret a pixel buffer."""
    rows: int
    columns: int
    bits_allocated: int = 16
    bits_stored: Optional[int] = None
    pixel_representation: int = PIXEL_UNSIGNED
    rescale_slope: float = 1.0
    rescale_intercept: float = 0.0
    window_center: Optional[float] = None
    window_width: Optional[float] = None
    photometric_interpretation: str = PHOTOMETRIC_MONOCHROME2
    samples_per_pixel: int = 1
    planar_configuration: int = 0
    is_little_endian: bool = True

    @classmethod
    def from_record(cls, record: DicomRecord) -> "NormalizeParams":
        return cls(
            rows=record.rows,
            columns=record.columns,
            bits_allocated=record.bits_allocated,
            bits_stored=record.bits_stored,
            pixel_representation=record.pixel_representation,
            rescale_slope=record.rescale_slope,
            rescale_intercept=record.rescale_intercept,
            window_center=record.window_center,
            window_width=record.window_width,
            photometric_interpretation=record.photometric_interpretation,
            samples_per_pixel=record.samples_per_pixel,
            planar_configuration=record.planar_configuration,
            is_little_endian=record.is_little_endian,
        )


def read_samples(pixel_data: bytes, params: NormalizeParams) -> np.ndarray:
    """
    Reinterpret the first frame of *pixel_data* as a (rows, columns) array.

    Unused high bits (BitsStored < BitsAllocated) are masked off and signed
    samples are sign-extended from BitsStored.  Multi-sample pixels are
    averaged into a single channel.

    Returns
    -------
    np.ndarray
        Float64 array of shape (rows, columns).
    """
    bits_allocated = params.bits_allocated
    if bits_allocated not in SUPPORTED_BIT_DEPTHS:
        raise UnsupportedBitDepthError(bits_allocated)

    byte_order = "<" if params.is_little_endian else ">"
    dtype = np.dtype(f"{byte_order}u{bits_allocated // 8}")
    spp = max(params.samples_per_pixel, 1)
    count = params.rows * params.columns * spp
    if len(pixel_data) < count * dtype.itemsize:
        raise MissingPixelDataError(
            f"Pixel buffer holds {len(pixel_data)} byte(s); "
            f"{count} sample(s) of {bits_allocated} bits are required."
        )

    raw = np.frombuffer(pixel_data, dtype=dtype, count=count).astype(np.int64)

    bits_stored = params.bits_stored or bits_allocated
    bits_stored = min(bits_stored, bits_allocated)
    raw &= (1 << bits_stored) - 1
    if params.pixel_representation == PIXEL_SIGNED:
        sign_bit = 1 << (bits_stored - 1)
        raw = np.where(raw >= sign_bit, raw - (1 << bits_stored), raw)

    if spp == 1:
        return raw.reshape(params.rows, params.columns).astype(np.float64)
    if params.planar_configuration == 1:
        planes = raw.reshape(spp, params.rows, params.columns)
        return planes.mean(axis=0)
    return raw.reshape(params.rows, params.columns, spp).mean(axis=2)


def to_hounsfield(
    pixel_array: np.ndarray,
    slope: float = 1.0,
    intercept: float = 0.0,
) -> np.ndarray:
    """
    Convert raw stored pixel values to rescaled intensities.

    For CT these are Hounsfield Units; for MRI slope/intercept are usually
    the identity.

    Parameters
    ----------
    pixel_array : np.ndarray
        Raw pixel samples.
    slope : float
        RescaleSlope from the DICOM header (default 1.0).
    intercept : float
        RescaleIntercept from the DICOM header (default 0.0).

    Returns
    -------
    np.ndarray
        Float array, same shape as *pixel_array*.
    """
    return pixel_array.astype(np.float64) * slope + intercept


def choose_window(
    values: np.ndarray,
    center: Optional[float] = None,
    width: Optional[float] = None,
) -> tuple[float, float]:
    """
    Pick the display window for *values*.

    Uses *center*/*width* when both are given and the width is positive;
    otherwise spans the data's min..max, with a width of at least 1.
    """
    if center is not None and width is not None:
        if width > 0:
            return float(center), float(width)
        logger.warning(
            "Ignoring non-positive window width %.3f; deriving window from data.", width
        )

    lowest = float(values.min())
    highest = float(values.max())
    return (lowest + highest) / 2.0, max(highest - lowest, 1.0)


def apply_window(
    values: np.ndarray,
    center: float,
    width: float,
) -> np.ndarray:
    """
    Apply window/level to rescaled values and return them normalised to [0, 1].

    Pixels below (center - width/2) map to 0.
    Pixels above (center + width/2) map to 1.
    Everything in between is linearly scaled.

    Parameters
    ----------
    values : np.ndarray
        Rescaled intensities.
    center : float
        Window centre (level).
    width : float
        Window width.

    Returns
    -------
    np.ndarray
        Float array in [0, 1], same shape as *values*.

    Raises
    ------
    ValueError
        If *width* is not positive.  Only direct callers can trigger this:
        :func:`normalize` goes through :func:`choose_window`, which never
        returns a width below 1.
    """
    if width <= 0:
        raise ValueError(
            f"Window width must be > 0, got width={width}."
        )
    lower = center - width / 2.0
    upper = center + width / 2.0
    windowed = np.clip(values, lower, upper)
    return (windowed - lower) / (upper - lower)


def normalize(pixel_data: bytes, params: NormalizeParams) -> GrayscaleRaster:
    """
    Turn raw pixel bytes into an 8-bit grayscale raster.

    Parameters
    ----------
    pixel_data : bytes
        Raw Pixel Data; only the first frame is read.
    params : NormalizeParams
        Geometry, sample layout, rescale and window settings.

    Returns
    -------
    GrayscaleRaster
        columns x rows raster of display intensities.

    Raises
    ------
    UnsupportedBitDepthError
        BitsAllocated is not 8 or 16.
    """
    samples = read_samples(pixel_data, params)
    values = to_hounsfield(
        samples, slope=params.rescale_slope, intercept=params.rescale_intercept
    )

    center, width = choose_window(values, params.window_center, params.window_width)
    logger.debug("Applying window: centre=%.1f, width=%.1f", center, width)

    display = np.rint(apply_window(values, center=center, width=width) * 255.0)
    display = display.astype(np.uint8)

    if params.photometric_interpretation.upper() == PHOTOMETRIC_MONOCHROME1:
        display = 255 - display

    return GrayscaleRaster.from_array(display)


def normalize_record(record: DicomRecord) -> GrayscaleRaster:
    """Shortcut for :func:`normalize` driven by a decoded record."""
    return normalize(record.pixel_data, NormalizeParams.from_record(record))
