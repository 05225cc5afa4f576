"""
errors.py - Failure kinds raised by the modality-probe pipeline.

Every error carries a ``kind`` (the class name) plus a human-readable
message, so callers can branch on the kind and show the message as-is.
Nothing in the pipeline retries or recovers; an error aborts the stage
that raised it and no partial result is produced.
"""

from __future__ import annotations


class ModalityProbeError(Exception):
    """Base class for all pipeline failures."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        return str(self)

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


# ---------------------------------------------------------------------------
# Decoder failures
# ---------------------------------------------------------------------------

class DecodeError(ModalityProbeError):
    """A DICOM byte stream could not be decoded."""


class NotDicomError(DecodeError):
    """The buffer lacks the "DICM" marker at offset 128."""


class TruncatedStreamError(DecodeError):
    """A header or declared length runs past the end of the buffer."""

    def __init__(self, offset: int, needed: int, available: int) -> None:
        self.offset = offset
        self.needed = needed
        self.available = available
        super().__init__(
            f"Stream truncated at offset {offset}: "
            f"need {needed} byte(s), only {available} remain."
        )


class UnsupportedEncodingError(DecodeError):
    """Compressed, deflated or otherwise undecodable pixel storage."""


class MissingPixelDataError(DecodeError):
    """Pixel Data is absent or shorter than one frame."""


class InvalidDimensionsError(DecodeError):
    """Rows or Columns is absent or zero."""


# ---------------------------------------------------------------------------
# Raster failures
# ---------------------------------------------------------------------------

class UnsupportedBitDepthError(ModalityProbeError):
    """Pixel samples are neither 8 nor 16 bits wide."""

    def __init__(self, bits_allocated: int) -> None:
        self.bits_allocated = bits_allocated
        super().__init__(
            f"Unsupported BitsAllocated={bits_allocated}; only 8 and 16 are handled."
        )


class MalformedRasterError(ModalityProbeError):
    """A raster's sample buffer does not match width * height."""


class ImageDecodeError(ModalityProbeError):
    """A non-DICOM file could not be decoded as a raster image."""
