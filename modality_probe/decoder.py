"""
decoder.py - Decode a DICOM Part 10 byte stream into a DicomRecord.

Only the attributes the rest of the pipeline needs are kept: image
geometry, sample layout, rescale and window parameters, a handful of
descriptive tags, and the raw Pixel Data.  Everything else (private
vendor tags, sequences, overlays) is read past and discarded, so an
unexpected tag never aborts decoding.

File layout
-----------
    0    .. 127   preamble (ignored)
    128  .. 131   b"DICM"
    132  ..       file meta group (0002,xxxx), always Explicit VR Little Endian
    ...           dataset, encoded per the Transfer Syntax UID (0002,0010)

Supported transfer syntaxes are the uncompressed ones: Implicit VR
Little Endian, Explicit VR Little Endian and Explicit VR Big Endian.
Encapsulated (JPEG, JPEG 2000, RLE, ...) and deflated streams fail with
UnsupportedEncodingError.

References
----------
- DICOM PS3.10 section 7.1: DICOM File Meta Information
- DICOM PS3.3 C.7.6.3: Image Pixel Module
"""

import logging
import math
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydicom.uid import UID

from modality_probe.errors import (
    DecodeError,
    InvalidDimensionsError,
    MissingPixelDataError,
    NotDicomError,
    UnsupportedEncodingError,
)
from modality_probe.tag_reader import Buffer, DataElement, TagReader

logger = logging.getLogger(__name__)

DICOM_PREAMBLE_LENGTH = 128
DICOM_MAGIC = b"DICM"
META_START = DICOM_PREAMBLE_LENGTH + len(DICOM_MAGIC)

META_GROUP = 0x0002
PIXEL_DATA = (0x7FE0, 0x0010)

PHOTOMETRIC_MONOCHROME1 = "MONOCHROME1"
PHOTOMETRIC_MONOCHROME2 = "MONOCHROME2"

PIXEL_UNSIGNED = 0
PIXEL_SIGNED = 1

# PS3.5 6.2 DS: fixed or exponential notation, no "inf"/"nan" or underscores.
_DS_PATTERN = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DicomMetadata:
    """Descriptive fields surfaced to the caller; not used by the classifier."""
    modality: Optional[str] = None
    transfer_syntax: Optional[str] = None
    rows: Optional[int] = None
    columns: Optional[int] = None
    window_center: Optional[float] = None
    window_width: Optional[float] = None
    rescale_slope: Optional[float] = None
    rescale_intercept: Optional[float] = None
    frames: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "modality": self.modality,
            "transfer_syntax": self.transfer_syntax,
            "rows": self.rows,
            "columns": self.columns,
            "window_center": self.window_center,
            "window_width": self.window_width,
            "rescale_slope": self.rescale_slope,
            "rescale_intercept": self.rescale_intercept,
            "frames": self.frames,
        }


@dataclass(frozen=True)
class DicomRecord:
    """Decoded image attributes plus raw pixel bytes; immutable once built."""
    rows: int
    columns: int
    pixel_data: bytes = field(repr=False)
    bits_allocated: int = 16
    bits_stored: Optional[int] = None
    pixel_representation: int = PIXEL_UNSIGNED
    samples_per_pixel: int = 1
    planar_configuration: int = 0
    photometric_interpretation: str = PHOTOMETRIC_MONOCHROME2
    rescale_slope: float = 1.0
    rescale_intercept: float = 0.0
    window_center: Optional[float] = None
    window_width: Optional[float] = None
    modality: Optional[str] = None
    transfer_syntax: Optional[str] = None
    number_of_frames: Optional[int] = None
    is_little_endian: bool = True

    @property
    def bytes_per_sample(self) -> int:
        return (self.bits_allocated + 7) // 8

    @property
    def frame_length(self) -> int:
        """Byte length of one frame of pixel samples."""
        return self.rows * self.columns * self.samples_per_pixel * self.bytes_per_sample

    @property
    def is_signed(self) -> bool:
        return self.pixel_representation == PIXEL_SIGNED

    def metadata(self) -> DicomMetadata:
        return DicomMetadata(
            modality=self.modality,
            transfer_syntax=self.transfer_syntax,
            rows=self.rows,
            columns=self.columns,
            window_center=self.window_center,
            window_width=self.window_width,
            rescale_slope=self.rescale_slope,
            rescale_intercept=self.rescale_intercept,
            frames=self.number_of_frames,
        )


# ---------------------------------------------------------------------------
# Value parsers
# ---------------------------------------------------------------------------

def _text(value: memoryview) -> str:
    return bytes(value).decode("ascii", errors="replace").strip(" \x00")


def _first_value(value: memoryview) -> str:
    # Multi-valued strings are backslash-separated; only the first is used.
    return _text(value).split("\\")[0].strip()


def _parse_string(value: memoryview, prefix: str, name: str) -> Optional[str]:
    return _text(value) or None


def _parse_us(value: memoryview, prefix: str, name: str) -> Optional[int]:
    if len(value) == 0:
        return None
    if len(value) < 2:
        raise DecodeError(f"{name} holds {len(value)} byte(s); expected a 16-bit value.")
    return struct.unpack_from(prefix + "H", value)[0]


def _parse_is(value: memoryview, prefix: str, name: str) -> Optional[int]:
    text = _first_value(value)
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        raise DecodeError(f"Invalid integer string {text!r} for {name}.") from None


def _parse_ds(value: memoryview, prefix: str, name: str) -> Optional[float]:
    text = _first_value(value)
    if not text:
        return None
    if not _DS_PATTERN.fullmatch(text):
        raise DecodeError(f"Invalid decimal string {text!r} for {name}.")
    number = float(text)
    if not math.isfinite(number):
        # e.g. "1e999" matches the syntax but overflows a double.
        raise DecodeError(f"Decimal string {text!r} for {name} is out of range.")
    return number


_Parser = Callable[[memoryview, str, str], Any]

# (group, element) -> (DicomRecord field, parser)
_TAG_DISPATCH: dict[tuple[int, int], tuple[str, _Parser]] = {
    (0x0002, 0x0010): ("transfer_syntax", _parse_string),
    (0x0008, 0x0060): ("modality", _parse_string),
    (0x0028, 0x0002): ("samples_per_pixel", _parse_us),
    (0x0028, 0x0004): ("photometric_interpretation", _parse_string),
    (0x0028, 0x0006): ("planar_configuration", _parse_us),
    (0x0028, 0x0008): ("number_of_frames", _parse_is),
    (0x0028, 0x0010): ("rows", _parse_us),
    (0x0028, 0x0011): ("columns", _parse_us),
    (0x0028, 0x0100): ("bits_allocated", _parse_us),
    (0x0028, 0x0101): ("bits_stored", _parse_us),
    (0x0028, 0x0103): ("pixel_representation", _parse_us),
    (0x0028, 0x1050): ("window_center", _parse_ds),
    (0x0028, 0x1051): ("window_width", _parse_ds),
    (0x0028, 0x1052): ("rescale_intercept", _parse_ds),
    (0x0028, 0x1053): ("rescale_slope", _parse_ds),
}


def _apply(elem: DataElement, fields: dict[str, Any], prefix: str) -> bool:
    """Store *elem* into *fields* if its tag is one we track."""
    entry = _TAG_DISPATCH.get(elem.tag)
    if entry is None:
        return False
    name, parser = entry
    parsed = parser(elem.value, prefix, name)
    if parsed is not None:
        fields[name] = parsed
    return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def is_likely_dicom(buffer: Buffer) -> bool:
    """True iff bytes 128..131 spell "DICM".  No other parsing is done."""
    return bytes(buffer[DICOM_PREAMBLE_LENGTH:META_START]) == DICOM_MAGIC


def _dataset_encoding(transfer_syntax: Optional[str]) -> tuple[bool, bool]:
    """Return (implicit_vr, little_endian) for the dataset after the meta group."""
    if transfer_syntax is None:
        logger.debug("No Transfer Syntax UID; assuming Explicit VR Little Endian.")
        return False, True

    uid = UID(transfer_syntax)
    if not uid.is_transfer_syntax:
        raise UnsupportedEncodingError(f"Unrecognized transfer syntax {transfer_syntax!r}.")
    if uid.is_deflated or uid.is_compressed:
        raise UnsupportedEncodingError(
            f"Transfer syntax {uid.name} ({uid}) stores compressed data; "
            "only uncompressed pixel storage is supported."
        )
    logger.debug("Transfer syntax: %s", uid.name)
    return uid.is_implicit_VR, uid.is_little_endian


def decode_dicom(buffer: Buffer) -> DicomRecord:
    """
    Decode a complete DICOM file held in memory.

    Parameters
    ----------
    buffer : bytes-like
        Entire file content, preamble included.

    Returns
    -------
    DicomRecord

    Raises
    ------
    NotDicomError
        The "DICM" marker is missing.
    TruncatedStreamError
        An element header or length runs past the end of the buffer.
    UnsupportedEncodingError
        Compressed or encapsulated pixel data.
    InvalidDimensionsError
        Rows or Columns missing or zero.
    MissingPixelDataError
        Pixel Data missing or shorter than one frame.
    """
    if not is_likely_dicom(buffer):
        raise NotDicomError(f"No {DICOM_MAGIC!r} marker at byte offset {DICOM_PREAMBLE_LENGTH}.")

    fields: dict[str, Any] = {}

    # File meta group: always Explicit VR Little Endian.
    meta = TagReader(buffer, META_START)
    while not meta.at_end() and meta.peek_tag()[0] == META_GROUP:
        _apply(meta.read_element(), fields, "<")

    implicit_vr, little_endian = _dataset_encoding(fields.get("transfer_syntax"))
    prefix = "<" if little_endian else ">"

    pixel_data: Optional[bytes] = None
    skipped = 0
    reader = TagReader(buffer, meta.offset, implicit_vr=implicit_vr, little_endian=little_endian)
    for elem in reader:
        if elem.tag == PIXEL_DATA:
            if elem.is_undefined_length:
                raise UnsupportedEncodingError(
                    "Pixel Data is encapsulated (undefined length); "
                    "only uncompressed pixel storage is supported."
                )
            pixel_data = bytes(elem.value)
        elif not _apply(elem, fields, prefix):
            skipped += 1

    logger.debug("Element scan finished; %d untracked element(s) skipped.", skipped)

    rows = fields.pop("rows", None)
    columns = fields.pop("columns", None)
    if not rows or not columns:
        raise InvalidDimensionsError(
            f"Rows={rows}, Columns={columns}; both must be present and positive."
        )
    if pixel_data is None:
        raise MissingPixelDataError("No Pixel Data (7FE0,0010) element found.")

    record = DicomRecord(
        rows=rows,
        columns=columns,
        pixel_data=pixel_data,
        is_little_endian=little_endian,
        **fields,
    )
    if len(pixel_data) < record.frame_length:
        raise MissingPixelDataError(
            f"Pixel Data holds {len(pixel_data)} byte(s); one "
            f"{rows}x{columns} frame needs {record.frame_length}."
        )

    logger.debug(
        "Decoded %dx%d %s image, %d-bit, modality=%s",
        rows, columns, record.photometric_interpretation,
        record.bits_allocated, record.modality,
    )
    return record
