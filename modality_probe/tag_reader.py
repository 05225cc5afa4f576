"""
tag_reader.py - Low-level cursor over a DICOM element stream.

A DICOM dataset is a flat run of tag-length-value records:

    (group, element)  [VR]  length  value-bytes

Explicit-VR streams spell out a two-letter Value Representation after
the tag; the VR decides whether the length that follows is 2 or 4 bytes
wide.  Implicit-VR streams omit the VR and always use a 4-byte length,
so the VR has to come from the data dictionary instead.

A length of 0xFFFFFFFF means "undefined": the value is a run of items
closed by a Sequence Delimitation Item (FFFE,E0DD).  Undefined-length
items inside are closed by an Item Delimitation Item (FFFE,E00D).  The
reader walks these structures to find the real end rather than trusting
the length field.

References
----------
- DICOM PS3.5 section 7.1: Data Elements
- DICOM PS3.5 section 7.5: Nesting of Data Sets
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from pydicom.datadict import dictionary_VR

from modality_probe.errors import DecodeError, TruncatedStreamError

logger = logging.getLogger(__name__)

UNDEFINED_LENGTH = 0xFFFFFFFF

ITEM = (0xFFFE, 0xE000)
ITEM_DELIMITER = (0xFFFE, 0xE00D)
SEQUENCE_DELIMITER = (0xFFFE, 0xE0DD)

# VRs followed by 2 reserved bytes and a 4-byte length in explicit-VR streams.
LONG_FORM_VRS = frozenset({
    "OB", "OD", "OF", "OL", "OV", "OW", "SQ", "SV", "UC", "UN", "UR", "UT", "UV",
})

SHORT_FORM_VRS = frozenset({
    "AE", "AS", "AT", "CS", "DA", "DS", "DT", "FD", "FL", "IS", "LO", "LT",
    "PN", "SH", "SL", "SS", "ST", "TM", "UI", "UL", "US",
})

KNOWN_VRS = LONG_FORM_VRS | SHORT_FORM_VRS

# Guards recursion through nested undefined-length sequences.
MAX_NESTING_DEPTH = 64

Buffer = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class DataElement:
    """One element as it sits in the stream; *value* is a view, not a copy."""
    group: int
    element: int
    vr: Optional[str]     # None for item and delimiter tags
    length: int           # declared length, UNDEFINED_LENGTH if undefined
    value: memoryview

    @property
    def tag(self) -> tuple[int, int]:
        return (self.group, self.element)

    @property
    def is_undefined_length(self) -> bool:
        return self.length == UNDEFINED_LENGTH

    def __repr__(self) -> str:
        return (
            f"DataElement(({self.group:04X},{self.element:04X}) {self.vr} "
            f"length={self.length})"
        )


def _implicit_vr(group: int, element: int) -> str:
    """Look up the VR for *tag* in the data dictionary; "UN" if unknown."""
    try:
        vr = dictionary_VR((group << 16) | element)
    except KeyError:
        return "UN"
    # Ambiguous entries such as "OB or OW" / "US or SS": take the first.
    return vr.split(" or ")[0]


class TagReader:
    """
    Forward-only cursor that yields :class:`DataElement` records.

    Parameters
    ----------
    buffer : bytes-like
        The whole byte stream.  Never copied or modified.
    offset : int
        Where reading starts.  A new reader at any element boundary
        restarts the sequence from there.
    implicit_vr : bool
        True for implicit-VR encoding (no VR field, 4-byte lengths).
    little_endian : bool
        Byte order of tags and lengths.
    """

    def __init__(
        self,
        buffer: Buffer,
        offset: int = 0,
        implicit_vr: bool = False,
        little_endian: bool = True,
        _depth: int = 0,
    ) -> None:
        self._buffer = memoryview(buffer)
        self.offset = offset
        self.implicit_vr = implicit_vr
        self.little_endian = little_endian
        self._prefix = "<" if little_endian else ">"
        self._depth = _depth

    def __iter__(self) -> Iterator[DataElement]:
        while not self.at_end():
            yield self.read_element()

    # -----------------------------------------------------------------------
    # Cursor primitives
    # -----------------------------------------------------------------------

    def at_end(self) -> bool:
        return self.offset >= len(self._buffer)

    @property
    def remaining(self) -> int:
        return max(len(self._buffer) - self.offset, 0)

    def _require(self, count: int) -> None:
        if count > self.remaining:
            raise TruncatedStreamError(self.offset, count, self.remaining)

    def _unpack(self, fmt: str, size: int) -> tuple:
        self._require(size)
        values = struct.unpack_from(self._prefix + fmt, self._buffer, self.offset)
        self.offset += size
        return values

    def peek_tag(self) -> tuple[int, int]:
        """Return the next (group, element) without moving the cursor."""
        self._require(4)
        return struct.unpack_from(self._prefix + "HH", self._buffer, self.offset)

    # -----------------------------------------------------------------------
    # Element reading
    # -----------------------------------------------------------------------

    def read_element(self) -> DataElement:
        """Read one element header and its value, advancing past both."""
        header_start = self.offset
        group, element = self._unpack("HH", 4)

        if group == 0xFFFE:
            # Item and delimiter tags never carry a VR.
            vr = None
            (length,) = self._unpack("I", 4)
        elif self.implicit_vr:
            (length,) = self._unpack("I", 4)
            vr = _implicit_vr(group, element)
        else:
            self._require(2)
            vr = bytes(self._buffer[self.offset:self.offset + 2]).decode("ascii", errors="replace")
            self.offset += 2
            if vr not in KNOWN_VRS:
                raise DecodeError(
                    f"Unrecognized VR {vr!r} for tag ({group:04X},{element:04X}) "
                    f"at offset {header_start}."
                )
            if vr in LONG_FORM_VRS:
                self._require(2)
                self.offset += 2  # reserved
                (length,) = self._unpack("I", 4)
            else:
                (length,) = self._unpack("H", 2)

        value_start = self.offset
        if length == UNDEFINED_LENGTH:
            # UN with undefined length is an implicit-VR encoded sequence.
            nested_implicit = self.implicit_vr or vr == "UN"
            value_end = self._skip_sequence(nested_implicit)
        else:
            self._require(length)
            self.offset += length
            value_end = self.offset

        return DataElement(
            group=group,
            element=element,
            vr=vr,
            length=length,
            value=self._buffer[value_start:value_end],
        )

    # -----------------------------------------------------------------------
    # Undefined-length structures
    # -----------------------------------------------------------------------

    def _nested(self, implicit_vr: bool) -> "TagReader":
        if self._depth >= MAX_NESTING_DEPTH:
            raise DecodeError(
                f"Sequence nesting deeper than {MAX_NESTING_DEPTH} at offset {self.offset}."
            )
        return TagReader(
            self._buffer,
            self.offset,
            implicit_vr=implicit_vr,
            little_endian=self.little_endian,
            _depth=self._depth + 1,
        )

    def _skip_sequence(self, implicit_vr: bool) -> int:
        """
        Walk items until the Sequence Delimitation Item.

        Leaves the cursor just past the delimiter and returns the offset
        where the delimiter starts (the end of the sequence's value).
        """
        while True:
            item_start = self.offset
            tag = self._unpack("HH", 4)
            (length,) = self._unpack("I", 4)

            if tag == SEQUENCE_DELIMITER:
                return item_start
            if tag != ITEM:
                raise DecodeError(
                    f"Expected item tag inside sequence at offset {item_start}, "
                    f"found ({tag[0]:04X},{tag[1]:04X})."
                )

            if length == UNDEFINED_LENGTH:
                self._skip_item(implicit_vr)
            else:
                self._require(length)
                self.offset += length

    def _skip_item(self, implicit_vr: bool) -> None:
        """Read nested elements up to and past the Item Delimitation Item."""
        nested = self._nested(implicit_vr)
        while nested.peek_tag() != ITEM_DELIMITER:
            skipped = nested.read_element()
            logger.debug("Skipped nested %r", skipped)
        nested._unpack("HHI", 8)
        self.offset = nested.offset
