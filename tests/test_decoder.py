"""Tests for modality_probe/decoder.py."""

import io
import struct

import numpy as np
import pydicom
import pytest
from pydicom.dataset import FileDataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, ImplicitVRLittleEndian

from modality_probe.decoder import (
    PHOTOMETRIC_MONOCHROME2,
    PIXEL_SIGNED,
    PIXEL_UNSIGNED,
    decode_dicom,
    is_likely_dicom,
)
from modality_probe.errors import (
    DecodeError,
    InvalidDimensionsError,
    MissingPixelDataError,
    NotDicomError,
    TruncatedStreamError,
    UnsupportedEncodingError,
)
from modality_probe.windowing import normalize_record

PREAMBLE = b"\0" * 128 + b"DICM"


def _element(group: int, element: int, vr: str, value: bytes, order: str = "<") -> bytes:
    """Encode one explicit-VR element, padding the value to even length."""
    if len(value) % 2:
        value += b"\0" if vr in ("UI", "OB") else b" "
    if vr in ("OB", "OW", "SQ", "UN", "UT"):
        return struct.pack(f"{order}HH2sHI", group, element, vr.encode(), 0, len(value)) + value
    return struct.pack(f"{order}HH2sH", group, element, vr.encode(), len(value)) + value


def _us(group: int, element: int, value: int, order: str = "<") -> bytes:
    return _element(group, element, "US", struct.pack(f"{order}H", value), order)


def _hand_built(
    *elements: bytes,
    transfer_syntax: str = "1.2.840.10008.1.2.1",
) -> bytes:
    """Preamble + meta group (transfer syntax only) + dataset elements."""
    meta = _element(0x0002, 0x0010, "UI", transfer_syntax.encode()) if transfer_syntax else b""
    return PREAMBLE + meta + b"".join(elements)


def _minimal_elements(rows: int = 2, columns: int = 2, pixels: bytes = bytes([0, 85, 170, 255])) -> list[bytes]:
    return [
        _us(0x0028, 0x0010, rows),
        _us(0x0028, 0x0011, columns),
        _us(0x0028, 0x0100, 8),
        _us(0x0028, 0x0103, 0),
        _element(0x7FE0, 0x0010, "OB", pixels),
    ]


def _pydicom_bytes(pixels: np.ndarray, transfer_syntax=ExplicitVRLittleEndian, **attrs) -> bytes:
    """Write a minimal DICOM file with pydicom and return its bytes."""
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = pydicom.uid.UID("1.2.840.10008.5.1.4.1.1.2")
    file_meta.MediaStorageSOPInstanceUID = pydicom.uid.generate_uid()
    file_meta.TransferSyntaxUID = transfer_syntax

    ds = FileDataset(None, {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = file_meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.Modality = "CT"
    ds.Rows, ds.Columns = pixels.shape
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.PixelRepresentation = 1 if pixels.dtype.kind == "i" else 0
    ds.BitsAllocated = pixels.dtype.itemsize * 8
    ds.BitsStored = pixels.dtype.itemsize * 8
    ds.HighBit = pixels.dtype.itemsize * 8 - 1
    ds.PixelData = pixels.tobytes()
    for key, value in attrs.items():
        setattr(ds, key, value)

    buffer = io.BytesIO()
    ds.save_as(buffer, enforce_file_format=True)
    return buffer.getvalue()


class TestIsLikelyDicom:
    def test_marker_at_offset_128(self):
        assert is_likely_dicom(PREAMBLE)

    def test_empty_buffer(self):
        assert not is_likely_dicom(b"")

    def test_short_buffer(self):
        assert not is_likely_dicom(PREAMBLE[:131])

    def test_wrong_marker(self):
        assert not is_likely_dicom(b"\0" * 128 + b"DICX" + b"\0" * 16)

    def test_marker_at_start_is_not_enough(self):
        assert not is_likely_dicom(b"DICM" + b"\0" * 200)

    def test_png_signature(self):
        assert not is_likely_dicom(b"\x89PNG\r\n\x1a\n" + b"\0" * 200)


class TestHandBuiltBuffers:
    def test_minimal_explicit_little_endian(self):
        record = decode_dicom(_hand_built(*_minimal_elements()))
        assert record.rows == 2
        assert record.columns == 2
        assert record.bits_allocated == 8
        assert record.pixel_representation == PIXEL_UNSIGNED
        assert record.pixel_data == bytes([0, 85, 170, 255])

    def test_defaults_when_tags_absent(self):
        record = decode_dicom(_hand_built(*_minimal_elements()))
        assert record.rescale_slope == 1.0
        assert record.rescale_intercept == 0.0
        assert record.window_center is None
        assert record.window_width is None
        assert record.samples_per_pixel == 1
        assert record.photometric_interpretation == PHOTOMETRIC_MONOCHROME2
        assert record.modality is None

    def test_transfer_syntax_recorded(self):
        record = decode_dicom(_hand_built(*_minimal_elements()))
        assert record.transfer_syntax == "1.2.840.10008.1.2.1"

    def test_missing_transfer_syntax_defaults_to_explicit_le(self):
        record = decode_dicom(_hand_built(*_minimal_elements(), transfer_syntax=""))
        assert record.transfer_syntax is None
        assert record.rows == 2

    def test_private_and_sequence_tags_are_skipped(self):
        undefined_sq = (
            struct.pack("<HH2sHI", 0x0008, 0x1140, b"SQ", 0, 0xFFFFFFFF)
            + struct.pack("<HHI", 0xFFFE, 0xE000, 0xFFFFFFFF)
            + _element(0x0008, 0x1150, "UI", b"1.2.3")
            + struct.pack("<HHI", 0xFFFE, 0xE00D, 0)
            + struct.pack("<HHI", 0xFFFE, 0xE0DD, 0)
        )
        private = _element(0x0009, 0x1001, "LO", b"VENDOR DATA")
        record = decode_dicom(_hand_built(undefined_sq, private, *_minimal_elements()))
        assert (record.rows, record.columns) == (2, 2)

    def test_multi_valued_window_takes_first(self):
        elements = [
            _element(0x0028, 0x1050, "DS", b"40\\400"),
            _element(0x0028, 0x1051, "DS", b"80\\2000"),
        ]
        record = decode_dicom(_hand_built(*elements, *_minimal_elements()))
        assert record.window_center == 40.0
        assert record.window_width == 80.0

    def test_explicit_big_endian(self):
        pixels = struct.pack(">4H", 0, 100, 200, 4095)
        elements = [
            _us(0x0028, 0x0010, 2, ">"),
            _us(0x0028, 0x0011, 2, ">"),
            _us(0x0028, 0x0100, 16, ">"),
            _element(0x7FE0, 0x0010, "OW", pixels, ">"),
        ]
        record = decode_dicom(_hand_built(*elements, transfer_syntax="1.2.840.10008.1.2.2"))
        assert (record.rows, record.columns) == (2, 2)
        assert record.bits_allocated == 16
        assert record.is_little_endian is False
        assert record.pixel_data == pixels

    def test_elements_after_pixel_data_are_read(self):
        trailing = _element(0x0008, 0x0060, "CS", b"MR")
        record = decode_dicom(_hand_built(*_minimal_elements(), trailing))
        assert record.modality == "MR"


class TestPydicomFiles:
    def test_dimensions_and_header_values(self):
        pixels = np.arange(12, dtype=np.int16).reshape(3, 4) - 1024
        data = _pydicom_bytes(
            pixels,
            RescaleSlope=1.0,
            RescaleIntercept=-1024.0,
            WindowCenter=40,
            WindowWidth=400,
        )
        record = decode_dicom(data)
        assert record.rows == 3
        assert record.columns == 4
        assert record.bits_allocated == 16
        assert record.pixel_representation == PIXEL_SIGNED
        assert record.rescale_intercept == pytest.approx(-1024.0)
        assert record.window_center == pytest.approx(40.0)
        assert record.window_width == pytest.approx(400.0)
        assert record.modality == "CT"
        assert len(record.pixel_data) >= 3 * 4 * 2

    def test_implicit_vr_little_endian(self):
        pixels = np.arange(16, dtype=np.uint16).reshape(4, 4)
        record = decode_dicom(_pydicom_bytes(pixels, transfer_syntax=ImplicitVRLittleEndian))
        assert (record.rows, record.columns) == (4, 4)
        assert record.transfer_syntax == ImplicitVRLittleEndian
        assert record.pixel_data[:32] == pixels.tobytes()

    def test_multi_frame(self):
        frames = np.zeros((2, 4, 4), dtype=np.uint16)
        frames[1] = 1000
        data = _pydicom_bytes(frames[0], NumberOfFrames=2, PixelData=frames.tobytes())
        record = decode_dicom(data)
        assert record.number_of_frames == 2
        assert len(record.pixel_data) == 2 * record.frame_length

    def test_metadata_map(self):
        pixels = np.zeros((4, 4), dtype=np.uint16)
        meta = decode_dicom(_pydicom_bytes(pixels, Modality="MR")).metadata().as_dict()
        assert meta["modality"] == "MR"
        assert meta["rows"] == 4
        assert meta["columns"] == 4
        assert meta["transfer_syntax"] == ExplicitVRLittleEndian
        assert set(meta) == {
            "modality", "transfer_syntax", "rows", "columns", "window_center",
            "window_width", "rescale_slope", "rescale_intercept", "frames",
        }


class TestFailures:
    def test_not_dicom(self):
        with pytest.raises(NotDicomError):
            decode_dicom(b"\x89PNG" + b"\0" * 200)

    def test_all_failures_are_decode_errors(self):
        with pytest.raises(DecodeError) as excinfo:
            decode_dicom(b"")
        assert excinfo.value.kind == "NotDicomError"

    def test_zero_rows(self):
        with pytest.raises(InvalidDimensionsError):
            decode_dicom(_hand_built(*_minimal_elements(rows=0)))

    def test_zero_columns(self):
        with pytest.raises(InvalidDimensionsError):
            decode_dicom(_hand_built(*_minimal_elements(columns=0)))

    def test_missing_rows(self):
        elements = _minimal_elements()[1:]
        with pytest.raises(InvalidDimensionsError):
            decode_dicom(_hand_built(*elements))

    def test_missing_pixel_data(self):
        elements = _minimal_elements()[:-1]
        with pytest.raises(MissingPixelDataError):
            decode_dicom(_hand_built(*elements))

    def test_short_pixel_data(self):
        with pytest.raises(MissingPixelDataError):
            decode_dicom(_hand_built(*_minimal_elements(pixels=bytes([1, 2]))))

    def test_truncated_element(self):
        buf = _hand_built(*_minimal_elements())
        with pytest.raises(TruncatedStreamError):
            decode_dicom(buf[:-3])

    def test_compressed_transfer_syntax(self):
        buf = _hand_built(*_minimal_elements(), transfer_syntax="1.2.840.10008.1.2.4.50")
        with pytest.raises(UnsupportedEncodingError):
            decode_dicom(buf)

    def test_encapsulated_pixel_data(self):
        encapsulated = (
            struct.pack("<HH2sHI", 0x7FE0, 0x0010, b"OB", 0, 0xFFFFFFFF)
            + struct.pack("<HHI", 0xFFFE, 0xE000, 0)
            + struct.pack("<HHI", 0xFFFE, 0xE000, 4) + b"\xff\xd8\xff\xd9"
            + struct.pack("<HHI", 0xFFFE, 0xE0DD, 0)
        )
        elements = _minimal_elements()[:-1] + [encapsulated]
        with pytest.raises(UnsupportedEncodingError):
            decode_dicom(_hand_built(*elements))

    def test_unparsable_decimal_string(self):
        bad = _element(0x0028, 0x1053, "DS", b"abc")
        with pytest.raises(DecodeError, match="RescaleSlope|rescale_slope"):
            decode_dicom(_hand_built(bad, *_minimal_elements()))

    @pytest.mark.parametrize("text", [b"inf", b"nan", b"-Infinity", b"1_000", b"1e999"])
    @pytest.mark.parametrize(
        "element, name",
        [(0x1053, "rescale_slope"), (0x1051, "window_width")],
    )
    def test_non_numeric_decimal_strings_rejected(self, text, element, name):
        bad = _element(0x0028, element, "DS", text)
        elements = _minimal_elements()
        with pytest.raises(DecodeError, match=name):
            decode_dicom(_hand_built(*elements[:4], bad, elements[4]))

    @pytest.mark.parametrize(
        "text, expected",
        [(b"2", 2.0), (b"+1.5", 1.5), (b"-.5", -0.5), (b"1.", 1.0), (b"2.5E-1", 0.25)],
    )
    def test_decimal_string_forms_accepted(self, text, expected):
        slope = _element(0x0028, 0x1053, "DS", text)
        elements = _minimal_elements()
        record = decode_dicom(_hand_built(*elements[:4], slope, elements[4]))
        assert record.rescale_slope == pytest.approx(expected)


class TestDecodeThenNormalize:
    def test_minimal_buffer_passes_through_unchanged(self):
        record = decode_dicom(_hand_built(*_minimal_elements()))
        raster = normalize_record(record)
        assert (raster.width, raster.height) == (2, 2)
        assert list(raster.samples) == [0, 85, 170, 255]

    def test_rescale_does_not_change_derived_window_output(self):
        rescale = [
            _element(0x0028, 0x1052, "DS", b"-50"),
            _element(0x0028, 0x1053, "DS", b"2"),
        ]
        elements = _minimal_elements()
        record = decode_dicom(_hand_built(*elements[:4], *rescale, elements[4]))
        assert record.rescale_slope == 2.0
        assert record.rescale_intercept == -50.0
        assert list(normalize_record(record).samples) == [0, 85, 170, 255]
