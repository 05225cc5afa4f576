"""
pipeline.py - Single-file orchestrator: bytes in, CT/MRI verdict out.

Two input paths share the same tail:

    DICOM  : decode -> rescale/window -> resize -> features -> classify
    image  : Pillow decode --------------> resize -> features -> classify

The DICOM path also returns the descriptive metadata (modality, transfer
syntax, window, rescale, frames) for display; it plays no part in the
prediction.

Everything here is synchronous and deterministic: the same bytes always
give the same result.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from modality_probe.classifier import ClassificationResult, ClassifierWeights, classify
from modality_probe.config import CONFIG
from modality_probe.decoder import DicomMetadata, decode_dicom, is_likely_dicom
from modality_probe.features import FeatureVector, extract_features
from modality_probe.raster import GrayscaleRaster, decode_image, resize_raster
from modality_probe.windowing import normalize_record

logger = logging.getLogger(__name__)

SOURCE_DICOM = "dicom"
SOURCE_IMAGE = "image"


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of analysing one file."""
    source: str
    classification: ClassificationResult
    features: FeatureVector
    metadata: Optional[DicomMetadata] = None

    def as_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"source": self.source}
        result.update(self.classification.as_dict())
        result["features"] = self.features._asdict()
        result["metadata"] = self.metadata.as_dict() if self.metadata else None
        return result


def _score(
    raster: GrayscaleRaster,
    max_dimension: int,
    weights: Optional[ClassifierWeights],
) -> tuple[FeatureVector, ClassificationResult]:
    analysed = resize_raster(raster, max_dimension)
    features = extract_features(analysed)
    return features, classify(features, weights)


def analyze_dicom(
    data: bytes,
    max_dimension: Optional[int] = None,
    weights: Optional[ClassifierWeights] = None,
) -> AnalysisResult:
    """Classify a DICOM file held in memory."""
    max_dimension = max_dimension or CONFIG["analysis"]["dicom_max_dimension"]

    record = decode_dicom(data)
    if record.number_of_frames and record.number_of_frames > 1:
        logger.info("Multi-frame file (%d frames); analysing frame 1 only.", record.number_of_frames)

    features, classification = _score(normalize_record(record), max_dimension, weights)
    return AnalysisResult(
        source=SOURCE_DICOM,
        classification=classification,
        features=features,
        metadata=record.metadata(),
    )


def analyze_image(
    data: bytes,
    max_dimension: Optional[int] = None,
    weights: Optional[ClassifierWeights] = None,
) -> AnalysisResult:
    """Classify a PNG/JPEG/... file held in memory."""
    max_dimension = max_dimension or CONFIG["analysis"]["image_max_dimension"]

    features, classification = _score(decode_image(data), max_dimension, weights)
    return AnalysisResult(
        source=SOURCE_IMAGE,
        classification=classification,
        features=features,
    )


def analyze_bytes(
    data: bytes,
    weights: Optional[ClassifierWeights] = None,
) -> AnalysisResult:
    """
    Classify a file's content as CT or MRI.

    Parameters
    ----------
    data : bytes
        Entire file content.
    weights : ClassifierWeights, optional
        Overrides the configured classifier weights.

    Returns
    -------
    AnalysisResult

    Raises
    ------
    ModalityProbeError
        Any decode, normalisation or image-decoding failure.  Nothing is
        retried and no partial result is returned.
    """
    if is_likely_dicom(data):
        result = analyze_dicom(data, weights=weights)
    else:
        result = analyze_image(data, weights=weights)

    logger.info(
        "Prediction (%s): %s  P(CT)=%.3f  P(MRI)=%.3f",
        result.source,
        result.classification.label,
        result.classification.probability_ct,
        result.classification.probability_mri,
    )
    return result


def analyze_file(path: str, weights: Optional[ClassifierWeights] = None) -> AnalysisResult:
    """Read *path* and classify it."""
    with open(path, "rb") as f:
        data = f.read()
    logger.debug("Read %d byte(s) from %s", len(data), path)
    return analyze_bytes(data, weights=weights)
