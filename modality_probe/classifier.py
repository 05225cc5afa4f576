"""
classifier.py - Fixed weighted-sum model from fingerprint to CT/MRI.

    score          = bias + sum(weight_i * feature_i)
    probability_ct = sigmoid(score)
    label          = "CT" if probability_ct >= 0.5 else "MRI"

The weights are tuned offline and loaded from the ``classifier`` section
of config.yaml; nothing is learned at runtime.  An exact 0.5 resolves to
CT.

This is a heuristic, not a diagnostic tool.  The DICOM Modality tag, when
present, is the authoritative answer.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from modality_probe.config import CONFIG
from modality_probe.features import FEATURE_NAMES, FeatureVector

logger = logging.getLogger(__name__)

LABEL_CT = "CT"
LABEL_MRI = "MRI"
DECISION_THRESHOLD = 0.5


@dataclass(frozen=True)
class ClassificationResult:
    label: str
    probability_ct: float
    probability_mri: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "probability_ct": self.probability_ct,
            "probability_mri": self.probability_mri,
        }


@dataclass(frozen=True)
class ClassifierWeights:
    """Bias plus one weight per feature, in FeatureVector order."""
    bias: float
    weights: tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.weights) != len(FEATURE_NAMES):
            raise ValueError(
                f"Expected {len(FEATURE_NAMES)} weights, got {len(self.weights)}."
            )

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "ClassifierWeights":
        """Build from a ``{"bias": ..., "weights": {feature_name: weight}}`` mapping."""
        named = section["weights"]
        missing = [name for name in FEATURE_NAMES if name not in named]
        unknown = sorted(set(named) - set(FEATURE_NAMES))
        if missing or unknown:
            raise ValueError(
                f"Classifier weights mismatch: missing={missing}, unknown={unknown}."
            )
        return cls(
            bias=float(section["bias"]),
            weights=tuple(float(named[name]) for name in FEATURE_NAMES),
        )

    @classmethod
    def from_config(cls) -> "ClassifierWeights":
        return cls.from_mapping(CONFIG["classifier"])


def sigmoid(score: float) -> float:
    """Logistic function, written so neither branch can overflow."""
    if score >= 0:
        return 1.0 / (1.0 + math.exp(-score))
    z = math.exp(score)
    return z / (1.0 + z)


def classify(
    features: FeatureVector,
    weights: Optional[ClassifierWeights] = None,
) -> ClassificationResult:
    """
    Map a fingerprint to CT/MRI probabilities.

    Pure and total: infinite scores saturate to 0 or 1, and a NaN score
    yields 0.5/0.5, which resolves to CT.
    """
    weights = weights or ClassifierWeights.from_config()

    score = weights.bias + sum(w * f for w, f in zip(weights.weights, features))
    if math.isfinite(score):
        probability_ct = sigmoid(score)
    elif score == math.inf:
        probability_ct = 1.0
    elif score == -math.inf:
        probability_ct = 0.0
    else:
        probability_ct = DECISION_THRESHOLD

    label = LABEL_CT if probability_ct >= DECISION_THRESHOLD else LABEL_MRI
    logger.debug("Score %.4f -> P(CT)=%.4f (%s)", score, probability_ct, label)
    return ClassificationResult(
        label=label,
        probability_ct=probability_ct,
        probability_mri=1.0 - probability_ct,
    )
