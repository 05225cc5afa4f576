"""
features.py - Fixed-size statistical fingerprint of a grayscale raster.

The same six numbers are computed whether the raster came from a DICOM
file or a PNG/JPEG, so one classifier serves both paths.  Every feature
is a ratio (intensity / 255, pixel fraction, correlation), which keeps
the fingerprint comparable across rasters of different resolution.

Features, in order
------------------
1. mean_intensity       Mean brightness / 255.
2. std_intensity        Standard deviation / 255.
3. histogram_entropy    Shannon entropy of a coarse histogram, scaled to
                        [0, 1].  CT's air/tissue/bone separation gives
                        sharp, well-separated peaks; MRI tends to a
                        smoother soft-tissue spread.
4. edge_density         Fraction of pixels whose local gradient exceeds
                        a threshold tied to the image's std dev.  Bone/air
                        boundaries on CT are unusually sharp.
5. background_fraction  Fraction of pixels within a small margin of the
                        darkest level.  CT slices usually sit in a large
                        uniform field of air.
6. symmetry             Correlation between the image and its left-right
                        mirror.  Cross-sections of either modality are
                        roughly bilateral, so this mostly stabilises the
                        score.

LIMITATIONS
-----------
- Global statistics only; no anatomy or acquisition protocol awareness.
- Sensitive to burned-in annotations and unusual windowing.
"""

import logging
from typing import NamedTuple, Optional

import numpy as np

from modality_probe.config import CONFIG
from modality_probe.raster import GrayscaleRaster

logger = logging.getLogger(__name__)


class FeatureVector(NamedTuple):
    """Positional order is what the classifier relies on."""
    mean_intensity: float
    std_intensity: float
    histogram_entropy: float
    edge_density: float
    background_fraction: float
    symmetry: float


FEATURE_NAMES: tuple[str, ...] = FeatureVector._fields


def histogram_entropy(pixels: np.ndarray, bins: int) -> float:
    """Entropy (bits) of a *bins*-bin histogram over 0..255, divided by log2(bins)."""
    if bins < 1:
        raise ValueError(f"histogram_bins must be >= 1, got {bins}.")
    if bins == 1:
        return 0.0
    counts, _ = np.histogram(pixels, bins=bins, range=(0, 256))
    p = counts[counts > 0] / pixels.size
    entropy = -np.sum(p * np.log2(p))
    return float(entropy / np.log2(bins))


def edge_density(pixels: np.ndarray, std: float, threshold_factor: float) -> float:
    """
    Fraction of pixels whose forward-difference gradient magnitude
    exceeds ``threshold_factor * std``.
    """
    height, width = pixels.shape
    if height < 2 or width < 2 or std == 0:
        return 0.0
    origin = pixels[:-1, :-1]
    gx = pixels[:-1, 1:] - origin
    gy = pixels[1:, :-1] - origin
    magnitude = np.hypot(gx, gy)
    return float(np.mean(magnitude > threshold_factor * std))


def background_fraction(pixels: np.ndarray, margin: float) -> float:
    """Fraction of pixels no brighter than min + margin * 255."""
    cutoff = pixels.min() + margin * 255.0
    return float(np.mean(pixels <= cutoff))


def mirror_symmetry(pixels: np.ndarray) -> float:
    """Pearson correlation with the horizontal mirror; 1.0 for a flat image."""
    centred = pixels - pixels.mean()
    mirrored = centred[:, ::-1]
    energy = float(np.sum(centred * centred))
    if energy == 0:
        return 1.0
    # Mirroring preserves energy, so the denominator is just *energy*.
    correlation = float(np.sum(centred * mirrored)) / energy
    return float(np.clip(correlation, -1.0, 1.0))


def extract_features(
    raster: GrayscaleRaster,
    histogram_bins: Optional[int] = None,
    edge_threshold_factor: Optional[float] = None,
    background_margin: Optional[float] = None,
) -> FeatureVector:
    """
    Compute the fingerprint of *raster*.

    Parameters
    ----------
    raster : GrayscaleRaster
        Any 8-bit grayscale raster.
    histogram_bins : int, optional
        Histogram resolution for the entropy feature.  Defaults to config.
    edge_threshold_factor : float, optional
        Edge threshold as a multiple of the intensity std dev.  Defaults to config.
    background_margin : float, optional
        Background band above the minimum, as a fraction of 255.  Defaults to config.

    Returns
    -------
    FeatureVector
    """
    cfg = CONFIG["features"]
    bins = histogram_bins if histogram_bins is not None else cfg["histogram_bins"]
    factor = edge_threshold_factor if edge_threshold_factor is not None else cfg["edge_threshold_factor"]
    margin = background_margin if background_margin is not None else cfg["background_margin"]

    pixels = raster.as_array().astype(np.float64)
    std = float(pixels.std())

    features = FeatureVector(
        mean_intensity=float(pixels.mean()) / 255.0,
        std_intensity=std / 255.0,
        histogram_entropy=histogram_entropy(pixels, int(bins)),
        edge_density=edge_density(pixels, std, float(factor)),
        background_fraction=background_fraction(pixels, float(margin)),
        symmetry=mirror_symmetry(pixels),
    )
    logger.debug(
        "Features for %dx%d raster: %s",
        raster.width, raster.height,
        ", ".join(f"{name}={value:.3f}" for name, value in features._asdict().items()),
    )
    return features
