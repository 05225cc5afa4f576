"""
config.py - Configuration loader for modality-probe.

Loads settings from config.yaml with sensible defaults so that no
tuning parameter (resize bounds, feature thresholds, classifier
weights) is hard-coded inside a module.
"""

import os
from typing import Any

import yaml

# Resolve the config file relative to the repo root, not the CWD,
# so imports work regardless of where the script is launched from.
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_CONFIG_PATH = os.environ.get(
    "MODALITY_PROBE_CONFIG", os.path.join(_REPO_ROOT, "config.yaml")
)

_DEFAULTS: dict[str, Any] = {
    "analysis": {
        # Longest raster side before feature extraction.
        "dicom_max_dimension": 512,
        "image_max_dimension": 768,
    },
    "features": {
        "histogram_bins": 32,
        "edge_threshold_factor": 1.0,
        "background_margin": 0.05,
    },
    "classifier": {
        "bias": -2.2,
        "weights": {
            "mean_intensity": -1.5,
            "std_intensity": 2.0,
            "histogram_entropy": 0.8,
            "edge_density": 6.0,
            "background_fraction": 3.5,
            "symmetry": 0.2,
        },
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: str = _CONFIG_PATH) -> dict[str, Any]:
    """
    Load the YAML configuration file and merge it with built-in defaults.

    Parameters
    ----------
    config_path : str
        Path to config.yaml. Defaults to $MODALITY_PROBE_CONFIG, then the
        repo-root config.yaml.

    Returns
    -------
    dict
        Merged configuration dictionary.
    """
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            user_config = yaml.safe_load(f) or {}
    else:
        user_config = {}

    return _deep_merge(_DEFAULTS, user_config)


# Module-level singleton so callers can just do `from modality_probe.config import CONFIG`
CONFIG = load_config()
