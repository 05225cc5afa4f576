"""
classify_file.py - Predict CT vs MRI for one DICOM or image file.

Prints the prediction, probabilities and (for DICOM) header metadata as
JSON.  Exits with status 1 and a JSON error object when the file cannot
be analysed.

Usage
-----
    python scripts/classify_file.py path/to/scan.dcm
    python scripts/classify_file.py path/to/slice.png
"""

import json
import logging
import os
import sys

# Ensure repo root is on sys.path
_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _REPO_ROOT)

from modality_probe.errors import ModalityProbeError  # noqa: E402
from modality_probe.pipeline import analyze_file  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s %(message)s")
logger = logging.getLogger(__name__)


def main() -> int:
    if len(sys.argv) != 2:
        print(__doc__.strip(), file=sys.stderr)
        return 2

    path = sys.argv[1]
    try:
        result = analyze_file(path)
    except ModalityProbeError as exc:
        logger.error("Could not analyse %s: %s", path, exc)
        print(json.dumps(exc.as_dict(), indent=2))
        return 1

    print(json.dumps(result.as_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
