"""AlphaDiaFast - Numba-accelerated DIA extraction and identification.

Takes centroided DIA scans and a spectral library of targets and decoys,
extracts fragment ion chromatograms for every precursor in its isolation
window and RT window, scores them (cosine, temporal cosine, fragment
correlation, elution peak), and controls the false discovery rate with an
iteratively trained linear classifier.

Stages
------
- index: scan index over DIA isolation windows, iRT library index
- rt: robust RT calibration (RANSAC + linear fit)
- query: fragment XIC queries per precursor
- xic: CPU (thread pool) and CUDA extraction backends
- scoring: scorers, peak detection, result assembly, q-values, FDR loop
- features: 13-feature vectors and TSV export
- classify: fixed, LDA and logistic regression classifiers

Examples
--------
>>> from alphadiafast import run_dia_search, DiaSearchParameters
>>> outcome = run_dia_search(scans, library, DiaSearchParameters(ppm_tolerance=15))
"""

__version__ = "0.1.0"

from alphadiafast import classify
from alphadiafast import features
from alphadiafast import index
from alphadiafast import query
from alphadiafast import rt
from alphadiafast import scoring
from alphadiafast import xic
from alphadiafast.config import (
    DiaSearchParameters,
    FdrHyperparameters,
    NegativeSource,
    ScoringStrategy,
)
from alphadiafast.pipeline import DiaSearchOutcome, calibrate_and_generate, run_dia_search

__all__ = [
    "classify",
    "features",
    "index",
    "query",
    "rt",
    "scoring",
    "xic",
    "DiaSearchParameters",
    "FdrHyperparameters",
    "NegativeSource",
    "ScoringStrategy",
    "DiaSearchOutcome",
    "calibrate_and_generate",
    "run_dia_search",
]
