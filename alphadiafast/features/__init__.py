"""Classifier features for DIA search results.

Each assembled result is reduced to a fixed 13-dimensional feature vector
(scores, fragment coverage, intensity statistics, XIC depth and RT
deviation). Vectors feed the linear classifiers and the iterative FDR loop,
and can be exported together with the results as TSV.

Examples
--------
>>> from alphadiafast.features import compute_features, features_to_matrix
>>>
>>> vectors = [compute_features(r, i) for i, r in enumerate(results)]
>>> X = features_to_matrix(vectors)   # (n, 13) float32
"""

from .export import COLUMNS, write_results_tsv
from .feature_vector import (
    FEATURE_COUNT,
    FEATURE_NAMES,
    DiaFeatureVector,
    compute_features,
    features_to_matrix,
)

__all__ = [
    "FEATURE_COUNT",
    "FEATURE_NAMES",
    "DiaFeatureVector",
    "compute_features",
    "features_to_matrix",
    "COLUMNS",
    "write_results_tsv",
]
