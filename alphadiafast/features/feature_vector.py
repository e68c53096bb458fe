"""Fixed 13-dimensional feature vectors for DIA precursor classification.

The feature order is part of the classifier contract: weights, standardization
statistics and exported tables all index features by position. The order is
defined once in :data:`FEATURE_NAMES` and checked against the vector fields
when this module is imported.

Features
--------
=====  ====================  ===============================================
Index  Name                  Meaning
=====  ====================  ===============================================
0      ApexScore             Active-fragment cosine at the apex scan
1      TemporalScore         Mean active-fragment cosine across scans
2      SpectralAngle         Normalized spectral angle of the primary cosine
3      MeanFragCorr          Mean pairwise fragment XIC correlation
4      MinFragCorr           Lowest pairwise correlation (-1 if undefined)
5      FragDetRate           Detected / queried fragments
6      LogTotalIntensity     log10 of summed fragment intensity
7      IntensityCV           CV of detected fragment intensities
8      MedianXicDepth        Median points per detected fragment XIC
9      XicDepthCV            CV of points per detected fragment XIC
10     TimePointsUsed        Scans contributing to the temporal score
11     RtDeviationMinutes    |observed apex RT - expected RT|, capped at 5
12     RtDeviationSquared    Square of the above
=====  ====================  ===============================================

The squared RT deviation lets a linear classifier learn a non-linear RT
penalty.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Sequence

import numpy as np

from ..exceptions import FeatureSchemaError

FEATURE_NAMES: tuple[str, ...] = (
    "ApexScore",
    "TemporalScore",
    "SpectralAngle",
    "MeanFragCorr",
    "MinFragCorr",
    "FragDetRate",
    "LogTotalIntensity",
    "IntensityCV",
    "MedianXicDepth",
    "XicDepthCV",
    "TimePointsUsed",
    "RtDeviationMinutes",
    "RtDeviationSquared",
)

FEATURE_COUNT = 13

# Vector attribute backing each feature, same order as FEATURE_NAMES
_FEATURE_FIELDS: tuple[str, ...] = (
    "apex_score",
    "temporal_score",
    "spectral_angle",
    "mean_fragment_correlation",
    "min_fragment_correlation",
    "fragment_detection_rate",
    "log_total_intensity",
    "intensity_cv",
    "median_xic_depth",
    "xic_depth_cv",
    "time_points_used",
    "rt_deviation_minutes",
    "rt_deviation_squared",
)

MAX_RT_DEVIATION_MINUTES = 5.0


def _check_schema() -> None:
    if len(FEATURE_NAMES) != FEATURE_COUNT:
        raise FeatureSchemaError(
            f"FEATURE_NAMES has {len(FEATURE_NAMES)} entries, expected {FEATURE_COUNT}"
        )
    if len(_FEATURE_FIELDS) != FEATURE_COUNT:
        raise FeatureSchemaError(
            f"Feature field map has {len(_FEATURE_FIELDS)} entries, expected {FEATURE_COUNT}"
        )
    declared = {f.name for f in fields(DiaFeatureVector)}
    missing = [name for name in _FEATURE_FIELDS if name not in declared]
    if missing:
        raise FeatureSchemaError(f"DiaFeatureVector lacks feature fields: {missing}")


@dataclass
class DiaFeatureVector:
    """Classifier features plus identifying metadata for one precursor."""

    apex_score: float = 0.0
    temporal_score: float = 0.0
    spectral_angle: float = 0.0
    mean_fragment_correlation: float = 0.0
    min_fragment_correlation: float = -1.0
    fragment_detection_rate: float = 0.0
    log_total_intensity: float = 0.0
    intensity_cv: float = 1.0
    median_xic_depth: float = 0.0
    xic_depth_cv: float = 1.0
    time_points_used: float = 0.0
    rt_deviation_minutes: float = MAX_RT_DEVIATION_MINUTES
    rt_deviation_squared: float = MAX_RT_DEVIATION_MINUTES ** 2

    # metadata, not classifier input
    is_decoy: bool = False
    precursor_index: int = -1
    charge: int = 0
    precursor_mz: float = 0.0
    fragments_detected: int = 0
    fragments_queried: int = 0

    def write_to(self, buffer: np.ndarray) -> None:
        """Write the 13 features in canonical order into ``buffer[:13]``.

        Raises
        ------
        ValueError
            If ``buffer`` holds fewer than 13 elements.
        """
        if len(buffer) < FEATURE_COUNT:
            raise ValueError(
                f"Buffer must have at least {FEATURE_COUNT} elements, got {len(buffer)}"
            )
        for i, name in enumerate(_FEATURE_FIELDS):
            buffer[i] = getattr(self, name)

    def to_array(self, dtype=np.float32) -> np.ndarray:
        out = np.empty(FEATURE_COUNT, dtype=dtype)
        self.write_to(out)
        return out

    @classmethod
    def from_buffer(cls, buffer: Sequence[float], **metadata) -> 'DiaFeatureVector':
        """Inverse of :meth:`write_to`; metadata is passed as keywords."""
        if len(buffer) < FEATURE_COUNT:
            raise ValueError(
                f"Buffer must have at least {FEATURE_COUNT} elements, got {len(buffer)}"
            )
        values = {name: float(buffer[i]) for i, name in enumerate(_FEATURE_FIELDS)}
        return cls(**values, **metadata)

    def as_dict(self) -> dict[str, float]:
        """Feature name -> value, in canonical order."""
        return {FEATURE_NAMES[i]: getattr(self, name) for i, name in enumerate(_FEATURE_FIELDS)}


_check_schema()


def _safe(score: float, fallback: float = 0.0) -> float:
    if score is None or math.isnan(score):
        return fallback
    return float(score)


def _population_cv(values: np.ndarray) -> float:
    mean = values.mean()
    if mean <= 0:
        return 0.0
    return float(values.std() / mean)


def compute_features(result, precursor_index: int) -> DiaFeatureVector:
    """Derive the feature vector of one assembled result.

    Parameters
    ----------
    result : DiaSearchResult
        Scored result from assembly
    precursor_index : int
        Position of ``result`` in the result list, kept as metadata

    Returns
    -------
    DiaFeatureVector

    Notes
    -----
    - NaN scores become 0; a NaN minimum correlation becomes -1.
    - Intensity and XIC-depth CVs are population CVs over detected fragments,
      set to 1 with fewer than two detected fragments.
    - The RT deviation compares the observed apex with the window's expected
      RT and is capped at 5 minutes; without either value it is 5 (squared 25).
    """
    fv = DiaFeatureVector()
    fv.apex_score = _safe(result.apex_score)
    fv.temporal_score = _safe(result.temporal_score)
    fv.spectral_angle = _safe(result.spectral_angle_score)
    fv.mean_fragment_correlation = _safe(result.mean_fragment_correlation)
    fv.min_fragment_correlation = _safe(result.min_fragment_correlation, fallback=-1.0)
    fv.fragment_detection_rate = float(result.fragment_detection_rate)
    fv.time_points_used = float(result.time_points_used)

    intensities = np.asarray(result.extracted_intensities, dtype=np.float64)
    point_counts = np.asarray(result.xic_point_counts)
    detected = point_counts > 0
    n_detected = int(detected.sum())

    total = float(intensities.sum())
    fv.log_total_intensity = math.log10(total) if total > 0 else 0.0

    if n_detected >= 2:
        fv.intensity_cv = _population_cv(intensities[detected])
        depths = point_counts[detected].astype(np.float64)
        fv.median_xic_depth = float(np.median(depths))
        fv.xic_depth_cv = _population_cv(depths)
    elif n_detected == 1:
        fv.intensity_cv = 1.0
        fv.median_xic_depth = float(point_counts[detected][0])
        fv.xic_depth_cv = 1.0
    else:
        fv.intensity_cv = 1.0
        fv.median_xic_depth = 0.0
        fv.xic_depth_cv = 1.0

    expected = result.expected_rt
    observed = result.observed_apex_rt
    if expected is not None and observed is not None and not math.isnan(observed):
        deviation = min(abs(observed - expected), MAX_RT_DEVIATION_MINUTES)
    else:
        deviation = MAX_RT_DEVIATION_MINUTES
    fv.rt_deviation_minutes = deviation
    fv.rt_deviation_squared = deviation * deviation

    fv.is_decoy = bool(result.is_decoy)
    fv.precursor_index = precursor_index
    fv.charge = result.charge
    fv.precursor_mz = float(result.precursor_mz)
    fv.fragments_detected = result.fragments_detected
    fv.fragments_queried = result.fragments_queried
    return fv


def features_to_matrix(vectors: Sequence[DiaFeatureVector]) -> np.ndarray:
    """Stack feature vectors into an (n, 13) float32 matrix."""
    matrix = np.empty((len(vectors), FEATURE_COUNT), dtype=np.float32)
    for i, vector in enumerate(vectors):
        vector.write_to(matrix[i])
    return matrix
