"""Per-precursor search results."""

import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .peak_group import PeakGroup


@dataclass
class FdrInfo:
    """Target-decoy statistics at one result's position in the ranking."""

    q_value: float
    cumulative_target: int
    cumulative_decoy: int


@dataclass
class DiaSearchResult:
    """Scores and metadata for one precursor candidate.

    Created by result assembly. The classifier stage later sets
    ``classifier_score`` and the FDR stage sets ``fdr_info``. Scores that
    could not be computed are NaN.
    """

    sequence: str
    charge: int
    precursor_mz: float
    window_id: int
    is_decoy: bool
    fragments_queried: int
    rt_window_start: float
    rt_window_end: float
    library_rt: Optional[float] = None
    expected_rt: Optional[float] = None

    extracted_intensities: np.ndarray = field(default=None)
    xic_point_counts: np.ndarray = field(default=None)
    fragments_detected: int = 0

    # full-window scores
    dot_product_score: float = math.nan
    raw_cosine: float = math.nan
    apex_score: float = math.nan
    temporal_score: float = math.nan
    spectral_angle_score: float = math.nan
    mean_fragment_correlation: float = math.nan
    min_fragment_correlation: float = math.nan
    time_points_used: int = 0
    apex_time_index: int = -1
    observed_apex_rt: float = math.nan

    # peak-restricted scores
    peak_group: Optional[PeakGroup] = None
    peak_apex_score: float = math.nan
    peak_temporal_score: float = math.nan
    peak_mean_fragment_correlation: float = math.nan
    peak_min_fragment_correlation: float = math.nan

    classifier_score: float = math.nan
    fdr_info: Optional[FdrInfo] = None

    def __post_init__(self):
        if self.extracted_intensities is None:
            self.extracted_intensities = np.zeros(self.fragments_queried, dtype=np.float64)
        if self.xic_point_counts is None:
            self.xic_point_counts = np.zeros(self.fragments_queried, dtype=np.int32)

    @property
    def fragment_detection_rate(self) -> float:
        if self.fragments_queried <= 0:
            return 0.0
        return self.fragments_detected / self.fragments_queried

    def meets_min_fragments(self, min_fragments: int) -> bool:
        return self.fragments_detected >= min_fragments

    @property
    def q_value(self) -> float:
        return self.fdr_info.q_value if self.fdr_info is not None else math.nan

    def __repr__(self) -> str:
        kind = "decoy" if self.is_decoy else "target"
        return (
            f"DiaSearchResult({self.sequence}/{self.charge}+ {kind}, "
            f"frags={self.fragments_detected}/{self.fragments_queried}, "
            f"temporal={self.temporal_score:.3f}, apex={self.apex_score:.3f})"
        )
