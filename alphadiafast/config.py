"""
Search and FDR parameters for the DIA pipeline.

Plain dataclasses with production defaults. Every stage takes its settings
from one of these objects so a whole run can be described (and logged) in one
place.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Tuple


# Sigma multipliers commonly used for calibrated RT windows
CALIBRATED_WINDOW_K_CHOICES: Tuple[float, ...] = (1.0, 1.5, 2.0, 2.5, 3.0)


class ScoringStrategy(Enum):
    """How fragment chromatograms are collapsed into one similarity score."""
    SUMMED = "summed"                      # cosine of summed XIC intensities
    CONSENSUS_APEX = "consensus_apex"      # cosine at the highest time point
    TEMPORAL_COSINE = "temporal_cosine"    # mean per-time-point cosine
    WEIGHTED_TEMPORAL_COSINE_WITH_TRANSFORM = "weighted_temporal_cosine"


class NegativeSource(Enum):
    """Where the FDR engine draws its negative training pool from."""
    DECOYS = "decoys"
    BOTTOM_QUANTILE = "bottom_quantile"


@dataclass
class DiaSearchParameters:
    """Parameters for query generation, extraction and result assembly.

    Attributes
    ----------
    ppm_tolerance : float
        Fragment m/z tolerance in ppm.
    rt_tolerance_minutes : float
        Half-width of the fixed RT window around the library RT.
    min_fragments_required : int
        Candidates with fewer detected fragments are not scored.
    min_score_threshold : float
        Candidates whose primary score falls below this are dropped.
    max_threads : int
        CPU extraction workers; -1 means one per core.
    prefer_gpu : bool
        Use the CUDA backend for extraction.
    scoring_strategy : ScoringStrategy
        Strategy used by the temporal scorer.
    nonlinear_power : float
        Exponent for the weighted temporal cosine transform (clamped to >= 1).
    calibrated_window_sigma_multiplier : float
        k in ``k * sigma`` for calibrated RT windows.
    initial_irt_window : float
        iRT half-width of the provisional (pre-calibration) window.
    isolation_window_tolerance_ppm : float
        Isolation centers closer than this collapse into one DIA window.
    """

    ppm_tolerance: float = 20.0
    rt_tolerance_minutes: float = 5.0
    min_fragments_required: int = 3
    min_score_threshold: float = 0.0
    max_threads: int = -1
    prefer_gpu: bool = False
    scoring_strategy: ScoringStrategy = ScoringStrategy.TEMPORAL_COSINE
    nonlinear_power: float = 3.0
    calibrated_window_sigma_multiplier: float = 3.0
    initial_irt_window: float = 20.0
    isolation_window_tolerance_ppm: float = 10.0

    @property
    def effective_max_threads(self) -> int:
        """Thread count with -1 resolved to the number of cores."""
        if self.max_threads is None or self.max_threads <= 0:
            return os.cpu_count() or 1
        return self.max_threads

    def validate(self) -> 'DiaSearchParameters':
        """Check ranges, raising ValueError on the first bad value."""
        if self.ppm_tolerance <= 0:
            raise ValueError(f"ppm_tolerance must be positive, got {self.ppm_tolerance}")
        if self.rt_tolerance_minutes <= 0:
            raise ValueError(
                f"rt_tolerance_minutes must be positive, got {self.rt_tolerance_minutes}"
            )
        if self.min_fragments_required < 1:
            raise ValueError(
                f"min_fragments_required must be >= 1, got {self.min_fragments_required}"
            )
        if self.calibrated_window_sigma_multiplier <= 0:
            raise ValueError(
                "calibrated_window_sigma_multiplier must be positive, "
                f"got {self.calibrated_window_sigma_multiplier}"
            )
        if self.initial_irt_window <= 0:
            raise ValueError(f"initial_irt_window must be positive, got {self.initial_irt_window}")
        if self.isolation_window_tolerance_ppm < 0:
            raise ValueError(
                "isolation_window_tolerance_ppm must be >= 0, "
                f"got {self.isolation_window_tolerance_ppm}"
            )
        if not isinstance(self.scoring_strategy, ScoringStrategy):
            raise ValueError(f"Unknown scoring strategy: {self.scoring_strategy}")
        return self


@dataclass
class FdrHyperparameters:
    """Settings for the iterative semi-supervised FDR loop.

    The defaults are the ones the loop was tuned with: a lightly regularized
    logistic regression trained for 300 epochs per iteration, at most five
    iterations, and 1% relative change as the convergence criterion for both
    the classifier weights and the number of identifications.
    """

    max_iterations: int = 5
    convergence_threshold: float = 0.01
    id_count_convergence_threshold: float = 0.01
    l2_lambda: float = 5e-3
    learning_rate: float = 0.05
    max_epochs: int = 300
    batch_size: int = 256
    min_training_pool: int = 50
    positive_quantile: float = 0.4
    negative_source: NegativeSource = NegativeSource.DECOYS
    min_decoy_sample: int = 1000
    q_value_threshold: float = 0.01
    seed: int = 42

    def validate(self) -> 'FdrHyperparameters':
        """Check ranges, raising ValueError on the first bad value."""
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not 0.0 < self.positive_quantile < 1.0:
            raise ValueError(
                f"positive_quantile must be in (0, 1), got {self.positive_quantile}"
            )
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.l2_lambda < 0:
            raise ValueError(f"l2_lambda must be >= 0, got {self.l2_lambda}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if not isinstance(self.negative_source, NegativeSource):
            raise ValueError(f"Unknown negative source: {self.negative_source}")
        return self
