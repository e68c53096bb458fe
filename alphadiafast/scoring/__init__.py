"""Scoring, peak detection, result assembly and FDR for DIA search.

Key Features
------------
- Four strategies for collapsing fragment XICs into one similarity score
- Active-fragment cosine at the apex and across scans
- Pairwise fragment correlation (mean and weakest pair)
- Elution peak detection with peak-restricted rescoring
- Target-decoy q-values and an iterative classifier/FDR state machine

Examples
--------
>>> from alphadiafast.scoring import assemble_results, run_iterative_fdr
>>>
>>> results = assemble_results(precursors, generation, extraction, parameters)
>>> features = [compute_features(r, i) for i, r in enumerate(results)]
>>> fdr = run_iterative_fdr(results, features)
>>> print(fdr.ids_at_1pct)
"""

from .assembly import AssemblyStats, assemble_results
from .fdr import (
    FdrEngine,
    FdrResult,
    FdrState,
    IterationDiagnostics,
    calculate_q_values,
    compute_q_values,
    run_iterative_fdr,
    summarize_q_values,
)
from .peak_group import PeakGroup, detect_peak_group
from .results import DiaSearchResult, FdrInfo
from .temporal import (
    TemporalScore,
    TemporalScorer,
    build_time_fragment_matrix,
    cosine_active_fragments,
    fragment_correlations_on_range,
    normalized_dot_product,
    pearson_on_range,
    spectral_angle_score,
    temporal_cosine_on_range,
)

__all__ = [
    "AssemblyStats",
    "assemble_results",
    "FdrEngine",
    "FdrResult",
    "FdrState",
    "IterationDiagnostics",
    "calculate_q_values",
    "compute_q_values",
    "run_iterative_fdr",
    "summarize_q_values",
    "PeakGroup",
    "detect_peak_group",
    "DiaSearchResult",
    "FdrInfo",
    "TemporalScore",
    "TemporalScorer",
    "build_time_fragment_matrix",
    "cosine_active_fragments",
    "fragment_correlations_on_range",
    "normalized_dot_product",
    "pearson_on_range",
    "spectral_angle_score",
    "temporal_cosine_on_range",
]
