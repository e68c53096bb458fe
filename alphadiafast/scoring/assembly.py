"""Assemble per-precursor results from extracted fragment XICs.

For every precursor group the fragment XICs are aligned once into a
time x fragment matrix. From that matrix we compute:

- full-window apex cosine (active fragments at the highest-signal scan)
- full-window temporal cosine (scans with >= 3 active fragments)
- pairwise fragment correlations (mean and minimum Pearson r)
- the detected elution peak and the same scores restricted to it
- the spectral angle of the primary cosine

Candidates with too few detected fragments, or whose primary score falls
below ``min_score_threshold``, are dropped and counted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ..config import DiaSearchParameters, ScoringStrategy
from ..query.generator import GenerationResult
from ..query.precursor import LibraryPrecursorInput
from ..xic.extraction import ExtractionResult
from .peak_group import detect_peak_group
from .results import DiaSearchResult
from .temporal import (
    TemporalScorer,
    build_time_fragment_matrix,
    cosine_active_fragments,
    fragment_correlations_on_range,
    spectral_angle_score,
    temporal_cosine_on_range,
)

logger = logging.getLogger(__name__)

# Active fragments a scan needs to contribute to the temporal cosine
MIN_ACTIVE_FRAGMENTS = 3


@dataclass
class AssemblyStats:
    """Counters for one assembly run."""

    groups_seen: int = 0
    results_kept: int = 0
    skipped_min_fragments: int = 0
    skipped_score_threshold: int = 0
    without_signal: int = 0
    with_peak_group: int = 0


def _score_matrix(result: DiaSearchResult, library: np.ndarray, matrix: np.ndarray,
                  rts: np.ndarray, scorer: TemporalScorer) -> None:
    """Fill all matrix-derived scores of one result."""
    n_time = matrix.shape[0]
    peak = detect_peak_group(matrix, rts, library)
    result.peak_group = peak

    totals = matrix.sum(axis=1)
    apex = int(np.argmax(totals))
    result.apex_score = float(cosine_active_fragments(library, matrix[apex]))
    result.apex_time_index = apex
    result.observed_apex_rt = float(rts[apex])

    temporal, used = temporal_cosine_on_range(library, matrix, 0, n_time - 1, MIN_ACTIVE_FRAGMENTS)
    result.temporal_score = float(temporal)
    result.time_points_used = int(used)

    if scorer.strategy is ScoringStrategy.TEMPORAL_COSINE:
        result.dot_product_score = result.temporal_score
        result.raw_cosine = result.temporal_score
    else:
        strategy_score = scorer.score_matrix(library, matrix)
        result.dot_product_score = float(strategy_score.dot_product_score)
        result.raw_cosine = float(strategy_score.raw_cosine)

    mean_corr, min_corr = fragment_correlations_on_range(matrix, 0, n_time - 1)
    result.mean_fragment_correlation = float(mean_corr)
    result.min_fragment_correlation = float(min_corr)

    if peak is not None:
        result.peak_apex_score = float(cosine_active_fragments(library, matrix[peak.apex_index]))
        result.observed_apex_rt = peak.apex_rt
        peak_temporal, _ = temporal_cosine_on_range(
            library, matrix, peak.left_index, peak.right_index, MIN_ACTIVE_FRAGMENTS
        )
        result.peak_temporal_score = float(peak_temporal)
        peak_mean, peak_min = fragment_correlations_on_range(
            matrix, peak.left_index, peak.right_index
        )
        result.peak_mean_fragment_correlation = float(peak_mean)
        result.peak_min_fragment_correlation = float(peak_min)
    else:
        result.peak_apex_score = result.apex_score
        result.peak_temporal_score = result.temporal_score
        result.peak_mean_fragment_correlation = result.mean_fragment_correlation
        result.peak_min_fragment_correlation = result.min_fragment_correlation

    result.spectral_angle_score = spectral_angle_score(result.raw_cosine)


def assemble_results(
    precursors: Sequence[LibraryPrecursorInput],
    generation: GenerationResult,
    extraction: ExtractionResult,
    parameters: Optional[DiaSearchParameters] = None,
    stats: Optional[AssemblyStats] = None,
) -> List[DiaSearchResult]:
    """Build scored results, one per precursor group that passes the filters.

    Parameters
    ----------
    precursors : sequence of LibraryPrecursorInput
        The library passed to query generation
    generation : GenerationResult
        Queries and groups produced for ``precursors``
    extraction : ExtractionResult
        Extraction output for ``generation.queries`` (same order)
    parameters : DiaSearchParameters, optional
        ``min_fragments_required``, ``min_score_threshold``,
        ``scoring_strategy`` and ``nonlinear_power`` are used
    stats : AssemblyStats, optional
        Counters updated in place

    Returns
    -------
    list of DiaSearchResult
        In precursor-group order

    Raises
    ------
    ValueError
        If the extraction does not cover the generated queries.
    """
    parameters = parameters or DiaSearchParameters()
    stats = stats if stats is not None else AssemblyStats()
    if extraction.query_count != generation.query_count:
        raise ValueError(
            f"Extraction covers {extraction.query_count} queries, "
            f"generation produced {generation.query_count}"
        )

    scorer = TemporalScorer(parameters.scoring_strategy, parameters.nonlinear_power)
    results = []

    for group in generation.precursor_groups:
        stats.groups_seen += 1
        precursor = precursors[group.input_index]
        start = group.query_offset
        end = start + group.query_count

        result = DiaSearchResult(
            sequence=precursor.sequence,
            charge=precursor.charge,
            precursor_mz=precursor.precursor_mz,
            window_id=group.window_id,
            is_decoy=precursor.is_decoy,
            fragments_queried=group.query_count,
            rt_window_start=group.rt_min,
            rt_window_end=group.rt_max,
            library_rt=precursor.rt,
            expected_rt=group.expected_rt,
        )

        counts = extraction.data_point_counts[start:end]
        result.extracted_intensities = extraction.total_intensities[start:end].astype(np.float64)
        result.xic_point_counts = counts.astype(np.int32)
        result.fragments_detected = int(np.count_nonzero(counts))

        if not result.meets_min_fragments(parameters.min_fragments_required):
            stats.skipped_min_fragments += 1
            continue

        if counts.max(initial=0) == 0:
            stats.without_signal += 1
            stats.results_kept += 1
            results.append(result)
            continue

        library = precursor.fragment_intensities.astype(np.float64)
        matrix, rts = build_time_fragment_matrix(
            extraction.fragment_slices(start, group.query_count),
            extraction.rt_buffer,
            extraction.intensity_buffer,
        )
        _score_matrix(result, library, matrix, rts, scorer)
        if result.peak_group is not None:
            stats.with_peak_group += 1

        if not math.isnan(result.dot_product_score) and \
                result.dot_product_score < parameters.min_score_threshold:
            stats.skipped_score_threshold += 1
            continue

        stats.results_kept += 1
        results.append(result)

    logger.info(
        f"Assembled {len(results):,} results from {stats.groups_seen:,} groups "
        f"({stats.skipped_min_fragments} below min fragments, "
        f"{stats.skipped_score_threshold} below score threshold, "
        f"{stats.with_peak_group} with peak group)"
    )
    return results
