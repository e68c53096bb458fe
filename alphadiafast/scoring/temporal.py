"""Chromatogram similarity scoring for DIA precursors.

All fragments of a precursor are extracted from the same isolation window, so
their XICs share (nearly) the same scan RTs. The fragment with the most points
defines the RT grid; every other fragment is aligned to it with a two-pointer
merge, giving a dense time x fragment matrix. The scores below compare rows
of that matrix with the library fragment intensities.

Strategies
----------
- SUMMED: cosine of the per-fragment intensity sums
- CONSENSUS_APEX: cosine at the time point with the highest total signal
- TEMPORAL_COSINE: mean of the per-time-point cosines
- WEIGHTED_TEMPORAL_COSINE_WITH_TRANSFORM: sqrt(total intensity) weighted
  mean, then sharpened with ``max(score, 0) ** power``

Missing or degenerate data never raises: scores come back as NaN and the
caller treats the precursor as unscored.

Examples
--------
>>> from alphadiafast.scoring import TemporalScorer
>>> scorer = TemporalScorer(ScoringStrategy.TEMPORAL_COSINE)
>>> score = scorer.score(library, extraction.fragment_slices(0, 6),
...                      extraction.rt_buffer, extraction.intensity_buffer)
>>> score.dot_product_score
"""

from __future__ import annotations

import math
from typing import NamedTuple

import numpy as np
from numba import njit

from ..config import ScoringStrategy

# RT agreement (minutes) for two points to share a grid slot
RT_ALIGNMENT_TOLERANCE = 0.01


class TemporalScore(NamedTuple):
    """Output of :class:`TemporalScorer`.

    ``dot_product_score`` is the strategy's score (after any transform),
    ``raw_cosine`` the untransformed value. ``apex_time_index`` is -1 when
    the strategy has no notion of an apex.
    """

    dot_product_score: float
    raw_cosine: float
    time_points_used: int
    apex_time_index: int

    @property
    def is_valid(self) -> bool:
        return not math.isnan(self.dot_product_score)


TemporalScore.INSUFFICIENT = TemporalScore(math.nan, math.nan, 0, -1)


# ========== Numba kernels ==========

@njit
def normalized_dot_product(a: np.ndarray, b: np.ndarray) -> float:
    """L2-normalized dot product of two vectors, clamped to [0, 1].

    Only the common prefix is compared. Returns NaN if either vector has zero
    norm.
    """
    n = min(len(a), len(b))
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for i in range(n):
        dot += a[i] * b[i]
        norm_a += a[i] * a[i]
        norm_b += b[i] * b[i]

    if norm_a <= 0.0 or norm_b <= 0.0:
        return np.nan

    result = dot / (np.sqrt(norm_a) * np.sqrt(norm_b))
    return max(0.0, min(1.0, result))


@njit
def cosine_active_fragments(library: np.ndarray, observed: np.ndarray) -> float:
    """Cosine restricted to fragments that were observed (> 0).

    Unobserved fragments are left out of both norms, so missing ions do not
    drag the score down. NaN if nothing overlaps.
    """
    dot = 0.0
    norm_lib = 0.0
    norm_obs = 0.0
    for f in range(len(observed)):
        obs = observed[f]
        if obs <= 0.0:
            continue
        lib = library[f] if f < len(library) else 0.0
        dot += lib * obs
        norm_lib += lib * lib
        norm_obs += obs * obs

    if norm_lib <= 0.0 or norm_obs <= 0.0:
        return np.nan
    result = dot / (np.sqrt(norm_lib) * np.sqrt(norm_obs))
    return max(0.0, min(1.0, result))


@njit
def _align_to_grid(ref_rts, frag_rts, frag_intensities, matrix, column, rt_tolerance):
    """Two-pointer merge of one fragment's XIC onto the reference RT grid."""
    ptr = 0
    n_frag = len(frag_rts)
    for t in range(len(ref_rts)):
        if ptr >= n_frag:
            break
        ref_rt = ref_rts[t]
        while ptr < n_frag and frag_rts[ptr] < ref_rt - rt_tolerance:
            ptr += 1
        if ptr < n_frag and abs(frag_rts[ptr] - ref_rt) <= rt_tolerance:
            matrix[t, column] = frag_intensities[ptr]
            ptr += 1


@njit
def _build_matrix(offsets, counts, rt_buffer, intensity_buffer, rt_tolerance):
    n_frag = len(counts)
    ref = -1
    max_points = 0
    for f in range(n_frag):
        if counts[f] > max_points:
            max_points = counts[f]
            ref = f

    if max_points == 0:
        return np.zeros((0, n_frag)), np.zeros(0)

    ref_start = offsets[ref]
    ref_rts = rt_buffer[ref_start:ref_start + max_points].copy()
    matrix = np.zeros((max_points, n_frag))

    for f in range(n_frag):
        if counts[f] == 0:
            continue
        start = offsets[f]
        end = start + counts[f]
        _align_to_grid(
            ref_rts, rt_buffer[start:end], intensity_buffer[start:end],
            matrix, f, rt_tolerance
        )
    return matrix, ref_rts


def build_time_fragment_matrix(
    fragment_results: np.ndarray,
    rt_buffer: np.ndarray,
    intensity_buffer: np.ndarray,
    rt_tolerance: float = RT_ALIGNMENT_TOLERANCE,
) -> tuple[np.ndarray, np.ndarray]:
    """Align a precursor's fragment XICs on a common RT grid.

    Parameters
    ----------
    fragment_results : np.ndarray
        (F, 2) integer array of ``[offset, count]`` per fragment, pointing
        into the shared buffers
    rt_buffer, intensity_buffer : np.ndarray
        Buffers of an :class:`ExtractionResult`
    rt_tolerance : float
        Maximum RT difference (minutes) for a point to match a grid slot

    Returns
    -------
    matrix : np.ndarray
        (T, F) float64 intensities, zero where a fragment was not seen
    ref_rts : np.ndarray
        RT of each of the T grid rows (empty if no fragment has data)
    """
    fragment_results = np.asarray(fragment_results, dtype=np.int64).reshape(-1, 2)
    return _build_matrix(
        np.ascontiguousarray(fragment_results[:, 0]),
        np.ascontiguousarray(fragment_results[:, 1]),
        np.asarray(rt_buffer, dtype=np.float64),
        np.asarray(intensity_buffer),
        float(rt_tolerance),
    )


@njit
def temporal_cosine_on_range(library, matrix, range_start, range_end, min_active_fragments):
    """Uniform mean of active-fragment cosines over rows ``[start, end]``.

    Rows with fewer than ``min_active_fragments`` observed fragments are
    skipped.

    Returns
    -------
    score : float
        NaN if no row qualified
    valid_time_points : int
    """
    n_time = matrix.shape[0]
    n_frag = matrix.shape[1]
    range_start = max(0, range_start)
    range_end = min(n_time - 1, range_end)

    total = 0.0
    valid = 0
    for t in range(range_start, range_end + 1):
        active = 0
        signal = 0.0
        for f in range(n_frag):
            if matrix[t, f] > 0.0:
                active += 1
                signal += matrix[t, f]
        if active < min_active_fragments or signal <= 0.0:
            continue
        cos_t = cosine_active_fragments(library, matrix[t])
        if np.isnan(cos_t):
            continue
        total += cos_t
        valid += 1

    if valid == 0:
        return np.nan, 0
    return total / valid, valid


@njit
def pearson_on_range(matrix, frag_a, frag_b, range_start, range_end):
    """Pearson correlation of two fragments over rows where both are > 0.

    NaN with fewer than 3 shared points or zero variance; clamped to [-1, 1].
    """
    sum_a = 0.0
    sum_b = 0.0
    sum_ab = 0.0
    sum_a2 = 0.0
    sum_b2 = 0.0
    n = 0
    for t in range(range_start, range_end + 1):
        a = matrix[t, frag_a]
        b = matrix[t, frag_b]
        if a <= 0.0 or b <= 0.0:
            continue
        sum_a += a
        sum_b += b
        sum_ab += a * b
        sum_a2 += a * a
        sum_b2 += b * b
        n += 1

    if n < 3:
        return np.nan
    denom = (n * sum_a2 - sum_a * sum_a) * (n * sum_b2 - sum_b * sum_b)
    if denom <= 0.0:
        return np.nan
    r = (n * sum_ab - sum_a * sum_b) / np.sqrt(denom)
    return max(-1.0, min(1.0, r))


@njit
def fragment_correlations_on_range(matrix, range_start, range_end):
    """Mean and minimum pairwise fragment correlation over a row range.

    Only fragments with at least 3 non-zero points in the range take part,
    and at least two of them are needed. Both values are NaN otherwise.
    """
    n_time = matrix.shape[0]
    n_frag = matrix.shape[1]
    range_start = max(0, range_start)
    range_end = min(n_time - 1, range_end)
    if range_end - range_start + 1 < 3:
        return np.nan, np.nan

    detected = np.empty(n_frag, dtype=np.int64)
    n_detected = 0
    for f in range(n_frag):
        nonzero = 0
        for t in range(range_start, range_end + 1):
            if matrix[t, f] > 0.0:
                nonzero += 1
        if nonzero >= 3:
            detected[n_detected] = f
            n_detected += 1

    if n_detected < 2:
        return np.nan, np.nan

    total = 0.0
    lowest = np.inf
    n_pairs = 0
    for i in range(n_detected):
        for j in range(i + 1, n_detected):
            r = pearson_on_range(matrix, detected[i], detected[j], range_start, range_end)
            if not np.isnan(r):
                total += r
                if r < lowest:
                    lowest = r
                n_pairs += 1

    if n_pairs == 0:
        return np.nan, np.nan
    return total / n_pairs, lowest


def spectral_angle_score(cosine: float) -> float:
    """Normalized spectral angle ``1 - 2/pi * acos(cos)``, in [0, 1].

    The cosine is clamped to [0, 1] first; NaN stays NaN.
    """
    if cosine is None or math.isnan(cosine):
        return math.nan
    clamped = min(max(float(cosine), 0.0), 1.0)
    return 1.0 - (2.0 / math.pi) * math.acos(clamped)


# ========== Strategies ==========

def _score_summed(library, matrix):
    summed = matrix.sum(axis=0)
    dp = normalized_dot_product(library, summed)
    return TemporalScore(dp, dp, matrix.shape[0], -1)


def _score_consensus_apex(library, matrix):
    totals = matrix.sum(axis=1)
    apex = int(np.argmax(totals))
    if totals[apex] <= 0:
        return TemporalScore.INSUFFICIENT
    dp = normalized_dot_product(library, matrix[apex])
    return TemporalScore(dp, dp, matrix.shape[0], apex)


def _score_temporal_cosine(library, matrix, weighted, power):
    if np.dot(library, library) <= 0:
        return TemporalScore.INSUFFICIENT

    weighted_sum = 0.0
    weight_sum = 0.0
    valid = 0
    apex = 0
    apex_total = 0.0

    for t in range(matrix.shape[0]):
        row = matrix[t]
        total = float(row.sum())
        if total <= 0:
            continue
        if total > apex_total:
            apex_total = total
            apex = t

        cos_t = normalized_dot_product(library, row)
        if math.isnan(cos_t):
            continue

        weight = math.sqrt(total) if weighted else 1.0
        weighted_sum += weight * cos_t
        weight_sum += weight
        valid += 1

    if weight_sum <= 0 or valid == 0:
        return TemporalScore.INSUFFICIENT

    score = weighted_sum / weight_sum
    transformed = max(score, 0.0) ** power if power > 1.0 else score
    return TemporalScore(transformed, score, valid, apex)


class TemporalScorer:
    """Score a precursor's fragment XICs against its library spectrum.

    Parameters
    ----------
    strategy : ScoringStrategy, default=TEMPORAL_COSINE
        How the time x fragment matrix is collapsed into one score
    nonlinear_power : float, default=3.0
        Exponent for the weighted strategy; values below 1 are raised to 1
    """

    def __init__(
        self,
        strategy: ScoringStrategy = ScoringStrategy.TEMPORAL_COSINE,
        nonlinear_power: float = 3.0,
    ):
        self.strategy = ScoringStrategy(strategy)
        self.nonlinear_power = max(1.0, float(nonlinear_power))

    def score_matrix(self, library_intensities: np.ndarray, matrix: np.ndarray) -> TemporalScore:
        """Apply the strategy to an already aligned (T, F) matrix."""
        library = np.asarray(library_intensities, dtype=np.float64)
        if matrix.shape[1] < 2 or matrix.shape[0] == 0:
            return TemporalScore.INSUFFICIENT

        if self.strategy is ScoringStrategy.SUMMED:
            return _score_summed(library, matrix)
        if self.strategy is ScoringStrategy.CONSENSUS_APEX:
            return _score_consensus_apex(library, matrix)
        if self.strategy is ScoringStrategy.TEMPORAL_COSINE:
            return _score_temporal_cosine(library, matrix, weighted=False, power=1.0)
        return _score_temporal_cosine(library, matrix, weighted=True, power=self.nonlinear_power)

    def score(
        self,
        library_intensities: np.ndarray,
        fragment_results: np.ndarray,
        rt_buffer: np.ndarray,
        intensity_buffer: np.ndarray,
    ) -> TemporalScore:
        """Score one precursor.

        Parameters
        ----------
        library_intensities : np.ndarray
            Library intensity per fragment
        fragment_results : np.ndarray
            (F, 2) ``[offset, count]`` rows into the buffers, one per fragment
        rt_buffer, intensity_buffer : np.ndarray
            Shared extraction buffers

        Returns
        -------
        TemporalScore
            ``TemporalScore.INSUFFICIENT`` for fewer than two fragments or no
            extracted data.
        """
        fragment_results = np.asarray(fragment_results, dtype=np.int64).reshape(-1, 2)
        if len(fragment_results) < 2:
            return TemporalScore.INSUFFICIENT
        matrix, _ = build_time_fragment_matrix(fragment_results, rt_buffer, intensity_buffer)
        if matrix.shape[0] == 0:
            return TemporalScore.INSUFFICIENT
        return self.score_matrix(library_intensities, matrix)

    def __repr__(self) -> str:
        return f"TemporalScorer({self.strategy.name}, power={self.nonlinear_power})"
