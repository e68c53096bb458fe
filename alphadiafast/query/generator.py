"""Turn library precursors into per-fragment extraction queries.

For each precursor the isolation window is resolved from its m/z, an RT
window is chosen, and one query is emitted per fragment ion. Queries of one
precursor are contiguous; :class:`PrecursorQueryGroup` records where they are
so results can be assembled after extraction.

Two RT window policies are available:

- :func:`generate_queries`: library RT +/- a fixed tolerance
- :func:`generate_calibrated_queries`: calibrated RT +/- k * sigma

Precursors without a matching window or without fragments are counted in the
:class:`GenerationResult`, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import numpy as np

from ..config import DiaSearchParameters
from ..index.scan_index import ScanIndex
from ..rt.calibration import RtCalibrationModel
from .precursor import LibraryPrecursorInput

logger = logging.getLogger(__name__)

QUERY_DTYPE = np.dtype([
    ('target_mz', np.float64),
    ('tolerance_ppm', np.float64),
    ('rt_min', np.float64),
    ('rt_max', np.float64),
    ('window_id', np.int32),
    ('query_id', np.int32),
])


def make_fragment_queries(
    target_mz,
    tolerance_ppm,
    rt_min,
    rt_max,
    window_id,
) -> np.ndarray:
    """Build a query array from parallel (or broadcastable) columns.

    Query ids are assigned 0..n-1 in input order.

    Examples
    --------
    >>> queries = make_fragment_queries([500.0, 600.0], 20.0, 10.0, 12.0, 0)
    >>> queries['query_id']
    array([0, 1], dtype=int32)
    """
    target_mz = np.atleast_1d(np.asarray(target_mz, dtype=np.float64))
    n = len(target_mz)
    queries = np.zeros(n, dtype=QUERY_DTYPE)
    queries['target_mz'] = target_mz
    queries['tolerance_ppm'] = tolerance_ppm
    queries['rt_min'] = rt_min
    queries['rt_max'] = rt_max
    queries['window_id'] = window_id
    queries['query_id'] = np.arange(n, dtype=np.int32)
    return queries


@dataclass
class PrecursorQueryGroup:
    """Queries belonging to one precursor.

    ``expected_rt`` is the center of the RT window, or None when the whole
    run was searched because no RT information was available.
    """

    input_index: int
    query_offset: int
    query_count: int
    window_id: int
    rt_min: float
    rt_max: float
    expected_rt: Optional[float] = None


@dataclass
class GenerationResult:
    """Queries plus the grouping metadata needed to assemble results."""

    queries: np.ndarray
    precursor_groups: List[PrecursorQueryGroup] = field(default_factory=list)
    skipped_no_window: int = 0
    skipped_no_fragments: int = 0

    @property
    def query_count(self) -> int:
        return len(self.queries)

    @property
    def total_skipped(self) -> int:
        return self.skipped_no_window + self.skipped_no_fragments


def _generate(
    precursors: Sequence[LibraryPrecursorInput],
    index: ScanIndex,
    parameters: DiaSearchParameters,
    rt_window_for: Callable,
) -> GenerationResult:
    """Two passes: resolve and count, then fill one preallocated array."""
    if precursors is None:
        raise TypeError("precursors must not be None")
    if index is None:
        raise TypeError("index must not be None")

    window_ids = np.empty(len(precursors), dtype=np.int64)
    skipped_no_window = 0
    skipped_no_fragments = 0
    total = 0

    for i, precursor in enumerate(precursors):
        window_id = index.find_window_for_precursor_mz(precursor.precursor_mz)
        window_ids[i] = window_id
        if window_id < 0:
            skipped_no_window += 1
        elif precursor.fragment_count == 0:
            skipped_no_fragments += 1
        else:
            total += precursor.fragment_count

    queries = np.zeros(total, dtype=QUERY_DTYPE)
    groups = []
    offset = 0

    for i, precursor in enumerate(precursors):
        window_id = int(window_ids[i])
        n_frag = precursor.fragment_count
        if window_id < 0 or n_frag == 0:
            continue

        rt_min, rt_max, expected_rt = rt_window_for(precursor)

        block = queries[offset:offset + n_frag]
        block['target_mz'] = precursor.fragment_mzs
        block['tolerance_ppm'] = parameters.ppm_tolerance
        block['rt_min'] = rt_min
        block['rt_max'] = rt_max
        block['window_id'] = window_id
        block['query_id'] = np.arange(offset, offset + n_frag, dtype=np.int32)

        groups.append(PrecursorQueryGroup(
            input_index=i,
            query_offset=offset,
            query_count=n_frag,
            window_id=window_id,
            rt_min=float(rt_min),
            rt_max=float(rt_max),
            expected_rt=expected_rt,
        ))
        offset += n_frag

    result = GenerationResult(
        queries=queries,
        precursor_groups=groups,
        skipped_no_window=skipped_no_window,
        skipped_no_fragments=skipped_no_fragments,
    )
    logger.info(
        f"Generated {total:,} queries for {len(groups):,} precursors "
        f"(skipped: {skipped_no_window} no window, {skipped_no_fragments} no fragments)"
    )
    return result


def generate_queries(
    precursors: Sequence[LibraryPrecursorInput],
    index: ScanIndex,
    parameters: Optional[DiaSearchParameters] = None,
) -> GenerationResult:
    """Queries with a fixed RT window around each library RT.

    Parameters
    ----------
    precursors : sequence of LibraryPrecursorInput
        Library entries in any order
    index : ScanIndex
        Index of the run being searched
    parameters : DiaSearchParameters, optional
        ``ppm_tolerance`` and ``rt_tolerance_minutes`` are used

    Returns
    -------
    GenerationResult
        Precursors without RT are searched over the whole run.
    """
    parameters = parameters or DiaSearchParameters()
    tolerance = parameters.rt_tolerance_minutes
    global_min = index.global_rt_min
    global_max = index.global_rt_max

    def rt_window_for(precursor):
        if precursor.rt is None:
            return global_min, global_max, None
        rt = float(precursor.rt)
        return rt - tolerance, rt + tolerance, rt

    return _generate(precursors, index, parameters, rt_window_for)


def generate_calibrated_queries(
    precursors: Sequence[LibraryPrecursorInput],
    index: ScanIndex,
    parameters: Optional[DiaSearchParameters],
    calibration: RtCalibrationModel,
    k: Optional[float] = None,
    require_reliable: bool = False,
) -> GenerationResult:
    """Queries with RT windows predicted by a calibration model.

    The window center is ``calibration.to_minutes(irt)``, falling back to the
    library RT when a precursor has no iRT. The half-width is
    ``k * sigma_minutes``. Precursors without any RT information are
    searched over the whole run.

    Parameters
    ----------
    k : float, optional
        Sigma multiplier; defaults to
        ``parameters.calibrated_window_sigma_multiplier``. Typical values are
        listed in ``CALIBRATED_WINDOW_K_CHOICES``.
    require_reliable : bool, default=False
        Refuse unreliable models instead of using them.

    Raises
    ------
    UnreliableCalibrationError
        If ``require_reliable`` is set and the model is not reliable.
    """
    if calibration is None:
        raise TypeError("calibration must not be None")
    parameters = parameters or DiaSearchParameters()
    if require_reliable:
        calibration.require_reliable()

    if k is None:
        k = parameters.calibrated_window_sigma_multiplier
    if k <= 0:
        raise ValueError(f"k must be positive, got {k}")

    half_width = calibration.get_minutes_window_half_width(k)
    global_min = index.global_rt_min
    global_max = index.global_rt_max

    def rt_window_for(precursor):
        library_value = precursor.irt if precursor.irt is not None else precursor.rt
        if library_value is None:
            return global_min, global_max, None
        center = float(calibration.to_minutes(float(library_value)))
        return center - half_width, center + half_width, center

    logger.info(f"Calibrated RT windows: +/-{half_width:.3f} min (k={k})")
    return _generate(precursors, index, parameters, rt_window_for)
