"""CPU fragment XIC extraction against a :class:`ScanIndex`.

Every query is answered with two binary searches:

1. RT lower bound inside the query's window (scans are RT-sorted)
2. m/z range inside each scan of the RT window (peaks are m/z-sorted)

Matching peak intensities in one scan are summed into one data point; scans
with nothing matched emit no point. Results land in two flat buffers (RT,
intensity) shared by all queries, addressed by per-query offset and count.

Extraction runs in two Numba passes over disjoint query slices, both with
the GIL released so a plain thread pool scales across cores:

- count pass: points per query
- fill pass: write points at offsets from an exclusive prefix sum

No allocation happens per query, and the output does not depend on how the
queries are split between threads.

Performance
-----------
O(Q * (log S + S_rt * log P)) with S scans per window, S_rt scans inside the
RT window and P peaks per scan.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Protocol, Tuple

import numba as nb
import numpy as np

from ..exceptions import ExtractionError
from ..index.scan_index import ScanIndex

logger = logging.getLogger(__name__)

# Queries per work item handed to a worker thread
DEFAULT_CHUNK_SIZE = 256


# ========== Numba kernels ==========

@nb.njit(nogil=True)
def binary_search_mz_range(
    mz_array: np.ndarray,
    target_mz: float,
    ppm_tolerance: float
) -> Tuple[int, int]:
    """Find the index range for peaks matching target m/z using binary search.

    Parameters
    ----------
    mz_array : np.ndarray
        Sorted array of m/z values
    target_mz : float
        Target m/z to search for
    ppm_tolerance : float
        Tolerance in parts per million (inclusive on both sides)

    Returns
    -------
    start_idx : int
        Start index (inclusive)
    end_idx : int
        End index (exclusive, Python convention)

    Examples
    --------
    >>> mz_array = np.array([100.0, 200.0, 200.1, 300.0])
    >>> start, end = binary_search_mz_range(mz_array, 200.0, 500.0)
    >>> # Returns (1, 3) - indices 1 and 2 match within 500 ppm
    """
    if len(mz_array) == 0 or target_mz <= 0:
        return 0, 0

    mz_tol = target_mz * ppm_tolerance / 1e6
    low_mz = target_mz - mz_tol
    high_mz = target_mz + mz_tol

    left, right = 0, len(mz_array)
    while left < right:
        mid = (left + right) // 2
        if mz_array[mid] < low_mz:
            left = mid + 1
        else:
            right = mid
    start_idx = left

    left, right = start_idx, len(mz_array)
    while left < right:
        mid = (left + right) // 2
        if mz_array[mid] <= high_mz:
            left = mid + 1
        else:
            right = mid

    return start_idx, left


@nb.njit(nogil=True)
def rt_lower_bound(scan_rts: np.ndarray, start: int, end: int, rt_min: float) -> int:
    """First scan in ``[start, end)`` with RT >= rt_min."""
    left, right = start, end
    while left < right:
        mid = (left + right) // 2
        if scan_rts[mid] < rt_min:
            left = mid + 1
        else:
            right = mid
    return left


@nb.njit(nogil=True)
def _summed_scan_intensity(all_mz, all_intensity, peak_start, peak_count, target_mz, ppm):
    """Sum of intensities of all peaks of one scan within tolerance."""
    peaks = all_mz[peak_start:peak_start + peak_count]
    lo, hi = binary_search_mz_range(peaks, target_mz, ppm)
    total = 0.0
    for p in range(lo, hi):
        total += all_intensity[peak_start + p]
    return total


@nb.njit(nogil=True)
def _count_points(
    target_mz, tolerance_ppm, rt_min, rt_max, window_id,
    q_start, q_end,
    all_mz, all_intensity, scan_offsets, scan_lengths, scan_rts,
    window_scan_starts, window_scan_counts,
    counts_out,
):
    """Count pass: number of non-empty scans per query in ``[q_start, q_end)``."""
    n_windows = len(window_scan_starts)
    for q in range(q_start, q_end):
        count = 0
        w = window_id[q]
        if 0 <= w < n_windows:
            s_begin = window_scan_starts[w]
            s_end = s_begin + window_scan_counts[w]
            s = rt_lower_bound(scan_rts, s_begin, s_end, rt_min[q])
            while s < s_end and scan_rts[s] <= rt_max[q]:
                total = _summed_scan_intensity(
                    all_mz, all_intensity, scan_offsets[s], scan_lengths[s],
                    target_mz[q], tolerance_ppm[q]
                )
                if total > 0.0:
                    count += 1
                s += 1
        counts_out[q] = count


@nb.njit(nogil=True)
def _fill_points(
    target_mz, tolerance_ppm, rt_min, rt_max, window_id,
    q_start, q_end,
    all_mz, all_intensity, scan_offsets, scan_lengths, scan_rts,
    window_scan_starts, window_scan_counts,
    offsets, rt_out, intensity_out, totals_out,
):
    """Fill pass: write (RT, intensity) points at each query's offset."""
    n_windows = len(window_scan_starts)
    for q in range(q_start, q_end):
        pos = offsets[q]
        query_total = 0.0
        w = window_id[q]
        if 0 <= w < n_windows:
            s_begin = window_scan_starts[w]
            s_end = s_begin + window_scan_counts[w]
            s = rt_lower_bound(scan_rts, s_begin, s_end, rt_min[q])
            while s < s_end and scan_rts[s] <= rt_max[q]:
                total = _summed_scan_intensity(
                    all_mz, all_intensity, scan_offsets[s], scan_lengths[s],
                    target_mz[q], tolerance_ppm[q]
                )
                if total > 0.0:
                    rt_out[pos] = scan_rts[s]
                    intensity_out[pos] = total
                    query_total += intensity_out[pos]
                    pos += 1
                s += 1
        totals_out[q] = query_total


# ========== Result container ==========

@dataclass
class ExtractionResult:
    """Chromatogram points of a batch of queries in shared flat buffers.

    Attributes
    ----------
    query_ids : np.ndarray (int32)
        Query id per result, in input order
    data_point_counts : np.ndarray (int32)
        Number of points per query
    offsets : np.ndarray (int64)
        Start of each query's points in the buffers
    total_intensities : np.ndarray (float64)
        Summed intensity per query
    rt_buffer : np.ndarray (float64)
        RT of every point, RT-ascending within a query
    intensity_buffer : np.ndarray (float32)
        Intensity of every point
    """

    query_ids: np.ndarray
    data_point_counts: np.ndarray
    offsets: np.ndarray
    total_intensities: np.ndarray
    rt_buffer: np.ndarray
    intensity_buffer: np.ndarray

    @classmethod
    def empty(cls) -> 'ExtractionResult':
        return cls(
            query_ids=np.zeros(0, dtype=np.int32),
            data_point_counts=np.zeros(0, dtype=np.int32),
            offsets=np.zeros(0, dtype=np.int64),
            total_intensities=np.zeros(0, dtype=np.float64),
            rt_buffer=np.zeros(0, dtype=np.float64),
            intensity_buffer=np.zeros(0, dtype=np.float32),
        )

    @property
    def query_count(self) -> int:
        return len(self.query_ids)

    @property
    def total_data_points(self) -> int:
        return int(self.data_point_counts.sum()) if len(self.data_point_counts) else 0

    def fragment_slices(self, start: int, count: int) -> np.ndarray:
        """(count, 2) rows of ``[offset, count]`` for a contiguous block of queries."""
        return np.column_stack((
            self.offsets[start:start + count],
            self.data_point_counts[start:start + count],
        )).astype(np.int64)

    def get_xic(self, i: int) -> Tuple[np.ndarray, np.ndarray]:
        """(rts, intensities) views for the i-th query."""
        start = self.offsets[i]
        end = start + self.data_point_counts[i]
        return self.rt_buffer[start:end], self.intensity_buffer[start:end]


def split_query_columns(queries: np.ndarray) -> Tuple[np.ndarray, ...]:
    """Contiguous per-field arrays of a query array for the kernels."""
    names = queries.dtype.names or ()
    for required in ('target_mz', 'tolerance_ppm', 'rt_min', 'rt_max', 'window_id', 'query_id'):
        if required not in names:
            raise ValueError(f"queries are missing field '{required}'")
    return (
        np.ascontiguousarray(queries['target_mz'], dtype=np.float64),
        np.ascontiguousarray(queries['tolerance_ppm'], dtype=np.float64),
        np.ascontiguousarray(queries['rt_min'], dtype=np.float64),
        np.ascontiguousarray(queries['rt_max'], dtype=np.float64),
        np.ascontiguousarray(queries['window_id'], dtype=np.int32),
    )


def resolve_parallelism(max_degree_of_parallelism: int) -> int:
    """-1 (or any value <= 0) means one worker per core."""
    if max_degree_of_parallelism is None or max_degree_of_parallelism <= 0:
        return os.cpu_count() or 1
    return int(max_degree_of_parallelism)


def _chunk_bounds(n: int, chunk_size: int) -> List[Tuple[int, int]]:
    return [(start, min(start + chunk_size, n)) for start in range(0, n, chunk_size)]


# ========== Backends ==========

class FragmentExtractor(Protocol):
    """Capability shared by the CPU and GPU extraction backends."""

    def extract_batch(self, queries: np.ndarray, max_degree_of_parallelism: int = -1) -> ExtractionResult:
        ...

    def close(self) -> None:
        ...


class CpuFragmentExtractor:
    """Thread-pool extraction backend.

    Parameters
    ----------
    index : ScanIndex
        Read-only index shared by all workers
    chunk_size : int, default=256
        Queries per work item

    Examples
    --------
    >>> with CpuFragmentExtractor(index) as extractor:
    ...     result = extractor.extract_batch(queries, max_degree_of_parallelism=8)
    >>> rts, intensities = result.get_xic(0)
    """

    def __init__(self, index: ScanIndex, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if index is None:
            raise TypeError("index must not be None")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.index = index
        self.chunk_size = chunk_size
        self._closed = False

    def _index_arrays(self):
        if self._closed:
            raise ValueError("CpuFragmentExtractor has been closed")
        if self.index.closed:
            raise ValueError("ScanIndex has been closed")
        idx = self.index
        return (
            idx.all_mz, idx.all_intensity, idx.scan_offsets, idx.scan_lengths,
            idx.scan_rts, idx.window_scan_starts, idx.window_scan_counts,
        )

    def _run_chunks(self, kernel, chunks, n_workers, *args):
        if n_workers <= 1 or len(chunks) <= 1:
            for start, end in chunks:
                kernel(*args[:5], start, end, *args[5:])
            return
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [
                pool.submit(kernel, *args[:5], start, end, *args[5:])
                for start, end in chunks
            ]
            for future in futures:
                future.result()

    def extract_batch(self, queries: np.ndarray, max_degree_of_parallelism: int = -1) -> ExtractionResult:
        """Extract XIC points for all queries.

        Parameters
        ----------
        queries : np.ndarray
            Structured array with ``QUERY_DTYPE`` fields
        max_degree_of_parallelism : int, default=-1
            Worker threads; -1 uses one per core

        Returns
        -------
        ExtractionResult
            One entry per query, in input order

        Raises
        ------
        ExtractionError
            If a kernel fails.
        """
        index_arrays = self._index_arrays()
        n = len(queries)
        if n == 0:
            return ExtractionResult.empty()

        columns = split_query_columns(queries)
        n_workers = resolve_parallelism(max_degree_of_parallelism)
        chunks = _chunk_bounds(n, self.chunk_size)

        counts = np.zeros(n, dtype=np.int32)
        try:
            self._run_chunks(_count_points, chunks, n_workers, *columns, *index_arrays, counts)

            offsets = np.zeros(n, dtype=np.int64)
            if n > 1:
                np.cumsum(counts[:-1], dtype=np.int64, out=offsets[1:])
            total_points = int(offsets[-1] + counts[-1])

            rt_buffer = np.empty(total_points, dtype=np.float64)
            intensity_buffer = np.empty(total_points, dtype=np.float32)
            totals = np.zeros(n, dtype=np.float64)
            self._run_chunks(
                _fill_points, chunks, n_workers, *columns, *index_arrays,
                offsets, rt_buffer, intensity_buffer, totals,
            )
        except (ValueError, TypeError):
            raise
        except Exception as exc:
            raise ExtractionError(f"CPU extraction failed: {exc}") from exc

        logger.debug(
            f"Extracted {total_points:,} points for {n:,} queries on {n_workers} threads"
        )
        return ExtractionResult(
            query_ids=np.ascontiguousarray(queries['query_id'], dtype=np.int32),
            data_point_counts=counts,
            offsets=offsets,
            total_intensities=totals,
            rt_buffer=rt_buffer,
            intensity_buffer=intensity_buffer,
        )

    def close(self) -> None:
        self._closed = True
        self.index = None

    def __enter__(self) -> 'CpuFragmentExtractor':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
