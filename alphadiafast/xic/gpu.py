"""CUDA fragment XIC extraction (numba.cuda).

The index is uploaded to the device once per extractor. A batch is one
kernel launch over a 2-D grid: axis 0 is the query, axis 1 the scan position
inside the query's window. Each thread sums the matching peaks of one scan
and writes one (RT, intensity) cell; the sparse grid is compacted on the host
into the same :class:`ExtractionResult` layout the CPU backend produces.

``max_degree_of_parallelism`` is accepted for symmetry with the CPU backend
and ignored here.

Every failure (no device, driver or kernel error) surfaces as
:class:`GpuExtractionError`, so callers can tell it apart from CPU errors and
fall back to :class:`CpuFragmentExtractor`.
"""

import functools
import logging

import numpy as np
from numba import cuda

from ..exceptions import GpuExtractionError
from ..index.scan_index import ScanIndex
from .extraction import ExtractionResult, split_query_columns

logger = logging.getLogger(__name__)

THREADS_PER_BLOCK = (16, 16)


@functools.lru_cache(maxsize=None)
def _extraction_kernel():
    """Compile the kernel on first use, so importing needs no CUDA driver."""

    @cuda.jit
    def kernel(target_mz, tolerance_ppm, rt_min, rt_max, window_id,
               all_mz, all_intensity, scan_offsets, scan_lengths, scan_rts,
               window_scan_starts, window_scan_counts,
               rt_grid, intensity_grid):
        q, j = cuda.grid(2)
        if q >= target_mz.shape[0] or j >= intensity_grid.shape[1]:
            return

        intensity_grid[q, j] = 0.0
        w = window_id[q]
        if w < 0 or w >= window_scan_starts.shape[0]:
            return
        if j >= window_scan_counts[w]:
            return

        s = window_scan_starts[w] + j
        rt = scan_rts[s]
        if rt < rt_min[q] or rt > rt_max[q]:
            return

        mz = target_mz[q]
        tol = mz * tolerance_ppm[q] / 1e6
        low_mz = mz - tol
        high_mz = mz + tol

        start = scan_offsets[s]
        end = start + scan_lengths[s]

        left = start
        right = end
        while left < right:
            mid = (left + right) // 2
            if all_mz[mid] < low_mz:
                left = mid + 1
            else:
                right = mid

        total = 0.0
        p = left
        while p < end and all_mz[p] <= high_mz:
            total += all_intensity[p]
            p += 1

        if total > 0.0:
            rt_grid[q, j] = rt
            intensity_grid[q, j] = total

    return kernel


def gpu_available() -> bool:
    """True if numba.cuda sees a usable device."""
    try:
        return bool(cuda.is_available())
    except Exception:
        logger.debug("CUDA availability check failed", exc_info=True)
        return False


class GpuFragmentExtractor:
    """CUDA extraction backend with the same surface as the CPU backend.

    Parameters
    ----------
    index : ScanIndex
        Index to upload; it is not modified.

    Raises
    ------
    GpuExtractionError
        If no CUDA device is available or the upload fails.
    """

    def __init__(self, index: ScanIndex):
        if index is None:
            raise TypeError("index must not be None")
        if index.closed:
            raise ValueError("ScanIndex has been closed")
        if not gpu_available():
            raise GpuExtractionError(
                "No compatible GPU found. Ensure NVIDIA drivers and the CUDA "
                "toolkit are installed. Use CpuFragmentExtractor as fallback."
            )

        self.max_scans_per_window = index.max_scans_per_window
        self._closed = False
        try:
            self._device_index = tuple(cuda.to_device(np.ascontiguousarray(a)) for a in (
                index.all_mz,
                index.all_intensity,
                index.scan_offsets,
                index.scan_lengths,
                index.scan_rts,
                index.window_scan_starts,
                index.window_scan_counts,
            ))
        except Exception as exc:
            raise GpuExtractionError(f"Failed to upload scan index to GPU: {exc}") from exc

        logger.info(
            f"Uploaded scan index to GPU: {index.total_peak_count:,} peaks, "
            f"{index.scan_count:,} scans"
        )

    def extract_batch(self, queries: np.ndarray, max_degree_of_parallelism: int = -1) -> ExtractionResult:
        """Extract XIC points for all queries in one kernel launch.

        Raises
        ------
        GpuExtractionError
            On any CUDA failure.
        """
        if self._closed:
            raise ValueError("GpuFragmentExtractor has been closed")

        n = len(queries)
        if n == 0 or self.max_scans_per_window == 0:
            if n == 0:
                return ExtractionResult.empty()
            return _compact(queries, np.zeros((n, 0)), np.zeros((n, 0), dtype=np.float32))

        columns = split_query_columns(queries)
        width = self.max_scans_per_window
        try:
            d_columns = tuple(cuda.to_device(c) for c in columns)
            d_rt = cuda.device_array((n, width), dtype=np.float64)
            d_intensity = cuda.device_array((n, width), dtype=np.float32)

            blocks = (
                (n + THREADS_PER_BLOCK[0] - 1) // THREADS_PER_BLOCK[0],
                (width + THREADS_PER_BLOCK[1] - 1) // THREADS_PER_BLOCK[1],
            )
            _extraction_kernel()[blocks, THREADS_PER_BLOCK](
                *d_columns, *self._device_index, d_rt, d_intensity
            )
            cuda.synchronize()
            rt_grid = d_rt.copy_to_host()
            intensity_grid = d_intensity.copy_to_host()
        except Exception as exc:
            raise GpuExtractionError(f"GPU extraction kernel failed: {exc}") from exc

        return _compact(queries, rt_grid, intensity_grid)

    def close(self) -> None:
        """Release device buffers.

        Pending deallocations are flushed so repeated extractors do not hold
        device memory until numba's deferred cleanup runs.
        """
        if self._closed:
            return
        self._closed = True
        device_index = self._device_index
        self._device_index = None
        del device_index
        cuda.current_context().deallocations.clear()

    def __enter__(self) -> 'GpuFragmentExtractor':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _compact(queries, rt_grid, intensity_grid) -> ExtractionResult:
    """Keep the non-empty cells of a (query x scan) grid, row by row."""
    mask = intensity_grid > 0
    counts = mask.sum(axis=1).astype(np.int32)
    offsets = np.zeros(len(counts), dtype=np.int64)
    if len(counts) > 1:
        np.cumsum(counts[:-1], dtype=np.int64, out=offsets[1:])
    intensity_buffer = intensity_grid[mask].astype(np.float32)
    totals = np.where(mask, intensity_grid, 0).sum(axis=1, dtype=np.float64)
    return ExtractionResult(
        query_ids=np.ascontiguousarray(queries['query_id'], dtype=np.int32),
        data_point_counts=counts,
        offsets=offsets,
        total_intensities=totals,
        rt_buffer=rt_grid[mask].astype(np.float64),
        intensity_buffer=intensity_buffer,
    )
