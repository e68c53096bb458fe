"""Structure-of-arrays index over DIA MS2 scans.

All peaks of a run are copied into two contiguous float32 buffers. Scans are
grouped by isolation window, sorted by RT inside each window, and every scan's
peaks are sorted by m/z. Extraction then needs only two binary searches per
(query, scan) pair and never touches Python objects on the hot path.

Layout
------
- ``all_mz`` / ``all_intensity``: every peak, scan after scan (float32)
- ``scan_offsets`` / ``scan_lengths``: slice of each scan in the peak buffers
- ``scan_rts`` / ``scan_window_ids`` / ``scan_numbers``: per-scan metadata
- ``window_scan_starts`` / ``window_scan_counts``: contiguous scan range per window
- ``window_lower_bounds`` / ``window_upper_bounds``: isolation bounds per window

Window ids are dense (0..W-1) and ordered by ascending lower bound.

Examples
--------
>>> from alphadiafast.index import ScanRecord, build_scan_index
>>> scans = [ScanRecord(1, 2, 0.5, 500.0, 25.0, mz, intensity), ...]
>>> with build_scan_index(scans) as index:
...     window_id = index.find_window_for_precursor_mz(503.2)
...     start, count = index.try_get_scan_range_for_window(window_id)
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import numba as nb
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class ScanRecord:
    """One centroided scan as delivered by a raw-file reader.

    Parameters
    ----------
    scan_number : int
        One-based scan number in the raw file
    ms_level : int
        1 for survey scans, 2 for DIA fragment scans
    rt : float
        Retention time in minutes
    isolation_mz : float or None
        Isolation window center (None for MS1)
    isolation_width : float
        Full isolation window width in Th
    mz_array, intensity_array : np.ndarray
        Peak list (need not be sorted)
    """

    scan_number: int
    ms_level: int
    rt: float
    isolation_mz: Optional[float]
    isolation_width: float
    mz_array: np.ndarray
    intensity_array: np.ndarray


@nb.njit
def find_window_index(
    lower_bounds: np.ndarray,
    upper_bounds: np.ndarray,
    mz: float
) -> int:
    """First window (in id order) whose inclusive range contains ``mz``.

    Lower bounds must be sorted ascending. A binary search finds the last
    window with lower bound <= mz; only windows up to it can contain mz, and
    the lowest-indexed of those that also reaches mz wins. Overlapping and
    nested windows give the same answer as a linear scan. Returns -1 when no
    window matches.
    """
    n = len(lower_bounds)
    if n == 0:
        return -1

    left, right = 0, n
    while left < right:
        mid = (left + right) // 2
        if lower_bounds[mid] <= mz:
            left = mid + 1
        else:
            right = mid

    for idx in range(left):
        if mz <= upper_bounds[idx]:
            return idx
    return -1


class ScanIndex:
    """Immutable, read-only view over the flattened scans of one DIA run.

    Built by :func:`build_scan_index`. The index owns large buffers and should
    be released with :meth:`close` (or used as a context manager). Accessors
    raise ``ValueError`` after close.

    Safe to share between threads: nothing is mutated after construction.
    """

    def __init__(
        self,
        all_mz: np.ndarray,
        all_intensity: np.ndarray,
        scan_offsets: np.ndarray,
        scan_lengths: np.ndarray,
        scan_window_ids: np.ndarray,
        scan_rts: np.ndarray,
        scan_numbers: np.ndarray,
        window_lower_bounds: np.ndarray,
        window_upper_bounds: np.ndarray,
        window_scan_starts: np.ndarray,
        window_scan_counts: np.ndarray,
    ):
        self.all_mz = all_mz
        self.all_intensity = all_intensity
        self.scan_offsets = scan_offsets
        self.scan_lengths = scan_lengths
        self.scan_window_ids = scan_window_ids
        self.scan_rts = scan_rts
        self.scan_numbers = scan_numbers
        self.window_lower_bounds = window_lower_bounds
        self.window_upper_bounds = window_upper_bounds
        self.window_scan_starts = window_scan_starts
        self.window_scan_counts = window_scan_counts
        self._closed = False

        for buffer in (all_mz, all_intensity, scan_offsets, scan_lengths,
                       scan_window_ids, scan_rts, scan_numbers,
                       window_lower_bounds, window_upper_bounds,
                       window_scan_starts, window_scan_counts):
            buffer.flags.writeable = False

        if len(scan_rts) > 0:
            self._rt_min = float(np.min(scan_rts))
            self._rt_max = float(np.max(scan_rts))
        else:
            self._rt_min = 0.0
            self._rt_max = 0.0

    @classmethod
    def empty(cls) -> 'ScanIndex':
        """Index with no scans and no windows."""
        return cls(
            np.zeros(0, dtype=np.float32),
            np.zeros(0, dtype=np.float32),
            np.zeros(0, dtype=np.int64),
            np.zeros(0, dtype=np.int32),
            np.zeros(0, dtype=np.int32),
            np.zeros(0, dtype=np.float64),
            np.zeros(0, dtype=np.int32),
            np.zeros(0, dtype=np.float64),
            np.zeros(0, dtype=np.float64),
            np.zeros(0, dtype=np.int32),
            np.zeros(0, dtype=np.int32),
        )

    # ---------- lifetime ----------

    def close(self) -> None:
        """Drop references to the peak and scan buffers."""
        if self._closed:
            return
        self._closed = True
        self.all_mz = None
        self.all_intensity = None
        self.scan_offsets = None
        self.scan_lengths = None
        self.scan_window_ids = None
        self.scan_rts = None
        self.scan_numbers = None
        self.window_lower_bounds = None
        self.window_upper_bounds = None
        self.window_scan_starts = None
        self.window_scan_counts = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> 'ScanIndex':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if self._closed:
            raise ValueError("ScanIndex has been closed")

    # ---------- sizes ----------

    @property
    def total_peak_count(self) -> int:
        self._require_open()
        return len(self.all_mz)

    @property
    def scan_count(self) -> int:
        self._require_open()
        return len(self.scan_rts)

    @property
    def window_count(self) -> int:
        self._require_open()
        return len(self.window_lower_bounds)

    @property
    def max_scans_per_window(self) -> int:
        self._require_open()
        if len(self.window_scan_counts) == 0:
            return 0
        return int(np.max(self.window_scan_counts))

    @property
    def global_rt_min(self) -> float:
        self._require_open()
        return self._rt_min

    @property
    def global_rt_max(self) -> float:
        self._require_open()
        return self._rt_max

    # ---------- per scan ----------

    def get_scan_mz_span(self, scan_index: int) -> np.ndarray:
        """m/z values of one scan (sorted ascending, read-only view)."""
        self._require_open()
        start = self.scan_offsets[scan_index]
        return self.all_mz[start:start + self.scan_lengths[scan_index]]

    def get_scan_intensity_span(self, scan_index: int) -> np.ndarray:
        """Intensities of one scan, parallel to :meth:`get_scan_mz_span`."""
        self._require_open()
        start = self.scan_offsets[scan_index]
        return self.all_intensity[start:start + self.scan_lengths[scan_index]]

    def get_scan_rt(self, scan_index: int) -> float:
        self._require_open()
        return float(self.scan_rts[scan_index])

    def get_scan_window_id(self, scan_index: int) -> int:
        self._require_open()
        return int(self.scan_window_ids[scan_index])

    def get_scan_number(self, scan_index: int) -> int:
        self._require_open()
        return int(self.scan_numbers[scan_index])

    def get_scan_peak_count(self, scan_index: int) -> int:
        self._require_open()
        return int(self.scan_lengths[scan_index])

    # ---------- per window ----------

    def window_ids(self) -> List[int]:
        """All window ids in ascending lower-bound order."""
        self._require_open()
        return list(range(len(self.window_lower_bounds)))

    def _check_window_id(self, window_id: int) -> bool:
        return 0 <= window_id < len(self.window_lower_bounds)

    def get_window_bounds(self, window_id: int) -> Tuple[float, float]:
        """Isolation bounds (lower, upper) of a window.

        Raises
        ------
        KeyError
            If ``window_id`` is not a window of this index.
        """
        self._require_open()
        if not self._check_window_id(window_id):
            raise KeyError(f"Unknown window id: {window_id}")
        return (
            float(self.window_lower_bounds[window_id]),
            float(self.window_upper_bounds[window_id]),
        )

    def try_get_scan_range_for_window(self, window_id: int) -> Optional[Tuple[int, int]]:
        """(start, count) of the window's scans, or None for an unknown id."""
        self._require_open()
        if not self._check_window_id(window_id):
            return None
        return (
            int(self.window_scan_starts[window_id]),
            int(self.window_scan_counts[window_id]),
        )

    def find_window_for_precursor_mz(self, precursor_mz: float) -> int:
        """Window id whose isolation range contains ``precursor_mz``, or -1."""
        self._require_open()
        return int(find_window_index(
            self.window_lower_bounds, self.window_upper_bounds, float(precursor_mz)
        ))

    def __repr__(self) -> str:
        if self._closed:
            return "ScanIndex(closed)"
        return (
            f"ScanIndex(scans={self.scan_count}, windows={self.window_count}, "
            f"peaks={self.total_peak_count})"
        )


# ========== Building ==========

def _group_isolation_centers(
    centers: np.ndarray,
    tolerance_ppm: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Assign each isolation center to a window group.

    Centers are visited in ascending order; a center opens a new group when it
    is more than ``tolerance_ppm`` away from the first center of the current
    group.

    Returns
    -------
    labels : np.ndarray (int64)
        Group label per input center
    representatives : np.ndarray (int64)
        Input index of the first member of each group
    """
    order = np.argsort(centers, kind="stable")
    labels = np.empty(len(centers), dtype=np.int64)
    representatives = []

    anchor = 0.0
    current = -1
    for idx in order:
        center = centers[idx]
        if current < 0 or abs(center - anchor) / anchor * 1e6 > tolerance_ppm:
            current += 1
            anchor = center
            representatives.append(idx)
        labels[idx] = current

    return labels, np.array(representatives, dtype=np.int64)


def build_scan_index(
    scans: Iterable[ScanRecord],
    isolation_window_tolerance_ppm: float = 10.0
) -> ScanIndex:
    """Build a :class:`ScanIndex` from raw scan records.

    Parameters
    ----------
    scans : iterable of ScanRecord
        Scans of one run in any order. MS1 scans, scans without an isolation
        center and empty scans are ignored.
    isolation_window_tolerance_ppm : float, default=10.0
        Isolation centers within this distance belong to the same window.

    Returns
    -------
    ScanIndex
        Empty index if no usable MS2 scan was found.

    Notes
    -----
    Window bounds are ``center +/- width / 2`` of the first scan seen in each
    group. Windows are renumbered by ascending lower bound so that
    :meth:`ScanIndex.find_window_for_precursor_mz` can binary search them.
    """
    ms2 = [
        s for s in scans
        if s.ms_level == 2 and s.isolation_mz is not None and len(s.mz_array) > 0
    ]
    if not ms2:
        logger.info("No usable MS2 scans, returning empty scan index")
        return ScanIndex.empty()

    n_scans = len(ms2)
    centers = np.array([s.isolation_mz for s in ms2], dtype=np.float64)
    widths = np.array([s.isolation_width for s in ms2], dtype=np.float64)
    rts = np.array([s.rt for s in ms2], dtype=np.float64)

    labels, representatives = _group_isolation_centers(centers, isolation_window_tolerance_ppm)
    group_lower = centers[representatives] - widths[representatives] / 2.0
    group_upper = centers[representatives] + widths[representatives] / 2.0

    # Renumber windows by lower bound
    window_order = np.argsort(group_lower, kind="stable")
    remap = np.empty(len(window_order), dtype=np.int64)
    remap[window_order] = np.arange(len(window_order))
    window_ids = remap[labels]
    window_lower = group_lower[window_order]
    window_upper = group_upper[window_order]
    n_windows = len(window_lower)

    # Scans by (window, RT)
    scan_order = np.lexsort((rts, window_ids))

    lengths = np.array([len(ms2[i].mz_array) for i in scan_order], dtype=np.int32)
    offsets = np.zeros(n_scans, dtype=np.int64)
    if n_scans > 1:
        offsets[1:] = np.cumsum(lengths[:-1], dtype=np.int64)
    total_peaks = int(lengths.sum())

    all_mz = np.empty(total_peaks, dtype=np.float32)
    all_intensity = np.empty(total_peaks, dtype=np.float32)
    for new_idx, old_idx in enumerate(scan_order):
        scan = ms2[old_idx]
        mz = np.asarray(scan.mz_array, dtype=np.float32)
        intensity = np.asarray(scan.intensity_array, dtype=np.float32)
        if len(mz) != len(intensity):
            raise ValueError(
                f"Scan {scan.scan_number}: m/z and intensity arrays differ in length "
                f"({len(mz)} vs {len(intensity)})"
            )
        peak_order = np.argsort(mz, kind="stable")
        start = offsets[new_idx]
        end = start + lengths[new_idx]
        all_mz[start:end] = mz[peak_order]
        all_intensity[start:end] = intensity[peak_order]

    scan_window_ids = window_ids[scan_order].astype(np.int32)
    scan_rts = rts[scan_order]
    scan_numbers = np.array([ms2[i].scan_number for i in scan_order], dtype=np.int32)

    window_scan_counts = np.bincount(scan_window_ids, minlength=n_windows).astype(np.int32)
    window_scan_starts = np.zeros(n_windows, dtype=np.int32)
    if n_windows > 1:
        window_scan_starts[1:] = np.cumsum(window_scan_counts[:-1])

    logger.info(
        f"Built scan index: {n_scans:,} scans, {n_windows} windows, {total_peaks:,} peaks"
    )

    return ScanIndex(
        all_mz=all_mz,
        all_intensity=all_intensity,
        scan_offsets=offsets,
        scan_lengths=lengths,
        scan_window_ids=scan_window_ids,
        scan_rts=scan_rts,
        scan_numbers=scan_numbers,
        window_lower_bounds=window_lower,
        window_upper_bounds=window_upper,
        window_scan_starts=window_scan_starts,
        window_scan_counts=window_scan_counts,
    )
