"""In-memory indices over DIA scans and library retention times.

Key Features
------------
- Structure-of-arrays scan index: one float32 m/z buffer, one intensity buffer
- Scans grouped by isolation window, RT-sorted inside each window
- Peaks m/z-sorted inside each scan, ready for binary search
- Binary search from precursor m/z to isolation window
- Sorted iRT index for calibration anchor lookups

Examples
--------
>>> from alphadiafast.index import build_scan_index, IrtLibraryIndex
>>>
>>> with build_scan_index(scans) as index:
...     window_id = index.find_window_for_precursor_mz(650.3)
...     start, count = index.try_get_scan_range_for_window(window_id)
>>>
>>> irt_index = IrtLibraryIndex(library)
>>> start, count = irt_index.query_range(20.0, 30.0)
"""

from .irt_index import IrtLibraryIndex
from .scan_index import (
    ScanIndex,
    ScanRecord,
    build_scan_index,
    find_window_index,
)

__all__ = [
    "IrtLibraryIndex",
    "ScanIndex",
    "ScanRecord",
    "build_scan_index",
    "find_window_index",
]
