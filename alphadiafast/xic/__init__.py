"""Fragment XIC extraction for DIA data.

Key Features
------------
- Binary search in RT (per window) and in m/z (per scan)
- Two-pass count/fill into shared flat buffers, no per-query allocation
- CPU backend: Numba kernels with the GIL released on a thread pool
- GPU backend: one numba.cuda kernel over the (query x scan) grid
- Same result for any degree of parallelism and either backend

Examples
--------
>>> from alphadiafast.xic import ExtractionOrchestrator
>>>
>>> with ExtractionOrchestrator(index, prefer_cpu=True) as orchestrator:
...     result = orchestrator.extract_all(queries, max_degree_of_parallelism=-1)
>>> rts, intensities = result.get_xic(0)
"""

from .extraction import (
    CpuFragmentExtractor,
    ExtractionResult,
    FragmentExtractor,
    binary_search_mz_range,
    resolve_parallelism,
)
from .gpu import GpuFragmentExtractor, gpu_available
from .orchestrator import ExtractionOrchestrator, create_extractor

__all__ = [
    "CpuFragmentExtractor",
    "ExtractionOrchestrator",
    "ExtractionResult",
    "FragmentExtractor",
    "GpuFragmentExtractor",
    "binary_search_mz_range",
    "create_extractor",
    "gpu_available",
    "resolve_parallelism",
]
