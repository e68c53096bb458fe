"""Query generation: library precursors to fragment extraction queries.

Examples
--------
>>> from alphadiafast.query import LibraryPrecursorInput, generate_queries
>>>
>>> precursor = LibraryPrecursorInput(
...     "PEPTIDEK", 500.25, 2, rt=20.0,
...     fragment_mzs=[300.1, 400.2], fragment_intensities=[1.0, 0.5],
... )
>>> generation = generate_queries([precursor], index, parameters)
>>> generation.queries['target_mz']
"""

from .generator import (
    QUERY_DTYPE,
    GenerationResult,
    PrecursorQueryGroup,
    generate_calibrated_queries,
    generate_queries,
    make_fragment_queries,
)
from .precursor import LibraryPrecursorInput

__all__ = [
    "QUERY_DTYPE",
    "GenerationResult",
    "LibraryPrecursorInput",
    "PrecursorQueryGroup",
    "generate_calibrated_queries",
    "generate_queries",
    "make_fragment_queries",
]
