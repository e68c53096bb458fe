"""Sorted iRT index over library precursors.

Used while collecting calibration anchors: for a given iRT interval, which
library precursors could elute there? Construction sorts once (O(n log n)),
every range query is two binary searches (O(log n)).
"""

from typing import Sequence, Tuple

import numpy as np


class IrtLibraryIndex:
    """Precursors sorted by iRT, supporting inclusive range queries.

    Parameters
    ----------
    precursors : sequence of LibraryPrecursorInput
        Library entries. Entries without an iRT value are left out.

    Raises
    ------
    TypeError
        If ``precursors`` is None.

    Examples
    --------
    >>> index = IrtLibraryIndex(library)
    >>> start, count = index.query_range(10.0, 20.0)
    >>> members = index.query_precursor_indices(10.0, 20.0)
    """

    def __init__(self, precursors: Sequence):
        if precursors is None:
            raise TypeError("precursors must not be None")

        irts = []
        refs = []
        for i, precursor in enumerate(precursors):
            if precursor.irt is None:
                continue
            irts.append(float(precursor.irt))
            refs.append(i)

        irt_array = np.array(irts, dtype=np.float64)
        ref_array = np.array(refs, dtype=np.int64)

        # Ties keep input order
        order = np.argsort(irt_array, kind="stable")
        self._irts = irt_array[order]
        self._precursor_indices = ref_array[order]

    @property
    def count(self) -> int:
        return len(self._irts)

    def __len__(self) -> int:
        return len(self._irts)

    @property
    def min_irt(self) -> float:
        return float(self._irts[0]) if len(self._irts) else float("nan")

    @property
    def max_irt(self) -> float:
        return float(self._irts[-1]) if len(self._irts) else float("nan")

    @property
    def sorted_irts(self) -> np.ndarray:
        """Read-only view of the sorted iRT values."""
        view = self._irts.view()
        view.flags.writeable = False
        return view

    def query_range(self, irt_low: float, irt_high: float) -> Tuple[int, int]:
        """Sorted positions of all entries with ``irt_low <= iRT <= irt_high``.

        Returns
        -------
        start : int
            First matching position in sorted order
        count : int
            Number of matches (0 if ``irt_low > irt_high`` or nothing matches)
        """
        if irt_low > irt_high:
            return 0, 0
        start = int(np.searchsorted(self._irts, irt_low, side="left"))
        end = int(np.searchsorted(self._irts, irt_high, side="right"))
        return start, max(end - start, 0)

    def query_precursor_indices(self, irt_low: float, irt_high: float) -> np.ndarray:
        """Input indices of precursors whose iRT falls inside the range."""
        start, count = self.query_range(irt_low, irt_high)
        return self._precursor_indices[start:start + count].copy()

    def get_irt(self, position: int) -> float:
        return float(self._irts[position])

    def get_precursor_index(self, position: int) -> int:
        return int(self._precursor_indices[position])

    def __repr__(self) -> str:
        return f"IrtLibraryIndex(count={self.count}, irt=[{self.min_irt:.2f}, {self.max_irt:.2f}])"
