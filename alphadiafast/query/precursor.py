"""Library precursor records consumed by query generation."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


@dataclass
class LibraryPrecursorInput:
    """One library precursor with its fragment ions.

    Parameters
    ----------
    sequence : str
        Modified peptide sequence, used for reporting only
    precursor_mz : float
        Precursor m/z; selects the DIA isolation window
    charge : int
        Precursor charge state
    rt : float, optional
        Library retention time in minutes
    is_decoy : bool
        Target/decoy label
    fragment_mzs : np.ndarray
        Fragment ion m/z values (float32)
    fragment_intensities : np.ndarray
        Library fragment intensities, parallel to ``fragment_mzs`` (float32)
    irt : float, optional
        Indexed retention time, used by the calibration path

    Raises
    ------
    ValueError
        If the fragment arrays differ in length.
    TypeError
        If ``sequence`` is None.
    """

    sequence: str
    precursor_mz: float
    charge: int
    rt: Optional[float] = None
    is_decoy: bool = False
    fragment_mzs: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))
    fragment_intensities: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))
    irt: Optional[float] = None

    def __post_init__(self):
        if self.sequence is None:
            raise TypeError("sequence must not be None")
        self.fragment_mzs = np.asarray(self.fragment_mzs, dtype=np.float32).ravel()
        self.fragment_intensities = np.asarray(self.fragment_intensities, dtype=np.float32).ravel()
        if len(self.fragment_mzs) != len(self.fragment_intensities):
            raise ValueError(
                f"fragment_mzs length ({len(self.fragment_mzs)}) must equal "
                f"fragment_intensities length ({len(self.fragment_intensities)})"
            )

    @property
    def fragment_count(self) -> int:
        return len(self.fragment_mzs)
