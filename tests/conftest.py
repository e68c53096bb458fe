"""Pytest configuration for AlphaDiaFast tests.

Shared fixtures build small synthetic DIA runs in memory: scan records,
library precursors and indices. Nothing is read from disk.
"""

import numpy as np
import pytest

from alphadiafast.index.scan_index import ScanRecord, build_scan_index
from alphadiafast.query.precursor import LibraryPrecursorInput

WINDOW_WIDTH = 25.0
FIRST_WINDOW_LOWER = 400.0


def make_simple_scans():
    """Two windows (400-425, 425-450) with 10 cycles of 0.1 min.

    Window 0 scans carry peaks at 500/600/700 m/z, the 500 m/z peak growing
    with the cycle number (100, 200, ... 1000). Window 1 scans carry peaks at
    550/650 m/z. One MS1 scan precedes each cycle.
    """
    scans = []
    scan_number = 1
    for cycle in range(10):
        rt = cycle * 0.1
        scans.append(ScanRecord(
            scan_number, 1, rt, None, 0.0,
            np.array([450.0, 451.0]), np.array([1e6, 1e6]),
        ))
        scan_number += 1
        scans.append(ScanRecord(
            scan_number, 2, rt + 0.01, 412.5, WINDOW_WIDTH,
            np.array([700.0, 500.0, 600.0]),
            np.array([300.0, 100.0 * (cycle + 1), 200.0]),
        ))
        scan_number += 1
        scans.append(ScanRecord(
            scan_number, 2, rt + 0.02, 437.5, WINDOW_WIDTH,
            np.array([550.0, 650.0]), np.array([1000.0, 2000.0]),
        ))
        scan_number += 1
    return scans


def make_synthetic_run(
    n_targets=60,
    n_decoys=60,
    n_windows=4,
    n_cycles=120,
    cycle_time=0.05,
    n_fragments=6,
    noise_peaks=300,
    peak_sigma=0.1,
    apex_intensity=1e5,
    seed=0,
):
    """Synthetic DIA run with eluting targets and signal-free decoys.

    Targets elute as Gaussians at their library RT, their fragments appearing
    with library-proportional intensity. Decoy fragments are random m/z values
    that only ever hit random noise peaks.

    Returns
    -------
    scans : list of ScanRecord
    precursors : list of LibraryPrecursorInput
        Targets first, then decoys
    """
    rng = np.random.default_rng(seed)
    upper = FIRST_WINDOW_LOWER + n_windows * WINDOW_WIDTH
    rt_span = n_cycles * cycle_time

    def random_precursor(i, is_decoy):
        mz = rng.uniform(FIRST_WINDOW_LOWER + 1.0, upper - 1.0)
        rt = rng.uniform(1.0, rt_span - 1.0)
        fragment_mzs = np.sort(rng.uniform(200.0, 1500.0, n_fragments))
        fragment_intensities = rng.uniform(0.1, 1.0, n_fragments)
        prefix = "DECOY_" if is_decoy else ""
        return LibraryPrecursorInput(
            sequence=f"{prefix}PEPTIDE{i}K",
            precursor_mz=mz,
            charge=2,
            rt=rt,
            is_decoy=is_decoy,
            fragment_mzs=fragment_mzs,
            fragment_intensities=fragment_intensities,
            irt=rt * 10.0,
        )

    targets = [random_precursor(i, False) for i in range(n_targets)]
    decoys = [random_precursor(i, True) for i in range(n_decoys)]

    target_windows = [
        int((t.precursor_mz - FIRST_WINDOW_LOWER) // WINDOW_WIDTH) for t in targets
    ]

    scans = []
    scan_number = 1
    for cycle in range(n_cycles):
        for w in range(n_windows):
            rt = cycle * cycle_time + w * cycle_time / n_windows
            mz_parts = [rng.uniform(200.0, 1500.0, noise_peaks)]
            intensity_parts = [rng.uniform(50.0, 500.0, noise_peaks)]
            for target, window in zip(targets, target_windows):
                if window != w:
                    continue
                amplitude = apex_intensity * np.exp(-0.5 * ((rt - target.rt) / peak_sigma) ** 2)
                if amplitude < 100.0:
                    continue
                ppm_error = rng.normal(0.0, 2.0, n_fragments) * 1e-6
                mz_parts.append(target.fragment_mzs * (1.0 + ppm_error))
                jitter = rng.uniform(0.9, 1.1, n_fragments)
                intensity_parts.append(amplitude * target.fragment_intensities * jitter)

            scans.append(ScanRecord(
                scan_number=scan_number,
                ms_level=2,
                rt=rt,
                isolation_mz=FIRST_WINDOW_LOWER + (w + 0.5) * WINDOW_WIDTH,
                isolation_width=WINDOW_WIDTH,
                mz_array=np.concatenate(mz_parts),
                intensity_array=np.concatenate(intensity_parts),
            ))
            scan_number += 1

    return scans, targets + decoys


@pytest.fixture
def simple_scans():
    """Small deterministic two-window run."""
    return make_simple_scans()


@pytest.fixture
def simple_index(simple_scans):
    """ScanIndex over ``simple_scans``, closed after the test."""
    index = build_scan_index(simple_scans)
    yield index
    index.close()


@pytest.fixture
def simple_precursor():
    """Window-0 precursor whose three fragments match the simple scans."""
    return LibraryPrecursorInput(
        sequence="PEPTIDEK",
        precursor_mz=410.0,
        charge=2,
        rt=0.5,
        fragment_mzs=np.array([500.0, 600.0, 700.0]),
        fragment_intensities=np.array([1.0, 2.0, 3.0]),
    )


@pytest.fixture
def synthetic_run():
    """(scans, precursors) of the default synthetic run."""
    return make_synthetic_run()


@pytest.fixture(scope="session")
def make_run():
    """Factory for synthetic runs with custom settings."""
    return make_synthetic_run


# Random seed for reproducibility
@pytest.fixture(scope="session", autouse=True)
def set_random_seed():
    """Set random seed for reproducible tests."""
    np.random.seed(42)
