"""Unit tests for the DIA scan index.

Tests:
1. Index construction (MS1 filtering, window grouping, sort order)
2. Per-scan and per-window accessors
3. Window lookup by precursor m/z
4. Lifetime (close, context manager)
"""

import numpy as np
import pytest

from alphadiafast.index import ScanIndex, ScanRecord, build_scan_index, find_window_index


class TestBuildScanIndex:
    """Test index construction from scan records."""

    def test_ms1_scans_are_ignored(self, simple_index):
        """Test that only MS2 scans end up in the index."""
        assert simple_index.scan_count == 20
        assert simple_index.window_count == 2

    def test_total_peak_count(self, simple_index):
        """Test flattened peak count (10 x 3 + 10 x 2 peaks)."""
        assert simple_index.total_peak_count == 50
        assert len(simple_index.all_mz) == 50
        assert simple_index.all_mz.dtype == np.float32
        assert simple_index.all_intensity.dtype == np.float32

    def test_windows_sorted_by_lower_bound(self, simple_index):
        """Test that window ids follow ascending isolation range."""
        assert simple_index.get_window_bounds(0) == pytest.approx((400.0, 425.0))
        assert simple_index.get_window_bounds(1) == pytest.approx((425.0, 450.0))

    def test_scans_grouped_by_window_then_rt(self, simple_index):
        """Test that each window's scans are contiguous and RT-ascending."""
        for window_id in simple_index.window_ids():
            start, count = simple_index.try_get_scan_range_for_window(window_id)
            assert count == 10
            rts = simple_index.scan_rts[start:start + count]
            assert np.all(np.diff(rts) > 0)
            assert np.all(simple_index.scan_window_ids[start:start + count] == window_id)

    def test_peaks_sorted_within_scan(self, simple_index):
        """Test that unsorted input peaks are sorted by m/z, intensities following."""
        mz = simple_index.get_scan_mz_span(0)
        intensity = simple_index.get_scan_intensity_span(0)

        np.testing.assert_allclose(mz, [500.0, 600.0, 700.0])
        np.testing.assert_allclose(intensity, [100.0, 200.0, 300.0])

    def test_peak_buffers_are_read_only(self, simple_index):
        """Test that peak and scan buffers cannot be written through accessors."""
        mz = simple_index.get_scan_mz_span(0)
        intensity = simple_index.get_scan_intensity_span(0)

        with pytest.raises(ValueError):
            mz[0] = 1.0
        with pytest.raises(ValueError):
            intensity[0] = 1.0
        assert not simple_index.all_mz.flags.writeable
        assert not simple_index.scan_rts.flags.writeable

    def test_input_order_does_not_matter(self, simple_scans):
        """Test that shuffled scans produce the same index."""
        rng = np.random.default_rng(7)
        shuffled = [simple_scans[i] for i in rng.permutation(len(simple_scans))]

        a = build_scan_index(simple_scans)
        b = build_scan_index(shuffled)

        np.testing.assert_array_equal(a.scan_rts, b.scan_rts)
        np.testing.assert_array_equal(a.all_mz, b.all_mz)
        np.testing.assert_array_equal(a.scan_numbers, b.scan_numbers)

    def test_close_centers_share_window(self):
        """Test that isolation centers within tolerance form one window."""
        scans = [
            ScanRecord(1, 2, 0.1, 412.5, 25.0, np.array([500.0]), np.array([1.0])),
            ScanRecord(2, 2, 0.2, 412.5001, 25.0, np.array([500.0]), np.array([1.0])),
            ScanRecord(3, 2, 0.3, 437.5, 25.0, np.array([500.0]), np.array([1.0])),
        ]

        index = build_scan_index(scans, isolation_window_tolerance_ppm=10.0)

        assert index.window_count == 2
        assert index.try_get_scan_range_for_window(0) == (0, 2)

    def test_empty_scans_are_skipped(self):
        """Test that MS2 scans without peaks are left out."""
        scans = [
            ScanRecord(1, 2, 0.1, 412.5, 25.0, np.array([]), np.array([])),
            ScanRecord(2, 2, 0.2, 412.5, 25.0, np.array([500.0]), np.array([1.0])),
        ]

        index = build_scan_index(scans)

        assert index.scan_count == 1
        assert index.get_scan_number(0) == 2

    def test_mismatched_peak_arrays_raise(self):
        """Test that m/z and intensity arrays of different length are rejected."""
        scans = [ScanRecord(1, 2, 0.1, 412.5, 25.0, np.array([500.0, 600.0]), np.array([1.0]))]

        with pytest.raises(ValueError, match="differ in length"):
            build_scan_index(scans)

    def test_no_usable_scans(self):
        """Test that an index without MS2 scans is empty but usable."""
        index = build_scan_index([
            ScanRecord(1, 1, 0.1, None, 0.0, np.array([500.0]), np.array([1.0])),
        ])

        assert index.scan_count == 0
        assert index.window_count == 0
        assert index.global_rt_min == 0.0
        assert index.global_rt_max == 0.0
        assert index.max_scans_per_window == 0
        assert index.find_window_for_precursor_mz(410.0) == -1


class TestAccessors:
    """Test per-scan and per-window accessors."""

    def test_scan_metadata(self, simple_index):
        """Test RT, window id, scan number and peak count of the first scan."""
        assert simple_index.get_scan_rt(0) == pytest.approx(0.01)
        assert simple_index.get_scan_window_id(0) == 0
        assert simple_index.get_scan_number(0) == 2
        assert simple_index.get_scan_peak_count(0) == 3

    def test_global_rt_range(self, simple_index):
        """Test global RT bounds over all MS2 scans."""
        assert simple_index.global_rt_min == pytest.approx(0.01)
        assert simple_index.global_rt_max == pytest.approx(0.92)

    def test_max_scans_per_window(self, simple_index):
        """Test largest window scan count."""
        assert simple_index.max_scans_per_window == 10

    def test_unknown_window_bounds_raise(self, simple_index):
        """Test KeyError for an unknown window id."""
        with pytest.raises(KeyError):
            simple_index.get_window_bounds(5)

    def test_unknown_window_scan_range(self, simple_index):
        """Test that an unknown window id gives None."""
        assert simple_index.try_get_scan_range_for_window(-1) is None
        assert simple_index.try_get_scan_range_for_window(2) is None


class TestWindowLookup:
    """Test window lookup by precursor m/z."""

    def test_inside_windows(self, simple_index):
        """Test m/z values inside each window."""
        assert simple_index.find_window_for_precursor_mz(410.0) == 0
        assert simple_index.find_window_for_precursor_mz(440.0) == 1

    def test_outside_windows(self, simple_index):
        """Test m/z values below, above and far from all windows."""
        assert simple_index.find_window_for_precursor_mz(399.9) == -1
        assert simple_index.find_window_for_precursor_mz(450.1) == -1
        assert simple_index.find_window_for_precursor_mz(1000.0) == -1

    def test_bounds_are_inclusive(self, simple_index):
        """Test that the window edges belong to a window."""
        assert simple_index.find_window_for_precursor_mz(400.0) == 0
        assert simple_index.find_window_for_precursor_mz(450.0) == 1

    def test_shared_edge_goes_to_first_window(self, simple_index):
        """Test that an m/z on the edge shared by two windows maps to the lower id."""
        assert simple_index.find_window_for_precursor_mz(425.0) == 0

    def test_overlapping_windows(self):
        """Test that the overlap region of adjacent windows maps to the first window."""
        lower = np.array([399.5, 424.5])
        upper = np.array([425.5, 450.5])

        assert find_window_index(lower, upper, 425.0) == 0
        assert find_window_index(lower, upper, 424.0) == 0
        assert find_window_index(lower, upper, 426.0) == 1

    def test_nested_windows(self):
        """Test that a narrow window inside a wide one does not hide the wide one."""
        lower = np.array([400.0, 410.0])
        upper = np.array([450.0, 420.0])

        assert find_window_index(lower, upper, 440.0) == 0
        assert find_window_index(lower, upper, 415.0) == 0
        assert find_window_index(lower, upper, 451.0) == -1

    def test_matches_linear_scan(self):
        """Test agreement with a linear scan over random overlapping windows."""
        rng = np.random.default_rng(11)

        for _ in range(50):
            n = int(rng.integers(1, 12))
            lower = np.sort(rng.uniform(400.0, 600.0, n))
            upper = lower + rng.uniform(0.5, 60.0, n)
            queries = np.concatenate([
                rng.uniform(390.0, 670.0, 40), lower, upper,
            ])

            for mz in queries:
                expected = next(
                    (i for i in range(n) if lower[i] <= mz <= upper[i]), -1
                )
                assert find_window_index(lower, upper, mz) == expected

    def test_index_with_overlapping_windows(self):
        """Test lookup on an index built from 1 Th overlapping isolation windows."""
        scans = [
            ScanRecord(1, 2, 0.1, 412.5, 26.0, np.array([500.0]), np.array([1.0])),
            ScanRecord(2, 2, 0.2, 437.5, 26.0, np.array([500.0]), np.array([1.0])),
        ]
        index = build_scan_index(scans)

        assert index.get_window_bounds(0) == pytest.approx((399.5, 425.5))
        assert index.get_window_bounds(1) == pytest.approx((424.5, 450.5))
        assert index.find_window_for_precursor_mz(425.0) == 0
        assert index.find_window_for_precursor_mz(425.6) == 1

    def test_gap_between_windows(self):
        """Test that m/z in a gap between windows is not assigned."""
        lower = np.array([400.0, 430.0])
        upper = np.array([420.0, 450.0])

        assert find_window_index(lower, upper, 425.0) == -1
        assert find_window_index(lower, upper, 419.0) == 0
        assert find_window_index(lower, upper, 431.0) == 1

    def test_empty_bounds(self):
        """Test lookup without windows."""
        empty = np.zeros(0, dtype=np.float64)
        assert find_window_index(empty, empty, 410.0) == -1


class TestLifetime:
    """Test close and context manager behavior."""

    def test_close_releases_buffers(self, simple_scans):
        """Test that close drops buffers and further access raises."""
        index = build_scan_index(simple_scans)
        index.close()

        assert index.closed
        assert index.all_mz is None
        with pytest.raises(ValueError, match="closed"):
            _ = index.scan_count
        with pytest.raises(ValueError):
            index.find_window_for_precursor_mz(410.0)

    def test_close_is_idempotent(self, simple_scans):
        """Test that closing twice is harmless."""
        index = build_scan_index(simple_scans)
        index.close()
        index.close()
        assert index.closed

    def test_context_manager(self, simple_scans):
        """Test that leaving the with-block closes the index."""
        with build_scan_index(simple_scans) as index:
            assert index.scan_count == 20
        assert index.closed

    def test_empty_classmethod(self):
        """Test the explicit empty index."""
        index = ScanIndex.empty()
        assert index.scan_count == 0
        assert index.window_ids() == []
        assert "scans=0" in repr(index)
