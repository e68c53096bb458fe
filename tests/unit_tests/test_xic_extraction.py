"""Unit tests for fragment XIC extraction.

Tests:
1. Binary search m/z range
2. CPU extraction (RT window, tolerance, summed peaks, empty queries)
3. Independence from thread count and chunking
4. Orchestrator backend selection and GPU fallback
"""

import numpy as np
import pytest

from alphadiafast.exceptions import GpuExtractionError
from alphadiafast.index import ScanRecord, build_scan_index
from alphadiafast.query import make_fragment_queries
from alphadiafast.xic import (
    CpuFragmentExtractor,
    ExtractionOrchestrator,
    ExtractionResult,
    binary_search_mz_range,
    create_extractor,
    resolve_parallelism,
)
from alphadiafast.xic import gpu as gpu_module


class TestBinarySearchMzRange:
    """Test binary search for m/z range."""

    def test_exact_match(self):
        """Test exact m/z match."""
        mz_array = np.array([100.0, 200.0, 300.0, 400.0])
        start, end = binary_search_mz_range(mz_array, 200.0, 10.0)

        assert start == 1
        assert end == 2

    def test_multiple_matches(self):
        """Test multiple peaks within tolerance."""
        mz_array = np.array([100.0, 200.0, 200.05, 200.1, 300.0])
        start, end = binary_search_mz_range(mz_array, 200.05, 500.0)

        assert start == 1
        assert end == 4

    def test_no_match(self):
        """Test no peaks within tolerance."""
        mz_array = np.array([100.0, 200.0, 300.0])
        start, end = binary_search_mz_range(mz_array, 250.0, 10.0)

        assert start == end

    def test_tolerance_is_inclusive(self):
        """Test that a peak exactly at the tolerance edge matches."""
        mz_array = np.array([99.0, 100.0, 101.0])
        start, end = binary_search_mz_range(mz_array, 100.0, 10000.0)

        assert (start, end) == (0, 3)

    def test_empty_array(self):
        """Test search in empty array."""
        start, end = binary_search_mz_range(np.array([], dtype=np.float64), 200.0, 10.0)
        assert start == 0
        assert end == 0


class TestCpuExtraction:
    """Test the CPU backend on the simple two-window run."""

    def test_growing_peak(self, simple_index):
        """Test one point per cycle with the growing 500 m/z intensity."""
        queries = make_fragment_queries([500.0], 20.0, 0.0, 1.0, 0)

        with CpuFragmentExtractor(simple_index) as extractor:
            result = extractor.extract_batch(queries)

        rts, intensities = result.get_xic(0)
        assert result.data_point_counts[0] == 10
        np.testing.assert_allclose(intensities, 100.0 * np.arange(1, 11))
        assert np.all(np.diff(rts) > 0)
        assert result.total_intensities[0] == pytest.approx(5500.0)

    def test_rt_window_is_inclusive(self, simple_index):
        """Test that only scans inside [rt_min, rt_max] contribute."""
        queries = make_fragment_queries([500.0], 20.0, 0.2, 0.45, 0)

        result = CpuFragmentExtractor(simple_index).extract_batch(queries)

        rts, intensities = result.get_xic(0)
        np.testing.assert_allclose(rts, [0.21, 0.31, 0.41])
        np.testing.assert_allclose(intensities, [300.0, 400.0, 500.0])

    def test_query_only_sees_its_window(self, simple_index):
        """Test that a window-1 fragment is not found in window 0."""
        queries = make_fragment_queries([550.0, 550.0], 20.0, 0.0, 1.0, [0, 1])

        result = CpuFragmentExtractor(simple_index).extract_batch(queries)

        np.testing.assert_array_equal(result.data_point_counts, [0, 10])
        assert result.total_intensities[0] == 0.0
        assert result.total_intensities[1] == pytest.approx(10000.0)

    def test_unknown_window_gives_no_points(self, simple_index):
        """Test that an out-of-range window id is answered with zero points."""
        queries = make_fragment_queries([500.0, 500.0], 20.0, 0.0, 1.0, [-1, 7])

        result = CpuFragmentExtractor(simple_index).extract_batch(queries)

        np.testing.assert_array_equal(result.data_point_counts, [0, 0])
        assert result.total_data_points == 0

    def test_peaks_within_tolerance_are_summed(self):
        """Test that all matching peaks of one scan sum into one point."""
        scans = [
            ScanRecord(1, 2, 1.0, 412.5, 25.0,
                       np.array([499.999, 500.0, 500.001, 510.0]),
                       np.array([10.0, 20.0, 30.0, 1000.0])),
        ]
        index = build_scan_index(scans)
        queries = make_fragment_queries([500.0], 10.0, 0.0, 2.0, 0)

        result = CpuFragmentExtractor(index).extract_batch(queries)

        _, intensities = result.get_xic(0)
        np.testing.assert_allclose(intensities, [60.0])

    def test_offsets_are_prefix_sums(self, simple_index):
        """Test buffer layout of a multi-query batch."""
        queries = make_fragment_queries([500.0, 550.0, 600.0, 650.0], 20.0, 0.0, 1.0, [0, 0, 0, 1])

        result = CpuFragmentExtractor(simple_index).extract_batch(queries)

        np.testing.assert_array_equal(result.data_point_counts, [10, 0, 10, 10])
        np.testing.assert_array_equal(result.offsets, [0, 10, 10, 20])
        assert len(result.rt_buffer) == 30
        np.testing.assert_array_equal(result.query_ids, [0, 1, 2, 3])
        np.testing.assert_array_equal(result.fragment_slices(1, 2), [[10, 0], [10, 10]])

    def test_empty_queries(self, simple_index):
        """Test that an empty batch gives an empty result."""
        queries = make_fragment_queries([], 20.0, 0.0, 1.0, 0)

        result = CpuFragmentExtractor(simple_index).extract_batch(queries)

        assert result.query_count == 0
        assert result.total_data_points == 0

    def test_closed_index_raises(self, simple_scans):
        """Test that extracting from a closed index raises."""
        index = build_scan_index(simple_scans)
        extractor = CpuFragmentExtractor(index)
        index.close()

        with pytest.raises(ValueError, match="closed"):
            extractor.extract_batch(make_fragment_queries([500.0], 20.0, 0.0, 1.0, 0))

    def test_closed_extractor_raises(self, simple_index):
        """Test that a closed extractor refuses work."""
        extractor = CpuFragmentExtractor(simple_index)
        extractor.close()

        with pytest.raises(ValueError):
            extractor.extract_batch(make_fragment_queries([500.0], 20.0, 0.0, 1.0, 0))

    def test_missing_query_field(self, simple_index):
        """Test that a plain array is rejected."""
        with pytest.raises(ValueError):
            CpuFragmentExtractor(simple_index).extract_batch(np.zeros(3))

    def test_invalid_construction(self, simple_index):
        """Test constructor validation."""
        with pytest.raises(TypeError):
            CpuFragmentExtractor(None)
        with pytest.raises(ValueError):
            CpuFragmentExtractor(simple_index, chunk_size=0)


class TestParallelism:
    """Test that output does not depend on the degree of parallelism."""

    @pytest.fixture
    def large_index(self):
        rng = np.random.default_rng(123)
        scans = []
        scan_number = 1
        for window in range(20):
            for i in range(500):
                scans.append(ScanRecord(
                    scan_number, 2, i * 0.02, 400.0 + (window + 0.5) * 10.0, 10.0,
                    rng.uniform(200.0, 1500.0, 200),
                    rng.uniform(1.0, 1000.0, 200),
                ))
                scan_number += 1
        index = build_scan_index(scans)
        yield index
        index.close()

    @pytest.fixture
    def large_queries(self):
        rng = np.random.default_rng(321)
        n = 20 * 50
        rt_min = rng.uniform(0.0, 8.0, n)
        return make_fragment_queries(
            rng.uniform(200.0, 1500.0, n),
            50.0,
            rt_min,
            rt_min + 2.0,
            np.repeat(np.arange(20), 50),
        )

    def test_one_vs_eight_threads(self, large_index, large_queries):
        """Test identical buffers for 1 and 8 worker threads."""
        extractor = CpuFragmentExtractor(large_index, chunk_size=16)

        serial = extractor.extract_batch(large_queries, max_degree_of_parallelism=1)
        parallel = extractor.extract_batch(large_queries, max_degree_of_parallelism=8)

        assert serial.total_data_points > 0
        np.testing.assert_array_equal(serial.data_point_counts, parallel.data_point_counts)
        np.testing.assert_array_equal(serial.offsets, parallel.offsets)
        np.testing.assert_array_equal(serial.rt_buffer, parallel.rt_buffer)
        np.testing.assert_array_equal(serial.intensity_buffer, parallel.intensity_buffer)
        np.testing.assert_array_equal(serial.total_intensities, parallel.total_intensities)

    def test_chunk_size_does_not_matter(self, large_index, large_queries):
        """Test identical buffers for different chunk sizes."""
        a = CpuFragmentExtractor(large_index, chunk_size=1).extract_batch(large_queries, 4)
        b = CpuFragmentExtractor(large_index, chunk_size=5000).extract_batch(large_queries, 4)

        np.testing.assert_array_equal(a.intensity_buffer, b.intensity_buffer)
        np.testing.assert_array_equal(a.data_point_counts, b.data_point_counts)

    def test_resolve_parallelism(self):
        """Test -1 resolves to at least one worker."""
        assert resolve_parallelism(-1) >= 1
        assert resolve_parallelism(0) >= 1
        assert resolve_parallelism(3) == 3


class TestOrchestrator:
    """Test backend selection and fallback."""

    def test_cpu_backend(self, simple_index):
        """Test the default CPU path."""
        with ExtractionOrchestrator(simple_index) as orchestrator:
            result = orchestrator.extract_all(make_fragment_queries([500.0], 20.0, 0.0, 1.0, 0))

            assert orchestrator.backend_name == "cpu"
            assert result.data_point_counts[0] == 10

    def test_empty_queries(self, simple_index):
        """Test that no backend is needed for an empty batch."""
        orchestrator = ExtractionOrchestrator(simple_index, prefer_cpu=False)

        result = orchestrator.extract_all(make_fragment_queries([], 20.0, 0.0, 1.0, 0))

        assert isinstance(result, ExtractionResult)
        assert result.query_count == 0

    def test_gpu_unavailable_raises(self, simple_index, monkeypatch):
        """Test that the GPU request fails loudly without fallback."""
        monkeypatch.setattr(gpu_module, "gpu_available", lambda: False)

        with pytest.raises(GpuExtractionError):
            create_extractor(simple_index, prefer_cpu=False)

        orchestrator = ExtractionOrchestrator(simple_index, prefer_cpu=False)
        with pytest.raises(GpuExtractionError):
            orchestrator.extract_all(make_fragment_queries([500.0], 20.0, 0.0, 1.0, 0))

    def test_gpu_fallback_to_cpu(self, simple_index, monkeypatch):
        """Test warning and CPU rerun when the GPU cannot be used."""
        monkeypatch.setattr(gpu_module, "gpu_available", lambda: False)
        orchestrator = ExtractionOrchestrator(simple_index, prefer_cpu=False, fallback_to_cpu=True)

        with pytest.warns(UserWarning, match="falling back to CPU"):
            result = orchestrator.extract_all(make_fragment_queries([500.0], 20.0, 0.0, 1.0, 0))

        assert orchestrator.backend_name == "cpu"
        assert result.data_point_counts[0] == 10

    def test_none_index(self):
        """Test TypeError on a missing index."""
        with pytest.raises(TypeError):
            ExtractionOrchestrator(None)
