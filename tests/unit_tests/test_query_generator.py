"""Unit tests for query generation.

Tests:
1. Window resolution and skip counting
2. Fixed RT windows around library RT
3. Calibrated RT windows
4. Query layout (contiguous groups, ids, dtype)
"""

import numpy as np
import pytest

from alphadiafast.config import DiaSearchParameters
from alphadiafast.exceptions import UnreliableCalibrationError
from alphadiafast.query import (
    QUERY_DTYPE,
    LibraryPrecursorInput,
    generate_calibrated_queries,
    generate_queries,
    make_fragment_queries,
)
from alphadiafast.rt import RtCalibrationModel


def _precursor(mz, n_frag=3, rt=0.5, irt=None, name="PEPK"):
    return LibraryPrecursorInput(
        sequence=name,
        precursor_mz=mz,
        charge=2,
        rt=rt,
        irt=irt,
        fragment_mzs=np.linspace(300.0, 900.0, n_frag),
        fragment_intensities=np.ones(n_frag),
    )


class TestLibraryPrecursorInput:
    """Test library precursor validation."""

    def test_arrays_coerced_to_float32(self):
        """Test dtype coercion of fragment arrays."""
        p = _precursor(410.0)
        assert p.fragment_mzs.dtype == np.float32
        assert p.fragment_intensities.dtype == np.float32
        assert p.fragment_count == 3

    def test_length_mismatch(self):
        """Test ValueError on unequal fragment arrays."""
        with pytest.raises(ValueError):
            LibraryPrecursorInput("PEPK", 410.0, 2, fragment_mzs=[1.0, 2.0], fragment_intensities=[1.0])

    def test_none_sequence(self):
        """Test TypeError on a missing sequence."""
        with pytest.raises(TypeError):
            LibraryPrecursorInput(None, 410.0, 2)


class TestGenerateQueries:
    """Test fixed-window query generation."""

    def test_one_query_per_fragment(self, simple_index):
        """Test query count and grouping."""
        precursors = [_precursor(410.0, 3), _precursor(440.0, 5)]

        result = generate_queries(precursors, simple_index)

        assert result.query_count == 8
        assert result.queries.dtype == QUERY_DTYPE
        assert [g.query_count for g in result.precursor_groups] == [3, 5]
        assert [g.query_offset for g in result.precursor_groups] == [0, 3]
        assert [g.window_id for g in result.precursor_groups] == [0, 1]
        np.testing.assert_array_equal(result.queries['query_id'], np.arange(8))

    def test_rt_window(self, simple_index):
        """Test library RT +/- tolerance."""
        params = DiaSearchParameters(rt_tolerance_minutes=0.2, ppm_tolerance=15.0)

        result = generate_queries([_precursor(410.0, rt=0.5)], simple_index, params)

        group = result.precursor_groups[0]
        assert group.rt_min == pytest.approx(0.3)
        assert group.rt_max == pytest.approx(0.7)
        assert group.expected_rt == pytest.approx(0.5)
        assert np.all(result.queries['tolerance_ppm'] == 15.0)
        assert np.all(result.queries['window_id'] == 0)

    def test_missing_rt_searches_whole_run(self, simple_index):
        """Test that precursors without RT span the global RT range."""
        result = generate_queries([_precursor(410.0, rt=None)], simple_index)

        group = result.precursor_groups[0]
        assert group.rt_min == pytest.approx(simple_index.global_rt_min)
        assert group.rt_max == pytest.approx(simple_index.global_rt_max)
        assert group.expected_rt is None

    def test_skip_counts(self, simple_index):
        """Test that unmatched and fragment-less precursors are counted, not raised."""
        precursors = [
            _precursor(410.0),
            _precursor(1000.0),
            _precursor(440.0, n_frag=0),
        ]

        result = generate_queries(precursors, simple_index)

        assert len(result.precursor_groups) == 1
        assert result.skipped_no_window == 1
        assert result.skipped_no_fragments == 1
        assert result.total_skipped == 2
        assert result.precursor_groups[0].input_index == 0

    def test_fragment_mz_preserved(self, simple_index):
        """Test that targets are the library fragment m/z values."""
        p = _precursor(410.0, 4)
        result = generate_queries([p], simple_index)

        np.testing.assert_allclose(result.queries['target_mz'], p.fragment_mzs)

    def test_empty_library(self, simple_index):
        """Test empty input."""
        result = generate_queries([], simple_index)
        assert result.query_count == 0
        assert result.precursor_groups == []

    def test_none_inputs(self, simple_index):
        """Test TypeError on None precursors or index."""
        with pytest.raises(TypeError):
            generate_queries(None, simple_index)
        with pytest.raises(TypeError):
            generate_queries([], None)


class TestCalibratedQueries:
    """Test calibrated-window query generation."""

    @pytest.fixture
    def model(self):
        return RtCalibrationModel(slope=0.1, intercept=0.0, sigma_minutes=0.05,
                                  r_squared=0.99, anchor_count=100)

    def test_window_centered_on_prediction(self, simple_index, model):
        """Test center = to_minutes(iRT), half-width = k * sigma."""
        p = _precursor(410.0, rt=0.9, irt=4.0)

        result = generate_calibrated_queries([p], simple_index, None, model, k=2.0)

        group = result.precursor_groups[0]
        assert group.expected_rt == pytest.approx(0.4)
        assert group.rt_min == pytest.approx(0.3)
        assert group.rt_max == pytest.approx(0.5)

    def test_default_k_from_parameters(self, simple_index, model):
        """Test that k defaults to calibrated_window_sigma_multiplier."""
        params = DiaSearchParameters(calibrated_window_sigma_multiplier=1.0)
        p = _precursor(410.0, irt=4.0)

        group = generate_calibrated_queries([p], simple_index, params, model).precursor_groups[0]

        assert group.rt_max - group.rt_min == pytest.approx(0.1)

    def test_falls_back_to_library_rt(self, simple_index, model):
        """Test that precursors without iRT use their library RT as input."""
        p = _precursor(410.0, rt=5.0, irt=None)

        group = generate_calibrated_queries([p], simple_index, None, model).precursor_groups[0]

        assert group.expected_rt == pytest.approx(0.5)

    def test_calibration_required(self, simple_index):
        """Test TypeError without a model."""
        with pytest.raises(TypeError):
            generate_calibrated_queries([_precursor(410.0)], simple_index, None, None)

    def test_invalid_k(self, simple_index, model):
        """Test ValueError on non-positive k."""
        with pytest.raises(ValueError):
            generate_calibrated_queries([_precursor(410.0)], simple_index, None, model, k=0.0)

    def test_require_reliable(self, simple_index):
        """Test refusal of an unreliable model when requested."""
        weak = RtCalibrationModel(0.1, 0.0, 0.05, 0.5, 10)

        with pytest.raises(UnreliableCalibrationError):
            generate_calibrated_queries([_precursor(410.0)], simple_index, None, weak,
                                        require_reliable=True)
        result = generate_calibrated_queries([_precursor(410.0)], simple_index, None, weak)
        assert result.query_count == 3


class TestMakeFragmentQueries:
    """Test the query array helper."""

    def test_broadcast_columns(self):
        """Test scalar columns broadcast over all queries."""
        queries = make_fragment_queries([500.0, 600.0, 700.0], 20.0, 1.0, 2.0, 3)

        assert len(queries) == 3
        np.testing.assert_array_equal(queries['query_id'], [0, 1, 2])
        assert np.all(queries['window_id'] == 3)
        assert np.all(queries['rt_max'] == 2.0)
