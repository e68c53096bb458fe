"""Unit tests for ROC metrics, cross-validation and regularization sweeps."""

import logging

import numpy as np
import pytest

from alphadiafast.classify import (
    CrossValidationResult,
    RegularizationResult,
    compute_roc_metrics,
    cross_validate,
    sweep_regularization,
)


def make_pools(n_pos=150, n_neg=150, shift=1.0, seed=1):
    rng = np.random.default_rng(seed)
    pos = rng.normal(shift, 1.0, size=(n_pos, 13))
    neg = rng.normal(0.0, 1.0, size=(n_neg, 13))
    return pos, neg


class TestRocMetrics:
    """Test AUC and TPR at 1% FPR."""

    def test_perfect_separation(self):
        """Test AUC 1 and full TPR when every positive outranks every negative."""
        scores = np.array([0.9, 0.8, 0.7, 0.2, 0.1])
        labels = np.array([True, True, True, False, False])

        auc, tp = compute_roc_metrics(scores, labels)

        assert auc == pytest.approx(1.0)
        assert tp == pytest.approx(1.0)

    def test_inverted_ranking(self):
        """Test AUC 0 when every negative outranks every positive."""
        scores = np.array([0.9, 0.8, 0.2, 0.1])
        labels = np.array([False, False, True, True])

        auc, tp = compute_roc_metrics(scores, labels)

        assert auc == pytest.approx(0.0)
        assert tp == 0.0

    def test_tpr_before_fpr_exceeds_one_percent(self):
        """Test TPR read just before the FPR first passes 0.01."""
        neg_scores = np.linspace(0.99, 0.0, 100)
        scores = np.concatenate([np.full(5, 2.0), np.full(5, 0.5), neg_scores])
        labels = np.concatenate([np.ones(10, bool), np.zeros(100, bool)])

        _, tp = compute_roc_metrics(scores, labels)

        assert tp == pytest.approx(0.5)

    def test_single_class(self):
        """Test the neutral result when one class is missing."""
        assert compute_roc_metrics(np.array([1.0, 2.0]), np.array([True, True])) == (0.5, 0.0)
        assert compute_roc_metrics(np.array([]), np.array([], dtype=bool)) == (0.5, 0.0)

    def test_length_mismatch(self):
        """Test ValueError for mismatched inputs."""
        with pytest.raises(ValueError):
            compute_roc_metrics(np.ones(3), np.ones(2, dtype=bool))


class TestCrossValidate:
    """Test k-fold cross-validation."""

    def test_separable_pools(self):
        """Test high held-out AUC on well separated pools."""
        pos, neg = make_pools()

        cv = cross_validate(pos, neg, k_folds=3, max_epochs=30, learning_rate=0.05)

        assert isinstance(cv, CrossValidationResult)
        assert cv.auc > 0.95
        assert 0.0 <= cv.tp_at_1pct_fp <= 1.0

    def test_random_labels_near_chance(self):
        """Test AUC near 0.5 when both pools come from one distribution."""
        pos, neg = make_pools(shift=0.0, n_pos=300, n_neg=300)

        cv = cross_validate(pos, neg, k_folds=3, max_epochs=20)

        assert 0.35 < cv.auc < 0.65

    def test_deterministic(self):
        """Test identical results for the same seed."""
        pos, neg = make_pools()

        a = cross_validate(pos, neg, max_epochs=10, seed=3)
        b = cross_validate(pos, neg, max_epochs=10, seed=3)

        assert a == b

    def test_uneven_folds(self):
        """Test pools whose size is not a multiple of k."""
        pos, neg = make_pools(n_pos=31, n_neg=17)

        cv = cross_validate(pos, neg, k_folds=4, max_epochs=10)

        assert 0.0 <= cv.auc <= 1.0

    def test_invalid_folds(self):
        """Test ValueError for k < 2 and pools smaller than k."""
        pos, neg = make_pools(n_pos=4, n_neg=4)
        with pytest.raises(ValueError):
            cross_validate(pos, neg, k_folds=1)
        with pytest.raises(ValueError):
            cross_validate(pos, neg, k_folds=5)


class TestSweepRegularization:
    """Test the L2 sweep."""

    def test_one_result_per_lambda(self, caplog):
        """Test result order, values and per-lambda logging."""
        pos, neg = make_pools()
        lambdas = [1e-3, 1e-1]

        with caplog.at_level(logging.INFO, logger="alphadiafast.classify.validation"):
            results = sweep_regularization(pos, neg, lambdas=lambdas, max_epochs=10)

        assert [r.l2_lambda for r in results] == lambdas
        assert all(isinstance(r, RegularizationResult) for r in results)
        assert all(r.auc > 0.9 for r in results)
        assert sum("lambda=" in message for message in caplog.messages) == 2
