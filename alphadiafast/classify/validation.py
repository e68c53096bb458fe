"""ROC metrics, k-fold cross-validation and L2 regularization sweeps."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .linear import FeatureInput, as_feature_matrix, train_logistic_regression

logger = logging.getLogger(__name__)

DEFAULT_LAMBDAS = (1e-4, 5e-4, 1e-3, 5e-3, 1e-2, 5e-2, 1e-1)


@dataclass
class CrossValidationResult:
    """Pooled held-out performance."""

    auc: float
    tp_at_1pct_fp: float


@dataclass
class RegularizationResult:
    l2_lambda: float
    auc: float
    tp_at_1pct_fp: float


def compute_roc_metrics(scores: np.ndarray, is_positive: np.ndarray) -> Tuple[float, float]:
    """Trapezoidal ROC AUC and the true-positive rate at 1% false positives.

    Parameters
    ----------
    scores : np.ndarray
        Higher means more likely positive
    is_positive : np.ndarray
        Boolean labels

    Returns
    -------
    auc : float
    tp_at_1pct_fp : float
        TPR just before the FPR first exceeds 0.01 (final TPR if it never does)

    Notes
    -----
    Returns (0.5, 0.0) when either class is empty.
    """
    scores = np.asarray(scores, dtype=np.float64)
    is_positive = np.asarray(is_positive, dtype=bool)
    if len(scores) != len(is_positive):
        raise ValueError(f"Got {len(scores)} scores but {len(is_positive)} labels")

    n_pos = int(is_positive.sum())
    n_neg = len(is_positive) - n_pos
    if n_pos == 0 or n_neg == 0:
        return 0.5, 0.0

    order = np.argsort(-scores, kind='stable')
    labels = is_positive[order]
    tpr = np.concatenate([[0.0], np.cumsum(labels) / n_pos])
    fpr = np.concatenate([[0.0], np.cumsum(~labels) / n_neg])

    auc = float(np.sum((fpr[1:] - fpr[:-1]) * (tpr[1:] + tpr[:-1]) / 2.0))

    above = np.nonzero(fpr[1:] > 0.01)[0]
    tp_at_1pct = float(tpr[above[0]]) if len(above) else float(tpr[-1])
    return auc, tp_at_1pct


def _fold_bounds(n: int, k_folds: int, fold: int) -> Tuple[int, int]:
    size = n // k_folds
    start = fold * size
    end = n if fold == k_folds - 1 else start + size
    return start, end


def cross_validate(
    positives: FeatureInput,
    negatives: FeatureInput,
    k_folds: int = 3,
    learning_rate: float = 0.01,
    l2_lambda: float = 0.001,
    max_epochs: int = 200,
    batch_size: int = 256,
    use_interaction: bool = False,
    seed: int = 42,
) -> CrossValidationResult:
    """K-fold cross-validation of logistic regression.

    Each pool is shuffled on its own, then split into ``k_folds`` contiguous
    folds of ``n // k_folds`` (the remainder goes to the last fold). Each fold
    is scored by a model trained on the others, and the held-out scores of
    all folds are pooled for one ROC.
    """
    if k_folds < 2:
        raise ValueError(f"k_folds must be >= 2, got {k_folds}")
    pos = as_feature_matrix(positives)
    neg = as_feature_matrix(negatives)
    if len(pos) < k_folds or len(neg) < k_folds:
        raise ValueError(
            f"Need at least {k_folds} samples per class, got {len(pos)} and {len(neg)}"
        )

    rng = np.random.default_rng(seed)
    pos = pos[rng.permutation(len(pos))]
    neg = neg[rng.permutation(len(neg))]

    held_out_scores = []
    held_out_labels = []
    for fold in range(k_folds):
        p_start, p_end = _fold_bounds(len(pos), k_folds, fold)
        n_start, n_end = _fold_bounds(len(neg), k_folds, fold)

        train_pos = np.vstack([pos[:p_start], pos[p_end:]])
        train_neg = np.vstack([neg[:n_start], neg[n_end:]])
        model = train_logistic_regression(
            train_pos, train_neg, learning_rate, l2_lambda, max_epochs,
            batch_size, use_interaction, seed,
        )

        held_out_scores.append(model.score_matrix(pos[p_start:p_end]))
        held_out_labels.append(np.ones(p_end - p_start, dtype=bool))
        held_out_scores.append(model.score_matrix(neg[n_start:n_end]))
        held_out_labels.append(np.zeros(n_end - n_start, dtype=bool))

    auc, tp = compute_roc_metrics(
        np.concatenate(held_out_scores), np.concatenate(held_out_labels)
    )
    return CrossValidationResult(auc=auc, tp_at_1pct_fp=tp)


def sweep_regularization(
    positives: FeatureInput,
    negatives: FeatureInput,
    lambdas: Sequence[float] = DEFAULT_LAMBDAS,
    k_folds: int = 3,
    learning_rate: float = 0.01,
    max_epochs: int = 200,
    batch_size: int = 256,
    use_interaction: bool = False,
    seed: int = 42,
) -> List[RegularizationResult]:
    """Cross-validate logistic regression for each L2 strength in ``lambdas``."""
    pos = as_feature_matrix(positives)
    neg = as_feature_matrix(negatives)

    results = []
    for l2_lambda in lambdas:
        cv = cross_validate(
            pos, neg, k_folds, learning_rate, l2_lambda, max_epochs,
            batch_size, use_interaction, seed,
        )
        logger.info(
            f"lambda={l2_lambda:g}: AUC={cv.auc:.4f}, TP@1%FP={cv.tp_at_1pct_fp:.4f}"
        )
        results.append(RegularizationResult(l2_lambda, cv.auc, cv.tp_at_1pct_fp))
    return results
