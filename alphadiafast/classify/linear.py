"""Linear classifiers over the 13-feature DIA vector.

All classifier kinds share one representation, :class:`LinearClassifier`:
a type tag, a weight vector, a bias and (for trained models) the
standardization statistics of the training data. Scoring is the same for
every trained kind:

    z = (x - mean) / std          (0 where std <= 1e-8, NaN features -> 0)
    score = bias + w . z [+ w_13 * z_0 * z_3]

The optional interaction term multiplies the standardized ApexScore and
MeanFragCorr.

Kinds
-----
- MAX_APEX_TEMPORAL: max(ApexScore, TemporalScore), no weights used
- FIXED_LINEAR_COMBINATION: hand-set weights on raw features
- LDA: Fisher discriminant on standardized features
- LOGISTIC_REGRESSION: mini-batch SGD with L2 penalty

Examples
--------
>>> clf = train_logistic_regression(pos_vectors, neg_vectors, l2_lambda=5e-3)
>>> scores = clf.score(features_to_matrix(all_vectors))
>>> print(clf.describe_weights())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

import numpy as np
from numba import njit

from ..features.feature_vector import (
    FEATURE_COUNT,
    FEATURE_NAMES,
    DiaFeatureVector,
    features_to_matrix,
)

logger = logging.getLogger(__name__)

MIN_STD = 1e-8
SIGMOID_CLAMP = 20.0
LDA_RIDGE_PER_SAMPLE = 1e-4
INTERACTION_NAME = "ApexScore×MeanFragCorr"

# ApexScore, TemporalScore, SpectralAngle, MeanFragCorr, MinFragCorr,
# FragDetRate, LogTotalIntensity, IntensityCV, MedianXicDepth, XicDepthCV,
# TimePointsUsed, RtDeviationMinutes, RtDeviationSquared
FIXED_LINEAR_WEIGHTS = (
    0.30, 0.20, 0.0, 0.20, 0.05,
    0.08, 0.03, -0.04, 0.02, -0.02,
    0.02, -0.05, -0.02,
)


class ClassifierType(Enum):
    MAX_APEX_TEMPORAL = "max_apex_temporal"
    FIXED_LINEAR_COMBINATION = "fixed_linear_combination"
    LDA = "lda"
    LOGISTIC_REGRESSION = "logistic_regression"


FeatureInput = Union[DiaFeatureVector, Sequence[DiaFeatureVector], np.ndarray]


def as_feature_matrix(features: FeatureInput) -> np.ndarray:
    """Coerce vectors, a single row or a matrix to an (n, 13) float64 array.

    NaN entries are replaced by 0.
    """
    if isinstance(features, DiaFeatureVector):
        matrix = features.to_array(np.float64)[np.newaxis, :]
    elif isinstance(features, np.ndarray):
        matrix = np.atleast_2d(features).astype(np.float64)
    else:
        matrix = features_to_matrix(list(features)).astype(np.float64)

    if matrix.ndim != 2 or (matrix.shape[0] > 0 and matrix.shape[1] < FEATURE_COUNT):
        raise ValueError(
            f"Expected feature rows with {FEATURE_COUNT} columns, got shape {matrix.shape}"
        )
    matrix = matrix[:, :FEATURE_COUNT]
    matrix[np.isnan(matrix)] = 0.0
    return matrix


def _standardize(matrix: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
    usable = stds > MIN_STD
    safe = np.where(usable, stds, 1.0)
    z = (matrix - means) / safe
    z[:, ~usable] = 0.0
    return z


def _population_stats(matrix: np.ndarray):
    means = matrix.mean(axis=0)
    stds = matrix.std(axis=0)
    stds[stds <= 0] = MIN_STD
    return means, stds


def _with_interaction(z: np.ndarray) -> np.ndarray:
    return np.column_stack([z, z[:, 0] * z[:, 3]])


@dataclass(frozen=True, eq=False)
class LinearClassifier:
    """A linear scoring function over DIA feature vectors.

    Parameters
    ----------
    classifier_type : ClassifierType
    weights : np.ndarray
        13 weights, or 14 when ``use_interaction`` is set
    bias : float
    feature_means, feature_stds : np.ndarray, optional
        Standardization statistics; raw features are used when absent
    use_interaction : bool
        Add the ApexScore x MeanFragCorr term
    """

    classifier_type: ClassifierType
    weights: np.ndarray
    bias: float = 0.0
    feature_means: Optional[np.ndarray] = None
    feature_stds: Optional[np.ndarray] = None
    use_interaction: bool = False

    def __post_init__(self):
        expected = FEATURE_COUNT + 1 if self.use_interaction else FEATURE_COUNT
        if len(self.weights) != expected:
            raise ValueError(f"Expected {expected} weights, got {len(self.weights)}")
        if (self.feature_means is None) != (self.feature_stds is None):
            raise ValueError("feature_means and feature_stds must be given together")

    def score(self, features: FeatureInput):
        """Score one vector/row (returns float) or many (returns an array)."""
        single = isinstance(features, DiaFeatureVector) or (
            isinstance(features, np.ndarray) and features.ndim == 1
        )
        scores = self.score_matrix(as_feature_matrix(features))
        return float(scores[0]) if single else scores

    def score_matrix(self, matrix: np.ndarray) -> np.ndarray:
        """Score an already coerced (n, 13) float64 matrix."""
        if self.classifier_type is ClassifierType.MAX_APEX_TEMPORAL:
            return np.maximum(matrix[:, 0], matrix[:, 1])

        z = matrix
        if self.feature_means is not None:
            z = _standardize(matrix, self.feature_means, self.feature_stds)
        scores = self.bias + z @ self.weights[:FEATURE_COUNT]
        if self.use_interaction:
            scores = scores + self.weights[FEATURE_COUNT] * z[:, 0] * z[:, 3]
        return scores

    def weight_norm_l2(self) -> float:
        return float(np.sqrt(np.sum(self.weights ** 2)))

    def weight_change_l2(self, previous_weights: Optional[np.ndarray]) -> float:
        """Relative change ||w - w_prev|| / ||w_prev||.

        Returns inf without previous weights, on a length mismatch, or when
        the previous weights are (near) zero.
        """
        if previous_weights is None or len(previous_weights) != len(self.weights):
            return float('inf')
        previous = np.asarray(previous_weights, dtype=np.float64)
        old_sq = float(np.sum(previous ** 2))
        if old_sq <= 1e-12:
            return float('inf')
        diff_sq = float(np.sum((self.weights - previous) ** 2))
        return float(np.sqrt(diff_sq) / np.sqrt(old_sq))

    def describe_weights(self) -> str:
        """Human-readable weight table sorted by absolute weight."""
        names = list(FEATURE_NAMES)
        if self.use_interaction:
            names.append(INTERACTION_NAME)
        order = np.argsort(-np.abs(self.weights), kind='stable')

        lines = [
            f"Classifier: {self.classifier_type.name}",
            f"Bias: {self.bias:.6f}",
        ]
        if self.use_interaction:
            lines.append(f"Interaction: {INTERACTION_NAME} (enabled)")
        lines.append("Feature weights (sorted by |weight|):")
        for i in order:
            lines.append(f"  {self.weights[i]:+9.4f}  {names[i]}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"LinearClassifier({self.classifier_type.name}, "
            f"|w|={self.weight_norm_l2():.4f}, bias={self.bias:.4f})"
        )


def create_max_apex_temporal() -> LinearClassifier:
    """Baseline: max(ApexScore, TemporalScore)."""
    return LinearClassifier(ClassifierType.MAX_APEX_TEMPORAL, np.zeros(FEATURE_COUNT))


def create_fixed_linear() -> LinearClassifier:
    """Hand-tuned weights on raw (unstandardized) features."""
    return LinearClassifier(
        ClassifierType.FIXED_LINEAR_COMBINATION,
        np.array(FIXED_LINEAR_WEIGHTS, dtype=np.float64),
    )


def _require_pools(pos: np.ndarray, neg: np.ndarray) -> None:
    if len(pos) == 0 or len(neg) == 0:
        raise ValueError(
            f"Training needs positives and negatives, got {len(pos)} and {len(neg)}"
        )


def _cholesky_solve(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve a x = b for symmetric a, falling back to the diagonal."""
    try:
        lower = np.linalg.cholesky(a)
    except np.linalg.LinAlgError:
        diag = np.diag(a)
        out = np.zeros_like(b)
        ok = diag > 1e-10
        out[ok] = b[ok] / diag[ok]
        return out
    y = np.linalg.solve(lower, b)
    return np.linalg.solve(lower.T, y)


def train_lda(positives: FeatureInput, negatives: FeatureInput) -> LinearClassifier:
    """Fisher linear discriminant on globally standardized features.

    Parameters
    ----------
    positives, negatives : feature vectors or (n, 13) arrays

    Returns
    -------
    LinearClassifier
        Unit-length weights; the bias puts the decision threshold midway
        between the projected class means.

    Notes
    -----
    The within-class scatter gets a ridge of ``1e-4 * N`` on its diagonal.
    If it is still not positive definite, each weight is solved from the
    diagonal alone.
    """
    pos = as_feature_matrix(positives)
    neg = as_feature_matrix(negatives)
    _require_pools(pos, neg)

    means, stds = _population_stats(np.vstack([pos, neg]))
    zp = _standardize(pos, means, stds)
    zn = _standardize(neg, means, stds)
    mean_pos = zp.mean(axis=0)
    mean_neg = zn.mean(axis=0)

    dp = zp - mean_pos
    dn = zn - mean_neg
    scatter = dp.T @ dp + dn.T @ dn
    scatter[np.diag_indices_from(scatter)] += LDA_RIDGE_PER_SAMPLE * (len(pos) + len(neg))

    weights = _cholesky_solve(scatter, mean_pos - mean_neg)
    norm = np.sqrt(np.sum(weights ** 2))
    if norm > 1e-8:
        weights = weights / norm
    bias = -float(weights @ ((mean_pos + mean_neg) / 2.0))

    return LinearClassifier(ClassifierType.LDA, weights, bias, means, stds)


# ========== Logistic regression ==========

@njit
def _sigmoid(x):
    if x > SIGMOID_CLAMP:
        return 1.0
    if x < -SIGMOID_CLAMP:
        return 0.0
    return 1.0 / (1.0 + np.exp(-x))


@njit
def _sgd_logistic(x, y, learning_rate, l2_lambda, max_epochs, batch_size, seed):
    """Mini-batch gradient descent; bias is not regularized."""
    np.random.seed(seed)
    n, d = x.shape
    weights = np.zeros(d, dtype=np.float64)
    bias = 0.0
    order = np.arange(n)
    grad = np.empty(d, dtype=np.float64)

    for _ in range(max_epochs):
        for i in range(n - 1, 0, -1):
            j = np.random.randint(0, i + 1)
            tmp = order[i]
            order[i] = order[j]
            order[j] = tmp

        for start in range(0, n, batch_size):
            end = min(start + batch_size, n)
            grad[:] = 0.0
            grad_bias = 0.0
            for k in range(start, end):
                row = order[k]
                z = bias
                for j in range(d):
                    z += weights[j] * x[row, j]
                error = _sigmoid(z) - y[row]
                for j in range(d):
                    grad[j] += error * x[row, j]
                grad_bias += error

            inv = 1.0 / (end - start)
            for j in range(d):
                weights[j] -= learning_rate * (grad[j] * inv + l2_lambda * weights[j])
            bias -= learning_rate * grad_bias * inv

    return weights, bias


def train_logistic_regression(
    positives: FeatureInput,
    negatives: FeatureInput,
    learning_rate: float = 0.01,
    l2_lambda: float = 0.001,
    max_epochs: int = 200,
    batch_size: int = 256,
    use_interaction: bool = False,
    seed: int = 42,
) -> LinearClassifier:
    """L2-regularized logistic regression trained by mini-batch SGD.

    Parameters
    ----------
    positives, negatives : feature vectors or (n, 13) arrays
        Labelled 1 and 0
    learning_rate : float
    l2_lambda : float
        Penalty on the weights (not the bias)
    max_epochs : int
        Full passes; the sample order is reshuffled every epoch
    batch_size : int
    use_interaction : bool
        Learn a 14th weight for standardized ApexScore x MeanFragCorr
    seed : int
        Shuffle seed; training is deterministic for a given seed

    Returns
    -------
    LinearClassifier

    Performance
    -----------
    ~0.1 s for 20k samples x 300 epochs (after JIT warm-up).
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if max_epochs < 0:
        raise ValueError(f"max_epochs must be >= 0, got {max_epochs}")
    pos = as_feature_matrix(positives)
    neg = as_feature_matrix(negatives)
    _require_pools(pos, neg)

    means, stds = _population_stats(np.vstack([pos, neg]))
    x = _standardize(np.vstack([pos, neg]), means, stds)
    if use_interaction:
        x = _with_interaction(x)
    y = np.concatenate([np.ones(len(pos)), np.zeros(len(neg))])

    weights, bias = _sgd_logistic(
        np.ascontiguousarray(x), y, float(learning_rate), float(l2_lambda),
        int(max_epochs), int(batch_size), int(seed),
    )
    logger.debug(
        f"Trained logistic regression on {len(pos)}+{len(neg)} samples, "
        f"lambda={l2_lambda}, |w|={np.linalg.norm(weights):.4f}"
    )
    return LinearClassifier(
        ClassifierType.LOGISTIC_REGRESSION, weights, float(bias), means, stds,
        use_interaction=use_interaction,
    )
