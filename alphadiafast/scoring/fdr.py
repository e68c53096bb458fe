"""Target-decoy q-values and the iterative semi-supervised FDR loop.

Q-values
--------
Results are ranked by classifier score (descending). At each rank the FDR
estimate is ``decoys / targets`` seen so far (1.0 before the first target).
Q-values are the running minimum of that estimate taken from the low-score
end, so they never decrease with falling score, and are capped at 1.

Iterative FDR
-------------
:class:`FdrEngine` is an explicit state machine::

    INITIALIZING -> TRAINING -> SCORING -> TRAINING -> ... -> terminal

Terminal states are CONVERGED, MAX_ITERATIONS_REACHED and
INSUFFICIENT_TRAINING_DATA. Each TRAINING step selects a positive pool
(pseudo-labelled confident targets) and a negative pool (decoys by default)
and fits a logistic regression; each SCORING step rescores every result,
recomputes q-values and records :class:`IterationDiagnostics`. Entering a
terminal state always rescores with the last classifier.

Examples
--------
>>> engine = FdrEngine(results, features)
>>> while not engine.is_finished:
...     engine.step()
>>> fdr = engine.result()
>>> print(fdr.final_state, fdr.ids_at_1pct)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence

import numpy as np
from numba import njit

from ..classify.linear import (
    LinearClassifier,
    as_feature_matrix,
    create_max_apex_temporal,
    train_logistic_regression,
)
from ..classify.validation import compute_roc_metrics
from ..config import FdrHyperparameters, NegativeSource
from .results import FdrInfo

logger = logging.getLogger(__name__)

DEFAULT_Q_THRESHOLD = 0.01


# ========== Q-values ==========

@njit
def _q_value_core(sorted_is_decoy: np.ndarray):
    """Q-values and cumulative counts for decoy flags in rank order."""
    n = len(sorted_is_decoy)
    q_values = np.empty(n, dtype=np.float64)
    cum_targets = np.empty(n, dtype=np.int64)
    cum_decoys = np.empty(n, dtype=np.int64)

    t = 0
    d = 0
    for rank in range(n):
        if sorted_is_decoy[rank]:
            d += 1
        else:
            t += 1
        cum_targets[rank] = t
        cum_decoys[rank] = d
        q_values[rank] = d / t if t > 0 else 1.0

    running_min = 1.0
    for rank in range(n - 1, -1, -1):
        if q_values[rank] < running_min:
            running_min = q_values[rank]
        q_values[rank] = running_min

    return q_values, cum_targets, cum_decoys


def _rank(scores: np.ndarray) -> np.ndarray:
    """Descending, stable; NaN scores rank last."""
    return np.argsort(-scores, kind='stable')


def calculate_q_values(scores: np.ndarray, is_decoy: np.ndarray) -> np.ndarray:
    """Q-value of every entry, in input order.

    Parameters
    ----------
    scores : np.ndarray
        Higher is better
    is_decoy : np.ndarray
        Boolean decoy flags

    Returns
    -------
    np.ndarray
        float64 q-values in [0, 1]

    Examples
    --------
    >>> scores = np.array([10.0, 9.0, 8.0, 7.0])
    >>> is_decoy = np.array([False, False, True, False])
    >>> calculate_q_values(scores, is_decoy)
    array([0.        , 0.        , 0.33333333, 0.33333333])
    """
    scores = np.asarray(scores, dtype=np.float64)
    is_decoy = np.asarray(is_decoy, dtype=np.bool_)
    if len(scores) != len(is_decoy):
        raise ValueError(f"Got {len(scores)} scores but {len(is_decoy)} decoy flags")

    order = _rank(scores)
    sorted_q, _, _ = _q_value_core(is_decoy[order])
    q_values = np.empty_like(sorted_q)
    q_values[order] = sorted_q
    return q_values


def compute_q_values(results: Sequence, q_threshold: float = DEFAULT_Q_THRESHOLD) -> int:
    """Rank results by ``classifier_score`` and set their ``fdr_info``.

    Returns
    -------
    int
        Number of targets with q-value <= ``q_threshold``
    """
    n = len(results)
    if n == 0:
        return 0
    scores = np.array([r.classifier_score for r in results], dtype=np.float64)
    is_decoy = np.array([r.is_decoy for r in results], dtype=np.bool_)

    order = _rank(scores)
    q_values, cum_targets, cum_decoys = _q_value_core(is_decoy[order])

    ids = 0
    for rank in range(n):
        result = results[order[rank]]
        q = min(float(q_values[rank]), 1.0)
        result.fdr_info = FdrInfo(q, int(cum_targets[rank]), int(cum_decoys[rank]))
        if not result.is_decoy and q <= q_threshold:
            ids += 1
    return ids


def summarize_q_values(q_values: np.ndarray, is_decoy: np.ndarray) -> Dict[str, float]:
    """Identification counts at 1%, 5% and 10% FDR.

    Returns
    -------
    dict
        ``n_targets``, ``n_decoys``, ``decoy_fraction`` and
        ``n_targets_fdr01`` / ``n_targets_fdr05`` / ``n_targets_fdr10``
    """
    q_values = np.asarray(q_values, dtype=np.float64)
    is_decoy = np.asarray(is_decoy, dtype=np.bool_)
    n_decoys = int(np.sum(is_decoy))
    n_targets = len(is_decoy) - n_decoys

    stats = {
        'n_targets': n_targets,
        'n_decoys': n_decoys,
        'decoy_fraction': n_decoys / len(is_decoy) if len(is_decoy) else 0.0,
    }
    for threshold in (0.01, 0.05, 0.10):
        key = f"n_targets_fdr{int(round(threshold * 100)):02d}"
        stats[key] = int(np.sum((q_values <= threshold) & ~is_decoy))
    return stats


# ========== Iterative FDR ==========

class FdrState(Enum):
    INITIALIZING = "initializing"
    TRAINING = "training"
    SCORING = "scoring"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    INSUFFICIENT_TRAINING_DATA = "insufficient_training_data"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    FdrState.CONVERGED,
    FdrState.MAX_ITERATIONS_REACHED,
    FdrState.INSUFFICIENT_TRAINING_DATA,
})


@dataclass
class IterationDiagnostics:
    """Score distributions and classifier state after one iteration."""

    iteration: int
    positive_training_count: int
    negative_training_count: int
    target_score_mean: float
    target_score_median: float
    target_score_q25: float
    target_score_q75: float
    decoy_score_mean: float
    decoy_score_median: float
    decoy_score_q25: float
    decoy_score_q75: float
    separation: float
    auc: float
    ids_at_1pct: int
    weight_change: float
    weights: np.ndarray
    bias: float


@dataclass
class FdrResult:
    classifier: Optional[LinearClassifier]
    iterations_completed: int
    ids_at_1pct: int
    diagnostics: List[IterationDiagnostics] = field(default_factory=list)
    final_state: FdrState = FdrState.MAX_ITERATIONS_REACHED


def _quartiles(scores: np.ndarray):
    """(mean, median, q25, q75) by rank position in the sorted scores."""
    if len(scores) == 0:
        return 0.0, 0.0, 0.0, 0.0
    s = np.sort(scores)
    n = len(s)
    return float(s.mean()), float(s[n // 2]), float(s[n // 4]), float(s[3 * n // 4])


class FdrEngine:
    """Iterative target-decoy classifier training.

    Parameters
    ----------
    results : sequence of DiaSearchResult
        Updated in place: ``classifier_score`` and ``fdr_info``
    features : sequence of DiaFeatureVector or (n, 13) array
        Parallel to ``results``
    hyperparameters : FdrHyperparameters, optional

    Raises
    ------
    ValueError
        On empty input, a length mismatch, or when there are no targets
        or no decoys.
    """

    def __init__(self, results: Sequence, features, hyperparameters: Optional[FdrHyperparameters] = None):
        if results is None or len(results) == 0:
            raise ValueError("Results cannot be empty")
        if features is None or len(features) != len(results):
            raise ValueError(
                f"Features must be parallel to results "
                f"({0 if features is None else len(features)} vs {len(results)})"
            )
        self.hyperparameters = (hyperparameters or FdrHyperparameters()).validate()
        self.results = results
        self.matrix = as_feature_matrix(features)

        is_decoy = np.array([r.is_decoy for r in results], dtype=np.bool_)
        self.target_indices = np.nonzero(~is_decoy)[0]
        self.decoy_indices = np.nonzero(is_decoy)[0]
        if len(self.decoy_indices) == 0:
            raise ValueError("No decoy results found, cannot compute FDR")
        if len(self.target_indices) == 0:
            raise ValueError("No target results found")

        self.state = FdrState.INITIALIZING
        self.iteration = 0
        self.classifier: Optional[LinearClassifier] = None
        self.diagnostics: List[IterationDiagnostics] = []
        self.ids_at_1pct = 0
        self._scores = np.full(len(results), np.nan)
        self._positives = None
        self._negatives = None
        self._previous_weights = None
        self._previous_ids = 0

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    def step(self) -> FdrState:
        """Perform one transition and return the new state."""
        if self.state is FdrState.INITIALIZING:
            self.iteration = 1
            self.state = FdrState.TRAINING
        elif self.state is FdrState.TRAINING:
            self._train()
        elif self.state is FdrState.SCORING:
            self._score_and_check()
        return self.state

    def run(self) -> FdrResult:
        while not self.is_finished:
            self.step()
        return self.result()

    def result(self) -> FdrResult:
        return FdrResult(
            classifier=self.classifier,
            iterations_completed=len(self.diagnostics),
            ids_at_1pct=self.ids_at_1pct,
            diagnostics=list(self.diagnostics),
            final_state=self.state,
        )

    # ----- transitions -----

    def _train(self):
        hp = self.hyperparameters
        positives = self._select_positives()
        negatives = self._select_negatives(len(positives))
        if len(positives) < hp.min_training_pool or len(negatives) < hp.min_training_pool:
            logger.info(
                f"Iteration {self.iteration}: training pools too small "
                f"({len(positives)} positives, {len(negatives)} negatives)"
            )
            self._finish(FdrState.INSUFFICIENT_TRAINING_DATA)
            return

        self._positives = positives
        self._negatives = negatives
        self.classifier = train_logistic_regression(
            self.matrix[positives],
            self.matrix[negatives],
            learning_rate=hp.learning_rate,
            l2_lambda=hp.l2_lambda,
            max_epochs=hp.max_epochs,
            batch_size=hp.batch_size,
            seed=hp.seed,
        )
        self.state = FdrState.SCORING

    def _score_and_check(self):
        hp = self.hyperparameters
        ids = self._apply_classifier(self.classifier)
        weight_change = self.classifier.weight_change_l2(self._previous_weights)
        diag = self._diagnostics(ids, weight_change)
        self.diagnostics.append(diag)
        logger.debug(
            f"Iteration {self.iteration}: {ids} IDs at 1% FDR, AUC={diag.auc:.4f}, "
            f"separation={diag.separation:.4f}, weight change={weight_change:.4f}"
        )

        converged = False
        if self.iteration > 1:
            if ids == self._previous_ids:
                id_change = 0.0
            elif self._previous_ids > 0:
                id_change = abs(ids - self._previous_ids) / self._previous_ids
            else:
                id_change = float('inf')
            converged = (weight_change < hp.convergence_threshold
                         and id_change < hp.id_count_convergence_threshold)

        self._previous_weights = self.classifier.weights.copy()
        self._previous_ids = ids

        if converged:
            self._finish(FdrState.CONVERGED)
        elif self.iteration >= hp.max_iterations:
            self._finish(FdrState.MAX_ITERATIONS_REACHED)
        else:
            self.iteration += 1
            self.state = FdrState.TRAINING

    def _finish(self, state: FdrState):
        if self.classifier is None:
            self.ids_at_1pct = self._apply_classifier(create_max_apex_temporal())
        else:
            self.ids_at_1pct = self._apply_classifier(self.classifier)
        self.state = state
        logger.info(
            f"FDR finished in state {state.name} after {len(self.diagnostics)} "
            f"iteration(s): {self.ids_at_1pct:,} targets at "
            f"{self.hyperparameters.q_value_threshold:.0%} FDR"
        )

    # ----- helpers -----

    def _apply_classifier(self, classifier: LinearClassifier) -> int:
        self._scores = classifier.score_matrix(self.matrix)
        for result, score in zip(self.results, self._scores):
            result.classifier_score = float(score)
        return compute_q_values(self.results, self.hyperparameters.q_value_threshold)

    def _current_scores(self) -> np.ndarray:
        if self.classifier is None:
            return np.maximum(self.matrix[:, 0], self.matrix[:, 1])
        return self._scores

    def _top_targets(self, scores: np.ndarray) -> np.ndarray:
        targets = self.target_indices
        order = np.argsort(scores[targets], kind='stable')
        cutoff = int(len(targets) * (1.0 - self.hyperparameters.positive_quantile))
        return targets[order[cutoff:]]

    def _select_positives(self) -> np.ndarray:
        hp = self.hyperparameters
        if self.iteration == 1 or self.classifier is None:
            return self._top_targets(self._current_scores())

        confident = np.array(
            [i for i in self.target_indices
             if self.results[i].fdr_info is not None
             and self.results[i].fdr_info.q_value <= hp.q_value_threshold],
            dtype=np.int64,
        )
        if len(confident) >= hp.min_training_pool:
            return confident
        logger.debug(
            f"Iteration {self.iteration}: only {len(confident)} confident targets, "
            f"using top {hp.positive_quantile:.0%} by score"
        )
        return self._top_targets(self._current_scores())

    def _select_negatives(self, n_positives: int) -> np.ndarray:
        hp = self.hyperparameters
        if hp.negative_source is NegativeSource.BOTTOM_QUANTILE:
            targets = self.target_indices
            order = np.argsort(self._current_scores()[targets], kind='stable')
            return targets[order[:int(len(targets) * hp.positive_quantile)]]

        decoys = self.decoy_indices
        if len(decoys) <= 2 * n_positives:
            return decoys
        sample_size = min(max(n_positives, hp.min_decoy_sample), len(decoys))
        rng = np.random.default_rng(hp.seed)
        return rng.choice(decoys, size=sample_size, replace=False)

    def _diagnostics(self, ids: int, weight_change: float) -> IterationDiagnostics:
        target_scores = self._scores[self.target_indices]
        decoy_scores = self._scores[self.decoy_indices]
        t_mean, t_median, t_q25, t_q75 = _quartiles(target_scores)
        d_mean, d_median, d_q25, d_q75 = _quartiles(decoy_scores)
        is_target = np.ones(len(self._scores), dtype=bool)
        is_target[self.decoy_indices] = False
        auc, _ = compute_roc_metrics(self._scores, is_target)

        return IterationDiagnostics(
            iteration=self.iteration,
            positive_training_count=len(self._positives),
            negative_training_count=len(self._negatives),
            target_score_mean=t_mean,
            target_score_median=t_median,
            target_score_q25=t_q25,
            target_score_q75=t_q75,
            decoy_score_mean=d_mean,
            decoy_score_median=d_median,
            decoy_score_q25=d_q25,
            decoy_score_q75=d_q75,
            separation=t_mean - d_mean,
            auc=auc,
            ids_at_1pct=ids,
            weight_change=weight_change,
            weights=self.classifier.weights.copy(),
            bias=self.classifier.bias,
        )


def run_iterative_fdr(
    results: Sequence,
    features,
    max_iterations: Optional[int] = None,
    convergence_threshold: Optional[float] = None,
    id_count_convergence_threshold: Optional[float] = None,
    hyperparameters: Optional[FdrHyperparameters] = None,
) -> FdrResult:
    """Run :class:`FdrEngine` to completion.

    The three keyword overrides replace the matching fields of
    ``hyperparameters`` (defaults 5, 0.01 and 0.01).
    """
    hp = hyperparameters or FdrHyperparameters()
    overrides = {}
    if max_iterations is not None:
        overrides['max_iterations'] = max_iterations
    if convergence_threshold is not None:
        overrides['convergence_threshold'] = convergence_threshold
    if id_count_convergence_threshold is not None:
        overrides['id_count_convergence_threshold'] = id_count_convergence_threshold
    if overrides:
        hp = replace(hp, **overrides)
    return FdrEngine(results, features, hp).run()
