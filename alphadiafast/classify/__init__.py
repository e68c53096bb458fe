"""Linear target/decoy classifiers and their validation.

Examples
--------
>>> from alphadiafast.classify import train_lda, cross_validate
>>>
>>> clf = train_lda(pos_vectors, neg_vectors)
>>> cv = cross_validate(pos_vectors, neg_vectors, k_folds=3)
>>> print(cv.auc, cv.tp_at_1pct_fp)
"""

from .linear import (
    FIXED_LINEAR_WEIGHTS,
    ClassifierType,
    LinearClassifier,
    as_feature_matrix,
    create_fixed_linear,
    create_max_apex_temporal,
    train_lda,
    train_logistic_regression,
)
from .validation import (
    CrossValidationResult,
    RegularizationResult,
    compute_roc_metrics,
    cross_validate,
    sweep_regularization,
)

__all__ = [
    "FIXED_LINEAR_WEIGHTS",
    "ClassifierType",
    "LinearClassifier",
    "as_feature_matrix",
    "create_fixed_linear",
    "create_max_apex_temporal",
    "train_lda",
    "train_logistic_regression",
    "CrossValidationResult",
    "RegularizationResult",
    "compute_roc_metrics",
    "cross_validate",
    "sweep_regularization",
]
