"""Tab-separated export of search results and their features.

One row per precursor, columns in a fixed order: identity and RT window,
fragment counts, the score columns, classifier score and q-value, then one
``FV_<name>`` column per classifier feature. Missing values are written as
empty cells.
"""

from __future__ import annotations

import csv
import logging
import math
from pathlib import Path
from typing import Sequence, Union

from .feature_vector import FEATURE_NAMES

logger = logging.getLogger(__name__)

RESULT_COLUMNS = (
    'sequence',
    'charge',
    'precursor_mz',
    'is_decoy',
    'window_id',
    'rt_window_start',
    'rt_window_end',
    'library_rt',
    'expected_rt',
    'observed_apex_rt',
    'fragments_queried',
    'fragments_detected',
    'dot_product_score',
    'apex_score',
    'temporal_score',
    'spectral_angle_score',
    'mean_fragment_correlation',
    'min_fragment_correlation',
    'peak_apex_score',
    'peak_temporal_score',
    'has_peak_group',
    'classifier_score',
    'q_value',
)

FEATURE_COLUMNS = tuple(f'FV_{name}' for name in FEATURE_NAMES)

COLUMNS = RESULT_COLUMNS + FEATURE_COLUMNS


def _cell(value):
    if value is None:
        return ''
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, float):
        return '' if math.isnan(value) else f'{value:.6g}'
    return value


def _row(result, features) -> dict:
    q_value = result.fdr_info.q_value if result.fdr_info is not None else None
    row = {
        'sequence': result.sequence,
        'charge': result.charge,
        'precursor_mz': float(result.precursor_mz),
        'is_decoy': bool(result.is_decoy),
        'window_id': result.window_id,
        'rt_window_start': float(result.rt_window_start),
        'rt_window_end': float(result.rt_window_end),
        'library_rt': result.library_rt,
        'expected_rt': result.expected_rt,
        'observed_apex_rt': float(result.observed_apex_rt),
        'fragments_queried': result.fragments_queried,
        'fragments_detected': result.fragments_detected,
        'dot_product_score': float(result.dot_product_score),
        'apex_score': float(result.apex_score),
        'temporal_score': float(result.temporal_score),
        'spectral_angle_score': float(result.spectral_angle_score),
        'mean_fragment_correlation': float(result.mean_fragment_correlation),
        'min_fragment_correlation': float(result.min_fragment_correlation),
        'peak_apex_score': float(result.peak_apex_score),
        'peak_temporal_score': float(result.peak_temporal_score),
        'has_peak_group': result.peak_group is not None,
        'classifier_score': float(result.classifier_score),
        'q_value': q_value,
    }
    values = features.to_array()
    for column, value in zip(FEATURE_COLUMNS, values):
        row[column] = float(value)
    return {key: _cell(value) for key, value in row.items()}


def write_results_tsv(
    path: Union[str, Path],
    results: Sequence,
    features: Sequence,
) -> int:
    """Write results and their feature vectors to a TSV file.

    Parameters
    ----------
    path : str or Path
        Output file, overwritten if present
    results : sequence of DiaSearchResult
    features : sequence of DiaFeatureVector
        Parallel to ``results``

    Returns
    -------
    int
        Number of rows written

    Raises
    ------
    ValueError
        If ``results`` and ``features`` differ in length.
    """
    if len(results) != len(features):
        raise ValueError(
            f"Got {len(results)} results but {len(features)} feature vectors"
        )

    path = Path(path)
    with open(path, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=list(COLUMNS), delimiter='\t')
        writer.writeheader()
        for result, fv in zip(results, features):
            writer.writerow(_row(result, fv))

    logger.info(f"Wrote {len(results):,} rows to {path}")
    return len(results)
