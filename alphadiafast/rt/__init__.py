"""Retention time calibration for DIA extraction windows."""

from .calibration import (
    MIN_RELIABLE_ANCHORS,
    MIN_RELIABLE_R_SQUARED,
    FitOptions,
    RtCalibrationModel,
    fit_rt_calibration,
)

__all__ = [
    'MIN_RELIABLE_ANCHORS',
    'MIN_RELIABLE_R_SQUARED',
    'FitOptions',
    'RtCalibrationModel',
    'fit_rt_calibration',
]
