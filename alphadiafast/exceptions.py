"""Exception hierarchy for AlphaDiaFast.

Numerical edge cases (too few fragments, zero norms) are reported as NaN
scores, not exceptions. The classes here cover the conditions a caller has to
act on.
"""


class AlphaDiaFastError(Exception):
    """Base class for all package errors."""


class FeatureSchemaError(AlphaDiaFastError):
    """Feature names and feature count disagree."""


class UnreliableCalibrationError(AlphaDiaFastError, ValueError):
    """An RT calibration was used where a reliable one is required."""


class ExtractionError(AlphaDiaFastError, RuntimeError):
    """Fragment extraction failed on the CPU backend."""


class GpuExtractionError(ExtractionError):
    """Fragment extraction failed on the GPU backend.

    Raised when no CUDA device is available or when a kernel launch or device
    transfer fails. The CPU backend is the fallback.
    """
