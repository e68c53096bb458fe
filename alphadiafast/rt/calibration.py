"""
Robust linear RT calibration: library iRT → observed RT (minutes).

This module fits the run-specific line that maps library retention times onto
the retention times observed in one DIA run, and uses its residual spread to
size extraction windows:

- RANSAC on two-point minimal samples for a consensus inlier set
- OLS refit on the inliers
- Iterative outlier rejection with a robust (MAD-based) sigma
- R² on the final inlier set, sigma from the robust spread of its residuals

A model is *reliable* once it is backed by at least 30 anchors and reaches
R² >= 0.90. Unreliable models are still returned; callers decide whether to
trust them (see :meth:`RtCalibrationModel.require_reliable`).

Example
-------
>>> from alphadiafast.rt import fit_rt_calibration
>>> model = fit_rt_calibration(library_irt, observed_rt)
>>> if model is not None and model.is_reliable:
...     center = model.to_minutes(42.0)
...     half_width = model.get_minutes_window_half_width(k=2.0)
"""

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numba import njit

from ..exceptions import UnreliableCalibrationError

logger = logging.getLogger(__name__)

MIN_RELIABLE_ANCHORS = 30
MIN_RELIABLE_R_SQUARED = 0.90

# Scale factor turning a MAD into a Gaussian sigma estimate
MAD_TO_SIGMA = 1.4826


# ========== Numba utilities ==========

@njit
def _median(a):
    """Compute median (Numba-optimized)."""
    b = a.copy()
    b.sort()
    n = b.size
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 1:
        return b[mid]
    return 0.5 * (b[mid - 1] + b[mid])


@njit
def _robust_sigma(residuals):
    """1.4826 * MAD, a Gaussian-consistent spread that ignores outliers."""
    med = _median(residuals)
    return MAD_TO_SIGMA * _median(np.abs(residuals - med))


@njit
def _linear_fit(x, y):
    """
    Ordinary least squares: y = slope*x + intercept

    Centered closed form. ``ok`` is False when x has no variance.
    """
    n = x.size
    if n < 2:
        return 0.0, 0.0, False

    mean_x = 0.0
    mean_y = 0.0
    for i in range(n):
        mean_x += x[i]
        mean_y += y[i]
    mean_x /= n
    mean_y /= n

    num = 0.0
    den = 0.0
    for i in range(n):
        dx = x[i] - mean_x
        num += dx * (y[i] - mean_y)
        den += dx * dx

    if abs(den) < 1e-15:
        return 0.0, mean_y, False

    slope = num / den
    return slope, mean_y - slope * mean_x, True


@njit
def _r_squared(x, y, slope, intercept):
    """Coefficient of determination; 1.0 when y is constant."""
    n = x.size
    if n < 2:
        return 0.0
    mean_y = 0.0
    for i in range(n):
        mean_y += y[i]
    mean_y /= n

    ss_tot = 0.0
    ss_res = 0.0
    for i in range(n):
        dy = y[i] - mean_y
        ss_tot += dy * dy
        r = y[i] - (slope * x[i] + intercept)
        ss_res += r * r

    if ss_tot < 1e-15:
        return 1.0
    return 1.0 - ss_res / ss_tot


@njit
def _ransac_inliers(x, y, n_iterations, threshold, seed):
    """
    Largest consensus set over random two-point line hypotheses.

    Returns
    -------
    best : np.ndarray (bool)
        Inlier mask of the best hypothesis (all False if none was valid)
    best_count : int
        Number of inliers in ``best``
    """
    n = x.size
    best = np.zeros(n, dtype=np.bool_)
    best_count = 0
    if n < 2:
        return best, best_count

    np.random.seed(seed)
    candidate = np.empty(n, dtype=np.bool_)

    for _ in range(n_iterations):
        i1 = np.random.randint(0, n)
        i2 = np.random.randint(0, n)
        while i2 == i1:
            i2 = np.random.randint(0, n)

        dx = x[i2] - x[i1]
        if abs(dx) < 1e-15:
            continue

        slope = (y[i2] - y[i1]) / dx
        intercept = y[i1] - slope * x[i1]

        count = 0
        for i in range(n):
            inlier = abs(y[i] - (slope * x[i] + intercept)) <= threshold
            candidate[i] = inlier
            if inlier:
                count += 1

        if count > best_count:
            best_count = count
            best[:] = candidate

    return best, best_count


# ========== Model ==========

@dataclass(frozen=True)
class RtCalibrationModel:
    """Linear iRT → RT mapping with its residual spread.

    Attributes
    ----------
    slope, intercept : float
        ``rt_minutes = slope * irt + intercept``
    sigma_minutes : float
        Residual spread in minutes
    r_squared : float
        Fit quality on the inlier set
    anchor_count : int
        Number of anchors the final fit is based on
    """

    slope: float
    intercept: float
    sigma_minutes: float
    r_squared: float
    anchor_count: int

    def __post_init__(self):
        if self.slope == 0 or not math.isfinite(self.slope):
            raise ValueError(f"Calibration slope must be finite and non-zero, got {self.slope}")
        if not math.isfinite(self.intercept):
            raise ValueError(f"Calibration intercept must be finite, got {self.intercept}")
        if self.sigma_minutes < 0:
            raise ValueError(f"sigma_minutes must be >= 0, got {self.sigma_minutes}")
        if self.anchor_count < 0:
            raise ValueError(f"anchor_count must be >= 0, got {self.anchor_count}")

    @property
    def sigma_irt(self) -> float:
        """Residual spread expressed in iRT units."""
        return self.sigma_minutes / abs(self.slope)

    @property
    def is_reliable(self) -> bool:
        return (
            self.anchor_count >= MIN_RELIABLE_ANCHORS
            and self.r_squared >= MIN_RELIABLE_R_SQUARED
        )

    def to_minutes(self, irt):
        """Predicted RT (minutes) for library iRT values (scalar or array)."""
        return self.slope * irt + self.intercept

    def to_irt(self, minutes):
        """Inverse mapping from observed minutes back to iRT."""
        return (minutes - self.intercept) / self.slope

    def get_minutes_window_half_width(self, k: float = 3.0) -> float:
        return k * self.sigma_minutes

    def get_irt_window_half_width(self, k: float = 3.0) -> float:
        return k * self.sigma_irt

    def compute_rt_score(self, residual_irt: float) -> float:
        """Gaussian log-likelihood score -r²/(2σ²) of an iRT residual.

        Returns 0 for a zero residual and grows more negative with distance.
        A zero sigma gives -inf for any non-zero residual.
        """
        sigma = self.sigma_irt
        if sigma <= 0:
            return 0.0 if residual_irt == 0 else -math.inf
        return -(residual_irt * residual_irt) / (2.0 * sigma * sigma)

    def compute_rt_score_between(self, library_irt: float, observed_irt: float) -> float:
        return self.compute_rt_score(observed_irt - library_irt)

    def require_reliable(self) -> 'RtCalibrationModel':
        """Return self, or raise if the model should not be trusted.

        Raises
        ------
        UnreliableCalibrationError
            If fewer than 30 anchors back the fit or R² < 0.90.
        """
        if not self.is_reliable:
            raise UnreliableCalibrationError(
                f"Calibration is unreliable: {self.anchor_count} anchors "
                f"(need {MIN_RELIABLE_ANCHORS}), R²={self.r_squared:.3f} "
                f"(need {MIN_RELIABLE_R_SQUARED:.2f})"
            )
        return self

    @classmethod
    def create_provisional(
        cls,
        rt_min: float,
        rt_max: float,
        library_irt_min: float,
        library_irt_max: float,
        initial_window_irt: float = 20.0
    ) -> 'RtCalibrationModel':
        """Coarse, unfitted model for a first broad extraction pass.

        The library iRT range is stretched onto the run's RT range. Sigma is
        chosen so that the k=3 iRT half-width equals ``initial_window_irt``.
        The result is never reliable (``anchor_count == 0``).

        Examples
        --------
        >>> model = RtCalibrationModel.create_provisional(5.0, 65.0, 0.0, 100.0)
        >>> model.slope, model.intercept
        (0.6, 5.0)
        """
        irt_span = library_irt_max - library_irt_min
        rt_span = rt_max - rt_min
        if irt_span > 0 and rt_span > 0:
            slope = rt_span / irt_span
        else:
            slope = 1.0
        intercept = rt_min - slope * library_irt_min
        sigma_irt = initial_window_irt / 3.0
        return cls(
            slope=slope,
            intercept=intercept,
            sigma_minutes=sigma_irt * abs(slope),
            r_squared=0.0,
            anchor_count=0,
        )

    def __str__(self) -> str:
        text = (
            f"RT = {self.slope:.4f} * iRT + {self.intercept:.4f} "
            f"(σ={self.sigma_minutes:.3f} min, R²={self.r_squared:.4f}, "
            f"anchors={self.anchor_count})"
        )
        if not self.is_reliable:
            text += " UNRELIABLE"
        return text


# ========== Fitting ==========

@dataclass
class FitOptions:
    """Options for :func:`fit_rt_calibration`.

    Attributes
    ----------
    use_ransac : bool
        Find a consensus inlier set before the OLS fit.
    ransac_iterations : int
        Number of two-point hypotheses.
    inlier_threshold_minutes : float
        Absolute residual under which a point supports a hypothesis.
    min_inlier_fraction : float
        Consensus sets smaller than this fraction of the anchors are rejected
        and all points are used instead.
    outlier_rejection_passes : int
        Rounds of robust-sigma pruning after the refit.
    outlier_sigma_threshold : float
        Points beyond this many robust sigmas are pruned.
    min_anchors : int
        Fewer usable anchors than this gives no model at all.
    random_seed : int
        Seed for the RANSAC sampler.
    min_sigma_minutes : float
        Floor for the reported sigma, keeps windows from collapsing to zero.
    """

    use_ransac: bool = True
    ransac_iterations: int = 200
    inlier_threshold_minutes: float = 2.0
    min_inlier_fraction: float = 0.5
    outlier_rejection_passes: int = 2
    outlier_sigma_threshold: float = 3.0
    min_anchors: int = 5
    random_seed: int = 42
    min_sigma_minutes: float = 0.01


def fit_rt_calibration(
    library_x,
    observed_y,
    options: Optional[FitOptions] = None
) -> Optional[RtCalibrationModel]:
    """Fit a robust linear calibration from anchor pairs.

    Parameters
    ----------
    library_x : array-like
        Library iRT (or library RT) of each anchor
    observed_y : array-like
        Observed RT in minutes, parallel to ``library_x``
    options : FitOptions, optional
        Fitting configuration (defaults if None)

    Returns
    -------
    RtCalibrationModel or None
        None if fewer than ``options.min_anchors`` finite anchors remain or
        the library values have no spread.

    Raises
    ------
    ValueError
        If the input arrays differ in length.

    Notes
    -----
    Models with fewer than 30 anchors are returned but are not reliable.
    """
    options = options or FitOptions()

    x = np.asarray(library_x, dtype=np.float64).ravel()
    y = np.asarray(observed_y, dtype=np.float64).ravel()
    if x.size != y.size:
        raise ValueError(f"Input arrays must have the same length ({x.size} vs {y.size})")

    finite = np.isfinite(x) & np.isfinite(y)
    if not finite.all():
        logger.debug(f"Dropping {int((~finite).sum())} non-finite anchor pairs")
        x = x[finite]
        y = y[finite]

    n = x.size
    if n < max(options.min_anchors, 2):
        logger.info(f"Too few anchors for RT calibration: {n} < {options.min_anchors}")
        return None
    if np.ptp(x) == 0:
        logger.info("Library values have no spread, cannot fit RT calibration")
        return None

    active = np.ones(n, dtype=np.bool_)

    # Step 1: RANSAC consensus
    if options.use_ransac:
        inliers, n_inliers = _ransac_inliers(
            x, y,
            int(options.ransac_iterations),
            float(options.inlier_threshold_minutes),
            int(options.random_seed),
        )
        min_required = max(2, int(n * options.min_inlier_fraction))
        if n_inliers >= min_required:
            active = inliers
        else:
            warnings.warn(
                f"RANSAC consensus too small ({n_inliers}/{n} < {min_required}); "
                f"fitting on all anchors"
            )

    if active.sum() < options.min_anchors:
        return None

    # Step 2: OLS refit + robust outlier rejection
    for _ in range(options.outlier_rejection_passes):
        slope, intercept, ok = _linear_fit(x[active], y[active])
        if not ok:
            return None

        residuals = y - (slope * x + intercept)
        threshold = options.outlier_sigma_threshold * _robust_sigma(residuals[active])
        if threshold < 1e-12:
            break

        keep = active & (np.abs(residuals) <= threshold)
        n_removed = int(active.sum() - keep.sum())
        if n_removed == 0 or keep.sum() < options.min_anchors:
            break
        active = keep

    # Step 3: final fit
    xa = x[active]
    ya = y[active]
    slope, intercept, ok = _linear_fit(xa, ya)
    if not ok or slope == 0:
        return None

    residuals = ya - (slope * xa + intercept)
    sigma = max(float(_robust_sigma(residuals)), options.min_sigma_minutes)
    r_squared = float(_r_squared(xa, ya, slope, intercept))

    model = RtCalibrationModel(
        slope=float(slope),
        intercept=float(intercept),
        sigma_minutes=sigma,
        r_squared=r_squared,
        anchor_count=int(active.sum()),
    )
    logger.info(f"RT calibration fitted from {n} anchors: {model}")
    return model
