"""
In-process regression service.

Provides the statistical fits the matching engine depends on:
- ordinary and robust (Huber) linear regression
- modal regression: a polynomial fit that tracks the densest band of a noisy
  scatter, found by iterating kernel-weighted least squares (modal EM) from
  quantile-regression and random-subset starts and keeping the solution whose
  residual density peaks highest at zero
- EM for a bivariate normal (true matches) plus uniform (false matches)
  mixture over match errors
- leverage / studentized-residual outlier pruning

Every solver call runs under a timeout. Timeouts, solver exceptions and
non-finite output are raised as SolverFailureError so that callers can skip
the affected run instead of aborting a whole job.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass

import numpy as np
from numpy.polynomial import Polynomial
from scipy import stats
from sklearn.linear_model import HuberRegressor, QuantileRegressor

from .exceptions import InsufficientDataError, SolverFailureError

logger = logging.getLogger(__name__)

# Solver calls that take longer than this (seconds) fail
DEFAULT_SOLVER_TIMEOUT_SECONDS = 900.0

# Modal regression needs this many points to be trusted
DEFAULT_MODAL_MIN_POINTS = 85

# Quantiles whose regression lines seed the modal EM
DEFAULT_MODAL_QUANTILES = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9)

# Pruning defaults; tuned on historical data and worth re-tuning per instrument
DEFAULT_LEVERAGE_NUMERATOR = 4.0
DEFAULT_MAX_STUDENTIZED_RESIDUAL = 2.0

MIN_EM_POINTS = 10
_MIN_SIGMA = 1e-9

# Modal EM: pilot kernel width as a fraction of std(y), halving schedule from
# std(y) down to it, and a floor on the final width for exact fits
_MODAL_PILOT_FRACTION = 0.1
_MODAL_ANNEAL_FACTOR = 0.5
_MIN_MODAL_BANDWIDTH_FRACTION = 1e-6
_MODAL_MAX_ITERATIONS = 200
_MODAL_TOLERANCE = 1e-8
_MODAL_RANDOM_STARTS = 50
_MODAL_REFINED_CANDIDATES = 5
_MODAL_SEED = 0


@dataclass
class MixtureFitResult:
    """Result of the normal + uniform EM fit."""
    probabilities: np.ndarray         # Posterior P(true) per input point
    mu_x: float
    mu_y: float
    sigma_x: float
    sigma_y: float
    proportion: float                 # Fitted fraction of true matches
    converged: bool
    n_iterations: int
    ks_stat_x: float = float('nan')   # KS statistic of x errors vs the fitted normal
    ks_pvalue_x: float = float('nan')
    ks_stat_y: float = float('nan')
    ks_pvalue_y: float = float('nan')

    def as_dict(self) -> dict:
        return {
            'mu_x': self.mu_x,
            'mu_y': self.mu_y,
            'sigma_x': self.sigma_x,
            'sigma_y': self.sigma_y,
            'proportion': self.proportion,
            'converged': self.converged,
            'n_iterations': self.n_iterations,
            'ks_stat_x': self.ks_stat_x,
            'ks_pvalue_x': self.ks_pvalue_x,
            'ks_stat_y': self.ks_stat_y,
            'ks_pvalue_y': self.ks_pvalue_y,
        }


# ============================================================================
# Polynomial helpers
# ============================================================================

def map_value_using_coefficients(coefficients, x):
    """Evaluate c0 + c1·x + c2·x² + ... (scalar or array)."""
    result = np.polynomial.polynomial.polyval(x, np.asarray(coefficients, dtype=float))
    return float(result) if np.ndim(result) == 0 else result


def predict_x_from_y(coefficients, y: float) -> float:
    """Invert a linear map y = c0 + c1·x."""
    if len(coefficients) != 2:
        raise ValueError("Only linear maps can be inverted")
    intercept, slope = coefficients
    if slope == 0:
        raise ValueError("Cannot invert a map with zero slope")
    return (y - intercept) / slope


def _scale(x: np.ndarray) -> tuple[float, float]:
    center = float(np.mean(x))
    scale = float(np.std(x))
    return center, scale if scale > 0 else 1.0


def _design(x: np.ndarray, degree: int, center: float, scale: float) -> np.ndarray:
    z = (x - center) / scale
    return np.column_stack([z ** p for p in range(1, degree + 1)])


def _to_raw_basis(scaled_coefficients, center: float, scale: float, degree: int) -> np.ndarray:
    """Rewrite a polynomial in z = (x − center)/scale as a polynomial in x."""
    z_of_x = Polynomial([-center / scale, 1.0 / scale])
    raw = Polynomial(scaled_coefficients)(z_of_x).coef
    padded = np.zeros(degree + 1)
    padded[:min(len(raw), degree + 1)] = raw[:degree + 1]
    return padded


# ============================================================================
# Outlier pruning
# ============================================================================

def leverages(x) -> np.ndarray:
    """Leverage of each point of a simple linear regression on x."""
    x = np.asarray(x, dtype=float)
    n = len(x)
    sxx = float(np.sum((x - x.mean()) ** 2))
    if sxx == 0:
        return np.full(n, 1.0 / n)
    return 1.0 / n + (x - x.mean()) ** 2 / sxx


def studentized_residuals(x, residuals, point_leverages=None) -> np.ndarray:
    """Residuals scaled by the error estimate (n − 2 df) and sqrt(1 + 1/n + h)."""
    x = np.asarray(x, dtype=float)
    residuals = np.asarray(residuals, dtype=float)
    n = len(x)
    if point_leverages is None:
        point_leverages = leverages(x)
    if n <= 2:
        return np.zeros(n)
    sigma = np.sqrt(np.sum(residuals ** 2) / (n - 2))
    if sigma == 0:
        return np.zeros(n)
    return residuals / sigma / np.sqrt(1.0 + 1.0 / n + np.asarray(point_leverages))


def linear_fit(x, y, weights=None) -> tuple[float, float]:
    """Least-squares (intercept, slope), optionally weighting each squared residual."""
    w = None if weights is None else np.sqrt(np.asarray(weights, dtype=float))
    slope, intercept = np.polyfit(np.asarray(x, dtype=float), np.asarray(y, dtype=float), 1, w=w)
    return float(intercept), float(slope)


def symmetric_linear_fit(x, y) -> tuple[float, float]:
    """Average of the y-on-x fit and the inverted x-on-y fit.

    Cancels the attenuation bias of a one-directional fit when x and y are
    both noisy and positively related.
    """
    intercept, slope = linear_fit(x, y)
    inv_intercept, inv_slope = linear_fit(y, x)
    if inv_slope == 0:
        return intercept, slope
    return (intercept - inv_intercept / inv_slope) / 2, (slope + 1.0 / inv_slope) / 2


def select_low_leverage_and_studentized_residual(
    x,
    y,
    leverage_numerator: float = DEFAULT_LEVERAGE_NUMERATOR,
    max_studentized_residual: float = DEFAULT_MAX_STUDENTIZED_RESIDUAL,
    n_passes: int = 1,
    assume_positive_correlation: bool = False,
) -> np.ndarray:
    """Indices of points that survive leverage then studentized-residual pruning.

    Points with leverage >= leverage_numerator / n are dropped first. Then, for
    each pass, a least-squares line is fit to the survivors and points whose absolute
    studentized residual exceeds the cutoff are dropped; passes stop early when
    nothing is removed. With ``assume_positive_correlation`` the line is the
    symmetric fit, which removes the attenuation bias of a one-way fit.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n = len(x)
    if n < 3:
        return np.arange(n)

    h = leverages(x)
    kept = np.flatnonzero(h < leverage_numerator / n)
    logger.debug(f"Leverage pruning: {len(kept)} of {n} kept (numerator {leverage_numerator})")

    for _ in range(n_passes):
        if len(kept) < 3:
            break
        fit = symmetric_linear_fit if assume_positive_correlation else linear_fit
        intercept, slope = fit(x[kept], y[kept])
        residuals = y[kept] - (intercept + slope * x[kept])
        studentized = studentized_residuals(x[kept], residuals, h[kept])
        survivors = kept[np.abs(studentized) <= max_studentized_residual]
        removed = len(kept) - len(survivors)
        kept = survivors
        if removed == 0:
            break

    logger.debug(f"Studentized-residual pruning: {len(kept)} of {n} kept "
                 f"(cutoff {max_studentized_residual})")
    return kept


# ============================================================================
# Fitting kernels (run under the service's timeout)
# ============================================================================

def _huber_fit(x: np.ndarray, y: np.ndarray) -> tuple[float, float]:
    center, scale = _scale(x)
    model = HuberRegressor(alpha=0.0, max_iter=500)
    model.fit(((x - center) / scale).reshape(-1, 1), y)
    slope = float(model.coef_[0]) / scale
    intercept = float(model.intercept_) - slope * center
    return intercept, slope


def _modal_design(x: np.ndarray, degree: int, center: float, scale: float) -> np.ndarray:
    return np.column_stack([np.ones(len(x)), _design(x, degree, center, scale)])


def _modal_objective(design: np.ndarray, y: np.ndarray, beta: np.ndarray, bandwidth: float) -> float:
    """Kernel density of the residuals at zero."""
    return float(np.mean(stats.norm.pdf(y - design @ beta, 0.0, bandwidth)))


def _modal_em(design: np.ndarray, y: np.ndarray, beta: np.ndarray, bandwidth: float) -> np.ndarray:
    """Iterate Gaussian-kernel-weighted least squares to a fixed point."""
    for _ in range(_MODAL_MAX_ITERATIONS):
        weights = np.exp(-0.5 * ((y - design @ beta) / bandwidth) ** 2)
        # Nothing left under the kernel to fit
        if weights.sum() < design.shape[1]:
            break
        root = np.sqrt(weights)
        new_beta = np.linalg.lstsq(design * root[:, None], y * root, rcond=None)[0]
        step = float(np.max(np.abs(new_beta - beta)))
        beta = new_beta
        if step <= _MODAL_TOLERANCE * (1.0 + float(np.max(np.abs(beta)))):
            break
    return beta


def _annealed_modal_em(
    design: np.ndarray, y: np.ndarray, beta: np.ndarray, start_bandwidth: float, bandwidth: float
) -> np.ndarray:
    """Modal EM with the bandwidth halved from ``start_bandwidth`` down to ``bandwidth``."""
    current = start_bandwidth
    while current > bandwidth:
        beta = _modal_em(design, y, beta, current)
        current *= _MODAL_ANNEAL_FACTOR
    return _modal_em(design, y, beta, bandwidth)


def _band_scale(residuals: np.ndarray, initial_scale: float) -> float:
    """Standard deviation of the dense component of a normal + uniform residual mixture."""
    span = float(np.ptp(residuals))
    if span <= 0:
        return 0.0
    proportion, mu, sigma = 0.5, 0.0, initial_scale
    for _ in range(_MODAL_MAX_ITERATIONS):
        dense = proportion * stats.norm.pdf(residuals, mu, sigma)
        weights = dense / (dense + (1.0 - proportion) / span)
        total = float(weights.sum())
        if total <= 0:
            break
        mu = float(np.sum(weights * residuals) / total)
        new_sigma = max(float(np.sqrt(np.sum(weights * (residuals - mu) ** 2) / total)), _MIN_SIGMA)
        proportion = min(total / len(residuals), 1.0 - _MIN_SIGMA)
        converged = abs(new_sigma - sigma) <= _MODAL_TOLERANCE * sigma
        sigma = new_sigma
        if converged:
            break
    return sigma


def _modal_fit(x: np.ndarray, y: np.ndarray, degree: int, quantiles) -> tuple[np.ndarray, float]:
    """Modal regression by kernel-weighted least squares from many starts.

    Starts are quantile-regression fits, annealed from a wide kernel, and
    exact fits through random subsets of points, refined directly at a pilot
    bandwidth. The pilot winner's residuals give the width of the dense band,
    which becomes the final bandwidth; the best pilot solutions are refined at
    it and the one with the highest residual density at zero is kept.

    Returns:
        (coefficients in the raw x basis, final bandwidth)
    """
    center, scale = _scale(x)
    design = _modal_design(x, degree, center, scale)
    y_scale = float(np.std(y))
    if y_scale == 0:
        scaled = np.linalg.lstsq(design, y, rcond=None)[0]
        return _to_raw_basis(scaled, center, scale, degree), 0.0

    pilot_bandwidth = y_scale * _MODAL_PILOT_FRACTION
    candidates = []
    for quantile in quantiles:
        model = QuantileRegressor(quantile=quantile, alpha=0.0, solver='highs')
        model.fit(design[:, 1:], y)
        start = np.concatenate([[model.intercept_], model.coef_])
        candidates.append(_annealed_modal_em(design, y, start, y_scale, pilot_bandwidth))

    rng = np.random.default_rng(_MODAL_SEED)
    n, n_params = design.shape
    for _ in range(_MODAL_RANDOM_STARTS):
        subset = rng.choice(n, size=n_params, replace=False)
        start = np.linalg.lstsq(design[subset], y[subset], rcond=None)[0]
        candidates.append(_modal_em(design, y, start, pilot_bandwidth))

    candidates.sort(key=lambda beta: _modal_objective(design, y, beta, pilot_bandwidth), reverse=True)
    pilot = candidates[0]
    band = _band_scale(y - design @ pilot, pilot_bandwidth)
    bandwidth = max(band, y_scale * _MIN_MODAL_BANDWIDTH_FRACTION)
    logger.debug(f"Modal regression: pilot bandwidth {pilot_bandwidth:.4g}, band width {band:.4g}")

    best = None
    for beta in candidates[:_MODAL_REFINED_CANDIDATES]:
        refined = _modal_em(design, y, beta, bandwidth)
        density = _modal_objective(design, y, refined, bandwidth)
        if best is None or density > best[0]:
            best = (density, refined)
    return _to_raw_basis(best[1], center, scale, degree), bandwidth


def _em_fit(
    x: np.ndarray,
    y: np.ndarray,
    initial_proportion: float,
    area: float,
    min_iterations: int,
    max_iterations: int,
    max_delta_proportion: float,
    iterations_for_stability: int,
) -> MixtureFitResult:
    uniform_density = 1.0 / area
    proportion = float(initial_proportion)
    mu_x, mu_y = float(np.median(x)), float(np.median(y))
    sigma_x = max(float(np.std(x)) / 2, _MIN_SIGMA)
    sigma_y = max(float(np.std(y)) / 2, _MIN_SIGMA)

    def posterior() -> np.ndarray:
        true_density = proportion * stats.norm.pdf(x, mu_x, sigma_x) * stats.norm.pdf(y, mu_y, sigma_y)
        false_density = (1.0 - proportion) * uniform_density
        total = true_density + false_density
        return np.divide(true_density, total, out=np.zeros_like(true_density), where=total > 0)

    converged = False
    stable_iterations = 0
    iteration = 0
    for iteration in range(1, max_iterations + 1):
        weights = posterior()
        weight_sum = float(weights.sum())
        if weight_sum <= 0:
            raise FloatingPointError("true-match component collapsed to zero weight")

        new_proportion = weight_sum / len(weights)
        mu_x = float(np.sum(weights * x) / weight_sum)
        mu_y = float(np.sum(weights * y) / weight_sum)
        sigma_x = max(float(np.sqrt(np.sum(weights * (x - mu_x) ** 2) / weight_sum)), _MIN_SIGMA)
        sigma_y = max(float(np.sqrt(np.sum(weights * (y - mu_y) ** 2) / weight_sum)), _MIN_SIGMA)

        delta = abs(new_proportion - proportion)
        proportion = new_proportion
        stable_iterations = stable_iterations + 1 if delta < max_delta_proportion else 0
        logger.debug(f"EM iteration {iteration}: proportion={proportion:.4f}, "
                     f"mu=({mu_x:.4g}, {mu_y:.4g}), sigma=({sigma_x:.4g}, {sigma_y:.4g})")

        if iteration >= min_iterations and stable_iterations >= iterations_for_stability:
            converged = True
            break

    probabilities = posterior()
    result = MixtureFitResult(
        probabilities=probabilities,
        mu_x=mu_x,
        mu_y=mu_y,
        sigma_x=sigma_x,
        sigma_y=sigma_y,
        proportion=proportion,
        converged=converged,
        n_iterations=iteration,
    )

    likely_true = probabilities >= 0.5
    if likely_true.sum() >= 3:
        ks_x = stats.kstest((x[likely_true] - mu_x) / sigma_x, 'norm')
        ks_y = stats.kstest((y[likely_true] - mu_y) / sigma_y, 'norm')
        result.ks_stat_x, result.ks_pvalue_x = float(ks_x.statistic), float(ks_x.pvalue)
        result.ks_stat_y, result.ks_pvalue_y = float(ks_y.statistic), float(ks_y.pvalue)
    return result


# ============================================================================
# Service
# ============================================================================

class RegressionService:
    """Regression and mixture fitting with a per-call timeout.

    Args:
        timeout_seconds: Wall-clock limit for each solver call
        modal_min_points: Minimum paired points for modal regression
        modal_quantiles: Quantiles whose regression lines seed modal regression
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_SOLVER_TIMEOUT_SECONDS,
        modal_min_points: int = DEFAULT_MODAL_MIN_POINTS,
        modal_quantiles=DEFAULT_MODAL_QUANTILES,
    ):
        self.timeout_seconds = timeout_seconds
        self.modal_min_points = modal_min_points
        self.modal_quantiles = tuple(modal_quantiles)

    def _call(self, name: str, fn, *args):
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError:
            raise SolverFailureError(
                f"{name} did not finish within {self.timeout_seconds:g} seconds"
            ) from None
        except (ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
            raise SolverFailureError(f"{name} failed: {e}") from e
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _require_finite(name: str, values) -> None:
        if not np.all(np.isfinite(np.asarray(values, dtype=float))):
            raise SolverFailureError(f"{name} returned non-finite values: {values}")

    @staticmethod
    def _paired(xs, ys, minimum: int, name: str) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(xs, dtype=float)
        y = np.asarray(ys, dtype=float)
        if x.shape != y.shape:
            raise ValueError(f"{name}: x and y lengths differ ({len(x)} vs {len(y)})")
        if len(x) < minimum:
            raise InsufficientDataError(
                f"{name} needs at least {minimum} paired points, got {len(x)}",
                n_available=len(x), n_required=minimum,
            )
        return x, y

    def linear_regression(self, xs, ys, weights=None) -> tuple[float, float]:
        """Least squares (intercept, slope), weighted when ``weights`` is given."""
        x, y = self._paired(xs, ys, 2, 'linear regression')
        if weights is not None:
            weights = np.asarray(weights, dtype=float)
            if weights.shape != x.shape:
                raise ValueError(f"linear regression: {len(weights)} weights for {len(x)} points")
            if np.count_nonzero(weights > 0) < 2:
                raise InsufficientDataError(
                    "linear regression needs at least 2 positively weighted points",
                    n_available=int(np.count_nonzero(weights > 0)), n_required=2,
                )
        result = self._call('linear regression', linear_fit, x, y, weights)
        self._require_finite('linear regression', result)
        return result

    def robust_regression(self, xs, ys) -> tuple[float, float]:
        """Huber-loss linear fit (intercept, slope), tolerant of outliers."""
        x, y = self._paired(xs, ys, 3, 'robust regression')
        result = self._call('robust regression', _huber_fit, x, y)
        self._require_finite('robust regression', result)
        return result

    def modal_regression(self, xs, ys, degree: int = 1) -> np.ndarray:
        """Mode-tracking polynomial fit.

        Returns:
            Coefficients [c0, c1, ..., c_degree] in the raw x basis

        Raises:
            InsufficientDataError: fewer than ``modal_min_points`` pairs
            SolverFailureError: timeout or solver failure
        """
        if degree < 1:
            raise ValueError(f"Modal regression degree must be >= 1, got {degree}")
        x, y = self._paired(xs, ys, self.modal_min_points, 'modal regression')
        coefficients, bandwidth = self._call(
            'modal regression', _modal_fit, x, y, degree, self.modal_quantiles
        )
        self._require_finite('modal regression', coefficients)
        logger.debug(f"Modal regression (kernel width {bandwidth:.4g}): {coefficients}")
        return coefficients

    def fit_mixture_em(
        self,
        x_errors,
        y_errors,
        initial_proportion: float,
        area: float,
        min_iterations: int = 30,
        max_iterations: int = 200,
        max_delta_proportion: float = 0.005,
        iterations_for_stability: int = 1,
    ) -> MixtureFitResult:
        """Fit the true (bivariate normal) / false (uniform over ``area``) mixture.

        Non-convergence within ``max_iterations`` is reported on the result
        and logged, not raised.
        """
        if area <= 0:
            raise ValueError(f"Uniform component area must be positive, got {area}")
        if min_iterations > max_iterations:
            raise ValueError("min_iterations exceeds max_iterations")
        x, y = self._paired(x_errors, y_errors, MIN_EM_POINTS, 'mixture EM')
        result = self._call(
            'mixture EM', _em_fit, x, y, initial_proportion, area,
            min_iterations, max_iterations, max_delta_proportion, iterations_for_stability,
        )
        self._require_finite('mixture EM', [result.mu_x, result.mu_y, result.sigma_x,
                                            result.sigma_y, result.proportion])
        if not result.converged:
            logger.warning(f"EM did not converge after {result.n_iterations} iterations; "
                           f"using last estimate (proportion {result.proportion:.4f})")
        return result
