"""
Levenberg-Marquardt Weighted Least Squares.

Minimizes

    chi² = Σ_i w_i * r_i(x)²

with damped Gauss-Newton steps (Marquardt diagonal scaling):

    (JᵀWJ + λ·diag(JᵀWJ)) Δx = -JᵀWr

λ shrinks after an accepted step and grows after a rejected one, so the
iteration behaves like Gauss-Newton near the optimum and like gradient
descent far from it.
"""

from typing import Callable, Optional, Tuple
from dataclasses import dataclass
import logging

import numpy as np

from rle_core.localization.errors import EstimationError

logger = logging.getLogger(__name__)

ModelFunction = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]

INITIAL_DAMPING = 1e-3
MIN_DAMPING = 1e-15
MAX_DAMPING = 1e16
DAMPING_FACTOR = 10.0
CHI_SQ_FLOOR = 1e-30


@dataclass
class LMResult:
    """
    Result of a Levenberg-Marquardt fit.

    Attributes:
        x: Parameters at the solution
        chi_sq: Weighted sum of squared residuals at the solution
        iterations: Number of iterations used
        normal_inverse: (JᵀWJ)⁻¹ at the solution (unscaled covariance)
        residuals: Unweighted residuals at the solution
        converged: False if the iteration budget ran out first
    """

    x: np.ndarray
    chi_sq: float
    iterations: int
    normal_inverse: np.ndarray
    residuals: np.ndarray
    converged: bool


def _evaluate(model: ModelFunction, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Evaluate model, rejecting non-finite residuals or Jacobians."""
    residuals, jacobian = model(x)
    residuals = np.asarray(residuals, dtype=float)
    jacobian = np.asarray(jacobian, dtype=float)
    if not (np.all(np.isfinite(residuals)) and np.all(np.isfinite(jacobian))):
        raise EstimationError("non-finite residuals or Jacobian")
    return residuals, jacobian


def levenberg_marquardt(
    model: ModelFunction,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iterations: int = 200,
    tol: float = 1e-12,
) -> LMResult:
    """
    Fit parameters by weighted nonlinear least squares.

    Args:
        model: Function mapping parameters to (residuals, jacobian)
        x0: Initial parameters
        weights: Per-residual weights (inverse variances), ones if None
        max_iterations: Iteration budget
        tol: Relative step size below which the fit has converged

    Returns:
        LMResult

    Raises:
        EstimationError: Non-finite model at x0 or at the solution, more
            parameters than residuals, or rank-deficient Jacobian
    """
    x = np.array(x0, dtype=float)
    residuals, jacobian = _evaluate(model, x)

    n_residuals = len(residuals)
    n_params = len(x)
    if n_residuals < n_params:
        raise EstimationError(
            f"underdetermined: {n_residuals} residuals for {n_params} parameters"
        )

    if weights is None:
        weights = np.ones(n_residuals)
    sqrt_w = np.sqrt(np.asarray(weights, dtype=float))

    rw = sqrt_w * residuals
    Jw = sqrt_w[:, None] * jacobian
    chi_sq = float(rw @ rw)

    damping = INITIAL_DAMPING
    converged = chi_sq <= CHI_SQ_FLOOR
    iteration = 0

    while not converged and iteration < max_iterations:
        iteration += 1

        # Normal equations: JᵀWJ Δx = -JᵀWr
        JTJ = Jw.T @ Jw
        JTr = Jw.T @ rw

        scaling = np.diag(JTJ).copy()
        scaling[scaling <= 0.0] = 1.0

        try:
            delta_x = np.linalg.solve(JTJ + damping * np.diag(scaling), -JTr)
        except np.linalg.LinAlgError:
            # Singular matrix - use pseudoinverse
            delta_x = np.linalg.lstsq(JTJ, -JTr, rcond=None)[0]

        x_new = x + delta_x
        try:
            residuals_new, jacobian_new = _evaluate(model, x_new)
        except EstimationError:
            # Step left the model's domain (e.g. onto a reading position)
            damping *= DAMPING_FACTOR
            if damping > MAX_DAMPING:
                break
            continue

        rw_new = sqrt_w * residuals_new
        chi_sq_new = float(rw_new @ rw_new)

        if chi_sq_new < chi_sq:
            step_size = np.linalg.norm(delta_x)
            x, residuals, jacobian = x_new, residuals_new, jacobian_new
            rw = rw_new
            Jw = sqrt_w[:, None] * jacobian
            chi_sq = chi_sq_new
            damping = max(damping / DAMPING_FACTOR, MIN_DAMPING)

            if step_size <= tol * (np.linalg.norm(x) + tol) or chi_sq <= CHI_SQ_FLOOR:
                converged = True
        else:
            damping *= DAMPING_FACTOR
            if damping > MAX_DAMPING:
                # No downhill step left: local minimum within precision
                converged = True

    if not converged:
        logger.debug(f"LM budget exhausted after {iteration} iterations (chi²={chi_sq:.3g})")

    if np.linalg.matrix_rank(Jw) < n_params:
        raise EstimationError("singular Jacobian at solution")

    try:
        normal_inverse = np.linalg.inv(Jw.T @ Jw)
    except np.linalg.LinAlgError as e:
        raise EstimationError("singular normal matrix at solution") from e

    if not np.all(np.isfinite(normal_inverse)):
        raise EstimationError("non-finite covariance at solution")

    return LMResult(
        x=x,
        chi_sq=chi_sq,
        iterations=iteration,
        normal_inverse=normal_inverse,
        residuals=residuals,
        converged=converged,
    )
