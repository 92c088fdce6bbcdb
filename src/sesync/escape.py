"""Saddle escape along a direction of negative curvature."""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Array = np.ndarray


def escape_saddle(
    problem: Any,
    Y: Array,
    theta: float,
    v: Array,
    gradient_tolerance: float,
    preconditioned_gradient_tolerance: float,
    alpha_min: float = 1e-6,
) -> Tuple[bool, Optional[Array]]:
    """Backtracking line search from the rank ``r + 1`` embedding of ``Y``.

    ``Y`` is a rank-``r`` critical point whose certificate matrix has
    eigenpair ``(theta, v)`` with ``theta < 0``. The point is lifted by a zero
    row and moved along the tangent direction whose new row is ``v``. The
    step size starts at ``max(16 alpha_min, 10 gradient_tolerance / |theta|)``
    and is halved until the trial point ``Yplus`` satisfies

    * ``F(Yplus) < F(Y)``,
    * ``||grad F(Yplus)|| > gradient_tolerance``, and
    * ``||P grad F(Yplus)|| > preconditioned_gradient_tolerance``,

    so the solver at the next rank does not stop immediately.

    Returns:
        ``(True, Yplus)`` on success, ``(False, None)`` once the step size
        drops below ``alpha_min``.
    """
    if theta >= 0.0:
        raise ValueError("Escape requires a direction of negative curvature (theta < 0).")
    r = Y.shape[0]
    Y_lifted = problem.lift(Y, r + 1)
    Ydot = problem.escape_direction(v, r)
    f0 = problem.evaluate_objective(Y_lifted)

    alpha = max(16.0 * alpha_min, 10.0 * gradient_tolerance / abs(theta))
    while alpha >= alpha_min:
        Yplus = problem.retract(Y_lifted, alpha * Ydot)
        f = problem.evaluate_objective(Yplus)
        grad = problem.riemannian_gradient(Yplus)
        gradnorm = float(np.linalg.norm(grad))
        preconditioned_gradnorm = float(np.linalg.norm(problem.precondition(Yplus, grad)))
        if f < f0 and gradnorm > gradient_tolerance and preconditioned_gradnorm > preconditioned_gradient_tolerance:
            logger.info(
                "Escaped saddle with step %.3e: F %.6e -> %.6e, |grad| = %.3e",
                alpha,
                f0,
                f,
                gradnorm,
            )
            return True, Yplus
        alpha *= 0.5

    logger.info("Saddle escape line search failed (theta = %.3e).", theta)
    return False, None


__all__ = ["escape_saddle"]
