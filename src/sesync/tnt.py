"""Riemannian truncated-Newton trust-region (TNT) solver.

The solver is generic over the problem: anything exposing
``evaluate_objective``, ``euclidean_gradient``, ``riemannian_gradient``,
``riemannian_hessian_vector_product``, ``tangent_space_projection``,
``precondition`` and ``retract`` with the signatures of
:class:`sesync.problem.SESyncProblem` can be optimized.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Callable, List, Optional

import numpy as np

from .tcg import truncated_conjugate_gradient

logger = logging.getLogger(__name__)

Array = np.ndarray


class TNTStatus(str, Enum):
    """Reason the trust-region solver stopped."""

    GRADIENT = "gradient"
    PRECONDITIONED_GRADIENT = "preconditioned_gradient"
    RELATIVE_DECREASE = "relative_decrease"
    STEPSIZE = "stepsize"
    ITERATION_LIMIT = "iteration_limit"
    ELAPSED_TIME = "elapsed_time"


@dataclass
class TNTParams:
    """Stopping criteria and trust-region constants.

    A proposed step is accepted when the gain ratio is at least ``eta1``; on
    rejection the radius shrinks to ``alpha1 * ||eta||_P``. When the ratio is
    at least ``eta2`` and the subproblem solution reached the boundary, the
    radius grows to ``alpha2 * ||eta||_P`` (capped at ``max_trust_radius``).
    """

    gradient_tolerance: float = 1e-2
    preconditioned_gradient_tolerance: float = 1e-4
    relative_decrease_tolerance: float = 1e-6
    stepsize_tolerance: float = 1e-3
    max_iterations: int = 1000
    max_tpcg_iterations: int = 10000
    max_computation_time: float = 1800.0
    kappa: float = 0.1
    theta: float = 0.5
    initial_trust_radius: float = 1.0
    max_trust_radius: float = 1e4
    eta1: float = 0.05
    eta2: float = 0.9
    alpha1: float = 0.25
    alpha2: float = 2.5
    log_iterates: bool = False

    def validate(self) -> None:
        if not (0.0 < self.kappa < 1.0):
            raise ValueError("kappa must be in (0, 1).")
        if self.theta <= 0.0:
            raise ValueError("theta must be positive.")
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be nonnegative.")
        if self.max_tpcg_iterations < 1:
            raise ValueError("max_tpcg_iterations must be positive.")
        if not (0.0 < self.initial_trust_radius <= self.max_trust_radius):
            raise ValueError("initial_trust_radius must be in (0, max_trust_radius].")
        if not (0.0 < self.eta1 <= self.eta2 < 1.0):
            raise ValueError("Acceptance thresholds must satisfy 0 < eta1 <= eta2 < 1.")
        if not (0.0 < self.alpha1 < 1.0 < self.alpha2):
            raise ValueError("Radius factors must satisfy 0 < alpha1 < 1 < alpha2.")


@dataclass(frozen=True)
class TNTSnapshot:
    """Read-only view of the solver state handed to a monitor function."""

    iteration: int
    elapsed_time: float
    Y: Array
    f: float
    gradnorm: float
    preconditioned_gradnorm: float
    trust_radius: float
    hessian_vector_products: int


@dataclass
class TNTResult:
    x: Array
    f: float
    gradnorm: float
    preconditioned_gradnorm: float
    status: TNTStatus
    iterations: int
    elapsed_time: float
    objective_values: List[float] = field(default_factory=list)
    gradient_norms: List[float] = field(default_factory=list)
    preconditioned_gradient_norms: List[float] = field(default_factory=list)
    hessian_vector_products: List[int] = field(default_factory=list)
    elapsed_times: List[float] = field(default_factory=list)
    update_step_norms: List[float] = field(default_factory=list)
    gain_ratios: List[float] = field(default_factory=list)
    iterates: Optional[List[Array]] = None


def _readonly(Y: Array) -> Array:
    view = Y.view()
    view.flags.writeable = False
    return view


class RiemannianTNT:
    """Truncated-Newton trust-region method on a Riemannian manifold."""

    def __init__(self, params: Optional[TNTParams] = None) -> None:
        self.params = params or TNTParams()
        self.params.validate()

    def solve(
        self,
        problem: Any,
        Y0: Array,
        user_function: Optional[Callable[[TNTSnapshot], Any]] = None,
    ) -> TNTResult:
        p = self.params
        start_time = time.perf_counter()

        Y = np.array(Y0, dtype=float, copy=True)
        f = problem.evaluate_objective(Y)
        nabla_F = problem.euclidean_gradient(Y)
        grad = problem.riemannian_gradient(Y, nabla_F)
        Delta = float(p.initial_trust_radius)

        objective_values: List[float] = []
        gradient_norms: List[float] = []
        preconditioned_gradient_norms: List[float] = []
        hessian_vector_products: List[int] = []
        elapsed_times: List[float] = []
        update_step_norms: List[float] = []
        gain_ratios: List[float] = []
        iterates: Optional[List[Array]] = [] if p.log_iterates else None

        iteration = 0
        hvps_last = 0
        accepted_last = False
        relative_decrease = np.inf
        step_norm = np.inf
        gradnorm = float(np.linalg.norm(grad))
        preconditioned_gradnorm = np.nan

        while True:
            elapsed = time.perf_counter() - start_time
            if elapsed >= p.max_computation_time:
                status = TNTStatus.ELAPSED_TIME
                break

            gradnorm = float(np.linalg.norm(grad))
            preconditioned_gradnorm = float(np.linalg.norm(problem.precondition(Y, grad)))
            objective_values.append(f)
            gradient_norms.append(gradnorm)
            preconditioned_gradient_norms.append(preconditioned_gradnorm)
            hessian_vector_products.append(hvps_last)
            elapsed_times.append(elapsed)
            if iterates is not None:
                iterates.append(Y.copy())

            logger.debug(
                "TNT iter %4d: f=%.6e |grad|=%.3e |Pgrad|=%.3e Delta=%.3e hvps=%d",
                iteration,
                f,
                gradnorm,
                preconditioned_gradnorm,
                Delta,
                hvps_last,
            )
            if user_function is not None:
                user_function(
                    TNTSnapshot(
                        iteration=iteration,
                        elapsed_time=elapsed,
                        Y=_readonly(Y),
                        f=f,
                        gradnorm=gradnorm,
                        preconditioned_gradnorm=preconditioned_gradnorm,
                        trust_radius=Delta,
                        hessian_vector_products=hvps_last,
                    )
                )

            if gradnorm <= p.gradient_tolerance:
                status = TNTStatus.GRADIENT
                break
            if preconditioned_gradnorm <= p.preconditioned_gradient_tolerance:
                status = TNTStatus.PRECONDITIONED_GRADIENT
                break
            if accepted_last and relative_decrease <= p.relative_decrease_tolerance:
                status = TNTStatus.RELATIVE_DECREASE
                break
            if accepted_last and step_norm <= p.stepsize_tolerance:
                status = TNTStatus.STEPSIZE
                break
            if iteration >= p.max_iterations:
                status = TNTStatus.ITERATION_LIMIT
                break

            iteration += 1
            Y_fixed, nabla_fixed = Y, nabla_F
            tcg = truncated_conjugate_gradient(
                grad,
                hessian=lambda V: problem.riemannian_hessian_vector_product(Y_fixed, nabla_fixed, V),
                preconditioner=lambda V: problem.precondition(Y_fixed, V),
                Delta=Delta,
                kappa=p.kappa,
                theta=p.theta,
                max_iterations=p.max_tpcg_iterations,
                project=lambda V: problem.tangent_space_projection(Y_fixed, V),
            )
            hvps_last = tcg.hessian_vector_products
            h = tcg.eta
            predicted = tcg.model_decrease(grad)

            Y_proposed = problem.retract(Y, h)
            f_proposed = problem.evaluate_objective(Y_proposed)
            actual = f - f_proposed
            rho = actual / predicted if predicted > 0.0 else -np.inf
            gain_ratios.append(float(rho))

            if rho >= p.eta1:
                accepted_last = True
                step_norm = float(np.linalg.norm(h))
                relative_decrease = actual / abs(f) if f != 0.0 else np.inf
                update_step_norms.append(step_norm)
                Y, f = Y_proposed, f_proposed
                nabla_F = problem.euclidean_gradient(Y)
                grad = problem.riemannian_gradient(Y, nabla_F)
                if rho >= p.eta2 and tcg.stop_reason.on_boundary:
                    Delta = min(max(Delta, p.alpha2 * tcg.eta_norm), p.max_trust_radius)
            else:
                accepted_last = False
                Delta = p.alpha1 * tcg.eta_norm
                logger.debug("TNT iter %4d: rejected step (rho=%.3e), Delta -> %.3e", iteration, rho, Delta)

        elapsed = time.perf_counter() - start_time
        logger.debug("TNT stopped after %d iterations: %s (f=%.6e)", iteration, status.value, f)
        return TNTResult(
            x=Y,
            f=float(f),
            gradnorm=gradnorm,
            preconditioned_gradnorm=preconditioned_gradnorm,
            status=status,
            iterations=iteration,
            elapsed_time=elapsed,
            objective_values=objective_values,
            gradient_norms=gradient_norms,
            preconditioned_gradient_norms=preconditioned_gradient_norms,
            hessian_vector_products=hessian_vector_products,
            elapsed_times=elapsed_times,
            update_step_norms=update_step_norms,
            gain_ratios=gain_ratios,
            iterates=iterates,
        )


__all__ = ["TNTStatus", "TNTParams", "TNTSnapshot", "TNTResult", "RiemannianTNT"]
