"""Steihaug-Toint truncated preconditioned conjugate gradient (STPCG).

Approximately solves the trust-region subproblem

    minimize  m(eta) = <g, eta> + 1/2 <eta, H eta>   s.t.  ||eta||_P <= Delta

where ``||.||_P`` is the norm induced by the inverse of the preconditioner.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

Array = np.ndarray
LinearMap = Callable[[Array], Array]


class TCGStopReason(str, Enum):
    NEGATIVE_CURVATURE = "negative_curvature"
    EXCEEDED_TRUST_REGION = "exceeded_trust_region"
    LINEAR_CONVERGENCE = "linear_convergence"
    SUPERLINEAR_CONVERGENCE = "superlinear_convergence"
    MODEL_INCREASED = "model_increased"
    MAX_ITERATIONS = "max_iterations"

    @property
    def on_boundary(self) -> bool:
        return self in (TCGStopReason.NEGATIVE_CURVATURE, TCGStopReason.EXCEEDED_TRUST_REGION)


@dataclass
class TCGResult:
    eta: Array
    Heta: Array
    iterations: int
    hessian_vector_products: int
    stop_reason: TCGStopReason
    eta_norm: float
    initial_residual_norm: float
    residual_norm: float

    def model_decrease(self, grad: Array) -> float:
        """Predicted decrease ``-m(eta)`` of the quadratic model."""
        return -(_inner(grad, self.eta) + 0.5 * _inner(self.eta, self.Heta))


def _inner(a: Array, b: Array) -> float:
    return float(np.vdot(a, b))


def truncated_conjugate_gradient(
    grad: Array,
    hessian: LinearMap,
    preconditioner: LinearMap,
    Delta: float,
    kappa: float = 0.1,
    theta: float = 0.5,
    max_iterations: int = 10000,
    project: LinearMap | None = None,
) -> TCGResult:
    """Run STPCG from ``eta = 0``.

    Stops when the preconditioned residual satisfies
    ``||r_k|| <= ||r_0|| * min(kappa, ||r_0||^theta)``, on negative curvature,
    when the next iterate would leave the trust region (returning the
    boundary point), or after ``max_iterations`` Hessian-vector products.
    """
    eta = np.zeros_like(grad)
    Heta = np.zeros_like(grad)
    r = np.array(grad, dtype=float, copy=True)
    z = preconditioner(r)
    z_r = _inner(z, r)
    norm_r0 = float(np.sqrt(max(z_r, 0.0)))
    target = norm_r0 * min(kappa, norm_r0**theta)

    if norm_r0 == 0.0:
        return TCGResult(eta, Heta, 0, 0, TCGStopReason.SUPERLINEAR_CONVERGENCE, 0.0, 0.0, 0.0)

    delta = -z
    e_Pe = 0.0
    e_Pd = 0.0
    d_Pd = z_r
    model_value = 0.0
    norm_r = norm_r0
    stop = TCGStopReason.MAX_ITERATIONS
    hvps = 0
    k = 0

    for k in range(1, int(max_iterations) + 1):
        Hdelta = hessian(delta)
        hvps += 1
        d_Hd = _inner(delta, Hdelta)
        alpha = z_r / d_Hd if d_Hd != 0.0 else 0.0
        e_Pe_new = e_Pe + 2.0 * alpha * e_Pd + alpha * alpha * d_Pd

        if d_Hd <= 0.0 or e_Pe_new >= Delta * Delta:
            # Step to the boundary along delta.
            tau = (-e_Pd + np.sqrt(e_Pd * e_Pd + d_Pd * (Delta * Delta - e_Pe))) / d_Pd
            eta = eta + tau * delta
            Heta = Heta + tau * Hdelta
            e_Pe = e_Pe + 2.0 * tau * e_Pd + tau * tau * d_Pd
            stop = TCGStopReason.NEGATIVE_CURVATURE if d_Hd <= 0.0 else TCGStopReason.EXCEEDED_TRUST_REGION
            break

        new_eta = eta + alpha * delta
        new_Heta = Heta + alpha * Hdelta
        new_model_value = _inner(new_eta, grad) + 0.5 * _inner(new_eta, new_Heta)
        if new_model_value >= model_value:
            stop = TCGStopReason.MODEL_INCREASED
            break

        eta, Heta, model_value, e_Pe = new_eta, new_Heta, new_model_value, e_Pe_new
        r = r + alpha * Hdelta
        z = preconditioner(r)
        z_r_old = z_r
        z_r = _inner(z, r)
        norm_r = float(np.sqrt(max(z_r, 0.0)))

        if norm_r <= target:
            stop = (
                TCGStopReason.LINEAR_CONVERGENCE
                if kappa < norm_r0**theta
                else TCGStopReason.SUPERLINEAR_CONVERGENCE
            )
            break

        beta = z_r / z_r_old
        delta = -z + beta * delta
        if project is not None:
            delta = project(delta)
        e_Pd = beta * (e_Pd + alpha * d_Pd)
        d_Pd = z_r + beta * beta * d_Pd

    return TCGResult(
        eta=eta,
        Heta=Heta,
        iterations=k,
        hessian_vector_products=hvps,
        stop_reason=stop,
        eta_norm=float(np.sqrt(max(e_Pe, 0.0))),
        initial_residual_norm=norm_r0,
        residual_norm=norm_r,
    )


__all__ = ["TCGStopReason", "TCGResult", "truncated_conjugate_gradient"]
