"""The Riemannian Staircase: certifiably correct SE(d) synchronization.

``sesync`` optimizes the rank-``r`` relaxation with the trust-region solver,
certifies the resulting critical point, and either stops or escapes to rank
``r + 1`` along a direction of negative curvature.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np
import scipy.sparse as sp
from tqdm.auto import tqdm

from .certify import CertificateStatus, certify
from .escape import escape_saddle
from .measurements import RelativePoseMeasurement
from .problem import FORMULATIONS, INITIALIZATIONS, PRECONDITIONERS, PROJECTION_FACTORIZATIONS, SESyncProblem
from .tnt import RiemannianTNT, TNTParams, TNTSnapshot, TNTStatus

logger = logging.getLogger(__name__)

Array = np.ndarray


class SESyncStatus(str, Enum):
    """Terminal state of a Staircase run."""

    GLOBAL_OPT = "GlobalOpt"
    SADDLE_POINT = "SaddlePoint"
    EIG_IMPRECISION = "EigImprecision"
    MAX_RANK = "MaxRank"
    ELAPSED_TIME = "ElapsedTime"


@dataclass(frozen=True)
class SESyncOpts:
    """Run options. Use ``dataclasses.replace`` to override individual fields."""

    # Trust-region stopping criteria
    grad_norm_tol: float = 1e-2
    preconditioned_grad_norm_tol: float = 1e-4
    rel_func_decrease_tol: float = 1e-6
    stepsize_tol: float = 1e-3
    max_iterations: int = 1000
    max_tcg_iterations: int = 10000
    max_computation_time: float = 1800.0
    stpcg_kappa: float = 0.1
    stpcg_theta: float = 0.5

    # Staircase
    r0: int = 5
    rmax: int = 10
    min_eig_num_tol: float = 1e-3
    lobpcg_block_size: int = 4
    lobpcg_max_fill_factor: float = 3.0
    lobpcg_drop_tol: float = 1e-3
    lobpcg_max_iterations: int = 100

    # Problem
    formulation: str = "simplified"
    initialization: str = "chordal"
    preconditioner: str = "regularized_cholesky"
    projection_factorization: str = "cholesky"
    reg_cholesky_precon_max_condition_number: float = 1e6
    num_threads: int = 1

    verbose: bool = False
    log_iterates: bool = False
    user_function: Optional[Callable[[TNTSnapshot], Any]] = None
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if not (0.0 < self.stpcg_kappa < 1.0):
            raise ValueError("stpcg_kappa must be in (0, 1).")
        if self.stpcg_theta <= 0.0:
            raise ValueError("stpcg_theta must be positive.")
        for name in ("grad_norm_tol", "preconditioned_grad_norm_tol", "rel_func_decrease_tol", "stepsize_tol", "min_eig_num_tol"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be nonnegative.")
        if self.max_computation_time < 0.0:
            raise ValueError("max_computation_time must be nonnegative.")
        for name in ("max_iterations", "max_tcg_iterations", "lobpcg_max_iterations"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive.")
        if self.r0 < 1:
            raise ValueError("r0 must be positive.")
        if self.rmax < self.r0:
            raise ValueError(f"rmax ({self.rmax}) must be at least r0 ({self.r0}).")
        if self.lobpcg_block_size < 1:
            raise ValueError("lobpcg_block_size must be positive.")
        if self.lobpcg_max_fill_factor < 1.0:
            raise ValueError("lobpcg_max_fill_factor must be at least 1.")
        if not (0.0 <= self.lobpcg_drop_tol <= 1.0):
            raise ValueError("lobpcg_drop_tol must be in [0, 1].")
        if self.reg_cholesky_precon_max_condition_number <= 1.0:
            raise ValueError("reg_cholesky_precon_max_condition_number must be greater than 1.")
        if self.num_threads < 1:
            raise ValueError("num_threads must be positive.")
        if self.formulation not in FORMULATIONS:
            raise ValueError(f"formulation must be one of {FORMULATIONS}.")
        if self.initialization not in INITIALIZATIONS:
            raise ValueError(f"initialization must be one of {INITIALIZATIONS}.")
        if self.preconditioner not in PRECONDITIONERS:
            raise ValueError(f"preconditioner must be one of {PRECONDITIONERS}.")
        if self.projection_factorization not in PROJECTION_FACTORIZATIONS:
            raise ValueError(f"projection_factorization must be one of {PROJECTION_FACTORIZATIONS}.")

    def tnt_params(self, max_computation_time: float) -> TNTParams:
        return TNTParams(
            gradient_tolerance=self.grad_norm_tol,
            preconditioned_gradient_tolerance=self.preconditioned_grad_norm_tol,
            relative_decrease_tolerance=self.rel_func_decrease_tol,
            stepsize_tolerance=self.stepsize_tol,
            max_iterations=self.max_iterations,
            max_tpcg_iterations=self.max_tcg_iterations,
            max_computation_time=max_computation_time,
            kappa=self.stpcg_kappa,
            theta=self.stpcg_theta,
            log_iterates=self.log_iterates,
        )


@dataclass
class SESyncResult:
    """Everything recorded during a Staircase run.

    Trace fields hold one list per visited rank level, in the order of
    ``ranks``. The certificate fields (``Lambda`` through
    ``suboptimality_bound``) are ``None`` when the run ran out of time.
    """

    status: Optional[SESyncStatus] = None
    Yopt: Optional[Array] = None
    SDPval: float = np.nan
    gradnorm: float = np.nan
    Lambda: Optional[sp.csr_matrix] = None
    trLambda: Optional[float] = None
    duality_gap: Optional[float] = None
    xhat: Optional[Array] = None
    Fxhat: Optional[float] = None
    suboptimality_bound: Optional[float] = None
    total_computation_time: float = 0.0
    initialization_time: float = 0.0
    function_values: List[List[float]] = field(default_factory=list)
    gradient_norms: List[List[float]] = field(default_factory=list)
    preconditioned_gradient_norms: List[List[float]] = field(default_factory=list)
    hessian_vector_products: List[List[int]] = field(default_factory=list)
    elapsed_optimization_times: List[List[float]] = field(default_factory=list)
    iterates: List[List[Array]] = field(default_factory=list)
    tnt_statuses: List[TNTStatus] = field(default_factory=list)
    escape_direction_curvatures: List[float] = field(default_factory=list)
    lobpcg_iters: List[int] = field(default_factory=list)
    verification_times: List[float] = field(default_factory=list)
    ranks: List[int] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            f"status: {self.status.value if self.status is not None else 'n/a'}",
            f"ranks visited: {self.ranks}",
            f"SDP value: {self.SDPval:.6e}",
            f"gradient norm: {self.gradnorm:.3e}",
        ]
        if self.trLambda is not None:
            lines += [
                f"tr(Lambda): {self.trLambda:.6e}",
                f"duality gap: {self.duality_gap:.3e}",
                f"F(xhat): {self.Fxhat:.6e}",
                f"suboptimality bound: {self.suboptimality_bound:.3e}",
            ]
        lines.append(f"total time: {self.total_computation_time:.3f} s")
        return "\n".join(lines)


def _check_rank_bounds(opts: SESyncOpts, d: int) -> None:
    if opts.r0 < d + 1:
        raise ValueError(f"r0 ({opts.r0}) must be at least d + 1 = {d + 1}.")


def _build_problem(
    problem_or_measurements: Union[SESyncProblem, Sequence[RelativePoseMeasurement]],
    opts: SESyncOpts,
) -> SESyncProblem:
    if isinstance(problem_or_measurements, SESyncProblem):
        _check_rank_bounds(opts, problem_or_measurements.d)
        return problem_or_measurements
    measurements = list(problem_or_measurements)
    if not measurements:
        raise ValueError("At least one measurement is required.")
    _check_rank_bounds(opts, measurements[0].d)
    return SESyncProblem(
        measurements,
        formulation=opts.formulation,
        preconditioner=opts.preconditioner,
        projection_factorization=opts.projection_factorization,
        reg_chol_max_condition_number=opts.reg_cholesky_precon_max_condition_number,
        num_threads=opts.num_threads,
    )


def _initial_iterate(problem: SESyncProblem, opts: SESyncOpts, Y0: Optional[Array]) -> Array:
    if Y0 is None:
        rng = np.random.default_rng(opts.seed)
        return problem.initialize(opts.r0, opts.initialization, rng)
    Y0 = np.asarray(Y0, dtype=float)
    if Y0.ndim != 2 or Y0.shape[1] != problem.num_columns:
        raise ValueError(f"Y0 must have {problem.num_columns} columns, got shape {Y0.shape}.")
    if Y0.shape[0] > opts.r0:
        raise ValueError(f"Y0 has {Y0.shape[0]} rows, more than r0 = {opts.r0}.")
    Y = problem.lift(Y0, opts.r0)
    return problem.retract(Y, np.zeros_like(Y))


def sesync(
    problem_or_measurements: Union[SESyncProblem, Sequence[RelativePoseMeasurement]],
    options: Optional[SESyncOpts] = None,
    Y0: Optional[Array] = None,
) -> SESyncResult:
    """Run the Riemannian Staircase.

    Args:
        problem_or_measurements: A constructed ``SESyncProblem`` or the raw
            measurements (the problem is then built from ``options``).
        options: Run options; defaults to ``SESyncOpts()``.
        Y0: Optional initial iterate with at most ``r0`` rows. It is lifted
            to rank ``r0`` and projected onto the manifold.

    Returns:
        SESyncResult whose ``status`` is set exactly once, on exit.
    """
    opts = options or SESyncOpts()
    start = time.perf_counter()
    problem = _build_problem(problem_or_measurements, opts)
    result = SESyncResult()

    def elapsed() -> float:
        return time.perf_counter() - start

    init_start = time.perf_counter()
    Y = _initial_iterate(problem, opts, Y0)
    result.initialization_time = time.perf_counter() - init_start
    logger.info(
        "Initialized rank-%d iterate (%s) in %.3f s",
        opts.r0,
        "user-supplied" if Y0 is not None else opts.initialization,
        result.initialization_time,
    )

    status: Optional[SESyncStatus] = None
    levels = tqdm(range(opts.r0, opts.rmax + 1), disable=not opts.verbose, desc="staircase")
    for r in levels:
        result.ranks.append(r)
        logger.info("Riemannian Staircase level r = %d", r)

        solver = RiemannianTNT(opts.tnt_params(max(opts.max_computation_time - elapsed(), 0.0)))
        tnt = solver.solve(problem, Y, opts.user_function)
        result.function_values.append(tnt.objective_values)
        result.gradient_norms.append(tnt.gradient_norms)
        result.preconditioned_gradient_norms.append(tnt.preconditioned_gradient_norms)
        result.hessian_vector_products.append(tnt.hessian_vector_products)
        result.elapsed_optimization_times.append(tnt.elapsed_times)
        if tnt.iterates is not None:
            result.iterates.append(tnt.iterates)
        result.tnt_statuses.append(tnt.status)

        Y = tnt.x
        result.Yopt = Y
        result.SDPval = tnt.f
        result.gradnorm = tnt.gradnorm
        logger.info(
            "Level r = %d: %d TNT iterations, F = %.6e, |grad| = %.3e (%s)",
            r,
            tnt.iterations,
            tnt.f,
            tnt.gradnorm,
            tnt.status.value,
        )
        if opts.verbose:
            levels.set_postfix(F=f"{tnt.f:.4e}", grad=f"{tnt.gradnorm:.2e}")

        if tnt.status is TNTStatus.ELAPSED_TIME or elapsed() >= opts.max_computation_time:
            status = SESyncStatus.ELAPSED_TIME
            break

        S = problem.compute_certificate_matrix(Y)
        cert = certify(
            S,
            min_eig_num_tol=opts.min_eig_num_tol,
            block_size=opts.lobpcg_block_size,
            max_iterations=opts.lobpcg_max_iterations,
            max_fill_factor=opts.lobpcg_max_fill_factor,
            drop_tol=opts.lobpcg_drop_tol,
            rng=np.random.default_rng(r if opts.seed is None else opts.seed + r),
        )
        result.verification_times.append(cert.elapsed_time)
        result.lobpcg_iters.append(cert.iterations)

        if cert.status is CertificateStatus.OPTIMAL:
            logger.info("Level r = %d: certified globally optimal.", r)
            status = SESyncStatus.GLOBAL_OPT
            break
        if cert.status is CertificateStatus.IMPRECISE:
            logger.warning(
                "Level r = %d: minimum eigenvalue %.3e not resolved to precision (residual %.3e).",
                r,
                cert.min_eigenvalue,
                cert.residual_norm,
            )
            status = SESyncStatus.EIG_IMPRECISION
            break

        result.escape_direction_curvatures.append(cert.min_eigenvalue)
        logger.info("Level r = %d: saddle point, lambda_min = %.6e", r, cert.min_eigenvalue)
        if r == opts.rmax:
            status = SESyncStatus.MAX_RANK
            break

        escaped, Yplus = escape_saddle(
            problem,
            Y,
            cert.min_eigenvalue,
            cert.eigenvector,
            opts.grad_norm_tol,
            opts.preconditioned_grad_norm_tol,
        )
        if not escaped:
            status = SESyncStatus.SADDLE_POINT
            break
        Y = Yplus
    levels.close()

    result.status = status
    if status is not SESyncStatus.ELAPSED_TIME:
        Lambda = problem.compute_Lambda(result.Yopt)
        result.Lambda = Lambda
        result.trLambda = float(Lambda.diagonal().sum())
        result.duality_gap = result.SDPval - result.trLambda
        result.xhat = problem.round_solution(result.Yopt)
        result.Fxhat = problem.evaluate_pose_objective(result.xhat)
        result.suboptimality_bound = result.Fxhat - result.trLambda

    result.total_computation_time = elapsed()
    logger.info("SE-Sync finished: %s in %.3f s", status.value, result.total_computation_time)
    return result


__all__ = ["SESyncStatus", "SESyncOpts", "SESyncResult", "sesync"]
