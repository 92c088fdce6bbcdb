"""Minimum-eigenpair certification of first-order critical points.

A critical point ``Y`` of the rank-restricted problem is a global minimizer
of the semidefinite relaxation iff its certificate matrix
``S = M - blkdiag(0, Lambda(Y))`` is positive semidefinite. When it is not,
the eigenvector of the most negative eigenvalue is a direction of negative
curvature that escapes the saddle at the next rank.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import List, Optional, Tuple
import warnings

import numpy as np
import scipy.sparse as sp
from scipy.linalg import eigh
from scipy.sparse.csgraph import reverse_cuthill_mckee
from scipy.sparse.linalg import ArpackNoConvergence, LinearOperator, eigsh, lobpcg, spsolve_triangular

from .linalg import is_positive_definite

logger = logging.getLogger(__name__)

Array = np.ndarray


class IncompleteLDLPreconditioner:
    """Incomplete symmetric indefinite factorization ``P A P^T ~ L D L^T``.

    Factorization is left-looking with 1x1 pivots. After column ``k`` of
    ``L`` is formed, entries with ``|l| <= drop_tol * ||L_k||_1`` are dropped
    and at most ``ceil(max_fill_factor * nnz(A) / dim(A))`` of the largest
    off-diagonal entries are kept. The preconditioner applies
    ``P^T L^{-T} |D|^{-1} L^{-1} P``, which is positive definite even when
    ``A`` is indefinite. Magnitudes in ``|D|`` are floored at
    ``min_pivot_ratio * max|D|``, which keeps the exact zero pivots of a
    certificate matrix (its kernel contains the translation gauge) bounded.
    """

    def __init__(
        self,
        A: sp.spmatrix,
        max_fill_factor: float = 3.0,
        drop_tol: float = 1e-3,
        reorder: bool = True,
        min_pivot_ratio: float = 1e-2,
    ) -> None:
        if max_fill_factor < 1.0:
            raise ValueError("max_fill_factor must be at least 1.")
        if not (0.0 <= drop_tol <= 1.0):
            raise ValueError("drop_tol must be in [0, 1].")
        if not (0.0 <= min_pivot_ratio < 1.0):
            raise ValueError("min_pivot_ratio must be in [0, 1).")
        A = sp.csr_matrix(A)
        if A.shape[0] != A.shape[1]:
            raise ValueError("Matrix must be square.")
        self.dim = A.shape[0]
        self.max_fill_factor = float(max_fill_factor)
        self.drop_tol = float(drop_tol)
        self.max_column_fill = max(1, int(np.ceil(max_fill_factor * A.nnz / max(self.dim, 1))))

        if reorder:
            self.perm = np.asarray(reverse_cuthill_mckee(A, symmetric_mode=True), dtype=np.int64)
        else:
            self.perm = np.arange(self.dim)
        Ap = A[self.perm][:, self.perm].tocsc()
        Ap.sort_indices()
        self.L, self.D = self._factor(Ap)
        self._Lt = self.L.T.tocsr()
        abs_D = np.abs(self.D)
        floor = min_pivot_ratio * abs_D.max() if self.dim else 0.0
        self._abs_D_inv = 1.0 / np.maximum(abs_D, floor)

    def _factor(self, A: sp.csc_matrix) -> Tuple[sp.csr_matrix, Array]:
        n = self.dim
        D = np.zeros(n)
        col_rows: List[Array] = []
        col_vals: List[Array] = []
        # row_entries[k] holds (j, L_kj) for j < k
        row_entries: List[List[Tuple[int, float]]] = [[] for _ in range(n)]
        work = np.zeros(n)
        diag = np.abs(A.diagonal())
        pivot_floor = np.sqrt(np.finfo(float).eps) * (diag.max() if n and diag.max() > 0 else 1.0)

        for k in range(n):
            start, end = A.indptr[k], A.indptr[k + 1]
            rows = A.indices[start:end]
            vals = A.data[start:end]
            lower = rows >= k
            touched = [rows[lower]]
            work[rows[lower]] += vals[lower]

            for j, l_kj in row_entries[k]:
                rj = col_rows[j]
                mask = rj >= k
                work[rj[mask]] -= col_vals[j][mask] * (l_kj * D[j])
                touched.append(rj[mask])

            pattern = np.unique(np.concatenate(touched))
            pivot = work[k]
            if abs(pivot) <= pivot_floor:
                pivot = pivot_floor if pivot >= 0.0 else -pivot_floor
            D[k] = pivot

            below = pattern[pattern > k]
            column = work[below] / pivot
            work[pattern] = 0.0
            work[k] = 0.0

            keep = column != 0.0
            if np.any(keep):
                norm1 = float(np.abs(column).sum())
                keep &= np.abs(column) > self.drop_tol * norm1
            below, column = below[keep], column[keep]
            if below.size > self.max_column_fill:
                largest = np.argpartition(np.abs(column), -self.max_column_fill)[-self.max_column_fill :]
                largest.sort()
                below, column = below[largest], column[largest]

            col_rows.append(below)
            col_vals.append(column)
            for i, l_ik in zip(below.tolist(), column.tolist()):
                row_entries[i].append((k, l_ik))

        lengths = [r.size for r in col_rows]
        cols = np.repeat(np.arange(n), lengths)
        rows = np.concatenate(col_rows) if n else np.zeros(0, dtype=np.int64)
        vals = np.concatenate(col_vals) if n else np.zeros(0)
        rows = np.concatenate([rows, np.arange(n)])
        cols = np.concatenate([cols, np.arange(n)])
        vals = np.concatenate([vals, np.ones(n)])
        L = sp.csr_matrix((vals, (rows, cols)), shape=(n, n))
        return L, D

    @property
    def nnz(self) -> int:
        """Number of stored nonzeros of ``L`` (unit diagonal included)."""
        return int(self.L.nnz)

    def column_counts(self) -> Array:
        """Strictly-lower nonzeros per column of ``L``."""
        return np.diff(sp.csc_matrix(self.L).indptr) - 1

    def solve(self, b: Array) -> Array:
        b = np.asarray(b, dtype=float)
        vector = b.ndim == 1
        B = b.reshape(self.dim, -1)
        x = B[self.perm]
        x = spsolve_triangular(self.L, x, lower=True, unit_diagonal=True)
        x = x * self._abs_D_inv[:, None]
        x = spsolve_triangular(self._Lt, x, lower=False, unit_diagonal=True)
        out = np.empty_like(x)
        out[self.perm] = x
        return out.ravel() if vector else out

    def as_linear_operator(self) -> LinearOperator:
        return LinearOperator((self.dim, self.dim), matvec=self.solve, matmat=self.solve, dtype=float)


class CertificateStatus(str, Enum):
    OPTIMAL = "optimal"
    SADDLE = "saddle"
    IMPRECISE = "imprecise"


@dataclass
class CertificationResult:
    """Outcome of testing ``S >= -tol * I``.

    ``min_eigenvalue`` and ``eigenvector`` are ``None`` when optimality was
    established directly from a factorization of ``S + tol * I``.
    """

    status: CertificateStatus
    min_eigenvalue: Optional[float]
    eigenvector: Optional[Array]
    iterations: int
    converged: bool
    residual_norm: float
    elapsed_time: float


@dataclass
class MinEigenpair:
    eigenvalue: float
    eigenvector: Array
    iterations: int
    converged: bool
    residual_norm: float


def _residual(S: sp.spmatrix, lam: float, v: Array) -> float:
    return float(np.linalg.norm(S @ v - lam * v))


def compute_min_eigenpair(
    S: sp.spmatrix,
    block_size: int = 4,
    max_iterations: int = 100,
    tolerance: float = 5e-4,
    max_fill_factor: float = 3.0,
    drop_tol: float = 1e-3,
    rng: Optional[np.random.Generator] = None,
) -> MinEigenpair:
    """Algebraically smallest eigenpair of a sparse symmetric matrix.

    Uses preconditioned LOBPCG with an incomplete LDL^T preconditioner. If
    that run does not reach ``tolerance`` within ``max_iterations``, LOBPCG
    is restarted once without the preconditioner from the best vector found,
    with the same iteration limit; ``iterations`` counts both runs.
    Problems too small for a block iteration of size ``block_size`` are
    solved densely. ``converged`` reports whether the residual
    ``||S v - lambda v||`` reached ``tolerance``.
    """
    S = sp.csr_matrix(S)
    dim = S.shape[0]
    if block_size < 1:
        raise ValueError("block_size must be positive.")

    if dim <= 5 * block_size + 1:
        vals, vecs = eigh(S.toarray(), subset_by_index=[0, 0])
        lam, v = float(vals[0]), vecs[:, 0]
        res = _residual(S, lam, v)
        return MinEigenpair(lam, v, 0, res <= tolerance, res)

    rng = rng if rng is not None else np.random.default_rng(0)
    precon = IncompleteLDLPreconditioner(S, max_fill_factor=max_fill_factor, drop_tol=drop_tol)
    logger.debug(
        "ILDL preconditioner: dim=%d nnz(S)=%d nnz(L)=%d max column fill=%d",
        dim,
        S.nnz,
        precon.nnz,
        precon.max_column_fill,
    )
    X0 = rng.standard_normal((dim, block_size))
    try:
        pair = _lobpcg_min_eigenpair(S, X0, precon.as_linear_operator(), tolerance, max_iterations)
        if pair.converged:
            return pair
        logger.warning(
            "Preconditioned LOBPCG stopped at residual %.3e after %d iterations; retrying without preconditioner.",
            pair.residual_norm,
            pair.iterations,
        )
        X1 = rng.standard_normal((dim, block_size))
        X1[:, 0] = pair.eigenvector
        retry = _lobpcg_min_eigenpair(S, X1, None, tolerance, max_iterations)
    except np.linalg.LinAlgError as exc:
        logger.warning("LOBPCG broke down (%s); falling back to Lanczos.", exc)
        return _lanczos_min_eigenpair(S, X0[:, 0], tolerance, max_iterations)

    # Rayleigh quotients bound lambda_min from above, so the lower one is kept.
    best = min((pair, retry), key=lambda p: (not p.converged, p.eigenvalue))
    return MinEigenpair(
        best.eigenvalue,
        best.eigenvector,
        pair.iterations + retry.iterations,
        best.converged,
        best.residual_norm,
    )


def _unit_pair(S: sp.spmatrix, v: Array, iterations: int, tolerance: float) -> MinEigenpair:
    v = np.asarray(v, dtype=float)
    v = v / np.linalg.norm(v)
    lam = float(v @ (S @ v))
    res = _residual(S, lam, v)
    return MinEigenpair(lam, v, iterations, res <= tolerance, res)


def _lobpcg_min_eigenpair(
    S: sp.csr_matrix,
    X0: Array,
    M: Optional[LinearOperator],
    tolerance: float,
    max_iterations: int,
) -> MinEigenpair:
    iterations = 0

    def count_iteration(*_: object) -> None:
        nonlocal iterations
        iterations += 1

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        vals, vecs = lobpcg(
            S,
            X0,
            M=M,
            tol=tolerance,
            maxiter=max_iterations,
            largest=False,
            callback=count_iteration,
        )
    idx = int(np.argmin(vals))
    return _unit_pair(S, vecs[:, idx], min(iterations, max_iterations), tolerance)


def _lanczos_min_eigenpair(S: sp.csr_matrix, v0: Array, tolerance: float, max_iterations: int) -> MinEigenpair:
    dim = S.shape[0]
    try:
        vals, vecs = eigsh(S, k=1, which="SA", tol=tolerance, maxiter=max_iterations * dim)
    except ArpackNoConvergence as err:
        if len(err.eigenvalues) == 0:
            return _unit_pair(S, v0, max_iterations, tolerance)
        vals, vecs = err.eigenvalues, err.eigenvectors
    idx = int(np.argmin(vals))
    return _unit_pair(S, vecs[:, idx], max_iterations, tolerance)


def certify(
    S: sp.spmatrix,
    min_eig_num_tol: float = 1e-3,
    block_size: int = 4,
    max_iterations: int = 100,
    max_fill_factor: float = 3.0,
    drop_tol: float = 1e-3,
    rng: Optional[np.random.Generator] = None,
) -> CertificationResult:
    """Classify a critical point from its certificate matrix ``S``.

    * ``OPTIMAL``: ``lambda_min(S) >= -min_eig_num_tol``, established either
      by a factorization of ``S + min_eig_num_tol * I`` or by the eigen-solver.
    * ``SADDLE``: a converged eigenpair with ``lambda < -min_eig_num_tol``.
    * ``IMPRECISE``: ``lambda < -min_eig_num_tol`` but the eigen-solver did
      not reach the required accuracy.
    """
    start = time.perf_counter()
    S = sp.csr_matrix(S)
    dim = S.shape[0]

    if is_positive_definite(S + min_eig_num_tol * sp.identity(dim, format="csr")):
        logger.debug("Certificate matrix + %.1e I is positive definite.", min_eig_num_tol)
        return CertificationResult(
            CertificateStatus.OPTIMAL, None, None, 0, True, 0.0, time.perf_counter() - start
        )

    pair = compute_min_eigenpair(
        S,
        block_size=block_size,
        max_iterations=max_iterations,
        tolerance=0.5 * min_eig_num_tol,
        max_fill_factor=max_fill_factor,
        drop_tol=drop_tol,
        rng=rng,
    )
    if pair.eigenvalue >= -min_eig_num_tol:
        status = CertificateStatus.OPTIMAL
    elif not pair.converged:
        status = CertificateStatus.IMPRECISE
    else:
        status = CertificateStatus.SADDLE
    logger.debug(
        "Minimum eigenvalue %.6e (residual %.3e, %d LOBPCG iterations): %s",
        pair.eigenvalue,
        pair.residual_norm,
        pair.iterations,
        status.value,
    )
    return CertificationResult(
        status=status,
        min_eigenvalue=pair.eigenvalue,
        eigenvector=pair.eigenvector,
        iterations=pair.iterations,
        converged=pair.converged,
        residual_norm=pair.residual_norm,
        elapsed_time=time.perf_counter() - start,
    )


__all__ = [
    "IncompleteLDLPreconditioner",
    "CertificateStatus",
    "CertificationResult",
    "MinEigenpair",
    "compute_min_eigenpair",
    "certify",
]
