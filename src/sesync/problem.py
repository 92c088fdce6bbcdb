"""The SE-Sync problem: rank-restricted relaxation over St(d, r)^n.

``SESyncProblem`` exposes everything the Riemannian Staircase needs from a
synchronization instance: objective, gradients, Hessian-vector products,
preconditioning, retraction, Lagrange multipliers, the sparse certificate
matrix and rounding. The relaxation rank is never stored on the problem; it
is always the number of rows of the iterate passed in.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.linalg import cho_solve

from .linalg import max_eigenvalue, right_multiply, symmetric_splu
from .manifold import (
    as_blocks,
    block_diag_multiply,
    project_tangent,
    project_to_rotations,
    random_point,
    retract,
    symmetric_block_products,
)
from .measurements import DataMatrices, RelativePoseMeasurement, build_data_matrices, pose_objective

logger = logging.getLogger(__name__)

Array = np.ndarray

FORMULATIONS = ("simplified", "explicit")
PRECONDITIONERS = ("none", "jacobi", "block_cholesky", "regularized_cholesky")
PROJECTION_FACTORIZATIONS = ("cholesky", "qr")
INITIALIZATIONS = ("chordal", "random")


class _TranslationSolver:
    """Solves systems in the translation Laplacian with pose 0 anchored."""

    def __init__(self, data: DataMatrices, factorization: str) -> None:
        self.factorization = factorization
        self._lu = None
        self._R: Optional[Array] = None
        if factorization == "cholesky":
            self._lu = symmetric_splu(data.translation_laplacian[1:, 1:])
        else:
            # L(W^tau) = A Omega A^T, so the R factor of Omega^{1/2} A^T is a
            # Cholesky factor of the reduced Laplacian.
            W = sp.diags(np.sqrt(data.tau)) @ data.incidence[1:, :].T
            self._R = np.linalg.qr(W.toarray(), mode="r")

    def solve(self, b: Array) -> Array:
        if self._lu is not None:
            return np.asarray(self._lu.solve(np.asarray(b, dtype=float)))
        return cho_solve((self._R, False), b)


class _Formulation:
    """Strategy object: how an iterate is laid out and what ``Y Q`` means."""

    name = ""

    def __init__(self, data: DataMatrices, translations: _TranslationSolver) -> None:
        self.data = data
        self.translations = translations

    @property
    def offset(self) -> int:
        """Number of leading (Euclidean) translation columns."""
        raise NotImplementedError

    @property
    def num_columns(self) -> int:
        return self.offset + self.data.d * self.data.n

    def data_product(self, Y: Array) -> Array:
        raise NotImplementedError

    def preconditioner_matrix(self) -> sp.csr_matrix:
        raise NotImplementedError

    def escape_row(self, v: Array) -> Array:
        raise NotImplementedError


class _SimplifiedFormulation(_Formulation):
    """Translations eliminated analytically; ``Y`` is ``r x dn``.

    ``Q = L(G^rho) + Sigma - V^T L(W^tau)^+ V`` is never formed; products with
    it go through the anchored translation Laplacian.
    """

    name = "simplified"

    def __init__(self, data: DataMatrices, translations: _TranslationSolver) -> None:
        super().__init__(data, translations)
        self._rotation_block = data.rotation_block
        self._V_reduced = data.V[1:, :].tocsr()

    @property
    def offset(self) -> int:
        return 0

    def data_product(self, Y: Array) -> Array:
        t_reduced = -self.translations.solve(self._V_reduced @ Y.T).T
        return right_multiply(Y, self._rotation_block) + right_multiply(t_reduced, self._V_reduced)

    def preconditioner_matrix(self) -> sp.csr_matrix:
        return self._rotation_block

    def escape_row(self, v: Array) -> Array:
        return v[self.data.n :]


class _ExplicitFormulation(_Formulation):
    """Translations kept as variables; ``Y = [t | R]`` is ``r x (n + dn)``."""

    name = "explicit"

    @property
    def offset(self) -> int:
        return self.data.n

    def data_product(self, Y: Array) -> Array:
        return right_multiply(Y, self.data.M)

    def preconditioner_matrix(self) -> sp.csr_matrix:
        return self.data.M

    def escape_row(self, v: Array) -> Array:
        return v


class SESyncProblem:
    """Special Euclidean synchronization problem instance.

    Args:
        measurements: Relative-pose measurements defining the pose graph.
        formulation: ``"simplified"`` (translations eliminated) or ``"explicit"``.
        preconditioner: Preconditioner used by the trust-region solver.
        projection_factorization: How the anchored translation Laplacian is
            factored (``"cholesky"`` sparse symmetric LU or dense ``"qr"``).
        reg_chol_max_condition_number: Maximum admissible condition number of
            the regularized Cholesky preconditioner.
        num_threads: Worker threads used by the per-pose block kernels.
    """

    def __init__(
        self,
        measurements: Sequence[RelativePoseMeasurement],
        formulation: Literal["simplified", "explicit"] = "simplified",
        preconditioner: Literal["none", "jacobi", "block_cholesky", "regularized_cholesky"] = "regularized_cholesky",
        projection_factorization: Literal["cholesky", "qr"] = "cholesky",
        reg_chol_max_condition_number: float = 1e6,
        num_threads: int = 1,
    ) -> None:
        if formulation not in FORMULATIONS:
            raise ValueError(f"formulation must be one of {FORMULATIONS}.")
        if preconditioner not in PRECONDITIONERS:
            raise ValueError(f"preconditioner must be one of {PRECONDITIONERS}.")
        if projection_factorization not in PROJECTION_FACTORIZATIONS:
            raise ValueError(f"projection_factorization must be one of {PROJECTION_FACTORIZATIONS}.")
        if reg_chol_max_condition_number <= 1.0:
            raise ValueError("reg_chol_max_condition_number must be greater than 1.")
        if int(num_threads) < 1:
            raise ValueError("num_threads must be positive.")

        self.measurements = tuple(measurements)
        self.data = build_data_matrices(self.measurements)
        self.n = self.data.n
        self.d = self.data.d
        self.preconditioner_type = preconditioner
        self.reg_chol_max_condition_number = float(reg_chol_max_condition_number)
        self.num_threads = int(num_threads)

        self._translations = _TranslationSolver(self.data, projection_factorization)
        if formulation == "simplified":
            self._formulation: _Formulation = _SimplifiedFormulation(self.data, self._translations)
        else:
            self._formulation = _ExplicitFormulation(self.data, self._translations)
        self._setup_preconditioner()

        logger.info(
            "Constructed %s SE(%d) problem with %d poses and %d measurements",
            formulation,
            self.d,
            self.n,
            len(self.measurements),
        )

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    @property
    def formulation(self) -> str:
        return self._formulation.name

    @property
    def num_columns(self) -> int:
        """Number of columns of an iterate (``dn`` or ``n + dn``)."""
        return self._formulation.num_columns

    @property
    def dim(self) -> int:
        """Dimension of the (explicit) certificate matrix, ``n + dn``."""
        return self.n + self.d * self.n

    def _offset(self) -> int:
        return self._formulation.offset

    def rotations(self, Y: Array) -> Array:
        """Return the rotational (block-Stiefel) columns of ``Y``."""
        return Y[:, self._offset() :]

    def _check(self, Y: Array) -> Array:
        Y = np.asarray(Y, dtype=float)
        if Y.ndim != 2 or Y.shape[1] != self.num_columns:
            raise ValueError(f"Iterate must have {self.num_columns} columns, got shape {Y.shape}.")
        return Y

    # ------------------------------------------------------------------
    # Objective and derivatives
    # ------------------------------------------------------------------

    def evaluate_objective(self, Y: Array) -> float:
        """F(Y) = tr(Y Q Y^T)."""
        Y = self._check(Y)
        return float(np.sum(Y * self._formulation.data_product(Y)))

    def euclidean_gradient(self, Y: Array) -> Array:
        return 2.0 * self._formulation.data_product(self._check(Y))

    def tangent_space_projection(self, Y: Array, V: Array) -> Array:
        off = self._offset()
        P = np.array(V, dtype=float, copy=True)
        P[:, off:] = project_tangent(Y[:, off:], V[:, off:], self.d)
        return P

    def riemannian_gradient(self, Y: Array, nabla_F: Optional[Array] = None) -> Array:
        if nabla_F is None:
            nabla_F = self.euclidean_gradient(Y)
        return self.tangent_space_projection(Y, nabla_F)

    def riemannian_hessian_vector_product(self, Y: Array, nabla_F: Array, Ydot: Array) -> Array:
        """Hess F(Y)[Ydot] = Proj_Y(2 Ydot Q - Ydot SymBlockDiag(Y^T nabla_F))."""
        off = self._offset()
        H = 2.0 * self._formulation.data_product(Ydot)
        multipliers = symmetric_block_products(Y[:, off:], nabla_F[:, off:], self.d)
        H[:, off:] -= block_diag_multiply(Ydot[:, off:], multipliers, self.d)
        return self.tangent_space_projection(Y, H)

    def retract(self, Y: Array, V: Array) -> Array:
        off = self._offset()
        Yplus = np.empty_like(Y, dtype=float)
        Yplus[:, :off] = Y[:, :off] + V[:, :off]
        Yplus[:, off:] = retract(Y[:, off:], V[:, off:], self.d, self.num_threads)
        return Yplus

    # ------------------------------------------------------------------
    # Preconditioning
    # ------------------------------------------------------------------

    def _setup_preconditioner(self) -> None:
        A = self._formulation.preconditioner_matrix()
        kind = self.preconditioner_type
        self._jacobi_inv: Optional[Array] = None
        self._block_inv: Optional[Array] = None
        self._precon_lu = None
        if kind == "jacobi":
            self._jacobi_inv = 1.0 / A.diagonal()
        elif kind == "block_cholesky":
            off = self._offset()
            self._jacobi_inv = 1.0 / A.diagonal()[:off]
            rot = A[off:, off:].tocsr()
            idx = np.arange(self.d)
            blocks = np.stack(
                [rot[self.d * i + idx][:, self.d * i + idx].toarray() for i in range(self.n)], axis=0
            )
            L = np.linalg.cholesky(blocks)
            L_inv = np.linalg.inv(L)
            self._block_inv = np.swapaxes(L_inv, 1, 2) @ L_inv
        elif kind == "regularized_cholesky":
            lambda_max = max_eigenvalue(A)
            reg = lambda_max / self.reg_chol_max_condition_number
            self._precon_lu = symmetric_splu(A + reg * sp.identity(A.shape[0], format="csr"))
            logger.debug("Regularized Cholesky preconditioner: lambda_max=%.3e, shift=%.3e", lambda_max, reg)

    def precondition(self, Y: Array, V: Array) -> Array:
        """Apply the preconditioner to a tangent vector ``V`` at ``Y``."""
        kind = self.preconditioner_type
        if kind == "none":
            return np.array(V, dtype=float, copy=True)
        if kind == "jacobi":
            W = V * self._jacobi_inv[None, :]
        elif kind == "block_cholesky":
            off = self._offset()
            W = np.empty_like(V, dtype=float)
            W[:, :off] = V[:, :off] * self._jacobi_inv[None, :]
            W[:, off:] = block_diag_multiply(V[:, off:], self._block_inv, self.d)
        else:
            W = np.asarray(self._precon_lu.solve(np.ascontiguousarray(V.T))).T
        return self.tangent_space_projection(Y, W)

    # ------------------------------------------------------------------
    # Initialization and rank changes
    # ------------------------------------------------------------------

    def recover_translations(self, R: Array) -> Array:
        """Optimal translations for the rotational part ``R`` (pose 0 at the origin)."""
        t_reduced = -self._translations.solve(self.data.V[1:, :] @ R.T).T
        return np.hstack([np.zeros((R.shape[0], 1)), t_reduced])

    def _assemble(self, R: Array) -> Array:
        if self._offset() == 0:
            return R
        return np.hstack([self.recover_translations(R), R])

    def lift(self, Y: Array, r: int) -> Array:
        """Embed ``Y`` at a higher relaxation rank by appending zero rows."""
        if r < Y.shape[0]:
            raise ValueError(f"Cannot lift a rank-{Y.shape[0]} iterate to rank {r}.")
        return np.vstack([Y, np.zeros((r - Y.shape[0], Y.shape[1]))])

    def chordal_initialization(self, r: int) -> Array:
        """Chordal (linear least-squares) rotation estimate lifted to rank ``r``."""
        d = self.d
        L = self.data.rotation_laplacian.tocsc()
        lu = symmetric_splu(L[d:, d:])
        Z = -np.asarray(lu.solve(L[d:, :d].toarray()))
        R = np.hstack([np.eye(d), Z.T])
        R = project_to_rotations(R, d, self.num_threads)
        return self._assemble(self.lift(R, r))

    def random_sample(self, r: int, rng: Optional[np.random.Generator] = None) -> Array:
        rng = rng if rng is not None else np.random.default_rng()
        return self._assemble(random_point(r, self.n, self.d, rng))

    def initialize(self, r: int, method: str = "chordal", rng: Optional[np.random.Generator] = None) -> Array:
        if method == "chordal":
            return self.chordal_initialization(r)
        if method == "random":
            return self.random_sample(r, rng)
        raise ValueError(f"initialization must be one of {INITIALIZATIONS}.")

    # ------------------------------------------------------------------
    # Certification
    # ------------------------------------------------------------------

    def compute_Lambda_blocks(self, Y: Array) -> Array:
        """Lagrange multiplier blocks ``Lambda_i = sym(Y_i^T (Y Q)_i)``."""
        off = self._offset()
        G = self._formulation.data_product(self._check(Y))
        return symmetric_block_products(Y[:, off:], G[:, off:], self.d)

    def compute_Lambda(self, Y: Array) -> sp.csr_matrix:
        """Symmetric block-diagonal ``dn x dn`` Lagrange multiplier matrix."""
        return _block_diagonal(self.compute_Lambda_blocks(Y), 0, self.d * self.n)

    def compute_certificate_matrix(self, Y: Array) -> sp.csr_matrix:
        """Sparse certificate ``S = M - blkdiag(0, Lambda(Y))`` of size ``n + dn``."""
        Lambda = _block_diagonal(self.compute_Lambda_blocks(Y), self.n, self.dim)
        S = (self.data.M - Lambda).tocsr()
        S.sum_duplicates()
        return S

    def escape_direction(self, v: Array, r: int) -> Array:
        """Tangent direction at the rank-``r + 1`` embedding of a rank-``r`` point.

        Only the new (last) row is nonzero; it carries the eigenvector ``v``
        of the certificate matrix.
        """
        v = np.asarray(v, dtype=float).reshape(-1)
        if v.shape[0] != self.dim:
            raise ValueError(f"Eigenvector must have length {self.dim}, got {v.shape[0]}.")
        Ydot = np.zeros((r + 1, self.num_columns))
        Ydot[-1, :] = self._formulation.escape_row(v)
        return Ydot

    # ------------------------------------------------------------------
    # Rounding
    # ------------------------------------------------------------------

    def round_solution(self, Y: Array) -> Array:
        """Round a rank-``r`` solution to ``xhat = [t | R]`` in SE(d)^n."""
        d = self.d
        R_relaxed = self.rotations(self._check(Y))
        _, s, Vt = np.linalg.svd(R_relaxed, full_matrices=False)
        R = s[:d, None] * Vt[:d, :]

        dets = np.linalg.det(as_blocks(R, d))
        if np.count_nonzero(dets > 0.0) < self.n / 2.0:
            R[-1, :] *= -1.0
        R = project_to_rotations(R, d, self.num_threads)
        t = self.recover_translations(R)
        return np.hstack([t, R])

    def evaluate_pose_objective(self, xhat: Array) -> float:
        """Objective of a full pose estimate ``[t | R]``."""
        return pose_objective(self.data, xhat)


def _block_diagonal(blocks: Array, offset: int, dim: int) -> sp.csr_matrix:
    n, d, _ = blocks.shape
    base = offset + d * np.arange(n)
    idx = np.arange(d)
    rows = np.broadcast_to(base[:, None, None] + idx[None, :, None], blocks.shape)
    cols = np.broadcast_to(base[:, None, None] + idx[None, None, :], blocks.shape)
    return sp.coo_matrix((blocks.ravel(), (rows.ravel(), cols.ravel())), shape=(dim, dim)).tocsr()


__all__ = [
    "SESyncProblem",
    "FORMULATIONS",
    "PRECONDITIONERS",
    "PROJECTION_FACTORIZATIONS",
    "INITIALIZATIONS",
]
