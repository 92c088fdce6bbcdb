"""Sparse symmetric factorization helpers shared by the problem and certifier."""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import SuperLU, eigsh, splu

logger = logging.getLogger(__name__)

Array = np.ndarray


def symmetric_splu(A: sp.spmatrix) -> SuperLU:
    """Sparse LU of a symmetric matrix using a symmetric ordering.

    With ``SymmetricMode`` and diagonal pivoting the factorization is
    ``P A P^T = L D L^T`` with ``U = D L^T``.

    Raises:
        RuntimeError: If SuperLU encounters an exactly singular pivot.
    """
    return splu(
        sp.csc_matrix(A),
        permc_spec="MMD_AT_PLUS_A",
        diag_pivot_thresh=0.0,
        options=dict(SymmetricMode=True),
    )


def is_positive_definite(A: sp.spmatrix) -> bool:
    """Test ``A > 0`` from the pivots of a symmetric sparse factorization.

    By Sylvester's law of inertia ``A`` is positive definite iff every pivot
    of ``P A P^T = L D L^T`` is positive. An exactly singular pivot, or an
    unsymmetric row permutation, returns ``False``.
    """
    try:
        lu = symmetric_splu(A)
    except RuntimeError:
        return False
    if not np.array_equal(lu.perm_r, lu.perm_c):
        logger.debug("Symmetric factorization pivoted off the diagonal; inertia test inconclusive.")
        return False
    pivots = lu.U.diagonal()
    return bool(np.all(np.isfinite(pivots)) and np.all(pivots > 0.0))


def right_multiply(Y: Array, A: sp.spmatrix) -> Array:
    """Return the dense product ``Y @ A`` for a sparse ``A``."""
    return np.asarray((A.T @ Y.T).T)


def max_eigenvalue(A: sp.spmatrix) -> float:
    """Largest algebraic eigenvalue of a symmetric matrix."""
    dim = A.shape[0]
    if dim <= 64:
        return float(np.linalg.eigvalsh(sp.csr_matrix(A).toarray())[-1])
    vals = eigsh(sp.csr_matrix(A), k=1, which="LA", return_eigenvectors=False)
    return float(vals[0])


__all__ = ["symmetric_splu", "is_positive_definite", "right_multiply", "max_eigenvalue"]
