"""Kernels for the block-Stiefel manifold St(d, r)^n.

The rotational part of an iterate is an ``r x dn`` matrix whose ``d``-column
blocks ``Y_i`` satisfy ``Y_i^T Y_i = I_d``. Block ``i`` occupies columns
``[d*i, d*(i+1))``. Most kernels operate on the stacked ``(n, r, d)`` view.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import numpy as np

Array = np.ndarray


def symmetrize(mat: Array) -> Array:
    return 0.5 * (mat + np.swapaxes(mat, -1, -2))


def as_blocks(Y: Array, d: int) -> Array:
    """Reshape ``r x dn`` into the ``(n, r, d)`` stack of blocks."""
    r, cols = Y.shape
    if cols % d != 0:
        raise ValueError(f"Number of columns {cols} is not a multiple of d={d}.")
    return Y.reshape(r, cols // d, d).transpose(1, 0, 2)


def from_blocks(blocks: Array) -> Array:
    n, r, d = blocks.shape
    return blocks.transpose(1, 0, 2).reshape(r, n * d)


def map_blocks(fn: Callable[[Array], Array], blocks: Array, num_threads: int = 1) -> Array:
    """Apply a batched kernel to ``blocks`` in ordered chunks.

    Chunks are concatenated in their original order, so the result does not
    depend on ``num_threads``.
    """
    if num_threads <= 1 or blocks.shape[0] < 2 * num_threads:
        return fn(blocks)
    chunks = np.array_split(blocks, num_threads, axis=0)
    with ThreadPoolExecutor(max_workers=num_threads) as pool:
        parts = list(pool.map(fn, chunks))
    return np.concatenate(parts, axis=0)


def symmetric_block_products(Y: Array, G: Array, d: int) -> Array:
    """Return the ``(n, d, d)`` stack ``sym(Y_i^T G_i)``."""
    P = np.einsum("nri,nrj->nij", as_blocks(Y, d), as_blocks(G, d))
    return symmetrize(P)


def block_diag_multiply(V: Array, blocks: Array, d: int) -> Array:
    """Return the ``r x dn`` matrix with blocks ``V_i B_i``."""
    return from_blocks(np.einsum("nri,nij->nrj", as_blocks(V, d), blocks))


def project_tangent(Y: Array, V: Array, d: int) -> Array:
    """Orthogonal projection of ``V`` onto the tangent space at ``Y``."""
    return V - block_diag_multiply(Y, symmetric_block_products(Y, V, d), d)


def _polar(blocks: Array) -> Array:
    U, _, Vt = np.linalg.svd(blocks, full_matrices=False)
    return U @ Vt


def _special_orthogonal(blocks: Array) -> Array:
    U, _, Vt = np.linalg.svd(blocks, full_matrices=False)
    det = np.linalg.det(U @ Vt)
    U = U.copy()
    U[:, :, -1] *= np.sign(det)[:, None]
    return U @ Vt


def project_to_stiefel(Y: Array, d: int, num_threads: int = 1) -> Array:
    """Nearest point on St(d, r)^n (blockwise polar factor)."""
    return from_blocks(map_blocks(_polar, as_blocks(Y, d), num_threads))


def project_to_rotations(R: Array, d: int, num_threads: int = 1) -> Array:
    """Project each ``d x d`` block of a ``d x dn`` matrix onto SO(d)."""
    return from_blocks(map_blocks(_special_orthogonal, as_blocks(R, d), num_threads))


def retract(Y: Array, V: Array, d: int, num_threads: int = 1) -> Array:
    """Polar retraction of the tangent vector ``V`` at ``Y``."""
    return project_to_stiefel(Y + V, d, num_threads)


def random_point(r: int, n: int, d: int, rng: np.random.Generator) -> Array:
    """Sample a point on St(d, r)^n from the Haar measure."""
    G = rng.standard_normal((n, r, d))
    Q, R = np.linalg.qr(G)
    signs = np.sign(np.diagonal(R, axis1=1, axis2=2))
    signs[signs == 0] = 1.0
    return from_blocks(Q * signs[:, None, :])


__all__ = [
    "symmetrize",
    "as_blocks",
    "from_blocks",
    "map_blocks",
    "symmetric_block_products",
    "block_diag_multiply",
    "project_tangent",
    "project_to_stiefel",
    "project_to_rotations",
    "retract",
    "random_point",
]
