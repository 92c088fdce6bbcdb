"""Relative-pose measurements and the sparse data matrices built from them."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.linalg import expm
from scipy.sparse.csgraph import connected_components

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass(frozen=True)
class RelativePoseMeasurement:
    """Noisy measurement of the pose of node ``j`` in the frame of node ``i``.

    ``kappa`` and ``tau`` are the rotational and translational precisions of
    the isotropic Langevin / Gaussian noise model.
    """

    i: int
    j: int
    R: Array
    t: Array
    kappa: float = 1.0
    tau: float = 1.0

    def __post_init__(self) -> None:
        R = np.asarray(self.R, dtype=float)
        if R.ndim != 2 or R.shape[0] != R.shape[1]:
            raise ValueError(f"R must be a square matrix, got shape {R.shape}.")
        d = R.shape[0]
        if d not in (2, 3):
            raise ValueError(f"Only SE(2) and SE(3) measurements are supported, got d={d}.")
        t = np.asarray(self.t, dtype=float).reshape(-1)
        if t.shape[0] != d:
            raise ValueError(f"t must have length {d}, got {t.shape[0]}.")
        if int(self.i) < 0 or int(self.j) < 0:
            raise ValueError("Node ids must be nonnegative.")
        if int(self.i) == int(self.j):
            raise ValueError(f"Self-loop measurement on node {self.i}.")
        if not (np.isfinite(self.kappa) and self.kappa > 0.0):
            raise ValueError("kappa must be a positive finite number.")
        if not (np.isfinite(self.tau) and self.tau > 0.0):
            raise ValueError("tau must be a positive finite number.")

        object.__setattr__(self, "i", int(self.i))
        object.__setattr__(self, "j", int(self.j))
        object.__setattr__(self, "R", R)
        object.__setattr__(self, "t", t)
        object.__setattr__(self, "kappa", float(self.kappa))
        object.__setattr__(self, "tau", float(self.tau))

    @property
    def d(self) -> int:
        return int(self.R.shape[0])


@dataclass(frozen=True)
class DataMatrices:
    """Sparse data matrices of a special Euclidean synchronization problem.

    With ``X = [t | R]`` in ``R^{d x (n + dn)}`` the objective is
    ``tr(X M X^T)``, where

        M = [ L(W^tau)   V             ]
            [ V^T        L(G^rho) + Sigma ].
    """

    n: int
    d: int
    M: sp.csr_matrix
    translation_laplacian: sp.csr_matrix
    V: sp.csr_matrix
    rotation_laplacian: sp.csr_matrix
    Sigma: sp.csr_matrix
    incidence: sp.csr_matrix
    tau: Array

    @property
    def num_measurements(self) -> int:
        return int(self.tau.shape[0])

    @property
    def rotation_block(self) -> sp.csr_matrix:
        """Return ``L(G^rho) + Sigma``, the lower-right block of ``M``."""
        return (self.rotation_laplacian + self.Sigma).tocsr()


def num_poses(measurements: Sequence[RelativePoseMeasurement]) -> int:
    return 1 + max(max(m.i, m.j) for m in measurements)


def build_data_matrices(measurements: Sequence[RelativePoseMeasurement]) -> DataMatrices:
    """Assemble ``M`` and its blocks from a collection of measurements."""
    measurements = list(measurements)
    if not measurements:
        raise ValueError("At least one measurement is required.")
    d = measurements[0].d
    if any(m.d != d for m in measurements):
        raise ValueError("All measurements must share the same dimension d.")
    n = num_poses(measurements)
    N = n + d * n

    rows: List[Array] = []
    cols: List[Array] = []
    vals: List[Array] = []

    def add(r: Array, c: Array, v: Array) -> None:
        rows.append(np.asarray(r, dtype=np.int64).ravel())
        cols.append(np.asarray(c, dtype=np.int64).ravel())
        vals.append(np.asarray(v, dtype=float).ravel())

    eye = np.eye(d)
    inc_rows = []
    inc_cols = []
    inc_vals = []
    for e, m in enumerate(measurements):
        i, j = m.i, m.j
        bi = n + d * i + np.arange(d)
        bj = n + d * j + np.arange(d)
        ii_r, ii_c = np.meshgrid(bi, bi, indexing="ij")
        jj_r, jj_c = np.meshgrid(bj, bj, indexing="ij")
        ij_r, ij_c = np.meshgrid(bi, bj, indexing="ij")

        # Rotational term kappa * ||R_j - R_i Rij||_F^2.
        add(ii_r, ii_c, m.kappa * eye)
        add(jj_r, jj_c, m.kappa * eye)
        add(ij_r, ij_c, -m.kappa * m.R)
        add(ij_c, ij_r, -m.kappa * m.R)

        # Translational term tau * ||t_j - t_i - R_i tij||^2.
        add([i, j, i, j], [i, j, j, i], m.tau * np.array([1.0, 1.0, -1.0, -1.0]))
        add(np.full(d, i), bi, m.tau * m.t)
        add(np.full(d, j), bi, -m.tau * m.t)
        add(bi, np.full(d, i), m.tau * m.t)
        add(bi, np.full(d, j), -m.tau * m.t)
        add(ii_r, ii_c, m.tau * np.outer(m.t, m.t))

        inc_rows.extend([i, j])
        inc_cols.extend([e, e])
        inc_vals.extend([-1.0, 1.0])

    M = sp.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(N, N)
    ).tocsr()
    M.sum_duplicates()

    incidence = sp.coo_matrix((inc_vals, (inc_rows, inc_cols)), shape=(n, len(measurements))).tocsr()
    num_components, _ = connected_components(abs(incidence @ incidence.T), directed=False)
    if num_components != 1:
        raise ValueError(f"Measurement graph must be connected, found {num_components} components.")

    Lt = M[:n, :n].tocsr()
    V = M[:n, n:].tocsr()
    rotation_laplacian = _rotation_connection_laplacian(measurements, n, d)
    Sigma = (M[n:, n:] - rotation_laplacian).tocsr()
    Sigma.eliminate_zeros()
    tau = np.array([m.tau for m in measurements], dtype=float)

    logger.debug("Assembled data matrices: n=%d, d=%d, m=%d, nnz(M)=%d", n, d, len(measurements), M.nnz)
    return DataMatrices(
        n=n,
        d=d,
        M=M,
        translation_laplacian=Lt,
        V=V,
        rotation_laplacian=rotation_laplacian,
        Sigma=Sigma,
        incidence=incidence,
        tau=tau,
    )


def _rotation_connection_laplacian(
    measurements: Sequence[RelativePoseMeasurement], n: int, d: int
) -> sp.csr_matrix:
    blocks_r = []
    blocks_c = []
    blocks_v = []
    eye = np.eye(d)
    for m in measurements:
        bi = d * m.i + np.arange(d)
        bj = d * m.j + np.arange(d)
        for (ra, ca, val) in (
            (bi, bi, m.kappa * eye),
            (bj, bj, m.kappa * eye),
            (bi, bj, -m.kappa * m.R),
            (bj, bi, -m.kappa * m.R.T),
        ):
            rr, cc = np.meshgrid(ra, ca, indexing="ij")
            blocks_r.append(rr.ravel())
            blocks_c.append(cc.ravel())
            blocks_v.append(np.asarray(val).ravel())
    L = sp.coo_matrix(
        (np.concatenate(blocks_v), (np.concatenate(blocks_r), np.concatenate(blocks_c))),
        shape=(d * n, d * n),
    ).tocsr()
    L.sum_duplicates()
    return L


def pose_objective(data: DataMatrices, X: Array) -> float:
    """Evaluate ``tr(X M X^T)`` for ``X = [t | R]``."""
    X = np.asarray(X, dtype=float)
    return float(np.sum(X * (data.M @ X.T).T))


# ---------------------------------------------------------------------------
# Rotation helpers and synthetic data
# ---------------------------------------------------------------------------


def rotation_2d(angle: float) -> Array:
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s], [s, c]])


def quaternion_to_rotation(qx: float, qy: float, qz: float, qw: float) -> Array:
    q = np.array([qw, qx, qy, qz], dtype=float)
    norm = np.linalg.norm(q)
    if norm == 0.0:
        raise ValueError("Quaternion must be nonzero.")
    w, x, y, z = q / norm
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ]
    )


def random_rotation(d: int, rng: np.random.Generator, scale: float = np.pi) -> Array:
    """Sample a rotation by exponentiating a random skew-symmetric matrix."""
    A = rng.normal(scale=scale / np.sqrt(d), size=(d, d))
    return expm(0.5 * (A - A.T))


def generate_pose_graph(
    n: int,
    d: int = 2,
    loop_closure_prob: float = 0.0,
    rotation_noise: float = 0.0,
    translation_noise: float = 0.0,
    kappa: float = 1.0,
    tau: float = 1.0,
    seed: int = 0,
) -> tuple[List[RelativePoseMeasurement], Array]:
    """Generate a random pose graph (odometry cycle plus loop closures).

    Returns the measurements and the ground-truth poses ``[t | R]``.
    """
    if n < 2:
        raise ValueError("n must be at least 2.")
    rng = np.random.default_rng(seed)
    Rs = [np.eye(d)] + [random_rotation(d, rng) for _ in range(n - 1)]
    ts = [np.zeros(d)] + [rng.uniform(-5.0, 5.0, size=d) for _ in range(n - 1)]

    edges = [(k, k + 1) for k in range(n - 1)] + [(n - 1, 0)]
    for a in range(n):
        for b in range(a + 2, n):
            if (a, b) != (0, n - 1) and rng.uniform() < loop_closure_prob:
                edges.append((a, b))

    measurements = []
    for i, j in edges:
        Rij = Rs[i].T @ Rs[j]
        tij = Rs[i].T @ (ts[j] - ts[i])
        if rotation_noise > 0.0:
            Rij = Rij @ random_rotation(d, rng, scale=rotation_noise)
        if translation_noise > 0.0:
            tij = tij + rng.normal(scale=translation_noise, size=d)
        measurements.append(RelativePoseMeasurement(i=i, j=j, R=Rij, t=tij, kappa=kappa, tau=tau))

    truth = np.hstack([np.stack(ts, axis=1), np.hstack(Rs)])
    return measurements, truth


# ---------------------------------------------------------------------------
# g2o input
# ---------------------------------------------------------------------------


def _upper_triangular(values: Sequence[float], size: int) -> Array:
    mat = np.zeros((size, size), dtype=float)
    mat[np.triu_indices(size)] = values
    return mat + np.triu(mat, 1).T


def read_g2o(path: str | Path, max_measurements: Optional[int] = None) -> List[RelativePoseMeasurement]:
    """Read ``EDGE_SE2`` / ``EDGE_SE3:QUAT`` measurements from a g2o file.

    The isotropic precisions are the information-divergence-minimizing
    values obtained from each edge's information matrix.
    """
    measurements: List[RelativePoseMeasurement] = []
    with open(path, "r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            tokens = line.split()
            if not tokens:
                continue
            tag = tokens[0]
            try:
                if tag == "EDGE_SE2":
                    values = [float(v) for v in tokens[3:12]]
                    if len(values) != 9:
                        raise ValueError("expected 9 numeric fields")
                    dx, dy, dtheta = values[:3]
                    info = _upper_triangular(values[3:], 3)
                    tau = 2.0 / float(np.trace(np.linalg.inv(info[:2, :2])))
                    kappa = float(info[2, 2])
                    meas = RelativePoseMeasurement(
                        i=int(tokens[1]), j=int(tokens[2]), R=rotation_2d(dtheta), t=[dx, dy], kappa=kappa, tau=tau
                    )
                elif tag == "EDGE_SE3:QUAT":
                    values = [float(v) for v in tokens[3:31]]
                    if len(values) != 28:
                        raise ValueError("expected 28 numeric fields")
                    dx, dy, dz, qx, qy, qz, qw = values[:7]
                    info = _upper_triangular(values[7:], 6)
                    tau = 3.0 / float(np.trace(np.linalg.inv(info[:3, :3])))
                    kappa = 3.0 / (2.0 * float(np.trace(np.linalg.inv(info[3:, 3:]))))
                    meas = RelativePoseMeasurement(
                        i=int(tokens[1]),
                        j=int(tokens[2]),
                        R=quaternion_to_rotation(qx, qy, qz, qw),
                        t=[dx, dy, dz],
                        kappa=kappa,
                        tau=tau,
                    )
                else:
                    continue
            except (ValueError, np.linalg.LinAlgError) as exc:
                raise ValueError(f"{path}:{lineno}: malformed {tag} line ({exc}).") from exc
            measurements.append(meas)
            if max_measurements is not None and len(measurements) >= max_measurements:
                break

    if not measurements:
        raise ValueError(f"No EDGE_SE2 or EDGE_SE3:QUAT measurements found in {path}.")
    logger.info("Read %d measurements from %s", len(measurements), path)
    return measurements


__all__ = [
    "RelativePoseMeasurement",
    "DataMatrices",
    "build_data_matrices",
    "num_poses",
    "pose_objective",
    "rotation_2d",
    "quaternion_to_rotation",
    "random_rotation",
    "generate_pose_graph",
    "read_g2o",
]
