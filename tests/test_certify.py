import numpy as np
import pytest
import scipy.sparse as sp

from sesync.certify import (
    CertificateStatus,
    IncompleteLDLPreconditioner,
    certify,
    compute_min_eigenpair,
)
from sesync.measurements import generate_pose_graph
from sesync.problem import SESyncProblem


def tridiagonal_spd(n):
    return sp.diags([-np.ones(n - 1), 4.0 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1], format="csr")


def random_symmetric(n, density=0.05, shift=0.0, seed=0):
    rng = np.random.default_rng(seed)
    nnz = int(density * n * n)
    rows = rng.integers(0, n, nnz)
    cols = rng.integers(0, n, nnz)
    R = sp.coo_matrix((rng.uniform(-1.0, 1.0, nnz), (rows, cols)), shape=(n, n)).tocsr()
    return (R + R.T + shift * sp.identity(n)).tocsr()


def indefinite_matrix(n, seed=0):
    signs = np.where(np.arange(n) % 2 == 0, 1.0, -1.0)
    return (random_symmetric(n, density=0.05, seed=seed) + sp.diags(4.0 * signs)).tocsr()


def well_separated_matrix(n=200):
    diag = np.linspace(1.0, 5.0, n)
    diag[:4] = [-1.0, -0.6, 0.3, 0.6]
    off = 0.01 * np.ones(n - 1)
    return sp.diags([off, diag, off], [-1, 0, 1], format="csr")


@pytest.mark.parametrize("reorder", [False, True])
def test_ildl_is_exact_without_dropping(reorder):
    A = tridiagonal_spd(50)
    precon = IncompleteLDLPreconditioner(A, max_fill_factor=3.0, drop_tol=0.0, reorder=reorder)
    x = np.random.default_rng(0).normal(size=50)
    assert np.allclose(precon.solve(A @ x), x, atol=1e-10)
    X = np.random.default_rng(1).normal(size=(50, 3))
    assert np.allclose(precon.solve(A @ X), X, atol=1e-10)


def test_ildl_respects_fill_bound():
    A = random_symmetric(120, density=0.08, shift=1.0, seed=2)
    precon = IncompleteLDLPreconditioner(A, max_fill_factor=1.0, drop_tol=0.0)
    bound = int(np.ceil(A.nnz / A.shape[0]))
    assert precon.max_column_fill == bound
    assert precon.column_counts().max() <= bound


def test_ildl_drops_small_entries():
    A = random_symmetric(80, density=0.1, shift=3.0, seed=3)
    drop_tol = 0.2
    precon = IncompleteLDLPreconditioner(A, max_fill_factor=10.0, drop_tol=drop_tol)
    L = sp.tril(precon.L, k=-1, format="csc")
    for k in range(80):
        column = np.abs(L.data[L.indptr[k] : L.indptr[k + 1]])
        if column.size:
            assert np.all(column > drop_tol * column.sum() - 1e-15)


def test_ildl_operator_is_positive_definite_for_indefinite_matrix():
    A = indefinite_matrix(100, seed=4)
    op = IncompleteLDLPreconditioner(A, max_fill_factor=3.0, drop_tol=1e-3).as_linear_operator()
    rng = np.random.default_rng(5)
    for _ in range(5):
        x = rng.normal(size=100)
        assert x @ (op @ x) > 0.0


@pytest.mark.parametrize("kwargs", [dict(max_fill_factor=0.5), dict(drop_tol=-0.1), dict(drop_tol=1.5), dict(min_pivot_ratio=1.0)])
def test_ildl_rejects_invalid_controls(kwargs):
    with pytest.raises(ValueError):
        IncompleteLDLPreconditioner(tridiagonal_spd(10), **kwargs)


def test_min_eigenpair_small_matrix_is_dense():
    S = sp.diags([3.0, -2.0, 1.0, 4.0, 0.5])
    pair = compute_min_eigenpair(S, block_size=4)
    assert pair.eigenvalue == pytest.approx(-2.0)
    assert pair.iterations == 0
    assert pair.converged
    assert abs(pair.eigenvector[1]) == pytest.approx(1.0)


def test_min_eigenpair_with_lobpcg():
    S = well_separated_matrix(200)
    vals, vecs = np.linalg.eigh(S.toarray())
    pair = compute_min_eigenpair(S, block_size=4, max_iterations=100, tolerance=1e-6)
    assert 0 <= pair.iterations <= 100
    assert pair.eigenvalue == pytest.approx(vals[0], abs=1e-6)
    assert abs(pair.eigenvector @ vecs[:, 0]) == pytest.approx(1.0, abs=1e-4)
    assert pair.residual_norm <= 1e-5
    assert pair.converged == (pair.residual_norm <= 1e-6)


def test_certify_positive_semidefinite_uses_factorization():
    S = sp.diags(np.linspace(0.0, 1.0, 50), format="csr")
    cert = certify(S, min_eig_num_tol=1e-3)
    assert cert.status is CertificateStatus.OPTIMAL
    assert cert.min_eigenvalue is None
    assert cert.iterations == 0


def test_certify_small_negative_eigenvalue_within_tolerance_is_optimal():
    S = sp.diags(np.r_[-1e-4, np.linspace(1.0, 2.0, 9)], format="csr")
    cert = certify(S, min_eig_num_tol=1e-3)
    assert cert.status is CertificateStatus.OPTIMAL


def test_certify_detects_saddle():
    S = sp.diags(np.r_[2.0, -1.0, np.linspace(1.0, 3.0, 8)], format="csr")
    cert = certify(S, min_eig_num_tol=1e-3)
    assert cert.status is CertificateStatus.SADDLE
    assert cert.min_eigenvalue == pytest.approx(-1.0)
    assert abs(cert.eigenvector[1]) == pytest.approx(1.0)
    assert np.linalg.norm(cert.eigenvector) == pytest.approx(1.0)


def test_certify_saddle_with_lobpcg():
    S = well_separated_matrix(200)
    cert = certify(S, min_eig_num_tol=1e-3, rng=np.random.default_rng(0))
    assert cert.status is CertificateStatus.SADDLE
    assert cert.min_eigenvalue < -0.9
    assert cert.converged


def test_certify_reports_imprecision_when_budget_is_exhausted():
    S = random_symmetric(300, density=0.05, shift=-50.0, seed=6)
    cert = certify(S, min_eig_num_tol=1e-3, max_iterations=1, drop_tol=1.0, rng=np.random.default_rng(1))
    assert cert.status is CertificateStatus.IMPRECISE
    assert not cert.converged
    assert cert.min_eigenvalue < -1e-3
    # one preconditioned pass and one plain pass, each stopped by the limit
    assert cert.iterations == 2


def identity_saddle_certificate():
    """Certificate at identity rotations on a noiseless 20-pose graph (singular, indefinite)."""
    measurements, _ = generate_pose_graph(20, d=2, loop_closure_prob=0.2, seed=1)
    problem = SESyncProblem(measurements)
    Y = problem.lift(np.tile(np.eye(2), (1, problem.n)), 3)
    return problem.compute_certificate_matrix(Y)


def test_ildl_operator_stays_bounded_on_singular_matrix():
    S = identity_saddle_certificate()
    precon = IncompleteLDLPreconditioner(S, min_pivot_ratio=1e-2)
    bound = 1.0 / (1e-2 * np.abs(precon.D).max())
    assert np.max(precon._abs_D_inv) <= bound * (1 + 1e-12)


def test_certify_finds_saddle_on_singular_certificate():
    S = identity_saddle_certificate()
    lam_min = np.linalg.eigvalsh(S.toarray())[0]
    assert lam_min < -1.0
    cert = certify(S, min_eig_num_tol=1e-3, rng=np.random.default_rng(0))
    assert cert.status is CertificateStatus.SADDLE
    assert cert.min_eigenvalue == pytest.approx(lam_min, abs=1e-3)
    assert cert.residual_norm <= 5e-4
    assert 0 < cert.iterations <= 200


def test_eigenpair_iterations_count_every_lobpcg_step():
    S = random_symmetric(300, density=0.05, shift=-50.0, seed=6)
    pair = compute_min_eigenpair(S, max_iterations=3, tolerance=1e-14, rng=np.random.default_rng(2))
    assert not pair.converged
    assert pair.iterations == 6
