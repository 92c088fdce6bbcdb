import numpy as np
import pytest

from sesync.manifold import as_blocks, symmetric_block_products
from sesync.measurements import generate_pose_graph
from sesync.problem import PRECONDITIONERS, SESyncProblem


def noisy_graph(d=2, n=6, seed=1):
    measurements, _ = generate_pose_graph(
        n, d=d, loop_closure_prob=0.4, rotation_noise=0.05, translation_noise=0.05, seed=seed
    )
    return measurements


def random_tangent(problem, Y, rng):
    return problem.tangent_space_projection(Y, rng.normal(size=Y.shape))


def assert_tangent(problem, Y, V, atol=1e-10):
    off = problem.num_columns - problem.d * problem.n
    S = symmetric_block_products(Y[:, off:], V[:, off:], problem.d)
    assert np.allclose(S, 0.0, atol=atol)


@pytest.mark.parametrize("factorization", ["cholesky", "qr"])
def test_simplified_objective_matches_explicit_with_optimal_translations(factorization):
    measurements = noisy_graph(d=3)
    simplified = SESyncProblem(measurements, formulation="simplified", projection_factorization=factorization)
    explicit = SESyncProblem(measurements, formulation="explicit")
    Y = simplified.random_sample(5, np.random.default_rng(0))
    Ye = np.hstack([explicit.recover_translations(Y), Y])
    assert simplified.evaluate_objective(Y) == pytest.approx(explicit.evaluate_objective(Ye), rel=1e-8)


@pytest.mark.parametrize("formulation", ["simplified", "explicit"])
def test_gradient_matches_directional_derivative(formulation):
    problem = SESyncProblem(noisy_graph(d=2), formulation=formulation)
    rng = np.random.default_rng(3)
    Y = problem.random_sample(4, rng)
    V = random_tangent(problem, Y, rng)
    h = 1e-4
    fd = (problem.evaluate_objective(Y + h * V) - problem.evaluate_objective(Y - h * V)) / (2 * h)
    grad = problem.riemannian_gradient(Y)
    assert np.vdot(grad, V) == pytest.approx(fd, rel=1e-6)
    assert_tangent(problem, Y, grad)


@pytest.mark.parametrize("formulation", ["simplified", "explicit"])
def test_hessian_matches_second_order_expansion(formulation):
    problem = SESyncProblem(noisy_graph(d=3), formulation=formulation)
    rng = np.random.default_rng(5)
    Y = problem.random_sample(4, rng)
    V = random_tangent(problem, Y, rng)
    V /= np.linalg.norm(V)
    nabla_F = problem.euclidean_gradient(Y)
    HV = problem.riemannian_hessian_vector_product(Y, nabla_F, V)
    assert_tangent(problem, Y, HV)

    # The polar retraction is second order, so the symmetric difference of F
    # along it recovers <V, Hess F(Y)[V]>.
    t = 1e-3
    f0 = problem.evaluate_objective(Y)
    fp = problem.evaluate_objective(problem.retract(Y, t * V))
    fm = problem.evaluate_objective(problem.retract(Y, -t * V))
    second = (fp + fm - 2.0 * f0) / t**2
    assert np.vdot(V, HV) == pytest.approx(second, rel=1e-3, abs=1e-5 * max(1.0, f0))


def test_hessian_is_symmetric_on_tangent_space():
    problem = SESyncProblem(noisy_graph(d=2), formulation="simplified")
    rng = np.random.default_rng(6)
    Y = problem.random_sample(3, rng)
    U = random_tangent(problem, Y, rng)
    V = random_tangent(problem, Y, rng)
    nabla_F = problem.euclidean_gradient(Y)
    lhs = np.vdot(U, problem.riemannian_hessian_vector_product(Y, nabla_F, V))
    rhs = np.vdot(V, problem.riemannian_hessian_vector_product(Y, nabla_F, U))
    assert lhs == pytest.approx(rhs, rel=1e-9)


def test_explicit_projection_leaves_translations_unchanged():
    problem = SESyncProblem(noisy_graph(d=2), formulation="explicit")
    rng = np.random.default_rng(7)
    Y = problem.random_sample(3, rng)
    V = rng.normal(size=Y.shape)
    P = problem.tangent_space_projection(Y, V)
    assert np.array_equal(P[:, : problem.n], V[:, : problem.n])


@pytest.mark.parametrize("preconditioner", PRECONDITIONERS)
@pytest.mark.parametrize("formulation", ["simplified", "explicit"])
def test_preconditioners_return_descent_tangent_vectors(preconditioner, formulation):
    problem = SESyncProblem(noisy_graph(d=2), formulation=formulation, preconditioner=preconditioner)
    rng = np.random.default_rng(8)
    Y = problem.random_sample(3, rng)
    grad = problem.riemannian_gradient(Y)
    Pg = problem.precondition(Y, grad)
    assert Pg.shape == grad.shape
    assert_tangent(problem, Y, Pg)
    assert np.vdot(grad, Pg) > 0.0


def test_retraction_results_do_not_depend_on_thread_count():
    measurements = noisy_graph(d=2, n=12)
    single = SESyncProblem(measurements, num_threads=1)
    threaded = SESyncProblem(measurements, num_threads=3)
    rng = np.random.default_rng(9)
    Y = single.random_sample(3, rng)
    V = random_tangent(single, Y, rng)
    assert np.allclose(single.retract(Y, V), threaded.retract(Y, V), atol=1e-14)


def test_chordal_initialization_is_exact_without_noise():
    measurements, truth = generate_pose_graph(5, d=3, loop_closure_prob=0.5, seed=11)
    problem = SESyncProblem(measurements)
    Y = problem.chordal_initialization(5)
    n, d = problem.n, problem.d
    assert Y.shape == (5, d * n)
    assert np.allclose(Y[:d], truth[:, n:], atol=1e-8)
    assert np.allclose(Y[d:], 0.0)


def test_lambda_trace_equals_objective():
    problem = SESyncProblem(noisy_graph(d=3))
    Y = problem.random_sample(5, np.random.default_rng(12))
    Lambda = problem.compute_Lambda(Y)
    assert Lambda.shape == (problem.d * problem.n,) * 2
    assert np.allclose(Lambda.toarray(), Lambda.toarray().T)
    assert Lambda.diagonal().sum() == pytest.approx(problem.evaluate_objective(Y), rel=1e-9)


@pytest.mark.parametrize("formulation", ["simplified", "explicit"])
def test_certificate_is_psd_and_annihilates_noiseless_truth(formulation):
    measurements, truth = generate_pose_graph(5, d=2, loop_closure_prob=0.5, seed=13)
    problem = SESyncProblem(measurements, formulation=formulation)
    n = problem.n
    Y = truth[:, n:] if formulation == "simplified" else truth
    S = problem.compute_certificate_matrix(Y)
    assert S.shape == (problem.dim, problem.dim)
    assert np.linalg.eigvalsh(S.toarray())[0] > -1e-8
    assert np.allclose(S @ truth.T, 0.0, atol=1e-8)


def test_escape_direction_is_tangent_at_lifted_point():
    problem = SESyncProblem(noisy_graph(d=2))
    rng = np.random.default_rng(14)
    Y = problem.random_sample(3, rng)
    v = rng.normal(size=problem.dim)
    Ydot = problem.escape_direction(v, 3)
    assert Ydot.shape == (4, problem.num_columns)
    assert np.allclose(Ydot[:3], 0.0)
    assert np.allclose(Ydot[3], v[problem.n :])
    assert_tangent(problem, problem.lift(Y, 4), Ydot)
    with pytest.raises(ValueError):
        problem.escape_direction(v[:-1], 3)


def test_lift_rejects_lower_rank():
    problem = SESyncProblem(noisy_graph(d=2))
    Y = problem.random_sample(4, np.random.default_rng(15))
    assert problem.lift(Y, 6).shape == (6, Y.shape[1])
    with pytest.raises(ValueError):
        problem.lift(Y, 3)


def test_round_solution_recovers_noiseless_poses_up_to_gauge():
    measurements, truth = generate_pose_graph(6, d=2, loop_closure_prob=0.3, seed=16)
    problem = SESyncProblem(measurements)
    n, d = problem.n, problem.d
    Q, _ = np.linalg.qr(np.random.default_rng(17).normal(size=(4, 4)))
    Y = Q @ problem.lift(truth[:, n:], 4)
    xhat = problem.round_solution(Y)
    assert xhat.shape == (d, n + d * n)
    assert problem.evaluate_pose_objective(xhat) < 1e-9
    R = as_blocks(xhat[:, n:], d)
    R_true = as_blocks(truth[:, n:], d)
    for i in range(n):
        assert np.allclose(R[0].T @ R[i], R_true[0].T @ R_true[i], atol=1e-8)
    assert np.allclose(xhat[:, 0], 0.0)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(formulation="implicit"),
        dict(preconditioner="ilu"),
        dict(projection_factorization="lu"),
        dict(reg_chol_max_condition_number=1.0),
        dict(num_threads=0),
    ],
)
def test_invalid_problem_options_are_rejected(kwargs):
    with pytest.raises(ValueError):
        SESyncProblem(noisy_graph(d=2), **kwargs)


def test_iterate_shape_is_checked():
    problem = SESyncProblem(noisy_graph(d=2))
    with pytest.raises(ValueError):
        problem.evaluate_objective(np.zeros((3, problem.num_columns + 1)))
