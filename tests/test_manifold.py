import numpy as np
import pytest

from sesync.manifold import (
    as_blocks,
    from_blocks,
    project_tangent,
    project_to_rotations,
    project_to_stiefel,
    random_point,
    retract,
    symmetric_block_products,
)


def assert_on_stiefel(Y, d, atol=1e-10):
    blocks = as_blocks(Y, d)
    gram = np.einsum("nri,nrj->nij", blocks, blocks)
    assert np.allclose(gram, np.eye(d)[None], atol=atol)


def test_block_reshape_round_trip():
    Y = np.arange(24, dtype=float).reshape(3, 8)
    blocks = as_blocks(Y, 2)
    assert blocks.shape == (4, 3, 2)
    assert np.array_equal(blocks[1], Y[:, 2:4])
    assert np.array_equal(from_blocks(blocks), Y)


def test_as_blocks_rejects_bad_width():
    with pytest.raises(ValueError):
        as_blocks(np.zeros((3, 7)), 2)


@pytest.mark.parametrize("d,r", [(2, 3), (3, 5)])
def test_random_point_is_feasible(d, r):
    Y = random_point(r, 6, d, np.random.default_rng(0))
    assert Y.shape == (r, 6 * d)
    assert_on_stiefel(Y, d)


def test_tangent_projection_is_idempotent_and_tangent():
    rng = np.random.default_rng(1)
    Y = random_point(4, 5, 3, rng)
    V = rng.normal(size=Y.shape)
    P = project_tangent(Y, V, 3)
    assert np.allclose(symmetric_block_products(Y, P, 3), 0.0, atol=1e-12)
    assert np.allclose(project_tangent(Y, P, 3), P)


def test_retraction_stays_on_manifold():
    rng = np.random.default_rng(2)
    Y = random_point(3, 7, 2, rng)
    V = project_tangent(Y, rng.normal(size=Y.shape), 2)
    assert_on_stiefel(retract(Y, 0.7 * V, 2), 2)
    assert np.allclose(retract(Y, np.zeros_like(Y), 2), Y)


def test_rotation_projection_has_unit_determinant():
    rng = np.random.default_rng(3)
    R = rng.normal(size=(3, 12))
    Rp = project_to_rotations(R, 3)
    assert_on_stiefel(Rp, 3)
    assert np.allclose(np.linalg.det(as_blocks(Rp, 3)), 1.0)


def test_block_kernels_do_not_depend_on_thread_count():
    rng = np.random.default_rng(4)
    Y = rng.normal(size=(4, 2 * 20))
    single = project_to_stiefel(Y, 2, num_threads=1)
    threaded = project_to_stiefel(Y, 2, num_threads=3)
    assert np.allclose(single, threaded, atol=1e-14)
    R = rng.normal(size=(2, 2 * 20))
    assert np.allclose(project_to_rotations(R, 2, 1), project_to_rotations(R, 2, 4), atol=1e-14)
