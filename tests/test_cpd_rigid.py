import jax
import jax.numpy as jnp
import pytest

from cpdx import Rigid, SingularCovarianceError, State, rigid
from cpdx._matching import Probabilities
from cpdx.rigid import maximization, transform
from cpdx.util import rotation_matrix_2d, rotation_matrix_3d

jax.config.update("jax_enable_x64", True)


def _points(key, n, d):
    # anisotropic, so that the orientation of the set is well defined
    spread = jnp.array([3.0, 1.5, 0.5][:d])
    return jax.random.normal(key, (n, d)) * spread


def test_rigid_cpd_exact_match():
    """Test rigid CPD with an exact rigid transformation."""
    mov = _points(jax.random.PRNGKey(0), 100, 3)
    R_gt = rotation_matrix_3d(
        jnp.array(0.1), jnp.array(-0.2), jnp.array(jnp.pi / 6)
    )
    t_gt = jnp.array([0.5, -0.2, 1.0])
    ref = transform(mov, R_gt, jnp.array(1.0), t_gt)

    result = rigid(ref, mov, tolerance=1e-8)

    assert result.state is State.CONVERGED
    assert result.points.shape == mov.shape
    assert jnp.allclose(result.rotation, R_gt, atol=1e-4)
    assert jnp.allclose(result.scale, 1.0)
    assert jnp.allclose(result.translation, t_gt, atol=1e-4)
    assert jnp.allclose(result.points, ref, atol=1e-4)


def test_rigid_cpd_with_scaling():
    mov = _points(jax.random.PRNGKey(1), 80, 3)
    R_gt = rotation_matrix_3d(
        jnp.array(0.0), jnp.array(0.0), jnp.array(-jnp.pi / 8)
    )
    s_gt = 1.5
    t_gt = jnp.array([10.0, 0.2, -3.0])
    ref = transform(mov, R_gt, jnp.array(s_gt), t_gt)

    result = rigid(ref, mov, allow_scaling=True, tolerance=1e-8)

    assert jnp.allclose(result.rotation, R_gt, atol=1e-4)
    assert jnp.allclose(result.scale, s_gt, atol=1e-4)
    assert jnp.allclose(result.translation, t_gt, atol=1e-4)
    assert jnp.allclose(result.transform, s_gt * R_gt, atol=1e-4)
    assert jnp.allclose(result.points, ref, atol=1e-4)


def test_rigid_cpd_2d():
    mov = _points(jax.random.PRNGKey(2), 60, 2)
    R_gt = rotation_matrix_2d(jnp.array(0.4))
    t_gt = jnp.array([-1.0, 2.0])
    ref = transform(mov, R_gt, jnp.array(1.0), t_gt)

    result = Rigid(tolerance=1e-8).run(ref, mov)

    assert jnp.allclose(result.rotation, R_gt, atol=1e-4)
    assert jnp.allclose(result.points, ref, atol=1e-4)


def test_rigid_cpd_different_sizes():
    """Moving set is a subset of the fixed set."""
    ref = _points(jax.random.PRNGKey(3), 120, 3)
    R_gt = rotation_matrix_3d(
        jnp.array(0.0), jnp.array(0.1), jnp.array(0.2)
    )
    t_gt = jnp.array([0.3, 0.0, -0.3])
    # ref = R_gt @ mov + t_gt  =>  mov = R_gt.T @ (ref - t_gt)
    mov = (ref[:90] - t_gt) @ R_gt

    result = rigid(ref, mov, outlier_weight=0.1, tolerance=1e-10)

    assert result.points.shape == (90, 3)
    assert jnp.allclose(result.rotation, R_gt, atol=1e-3)
    assert jnp.allclose(result.translation, t_gt, atol=1e-3)


def test_rigid_cpd_noisy_match():
    """Test rigid CPD with noise."""
    key = jax.random.PRNGKey(4)
    mov = _points(key, 100, 3)
    R_gt = rotation_matrix_3d(
        jnp.array(0.0), jnp.array(0.0), jnp.array(jnp.pi / 6)
    )
    t_gt = jnp.array([0.1, 0.2, 0.3])
    ref = transform(mov, R_gt, jnp.array(1.0), t_gt)
    ref_noisy = ref + 0.01 * jax.random.normal(
        jax.random.PRNGKey(5), ref.shape
    )

    result = rigid(ref_noisy, mov)

    # parameters should be close but not exact
    assert jnp.allclose(result.rotation, R_gt, atol=0.05)
    assert jnp.allclose(result.translation, t_gt, atol=0.05)
    mse = jnp.mean((result.points - ref_noisy) ** 2)
    assert mse < 0.001


def test_rigid_cpd_outliers():
    """Test rigid CPD robustness to outliers."""
    key = jax.random.PRNGKey(2)
    n, d = 100, 2
    n_outliers = 20
    mov = jax.random.normal(key, (n, d))
    key, subkey1, subkey2 = jax.random.split(key, 3)
    outliers_ref = jax.random.normal(subkey1, (n_outliers, d)) + 5.0
    outliers_mov = jax.random.normal(subkey2, (n_outliers, d)) + 5.0
    ref = jnp.concatenate([mov, outliers_ref], axis=0)
    mov = jnp.concatenate([mov, outliers_mov], axis=0)

    result = rigid(ref, mov, outlier_weight=0.21)

    # should recover identity transform
    assert jnp.allclose(result.rotation, jnp.eye(d), atol=0.1)
    assert jnp.allclose(result.translation, jnp.zeros(d), atol=0.1)


def test_no_reflections_gives_proper_rotation():
    """The best orthogonal fit is a reflection, but it is not allowed."""
    mov = _points(jax.random.PRNGKey(7), 50, 2)
    ref = mov * jnp.array([-1.0, 1.0])

    result = rigid(ref, mov, no_reflections=True)

    assert jnp.allclose(jnp.linalg.det(result.rotation), 1.0, atol=1e-6)
    assert jnp.allclose(jnp.linalg.det(result.transform), 1.0, atol=1e-6)


def test_reflections_allowed():
    """With exact correspondences, the M-step recovers a reflection only when allowed."""
    mov = _points(jax.random.PRNGKey(7), 50, 2)
    F = jnp.array([[-1.0, 0.0], [0.0, 1.0]])
    ref = mov @ F.T
    probs = Probabilities(jnp.ones(50), jnp.ones(50), ref, jnp.array(0.0))

    (R, s, t), var, valid = maximization(ref, mov, probs, False, False)
    assert valid
    assert jnp.allclose(jnp.linalg.det(R), -1.0, atol=1e-6)
    assert jnp.allclose(R, F, atol=1e-6)
    assert jnp.allclose(s, 1.0)
    assert jnp.allclose(t, jnp.zeros(2), atol=1e-6)
    assert jnp.allclose(var, 0.0, atol=1e-8)

    (R, _, _), _, valid = maximization(ref, mov, probs, False, True)
    assert valid
    assert jnp.allclose(jnp.linalg.det(R), 1.0, atol=1e-6)


def test_rigid_singular_covariance():
    """Moving points all lie on a line, so the rotation is not determined."""
    ref = _points(jax.random.PRNGKey(11), 30, 3)
    u = jax.random.normal(jax.random.PRNGKey(12), (30,))
    mov = u[:, None] * jnp.array([1.0, 0.0, 0.0])

    with pytest.raises(SingularCovarianceError) as exc_info:
        rigid(ref, mov)

    err = exc_info.value
    assert err.iteration == 0
    assert jnp.allclose(err.transform, jnp.eye(3))
    assert jnp.allclose(
        err.translation, jnp.mean(ref, axis=0) - jnp.mean(mov, axis=0)
    )


def test_scaling_single_moving_point():
    ref = _points(jax.random.PRNGKey(13), 30, 3)
    mov = jnp.array([[1.0, -2.0, 0.5]])

    with pytest.raises(SingularCovarianceError) as exc_info:
        rigid(ref, mov, allow_scaling=True)

    assert exc_info.value.iteration == 0

def test_with_sigma2():
    mov = _points(jax.random.PRNGKey(8), 60, 3)
    R_gt = rotation_matrix_3d(
        jnp.array(0.2), jnp.array(0.0), jnp.array(0.0)
    )
    ref = transform(mov, R_gt, jnp.array(1.0), jnp.zeros(3))

    result = rigid(ref, mov, sigma2=1.0, tolerance=1e-8)

    assert jnp.allclose(result.points, ref, atol=1e-4)


@pytest.mark.parametrize("block_size", [None, 16])
def test_correspondence(block_size):
    mov = _points(jax.random.PRNGKey(9), 40, 3)
    perm = jax.random.permutation(jax.random.PRNGKey(10), 40)
    ref = mov[perm] + jnp.array([1.0, 0.0, 0.0])

    result = rigid(
        ref, mov, correspondence=True, block_size=block_size, tolerance=1e-8
    )

    # moving point i was placed at fixed point argsort(perm)[i]
    assert jnp.array_equal(result.correspondence, jnp.argsort(perm))
