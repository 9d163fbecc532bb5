import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Float, Int

__all__ = [
    "sqdist",
    "default_sigma2",
    "numerical_rank",
    "all_finite",
    "homogeneous_matrix",
    "rotation_matrix_2d",
    "rotation_matrix_3d",
]


def sqdist(
    x: Float[Array, "n d"], y: Float[Array, "m d"]
) -> Float[Array, "n m"]:
    """Compute the squared distance between all pairs of two sets of input points.

    Args:
        x (Float[Array, "n d"]): set of points
        y (Float[Array, "m d"]): another set of points

    Returns:
        Float[Array, "n m"]: matrix of all squared distances between pairs of points.
    """
    return jax.vmap(
        lambda x1: jax.vmap(lambda y1: _squared_distance(x1, y1))(y)
    )(x)


def _squared_distance(x: Float[Array, " d"], y: Float[Array, " d"]):
    return jnp.sum(jnp.square(jnp.subtract(x, y)))


def default_sigma2(
    x: Float[Array, "n d"], y: Float[Array, "m d"]
) -> Float[Array, ""]:
    """Initial variance estimate for the EM loop, the mean squared distance between all pairs of points divided by the dimensionality.

    Evaluated in closed form, so no (n x m) distance matrix is formed.

    Args:
        x (Float[Array, "n d"]): fixed points
        y (Float[Array, "m d"]): moving points

    Returns:
        Float[Array, ""]: `sum(sqdist(x, y)) / (n * m * d)`
    """
    n, d = x.shape
    m, _ = y.shape
    val = (
        n * jnp.sum(jnp.square(y))
        + m * jnp.sum(jnp.square(x))
        - 2 * jnp.dot(jnp.sum(x, axis=0), jnp.sum(y, axis=0))
    )
    return val / (n * m * d)


def numerical_rank(s: Float[Array, " d"], size: int) -> Int[Array, ""]:
    """Numerical rank of a matrix from its singular values, using the same cutoff as `numpy.linalg.matrix_rank`."""
    cutoff = jnp.max(s) * size * jnp.finfo(s.dtype).eps
    return jnp.sum(s > cutoff)


def all_finite(*arrays: Array) -> Bool[Array, ""]:
    return jnp.all(jnp.array([jnp.all(jnp.isfinite(a)) for a in arrays]))


def homogeneous_matrix(
    A: Float[Array, "d d"], t: Float[Array, " d"]
) -> Float[Array, "d+1 d+1"]:
    """Pack a linear map and translation into a single homogeneous transform matrix.

    Args:
        A (Float[Array, "d d"]): linear part of the transform
        t (Float[Array, " d"]): translation

    Returns:
        Float[Array, "d+1 d+1"]: `[[A, t], [0, 1]]`
    """
    d = A.shape[0]
    top = jnp.concatenate([A, t[:, None]], axis=1)
    bottom = jnp.zeros((1, d + 1), dtype=A.dtype).at[0, d].set(1.0)
    return jnp.concatenate([top, bottom], axis=0)


def rotation_matrix_2d(alpha: Float[Array, ""]) -> Float[Array, "2 2"]:
    return jnp.array(
        [[jnp.cos(alpha), -jnp.sin(alpha)], [jnp.sin(alpha), jnp.cos(alpha)]]
    )


def rotation_matrix_3d(
    alpha: Float[Array, ""], beta: Float[Array, ""], gamma: Float[Array, ""]
) -> Float[Array, "3 3"]:
    Rx = jnp.array(
        [
            [1, 0, 0],
            [0, jnp.cos(alpha), -jnp.sin(alpha)],
            [0, jnp.sin(alpha), jnp.cos(alpha)],
        ]
    )
    Ry = jnp.array(
        [
            [jnp.cos(beta), 0, jnp.sin(beta)],
            [0, 1, 0],
            [-jnp.sin(beta), 0, jnp.cos(beta)],
        ]
    )
    Rz = jnp.array(
        [
            [jnp.cos(gamma), -jnp.sin(gamma), 0],
            [jnp.sin(gamma), jnp.cos(gamma), 0],
            [0, 0, 1],
        ]
    )
    return Rz @ Ry @ Rx
