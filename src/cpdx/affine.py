from dataclasses import dataclass
from typing import NamedTuple, TypeAlias

import jax.numpy as jnp
from jaxtyping import Array, Bool, Float

from ._matching import Probabilities
from .result import Result
from .util import all_finite, numerical_rank

__all__ = [
    "AffineMatrix",
    "Translation",
    "TransformParams",
    "AffineEstimator",
    "transform",
    "maximization",
]


AffineMatrix: TypeAlias = Float[Array, "d d"]
Translation: TypeAlias = Float[Array, " d"]


class TransformParams(NamedTuple):
    transform: AffineMatrix
    translation: Translation


def transform(
    y: Float[Array, "m d"], A: AffineMatrix, t: Translation
) -> Float[Array, "m d"]:
    """Transform the input points by affine transform.

    Args:
        y (Float[Array, "m d"]): `d`-dimensional points to be transformed
        A (Float[Array, "d d"]): `d`-dimensional affine transform matrix
        t (Float[Array, " d"]): translation

    Returns:
        Float[Array, "m d"]: transformed points, `y @ A.T + t`
    """
    return y @ A.T + t[None, :]


def maximization(
    x: Float[Array, "n d"],
    y: Float[Array, "m d"],
    probs: Probabilities,
) -> tuple[TransformParams, Float[Array, ""], Bool[Array, ""]]:
    """Do a single M-step.

    Args:
        x (Float[Array, "n d"]): fixed point set
        y (Float[Array, "m d"]): moving point set
        probs (Probabilities): output of the E-step

    Returns:
        tuple[TransformParams, Float[Array, ""], Bool[Array, ""]]: updated transform parameters, variance, and whether the update is valid. The update is invalid if the weighted covariance of the moving points is singular or anything is non-finite.
    """
    _, d = x.shape
    p1, pt1, px = probs.p1, probs.pt1, probs.px
    N = jnp.sum(p1)
    mu_x = jnp.divide(x.T @ pt1, N)
    mu_y = jnp.divide(y.T @ p1, N)
    B1 = px.T @ y - N * jnp.outer(mu_x, mu_y)
    B2 = (y * p1[:, None]).T @ y - N * jnp.outer(mu_y, mu_y)
    # B1 @ inv(B2)
    A = jnp.linalg.solve(B2.T, B1.T).T
    t = mu_x - A @ mu_y
    var = jnp.divide(
        jnp.abs(
            jnp.sum(pt1 * jnp.sum(jnp.square(x), axis=1))
            - N * (mu_x @ mu_x)
            - jnp.trace(B1 @ A.T)
        ),
        N * d,
    )
    s = jnp.linalg.svd(B2, compute_uv=False)
    valid = jnp.logical_and(numerical_rank(s, d) == d, all_finite(A, t, var))
    return TransformParams(A, t), var, valid


@dataclass(frozen=True)
class AffineEstimator:
    """Unconstrained linear map plus translation."""

    def init_params(self, d: int, dtype) -> TransformParams:
        return TransformParams(
            jnp.eye(d, dtype=dtype), jnp.zeros((d,), dtype=dtype)
        )

    def transform(
        self, y: Float[Array, "m d"], params: TransformParams
    ) -> Float[Array, "m d"]:
        return transform(y, *params)

    def maximization(
        self,
        x: Float[Array, "n d"],
        y: Float[Array, "m d"],
        probs: Probabilities,
    ) -> tuple[TransformParams, Float[Array, ""], Bool[Array, ""]]:
        return maximization(x, y, probs)

    def to_result(self, params: TransformParams, **kwargs) -> Result:
        return Result(
            transform=params.transform, translation=params.translation, **kwargs
        )
