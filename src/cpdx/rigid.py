from dataclasses import dataclass
from typing import NamedTuple, TypeAlias

import jax.numpy as jnp
from jaxtyping import Array, Bool, Float

from ._matching import Probabilities
from .result import RigidResult
from .util import all_finite, numerical_rank

__all__ = [
    "RotationMatrix",
    "ScalingTerm",
    "Translation",
    "TransformParams",
    "RigidEstimator",
    "transform",
    "maximization",
]


RotationMatrix: TypeAlias = Float[Array, "d d"]
ScalingTerm: TypeAlias = Float[Array, ""]
Translation: TypeAlias = Float[Array, " d"]


class TransformParams(NamedTuple):
    rotation: RotationMatrix
    scale: ScalingTerm
    translation: Translation


def transform(
    y: Float[Array, "m d"],
    R: RotationMatrix,
    s: ScalingTerm,
    t: Translation,
) -> Float[Array, "m d"]:
    """Transform the input points by rigid transformation.

    Args:
        y (Float[Array, "m d"]): `d`-dimensional points to be transformed
        R (RotationMatrix): `d`-dimensional rotation matrix
        s (ScalingTerm): scalar, isotropic scaling term
        t (Translation): translation

    Returns:
        Float[Array, "m d"]: transformed points, `s * (y @ R.T) + t`
    """
    return s * (y @ R.T) + t


def maximization(
    x: Float[Array, "n d"],
    y: Float[Array, "m d"],
    probs: Probabilities,
    allow_scaling: bool,
    no_reflections: bool,
) -> tuple[TransformParams, Float[Array, ""], Bool[Array, ""]]:
    """Do a single M-step.

    The rotation is the orthogonal matrix closest to the weighted cross-covariance of the two point sets. If `no_reflections`, the sign of the last singular direction is flipped as needed so that the rotation is proper (determinant +1).

    Args:
        x (Float[Array, "n d"]): fixed point set
        y (Float[Array, "m d"]): moving point set
        probs (Probabilities): output of the E-step
        allow_scaling (bool): estimate an isotropic scaling term, otherwise it is fixed to 1
        no_reflections (bool): constrain the rotation to have determinant +1

    Returns:
        tuple[TransformParams, Float[Array, ""], Bool[Array, ""]]: updated transform parameters, variance, and whether the update is valid. The update is invalid if the cross-covariance has rank less than `d-1`, if scaling is estimated from a moving set with no weighted spread, or if anything is non-finite.
    """
    _, d = x.shape
    p1, pt1, px = probs.p1, probs.pt1, probs.px
    N = jnp.sum(pt1)
    mu_x = jnp.divide(x.T @ pt1, N)
    mu_y = jnp.divide(y.T @ p1, N)
    A = px.T @ y - N * jnp.outer(mu_x, mu_y)
    U, S, Vt = jnp.linalg.svd(A)
    C = jnp.ones((d,), dtype=x.dtype)
    if no_reflections:
        C = C.at[-1].set(jnp.linalg.det(U @ Vt))
    R = (U * C) @ Vt
    trace_sc = jnp.sum(S * C)
    xPx = jnp.sum(pt1 * jnp.sum(jnp.square(x), axis=1)) - N * (mu_x @ mu_x)
    yPy = jnp.sum(p1 * jnp.sum(jnp.square(y), axis=1)) - N * (mu_y @ mu_y)
    if allow_scaling:
        s = jnp.divide(trace_sc, yPy)
        var = jnp.divide(jnp.abs(xPx - s * trace_sc), N * d)
        valid = yPy > 0
    else:
        s = jnp.ones((), dtype=x.dtype)
        var = jnp.divide(jnp.abs(xPx + yPy - 2 * trace_sc), N * d)
        valid = jnp.array(True)
    t = mu_x - s * (R @ mu_y)
    valid = jnp.logical_and(valid, numerical_rank(S, d) >= max(d - 1, 1))
    valid = jnp.logical_and(valid, all_finite(R, s, t, var))
    return TransformParams(R, s, t), var, valid


@dataclass(frozen=True)
class RigidEstimator:
    """Rotation, translation and (optionally) isotropic scaling."""

    allow_scaling: bool = False
    no_reflections: bool = True

    def init_params(self, d: int, dtype) -> TransformParams:
        return TransformParams(
            jnp.eye(d, dtype=dtype),
            jnp.ones((), dtype=dtype),
            jnp.zeros((d,), dtype=dtype),
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
        return maximization(
            x, y, probs, self.allow_scaling, self.no_reflections
        )

    def to_result(self, params: TransformParams, **kwargs) -> RigidResult:
        R, s, t = params
        return RigidResult(
            transform=s * R, translation=t, rotation=R, scale=s, **kwargs
        )
