import logging
from typing import NamedTuple

import jax.numpy as jnp
from jaxtyping import Array, Float

__all__ = [
    "Normalization",
    "normalize",
    "identity_normalization",
    "denormalize_points",
]


logger = logging.getLogger(__name__)


class Normalization(NamedTuple):
    """Centering and scaling applied to the point sets before registration.

    The two scales are computed jointly and are always equal, so that distances in the two normalized sets remain comparable.
    """

    fixed_mean: Float[Array, " d"]
    moving_mean: Float[Array, " d"]
    fixed_scale: Float[Array, ""]
    moving_scale: Float[Array, ""]


def normalize(
    fixed: Float[Array, "n d"],
    moving: Float[Array, "m d"],
) -> tuple[Float[Array, "n d"], Float[Array, "m d"], Normalization]:
    """Center each point set on its own mean and rescale both by a shared factor.

    The shared scale is the larger of the root-mean-square norms of the two centered point sets, so that after normalization both sets have zero mean and the larger one has unit average norm. If both sets have zero extent, the scale is taken to be 1.

    Args:
        fixed (Float[Array, "n d"]): fixed (reference) points
        moving (Float[Array, "m d"]): moving points

    Returns:
        tuple[Float[Array, "n d"], Float[Array, "m d"], Normalization]: the normalized fixed and moving points, and the parameters needed to undo the normalization.
    """
    mu_x = jnp.mean(fixed, axis=0)
    mu_y = jnp.mean(moving, axis=0)
    x_c, y_c = fixed - mu_x, moving - mu_y
    rms_x = jnp.sqrt(jnp.sum(jnp.square(x_c)) / fixed.shape[0])
    rms_y = jnp.sqrt(jnp.sum(jnp.square(y_c)) / moving.shape[0])
    scale = jnp.maximum(rms_x, rms_y)
    if scale < 1e-12:
        logger.warning(
            "both point sets have zero extent, normalizing with unit scale"
        )
        scale = jnp.ones_like(scale)
    return (
        x_c / scale,
        y_c / scale,
        Normalization(mu_x, mu_y, scale, scale),
    )


def identity_normalization(d: int, dtype) -> Normalization:
    """Normalization parameters that leave points unchanged."""
    return Normalization(
        jnp.zeros((d,), dtype=dtype),
        jnp.zeros((d,), dtype=dtype),
        jnp.ones((), dtype=dtype),
        jnp.ones((), dtype=dtype),
    )


def denormalize_points(
    points: Float[Array, "m d"], normalization: Normalization
) -> Float[Array, "m d"]:
    """Map points from normalized fixed-set coordinates back to the original fixed-set coordinates."""
    return points * normalization.fixed_scale + normalization.fixed_mean
