from typing import NamedTuple

import jax
import jax.numpy as jnp
from jaxtyping import Array, Float, Int

from .util import sqdist

__all__ = [
    "Probabilities",
    "compute_probabilities",
    "expectation",
    "expectation_blocked",
]


class Probabilities(NamedTuple):
    """Aggregated output of the E-step. The (m x n) matching matrix `P` itself is never returned.

    Attributes:
        p1 (Float[Array, " m"]): `P @ 1`, total matching mass of each moving point.
        pt1 (Float[Array, " n"]): `P.T @ 1`, total matching mass received by each fixed point.
        px (Float[Array, "m d"]): `P @ x`, fixed points pulled back onto each moving point.
        nll (Float[Array, ""]): negative log-likelihood of the mixture (up to an additive constant).
        correspondence (Int[Array, " m"] | None): for each moving point, index of the fixed point it most likely matches. Only computed on request.
    """

    p1: Float[Array, " m"]
    pt1: Float[Array, " n"]
    px: Float[Array, "m d"]
    nll: Float[Array, ""]
    correspondence: Int[Array, " m"] | None = None


def outlier_term(
    w: float, var: Float[Array, ""], d: int, m: int, n: int
) -> Float[Array, ""]:
    """Contribution of the uniform outlier distribution to the denominator of the matching probabilities."""
    return jnp.divide(w, 1.0 - w) * jnp.divide(
        jnp.power(2 * jnp.pi * var, d / 2) * m, n
    )


def _gaussian(
    x: Float[Array, "n d"], y_t: Float[Array, "m d"], var: Float[Array, ""]
) -> Float[Array, "m n"]:
    return jnp.exp(jnp.negative(jnp.divide(sqdist(y_t, x), 2 * var)))


def expectation(
    x: Float[Array, "n d"],
    y_t: Float[Array, "m d"],
    var: Float[Array, ""],
    w: float,
    correspondence: bool = False,
) -> Probabilities:
    """Do a single expectation step of the CPD algorithm, forming the full matching matrix at once.

    Args:
        x (Float[Array, "n d"]): fixed point set
        y_t (Float[Array, "m d"]): moving point set, under the current transform
        var (Float[Array, ""]): variance of the Gaussian kernel
        w (float): outlier weight, in range [0, 1)
        correspondence (bool): also compute the most likely match of each moving point

    Returns:
        Probabilities: the aggregated matching probabilities.
    """
    n, d = x.shape
    m, _ = y_t.shape
    top = _gaussian(x, y_t, var)
    bot = jnp.add(
        jnp.clip(jnp.sum(top, axis=0, keepdims=True), jnp.finfo(x.dtype).eps),
        outlier_term(w, var, d, m, n),
    )
    P = jnp.divide(top, bot)
    nll = -jnp.sum(jnp.log(bot)) + n * d * jnp.log(var) / 2
    return Probabilities(
        jnp.sum(P, axis=1),
        jnp.sum(P, axis=0),
        P @ x,
        nll,
        jnp.argmax(P, axis=1) if correspondence else None,
    )


def expectation_blocked(
    x: Float[Array, "n d"],
    y_t: Float[Array, "m d"],
    var: Float[Array, ""],
    w: float,
    block_size: int,
    correspondence: bool = False,
) -> Probabilities:
    """Do a single expectation step of the CPD algorithm, scanning over blocks of fixed points.

    Only an (m x block_size) slice of the matching matrix exists at any time. The result is the same as `expectation`, up to the order of floating point summation.

    Args:
        x (Float[Array, "n d"]): fixed point set
        y_t (Float[Array, "m d"]): moving point set, under the current transform
        var (Float[Array, ""]): variance of the Gaussian kernel
        w (float): outlier weight, in range [0, 1)
        block_size (int): number of fixed points handled per step of the scan
        correspondence (bool): also compute the most likely match of each moving point

    Returns:
        Probabilities: the aggregated matching probabilities.
    """
    n, d = x.shape
    m, _ = y_t.shape
    num_blocks = -(-n // block_size)
    pad = num_blocks * block_size - n
    x_b = jnp.pad(x, ((0, pad), (0, 0))).reshape(num_blocks, block_size, d)
    valid = (jnp.arange(num_blocks * block_size) < n).reshape(
        num_blocks, block_size
    )
    offsets = jnp.arange(num_blocks) * block_size
    c = outlier_term(w, var, d, m, n)
    eps = jnp.finfo(x.dtype).eps

    def scan_fun(carry, block):
        p1, px, nll, best_p, best_idx = carry
        xb, vb, offset = block
        top = _gaussian(xb, y_t, var)
        bot = jnp.add(jnp.clip(jnp.sum(top, axis=0, keepdims=True), eps), c)
        P = jnp.where(vb[None, :], jnp.divide(top, bot), 0.0)
        nll = nll - jnp.sum(jnp.where(vb, jnp.log(bot[0]), 0.0))
        if correspondence:
            blk_p = jnp.max(P, axis=1)
            blk_idx = (jnp.argmax(P, axis=1) + offset).astype(best_idx.dtype)
            better = blk_p > best_p
            best_p = jnp.where(better, blk_p, best_p)
            best_idx = jnp.where(better, blk_idx, best_idx)
        carry = (p1 + jnp.sum(P, axis=1), px + P @ xb, nll, best_p, best_idx)
        return carry, jnp.sum(P, axis=0)

    init = (
        jnp.zeros((m,), dtype=x.dtype),
        jnp.zeros((m, d), dtype=x.dtype),
        jnp.zeros((), dtype=x.dtype),
        -jnp.ones((m,), dtype=x.dtype),
        jnp.zeros((m,), dtype=jnp.int32),
    )
    (p1, px, nll, _, best_idx), pt1 = jax.lax.scan(
        scan_fun, init, (x_b, valid, offsets)
    )
    nll = nll + n * d * jnp.log(var) / 2
    return Probabilities(
        p1,
        pt1.reshape(-1)[:n],
        px,
        nll,
        best_idx if correspondence else None,
    )


def compute_probabilities(
    x: Float[Array, "n d"],
    y_t: Float[Array, "m d"],
    var: Float[Array, ""],
    w: float,
    block_size: int | None = None,
    correspondence: bool = False,
) -> Probabilities:
    """Do a single expectation step, blocked over the fixed points if `block_size` is given and dense otherwise."""
    if block_size is None:
        return expectation(x, y_t, var, w, correspondence)
    return expectation_blocked(x, y_t, var, w, block_size, correspondence)
