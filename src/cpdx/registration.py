import logging
import time
from typing import Any, Protocol

import jax
import jax.numpy as jnp
from jax.tree_util import Partial
from jaxtyping import Array, ArrayLike, Bool, Float, Int

from ._matching import Probabilities, compute_probabilities
from .affine import AffineEstimator
from .errors import DimensionMismatchError, SingularCovarianceError
from .normalization import identity_normalization, normalize
from .result import Result, RigidResult, State
from .rigid import RigidEstimator
from .util import default_sigma2

__all__ = ["TransformEstimator", "Registration", "Rigid", "Affine"]


logger = logging.getLogger(__name__)


class TransformEstimator(Protocol):
    """M-step for one family of transforms.

    Implementations must be hashable, they are passed to `jax.jit` as static arguments.
    """

    def init_params(self, d: int, dtype) -> Any: ...

    def transform(self, y: Float[Array, "m d"], params) -> Float[Array, "m d"]: ...

    def maximization(
        self,
        x: Float[Array, "n d"],
        y: Float[Array, "m d"],
        probs: Probabilities,
    ) -> tuple[Any, Float[Array, ""], Bool[Array, ""]]: ...

    def to_result(self, params, **kwargs) -> Result: ...


@Partial(jax.jit, static_argnums=(3, 6, 7))
def _em_loop(
    ref: Float[Array, "n d"],
    mov: Float[Array, "m d"],
    var_i: Float[Array, ""],
    estimator: TransformEstimator,
    outlier_weight: float,
    tolerance: float,
    max_iter: int,
    block_size: int | None,
) -> tuple[
    Any, Float[Array, ""], Int[Array, ""], Int[Array, ""], Float[Array, " k"]
]:
    """Run the EM loop on normalized points.

    Returns:
        the final transform parameters, variance, # of iterations, `State` value and the variance history (padded with NaN past the last iteration).
    """
    floor = 10 * jnp.finfo(ref.dtype).eps
    iterating = jnp.int32(State.ITERATING.value)

    def cond_fun(a) -> Bool:
        _, _, _, state, _ = a
        return state == iterating

    def body_fun(a):
        params, var, iter_num, _, varz = a
        mov_t = estimator.transform(mov, params)
        P = compute_probabilities(ref, mov_t, var, outlier_weight, block_size)
        new_params, new_var, valid = estimator.maximization(ref, mov, P)
        new_var = jnp.maximum(new_var, floor)
        # an invalid update keeps the previous parameters
        params = jax.tree_util.tree_map(
            lambda new, old: jnp.where(valid, new, old), new_params, params
        )
        converged = jnp.logical_or(
            jnp.abs(new_var - var) < tolerance, new_var <= floor
        )
        iter_num = jnp.where(valid, iter_num + 1, iter_num)
        varz = jnp.where(valid, varz.at[iter_num].set(new_var), varz)
        var = jnp.where(valid, new_var, var)
        state = jnp.select(
            [jnp.logical_not(valid), converged, iter_num >= max_iter],
            [
                jnp.int32(State.NUMERICAL_FAILURE.value),
                jnp.int32(State.CONVERGED.value),
                jnp.int32(State.MAX_ITERATIONS.value),
            ],
            iterating,
        )
        return params, var, iter_num, state, varz

    _, d = ref.shape
    init_state = jnp.where(
        var_i <= floor, jnp.int32(State.CONVERGED.value), iterating
    )
    varz = jnp.full((max_iter + 1,), jnp.nan, dtype=ref.dtype).at[0].set(var_i)
    return jax.lax.while_loop(
        cond_fun,
        body_fun,
        (
            estimator.init_params(d, ref.dtype),
            var_i,
            jnp.int32(0),
            init_state,
            varz,
        ),
    )


class Registration:
    """Coherent point drift registration of a moving point set onto a fixed point set.

    The EM loop is run on normalized copies of the point sets (see `cpdx.normalization`), and the result is mapped back to the coordinates of the inputs before being returned. The family of transforms is determined by the `estimator` property of the subclass; use `Rigid` or `Affine` rather than this class directly.

    Args:
        max_iterations (int): maximum # of EM iterations.
        tolerance (float): the loop terminates once the variance changes by less than this between iterations (measured in normalized coordinates).
        outlier_weight (float): weight of the uniform outlier distribution, in range [0, 1).
        sigma2 (float | None): initial variance, in the units of the fixed points. If `None` or 0, it is estimated from the data.
        normalize (bool): normalize the point sets before registration.
        correspondence (bool): compute the most likely fixed point for each moving point.
        block_size (int | None): if given, the E-step scans over blocks of this many fixed points instead of forming the whole matching matrix.
        dtype: floating point type to do the computation in. If `None`, it is inferred from the inputs.
    """

    def __init__(
        self,
        max_iterations: int = 150,
        tolerance: float = 1e-5,
        outlier_weight: float = 0.0,
        sigma2: float | None = None,
        normalize: bool = True,
        correspondence: bool = False,
        block_size: int | None = None,
        dtype=None,
    ):
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.outlier_weight = outlier_weight
        self.sigma2 = sigma2
        self.normalize = normalize
        self.correspondence = correspondence
        self.block_size = block_size
        self.dtype = dtype

    @property
    def estimator(self) -> TransformEstimator:
        """M-step for the family of transforms to fit."""
        raise NotImplementedError

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int):
        if isinstance(value, bool) or int(value) != value or value < 1:
            raise ValueError("max_iterations must be a positive integer")
        self._max_iterations = int(value)

    @property
    def tolerance(self) -> float:
        return self._tolerance

    @tolerance.setter
    def tolerance(self, value: float):
        if not value > 0:
            raise ValueError("tolerance must be positive")
        self._tolerance = float(value)

    @property
    def outlier_weight(self) -> float:
        return self._outlier_weight

    @outlier_weight.setter
    def outlier_weight(self, value: float):
        if not 0 <= value < 1:
            raise ValueError("outlier_weight must be in range [0, 1)")
        self._outlier_weight = float(value)

    @property
    def sigma2(self) -> float | None:
        return self._sigma2

    @sigma2.setter
    def sigma2(self, value: float | None):
        if value is not None and not value >= 0:
            raise ValueError("sigma2 must be non-negative")
        self._sigma2 = None if value is None else float(value)

    @property
    def normalize(self) -> bool:
        return self._normalize

    @normalize.setter
    def normalize(self, value: bool):
        self._normalize = bool(value)

    @property
    def correspondence(self) -> bool:
        return self._correspondence

    @correspondence.setter
    def correspondence(self, value: bool):
        self._correspondence = bool(value)

    @property
    def block_size(self) -> int | None:
        return self._block_size

    @block_size.setter
    def block_size(self, value: int | None):
        if value is not None and (int(value) != value or value < 1):
            raise ValueError("block_size must be a positive integer or None")
        self._block_size = None if value is None else int(value)

    @property
    def dtype(self):
        return self._dtype

    @dtype.setter
    def dtype(self, value):
        if value is not None and not jnp.issubdtype(value, jnp.floating):
            raise ValueError("dtype must be a floating point type")
        self._dtype = value

    def _validate(
        self, fixed: ArrayLike, moving: ArrayLike
    ) -> tuple[Float[Array, "n d"], Float[Array, "m d"]]:
        fixed, moving = jnp.asarray(fixed), jnp.asarray(moving)
        if fixed.ndim != 2 or moving.ndim != 2:
            raise DimensionMismatchError(
                "point sets must be 2-D arrays, got shapes "
                f"{fixed.shape} and {moving.shape}"
            )
        if fixed.shape[1] != moving.shape[1]:
            raise DimensionMismatchError(
                f"fixed points are {fixed.shape[1]}-D but moving points are "
                f"{moving.shape[1]}-D"
            )
        if min(fixed.shape) < 1 or min(moving.shape) < 1:
            raise DimensionMismatchError(
                "point sets must contain at least one point with at least one "
                f"coordinate, got shapes {fixed.shape} and {moving.shape}"
            )
        dtype = self.dtype
        if dtype is None:
            dtype = jnp.result_type(fixed.dtype, moving.dtype, float)
        return fixed.astype(dtype), moving.astype(dtype)

    def run(self, fixed: ArrayLike, moving: ArrayLike) -> Result:
        """Register the moving points onto the fixed points.

        Args:
            fixed (ArrayLike): (n, d) fixed (reference) points
            moving (ArrayLike): (m, d) moving points

        Returns:
            Result: the fitted transform, in the coordinates of the inputs.

        Raises:
            DimensionMismatchError: if the inputs are not (n, d) and (m, d) arrays.
            SingularCovarianceError: if the M-step failed. The exception carries the last valid transform.
        """
        start = time.perf_counter()
        x, y = self._validate(fixed, moving)
        (n, d), (m, _) = x.shape, y.shape
        estimator = self.estimator
        if self.normalize:
            x, y, normalization = normalize(x, y)
        else:
            normalization = identity_normalization(d, x.dtype)
        if self.sigma2:
            var_i = self.sigma2 / normalization.fixed_scale**2
        else:
            var_i = default_sigma2(x, y)
        var_i = jnp.asarray(var_i, dtype=x.dtype)
        logger.debug(
            "registering %d moving onto %d fixed points in %d-D with %s, "
            "initial variance %g",
            m,
            n,
            d,
            type(estimator).__name__,
            float(var_i),
        )

        params, var, iter_num, state, varz = _em_loop(
            x,
            y,
            var_i,
            estimator,
            self.outlier_weight,
            self.tolerance,
            self.max_iterations,
            self.block_size,
        )
        state, iterations = State(int(state)), int(iter_num)
        points = estimator.transform(y, params)
        correspondence = None
        if self.correspondence and state is not State.NUMERICAL_FAILURE:
            correspondence = compute_probabilities(
                x,
                points,
                var,
                self.outlier_weight,
                self.block_size,
                correspondence=True,
            ).correspondence
        result = estimator.to_result(
            params,
            points=points,
            sigma2=var,
            iterations=iterations,
            state=state,
            variances=varz[: iterations + 1],
            correspondence=correspondence,
        )
        result.denormalize(normalization)
        result.runtime = time.perf_counter() - start

        if state is State.NUMERICAL_FAILURE:
            logger.error(
                "singular covariance in M-step at iteration %d", iterations
            )
            raise SingularCovarianceError(
                f"covariance matrix is singular at iteration {iterations}, "
                "cannot update the transform",
                iteration=iterations,
                transform=result.transform,
                translation=result.translation,
                sigma2=result.sigma2,
            )
        logger.debug(
            "finished after %d iterations (%s), variance %g, %.3fs",
            iterations,
            state.name.lower(),
            float(result.sigma2),
            result.runtime,
        )
        return result


class Rigid(Registration):
    """Rigid coherent point drift: rotation, translation and optionally isotropic scaling.

    Args:
        allow_scaling (bool): estimate an isotropic scaling term.
        no_reflections (bool): constrain the rotation to have determinant +1.
        **kwargs: configuration of the EM loop, see `Registration`.
    """

    def __init__(
        self,
        allow_scaling: bool = False,
        no_reflections: bool = True,
        **kwargs,
    ):
        self.allow_scaling = allow_scaling
        self.no_reflections = no_reflections
        super().__init__(**kwargs)

    @property
    def estimator(self) -> RigidEstimator:
        return RigidEstimator(self.allow_scaling, self.no_reflections)

    @property
    def allow_scaling(self) -> bool:
        return self._allow_scaling

    @allow_scaling.setter
    def allow_scaling(self, value: bool):
        self._allow_scaling = bool(value)

    @property
    def no_reflections(self) -> bool:
        return self._no_reflections

    @no_reflections.setter
    def no_reflections(self, value: bool):
        self._no_reflections = bool(value)

    def run(self, fixed: ArrayLike, moving: ArrayLike) -> RigidResult:
        return super().run(fixed, moving)


class Affine(Registration):
    """Affine coherent point drift: an unconstrained linear map plus translation.

    Args:
        **kwargs: configuration of the EM loop, see `Registration`.
    """

    @property
    def estimator(self) -> AffineEstimator:
        return AffineEstimator()
