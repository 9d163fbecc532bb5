from dataclasses import dataclass, field
from enum import Enum

from jaxtyping import Array, Float, Int

from .errors import DenormalizationError
from .normalization import Normalization, denormalize_points
from .util import homogeneous_matrix

__all__ = ["State", "Result", "RigidResult"]


class State(Enum):
    ITERATING = 0
    CONVERGED = 1
    MAX_ITERATIONS = 2
    NUMERICAL_FAILURE = 3


@dataclass(kw_only=True)
class Result:
    """Outcome of a registration run.

    Points map as `y -> transform @ y + translation`. Until `denormalize` is called, all quantities are in normalized coordinates.

    Attributes:
        points (Float[Array, "m d"]): moving points under the fitted transform
        transform (Float[Array, "d d"]): linear part of the fitted transform
        translation (Float[Array, " d"]): translation part of the fitted transform
        sigma2 (Float[Array, ""]): final variance of the Gaussian noise model
        iterations (int): number of EM iterations that were run
        state (State): terminal state of the EM loop, either `State.CONVERGED` or `State.MAX_ITERATIONS`. `State.NUMERICAL_FAILURE` is never stored on a result, it is raised as `SingularCovarianceError` instead
        variances (Float[Array, " k"]): initial variance followed by the variance after each iteration
        correspondence (Int[Array, " m"] | None): index of the most likely fixed point for each moving point, if requested
        runtime (float): wall-clock duration of the run, in seconds
    """

    points: Float[Array, "m d"]
    transform: Float[Array, "d d"]
    translation: Float[Array, " d"]
    sigma2: Float[Array, ""]
    iterations: int
    state: State
    variances: Float[Array, " k"]
    correspondence: Int[Array, " m"] | None = None
    runtime: float = 0.0
    _denormalized: bool = field(default=False, repr=False)

    @property
    def converged(self) -> bool:
        return self.state is State.CONVERGED

    def denormalize(self, normalization: Normalization):
        """Rewrite the result in the coordinates of the original (unnormalized) point sets. Can only be done once."""
        if self._denormalized:
            raise DenormalizationError("result has already been denormalized")
        self.points = denormalize_points(self.points, normalization)
        self._denormalize_transform(normalization)
        scale2 = normalization.fixed_scale**2
        self.sigma2 = self.sigma2 * scale2
        self.variances = self.variances * scale2
        self._denormalized = True

    def _denormalize_transform(self, normalization: Normalization):
        self.translation = (
            normalization.fixed_scale * self.translation
            + normalization.fixed_mean
            - self.transform @ normalization.moving_mean
        )
        self.transform = (
            self.transform
            * normalization.fixed_scale
            / normalization.moving_scale
        )

    def matrix(self) -> Float[Array, "d+1 d+1"]:
        """The fitted transform as a single homogeneous matrix, `[[transform, translation], [0, 1]]`."""
        return homogeneous_matrix(self.transform, self.translation)

    def apply(self, points: Float[Array, "k d"]) -> Float[Array, "k d"]:
        """Map arbitrary points by the fitted transform."""
        return points @ self.transform.T + self.translation


@dataclass(kw_only=True)
class RigidResult(Result):
    """Result of a rigid registration, where `transform == scale * rotation`."""

    rotation: Float[Array, "d d"]
    scale: Float[Array, ""]

    def _denormalize_transform(self, normalization: Normalization):
        self.translation = (
            normalization.fixed_scale * self.translation
            + normalization.fixed_mean
            - self.scale * (self.rotation @ normalization.moving_mean)
        )
        self.scale = (
            self.scale * normalization.fixed_scale / normalization.moving_scale
        )
        self.transform = self.scale * self.rotation
