"""Rigid and affine coherent point drift registration.

References
---
[1] A. Myronenko, X. Song, and M. Á. Carreira-Perpiñán, “Non-rigid point set registration: Coherent point drift,” in Proc. Int. Conf. Neural Inf. Process. Syst., 2006, pp. 1009–1016.

[2] A. Myronenko and X. Song, “Point set registration: Coherent point drift,” IEEE Trans. Pattern Anal. Mach. Intell., vol. 32, no. 12, pp. 2262–2275, Dec. 2010.
"""

from jaxtyping import ArrayLike

from ._matching import Probabilities
from .affine import AffineEstimator
from .errors import (
    DenormalizationError,
    DimensionMismatchError,
    RegistrationError,
    SingularCovarianceError,
)
from .normalization import Normalization
from .registration import Affine, Registration, Rigid, TransformEstimator
from .result import Result, RigidResult, State
from .rigid import RigidEstimator

__all__ = [
    "align",
    "rigid",
    "affine",
    "Registration",
    "Rigid",
    "Affine",
    "TransformEstimator",
    "RigidEstimator",
    "AffineEstimator",
    "Result",
    "RigidResult",
    "State",
    "Normalization",
    "Probabilities",
    "RegistrationError",
    "DimensionMismatchError",
    "SingularCovarianceError",
    "DenormalizationError",
]


def rigid(
    fixed: ArrayLike,
    moving: ArrayLike,
    sigma2: float | None = None,
    **kwargs,
) -> RigidResult:
    """Align the moving points onto the fixed points by rigid transform.

    Args:
        fixed (ArrayLike): (n, d) fixed (reference) points
        moving (ArrayLike): (m, d) moving points
        sigma2 (float | None): initial variance. If `None`, it is estimated from the data.
        **kwargs: configuration, see `Rigid` and `Registration`.

    Returns:
        RigidResult: the fitted rotation, scaling and translation.
    """
    return Rigid(sigma2=sigma2, **kwargs).run(fixed, moving)


def affine(
    fixed: ArrayLike,
    moving: ArrayLike,
    sigma2: float | None = None,
    **kwargs,
) -> Result:
    """Align the moving points onto the fixed points by affine transform.

    Args:
        fixed (ArrayLike): (n, d) fixed (reference) points
        moving (ArrayLike): (m, d) moving points
        sigma2 (float | None): initial variance. If `None`, it is estimated from the data.
        **kwargs: configuration, see `Registration`.

    Returns:
        Result: the fitted affine matrix and translation.
    """
    return Affine(sigma2=sigma2, **kwargs).run(fixed, moving)


def align(
    fixed: ArrayLike,
    moving: ArrayLike,
    method: str,
    **kwargs,
) -> Result:
    """Align the moving points onto the fixed points by the specified transform method.

    Args:
        fixed (ArrayLike): (n, d) fixed (reference) points
        moving (ArrayLike): (m, d) moving points
        method (str): the transform that is to be fit, either "rigid" or "affine".
        **kwargs: configuration, see `Rigid`, `Affine` and `Registration`.

    Returns:
        Result: the fitted transform parameters, final variance and # of iterations.
    """
    if method == "rigid":
        return rigid(fixed, moving, **kwargs)
    elif method == "affine":
        return affine(fixed, moving, **kwargs)
    else:
        raise ValueError("invalid method")
