__all__ = [
    "RegistrationError",
    "DimensionMismatchError",
    "SingularCovarianceError",
    "DenormalizationError",
]


class RegistrationError(Exception):
    """Base class for all errors raised while registering two point sets."""


class DimensionMismatchError(RegistrationError, ValueError):
    """The fixed and moving point sets are not (n, d) and (m, d) arrays with a common `d`."""


class SingularCovarianceError(RegistrationError, ArithmeticError):
    """The M-step covariance was rank-deficient, so the transform could not be updated.

    The last valid transform parameters (in the coordinates of the input points) and the index of the failing iteration are kept so that the caller can retry with a different configuration.
    """

    def __init__(self, message, iteration, transform, translation, sigma2):
        super().__init__(message)
        self.iteration = iteration
        self.transform = transform
        self.translation = translation
        self.sigma2 = sigma2


class DenormalizationError(RegistrationError, RuntimeError):
    """A result was mapped back to input coordinates more than once."""
