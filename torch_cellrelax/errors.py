"""Exceptions and warnings raised by torch-cellrelax constraints."""

import torch


class ConfigurationError(ValueError):
    """Invalid or ambiguous constraint specification."""


class DimensionMismatchError(ValueError):
    """A dof vector, mask, or matrix has the wrong shape."""


class SingularCellError(torch.linalg.LinAlgError):
    """A cell deformation matrix is not invertible."""


class ConflictingOptionWarning(UserWarning):
    """Two options were given that cannot both take effect.

    The constraint is still built; the option that loses is ignored.
    """
