"""Exception and warning types raised by kmeans_inference.

Every exception derives from :class:`KMeansInferenceError`, and also
from the builtin a caller would naturally catch (``ValueError`` for bad
input, ``RuntimeError`` for failures that depend on the data).
"""

from __future__ import annotations

__all__ = [
    "KMeansInferenceError",
    "InvalidInputError",
    "DegenerateClusterError",
    "SelectionEventError",
    "NumericDegeneracyWarning",
]


class KMeansInferenceError(Exception):
    """Base class for all errors raised by this package."""


class InvalidInputError(KMeansInferenceError, ValueError):
    """Malformed matrix, invalid ``k``, labels, features or noise parameters.

    Raised before any clustering or interval computation takes place.
    """


class DegenerateClusterError(KMeansInferenceError, RuntimeError):
    """The requested comparison between two clusters is ill-posed.

    Either k-means returned fewer than ``k`` non-empty clusters, or the
    two requested labels are the same.
    """


class SelectionEventError(KMeansInferenceError, RuntimeError):
    """The solved conditioning set is empty.

    The observed data always satisfy their own selection event, so an
    empty set means the constraints were assembled inconsistently.
    """


class NumericDegeneracyWarning(RuntimeWarning):
    """The truncation set is thin relative to floating-point precision."""
