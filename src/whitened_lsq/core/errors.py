# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Exception taxonomy for whitened-lsq.

All errors are raised at the point of violation and are never retried or
downgraded inside the library. Each class also derives from the closest
builtin so callers that only know the builtin hierarchy still catch them.

DimensionMismatch
    An operand's length disagrees with a model's or factor's dimension.
SingularModel
    A non-constrained model would need to invert a zero (or near-zero)
    sigma or diagonal entry of R.
UnsupportedOperation
    Jacobian whitening requested from a Constrained model.
DecodingError
    A linear factor index cannot be resolved through an Ordering.
IndeterminantSystem
    The dense solver produced a non-finite update.
"""

from __future__ import annotations


class WhitenedLsqError(Exception):
    """Base class of every error raised by whitened-lsq."""


class DimensionMismatch(WhitenedLsqError, ValueError):
    pass


class SingularModel(WhitenedLsqError, ArithmeticError):
    pass


class UnsupportedOperation(WhitenedLsqError, NotImplementedError):
    pass


class DecodingError(WhitenedLsqError, LookupError):
    pass


class IndeterminantSystem(WhitenedLsqError, ArithmeticError):
    pass


def check_dim(expected: int, actual: int, what: str) -> None:
    """Raise DimensionMismatch unless ``actual == expected``."""
    if actual != expected:
        raise DimensionMismatch(f"{what}: expected dimension {expected}, got {actual}")
