"""Exception hierarchy shared by every stage of the engine.

``InputError`` is always surfaced to the caller.  ``DegenerateResult`` and
``NumericalInstability`` are raised internally and recovered close to where
they happen (equal weights or inverse-variance weights plus a warning log).
``ConstraintViolation`` marks a broken allocation invariant; it is only
raised when strict allocation checks are switched on.
"""

from __future__ import annotations


class SpoHybridError(Exception):
    """Base class for engine errors."""


class InputError(SpoHybridError, ValueError):
    """Malformed or mismatched inputs (shapes, NaN/Inf, bad parameters)."""


class DegenerateResult(SpoHybridError):
    """A stage produced an all-zero or otherwise unusable weight vector."""


class NumericalInstability(SpoHybridError):
    """The optimizer search produced non-finite values."""


class ConstraintViolation(SpoHybridError, AssertionError):
    """An allocation broke non-negativity, the position cap or the sum bound."""


__all__ = [
    "SpoHybridError",
    "InputError",
    "DegenerateResult",
    "NumericalInstability",
    "ConstraintViolation",
]
