"""
Error taxonomy for dynamical adjustment.

Every failure here is deterministic given the inputs (and the seed), so none is
retried: callers see the exception as soon as it happens.
"""

from __future__ import annotations


class DynAdjError(Exception):
    """Base class for dynadj errors."""


class ConfigurationError(DynAdjError, ValueError):
    """Invalid run parameters, or not enough training data left after exclusion."""


class DataContractError(DynAdjError, ValueError):
    """Input fields violate the grid/time conventions expected by the core."""


class NumericalWarning(RuntimeWarning):
    """Near-singular analogue sets were regularized during reconstruction."""
