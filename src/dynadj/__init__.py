"""
dynadj: dynamical adjustment of gridded climate fields by constructed circulation analogues.

The main public entry points are:
  - `run_dynamical_adjustment` (one circulation/response pair, leave-one-year-out)
  - `run_ensemble` (members of a perturbed ensemble against a shared training pair)
"""

from .distance import compute_distances, distance_matrix
from .errors import ConfigurationError, DataContractError, NumericalWarning
from .grid import FieldSeries, GridSpec, flip_longitudes, validate_pair
from .reconstruct import AggregateOutput, IterationResult, aggregate_iterations, reconstruct_iteration
from .selection import AnalogPool, DayOfYearWindowWithWrap, SameYear, SameYearAndMonth, rank_analogs
from .workflow import AdjustmentResult, AnalogConfig, EnsembleResult, run_dynamical_adjustment, run_ensemble

__all__ = [
    "AnalogConfig",
    "AdjustmentResult",
    "EnsembleResult",
    "run_dynamical_adjustment",
    "run_ensemble",
    "FieldSeries",
    "GridSpec",
    "flip_longitudes",
    "validate_pair",
    "compute_distances",
    "distance_matrix",
    "AnalogPool",
    "SameYear",
    "SameYearAndMonth",
    "DayOfYearWindowWithWrap",
    "rank_analogs",
    "IterationResult",
    "AggregateOutput",
    "reconstruct_iteration",
    "aggregate_iterations",
    "ConfigurationError",
    "DataContractError",
    "NumericalWarning",
]
