"""
Analogue selection: exclusion policies and ranking.

A policy maps (target time, training times) to a boolean candidate mask. The
three cadences share one ranking step:

  - SameYear:                 drop the target's calendar year.
  - SameYearAndMonth:         keep the target's calendar month only, drop its year
                              (monthly leave-one-year-out).
  - DayOfYearWindowWithWrap:  keep days within +-N_d calendar days of the target's
                              day of year (wrapping across 31 Dec / 1 Jan), drop
                              the target's year (daily).

When training and target come from the same series, the target's own index is
always removed as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np

from . import calendar
from .errors import ConfigurationError

MONTHLY = "monthly"
DAILY = "daily"
CADENCES = (MONTHLY, DAILY)


class ExclusionPolicy(Protocol):
    name: str

    def candidate_mask(self, target_time: np.datetime64, training_times: np.ndarray) -> np.ndarray:
        ...


@dataclass(frozen=True)
class SameYear:
    name: str = "same_year"

    def candidate_mask(self, target_time: np.datetime64, training_times: np.ndarray) -> np.ndarray:
        y_target = int(calendar.years(np.asarray([target_time]))[0])
        return calendar.years(training_times) != y_target


@dataclass(frozen=True)
class SameYearAndMonth:
    name: str = "same_year_and_month"

    def candidate_mask(self, target_time: np.datetime64, training_times: np.ndarray) -> np.ndarray:
        t = np.asarray([target_time])
        y_target = int(calendar.years(t)[0])
        m_target = int(calendar.months(t)[0])
        return (calendar.months(training_times) == m_target) & (calendar.years(training_times) != y_target)


@dataclass(frozen=True)
class DayOfYearWindowWithWrap:
    half_window_days: int
    name: str = "day_of_year_window"

    def __post_init__(self) -> None:
        if int(self.half_window_days) < 0:
            raise ConfigurationError("half_window_days must be >= 0.")

    def candidate_mask(self, target_time: np.datetime64, training_times: np.ndarray) -> np.ndarray:
        y_target = int(calendar.years(np.asarray([target_time]))[0])
        offset = calendar.circular_day_offset(training_times, target_time)
        in_window = np.abs(offset) <= int(self.half_window_days)
        return in_window & (calendar.years(training_times) != y_target)


def policy_for_cadence(cadence: str, window_days: int = 0) -> ExclusionPolicy:
    c = str(cadence).strip().lower()
    if c == MONTHLY:
        return SameYearAndMonth()
    if c == DAILY:
        return DayOfYearWindowWithWrap(half_window_days=int(window_days))
    raise ConfigurationError(f"Unknown cadence {cadence!r}; expected one of {CADENCES}.")


def candidate_indices(
    policy: ExclusionPolicy,
    *,
    target_time: np.datetime64,
    training_times: np.ndarray,
    target_index: int | None = None,
) -> np.ndarray:
    """
    Eligible training indices for one target, in chronological order.

    Args:
      target_index: index of the target inside the training series when both
        come from the same series; that entry is always excluded. None when the
        target belongs to another series (e.g. an ensemble member).

    Returns:
      (n_cand,) int64, ascending.
    """
    mask = np.asarray(policy.candidate_mask(target_time, training_times), dtype=bool).copy()
    if target_index is not None:
        mask[int(target_index)] = False
    return np.nonzero(mask)[0].astype(np.int64)


@dataclass(frozen=True)
class AnalogPool:
    """N_a nearest training indices, ascending distance (ties: chronological)."""

    indices: np.ndarray  # (n_a,) int64 into the training series
    distances: np.ndarray  # (n_a,) float64

    @property
    def size(self) -> int:
        return int(self.indices.size)


def rank_analogs(
    distances: np.ndarray,
    candidates: np.ndarray,
    n_analogs: int,
    *,
    label: str = "",
) -> AnalogPool:
    """
    Keep the n_analogs nearest candidates.

    Args:
      distances: (n_cand,) distances aligned with `candidates`.
      candidates: (n_cand,) ascending training indices left after exclusion.
      n_analogs: N_a.
      label: target description for error messages.

    Raises:
      ConfigurationError: fewer than n_analogs candidates remain.
    """
    distances = np.asarray(distances, dtype=np.float64).reshape(-1)
    candidates = np.asarray(candidates, dtype=np.int64).reshape(-1)
    if distances.shape != candidates.shape:
        raise ValueError("distances and candidates must have the same length.")
    if candidates.size < int(n_analogs):
        raise ConfigurationError(
            f"Insufficient training data{(' for ' + label) if label else ''}: "
            f"{int(candidates.size)} candidates remain after exclusion, n_analogs={int(n_analogs)}."
        )
    # Stable sort on chronologically ordered candidates breaks ties by time.
    order = np.argsort(distances, kind="stable")[: int(n_analogs)]
    return AnalogPool(indices=candidates[order], distances=distances[order])
