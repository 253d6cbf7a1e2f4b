"""
Calendar bookkeeping on numpy datetime64[D] arrays.

The daily window is measured in calendar days around the target's (month, day)
anchor placed in each candidate's own year and in the neighbouring years, so a
window crossing 31 Dec / 1 Jan wraps naturally and contains 2*N_d+1 days in
every year whether or not it is a leap year. A 29 Feb anchor falls back to
28 Feb in non-leap years.
"""

from __future__ import annotations

import numpy as np


def as_days(times: np.ndarray) -> np.ndarray:
    return np.asarray(times, dtype="datetime64[D]").reshape(-1)


def years(times: np.ndarray) -> np.ndarray:
    """(n,) int64 calendar year."""
    return as_days(times).astype("datetime64[Y]").astype(np.int64) + 1970


def months(times: np.ndarray) -> np.ndarray:
    """(n,) int64 calendar month in 1..12."""
    return as_days(times).astype("datetime64[M]").astype(np.int64) % 12 + 1


def days_of_month(times: np.ndarray) -> np.ndarray:
    """(n,) int64 day of month in 1..31."""
    t = as_days(times)
    return (t - t.astype("datetime64[M]").astype("datetime64[D]")).astype(np.int64) + 1


def day_of_year(times: np.ndarray) -> np.ndarray:
    """(n,) int64 day of year in 1..366."""
    t = as_days(times)
    return (t - t.astype("datetime64[Y]").astype("datetime64[D]")).astype(np.int64) + 1


def is_leap_year(year: np.ndarray) -> np.ndarray:
    y = np.asarray(year, dtype=np.int64)
    return (y % 4 == 0) & ((y % 100 != 0) | (y % 400 == 0))


def anchor_dates(year: np.ndarray, month: int, day: int) -> np.ndarray:
    """
    (n,) datetime64[D] dates for (month, day) in each given year.

    29 Feb maps to 28 Feb in non-leap years.
    """
    y = np.asarray(year, dtype=np.int64).reshape(-1)
    d = np.full(y.shape, int(day), dtype=np.int64)
    if int(month) == 2 and int(day) == 29:
        d = np.where(is_leap_year(y), 29, 28)
    month_start = (y - 1970) * 12 + (int(month) - 1)
    return month_start.astype("datetime64[M]").astype("datetime64[D]") + (d - 1).astype("timedelta64[D]")


def circular_day_offset(times: np.ndarray, target: np.datetime64) -> np.ndarray:
    """
    (n,) int64 signed offset in days from the nearest target-(month, day) anchor.

    For each time t in year Y the anchors in years Y-1, Y and Y+1 are tried and
    the one with the smallest |t - anchor| wins, so 2 Jan is +5 days from a
    28 Dec target regardless of which year either date falls in.
    """
    t = as_days(times)
    target_arr = as_days(np.asarray([target]))
    month = int(months(target_arr)[0])
    day = int(days_of_month(target_arr)[0])
    y = years(t)

    offsets = np.stack(
        [(t - anchor_dates(y + k, month, day)).astype(np.int64) for k in (-1, 0, 1)],
        axis=1,
    )  # (n, 3)
    best = np.argmin(np.abs(offsets), axis=1)
    return offsets[np.arange(t.size), best]
