"""
Gridded field containers and data-contract checks (no I/O).

Conventions:
  - A grid is a (lat, lon) product with latitude strictly ascending and
    longitude inside [0, 360], increasing modulo 360 (a flipped domain such
    as 330, 340, ..., 350, 0, 10 is continuous across the seam).
  - Fields are stored flat: a (n_lat, n_lon) map is flattened row-major,
      pix = ilon + ilat * n_lon
    so a series of n_time maps is a (n_time, n_pix) array.
  - Times are numpy datetime64 values, one per row.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import DataContractError


@dataclass(frozen=True)
class GridSpec:
    """Latitude/longitude coordinates (degrees) of a regular grid."""

    lat: np.ndarray  # (n_lat,)
    lon: np.ndarray  # (n_lon,)

    def __post_init__(self) -> None:
        object.__setattr__(self, "lat", np.asarray(self.lat, dtype=np.float64).reshape(-1))
        object.__setattr__(self, "lon", np.asarray(self.lon, dtype=np.float64).reshape(-1))

    @property
    def n_lat(self) -> int:
        return int(self.lat.size)

    @property
    def n_lon(self) -> int:
        return int(self.lon.size)

    @property
    def n_pix(self) -> int:
        return int(self.n_lat * self.n_lon)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_lat, self.n_lon)

    def validate(self) -> None:
        """Raise DataContractError unless latitudes ascend and longitudes sit in [0, 360]."""
        if self.n_lat < 1 or self.n_lon < 1:
            raise DataContractError("Grid must have at least one latitude and one longitude.")
        if not bool(np.all(np.isfinite(self.lat))) or not bool(np.all(np.isfinite(self.lon))):
            raise DataContractError("Grid coordinates must be finite.")
        if self.n_lat > 1 and not bool(np.all(np.diff(self.lat) > 0)):
            raise DataContractError("Latitudes must be strictly ascending.")
        if bool(np.any(self.lat < -90.0)) or bool(np.any(self.lat > 90.0)):
            raise DataContractError("Latitudes must lie in [-90, 90].")
        if bool(np.any(self.lon < 0.0)) or bool(np.any(self.lon > 360.0)):
            raise DataContractError(
                f"Longitudes must lie in [0, 360]; got [{float(np.min(self.lon))}, {float(np.max(self.lon))}]. "
                "Apply flip_longitudes upstream for domains straddling the 0/360 seam."
            )
        if self.n_lon > 1:
            steps = self.lon_steps()
            if not bool(np.all((steps > 0) & (steps < 180.0))) or float(np.sum(steps)) >= 360.0:
                raise DataContractError("Longitudes must be increasing (modulo 360) and span less than a full circle.")

    def lon_steps(self) -> np.ndarray:
        """(n_lon-1,) eastward spacing in degrees, continuous across the 0/360 seam."""
        return np.mod(np.diff(self.lon), 360.0)

    def same_as(self, other: "GridSpec") -> bool:
        return (
            self.shape == other.shape
            and bool(np.array_equal(self.lat, other.lat))
            and bool(np.array_equal(self.lon, other.lon))
        )


@dataclass(frozen=True)
class FieldSeries:
    """
    Time series of flattened maps for one variable.

    Args:
      values: (n_time, n_pix) float, pix = ilon + ilat * n_lon.
      grid: coordinates for the pixel axis.
      times: (n_time,) datetime64 stamps.
      name: variable name (used in progress lines and npz outputs).
    """

    values: np.ndarray
    grid: GridSpec
    times: np.ndarray
    name: str = ""

    def __post_init__(self) -> None:
        values = np.asarray(self.values, dtype=np.float64)
        if values.ndim == 3:
            values = values.reshape(values.shape[0], -1)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "times", np.asarray(self.times, dtype="datetime64[D]").reshape(-1))

    @property
    def n_time(self) -> int:
        return int(self.values.shape[0])

    def maps(self) -> np.ndarray:
        """(n_time, n_lat, n_lon) view of the values."""
        return self.values.reshape(self.n_time, self.grid.n_lat, self.grid.n_lon)

    def validate(self) -> None:
        """Check grid conventions, shapes and completeness of one series."""
        self.grid.validate()
        if self.values.ndim != 2:
            raise DataContractError(f"[{self.name}] values must be (n_time, n_pix); got shape {self.values.shape}.")
        if int(self.values.shape[1]) != self.grid.n_pix:
            raise DataContractError(
                f"[{self.name}] pixel axis has {int(self.values.shape[1])} points, grid has {self.grid.n_pix}."
            )
        if self.times.shape != (self.n_time,):
            raise DataContractError(f"[{self.name}] times must have shape (n_time,)=({self.n_time},).")
        if self.n_time > 1 and not bool(np.all(np.diff(self.times) > np.timedelta64(0, "D"))):
            raise DataContractError(f"[{self.name}] times must be strictly increasing.")
        if not bool(np.all(np.isfinite(self.values))):
            raise DataContractError(f"[{self.name}] values contain NaN/inf; infill upstream.")


def validate_pair(circ: FieldSeries, resp: FieldSeries) -> None:
    """
    Validate a (circulation, response) pair once, before any per-step work.

    The two variables may live on different grids but must be index-aligned in time.
    """
    circ.validate()
    resp.validate()
    if circ.n_time != resp.n_time:
        raise DataContractError(
            f"Paired series differ in length: {circ.name or 'circ'}={circ.n_time} {resp.name or 'resp'}={resp.n_time}."
        )
    if not bool(np.array_equal(circ.times, resp.times)):
        raise DataContractError("Paired series must carry identical timestamps.")


def flip_longitudes(values: np.ndarray, lon: np.ndarray, *, seam_deg: float = 180.0) -> tuple[np.ndarray, np.ndarray]:
    """
    Roll a global 0-360 grid so that longitude `seam_deg` becomes the first column.

    Used upstream when the analysis domain straddles the 0/360 seam: after the
    roll, a region such as [330, 30] is a contiguous column block. Longitude
    values stay in [0, 360); the axis increases modulo 360.

    Args:
      values: (..., n_lon) array, longitude on the last axis.
      lon: (n_lon,) ascending longitudes in [0, 360).

    Returns:
      values_rolled: (..., n_lon) array.
      lon_rolled: (n_lon,) longitudes starting at the first column >= seam_deg.
    """
    lon = np.asarray(lon, dtype=np.float64).reshape(-1)
    values = np.asarray(values)
    if values.shape[-1] != lon.size:
        raise DataContractError("values last axis must match lon.")
    if lon.size > 1 and not bool(np.all(np.diff(lon) > 0)):
        raise DataContractError("flip_longitudes expects ascending longitudes.")
    shift = int(np.searchsorted(lon, float(seam_deg) % 360.0, side="left"))
    return np.roll(values, -shift, axis=-1), np.roll(lon, -shift)
