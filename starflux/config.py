"""Configuration model for starflux maps and solvers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

MAX_SUPPORTED_DEGREE = 20


class MapKind(str, Enum):
    """Coefficient layout of a map.

    ``DEFAULT`` maps carry one Ylm column and one limb-darkening column.
    ``SPECTRAL`` maps carry one Ylm and one limb-darkening column per
    wavelength bin and return one flux per bin. ``TEMPORAL`` maps carry the
    Taylor coefficients of the Ylm vector in time and return a single flux.
    """

    DEFAULT = "default"
    SPECTRAL = "spectral"
    TEMPORAL = "temporal"


@dataclass(frozen=True)
class SolverConfig:
    """Numerical policy of the occultation solvers."""

    tangency_tol: float = 1e-12
    series_terms: int = 200
    series_tol: float = 1e-17
    upward_ksq_range: Tuple[float, float] = (0.5, 2.0)


@dataclass(frozen=True)
class RotationConfig:
    """Policy for the Taylor shortcut of repeated rotations about one axis."""

    taylor: bool = True
    taylor_order: int = 8
    taylor_tol: float = 1e-13


@dataclass(frozen=True)
class MapConfig:
    """Aggregate container passed to :class:`starflux.Map`."""

    solver: SolverConfig = SolverConfig()
    rotation: RotationConfig = RotationConfig()


def normalize_kind(kind: "MapKind | str") -> MapKind:
    if isinstance(kind, MapKind):
        return kind
    return MapKind(str(kind).strip().lower())


def column_counts(kind: MapKind, ncol: int) -> Tuple[int, int, int]:
    """Return ``(ncoly, ncolu, nflx)`` for a map kind and column count."""

    if kind is MapKind.DEFAULT:
        return 1, 1, 1
    if kind is MapKind.SPECTRAL:
        return ncol, ncol, ncol
    # TEMPORAL
    return ncol, 1, 1


__all__ = [
    "MAX_SUPPORTED_DEGREE",
    "MapConfig",
    "MapKind",
    "RotationConfig",
    "SolverConfig",
    "column_counts",
    "normalize_kind",
]
