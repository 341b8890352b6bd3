"""starflux: fluxes and occultation light curves of spherical-harmonic maps."""

from ._typecheck import enable_runtime_typecheck
from ._precision import enable_x64

enable_runtime_typecheck()
enable_x64()

from .config import (
    MAX_SUPPORTED_DEGREE,
    MapConfig,
    MapKind,
    RotationConfig,
    SolverConfig,
)
from .errors import ConfigurationError, DomainError, NumericalWarning
from .map import Map, create_map

__all__ = [
    "ConfigurationError",
    "DomainError",
    "MAX_SUPPORTED_DEGREE",
    "Map",
    "MapConfig",
    "MapKind",
    "NumericalWarning",
    "RotationConfig",
    "SolverConfig",
    "create_map",
]
