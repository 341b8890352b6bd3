"""Error and warning types raised by starflux."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid map construction or mutation (degree, columns, axis, shapes)."""


class DomainError(ValueError):
    """Occultor geometry for which the flux integral is undefined."""


class NumericalWarning(RuntimeWarning):
    """A limiting value was substituted near an ill-conditioned geometry."""


__all__ = ["ConfigurationError", "DomainError", "NumericalWarning"]
