"""Occultation solution vectors for general and limb-darkened maps."""

from .greens import occultation_geometry, solution_vector, unocculted_solution
from .limbdark import limbdark_flux, limbdark_solution_vector

__all__ = [
    "limbdark_flux",
    "limbdark_solution_vector",
    "occultation_geometry",
    "solution_vector",
    "unocculted_solution",
]
