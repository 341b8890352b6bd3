"""Change-of-basis, product and rotation operators on coefficient vectors."""

from .basis import A, A1, A1inv, A2, A2inv, polynomial_product, rT, rTA1
from .polynomials import lm, polynomial_basis, sh_index, sh_offset, sh_size
from .rotation import RotationTaylorExpansion, dot_rz, rotate, rotation_matrix

__all__ = [
    "A",
    "A1",
    "A1inv",
    "A2",
    "A2inv",
    "RotationTaylorExpansion",
    "dot_rz",
    "lm",
    "polynomial_basis",
    "polynomial_product",
    "rT",
    "rTA1",
    "rotate",
    "rotation_matrix",
    "sh_index",
    "sh_offset",
    "sh_size",
]
