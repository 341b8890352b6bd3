"""Packed indexing and Cartesian polynomial algebra on the unit sphere.

Maps are stored in the packed ``(l, m)`` layout ``n = l*l + l + m``. The
same index enumerates the *polynomial basis* used by the occultation
solvers,

    p̃_n = x^{mu/2} y^{nu/2}               if nu is even,
    p̃_n = x^{(mu-1)/2} y^{(nu-1)/2} z     if nu is odd,

with ``mu = l - m`` and ``nu = l + m``. Every polynomial on the sphere of
degree ``<= l`` has a unique expansion in ``p̃_0 .. p̃_{(l+1)^2-1}`` once
powers of ``z`` above one are eliminated with ``z^2 = 1 - x^2 - y^2``.

Polynomials are plain ``dict`` objects mapping exponent triples
``(i, j, k)`` of ``x^i y^j z^k`` to float coefficients. They are only used
on the host to build the degree-dependent matrices, which are then cached.
"""

from __future__ import annotations

import math
from functools import lru_cache
from typing import Dict, Tuple

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array

Monomial = Tuple[int, int, int]
Polynomial = Dict[Monomial, float]


# ===========================================================================
# Index utilities
# ===========================================================================


def sh_size(order: int) -> int:
    """Number of real SH coefficients up to degree ``order``: (p+1)^2."""

    p = int(order)
    if p < 0:
        raise ValueError("order must be >= 0")
    return (p + 1) * (p + 1)


def sh_offset(ell: int) -> int:
    """Packed offset for degree ``ell`` in the (p+1)^2 layout."""

    ll = int(ell)
    if ll < 0:
        raise ValueError("ell must be >= 0")
    return ll * ll


def sh_index(ell: int, m: int) -> int:
    """Packed index for coefficient (ell, m) for m in [-ell..ell]."""

    ll = int(ell)
    mm = int(m)
    if ll < 0:
        raise ValueError("ell must be >= 0")
    if mm < -ll or mm > ll:
        raise ValueError("m must satisfy -ell <= m <= ell")
    return sh_offset(ll) + (mm + ll)


def lm(n: int) -> Tuple[int, int]:
    """Degree and order of the ``n``-th packed coefficient."""

    nn = int(n)
    if nn < 0:
        raise ValueError("n must be >= 0")
    ell = math.isqrt(nn)
    return ell, nn - ell * ell - ell


def packed_degree_slices(order: int) -> tuple[slice, ...]:
    """Return packed slices (one per l) for a given maximum degree."""

    p = int(order)
    if p < 0:
        raise ValueError("order must be >= 0")
    return tuple(slice(ell * ell, (ell + 1) * (ell + 1)) for ell in range(p + 1))


def monomial_index(i: int, j: int, k: int) -> int:
    """Packed index of the polynomial-basis term ``x^i y^j z^k`` (k in {0, 1})."""

    if k == 0:
        ell = i + j
        m = j - i
    elif k == 1:
        ell = i + j + 1
        m = j - i
    else:
        raise ValueError("z exponent must be 0 or 1 after reduction")
    return ell * ell + ell + m


def monomial_exponents(n: int) -> Monomial:
    """Exponents ``(i, j, k)`` of the ``n``-th polynomial-basis term."""

    ell, m = lm(n)
    mu = ell - m
    nu = ell + m
    if nu % 2 == 0:
        return mu // 2, nu // 2, 0
    return (mu - 1) // 2, (nu - 1) // 2, 1


# ===========================================================================
# Polynomial algebra
# ===========================================================================


def poly_add(a: Polynomial, b: Polynomial, scale: float = 1.0) -> Polynomial:
    """Return ``a + scale * b``."""

    out = dict(a)
    for key, value in b.items():
        out[key] = out.get(key, 0.0) + scale * value
    return out


def poly_mul(a: Polynomial, b: Polynomial) -> Polynomial:
    out: Polynomial = {}
    for (i1, j1, k1), c1 in a.items():
        for (i2, j2, k2), c2 in b.items():
            key = (i1 + i2, j1 + j2, k1 + k2)
            out[key] = out.get(key, 0.0) + c1 * c2
    return out


def poly_reduce(poly: Polynomial) -> Polynomial:
    """Eliminate ``z^k`` for ``k >= 2`` using ``z^2 = 1 - x^2 - y^2``."""

    pending = dict(poly)
    out: Polynomial = {}
    while pending:
        (i, j, k), c = pending.popitem()
        if c == 0.0:
            continue
        if k < 2:
            out[(i, j, k)] = out.get((i, j, k), 0.0) + c
            continue
        for key, coeff in (
            ((i, j, k - 2), c),
            ((i + 2, j, k - 2), -c),
            ((i, j + 2, k - 2), -c),
        ):
            pending[key] = pending.get(key, 0.0) + coeff
    return {key: value for key, value in out.items() if value != 0.0}


def poly_partial(poly: Polynomial, axis: int) -> Polynomial:
    """Partial derivative with respect to x (0), y (1) or z (2)."""

    out: Polynomial = {}
    for exps, c in poly.items():
        power = exps[axis]
        if power == 0:
            continue
        key = list(exps)
        key[axis] -= 1
        key_t = (key[0], key[1], key[2])
        out[key_t] = out.get(key_t, 0.0) + c * power
    return out


def poly_to_vector(poly: Polynomial, lmax: int) -> np.ndarray:
    """Coefficients of a polynomial in the packed polynomial basis."""

    vec = np.zeros(sh_size(lmax), dtype=np.float64)
    for (i, j, k), c in poly_reduce(poly).items():
        n = monomial_index(i, j, k)
        if n >= vec.shape[0]:
            if abs(c) > 1e-12:
                raise ValueError(f"polynomial term x^{i} y^{j} z^{k} exceeds lmax={lmax}")
            continue
        vec[n] += c
    return vec


def poly_from_vector(vec: np.ndarray) -> Polynomial:
    """Inverse of :func:`poly_to_vector` for a packed coefficient vector."""

    out: Polynomial = {}
    for n, c in enumerate(np.asarray(vec, dtype=np.float64)):
        if c != 0.0:
            out[monomial_exponents(n)] = float(c)
    return out


# ===========================================================================
# Cartesian real spherical harmonics
# ===========================================================================


def _azimuthal_polynomials(m: int) -> Tuple[Polynomial, Polynomial]:
    """Return ``Re`` and ``Im`` of ``(x + i y)^m`` as polynomials."""

    cos_m: Polynomial = {(0, 0, 0): 1.0}
    sin_m: Polynomial = {}
    for _ in range(m):
        # (C + iS)(x + iy) = (xC - yS) + i(xS + yC)
        cos_next = poly_add(poly_mul(cos_m, {(1, 0, 0): 1.0}), poly_mul(sin_m, {(0, 1, 0): 1.0}), -1.0)
        sin_next = poly_add(poly_mul(sin_m, {(1, 0, 0): 1.0}), poly_mul(cos_m, {(0, 1, 0): 1.0}))
        cos_m, sin_m = cos_next, sin_next
    return cos_m, sin_m


def _legendre_z_polynomial(ell: int, m: int) -> Polynomial:
    """``P_l^m(z) / sin^m(theta)`` on the unit sphere, without Condon-Shortley.

    Recursion:
      Q_m^m = (2m-1)!!
      Q_{m+1}^m = (2m+1) z Q_m^m
      (l-m) Q_l^m = (2l-1) z Q_{l-1}^m - (l+m-1) Q_{l-2}^m
    """

    double_fact = 1.0
    for k in range(1, 2 * m, 2):
        double_fact *= k
    q_prev: Polynomial = {(0, 0, 0): double_fact}
    if ell == m:
        return q_prev
    q_curr = poly_mul(q_prev, {(0, 0, 1): 2.0 * m + 1.0})
    for k in range(m + 2, ell + 1):
        q_next = poly_add(
            poly_mul(q_curr, {(0, 0, 1): (2.0 * k - 1.0) / (k - m)}),
            q_prev,
            -(k + m - 1.0) / (k - m),
        )
        q_prev, q_curr = q_curr, q_next
    return q_curr


@lru_cache(maxsize=None)
def _ylm_polynomial_cached(ell: int, m: int) -> Tuple[Tuple[Monomial, float], ...]:
    m_abs = abs(m)
    norm = (2.0 - (1.0 if m == 0 else 0.0)) * (2.0 * ell + 1.0) / (4.0 * math.pi)
    norm *= math.factorial(ell - m_abs) / math.factorial(ell + m_abs)
    cos_m, sin_m = _azimuthal_polynomials(m_abs)
    azimuthal = cos_m if m >= 0 else sin_m
    poly = poly_mul(_legendre_z_polynomial(ell, m_abs), azimuthal)
    poly = poly_reduce({key: math.sqrt(norm) * c for key, c in poly.items()})
    return tuple(sorted(poly.items()))


def ylm_polynomial(ell: int, m: int) -> Polynomial:
    """Real, orthonormal ``Y_lm`` as a reduced Cartesian polynomial.

    ``m > 0`` terms carry ``cos(m phi)`` (x-like), ``m < 0`` terms carry
    ``sin(|m| phi)`` (y-like); no Condon-Shortley phase is applied, so
    ``Y_{1,-1}, Y_{1,0}, Y_{1,1}`` are proportional to ``y, z, x``.
    """

    sh_index(ell, m)
    return dict(_ylm_polynomial_cached(int(ell), int(m)))


def polynomial_basis(lmax: int, x: Array, y: Array, z: Array) -> Array:
    """Evaluate every polynomial-basis term at the given surface points.

    Returns an array of shape ``x.shape + (N,)``.
    """

    x = jnp.asarray(x)
    y = jnp.asarray(y)
    z = jnp.asarray(z)
    terms = []
    for n in range(sh_size(lmax)):
        i, j, k = monomial_exponents(n)
        term = x**i * y**j
        if k:
            term = term * z
        terms.append(term * jnp.ones_like(x * y * z))
    return jnp.stack(terms, axis=-1)


__all__ = [
    "Monomial",
    "Polynomial",
    "lm",
    "monomial_exponents",
    "monomial_index",
    "packed_degree_slices",
    "poly_add",
    "poly_from_vector",
    "poly_mul",
    "poly_partial",
    "poly_reduce",
    "poly_to_vector",
    "polynomial_basis",
    "sh_index",
    "sh_offset",
    "sh_size",
    "ylm_polynomial",
]
