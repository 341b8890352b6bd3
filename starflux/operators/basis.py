"""Change-of-basis matrices between Ylm, polynomial and Green's bases.

The flux of a map with Ylm coefficients ``y`` seen through an occultor is

    F = sT(b, r) @ A2 @ A1 @ R @ y,

where ``A1`` maps Ylm coefficients onto the polynomial basis ``p̃``
(:mod:`starflux.operators.polynomials`), ``A2`` maps polynomial
coefficients onto the Green's basis ``g̃`` of Luger et al. (2019), ``R``
rotates the map and ``sT`` is the occultation solution row
(:mod:`starflux.solvers.greens`). All matrices here depend on the degree
only and are memoized with :func:`functools.lru_cache`; callers receive
read-only numpy arrays.

Normalization
-------------
``A1`` carries a factor ``2 / sqrt(pi)``, so ``Y_00`` is the constant
``1 / pi`` on the disk and a map with ``y = [1, 0, ...]`` has unit total
flux.
"""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Tuple

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array

from .polynomials import (
    Polynomial,
    lm,
    monomial_exponents,
    monomial_index,
    poly_to_vector,
    sh_size,
    ylm_polynomial,
)

logger = logging.getLogger(__name__)

FLUX_NORMALIZATION = 2.0 / math.sqrt(math.pi)


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


# ===========================================================================
# Ylm -> polynomial
# ===========================================================================


@lru_cache(maxsize=None)
def A1(lmax: int) -> np.ndarray:
    """Ylm → polynomial change of basis, shape ``(N, N)``."""

    size = sh_size(lmax)
    out = np.zeros((size, size), dtype=np.float64)
    for n in range(size):
        ell, m = lm(n)
        out[:, n] = poly_to_vector(ylm_polynomial(ell, m), lmax)
    logger.debug("built A1 for lmax=%d", lmax)
    return _readonly(out * FLUX_NORMALIZATION)


@lru_cache(maxsize=None)
def A1inv(lmax: int) -> np.ndarray:
    """Polynomial → Ylm change of basis."""

    return _readonly(np.linalg.inv(A1(lmax)))


# ===========================================================================
# polynomial -> Green's
# ===========================================================================


def greens_polynomial(n: int) -> Polynomial:
    """The ``n``-th term of the Green's basis as a Cartesian polynomial.

    Each term is the curl of a vector field whose line integral along the
    limb and along the occultor boundary has a closed form.
    """

    ell, m = lm(n)
    mu = ell - m
    nu = ell + m
    if nu % 2 == 0:
        return {(mu // 2, nu // 2, 0): 0.5 * mu + 1.0}
    if ell == 1 and m == 0:
        return {(0, 0, 1): 1.0}
    if mu == 1 and ell % 2 == 0:
        return {(ell - 2, 1, 1): 3.0}
    if mu == 1:
        return {
            (ell - 3, 0, 1): -1.0,
            (ell - 1, 0, 1): 1.0,
            (ell - 3, 2, 1): 4.0,
        }
    poly: Polynomial = {}
    if mu > 3:
        a = 0.5 * (mu - 3)
        i = (mu - 5) // 2
        poly[(i, (nu - 1) // 2, 1)] = a
        poly[(i, (nu + 3) // 2, 1)] = -a
    poly[((mu - 1) // 2, (nu - 1) // 2, 1)] = -0.5 * (mu + 3)
    return poly


@lru_cache(maxsize=None)
def A2inv(lmax: int) -> np.ndarray:
    """Green's → polynomial change of basis (columns are ``g̃_n``)."""

    size = sh_size(lmax)
    out = np.zeros((size, size), dtype=np.float64)
    for n in range(size):
        out[:, n] = poly_to_vector(greens_polynomial(n), lmax)
    return _readonly(out)


@lru_cache(maxsize=None)
def A2(lmax: int) -> np.ndarray:
    """Polynomial → Green's change of basis."""

    logger.debug("built A2 for lmax=%d", lmax)
    return _readonly(np.linalg.inv(A2inv(lmax)))


@lru_cache(maxsize=None)
def A(lmax: int) -> np.ndarray:
    """Ylm → Green's change of basis, ``A2 @ A1``."""

    return _readonly(A2(lmax) @ A1(lmax))


# ===========================================================================
# Disk-integrated polynomial terms
# ===========================================================================


@lru_cache(maxsize=None)
def rT(lmax: int) -> np.ndarray:
    """Integral of every polynomial-basis term over the unit disk."""

    rt = [0.0 for _ in range(sh_size(lmax))]
    amp0 = math.pi
    lfac1 = 1.0
    lfac2 = 2.0 / 3.0
    for ell in range(0, lmax + 1, 4):
        amp = amp0
        for m in range(0, ell + 1, 4):
            mu = ell - m
            nu = ell + m
            rt[ell * ell + ell + m] = amp * lfac1
            rt[ell * ell + ell - m] = amp * lfac1
            if ell < lmax:
                rt[(ell + 1) * (ell + 1) + ell + m + 1] = amp * lfac2
                rt[(ell + 1) * (ell + 1) + ell - m + 1] = amp * lfac2
            amp *= (nu + 2.0) / (mu - 2.0)
        lfac1 /= (ell / 2 + 2) * (ell / 2 + 3)
        lfac2 /= (ell / 2 + 2.5) * (ell / 2 + 3.5)
        amp0 *= 0.0625 * (ell + 2) * (ell + 2)

    amp0 = 0.5 * math.pi
    lfac1 = 0.5
    lfac2 = 4.0 / 15.0
    for ell in range(2, lmax + 1, 4):
        amp = amp0
        for m in range(2, ell + 1, 4):
            mu = ell - m
            nu = ell + m
            rt[ell * ell + ell + m] = amp * lfac1
            rt[ell * ell + ell - m] = amp * lfac1
            if ell < lmax:
                rt[(ell + 1) * (ell + 1) + ell + m + 1] = amp * lfac2
                rt[(ell + 1) * (ell + 1) + ell - m + 1] = amp * lfac2
            amp *= (nu + 2.0) / (mu - 2.0)
        lfac1 /= (ell / 2 + 2) * (ell / 2 + 3)
        lfac2 /= (ell / 2 + 2.5) * (ell / 2 + 3.5)
        amp0 *= 0.0625 * ell * (ell + 4)
    return _readonly(np.array(rt, dtype=np.float64))


@lru_cache(maxsize=None)
def rTA1(lmax: int) -> np.ndarray:
    """Unocculted flux row in the Ylm basis."""

    return _readonly(rT(lmax) @ A1(lmax))


# ===========================================================================
# Limb darkening
# ===========================================================================


@lru_cache(maxsize=None)
def limb_darkening_z_powers(udeg: int) -> np.ndarray:
    """Matrix mapping ``u`` onto the coefficients of ``z^0 .. z^udeg``.

    The profile is ``I(z) = -sum_i u_i (1 - z)^i`` with ``u_0 = -1``.
    """

    out = np.zeros((udeg + 1, udeg + 1), dtype=np.float64)
    for i in range(udeg + 1):
        for k in range(i + 1):
            out[k, i] = -math.comb(i, k) * (-1.0) ** k
    return _readonly(out)


@lru_cache(maxsize=None)
def limb_darkening_basis(udeg: int) -> np.ndarray:
    """Matrix mapping ``u`` onto the polynomial basis of degree ``udeg``."""

    zp = limb_darkening_z_powers(udeg)
    columns = np.zeros((udeg + 1, sh_size(udeg)), dtype=np.float64)
    for k in range(udeg + 1):
        columns[k] = poly_to_vector({(0, 0, k): 1.0}, udeg)
    return _readonly(columns.T @ zp)


@lru_cache(maxsize=None)
def limb_darkening_weights(udeg: int) -> np.ndarray:
    """Row ``w`` such that ``-w @ u`` is the mean intensity over the disk."""

    i = np.arange(udeg + 1, dtype=np.float64)
    return _readonly(2.0 / ((i + 1.0) * (i + 2.0)))


def limb_darkening_norm(u: Array) -> Array:
    """Mean disk intensity of the profile ``u`` (1 for no limb darkening)."""

    u = jnp.asarray(u)
    return -jnp.dot(jnp.asarray(limb_darkening_weights(u.shape[0] - 1)), u)


def limb_darkening_polynomial(u: Array, lmax: int) -> Array:
    """Normalized limb-darkening profile in the polynomial basis of ``lmax``.

    The profile is divided by :func:`limb_darkening_norm`, so multiplying a
    uniform map by it leaves the total flux unchanged.
    """

    u = jnp.asarray(u)
    udeg = u.shape[0] - 1
    if udeg > lmax:
        raise ValueError("limb darkening degree exceeds lmax")
    p = jnp.asarray(limb_darkening_basis(udeg)) @ u
    p = p / limb_darkening_norm(u)
    return jnp.zeros(sh_size(lmax), dtype=p.dtype).at[: p.shape[0]].set(p)


# ===========================================================================
# Products of polynomials
# ===========================================================================


@lru_cache(maxsize=None)
def _product_triplets(l1: int, l2: int, lmax_out: int) -> Tuple[np.ndarray, ...]:
    """Sparse tensor of the product of two polynomial-basis vectors."""

    size_out = sh_size(lmax_out)
    out_idx, idx1, idx2, coeff = [], [], [], []
    for n1 in range(sh_size(l1)):
        i1, j1, k1 = monomial_exponents(n1)
        deg1 = lm(n1)[0]
        for n2 in range(sh_size(l2)):
            if deg1 + lm(n2)[0] > lmax_out:
                continue
            i2, j2, k2 = monomial_exponents(n2)
            i, j, k = i1 + i2, j1 + j2, k1 + k2
            if k < 2:
                terms = (((i, j, k), 1.0),)
            else:
                terms = (((i, j, 0), 1.0), ((i + 2, j, 0), -1.0), ((i, j + 2, 0), -1.0))
            for (ti, tj, tk), c in terms:
                n = monomial_index(ti, tj, tk)
                if n < size_out:
                    out_idx.append(n)
                    idx1.append(n1)
                    idx2.append(n2)
                    coeff.append(c)
    return (
        np.asarray(out_idx, dtype=np.int64),
        np.asarray(idx1, dtype=np.int64),
        np.asarray(idx2, dtype=np.int64),
        np.asarray(coeff, dtype=np.float64),
    )


def polynomial_product(p1: Array, p2: Array, lmax_out: int) -> Array:
    """Product of two polynomial-basis vectors, truncated at ``lmax_out``.

    The truncation is exact whenever the degrees of the non-zero terms add up
    to at most ``lmax_out``. The coefficient axis is the last one; leading
    axes broadcast.
    """

    p1 = jnp.asarray(p1)
    p2 = jnp.asarray(p2)
    l1 = math.isqrt(p1.shape[-1]) - 1
    l2 = math.isqrt(p2.shape[-1]) - 1
    out_idx, idx1, idx2, coeff = _product_triplets(l1, l2, lmax_out)
    batch = jnp.broadcast_shapes(p1.shape[:-1], p2.shape[:-1])
    dtype = jnp.result_type(p1, p2)
    out = jnp.zeros(batch + (sh_size(lmax_out),), dtype=dtype)
    if out_idx.size == 0:
        return out
    terms = coeff * p1[..., idx1] * p2[..., idx2]
    return out.at[..., out_idx].add(jnp.broadcast_to(terms, batch + terms.shape[-1:]))


__all__ = [
    "A",
    "A1",
    "A1inv",
    "A2",
    "A2inv",
    "FLUX_NORMALIZATION",
    "greens_polynomial",
    "limb_darkening_basis",
    "limb_darkening_norm",
    "limb_darkening_polynomial",
    "limb_darkening_weights",
    "limb_darkening_z_powers",
    "polynomial_product",
    "rT",
    "rTA1",
]
