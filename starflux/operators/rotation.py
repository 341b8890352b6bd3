"""Rotation of real spherical-harmonic coefficient vectors.

Rotations act block by block on the packed layout: the ``2l + 1``
coefficients of degree ``l`` only ever mix among themselves. Each block is
the matrix exponential of a real antisymmetric generator,

    R_l(u, theta) = expm(theta * (u_x L_x + u_y L_y + u_z L_z)_l),

where the generators are the angular-momentum operators ``v x grad``
expressed in the Ylm basis. The convention is active: the rotated map is
``I'(v) = I(R^{-1} v)``, so rotating ``Y_{1,1}`` (x-like) by +90 degrees
about ``z`` gives ``Y_{1,-1}`` (y-like).
"""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Dict, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jax.scipy.linalg import block_diag, expm
from jaxtyping import Array

from ..errors import ConfigurationError
from .basis import A1, A1inv
from .polynomials import (
    Polynomial,
    lm,
    monomial_exponents,
    packed_degree_slices,
    poly_add,
    poly_mul,
    poly_partial,
    poly_to_vector,
    sh_size,
)

logger = logging.getLogger(__name__)

_X: Polynomial = {(1, 0, 0): 1.0}
_Y: Polynomial = {(0, 1, 0): 1.0}
_Z: Polynomial = {(0, 0, 1): 1.0}


# ===========================================================================
# Axis handling
# ===========================================================================


def normalize_axis(axis) -> np.ndarray:
    """Return ``axis`` as a unit 3-vector or raise :class:`ConfigurationError`."""

    try:
        vec = np.asarray(axis, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"axis must be a numeric 3-vector, got {axis!r}") from exc
    if vec.shape != (3,):
        raise ConfigurationError(f"axis must have shape (3,), got {vec.shape}")
    if not np.all(np.isfinite(vec)):
        raise ConfigurationError("axis must be finite")
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        raise ConfigurationError("axis must be non-zero")
    return vec / norm


def _unit(axis: Array) -> Array:
    axis = jnp.asarray(axis)
    return axis / jnp.sqrt(jnp.sum(axis * axis))


# ===========================================================================
# Generators
# ===========================================================================


def _angular_momentum(poly: Polynomial, component: int) -> Polynomial:
    """Apply ``-(e_k x v) . grad`` to a polynomial on the sphere."""

    dx = poly_partial(poly, 0)
    dy = poly_partial(poly, 1)
    dz = poly_partial(poly, 2)
    if component == 0:
        return poly_add(poly_mul(_Z, dy), poly_mul(_Y, dz), -1.0)
    if component == 1:
        return poly_add(poly_mul(_X, dz), poly_mul(_Z, dx), -1.0)
    return poly_add(poly_mul(_Y, dx), poly_mul(_X, dy), -1.0)


@lru_cache(maxsize=None)
def _polynomial_generators(lmax: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    size = sh_size(lmax)
    mats = [np.zeros((size, size), dtype=np.float64) for _ in range(3)]
    for n in range(size):
        term = {monomial_exponents(n): 1.0}
        for component in range(3):
            mats[component][:, n] = poly_to_vector(_angular_momentum(term, component), lmax)
    return mats[0], mats[1], mats[2]


@lru_cache(maxsize=None)
def rotation_generators(lmax: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Generators ``(L_x, L_y, L_z)`` of map rotations in the Ylm basis.

    Parameters
    ----------
    lmax:
        Maximum degree.

    Returns
    -------
    tuple of np.ndarray
        Three ``(N, N)`` read-only matrices. Entries coupling different
        degrees are exactly zero.
    """

    a1 = A1(lmax)
    a1inv = A1inv(lmax)
    mask = np.zeros((sh_size(lmax),) * 2, dtype=bool)
    for sl in packed_degree_slices(lmax):
        mask[sl, sl] = True
    out = []
    for gen in _polynomial_generators(lmax):
        mat = np.where(mask, a1inv @ gen @ a1, 0.0)
        mat.setflags(write=False)
        out.append(mat)
    logger.debug("built rotation generators for lmax=%d", lmax)
    return out[0], out[1], out[2]


def axis_generator(lmax: int, axis: Array) -> Array:
    """Generator ``u . L`` of rotations about ``axis`` (normalized here)."""

    lx, ly, lz = rotation_generators(lmax)
    u = _unit(axis)
    return u[0] * jnp.asarray(lx) + u[1] * jnp.asarray(ly) + u[2] * jnp.asarray(lz)


# ===========================================================================
# Exact rotations
# ===========================================================================


def rotation_matrix(lmax: int, axis: Array, theta: Array) -> Array:
    """Block-diagonal rotation matrix for a scalar angle ``theta`` in radians."""

    gen = axis_generator(lmax, axis)
    theta = jnp.asarray(theta)
    blocks = [expm(theta * gen[sl, sl]) for sl in packed_degree_slices(lmax)]
    return block_diag(*blocks)


def rotate(y: Array, axis: Array, theta: Array, lmax: int) -> Array:
    """Rotate coefficients ``y`` (``(N,)`` or ``(N, ncol)``) about ``axis``.

    ``theta`` is in radians. A scalar angle returns an array shaped like
    ``y``; an array of angles prepends its shape.
    """

    y = jnp.asarray(y)
    theta = jnp.asarray(theta)
    if theta.ndim == 0:
        return rotation_matrix(lmax, axis, theta) @ y
    flat = theta.reshape(-1)
    out = jax.vmap(lambda th: rotation_matrix(lmax, axis, th) @ y)(flat)
    return out.reshape(theta.shape + y.shape)


@lru_cache(maxsize=None)
def _rz_indices(lmax: int) -> Tuple[np.ndarray, np.ndarray]:
    size = sh_size(lmax)
    orders = np.zeros(size, dtype=np.float64)
    partner = np.zeros(size, dtype=np.int64)
    for n in range(size):
        ell, m = lm(n)
        orders[n] = m
        partner[n] = ell * ell + ell - m
    return orders, partner


def dot_rz(y: Array, theta: Array, lmax: int, *, batched: bool = False) -> Array:
    """Rotate coefficients about the line of sight ``z`` by ``theta`` radians.

    Each ``(m, -m)`` pair turns as a 2-D vector:
    ``y'_{m} = cos(m theta) y_{m} - sin(m theta) y_{-m}``.

    With ``batched=True`` the leading axes of ``y`` match ``theta`` and every
    slice is rotated by its own angle.
    """

    y = jnp.asarray(y)
    theta = jnp.asarray(theta)
    orders, partner = _rz_indices(lmax)
    angle = theta[..., None] * orders
    cos_m = jnp.cos(angle)
    sin_m = jnp.sin(angle)
    axis = theta.ndim if batched else 0
    extra = y.ndim - axis - 1
    cos_m = cos_m.reshape(cos_m.shape + (1,) * extra)
    sin_m = sin_m.reshape(sin_m.shape + (1,) * extra)
    return cos_m * y - sin_m * jnp.take(y, partner, axis=axis)


# ===========================================================================
# Taylor shortcut
# ===========================================================================


def taylor_step(lmax: int, order: int, tol: float) -> float:
    """Bucket width ``h`` with ``(lmax h / 2)^(K+1) / (K+1)! <= tol``."""

    if lmax == 0:
        return math.inf
    k1 = order + 1
    return 2.0 / lmax * (tol * math.factorial(k1)) ** (1.0 / k1)


class RotationTaylorExpansion:
    """Piecewise Taylor expansion of ``R(theta) @ y0`` about a fixed axis.

    Angles are split into buckets of width ``h`` (see :func:`taylor_step`).
    For the bucket centred on ``theta0`` the expansion
    ``sum_k (theta - theta0)^k L^k R(theta0) y0 / k!`` is cached, so a time
    series of nearby angles only pays for one exact rotation per bucket.
    Angles are wrapped into ``[-pi, pi)`` first, so at most
    ``ceil(2 pi / h) + 1`` buckets are ever built and every turn of a long
    light curve reuses them. A given angle always lands in the same bucket,
    which makes repeated evaluations bit-identical.
    """

    def __init__(
        self,
        lmax: int,
        axis,
        y0: Array,
        *,
        order: int = 8,
        tol: float = 1e-13,
    ):
        if order < 1:
            raise ConfigurationError("taylor order must be >= 1")
        self.lmax = int(lmax)
        self.axis = normalize_axis(axis)
        self.y0 = jnp.asarray(y0)
        self.order = int(order)
        self.step = taylor_step(self.lmax, self.order, float(tol))
        self._generator = axis_generator(self.lmax, jnp.asarray(self.axis))
        self._buckets: Dict[int, Array] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    @staticmethod
    def wrap(theta) -> np.ndarray:
        return np.mod(np.asarray(theta, dtype=np.float64) + math.pi, 2.0 * math.pi) - math.pi

    def bucket(self, theta) -> np.ndarray:
        return np.rint(self.wrap(theta) / self.step).astype(np.int64)

    def _terms(self, index: int) -> Array:
        terms = self._buckets.get(index)
        if terms is not None:
            return terms
        center = index * self.step
        term = rotation_matrix(self.lmax, self.axis, center) @ self.y0
        stack = [term]
        for k in range(1, self.order + 1):
            term = (self._generator @ term) / k
            stack.append(term)
        terms = jnp.stack(stack)
        self._buckets[index] = terms
        logger.debug("taylor bucket %d (theta0=%.6g) cached", index, center)
        return terms

    def __call__(self, theta) -> Array:
        """Rotated coefficients for ``theta`` in radians (scalar or array)."""

        theta = np.asarray(theta, dtype=np.float64)
        if self.lmax == 0:
            return jnp.broadcast_to(self.y0, theta.shape + self.y0.shape)
        flat = self.wrap(theta.reshape(-1))
        index = np.rint(flat / self.step).astype(np.int64)
        unique, inverse = np.unique(index, return_inverse=True)
        table = jnp.stack([self._terms(int(k)) for k in unique])
        terms = table[inverse]
        dt = jnp.asarray(flat - index * self.step)
        dt = dt.reshape(dt.shape + (1,) * self.y0.ndim)
        acc = terms[:, self.order]
        for k in range(self.order - 1, -1, -1):
            acc = acc * dt + terms[:, k]
        return acc.reshape(theta.shape + self.y0.shape)


__all__ = [
    "RotationTaylorExpansion",
    "axis_generator",
    "dot_rz",
    "normalize_axis",
    "rotate",
    "rotation_generators",
    "rotation_matrix",
    "taylor_step",
]
