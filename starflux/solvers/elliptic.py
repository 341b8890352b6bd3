"""Complete elliptic integrals through Bulirsch's general integral ``cel``.

    cel(kc, p, a, b) = int_0^{pi/2} (a cos^2 + b sin^2)
                       / ((cos^2 + p sin^2) sqrt(cos^2 + kc^2 sin^2)) dphi

All functions are element-wise, branch-free ``jax.numpy`` code, so they can
be traced by :func:`jax.jacfwd` and broadcast over arrays of geometries.
The Landen/AGM iteration runs a fixed number of steps and freezes entries
once they have converged.
"""

from __future__ import annotations

import math

import jax.numpy as jnp
from jaxtyping import Array

_CA = 1e-8
_KC_FLOOR = 1e-16
_ITERATIONS = 24


def cel(kc: Array, p: Array, a: Array, b: Array) -> Array:
    """Bulirsch's complete elliptic integral of the general kind.

    Parameters
    ----------
    kc:
        Complementary modulus; its absolute value is used and is floored at
        ``1e-16``.
    p:
        Characteristic, any non-zero real (``p < 0`` uses the Cauchy
        principal value).
    a, b:
        Numerator weights of ``cos^2`` and ``sin^2``.

    Returns
    -------
    Array
        ``cel(kc, p, a, b)`` broadcast over the inputs.
    """

    kc, p, a, b = jnp.broadcast_arrays(
        jnp.asarray(kc, dtype=float),
        jnp.asarray(p, dtype=float),
        jnp.asarray(a, dtype=float),
        jnp.asarray(b, dtype=float),
    )
    qc = jnp.maximum(jnp.abs(kc), _KC_FLOOR)
    e = qc
    em = jnp.ones_like(qc)

    pos = p > 0.0
    p_pos = jnp.sqrt(jnp.where(pos, p, 1.0))
    b_pos = b / p_pos

    # p == 1 (every ellipk/ellipe call) makes g vanish in the unused branch.
    f = qc * qc
    q = 1.0 - f
    g = jnp.where(pos, 1.0, 1.0 - p)
    f = f - p
    q = q * (b - a * p)
    p_neg = jnp.sqrt(jnp.where(pos, 1.0, f / g))
    a_neg = jnp.where(pos, 0.0, (a - b) / g)
    b_neg = jnp.where(pos, 0.0, -q / (g * g * p_neg) + a_neg * p_neg)

    p = jnp.where(pos, p_pos, p_neg)
    a = jnp.where(pos, a, a_neg)
    b = jnp.where(pos, b_pos, b_neg)

    done = jnp.zeros(qc.shape, dtype=bool)
    for _ in range(_ITERATIONS):
        f = a
        a_new = a + b / p
        g = e / p
        b_new = 2.0 * (b + f * g)
        p_new = g + p
        g = em
        em_new = em + qc
        a = jnp.where(done, a, a_new)
        b = jnp.where(done, b, b_new)
        p = jnp.where(done, p, p_new)
        em = jnp.where(done, em, em_new)
        done = done | (jnp.abs(g - qc) <= g * _CA)
        qc_new = 2.0 * jnp.sqrt(e)
        qc = jnp.where(done, qc, qc_new)
        e = jnp.where(done, e, qc_new * em)
    return 0.5 * math.pi * (b + a * em) / (em * (em + p))


def ellipk(m: Array) -> Array:
    """Complete elliptic integral of the first kind, parameter ``m = k^2``."""

    m = jnp.asarray(m, dtype=float)
    kc = jnp.sqrt(jnp.maximum(1.0 - m, 0.0))
    return cel(kc, 1.0, 1.0, 1.0)


def ellipe(m: Array) -> Array:
    """Complete elliptic integral of the second kind, parameter ``m = k^2``."""

    m = jnp.asarray(m, dtype=float)
    kc = jnp.sqrt(jnp.maximum(1.0 - m, 0.0))
    return cel(kc, 1.0, 1.0, kc * kc)


__all__ = ["cel", "ellipe", "ellipk"]
