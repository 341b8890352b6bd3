"""Occultation solver for radially symmetric (limb-darkened) maps.

A profile ``I(z) = sum_n c_n z^n`` is first rewritten in the Green's basis

    g_0 = 1,  g_1 = z,  g_n = (n + 2) z^n - n z^(n-2)  (n >= 2),

whose higher terms integrate to zero over the bare disk. The visible
integral of ``g_n`` for ``n >= 2`` only has an occultor-boundary part,

    s_n = -2 D^{n/2} [r (r - b) M_n + D / 2 (M_n - M_{n+2})],
    M_n = int_{-kappa}^{kappa} (1 - q sin^2 x)^{n/2} dx,

a one-dimensional family with a three-term recursion. ``s_0`` and ``s_1``
are shared with :mod:`starflux.solvers.greens`.
"""

from __future__ import annotations

import logging
import math

import jax.numpy as jnp
from jaxtyping import Array

from ..config import SolverConfig
from ..operators.basis import limb_darkening_norm, limb_darkening_z_powers
from .elliptic import ellipk
from .greens import (
    OccultationGeometry,
    m_one,
    occultation_geometry,
    powers,
    series_terms,
    solution_vector,
)

logger = logging.getLogger(__name__)

_DEFAULT_SOLVER = SolverConfig()


def limbdark_greens_coefficients(c: Array) -> Array:
    """Convert ``z``-power coefficients (last axis) to the Green's basis."""

    c = jnp.asarray(c)
    udeg = c.shape[-1] - 1
    rem = [c[..., i] for i in range(udeg + 1)]
    g = [None] * (udeg + 1)
    for n in range(udeg, 1, -1):
        g[n] = rem[n] / (n + 2.0)
        rem[n - 2] = rem[n - 2] + n * g[n]
    for n in range(min(udeg, 1) + 1):
        g[n] = rem[n]
    return jnp.stack(g, axis=-1)


def _m_series(n: int, m: Array, k: Array, nterms: int) -> Array:
    # 2k sum_j C(2j, j) 4^-j m^j B(j + 1/2, n/2 + 1) / 2
    h = 0.5 * n
    t = math.exp(math.lgamma(0.5) + math.lgamma(h + 1.0) - math.lgamma(h + 1.5)) / 2.0
    term = jnp.full_like(m, t)
    total = term
    for j in range(nterms):
        term = term * m * (2.0 * j + 1.0) / (2.0 * j + 2.0) * (j + 0.5) / (j + h + 1.5)
        total = total + term
    return 2.0 * k * total


def m_integrals(
    geo: OccultationGeometry,
    nmax: int,
    config: SolverConfig = _DEFAULT_SOLVER,
) -> Array:
    """``M_0 .. M_nmax`` for every sample, shape ``(..., nmax + 1)``."""

    nmax = max(int(nmax), 3)
    q = geo.q
    kappa = geo.kappa

    # Upward from closed forms for M_{-1}, M_0, M_1, M_2.
    m = jnp.where(geo.partial, geo.k2, 0.5)
    qf = jnp.where(geo.partial, 0.5, jnp.minimum(q, 1.0))
    m_neg = jnp.where(geo.partial, 2.0 * geo.k * ellipk(m), 2.0 * ellipk(qf))
    up = [None] * (nmax + 1)
    up[0] = 2.0 * kappa
    up[1] = m_one(geo)
    up[2] = 2.0 * kappa - q * (kappa - jnp.sin(kappa) * jnp.cos(kappa))
    for n in range(1, nmax - 1):
        below = m_neg if n == 1 else up[n - 2]
        up[n + 2] = ((2.0 - q) * (n + 1.0) * up[n] + n * (q - 1.0) * below) / (n + 2.0)

    # Downward from the series, only needed for partial occultations with q > 2.
    nterms = series_terms(config)
    lo = config.upward_ksq_range[0]
    downward = geo.partial & (q > 1.0 / lo)
    qd = jnp.where(downward, q, 1.0 / lo + 1.0)
    md = jnp.clip(geo.k2, 0.0, 0.5)
    kd = jnp.sqrt(md)
    top = nmax + 1
    down = {n: _m_series(n, md, kd, nterms) for n in range(top - 3, top + 1)}
    for n in range(top - 2, 1, -1):
        if n - 2 in down:
            continue
        down[n - 2] = ((n + 2.0) * down[n + 2] - (2.0 - qd) * (n + 1.0) * down[n]) / (n * (qd - 1.0))

    out = jnp.where(
        downward[..., None],
        jnp.stack([down[n] for n in range(nmax + 1)], axis=-1),
        jnp.stack(up, axis=-1),
    )
    limit = jnp.asarray(
        [
            math.sqrt(math.pi) * math.exp(math.lgamma(0.5 * (n + 1)) - math.lgamma(0.5 * n + 1.0))
            for n in range(nmax + 1)
        ]
    )
    tangent = jnp.abs(q - 1.0) < config.tangency_tol
    return jnp.where(tangent[..., None], limit, out)


def limbdark_solution_vector(
    udeg: int,
    b: Array,
    r: Array,
    *,
    config: SolverConfig = _DEFAULT_SOLVER,
) -> Array:
    """Visible integrals of the limb-darkening Green's basis, ``(..., udeg + 1)``.

    Raises
    ------
    DomainError
        If ``b`` or ``r`` is negative or not finite (concrete inputs only).
    """

    base = solution_vector(1, b, r, config=config)
    terms = [base[..., 0], base[..., 2]]
    if udeg >= 2:
        geo = occultation_geometry(b, r, config.tangency_tol)
        mn = m_integrals(geo, udeg + 2, config)
        d_pow = powers(jnp.sqrt(geo.D), udeg)
        ring = geo.r * (geo.r - geo.b)
        blocked = geo.unocculted | geo.full
        for n in range(2, udeg + 1):
            s_n = -2.0 * d_pow[..., n] * (
                ring * mn[..., n] + 0.5 * geo.D * (mn[..., n] - mn[..., n + 2])
            )
            terms.append(jnp.where(blocked, 0.0, s_n))
    return jnp.stack(terms[: udeg + 1], axis=-1)


def limbdark_flux(
    u: Array,
    b: Array,
    r: Array,
    *,
    config: SolverConfig = _DEFAULT_SOLVER,
) -> Array:
    """Normalized flux of a limb-darkened uniform disk.

    Parameters
    ----------
    u:
        Limb-darkening coefficients ``u_0 .. u_udeg`` with ``u_0 = -1``.
    b, r:
        Impact parameter and occultor radius, broadcast together.
    config:
        Numerical policy of the recursions.

    Returns
    -------
    Array
        Visible flux in units of the unocculted flux.
    """

    u = jnp.asarray(u)
    udeg = u.shape[0] - 1
    c = jnp.asarray(limb_darkening_z_powers(udeg)) @ u
    g = limbdark_greens_coefficients(c)
    s = limbdark_solution_vector(udeg, b, r, config=config)
    return (s @ g) / (math.pi * limb_darkening_norm(u))


__all__ = [
    "limbdark_flux",
    "limbdark_greens_coefficients",
    "limbdark_solution_vector",
    "m_integrals",
]
