"""Occultation solution vector for maps of arbitrary degree.

The visible flux of a polynomial map ``p`` (see
:mod:`starflux.operators.polynomials`) occulted by a disk of radius ``r``
centred at ``(0, b)`` is ``sT(b, r) @ A2 @ p``. Each entry of ``sT`` is the
surface integral of one Green's basis term over the visible part of the
disk, written with Green's theorem as

    s_n = Q(G_n) - P(G_n),

the line integral of the vector field ``G_n`` along the unocculted limb
(``Q``) minus the one along the occultor boundary inside the disk (``P``).

The ``z``-free terms reduce to the trigonometric integrals ``H_{u,v}``. The
terms carrying a factor of ``z`` reduce, after the substitution
``phi = 3 pi / 2 + 2x`` on the occultor boundary, to

    J_v = int_{-kappa}^{kappa} sin^{2v}(x) (1 - q sin^2 x)^{3/2} dx,

with ``q = 4 b r / (1 - (b - r)^2)`` and ``sin^2 kappa = 1 / q`` (or
``kappa = pi / 2`` when the occultor lies inside the disk). ``J_v`` obeys
a three-term recursion that is stable upward for ``1/2 <= k^2 <= 2`` and
downward otherwise; the two ends are seeded with complete elliptic
integrals and with power series respectively. ``s_2`` (the ``z`` term) is
done separately in closed form with :func:`starflux.solvers.elliptic.cel`.

Everything below is branch-free ``jax.numpy`` so it broadcasts over arrays
of geometries and can be traced by :func:`jax.jacfwd`. Geometry checks and
warnings only run on concrete inputs.
"""

from __future__ import annotations

import logging
import math
import warnings
from functools import lru_cache
from typing import NamedTuple, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array

from ..config import SolverConfig
from ..errors import DomainError, NumericalWarning
from ..operators.basis import A2inv, rT
from ..operators.polynomials import lm, sh_size
from .elliptic import cel, ellipe, ellipk

logger = logging.getLogger(__name__)

_DEFAULT_SOLVER = SolverConfig()
_SAFE_B = 0.3
_SAFE_R = 0.2


# ===========================================================================
# Geometry
# ===========================================================================


class OccultationGeometry(NamedTuple):
    """Per-sample quantities shared by the general and limb-darkening solvers.

    ``b`` and ``r`` hold the inputs wherever an integral is needed and a
    harmless stand-in elsewhere, so every derived field is finite.
    """

    b: Array
    r: Array
    unocculted: Array
    full: Array
    partial: Array
    q: Array
    k2: Array
    k: Array
    kappa: Array
    lam: Array
    phi: Array
    D: Array
    delta: Array


def powers(x: Array, order: int) -> Array:
    """``x^0 .. x^order`` stacked on a new last axis, by repeated products."""

    x = jnp.asarray(x)
    out = [jnp.ones_like(x)]
    for _ in range(order):
        out.append(out[-1] * x)
    return jnp.stack(out, axis=-1)


def is_concrete(*values) -> bool:
    return not any(isinstance(v, jax.core.Tracer) for v in values)


def check_domain(b, r) -> None:
    """Raise :class:`DomainError` for negative or non-finite ``b`` or ``r``."""

    b_np = np.asarray(b, dtype=np.float64)
    r_np = np.asarray(r, dtype=np.float64)
    if not (np.all(np.isfinite(b_np)) and np.all(np.isfinite(r_np))):
        raise DomainError("impact parameter and occultor radius must be finite")
    if np.any(r_np < 0.0):
        raise DomainError("occultor radius must be >= 0")
    if np.any(b_np < 0.0):
        raise DomainError("impact parameter must be >= 0")


def tangency_mask(b, r, tol: float) -> np.ndarray:
    """Samples whose occultor and limb touch from inside.

    Either the occultor lies in the disk (``b + r == 1``) or the disk lies
    in the occultor (``b == r - 1``).
    """

    b_np = np.asarray(b, dtype=np.float64)
    r_np = np.asarray(r, dtype=np.float64)
    occulted = (r_np > 0.0) & (b_np < 1.0 + r_np) & (b_np > r_np - 1.0)
    inside = occulted & (np.abs(b_np + r_np - 1.0) < tol)
    enclosing = (r_np > 1.0) & (np.abs(b_np - r_np + 1.0) < tol)
    return inside | enclosing


def warn_tangency(b, r, tol: float) -> None:
    mask = tangency_mask(b, r, tol)
    if np.any(mask):
        warnings.warn(
            f"{int(np.sum(mask))} occultation(s) within {tol:g} of "
            "tangency; limiting values substituted",
            NumericalWarning,
            stacklevel=3,
        )


def occultation_geometry(
    b: Array, r: Array, tol: float = _DEFAULT_SOLVER.tangency_tol
) -> OccultationGeometry:
    """Classify samples and compute the angles of the visible boundary.

    Samples within ``tol`` of an external contact (``b == 1 + r``) or of the
    disk touching the occultor from inside (``b == r - 1``) are classified as
    unocculted or fully occulted; ``1 - (b - r)^2`` vanishes there.
    """

    b, r = jnp.broadcast_arrays(jnp.asarray(b, dtype=float), jnp.asarray(r, dtype=float))
    unocculted = (r <= 0.0) | (b >= 1.0 + r - tol)
    full = (b <= r - 1.0 + tol) & ~unocculted
    partial = (b > jnp.abs(1.0 - r)) & ~unocculted & ~full
    occulted = ~(unocculted | full)

    bs = jnp.where(occulted, b, _SAFE_B)
    rs = jnp.where(occulted, r, _SAFE_R)
    D = 1.0 - (bs - rs) ** 2
    q = 4.0 * bs * rs / D

    q_part = jnp.where(partial, q, 2.0)
    k2 = jnp.where(partial, 1.0 / q_part, 1.0)
    k = jnp.sqrt(k2)
    kappa = jnp.where(partial, jnp.arcsin(jnp.minimum(k, 1.0)), 0.5 * math.pi)

    bp = jnp.where(partial, bs, 1.0)
    rp = jnp.where(partial, rs, 1.0)
    sin_lam = jnp.clip((1.0 - rs * rs + bs * bs) / (2.0 * bp), -1.0, 1.0)
    sin_phi = jnp.clip((1.0 - rs * rs - bs * bs) / (2.0 * bp * rp), -1.0, 1.0)
    lam = jnp.where(partial, jnp.arcsin(sin_lam), 0.5 * math.pi)
    phi = jnp.where(partial, jnp.arcsin(sin_phi), 0.5 * math.pi)
    delta = (bs - rs) / (2.0 * rs)

    return OccultationGeometry(
        b=bs,
        r=rs,
        unocculted=unocculted,
        full=full,
        partial=partial,
        q=q,
        k2=k2,
        k=k,
        kappa=kappa,
        lam=lam,
        phi=phi,
        D=D,
        delta=delta,
    )


# ===========================================================================
# Trigonometric integrals
# ===========================================================================


def h_integrals(lam: Array, umax: int, vmax: int) -> Array:
    """``H_{u,v}(lam) = int_{pi-lam}^{2pi+lam} cos^u sin^v``, shape ``(..., umax+1, vmax+1)``."""

    lam = jnp.asarray(lam)
    c = jnp.cos(lam)
    s = jnp.sin(lam)
    zero = jnp.zeros_like(lam)
    table = [[zero for _ in range(vmax + 1)] for _ in range(umax + 1)]
    table[0][0] = math.pi + 2.0 * lam
    if vmax >= 1:
        table[0][1] = -2.0 * c
    for v in range(2, vmax + 1):
        table[0][v] = (-2.0 * c * s ** (v - 1) + (v - 1) * table[0][v - 2]) / v
    for u in range(2, umax + 1, 2):
        for v in range(vmax + 1):
            table[u][v] = (2.0 * c ** (u - 1) * s ** (v + 1) + (u - 1) * table[u - 2][v]) / (u + v)
    return jnp.stack([jnp.stack(row, axis=-1) for row in table], axis=-2)


# ===========================================================================
# The J_v integrals
# ===========================================================================


def series_terms(config: SolverConfig) -> int:
    # Both series converge at least as fast as 2^-j in their branch.
    needed = int(math.ceil(math.log(config.series_tol) / math.log(0.5))) + 1
    return max(4, min(int(config.series_terms), needed))


def _j_series(v: int, m: Array, partial: Array, nterms: int) -> Array:
    """``J_v`` from its power series in ``k^2`` (partial) or ``q`` (full)."""

    # partial: 2 k^(2v+1) sum_j C(2j, j) 4^-j m^j B(v + j + 1/2, 5/2) / 2
    t = math.exp(math.lgamma(v + 0.5) + math.lgamma(2.5) - math.lgamma(v + 3.0)) / 2.0
    term_p = jnp.full_like(m, t)
    sum_p = term_p
    # full: 2 sum_j binom(3/2, j) (-q)^j int_0^{pi/2} sin^(2v+2j)
    t = math.sqrt(math.pi) * math.exp(math.lgamma(v + 0.5) - math.lgamma(v + 1.0)) / 2.0
    term_f = jnp.full_like(m, t)
    sum_f = term_f
    for j in range(nterms):
        a = v + j
        term_p = term_p * m * (2.0 * j + 1.0) / (2.0 * j + 2.0) * (a + 0.5) / (a + 3.0)
        sum_p = sum_p + term_p
        term_f = term_f * (-m) * (1.5 - j) / (j + 1.0) * (2.0 * a + 1.0) / (2.0 * a + 2.0)
        sum_f = sum_f + term_f
    k = jnp.sqrt(jnp.where(partial, m, 1.0))
    return jnp.where(partial, 2.0 * k ** (2 * v + 1) * sum_p, 2.0 * sum_f)


def j_integrals(
    geo: OccultationGeometry,
    vmax: int,
    config: SolverConfig = _DEFAULT_SOLVER,
) -> Array:
    """``J_0 .. J_vmax`` for every sample, shape ``(..., vmax + 1)``.

    Parameters
    ----------
    geo:
        Geometry from :func:`occultation_geometry`.
    vmax:
        Highest index, at least 2.
    config:
        Branch switch points, series length and tangency tolerance.
    """

    vmax = max(int(vmax), 2)
    q = geo.q
    partial = geo.partial
    lo, hi = config.upward_ksq_range
    upward = (q >= 1.0 / hi) & (q <= 1.0 / lo)

    # Upward from complete elliptic integrals, parameter in [1/2, 1].
    m = jnp.clip(jnp.where(partial, geo.k2, q), 0.5, 1.0)
    kk = ellipk(m)
    ee = ellipe(m)
    t0 = kk
    t1 = (kk - ee) / m
    t2 = (2.0 * (1.0 + m) * t1 - t0) / (3.0 * m)
    t3 = (4.0 * (1.0 + m) * t2 - 3.0 * t1) / (5.0 * m)
    k = jnp.sqrt(m)
    qm = jnp.where(partial, 1.0, m)
    j0 = jnp.where(partial, 2.0 * k * (t0 - 2.0 * t1 + t2), 2.0 * (t0 - 2.0 * qm * t1 + qm * qm * t2))
    j1 = jnp.where(
        partial,
        2.0 * k**3 * (t1 - 2.0 * t2 + t3),
        2.0 * (t1 - 2.0 * qm * t2 + qm * qm * t3),
    )
    qu = jnp.where(partial, 1.0 / m, m)
    up = [j0, j1]
    for v in range(1, vmax):
        nxt = ((2.0 * v * (1.0 + qu) + 4.0 * qu) * up[v] - (2.0 * v - 1.0) * up[v - 1]) / (
            qu * (2.0 * v + 5.0)
        )
        up.append(nxt)

    # Downward from the power series, parameter in [0, 1/2].
    md = jnp.clip(jnp.where(partial, geo.k2, q), 0.0, 0.5)
    qd = jnp.where(partial, 1.0 / jnp.maximum(md, 1e-300), md)
    nterms = series_terms(config)
    down = [None] * (vmax + 1)
    down[vmax] = _j_series(vmax, md, partial, nterms)
    down[vmax - 1] = _j_series(vmax - 1, md, partial, nterms)
    for v in range(vmax - 1, 0, -1):
        down[v - 1] = (
            (2.0 * v * (1.0 + qd) + 4.0 * qd) * down[v] - qd * (2.0 * v + 5.0) * down[v + 1]
        ) / (2.0 * v - 1.0)

    limit = jnp.asarray([1.0 / ((v + 0.5) * (v + 1.5)) for v in range(vmax + 1)])
    tangent = jnp.abs(q - 1.0) < config.tangency_tol
    out = jnp.where(upward[..., None], jnp.stack(up, axis=-1), jnp.stack(down, axis=-1))
    return jnp.where(tangent[..., None], limit, out)


# ===========================================================================
# Closed form of the z term
# ===========================================================================


def m_one(geo: OccultationGeometry) -> Array:
    """``M_1 = int_{-kappa}^{kappa} sqrt(1 - q sin^2 x) dx``."""

    m = jnp.where(geo.partial, geo.k2, 0.5)
    qf = jnp.where(geo.partial, 0.5, jnp.minimum(geo.q, 1.0))
    partial = 2.0 * geo.k * (ellipk(m) * (1.0 - 1.0 / m) + ellipe(m) / m)
    return jnp.where(geo.partial, partial, 2.0 * ellipe(qf))


def s2_term(geo: OccultationGeometry, j0: Array) -> Array:
    """Visible integral of ``z`` over the disk."""

    b, r, D = geo.b, geo.r, geo.D
    same = b == r
    diff = jnp.where(same, 1.0, jnp.abs(b - r))
    sqrt_d = jnp.sqrt(D)

    z1 = 2.0 * sqrt_d * m_one(geo)
    z2 = 4.0 / (diff * (b + r)) * jnp.arctan((b + r) / diff * jnp.tan(geo.kappa))

    n = 4.0 * b * r / (diff * diff)
    m = jnp.where(geo.partial, geo.k2, 0.5)
    qf = jnp.where(geo.partial, 0.5, jnp.minimum(geo.q, 1.0))
    x_partial = 2.0 * geo.k * cel(jnp.sqrt(1.0 - m), 1.0 + n * m, 1.0, 0.0)
    x_full = 2.0 * cel(jnp.sqrt(1.0 - qf), 1.0 + n, 1.0, 1.0 - qf)
    z3 = 2.0 * sqrt_d / (diff * diff) * jnp.where(geo.partial, x_partial, x_full)

    # z2 and z3 diverge as b -> r but their difference stays finite.
    ring = jnp.where(same, 0.0, (r * r - b * b) / 6.0 * (z1 + z2 - z3))
    p2 = (4.0 * geo.kappa - 2.0 * D**1.5 * j0) / 6.0 + ring
    q2 = (math.pi + 2.0 * geo.lam) / 3.0
    return q2 - p2


# ===========================================================================
# Solution vector
# ===========================================================================


@lru_cache(maxsize=None)
def _plain_terms(lmax: int) -> Tuple[np.ndarray, ...]:
    """Index tables for the ``z``-free terms (``nu`` even)."""

    q_n, q_u, q_v = [], [], []
    p_n, p_c, p_b, p_r, p_u, p_v = [], [], [], [], [], []
    for n in range(sh_size(lmax)):
        ell, m = lm(n)
        mu, nu = ell - m, ell + m
        if nu % 2:
            continue
        a = mu // 2 + 1
        c = nu // 2
        q_n.append(n)
        q_u.append(a + 1)
        q_v.append(c)
        for i in range(c + 1):
            p_n.append(n)
            p_c.append(float(math.comb(c, i)))
            p_b.append(c - i)
            p_r.append(a + 1 + i)
            p_u.append(a + 1)
            p_v.append(i)
    as_int = lambda x: np.asarray(x, dtype=np.int64)  # noqa: E731
    return (
        as_int(q_n),
        as_int(q_u),
        as_int(q_v),
        as_int(p_n),
        np.asarray(p_c, dtype=np.float64),
        as_int(p_b),
        as_int(p_r),
        as_int(p_u),
        as_int(p_v),
    )


def _poly2_mul(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Product of two polynomials in ``(w, delta)`` stored as coefficient grids."""

    out = np.zeros((a.shape[0] + b.shape[0] - 1, a.shape[1] + b.shape[1] - 1))
    for i, j in zip(*np.nonzero(a)):
        out[i : i + b.shape[0], j : j + b.shape[1]] += a[i, j] * b
    return out


def _z_term_polynomial(n: int) -> Tuple[float, np.ndarray]:
    """Integrand of ``P`` for a ``z`` term as a polynomial in ``w = sin^2 x``.

    Returns the prefactor (to be multiplied by ``D^{3/2} (2r)^{l-1}``) and
    the grid of coefficients of ``w^j delta^k``.
    """

    ell, m = lm(n)
    mu, nu = ell - m, ell + m
    one_minus_w = np.array([[1.0], [-1.0]])
    two_w_minus_one = np.array([[-1.0], [2.0]])
    delta_plus_w = np.array([[0.0, 1.0], [1.0, 0.0]])

    def base(p: int) -> np.ndarray:
        poly = np.zeros((p + 1, 1))
        poly[p, 0] = 1.0
        for _ in range(p):
            poly = _poly2_mul(poly, one_minus_w)
        return poly

    if mu == 1 and ell % 2 == 0:
        return -1.0, _poly2_mul(base((ell - 2) // 2), two_w_minus_one)
    if mu == 1:
        poly = _poly2_mul(base((ell - 3) // 2), delta_plus_w)
        return -1.0, _poly2_mul(poly, two_w_minus_one)
    alpha1 = (mu - 1) // 2
    if alpha1 % 2:
        return 0.0, np.zeros((1, 1))
    poly = base(alpha1 // 2)
    for _ in range((nu - 1) // 2):
        poly = _poly2_mul(poly, delta_plus_w)
    return 2.0, poly


@lru_cache(maxsize=None)
def _z_terms(lmax: int) -> Tuple[np.ndarray, np.ndarray]:
    """Tensor ``T[n, j, k]`` and degrees ``l_n`` for the ``z`` terms."""

    size = sh_size(lmax)
    width = max(lmax, 1)
    table = np.zeros((size, width, width), dtype=np.float64)
    degrees = np.zeros(size, dtype=np.int64)
    for n in range(size):
        ell, m = lm(n)
        degrees[n] = ell
        if (ell + m) % 2 == 0 or n == 2:
            continue
        pref, poly = _z_term_polynomial(n)
        if pref == 0.0:
            continue
        table[n, : poly.shape[0], : poly.shape[1]] = pref * poly
    return table, degrees


@lru_cache(maxsize=None)
def unocculted_solution(lmax: int) -> np.ndarray:
    """Solution row of the bare disk, ``rT @ A2^{-1}``."""

    out = rT(lmax) @ A2inv(lmax)
    out.setflags(write=False)
    return out


def solution_vector(
    lmax: int,
    b: Array,
    r: Array,
    *,
    config: SolverConfig = _DEFAULT_SOLVER,
) -> Array:
    """Occultation solution row ``sT`` in the Green's basis.

    Parameters
    ----------
    lmax:
        Maximum degree of the map.
    b:
        Impact parameter(s), distance of the occultor centre from the disk
        centre in units of the body radius.
    r:
        Occultor radius (or radii) in the same units.
    config:
        Numerical policy of the recursions.

    Returns
    -------
    Array
        Shape ``broadcast(b, r).shape + (N,)``. ``sT @ A2 @ p`` is the
        visible flux of a map with polynomial coefficients ``p``.

    Raises
    ------
    DomainError
        If ``b`` or ``r`` is negative or not finite (concrete inputs only).
    """

    if is_concrete(b, r):
        check_domain(b, r)
        warn_tangency(b, r, config.tangency_tol)
    geo = occultation_geometry(b, r, config.tangency_tol)
    size = sh_size(lmax)
    batch = geo.b.shape
    dtype = geo.b.dtype

    q_n, q_u, q_v, p_n, p_c, p_b, p_r, p_u, p_v = _plain_terms(lmax)
    h_lam = h_integrals(geo.lam, lmax + 2, lmax)
    h_phi = h_integrals(geo.phi, lmax + 2, lmax)

    s = jnp.zeros(batch + (size,), dtype=dtype)
    s = s.at[..., q_n].add(h_lam[..., q_u, q_v])
    b_pow = powers(geo.b, lmax)
    r_pow = powers(geo.r, lmax + 2)
    p_plain = p_c * b_pow[..., p_b] * r_pow[..., p_r] * h_phi[..., p_u, p_v]
    s = s.at[..., p_n].add(-p_plain)

    if lmax >= 1:
        table, degrees = _z_terms(lmax)
        jv = j_integrals(geo, lmax + 1, config)
        width = table.shape[1]
        delta_pow = powers(geo.delta, width - 1)
        inner = jnp.einsum("njk,...j,...k->...n", table, jv[..., :width], delta_pow)
        two_r_pow = powers(2.0 * geo.r, lmax)[..., np.maximum(degrees - 1, 0)]
        s = s - geo.D[..., None] ** 1.5 * two_r_pow * inner
        s = s.at[..., 2].set(s2_term(geo, jv[..., 0]))

    unocc = jnp.asarray(unocculted_solution(lmax))
    s = jnp.where(geo.full[..., None], 0.0, s)
    s = jnp.where(geo.unocculted[..., None], unocc, s)
    if is_concrete(b, r) and logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "solution vector lmax=%d: %d partial, %d inside, %d unocculted, %d full",
            lmax,
            int(np.sum(np.asarray(geo.partial))),
            int(np.sum(np.asarray(~(geo.partial | geo.unocculted | geo.full)))),
            int(np.sum(np.asarray(geo.unocculted))),
            int(np.sum(np.asarray(geo.full))),
        )
    return s


__all__ = [
    "OccultationGeometry",
    "check_domain",
    "h_integrals",
    "j_integrals",
    "m_one",
    "occultation_geometry",
    "s2_term",
    "solution_vector",
    "tangency_mask",
    "unocculted_solution",
    "warn_tangency",
]
