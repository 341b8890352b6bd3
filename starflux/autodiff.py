"""Forward-mode derivatives of the occultation flux."""

from __future__ import annotations

import math
from typing import Dict, Tuple

import jax
import jax.numpy as jnp
from jaxtyping import Array

from .config import MapKind, SolverConfig
from .operators.basis import A1, A2, limb_darkening_polynomial, polynomial_product
from .operators.rotation import dot_rz, rotate
from .solvers.greens import solution_vector

_PER_SAMPLE = ("theta", "xo", "yo", "ro", "t")


def taylor_weights(t: Array, order: int) -> Array:
    """``t^i / i!`` for ``i < order``, shape ``t.shape + (order,)``."""

    t = jnp.asarray(t)
    out = [jnp.ones_like(t)]
    for i in range(1, order):
        out.append(out[-1] * t / i)
    return jnp.stack(out, axis=-1)


def occultor_frame(xo: Array, yo: Array) -> Tuple[Array, Array]:
    """Impact parameter and the angle that turns the occultor onto ``+y``.

    Both are differentiable at ``xo = yo = 0``, where the angle is 0.
    """

    b2 = xo * xo + yo * yo
    off = b2 > 0.0
    b = jnp.where(off, jnp.sqrt(jnp.where(off, b2, 1.0)), 0.0)
    theta_z = jnp.arctan2(jnp.where(off, xo, 0.0), jnp.where(off, yo, 1.0))
    return b, theta_z


def differentiable_flux(
    lmax: int,
    kind: MapKind,
    y: Array,
    u: Array,
    axis: Array,
    theta: Array,
    xo: Array,
    yo: Array,
    ro: Array,
    zo: Array,
    t: Array,
    *,
    config: SolverConfig = SolverConfig(),
) -> Array:
    """Pure flux of a map through the general solver, shape ``(nt, nflx)``.

    ``y`` is ``(N, ncoly)``, ``u`` is ``(lmax + 1, ncolu)`` including the
    fixed ``u_0 = -1`` row, ``theta`` is in degrees and every per-sample
    argument is a 1-D array of the same length. Limb darkening is always
    applied as a polynomial product, truncated at ``lmax``.
    """

    theta_rad = jnp.asarray(theta) * (math.pi / 180.0)
    y_rot = rotate(y, axis, theta_rad, lmax)
    if kind is MapKind.TEMPORAL:
        weights = taylor_weights(t, y_rot.shape[-1])
        columns = [jnp.einsum("tnc,tc->tn", y_rot, weights)]
    else:
        columns = [y_rot[..., c] for c in range(y_rot.shape[-1])]

    b, theta_z = occultor_frame(jnp.asarray(xo), jnp.asarray(yo))
    r = jnp.where(jnp.asarray(zo) > 0.0, jnp.asarray(ro), 0.0)
    s_a2 = solution_vector(lmax, b, r, config=config) @ jnp.asarray(A2(lmax))
    a1 = jnp.asarray(A1(lmax))

    out = []
    for c, y_c in enumerate(columns):
        p = dot_rz(y_c, theta_z, lmax, batched=True) @ a1.T
        u_c = u[:, min(c, u.shape[1] - 1)]
        p = polynomial_product(p, limb_darkening_polynomial(u_c, lmax), lmax)
        out.append(jnp.sum(s_a2 * p, axis=-1))
    return jnp.stack(out, axis=-1)


def flux_and_gradients(
    lmax: int,
    kind: MapKind,
    y: Array,
    u: Array,
    axis: Array,
    theta: Array,
    xo: Array,
    yo: Array,
    ro: Array,
    zo: Array,
    t: Array,
    *,
    config: SolverConfig = SolverConfig(),
) -> Tuple[Array, Dict[str, Array]]:
    """Flux and its derivatives with forward-mode autodiff.

    Parameters
    ----------
    lmax, kind, y, u, axis:
        Map state, as in :func:`differentiable_flux`.
    theta, xo, yo, ro, zo, t:
        Per-sample arrays of length ``nt``.
    config:
        Numerical policy of the recursions.

    Returns
    -------
    flux:
        ``(nt, nflx)``.
    gradients:
        ``theta, xo, yo, ro, t`` with the shape of ``flux`` (each sample only
        depends on its own inputs); ``axis`` ``(nt, nflx, 3)``; ``y``
        ``(nt, nflx) + y.shape``; ``u`` ``(nt, nflx) + u.shape``.
    """

    args = {
        "theta": jnp.asarray(theta),
        "xo": jnp.asarray(xo),
        "yo": jnp.asarray(yo),
        "ro": jnp.asarray(ro),
        "t": jnp.asarray(t),
    }
    state = {"axis": jnp.asarray(axis), "y": jnp.asarray(y), "u": jnp.asarray(u)}
    zo = jnp.asarray(zo)

    def evaluate(sample: Dict[str, Array], glob: Dict[str, Array]) -> Array:
        return differentiable_flux(
            lmax,
            kind,
            glob["y"],
            glob["u"],
            glob["axis"],
            sample["theta"],
            sample["xo"],
            sample["yo"],
            sample["ro"],
            zo,
            sample["t"],
            config=config,
        )

    flux = evaluate(args, state)
    grads: Dict[str, Array] = {}
    for name in _PER_SAMPLE:

        def along(value: Array, name: str = name) -> Array:
            return evaluate({**args, name: value}, state)

        _, grads[name] = jax.jvp(along, (args[name],), (jnp.ones_like(args[name]),))
    grads.update(jax.jacfwd(lambda glob: evaluate(args, glob))(state))
    return flux, grads


__all__ = [
    "differentiable_flux",
    "flux_and_gradients",
    "occultor_frame",
    "taylor_weights",
]
