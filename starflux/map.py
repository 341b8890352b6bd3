"""The ``Map`` orchestrator: coefficient state, caching and evaluation."""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional, Tuple, Union

import jax.numpy as jnp
import numpy as np
from jaxtyping import Array

from .autodiff import flux_and_gradients, occultor_frame, taylor_weights
from .config import (
    MAX_SUPPORTED_DEGREE,
    MapConfig,
    MapKind,
    column_counts,
    normalize_kind,
)
from .errors import ConfigurationError
from .operators.basis import (
    A1,
    A2,
    limb_darkening_polynomial,
    polynomial_product,
)
from .operators.polynomials import polynomial_basis, sh_index, sh_size
from .operators.rotation import (
    RotationTaylorExpansion,
    dot_rz,
    normalize_axis,
    rotate,
)
from .runtime.cache import Cache
from .solvers.greens import check_domain, solution_vector
from .solvers.limbdark import limbdark_flux

logger = logging.getLogger(__name__)

DEFAULT_AXIS = (0.0, 1.0, 0.0)


def _as_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    return int(value)


def _finite_array(values, name: str) -> np.ndarray:
    try:
        arr = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be numeric") from exc
    if not np.all(np.isfinite(arr)):
        raise ConfigurationError(f"{name} must be finite")
    return arr


class Map:
    """A rotating, optionally limb-darkened body described by Ylm coefficients.

    Parameters
    ----------
    lmax:
        Maximum spherical-harmonic degree, ``0 <= lmax <= MAX_SUPPORTED_DEGREE``.
    kind:
        :class:`~starflux.config.MapKind` (or its string value).
    ncol:
        Number of wavelength bins (``SPECTRAL``) or Taylor orders in time
        (``TEMPORAL``). Must be 1 for ``DEFAULT`` maps.
    config:
        Numerical policy; defaults to :class:`~starflux.config.MapConfig`.

    Raises
    ------
    ConfigurationError
        On an out-of-range degree or a non-positive column count.

    Notes
    -----
    Angles (``theta`` and :meth:`rotate`) are in degrees. A map is not
    thread-safe; use one instance per worker.
    """

    def __init__(
        self,
        lmax: int,
        kind: Union[MapKind, str] = MapKind.DEFAULT,
        ncol: int = 1,
        *,
        config: Optional[MapConfig] = None,
    ):
        lmax = _as_int(lmax, "lmax")
        if lmax < 0 or lmax > MAX_SUPPORTED_DEGREE:
            raise ConfigurationError(f"lmax must be in [0, {MAX_SUPPORTED_DEGREE}], got {lmax}")
        try:
            kind = normalize_kind(kind)
        except ValueError as exc:
            raise ConfigurationError(f"unknown map kind {kind!r}") from exc
        ncol = _as_int(ncol, "ncol")
        if ncol < 1:
            raise ConfigurationError(f"ncol must be >= 1, got {ncol}")
        if kind is MapKind.DEFAULT and ncol != 1:
            raise ConfigurationError("default maps have exactly one column")
        if config is not None and not isinstance(config, MapConfig):
            raise ConfigurationError("config must be a MapConfig")

        self._lmax = lmax
        self._kind = kind
        self._ncoly, self._ncolu, self._nflx = column_counts(kind, ncol)
        self._config = config if config is not None else MapConfig()
        self._cache = Cache()
        self._y = np.zeros((sh_size(lmax), self._ncoly))
        self._u = np.zeros((lmax + 1, self._ncolu))
        self._axis = normalize_axis(DEFAULT_AXIS)
        self.reset()

    def __repr__(self) -> str:
        return (
            f"Map(lmax={self._lmax}, kind={self._kind.value!r}, "
            f"ncoly={self._ncoly}, ncolu={self._ncolu})"
        )

    # ------------------------------------------------------------------
    # properties
    # ------------------------------------------------------------------

    @property
    def lmax(self) -> int:
        return self._lmax

    @property
    def N(self) -> int:
        return sh_size(self._lmax)

    @property
    def kind(self) -> MapKind:
        return self._kind

    @property
    def ncoly(self) -> int:
        return self._ncoly

    @property
    def ncolu(self) -> int:
        return self._ncolu

    @property
    def nflx(self) -> int:
        return self._nflx

    @property
    def config(self) -> MapConfig:
        return self._config

    @property
    def cache(self) -> Cache:
        return self._cache

    @property
    def y(self) -> np.ndarray:
        """Ylm coefficients, ``(N,)`` for one column else ``(N, ncoly)``."""

        y = self._y.copy()
        return y[:, 0] if self._ncoly == 1 else y

    @property
    def u(self) -> np.ndarray:
        """Limb-darkening coefficients including ``u_0 = -1``."""

        u = self._u.copy()
        return u[:, 0] if self._ncolu == 1 else u

    @property
    def axis(self) -> np.ndarray:
        return self._axis.copy()

    @property
    def y_deg(self) -> int:
        """Highest degree with a non-zero coefficient in any column."""

        return self._degree_of(self._y)

    @property
    def u_deg(self) -> int:
        nonzero = np.nonzero(np.any(self._u[1:] != 0.0, axis=1))[0]
        return int(nonzero[-1]) + 1 if nonzero.size else 0

    def _degree_of(self, y: np.ndarray) -> int:
        nonzero = np.nonzero(np.any(y != 0.0, axis=1))[0]
        return int(math.isqrt(int(nonzero[-1]))) if nonzero.size else 0

    # ------------------------------------------------------------------
    # mutation
    # ------------------------------------------------------------------

    def _check_column(self, column: Optional[int], ncol: int) -> Optional[int]:
        if column is None:
            return None
        column = _as_int(column, "column")
        if column < 0 or column >= ncol:
            raise ConfigurationError(f"column must be in [0, {ncol - 1}], got {column}")
        return column

    def _check_budget(self, y_deg: int, u_deg: int) -> None:
        if y_deg + u_deg > self._lmax:
            raise ConfigurationError(
                f"Ylm degree {y_deg} plus limb-darkening degree {u_deg} exceeds lmax={self._lmax}"
            )

    def set_y(self, values, column: Optional[int] = None) -> None:
        """Set Ylm coefficients for one column or for all columns.

        ``values`` is ``(N,)`` (copied into ``column``, or into every column
        when ``column`` is None) or ``(N, ncoly)`` with ``column=None``.
        """

        column = self._check_column(column, self._ncoly)
        arr = _finite_array(values, "y")
        size = self.N
        new = self._y.copy()
        if arr.shape == (size,):
            if column is None:
                new[:, :] = arr[:, None]
            else:
                new[:, column] = arr
        elif arr.shape == (size, self._ncoly) and column is None:
            new[:, :] = arr
        else:
            raise ConfigurationError(f"y must have shape ({size},) or ({size}, {self._ncoly}), got {arr.shape}")
        self._check_budget(self._degree_of(new), self.u_deg)
        self._y = new
        self._cache.invalidate("y")

    def set_ylm(self, ell: int, m: int, value: float, column: Optional[int] = None) -> None:
        """Set the single coefficient ``(ell, m)``."""

        ell = _as_int(ell, "ell")
        m = _as_int(m, "m")
        if ell < 0 or ell > self._lmax or abs(m) > ell:
            raise ConfigurationError(f"invalid (l, m) = ({ell}, {m}) for lmax={self._lmax}")
        column = self._check_column(column, self._ncoly)
        value = float(_finite_array(value, "value"))
        new = self._y.copy()
        if column is None:
            new[sh_index(ell, m), :] = value
        else:
            new[sh_index(ell, m), column] = value
        self._check_budget(self._degree_of(new), self.u_deg)
        self._y = new
        self._cache.invalidate("y")

    def set_u(self, values, column: Optional[int] = None) -> None:
        """Set limb-darkening coefficients ``u_1 .. u_k`` (``k <= lmax``).

        Higher coefficients are reset to zero; ``u_0`` stays at -1.
        """

        column = self._check_column(column, self._ncolu)
        arr = np.atleast_1d(_finite_array(values, "u"))
        if arr.ndim == 1:
            arr = arr[:, None]
        if arr.ndim != 2 or arr.shape[1] not in (1, self._ncolu):
            raise ConfigurationError(f"u must have shape (k,) or (k, {self._ncolu}), got {arr.shape}")
        if arr.shape[0] > self._lmax:
            raise ConfigurationError(f"at most {self._lmax} limb-darkening coefficients for lmax={self._lmax}")
        if column is not None and arr.shape[1] != 1:
            raise ConfigurationError("a single column takes a 1-D u")
        new = self._u.copy()
        cols = slice(None) if column is None else slice(column, column + 1)
        new[1:, cols] = 0.0
        new[1 : arr.shape[0] + 1, cols] = arr
        nonzero = np.nonzero(np.any(new[1:] != 0.0, axis=1))[0]
        u_deg = int(nonzero[-1]) + 1 if nonzero.size else 0
        self._check_budget(self.y_deg, u_deg)
        self._u = new
        self._cache.invalidate("u")

    def set_axis(self, axis) -> None:
        """Set the rotation axis; it is normalized to unit length."""

        self._axis = normalize_axis(axis)
        self._cache.invalidate("axis")

    def reset(self) -> None:
        """Uniform map, no limb darkening, default axis, empty cache."""

        self._y = np.zeros((self.N, self._ncoly))
        self._y[0, :] = 1.0
        self._u = np.zeros((self._lmax + 1, self._ncolu))
        self._u[0, :] = -1.0
        self._axis = normalize_axis(DEFAULT_AXIS)
        self._cache.clear()

    def rotate(self, axis, theta: float) -> None:
        """Rotate the stored coefficients by ``theta`` degrees about ``axis``."""

        axis = normalize_axis(axis)
        angle = math.radians(float(_finite_array(theta, "theta")))
        self._y = np.asarray(rotate(jnp.asarray(self._y), axis, angle, self._lmax))
        self._cache.invalidate("y")

    # ------------------------------------------------------------------
    # cached pieces
    # ------------------------------------------------------------------

    def _matrix(self, name: str) -> Array:
        builders = {"A1": A1, "A2": A2}
        return self._cache.get_or_compute(
            (name, self._lmax), lambda: jnp.asarray(builders[name](self._lmax))
        )

    def _ld_polynomial(self, column: int) -> Array:
        return self._cache.get_or_compute(
            ("ld_polynomial", column),
            lambda: limb_darkening_polynomial(jnp.asarray(self._u[:, column]), self._lmax),
        )

    def _rotated(self, theta_rad: np.ndarray) -> Array:
        """``R(theta) @ Y`` for every angle, shape ``(nt, N, ncoly)``."""

        rot = self._config.rotation
        if not rot.taylor:
            return rotate(jnp.asarray(self._y), self._axis, theta_rad, self._lmax)
        expansion = self._cache.get_or_compute(
            ("taylor", self._lmax),
            lambda: RotationTaylorExpansion(
                self._lmax,
                self._axis,
                jnp.asarray(self._y),
                order=rot.taylor_order,
                tol=rot.taylor_tol,
            ),
        )
        return expansion(theta_rad)

    def _columns(self, y_rot: Array, t: np.ndarray) -> Tuple[Array, ...]:
        if self._kind is MapKind.TEMPORAL:
            weights = taylor_weights(jnp.asarray(t), self._ncoly)
            return (jnp.einsum("tnc,tc->tn", y_rot, weights),)
        return tuple(y_rot[..., c] for c in range(self._ncoly))

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def _broadcast(**kwargs) -> Tuple[Dict[str, np.ndarray], Tuple[int, ...]]:
        arrays = np.broadcast_arrays(*[np.asarray(v, dtype=np.float64) for v in kwargs.values()])
        shape = arrays[0].shape
        return {k: a.reshape(-1) for k, a in zip(kwargs, arrays)}, shape

    def _shape_output(self, values: Array, shape: Tuple[int, ...]) -> Array:
        if self._nflx == 1:
            return values[..., 0].reshape(shape)
        return values.reshape(shape + (self._nflx,))

    def _flux_values(self, args: Dict[str, np.ndarray]) -> Array:
        b, theta_z = occultor_frame(jnp.asarray(args["xo"]), jnp.asarray(args["yo"]))
        r = jnp.where(jnp.asarray(args["zo"]) > 0.0, jnp.asarray(args["ro"]), 0.0)
        theta_rad = np.deg2rad(args["theta"])
        solver = self._config.solver
        u_deg = self.u_deg

        if self.y_deg == 0:
            logger.debug("limb-darkening path, u_deg=%d", u_deg)
            if self._kind is MapKind.TEMPORAL:
                weights = taylor_weights(jnp.asarray(args["t"]), self._ncoly)
                y00 = [weights @ jnp.asarray(self._y[0])]
            else:
                y00 = [jnp.full_like(b, self._y[0, c]) for c in range(self._ncoly)]
            out = []
            for c in range(self._nflx):
                u_c = jnp.asarray(self._u[: u_deg + 1, min(c, self._ncolu - 1)])
                out.append(y00[c] * limbdark_flux(u_c, b, r, config=solver))
            return jnp.stack(out, axis=-1)

        logger.debug("general path, y_deg=%d u_deg=%d", self.y_deg, u_deg)
        s_a2 = solution_vector(self._lmax, b, r, config=solver) @ self._matrix("A2")
        a1 = self._matrix("A1")
        out = []
        for c, y_c in enumerate(self._columns(self._rotated(theta_rad), args["t"])):
            p = dot_rz(y_c, theta_z, self._lmax, batched=True) @ a1.T
            if u_deg > 0:
                p = polynomial_product(p, self._ld_polynomial(min(c, self._ncolu - 1)), self._lmax)
            out.append(jnp.sum(s_a2 * p, axis=-1))
        return jnp.stack(out, axis=-1)

    def flux(
        self,
        theta=0.0,
        xo=0.0,
        yo=0.0,
        ro=0.0,
        *,
        zo=1.0,
        t=0.0,
        gradient: bool = False,
    ):
        """Observed flux.

        Parameters
        ----------
        theta:
            Rotation angle(s) about :attr:`axis`, in degrees.
        xo, yo:
            Occultor position on the sky in units of the body radius.
        ro:
            Occultor radius in the same units.
        zo:
            Line-of-sight coordinate of the occultor; ``zo <= 0`` means the
            occultor is behind the body.
        t:
            Time(s) for ``TEMPORAL`` maps.
        gradient:
            Also return forward-mode derivatives.

        Returns
        -------
        flux or (flux, gradients)
            ``flux`` has the broadcast shape of the inputs, with a trailing
            ``nflx`` axis for ``SPECTRAL`` maps. ``gradients`` maps
            ``theta, xo, yo, ro, t`` to arrays shaped like ``flux`` and
            ``axis, y, u`` to arrays of shape ``flux.shape + (3,)``,
            ``flux.shape + y.shape`` and ``flux.shape + u[1:].shape``.

        Raises
        ------
        DomainError
            If ``ro`` is negative or any geometry is not finite.
        """

        args, shape = self._broadcast(theta=theta, xo=xo, yo=yo, ro=ro, zo=zo, t=t)
        b_np = np.hypot(args["xo"], args["yo"])
        check_domain(b_np, args["ro"])
        if not gradient:
            return self._shape_output(self._flux_values(args), shape)
        return self._flux_with_gradients(args, shape)

    def _flux_with_gradients(self, args: Dict[str, np.ndarray], shape: Tuple[int, ...]):
        value, grads = flux_and_gradients(
            self._lmax,
            self._kind,
            jnp.asarray(self._y),
            jnp.asarray(self._u),
            jnp.asarray(self._axis),
            args["theta"],
            args["xo"],
            args["yo"],
            args["ro"],
            args["zo"],
            args["t"],
            config=self._config.solver,
        )
        # Terms pushed above lmax by the limb-darkening product are truncated,
        # so their derivatives are not available.
        y_rows = np.array([math.isqrt(n) for n in range(self.N)]) <= self._lmax - self.u_deg
        u_rows = np.arange(1, self._lmax + 1) <= self._lmax - self.y_deg
        out_shape = shape + ((self._nflx,) if self._nflx > 1 else ())
        n = int(np.prod(shape, dtype=np.int64))

        def reshape(arr: Array, tail: Tuple[int, ...]) -> Array:
            return arr.reshape((n, self._nflx) + tail).reshape(out_shape + tail)

        result = {name: reshape(grads[name], ()) for name in ("theta", "xo", "yo", "ro", "t")}
        result["axis"] = reshape(grads["axis"], (3,))
        dy = grads["y"] * jnp.asarray(y_rows, dtype=value.dtype)[:, None]
        du = grads["u"][..., 1:, :] * jnp.asarray(u_rows, dtype=value.dtype)[:, None]
        if self._ncoly == 1:
            dy = dy[..., 0]
        if self._ncolu == 1:
            du = du[..., 0]
        result["y"] = reshape(dy, dy.shape[2:])
        result["u"] = reshape(du, du.shape[2:])
        return self._shape_output(value, shape), result

    def intensity(self, x, y, theta=0.0, *, t=0.0) -> Array:
        """Specific intensity at sky-projected points ``(x, y)`` of the disk.

        Points off the disk (``x^2 + y^2 > 1``) give NaN. A uniform map has
        intensity ``1 / pi`` so that its total flux is one.
        """

        args, shape = self._broadcast(x=x, y=y, theta=theta, t=t)
        xs, ys = args["x"], args["y"]
        rho2 = xs * xs + ys * ys
        off = rho2 > 1.0
        zs = np.sqrt(np.where(off, 0.0, 1.0 - rho2))
        basis = polynomial_basis(self._lmax, xs, ys, zs)
        a1 = self._matrix("A1")
        out = []
        for c, y_c in enumerate(self._columns(self._rotated(np.deg2rad(args["theta"])), args["t"])):
            p = y_c @ a1.T
            if self.u_deg > 0:
                p = polynomial_product(p, self._ld_polynomial(min(c, self._ncolu - 1)), self._lmax)
            out.append(jnp.where(jnp.asarray(off), jnp.nan, jnp.sum(p * basis, axis=-1)))
        return self._shape_output(jnp.stack(out, axis=-1), shape)


def create_map(
    lmax: int,
    kind: Union[MapKind, str] = MapKind.DEFAULT,
    ncol: int = 1,
    *,
    config: Optional[MapConfig] = None,
) -> Union[Map, ConfigurationError]:
    """Build a :class:`Map`, returning the :class:`ConfigurationError` instead of raising."""

    try:
        return Map(lmax, kind, ncol, config=config)
    except ConfigurationError as exc:
        return exc


__all__ = ["DEFAULT_AXIS", "Map", "create_map"]
