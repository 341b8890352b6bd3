import jax
import jax.numpy as jnp
import numpy as np
import pytest

from starflux import Map, MapConfig, MapKind, RotationConfig
from starflux.autodiff import differentiable_flux, occultor_frame
from starflux.operators.polynomials import sh_index, sh_size

EXACT = MapConfig(rotation=RotationConfig(taylor=False))
GEOMETRY = dict(theta=30.0, xo=0.3, yo=0.45, ro=0.2)
EPS = 1e-6


def _map():
    m = Map(3, config=EXACT)
    m.set_ylm(1, 1, 0.2)
    m.set_ylm(2, -1, 0.1)
    m.set_ylm(1, 0, -0.15)
    m.set_u([0.3])
    m.set_axis([0.2, 1.0, 0.1])
    return m


def _central(fn, x0):
    return (fn(x0 + EPS) - fn(x0 - EPS)) / (2.0 * EPS)


@pytest.mark.parametrize("name", ["theta", "xo", "yo", "ro"])
def test_per_sample_gradients_match_finite_differences(name):
    m = _map()
    _, grads = m.flux(**GEOMETRY, gradient=True)

    def fn(value):
        return float(m.flux(**{**GEOMETRY, name: value}))

    assert float(grads[name]) == pytest.approx(_central(fn, GEOMETRY[name]), rel=1e-5, abs=1e-8)


def test_coefficient_gradients_match_finite_differences():
    m = _map()
    _, grads = m.flux(**GEOMETRY, gradient=True)
    y0 = m.y
    for ell, mm in [(0, 0), (1, -1), (1, 1), (2, -1), (2, 2)]:
        n = sh_index(ell, mm)

        def fn(value, n=n):
            y = y0.copy()
            y[n] = value
            m.set_y(y)
            return float(m.flux(**GEOMETRY))

        expected = _central(fn, y0[n])
        m.set_y(y0)
        assert float(grads["y"][n]) == pytest.approx(expected, rel=1e-5, abs=1e-8), (ell, mm)

    def fn_u(value):
        m.set_u([value])
        return float(m.flux(**GEOMETRY))

    expected = _central(fn_u, 0.3)
    assert float(grads["u"][0]) == pytest.approx(expected, rel=1e-5, abs=1e-8)


def test_axis_gradient_matches_finite_differences():
    m = _map()
    _, grads = m.flux(**GEOMETRY, gradient=True)
    axis0 = m.axis
    for i in range(3):

        def fn(value, i=i):
            axis = axis0.copy()
            axis[i] = value
            m.set_axis(axis)
            return float(m.flux(**GEOMETRY))

        expected = _central(fn, axis0[i])
        assert float(grads["axis"][i]) == pytest.approx(expected, rel=1e-5, abs=1e-8)


def test_gradients_beyond_the_degree_budget_are_zero():
    m = _map()
    _, grads = m.flux(**GEOMETRY, gradient=True)
    assert grads["y"].shape == (sh_size(3),)
    # u_deg = 1 leaves room for y up to degree 2 only
    np.testing.assert_array_equal(np.asarray(grads["y"][sh_size(2) :]), 0.0)
    # y_deg = 2 leaves room for u_1 only
    assert grads["u"].shape == (3,)
    np.testing.assert_array_equal(np.asarray(grads["u"][1:]), 0.0)


def test_gradient_shapes_for_vector_inputs():
    m = _map()
    theta = np.linspace(0.0, 60.0, 4)
    flux, grads = m.flux(theta=theta, xo=0.3, yo=0.45, ro=0.2, gradient=True)
    assert flux.shape == (4,)
    for name in ("theta", "xo", "yo", "ro", "t"):
        assert grads[name].shape == (4,)
    assert grads["axis"].shape == (4, 3)
    assert grads["y"].shape == (4, sh_size(3))
    assert grads["u"].shape == (4, 3)
    np.testing.assert_allclose(np.asarray(flux), np.asarray(m.flux(theta=theta, xo=0.3, yo=0.45, ro=0.2)), atol=1e-12)


def test_spectral_gradient_shapes():
    m = Map(2, MapKind.SPECTRAL, 2)
    m.set_ylm(1, 0, 0.2, column=1)
    flux, grads = m.flux(theta=[0.0, 10.0, 20.0], xo=0.2, ro=0.1, gradient=True)
    assert flux.shape == (3, 2)
    assert grads["xo"].shape == (3, 2)
    assert grads["y"].shape == (3, 2, sh_size(2), 2)
    assert grads["u"].shape == (3, 2, 2, 2)
    # each flux column only depends on its own coefficients
    np.testing.assert_array_equal(np.asarray(grads["y"][:, 0, :, 1]), 0.0)


def test_temporal_time_derivative():
    m = Map(2, MapKind.TEMPORAL, 2, config=EXACT)
    y1 = np.zeros(sh_size(2))
    y1[sh_index(1, 0)] = 0.3
    m.set_y(y1, column=1)
    _, grads = m.flux(xo=0.2, yo=0.3, ro=0.25, t=0.5, gradient=True)

    def fn(value):
        return float(m.flux(xo=0.2, yo=0.3, ro=0.25, t=value))

    assert float(grads["t"]) == pytest.approx(_central(fn, 0.5), rel=1e-5, abs=1e-8)


def test_occultor_frame_is_smooth_at_the_origin():
    b, theta_z = occultor_frame(jnp.array(0.0), jnp.array(0.0))
    assert float(b) == 0.0
    assert float(theta_z) == 0.0
    grad = jax.grad(lambda x: occultor_frame(x, jnp.array(0.0))[0])(0.0)
    assert np.isfinite(float(grad))


def test_differentiable_flux_is_jittable_in_the_coefficients():
    lmax = 2
    y = jnp.zeros((sh_size(lmax), 1)).at[0, 0].set(1.0).at[sh_index(2, 0), 0].set(0.2)
    u = jnp.array([[-1.0], [0.0], [0.0]])
    args = (jnp.array([0.0]), jnp.array([0.1]), jnp.array([0.5]), jnp.array([0.2]), jnp.array([1.0]), jnp.array([0.0]))

    @jax.jit
    def fn(y):
        return differentiable_flux(lmax, MapKind.DEFAULT, y, u, jnp.array([0.0, 1.0, 0.0]), *args)

    eager = differentiable_flux(lmax, MapKind.DEFAULT, y, u, jnp.array([0.0, 1.0, 0.0]), *args)
    np.testing.assert_allclose(np.asarray(fn(y)), np.asarray(eager), atol=1e-12)


def test_reverse_mode_radius_gradient_matches_finite_differences():
    lmax = 2
    y = jnp.zeros((sh_size(lmax), 1)).at[0, 0].set(1.0).at[sh_index(1, 0), 0].set(0.2)
    u = jnp.array([[-1.0], [0.4], [0.0]])
    axis = jnp.array([0.0, 1.0, 0.0])

    def total(ro):
        args = (jnp.array([10.0]), jnp.array([0.0]), jnp.array([0.3]), ro, jnp.array([1.0]), jnp.array([0.0]))
        return differentiable_flux(lmax, MapKind.DEFAULT, y, u, axis, *args).sum()

    ro = jnp.array([0.1])
    grad = np.asarray(jax.grad(total)(ro))
    assert np.all(np.isfinite(grad))
    expected = (float(total(ro + EPS)) - float(total(ro - EPS))) / (2.0 * EPS)
    assert float(grad[0]) == pytest.approx(expected, rel=1e-5)
    assert float(grad[0]) < 0.0
