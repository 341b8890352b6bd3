"""End-to-end flux scenarios through ``Map``."""

import math
import warnings

import numpy as np
import pytest

from starflux import Map, MapConfig, MapKind, NumericalWarning, RotationConfig
from starflux.operators.polynomials import sh_index

EXACT = MapConfig(rotation=RotationConfig(taylor=False))


def _y20_flux(r):
    return 1.0 - r * r + math.sqrt(5.0) * (0.25 - r * r + 0.75 * r**4)


# ===========================================================================
# Reference values
# ===========================================================================


def test_unocculted_y20_flux():
    m = Map(2)
    m.set_ylm(2, 0, 1.0)
    assert float(m.flux()) == pytest.approx(1.0 + math.sqrt(5.0) / 4.0, rel=1e-12)


@pytest.mark.parametrize("r", [0.1, 0.3, 0.6, 0.95])
def test_centered_occultation_of_y20(r):
    m = Map(2)
    m.set_ylm(2, 0, 1.0)
    assert float(m.flux(ro=r)) == pytest.approx(_y20_flux(r), rel=1e-10)


def test_y20_intensity():
    m = Map(2)
    m.set_ylm(2, 0, 1.0)
    x, y = 0.3, -0.2
    z2 = 1.0 - x * x - y * y
    expected = 1.0 / math.pi + math.sqrt(5.0) / (2.0 * math.pi) * (3.0 * z2 - 1.0)
    assert float(m.intensity(x, y)) == pytest.approx(expected, rel=1e-12)


def test_limb_darkening_preserves_unocculted_flux():
    m = Map(3)
    m.set_u([0.4, 0.26])
    assert float(m.flux(xo=3.0, ro=0.5)) == pytest.approx(1.0, abs=1e-12)
    assert float(m.flux()) == pytest.approx(1.0, abs=1e-12)


def test_limb_darkened_intensity_profile():
    m = Map(2)
    m.set_u([0.6])
    norm = 1.0 - 0.6 / 3.0
    centre = float(m.intensity(0.0, 0.0))
    edge = float(m.intensity(0.0, 1.0))
    assert centre == pytest.approx(1.0 / (math.pi * norm))
    assert edge == pytest.approx(0.4 / (math.pi * norm))


def test_occultor_behind_the_body_is_ignored():
    m = Map(2)
    m.set_ylm(1, 0, 0.4)
    front = float(m.flux(xo=0.1, ro=0.3))
    behind = float(m.flux(xo=0.1, ro=0.3, zo=-1.0))
    assert behind == pytest.approx(float(m.flux()))
    assert front < behind


def test_full_occultation_gives_zero():
    m = Map(2)
    m.set_ylm(2, 1, 0.3)
    assert float(m.flux(xo=0.1, ro=2.0)) == pytest.approx(0.0, abs=1e-14)


def test_tangency_warns():
    m = Map(1)
    with pytest.warns(NumericalWarning):
        f = m.flux(yo=0.6, ro=0.4)
    assert float(f) == pytest.approx(1.0 - 0.16, abs=1e-12)


def test_body_touching_the_occultor_from_inside_is_dark():
    spotted = Map(2)
    spotted.set_ylm(1, 0, 0.3)
    darkened = Map(2)
    darkened.set_u([0.4, 0.2])
    for m in (spotted, darkened):
        with pytest.warns(NumericalWarning):
            f = float(m.flux(yo=0.2, ro=1.2))
        assert f == pytest.approx(0.0, abs=1e-14)


def test_quadratic_limb_darkened_transit(quadrature):
    u1, u2 = 0.4, 0.2
    m = Map(2)
    m.set_u([u1, u2])
    fast = float(m.flux(xo=0.3, ro=0.1))
    general, _ = m.flux(xo=0.3, ro=0.1, gradient=True)

    def intensity(x, y, z):
        return 1.0 - u1 * (1.0 - z) - u2 * (1.0 - z) ** 2

    expected = quadrature(intensity, 0.3, 0.1) / (math.pi * (1.0 - u1 / 3.0 - u2 / 6.0))
    assert fast == pytest.approx(expected, abs=1e-8)
    assert fast == pytest.approx(float(general), abs=1e-10)


# ===========================================================================
# Geometry and rotation
# ===========================================================================


def test_occultor_position_is_rotation_invariant_for_symmetric_maps():
    m = Map(3)
    m.set_ylm(2, 0, 0.5)
    m.set_u([0.3])
    angles = np.linspace(0.0, 2.0 * np.pi, 7)
    b = 0.7
    f = np.asarray(m.flux(xo=b * np.cos(angles), yo=b * np.sin(angles), ro=0.2))
    np.testing.assert_allclose(f, f[0], rtol=1e-10)


def test_full_turn_returns_the_same_flux():
    m = Map(3, config=EXACT)
    m.set_ylm(1, 1, 0.5)
    m.set_ylm(3, -1, 0.2)
    m.set_axis([0.3, 1.0, 0.0])
    f = np.asarray(m.flux(theta=[0.0, 360.0], xo=0.4, yo=0.3, ro=0.25))
    assert f[0] == pytest.approx(f[1], abs=1e-10)


def test_dipole_light_curve_follows_rotation():
    # A Y_{1,1} spot rotating about y gives a disk-integrated flux that
    # oscillates as cos(theta) through its Y_{1,0} projection.
    m = Map(1)
    m.set_ylm(1, 1, 0.5)
    theta = np.array([0.0, 90.0, 180.0, 270.0])
    f = np.asarray(m.flux(theta=theta))
    amp = 0.5 * 2.0 / math.sqrt(3.0)
    np.testing.assert_allclose(f, [1.0, 1.0 - amp, 1.0, 1.0 + amp], atol=1e-10)


def test_limb_darkening_and_general_paths_agree():
    grid = [(0.0, 0.3), (0.5, 0.3), (0.9, 0.4), (1.2, 0.5), (0.5, 1.2), (2.0, 0.3)]
    m = Map(3)
    m.set_u([0.4, 0.26, -0.1])
    for b, r in grid:
        fast = float(m.flux(xo=0.0, yo=b, ro=r))
        general, _ = m.flux(xo=0.0, yo=b, ro=r, gradient=True)
        assert fast == pytest.approx(float(general), abs=1e-10), (b, r)


@pytest.mark.parametrize("r", [0.05, 0.3, 0.9, 1.3])
def test_limb_darkening_paths_agree_on_a_dense_grid(r):
    m = Map(2)
    m.set_u([0.4, 0.2])
    b = list(np.linspace(0.0, 1.6, 41)) + [1.0 + r]
    if r > 1.0:
        b.append(r - 1.0)
    b = np.asarray(b)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NumericalWarning)
        fast = np.asarray(m.flux(yo=b, ro=r))
        general, _ = m.flux(yo=b, ro=r, gradient=True)
    assert np.all(np.isfinite(fast))
    assert np.all(np.isfinite(np.asarray(general)))
    np.testing.assert_allclose(fast, np.asarray(general), atol=1e-8)


# ===========================================================================
# Multi-column maps
# ===========================================================================


def test_spectral_columns_match_default_maps():
    spectral = Map(2, MapKind.SPECTRAL, 2)
    spectral.set_ylm(1, 0, 0.3, column=0)
    spectral.set_ylm(1, -1, 0.2, column=1)
    spectral.set_u([0.5], column=1)

    first = Map(2)
    first.set_ylm(1, 0, 0.3)
    second = Map(2)
    second.set_ylm(1, -1, 0.2)
    second.set_u([0.5])

    kwargs = dict(theta=[0.0, 40.0], xo=0.2, yo=0.5, ro=0.3)
    f = np.asarray(spectral.flux(**kwargs))
    assert f.shape == (2, 2)
    np.testing.assert_allclose(f[:, 0], np.asarray(first.flux(**kwargs)), atol=1e-12)
    np.testing.assert_allclose(f[:, 1], np.asarray(second.flux(**kwargs)), atol=1e-12)


def test_temporal_map_is_a_taylor_series_in_time():
    temp = Map(2, MapKind.TEMPORAL, 2)
    y1 = np.zeros(9)
    y1[sh_index(2, 1)] = 0.4
    temp.set_y(y1, column=1)

    t = np.array([0.0, 0.5, 2.0])
    f = np.asarray(temp.flux(theta=15.0, xo=0.3, yo=0.1, ro=0.2, t=t))
    for i, ti in enumerate(t):
        ref = Map(2)
        y = np.zeros(9)
        y[0] = 1.0
        y[sh_index(2, 1)] = 0.4 * ti
        ref.set_y(y)
        assert f[i] == pytest.approx(float(ref.flux(theta=15.0, xo=0.3, yo=0.1, ro=0.2)), abs=1e-12)


# ===========================================================================
# Caching
# ===========================================================================


def test_repeated_evaluation_is_bit_identical_and_cached():
    m = Map(3)
    m.set_ylm(2, 2, 0.3)
    m.set_u([0.2])
    theta = np.linspace(0.0, 90.0, 11)
    first = np.asarray(m.flux(theta=theta, xo=0.2, ro=0.1))
    misses = m.cache.misses
    second = np.asarray(m.flux(theta=theta, xo=0.2, ro=0.1))
    np.testing.assert_array_equal(first, second)
    assert m.cache.misses == misses
    assert {"A1", "A2", "taylor", "ld_polynomial"} <= set(m.cache.components())


def test_mutations_invalidate_only_their_dependents():
    m = Map(3)
    m.set_ylm(1, 0, 0.3)
    m.set_u([0.2])
    m.flux(theta=10.0, xo=0.2, ro=0.1)

    m.set_u([0.25])
    assert "ld_polynomial" not in m.cache.components()
    assert "taylor" in m.cache.components()

    m.set_ylm(1, 0, 0.35)
    assert "taylor" not in m.cache.components()
    assert "A1" in m.cache.components()


def test_restoring_the_axis_restores_the_flux():
    m = Map(3)
    m.set_ylm(2, -1, 0.4)
    kwargs = dict(theta=[20.0, 55.0], xo=0.1, yo=0.4, ro=0.3)
    before = np.asarray(m.flux(**kwargs))
    m.set_axis([1.0, 0.0, 0.0])
    changed = np.asarray(m.flux(**kwargs))
    m.set_axis([0.0, 1.0, 0.0])
    after = np.asarray(m.flux(**kwargs))
    np.testing.assert_array_equal(before, after)
    assert not np.allclose(before, changed)


# ===========================================================================
# Invariances
# ===========================================================================


def test_zero_radius_equals_unocculted():
    m = Map(3)
    m.set_ylm(2, 1, 0.3)
    m.set_ylm(3, -3, 0.1)
    np.testing.assert_allclose(
        np.asarray(m.flux(theta=[0.0, 45.0], xo=0.2, yo=0.1, ro=0.0)),
        np.asarray(m.flux(theta=[0.0, 45.0])),
        atol=1e-14,
    )


def test_uniform_map_flux_is_rotation_invariant():
    m = Map(4)
    m.set_axis([0.5, 0.3, 0.8])
    f = np.asarray(m.flux(theta=np.linspace(0.0, 360.0, 13)))
    np.testing.assert_allclose(f, 1.0, atol=1e-12)


def test_axis_aligned_map_flux_is_rotation_invariant():
    m = Map(3, config=EXACT)
    m.set_ylm(1, 0, 0.4)
    m.set_ylm(3, 0, 0.1)
    m.set_axis([0.0, 0.0, 1.0])
    f = np.asarray(m.flux(theta=np.linspace(0.0, 360.0, 13), xo=0.1, yo=-0.2, ro=0.3))
    np.testing.assert_allclose(f, f[0], atol=1e-12)
