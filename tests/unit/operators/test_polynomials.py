"""Tests for packed indexing, polynomial algebra and Cartesian Ylm."""

import math

import numpy as np
import pytest

from starflux.operators.polynomials import (
    lm,
    monomial_exponents,
    monomial_index,
    packed_degree_slices,
    poly_from_vector,
    poly_mul,
    poly_partial,
    poly_reduce,
    poly_to_vector,
    polynomial_basis,
    sh_index,
    sh_offset,
    sh_size,
    ylm_polynomial,
)

# ===========================================================================
# Index utility tests
# ===========================================================================


def test_sh_size_formula():
    """sh_size(p) = (p+1)^2."""
    for p in range(10):
        assert sh_size(p) == (p + 1) ** 2


def test_sh_offset_cumulative():
    for ell in range(10):
        assert sh_offset(ell) == ell * ell


def test_sh_index_and_lm_are_inverse():
    for n in range(sh_size(6)):
        ell, m = lm(n)
        assert -ell <= m <= ell
        assert sh_index(ell, m) == n


def test_sh_index_rejects_bad_order():
    with pytest.raises(ValueError):
        sh_index(2, 3)
    with pytest.raises(ValueError):
        sh_size(-1)


def test_packed_degree_slices_tile_the_layout():
    slices = packed_degree_slices(4)
    assert slices[0] == slice(0, 1)
    assert slices[-1].stop == sh_size(4)
    for a, b in zip(slices[:-1], slices[1:]):
        assert a.stop == b.start


def test_monomial_index_roundtrip():
    for n in range(sh_size(7)):
        i, j, k = monomial_exponents(n)
        assert k in (0, 1)
        assert monomial_index(i, j, k) == n
        assert i + j + k == lm(n)[0]


def test_low_order_monomials():
    # 1, x, z, y, x^2, xz, xy, yz, y^2
    expected = [(0, 0, 0), (1, 0, 0), (0, 0, 1), (0, 1, 0), (2, 0, 0), (1, 0, 1), (1, 1, 0), (0, 1, 1), (0, 2, 0)]
    assert [monomial_exponents(n) for n in range(9)] == expected


# ===========================================================================
# Polynomial algebra
# ===========================================================================


def test_reduce_eliminates_high_z_powers():
    reduced = poly_reduce({(0, 0, 2): 1.0})
    assert reduced == {(0, 0, 0): 1.0, (2, 0, 0): -1.0, (0, 2, 0): -1.0}
    reduced = poly_reduce({(0, 0, 3): 1.0})
    assert all(k < 2 for (_, _, k) in reduced)


def test_poly_to_vector_and_back():
    poly = {(1, 0, 1): 2.0, (0, 2, 0): -0.5, (0, 0, 0): 1.0}
    vec = poly_to_vector(poly, 2)
    assert poly_from_vector(vec) == poly


def test_poly_to_vector_rejects_overflow():
    with pytest.raises(ValueError):
        poly_to_vector({(3, 0, 0): 1.0}, 2)


def test_poly_partial_and_mul():
    poly = poly_mul({(1, 0, 0): 1.0}, {(1, 2, 1): 3.0})
    assert poly == {(2, 2, 1): 3.0}
    assert poly_partial(poly, 0) == {(1, 2, 1): 6.0}
    assert poly_partial(poly, 2) == {(2, 2, 0): 3.0}
    assert poly_partial({(0, 1, 0): 1.0}, 0) == {}


# ===========================================================================
# Spherical harmonics
# ===========================================================================


def test_low_degree_ylm_polynomials():
    c0 = 0.5 / math.sqrt(math.pi)
    c1 = math.sqrt(3.0 / (4.0 * math.pi))
    assert ylm_polynomial(0, 0) == pytest.approx({(0, 0, 0): c0})
    assert ylm_polynomial(1, -1) == pytest.approx({(0, 1, 0): c1})
    assert ylm_polynomial(1, 0) == pytest.approx({(0, 0, 1): c1})
    assert ylm_polynomial(1, 1) == pytest.approx({(1, 0, 0): c1})


def _sphere_quadrature(n_theta=40, n_phi=80):
    x, w = np.polynomial.legendre.leggauss(n_theta)
    phi = (np.arange(n_phi) + 0.5) * 2.0 * np.pi / n_phi
    ct, ph = np.meshgrid(x, phi, indexing="ij")
    st = np.sqrt(1.0 - ct * ct)
    weights = np.outer(w, np.full(n_phi, 2.0 * np.pi / n_phi))
    return st * np.cos(ph), st * np.sin(ph), ct, weights


def _evaluate(poly, x, y, z):
    return sum(c * x**i * y**j * z**k for (i, j, k), c in poly.items())


def test_ylm_are_orthonormal_on_the_sphere():
    lmax = 4
    x, y, z, w = _sphere_quadrature()
    values = [_evaluate(ylm_polynomial(*lm(n)), x, y, z) for n in range(sh_size(lmax))]
    gram = np.array([[np.sum(w * a * b) for b in values] for a in values])
    np.testing.assert_allclose(gram, np.eye(sh_size(lmax)), atol=1e-12)


def test_polynomial_basis_shape_and_values():
    x = np.array([0.1, -0.3])
    y = np.array([0.2, 0.4])
    z = np.sqrt(1.0 - x * x - y * y)
    basis = np.asarray(polynomial_basis(2, x, y, z))
    assert basis.shape == (2, 9)
    np.testing.assert_allclose(basis[:, 0], 1.0)
    np.testing.assert_allclose(basis[:, 2], z)
    np.testing.assert_allclose(basis[:, 6], x * y)
    np.testing.assert_allclose(basis[:, 7], y * z)
