"""Shared brute-force quadrature for occultation tests."""

import numpy as np
import pytest


def _cosine_nodes(lo, hi, n):
    # Gauss-Legendre in s with rho = lo + (hi - lo)(1 - cos(pi s)) / 2, which
    # smooths square-root behaviour at both ends of the segment.
    s, w = np.polynomial.legendre.leggauss(n)
    s = 0.5 * (s + 1.0)
    w = 0.5 * w
    rho = lo + 0.5 * (hi - lo) * (1.0 - np.cos(np.pi * s))
    jac = 0.5 * (hi - lo) * np.pi * np.sin(np.pi * s)
    return rho, w * jac


def visible_integral(func, b, r, *, n_rho=160, n_phi=96):
    """Integrate ``func(x, y, z)`` over the part of the unit disk not covered
    by a disk of radius ``r`` centred at ``(0, b)``.

    Polar quadrature about the body centre: at radius ``rho`` the occultor
    covers ``sin(phi) > c`` with ``c = (rho^2 + b^2 - r^2) / (2 b rho)``.
    """

    breaks = sorted({0.0, 1.0, *[v for v in (abs(b - r), b + r) if 0.0 < v < 1.0]})
    phi_full = (np.arange(2 * n_phi) + 0.5) * np.pi / n_phi
    g, gw = np.polynomial.legendre.leggauss(n_phi)
    total = 0.0
    for lo, hi in zip(breaks[:-1], breaks[1:]):
        rho, w_rho = _cosine_nodes(lo, hi, n_rho)
        for rr, wr in zip(rho, w_rho):
            z_of = lambda x, y: np.sqrt(np.clip(1.0 - x * x - y * y, 0.0, None))  # noqa: E731
            x = rr * np.cos(phi_full)
            y = rr * np.sin(phi_full)
            ring = np.sum(func(x, y, z_of(x, y))) * np.pi / n_phi
            if b > 0.0 and r > 0.0:
                c = (rr * rr + b * b - r * r) / (2.0 * b * rr)
            else:
                c = np.inf if rr >= r else -np.inf
            if c < 1.0:
                a0 = np.arcsin(np.clip(c, -1.0, 1.0))
                a1 = np.pi - a0
                phi = 0.5 * (a1 - a0) * g + 0.5 * (a1 + a0)
                x = rr * np.cos(phi)
                y = rr * np.sin(phi)
                ring -= np.sum(gw * func(x, y, z_of(x, y))) * 0.5 * (a1 - a0)
            total += wr * rr * ring
    return total


@pytest.fixture
def quadrature():
    return visible_integral
