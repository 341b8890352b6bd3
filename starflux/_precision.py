"""Floating-point precision switch for starflux.

The occultation recursions lose most of their digits in single precision, so
64-bit JAX arrays are enabled on import unless ``STARFLUX_ENABLE_X64`` is set
to a false-like value.
"""

from __future__ import annotations

import os

import jax


def _x64_requested() -> bool:
    raw = os.getenv("STARFLUX_ENABLE_X64", "1").strip().lower()
    return raw not in {"0", "false", "no", "off"}


def enable_x64() -> bool:
    """Turn on ``jax_enable_x64`` when requested; return the resulting state."""

    if _x64_requested():
        jax.config.update("jax_enable_x64", True)
    return bool(jax.config.jax_enable_x64)


__all__ = ["enable_x64"]
