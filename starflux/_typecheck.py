"""Opt-in runtime checks of the jaxtyping annotations in starflux.

Setting ``STARFLUX_RUNTIME_TYPECHECK=1`` makes ``starflux/__init__.py``
install a jaxtyping import hook before it imports ``config``, ``map``,
``operators`` and ``solvers``. Every annotated callable in those modules is
then wrapped by beartype, so a coefficient matrix or solution row of the
wrong rank fails at the call instead of deep inside a recursion. The hook
costs a check per call and is meant for test runs, not light-curve fits.
"""

from __future__ import annotations

import os
from typing import Any

_PACKAGE = "starflux"
_TYPECHECKER = "beartype.beartype"
_TYPECHECK_HOOK: Any = None


def _runtime_typecheck_enabled() -> bool:
    raw = os.getenv("STARFLUX_RUNTIME_TYPECHECK", "0").strip().lower()
    return raw not in {"0", "false", "no", "off"}


def runtime_typecheck_active() -> bool:
    return _TYPECHECK_HOOK is not None


def enable_runtime_typecheck() -> bool:
    """Install the import hook once if requested; return whether it is active."""
    global _TYPECHECK_HOOK

    if _TYPECHECK_HOOK is not None:
        return True
    if not _runtime_typecheck_enabled():
        return False

    from jaxtyping import install_import_hook

    # Modules already in sys.modules keep their unchecked functions.
    _TYPECHECK_HOOK = install_import_hook(_PACKAGE, typechecker=_TYPECHECKER)
    return True


__all__ = ["enable_runtime_typecheck", "runtime_typecheck_active"]
