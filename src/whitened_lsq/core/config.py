# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Library-wide numeric defaults and the tolerance-based array comparison
used by every ``equals`` method.

Settings are plain frozen dataclasses, in the same spirit as the solver
configs (`GNConfig`). Values can be overridden from the environment:

    WHITENED_LSQ_EQUALITY_TOL   default tolerance for ``equals`` methods
    WHITENED_LSQ_SINGULAR_TOL   smallest admissible |R_ii| or sigma
    WHITENED_LSQ_LOG_LEVEL      level used by ``core.logging_config``
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from .jax_init import jnp


@dataclass(frozen=True)
class NumericsConfig:
    equality_tol: float = 1e-9
    singular_tol: float = 1e-12
    log_level: str = "WARNING"

    @staticmethod
    def from_env() -> "NumericsConfig":
        defaults = NumericsConfig()
        return NumericsConfig(
            equality_tol=float(
                os.environ.get("WHITENED_LSQ_EQUALITY_TOL", defaults.equality_tol)
            ),
            singular_tol=float(
                os.environ.get("WHITENED_LSQ_SINGULAR_TOL", defaults.singular_tol)
            ),
            log_level=os.environ.get("WHITENED_LSQ_LOG_LEVEL", defaults.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_config() -> NumericsConfig:
    """Process-wide configuration, read from the environment on first use."""
    return NumericsConfig.from_env()


def resolve_tol(tol: float | None) -> float:
    """Return ``tol`` or the configured default equality tolerance."""
    return get_config().equality_tol if tol is None else float(tol)


def equal_with_abs_tol(a, b, tol: float) -> bool:
    """Elementwise |a - b| <= tol; matching infinities compare equal."""
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    if a.shape != b.shape:
        return False
    return bool(jnp.allclose(a, b, rtol=0.0, atol=tol, equal_nan=True))
