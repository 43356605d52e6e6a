# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Single point of JAX initialization for whitened-lsq.

Whitening with hard-constraint sentinels, triangular back-substitution and
information-form shifts all lose too much accuracy in float32, so 64-bit
mode is switched on here, once, before any array is created. Library
modules take ``jax`` / ``jnp`` from here so the flag is set before their
first array:

    from whitened_lsq.core.jax_init import jax, jnp
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

__all__ = ["jax", "jnp"]
