# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Residual models for `NoiseModelFactor`.

Each function implements a residual

    r(x; params) ∈ ℝᵏ

over the stacked values ``x`` of the factor's keys. All of them are written
in JAX so `NoiseModelFactor.linearize` can differentiate through them.

Residuals are manifold-generic: the variable manifold is passed in
``params["manifold"]`` (a `Manifold` or a registered type name, Euclidean
by default), and differences are always taken in its local coordinates.

prior_residual
    r = local(target, x)

between_residual
    r = local(measurement, local(x_i, x_j))

    For Euclidean variables this is (x_j − x_i) − measurement; for poses
    it compares the measured relative pose with x_i⁻¹ ∘ x_j.

Weighting is not done here. Noise models whiten the residual, so a
factor's uncertainty lives in exactly one place.

Adding a residual
-----------------
    def my_residual(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
        ...

    factor = NoiseModelFactor(keys, my_residual, params, noise_model)
"""

from __future__ import annotations

from typing import Any, Dict

from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.manifold import resolve_manifold


def prior_residual(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Prior on a single variable.

    params:
        "target"   : value the variable should take
        "manifold" : optional, Euclidean by default
    """
    manifold = resolve_manifold(params.get("manifold"))
    return manifold.local_coordinates(jnp.asarray(params["target"]), x)


def between_residual(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Relative measurement between two variables of the same kind.

    x: stacked [x_i, x_j], both of the same value length.

    params:
        "measurement" : expected value of local(x_i, x_j)
        "manifold"    : optional, Euclidean by default
    """
    manifold = resolve_manifold(params.get("manifold"))
    n = x.shape[0] // 2
    x_i, x_j = x[:n], x[n:]
    predicted = manifold.local_coordinates(x_i, x_j)
    return manifold.local_coordinates(jnp.asarray(params["measurement"]), predicted)


def linear_residual(x: jnp.ndarray, params: Dict[str, Any]) -> jnp.ndarray:
    """
    Affine residual r = H x − z, handy for hard equality constraints.

    params:
        "H" : (k, n) matrix over the stacked Euclidean values
        "z" : (k,) right-hand side
    """
    return jnp.asarray(params["H"]) @ x - jnp.asarray(params["z"])
