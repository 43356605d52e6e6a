# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Nonlinear factors.

NonlinearFactor
    Interface the graph and solver rely on: ``keys``, ``dim``,
    ``error(values)`` and ``linearize(values, ordering)``, which returns an
    index-space `GaussianFactor`.

NoiseModelFactor
    A measurement factor defined by a residual function

        r(x; params) ∈ ℝᵏ

    over the stacked values of its keys (the same residual signature used in
    `nonlinear.measurements`), weighted by a shared `NoiseModel`:

        error(values) = ½ · mahalanobis(r)

    Jacobians come from JAX autodiff through each variable's retraction,
    i.e. ∂ r(retract(x, δ)) / ∂δ at δ = 0, so they are expressed in the same
    tangent coordinates the solver updates.
"""

from __future__ import annotations

import abc
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from whitened_lsq.core.config import equal_with_abs_tol, resolve_tol
from whitened_lsq.core.errors import check_dim
from whitened_lsq.core.jax_init import jax, jnp
from whitened_lsq.core.types import Key
from whitened_lsq.linear.gaussian_factor import GaussianFactor, JacobianFactor
from whitened_lsq.linear.ordering import Ordering
from whitened_lsq.noise.model import NoiseModel, Unit
from whitened_lsq.nonlinear.values import Values

ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]


class NonlinearFactor(abc.ABC):
    def __init__(self, keys: Sequence[Key]) -> None:
        keys = tuple(keys)
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate keys in factor: {keys}")
        self._keys: Tuple[Key, ...] = keys

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    @property
    def size(self) -> int:
        return len(self._keys)

    @property
    @abc.abstractmethod
    def dim(self) -> int:
        """Number of residual rows."""

    @abc.abstractmethod
    def error(self, values: Values) -> jnp.ndarray:
        ...

    @abc.abstractmethod
    def linearize(self, values: Values, ordering: Ordering) -> GaussianFactor:
        ...

    def equals(self, other: "NonlinearFactor", tol: Optional[float] = None) -> bool:
        return type(other) is type(self) and other.keys == self.keys


def _params_equal(a: Dict[str, Any], b: Dict[str, Any], tol: float) -> bool:
    if set(a) != set(b):
        return False
    for name, va in a.items():
        vb = b[name]
        try:
            arr_a, arr_b = jnp.asarray(va), jnp.asarray(vb)
        except TypeError:
            if va != vb:
                return False
            continue
        if not equal_with_abs_tol(arr_a, arr_b, tol):
            return False
    return True


class NoiseModelFactor(NonlinearFactor):
    """
    Residual-function factor weighted by a noise model.

    :param keys: Variables the residual depends on, in stacking order.
    :param residual_fn: ``r(x_stacked, params) -> (k,)`` JAX function.
    :param params: Measurement and configuration passed to ``residual_fn``.
    :param noise_model: Shared model with ``dim == k``.
    """

    def __init__(
        self,
        keys: Sequence[Key],
        residual_fn: ResidualFn,
        params: Dict[str, Any],
        noise_model: NoiseModel,
    ) -> None:
        super().__init__(keys)
        self._residual_fn = residual_fn
        self._params = dict(params)
        self._model = noise_model

    @property
    def dim(self) -> int:
        return self._model.dim

    @property
    def noise_model(self) -> NoiseModel:
        return self._model

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self._params)

    def _stacked(self, values: Values) -> jnp.ndarray:
        return jnp.concatenate([values.at(k) for k in self._keys])

    def unwhitened_error(self, values: Values) -> jnp.ndarray:
        r = jnp.atleast_1d(self._residual_fn(self._stacked(values), self._params))
        check_dim(self._model.dim, r.shape[0], f"residual of factor on {self._keys}")
        return r

    def whitened_error(self, values: Values) -> jnp.ndarray:
        return self._model.whiten(self.unwhitened_error(values))

    def error(self, values: Values) -> jnp.ndarray:
        return 0.5 * self._model.mahalanobis(self.unwhitened_error(values))

    def jacobians(self, values: Values) -> Tuple[jnp.ndarray, ...]:
        """Unwhitened tangent-space Jacobian blocks, one per key."""
        points = [values.at(k) for k in self._keys]
        manifolds = [values.manifold(k) for k in self._keys]
        dims = [m.dim(p) for m, p in zip(manifolds, points)]
        starts = [sum(dims[:i]) for i in range(len(dims))]

        def residual_at(delta: jnp.ndarray) -> jnp.ndarray:
            moved = [
                m.retract(p, delta[s : s + d])
                for m, p, s, d in zip(manifolds, points, starts, dims)
            ]
            return jnp.atleast_1d(self._residual_fn(jnp.concatenate(moved), self._params))

        J = jax.jacobian(residual_at)(jnp.zeros(sum(dims)))
        return tuple(J[:, s : s + d] for s, d in zip(starts, dims))

    def linearize(self, values: Values, ordering: Ordering) -> JacobianFactor:
        """
        Jacobian factor A δ ≈ −r at ``values``.

        The noise model is baked into A and b (Unit model on the result)
        unless it is Constrained; then the unwhitened system keeps the
        Constrained model so its hard rows can be solved as equalities.
        """
        r = self.unwhitened_error(values)
        blocks = self.jacobians(values)
        indices = [ordering[k] for k in self._keys]

        if self._model.is_constrained:
            return JacobianFactor(list(zip(indices, blocks)), -r, self._model)

        A = self._model.whiten_matrix(jnp.concatenate(blocks, axis=1))
        b = -self._model.whiten(r)
        terms, col = [], 0
        for index, block in zip(indices, blocks):
            width = block.shape[1]
            terms.append((index, A[:, col : col + width]))
            col += width
        return JacobianFactor(terms, b, Unit.create(self.dim))

    def equals(self, other: NonlinearFactor, tol: Optional[float] = None) -> bool:
        if not super().equals(other, tol):
            return False
        tol = resolve_tol(tol)
        return (
            other._residual_fn is self._residual_fn
            and self._model.equals(other._model, tol)
            and _params_equal(self._params, other._params, tol)
        )

    def __repr__(self) -> str:
        name = getattr(self._residual_fn, "__name__", repr(self._residual_fn))
        return f"NoiseModelFactor({name}, keys={list(self._keys)}, model={self._model!r})"
