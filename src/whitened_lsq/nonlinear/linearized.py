# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Linearized factors: frozen linear systems acting as nonlinear factors.

A linear factor produced by a previous linearization (for instance a
marginal left behind when old variables are eliminated) is only valid in
the tangent space of the estimate it was computed at. The adapters here
remember that estimate (the *linearization point*) and let the optimizer
treat the linear factor like any other nonlinear factor:

    • Every evaluation maps the current estimate back into the frozen
      tangent space with each variable's local coordinates

          δᵢ = local(lin_pointᵢ, estimateᵢ)

      (never raw subtraction, since poses live on manifolds).

    • `relinearize` never recomputes derivatives. It re-expresses the same
      system around the new estimate, under whatever ordering the solver is
      currently using, and returns a fresh index-space factor.

LinearizedJacobianFactor
    Holds whitened [A | b]:

        error_vector = −b + Σᵢ Aᵢ δᵢ
        error        = ½ ‖error_vector‖²
        relinearize  → JacobianFactor(A, −error_vector, Unit)

LinearizedHessianFactor
    Holds the augmented information matrix [[G, g], [gᵀ, f]]:

        error        = ½ (f − 2 δᵀg + δᵀGδ)
        relinearize  → HessianFactor(G, g − Gδ, f − 2 δᵀg + δᵀGδ)

Both variants share their key / linearization-point state through a
`LinearizationPoint` value and own their block matrices exclusively. They
are immutable; relinearization always builds new factors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from whitened_lsq.core.config import equal_with_abs_tol, resolve_tol
from whitened_lsq.core.errors import DecodingError, check_dim
from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.logging_config import get_logger
from whitened_lsq.core.types import Key
from whitened_lsq.linear.gaussian_factor import GaussianFactor, HessianFactor, JacobianFactor
from whitened_lsq.linear.ordering import Ordering
from whitened_lsq.noise.model import Unit
from whitened_lsq.nonlinear.factor import NonlinearFactor
from whitened_lsq.nonlinear.values import Values

logger = get_logger(__name__)


@dataclass(frozen=True)
class LinearizationPoint:
    """Keys of a wrapped linear factor and a snapshot of their values."""

    keys: Tuple[Key, ...]
    lin_points: Values

    @staticmethod
    def from_gaussian(
        factor: GaussianFactor, ordering: Ordering, estimate: Values
    ) -> "LinearizationPoint":
        """
        Resolve every index of ``factor`` through ``ordering`` and copy the
        matching values out of ``estimate``.

        Raises DecodingError if an index is outside the ordering or its key
        has no value in ``estimate``, and DimensionMismatch if a block's
        width differs from the variable's tangent dimension.
        """
        keys: List[Key] = []
        snapshot = Values()
        for index, dim in zip(factor.keys, factor.dims):
            if not 0 <= index < len(ordering):
                raise DecodingError(
                    f"could not find index {index} in ordering of size {len(ordering)}"
                )
            key = ordering.key(index)
            if not estimate.exists(key):
                raise DecodingError(f"no linearization point for key {key!r} (index {index})")
            check_dim(estimate.dim(key), dim, f"block width for key {key!r}")
            snapshot.insert(key, estimate.at(key), estimate.manifold(key))
            keys.append(key)
        return LinearizationPoint(tuple(keys), snapshot)

    def deltas(self, estimate: Values) -> List[jnp.ndarray]:
        """
        Tangent deltas from the stored point to ``estimate``, in key order.

        Raises DimensionMismatch if a value in ``estimate`` has a different
        length than the stored linearization point.
        """
        out = []
        for k in self.keys:
            p, q = self.lin_points.at(k), estimate.at(k)
            check_dim(p.shape[0], q.shape[0], f"estimate for key {k!r}")
            out.append(self.lin_points.manifold(k).local_coordinates(p, q))
        return out

    def stacked_delta(self, estimate: Values) -> jnp.ndarray:
        deltas = self.deltas(estimate)
        if not deltas:
            return jnp.zeros((0,))
        return jnp.concatenate(deltas)

    def equals(self, other: "LinearizationPoint", tol: Optional[float] = None) -> bool:
        return self.keys == other.keys and self.lin_points.equals(other.lin_points, tol)


class LinearizedJacobianFactor(NonlinearFactor):
    """
    Nonlinear wrapper around a JacobianFactor.

    :param jacobian: Solved linear factor in index space. Its noise model is
        baked into the stored blocks, so it must not be Constrained.
    :param ordering: Ordering the factor's indices refer to.
    :param lin_points: Estimate the factor was linearized at.
    """

    def __init__(self, jacobian: JacobianFactor, ordering: Ordering, lin_points: Values) -> None:
        lin = LinearizationPoint.from_gaussian(jacobian, ordering, lin_points)
        super().__init__(lin.keys)
        self._lin = lin

        Ab = jacobian.matrix_augmented(weighted=True)
        self._A = Ab[:, :-1]
        self._b = Ab[:, -1]
        self._dims = jacobian.dims
        self._starts = [sum(self._dims[:i]) for i in range(len(self._dims))]
        logger.debug("wrapped JacobianFactor rows=%d keys=%s", self.dim, list(self.keys))

    @property
    def dim(self) -> int:
        return int(self._b.shape[0])

    @property
    def linearization_point(self) -> LinearizationPoint:
        """Copy of the stored keys and values; the factor itself never changes."""
        return LinearizationPoint(self._lin.keys, self._lin.lin_points.copy())

    def A(self, key: Key) -> jnp.ndarray:
        try:
            i = self._keys.index(key)
        except ValueError:
            raise KeyError(f"key {key!r} not involved in this factor") from None
        s = self._starts[i]
        return self._A[:, s : s + self._dims[i]]

    @property
    def b(self) -> jnp.ndarray:
        return self._b

    def error_vector(self, values: Values) -> jnp.ndarray:
        """−b + Σᵢ Aᵢ δᵢ, the residual of the frozen system at ``values``."""
        e = -self._b
        for key, d in zip(self._keys, self._lin.deltas(values)):
            e = e + self.A(key) @ d
        return e

    def error(self, values: Values) -> jnp.ndarray:
        e = self.error_vector(values)
        return 0.5 * jnp.dot(e, e)

    def relinearize(self, values: Values, ordering: Ordering) -> JacobianFactor:
        """Same A blocks under ``ordering``, with b = −error_vector(values)."""
        terms = [(ordering[key], self.A(key)) for key in self._keys]
        b = -self.error_vector(values)
        logger.debug("relinearized JacobianFactor keys=%s", list(self.keys))
        return JacobianFactor(terms, b, Unit.create(self.dim))

    def linearize(self, values: Values, ordering: Ordering) -> JacobianFactor:
        return self.relinearize(values, ordering)

    def equals(self, other: NonlinearFactor, tol: Optional[float] = None) -> bool:
        if not super().equals(other, tol):
            return False
        tol = resolve_tol(tol)
        this_Ab = jnp.concatenate([self._A, self._b[:, None]], axis=1)
        other_Ab = jnp.concatenate([other._A, other._b[:, None]], axis=1)
        return self._lin.equals(other._lin, tol) and equal_with_abs_tol(this_Ab, other_Ab, tol)

    def __repr__(self) -> str:
        return f"LinearizedJacobianFactor(keys={list(self.keys)}, rows={self.dim})"


class LinearizedHessianFactor(NonlinearFactor):
    """
    Nonlinear wrapper around a HessianFactor.

    Only G, g and f survive, so relinearization shifts the quadratic form
    algebraically to the new estimate; nothing can be recomputed from
    measurements.
    """

    def __init__(self, hessian: HessianFactor, ordering: Ordering, lin_points: Values) -> None:
        lin = LinearizationPoint.from_gaussian(hessian, ordering, lin_points)
        super().__init__(lin.keys)
        self._lin = lin
        self._info = hessian.info()
        self._dims = hessian.dims
        self._n = hessian.total_dim
        logger.debug("wrapped HessianFactor dim=%d keys=%s", self._n, list(self.keys))

    @property
    def dim(self) -> int:
        return self._n

    @property
    def linearization_point(self) -> LinearizationPoint:
        """Copy of the stored keys and values; the factor itself never changes."""
        return LinearizationPoint(self._lin.keys, self._lin.lin_points.copy())

    def info(self) -> jnp.ndarray:
        return self._info

    def squared_term(self) -> jnp.ndarray:
        return self._info[: self._n, : self._n]

    def linear_term(self) -> jnp.ndarray:
        return self._info[: self._n, self._n]

    def constant_term(self) -> float:
        return float(self._info[self._n, self._n])

    def _shifted(self, values: Values) -> Tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
        """(δ, Gδ, f − 2δᵀg + δᵀGδ) at ``values``."""
        dx = self._lin.stacked_delta(values)
        Gdx = self.squared_term() @ dx
        f = self.constant_term() - 2.0 * jnp.dot(dx, self.linear_term()) + jnp.dot(dx, Gdx)
        return dx, Gdx, f

    def error(self, values: Values) -> jnp.ndarray:
        _, _, f = self._shifted(values)
        return 0.5 * f

    def relinearize(self, values: Values, ordering: Ordering) -> HessianFactor:
        """
        Re-center the quadratic form at ``values``:

            f' = f − 2δᵀg + δᵀGδ,   g' = g − Gδ,   G' = G
        """
        _, Gdx, f = self._shifted(values)
        g = self.linear_term() - Gdx

        starts = [sum(self._dims[:i]) for i in range(len(self._dims) + 1)]
        G = self.squared_term()
        Gs, gs = [], []
        for i in range(len(self._dims)):
            rows = slice(starts[i], starts[i + 1])
            for j in range(i, len(self._dims)):
                Gs.append(G[rows, starts[j] : starts[j + 1]])
            gs.append(g[rows])

        logger.debug("relinearized HessianFactor keys=%s", list(self.keys))
        return HessianFactor([ordering[key] for key in self._keys], Gs, gs, float(f))

    def linearize(self, values: Values, ordering: Ordering) -> HessianFactor:
        return self.relinearize(values, ordering)

    def equals(self, other: NonlinearFactor, tol: Optional[float] = None) -> bool:
        """
        Keys, linearization points, G and g within ``tol``; the constant f is
        checked on its own, with the corner of both augmented matrices zeroed.
        """
        if not super().equals(other, tol):
            return False
        tol = resolve_tol(tol)
        this_info = self._info.at[self._n, self._n].set(0.0)
        other_info = other._info.at[other._n, other._n].set(0.0)
        return (
            self._lin.equals(other._lin, tol)
            and equal_with_abs_tol(this_info, other_info, tol)
            and abs(self.constant_term() - other.constant_term()) <= tol
        )

    def __repr__(self) -> str:
        return f"LinearizedHessianFactor(keys={list(self.keys)}, dim={self.dim})"
