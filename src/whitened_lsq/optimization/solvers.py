# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Dense Gauss–Newton solver over a `NonlinearFactorGraph`.

The solver works on the index-space factors produced by linearization and
never looks inside a noise model beyond the `NoiseModel` interface, except
to route the hard rows of `Constrained` factors.

Key Concepts
------------
GNConfig
    Dataclass holding configuration for Gauss–Newton:
    - max_iters: maximum number of GN iterations
    - damping: Levenberg–Marquardt-style diagonal damping λ
    - abs_tol / rel_tol: stop once the error decrease (or the step norm)
      falls below these thresholds

assemble_dense_system(factors, ordering, values)
    Accumulates the normal equations

        H Δ = g,   H = Σ AᵀA,   g = Σ Aᵀb

    from whitened Jacobian factors and from the (G, g) blocks of Hessian
    factors. Zero-sigma rows of Constrained Jacobian factors become equality
    rows A_c Δ = b_c instead; their remaining rows are scaled by 1/σ.

solve_dense(system, damping)
    Solves (H + λI) Δ = g, or, when equality rows are present, the KKT system

        [ H + λI   A_cᵀ ] [ Δ ]   [ g   ]
        [ A_c      0    ] [ ν ] = [ b_c ]

    and raises IndeterminantSystem if the update is not finite.

gauss_newton(graph, values, cfg)
    Linearize → assemble → solve → retract, until converged. Updates are
    applied per variable through its manifold's retraction, so poses stay on
    their manifold.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np

from whitened_lsq.core.errors import DimensionMismatch, IndeterminantSystem
from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.logging_config import get_logger
from whitened_lsq.core.types import Index, VectorValues
from whitened_lsq.linear.gaussian_factor import GaussianFactor, HessianFactor, JacobianFactor
from whitened_lsq.linear.ordering import Ordering
from whitened_lsq.nonlinear.factor_graph import NonlinearFactorGraph
from whitened_lsq.nonlinear.values import Values

logger = get_logger(__name__)


@dataclass
class GNConfig:
    max_iters: int = 20
    damping: float = 1e-3  # LM-style diagonal damping
    abs_tol: float = 1e-9
    rel_tol: float = 1e-9


@dataclass
class DenseSystem:
    """Normal equations H Δ = g plus equality rows A_eq Δ = b_eq."""

    ordering: Ordering
    dims: List[int]
    H: jnp.ndarray
    g: jnp.ndarray
    A_eq: jnp.ndarray
    b_eq: jnp.ndarray

    @property
    def n(self) -> int:
        return int(self.g.shape[0])

    @property
    def num_constraints(self) -> int:
        return int(self.b_eq.shape[0])

    def split(self, delta: jnp.ndarray) -> VectorValues:
        """Cut a stacked update into per-index blocks."""
        out: VectorValues = {}
        start = 0
        for i, d in enumerate(self.dims):
            out[Index(i)] = delta[start : start + d]
            start += d
        return out


def _scatter_columns(factor: GaussianFactor, offsets: Sequence[int], n: int, block) -> np.ndarray:
    """Place a factor's stacked columns into an (rows, n) matrix."""
    block = np.asarray(block)
    full = np.zeros((block.shape[0], n))
    for pos, index in enumerate(factor.keys):
        full[:, offsets[index] : offsets[index + 1]] = block[:, factor.block_slice(pos)]
    return full


def assemble_dense_system(
    factors: Sequence[GaussianFactor], ordering: Ordering, values: Values
) -> DenseSystem:
    """
    Dense normal equations of the linearized problem.

    Block widths are the tangent dimensions of the ordered variables in
    ``values``; every factor block must match them.
    """
    dims = [values.dim(ordering.key(i)) for i in range(len(ordering))]
    offsets = [0]
    for d in dims:
        offsets.append(offsets[-1] + d)
    n = offsets[-1]

    H = np.zeros((n, n))
    g = np.zeros(n)
    eq_rows: List[np.ndarray] = []
    eq_rhs: List[np.ndarray] = []

    for factor in factors:
        for index, width in zip(factor.keys, factor.dims):
            if width != dims[index]:
                raise DimensionMismatch(
                    f"factor block for index {index} has width {width}, "
                    f"variable {ordering.key(index)!r} has dimension {dims[index]}"
                )

        if isinstance(factor, HessianFactor):
            total = factor.total_dim
            info = np.asarray(factor.info())
            G = _scatter_columns(factor, offsets, n, info[:total, :total])
            G = _scatter_columns(factor, offsets, n, G.T)
            H += G
            g += _scatter_columns(factor, offsets, n, info[:total, total][None, :])[0]
            continue

        if not isinstance(factor, JacobianFactor):
            raise TypeError(f"cannot assemble factor of type {type(factor).__name__}")

        if factor.is_constrained:
            hard = np.asarray(factor.model.constrained_mask)
            sigmas = np.asarray(factor.model.sigmas)
            A = _scatter_columns(factor, offsets, n, factor.matrix())
            b = np.asarray(factor.b)
            eq_rows.append(A[hard])
            eq_rhs.append(b[hard])
            soft = ~hard
            A = A[soft] / sigmas[soft][:, None]
            b = b[soft] / sigmas[soft]
        else:
            Ab = np.asarray(factor.matrix_augmented(weighted=True))
            A = _scatter_columns(factor, offsets, n, Ab[:, :-1])
            b = Ab[:, -1]

        H += A.T @ A
        g += A.T @ b

    A_eq = np.concatenate(eq_rows, axis=0) if eq_rows else np.zeros((0, n))
    b_eq = np.concatenate(eq_rhs) if eq_rhs else np.zeros(0)

    return DenseSystem(
        ordering=ordering,
        dims=dims,
        H=jnp.asarray(H),
        g=jnp.asarray(g),
        A_eq=jnp.asarray(A_eq),
        b_eq=jnp.asarray(b_eq),
    )


def solve_dense(system: DenseSystem, damping: float = 0.0) -> VectorValues:
    """
    Solve the assembled system for the update Δ, split per index.

    Raises IndeterminantSystem when the result is not finite (e.g. a
    variable no factor constrains and no damping).
    """
    n, m = system.n, system.num_constraints
    H_damped = system.H + damping * jnp.eye(n)

    if m == 0:
        delta = jnp.linalg.solve(H_damped, system.g)
    else:
        kkt = jnp.block(
            [
                [H_damped, system.A_eq.T],
                [system.A_eq, jnp.zeros((m, m))],
            ]
        )
        rhs = jnp.concatenate([system.g, system.b_eq])
        delta = jnp.linalg.solve(kkt, rhs)[:n]

    if not bool(jnp.all(jnp.isfinite(delta))):
        raise IndeterminantSystem(
            f"linear system over {len(system.ordering)} variables is indeterminant"
        )
    return system.split(delta)


def gauss_newton(graph: NonlinearFactorGraph, values: Values, cfg: GNConfig) -> Values:
    """
    Manifold-aware Gauss–Newton on a nonlinear factor graph.

    Returns a new `Values`; variables the graph does not touch are copied
    unchanged.
    """
    ordering = graph.ordering_for(values)
    error = float(graph.error(values))
    logger.info("gauss_newton start: %d factors, %d variables, error=%.6g",
                len(graph), len(ordering), error)

    for it in range(cfg.max_iters):
        linear = graph.linearize(values, ordering)
        system = assemble_dense_system(linear, ordering, values)
        delta = solve_dense(system, cfg.damping)

        values = values.retract({ordering.key(i): d for i, d in delta.items()})
        new_error = float(graph.error(values))
        step_norm = float(jnp.sqrt(sum(jnp.dot(d, d) for d in delta.values())))
        logger.info("iter %d: error=%.6g step=%.3g", it, new_error, step_norm)

        decrease = abs(error - new_error)
        error = new_error
        if (
            step_norm <= cfg.abs_tol
            or decrease <= cfg.abs_tol
            or decrease <= cfg.rel_tol * abs(error)
        ):
            logger.info("gauss_newton converged after %d iterations", it + 1)
            break
    else:
        logger.info("gauss_newton stopped at max_iters=%d, error=%.6g", cfg.max_iters, error)

    return values
