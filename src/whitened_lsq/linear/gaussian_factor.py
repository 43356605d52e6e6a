# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Linear (Gaussian) factors over indexed variables.

These are the outputs of linearization and the inputs of the solver. They
live in *index space*: their keys are positions assigned by an `Ordering`,
and their blocks act on tangent-space update vectors ``x[index]``.

JacobianFactor
    Row-block form  [A₁ A₂ … Aₖ | b]  with a noise model on the rows:

        error(x) = ½ ‖whiten(Σᵢ Aᵢ xᵢ − b)‖²

HessianFactor
    Information form, a symmetric augmented matrix

        [ G   g ]
        [ gᵀ  f ]

    block-indexed per key plus a trailing 1×1 block, with

        error(x) = ½ (f − 2 xᵀg + xᵀGx)

A JacobianFactor converts to the equivalent HessianFactor through
G = AᵀA, g = Aᵀb, f = bᵀb on its whitened system.
"""

from __future__ import annotations

import abc
from typing import List, Optional, Sequence, Tuple

import numpy as np

from whitened_lsq.core.config import equal_with_abs_tol, resolve_tol
from whitened_lsq.core.errors import DimensionMismatch, check_dim
from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.types import Index, IndexedVectors
from whitened_lsq.noise.model import NoiseModel, Unit


def _offsets(dims: Sequence[int]) -> List[int]:
    out = [0]
    for d in dims:
        out.append(out[-1] + int(d))
    return out


class GaussianFactor(abc.ABC):
    """Common key / block bookkeeping for linear factors."""

    def __init__(self, keys: Sequence[int], dims: Sequence[int]) -> None:
        keys = tuple(Index(int(k)) for k in keys)
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate indices in linear factor: {keys}")
        if len(keys) != len(dims):
            raise DimensionMismatch(f"{len(keys)} keys but {len(dims)} blocks")
        self._keys: Tuple[Index, ...] = keys
        self._dims: Tuple[int, ...] = tuple(int(d) for d in dims)
        self._offsets = _offsets(self._dims)

    @property
    def keys(self) -> Tuple[Index, ...]:
        return self._keys

    @property
    def dims(self) -> Tuple[int, ...]:
        return self._dims

    @property
    def size(self) -> int:
        return len(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def total_dim(self) -> int:
        """Number of columns (sum of block dimensions)."""
        return self._offsets[-1]

    def position(self, index: int) -> int:
        """Block position of a variable index within this factor."""
        try:
            return self._keys.index(Index(int(index)))
        except ValueError:
            raise KeyError(f"index {index} not involved in this factor") from None

    def block_slice(self, position: int) -> slice:
        return slice(self._offsets[position], self._offsets[position + 1])

    def _stack(self, x: IndexedVectors) -> jnp.ndarray:
        chunks = []
        for key, dim in zip(self._keys, self._dims):
            xi = jnp.asarray(x[key], dtype=jnp.float64)
            check_dim(dim, xi.shape[0], f"update vector for index {key}")
            chunks.append(xi)
        if not chunks:
            return jnp.zeros((0,))
        return jnp.concatenate(chunks)

    @abc.abstractmethod
    def error(self, x: IndexedVectors) -> jnp.ndarray:
        ...

    @abc.abstractmethod
    def equals(self, other: "GaussianFactor", tol: Optional[float] = None) -> bool:
        ...


class JacobianFactor(GaussianFactor):
    """
    Linear factor Σᵢ Aᵢ xᵢ ≈ b with a noise model on its rows.

    :param terms: ``(index, A_i)`` pairs; every ``A_i`` has ``len(b)`` rows.
    :param b: Right-hand side.
    :param model: Noise model of the rows, `Unit` when omitted.
    """

    def __init__(
        self,
        terms: Sequence[Tuple[int, object]],
        b,
        model: Optional[NoiseModel] = None,
    ) -> None:
        b = jnp.asarray(b, dtype=jnp.float64)
        if b.ndim != 1:
            raise DimensionMismatch(f"b must be a vector, got shape {b.shape}")
        rows = b.shape[0]

        keys, blocks = [], []
        for index, A in terms:
            A = jnp.asarray(A, dtype=jnp.float64)
            if A.ndim != 2:
                raise DimensionMismatch(f"block for index {index} must be a matrix")
            check_dim(rows, A.shape[0], f"rows of block for index {index}")
            keys.append(index)
            blocks.append(A)

        super().__init__(keys, [A.shape[1] for A in blocks])

        if model is None:
            model = Unit.create(rows)
        check_dim(rows, model.dim, "noise model of JacobianFactor")

        self._A = jnp.concatenate(blocks, axis=1) if blocks else jnp.zeros((rows, 0))
        self._b = b
        self._model = model

    @property
    def rows(self) -> int:
        return int(self._b.shape[0])

    @property
    def b(self) -> jnp.ndarray:
        return self._b

    @property
    def model(self) -> NoiseModel:
        return self._model

    @property
    def is_constrained(self) -> bool:
        return self._model.is_constrained

    def get_A(self, index: int) -> jnp.ndarray:
        """Block acting on variable ``index``."""
        return self._A[:, self.block_slice(self.position(index))]

    def blocks(self) -> List[jnp.ndarray]:
        return [self._A[:, self.block_slice(i)] for i in range(self.size)]

    def matrix(self) -> jnp.ndarray:
        """Unweighted A."""
        return self._A

    def matrix_augmented(self, weighted: bool = True) -> jnp.ndarray:
        """[A | b], whitened by the noise model when ``weighted``."""
        A, b = self._A, self._b
        if weighted:
            A, b = self._model.whiten_system(A, b)
        return jnp.concatenate([A, b[:, None]], axis=1)

    def whiten(self) -> "JacobianFactor":
        """Equivalent factor with the noise model baked in and a Unit model."""
        Ab = self.matrix_augmented(weighted=True)
        A, b = Ab[:, :-1], Ab[:, -1]
        terms = [(k, A[:, self.block_slice(i)]) for i, k in enumerate(self._keys)]
        return JacobianFactor(terms, b, Unit.create(self.rows))

    def error_vector(self, x: IndexedVectors) -> jnp.ndarray:
        """Unwhitened A x − b."""
        return self._A @ self._stack(x) - self._b

    def whitened_error(self, x: IndexedVectors) -> jnp.ndarray:
        return self._model.whiten(self.error_vector(x))

    def error(self, x: IndexedVectors) -> jnp.ndarray:
        return 0.5 * self._model.mahalanobis(self.error_vector(x))

    def to_hessian(self) -> "HessianFactor":
        return HessianFactor.from_jacobian(self)

    def equals(self, other: GaussianFactor, tol: Optional[float] = None) -> bool:
        if not isinstance(other, JacobianFactor):
            return False
        if other.keys != self.keys or other.dims != self.dims:
            return False
        tol = resolve_tol(tol)
        return equal_with_abs_tol(
            self.matrix_augmented(weighted=False),
            other.matrix_augmented(weighted=False),
            tol,
        ) and self._model.equals(other.model, tol)

    def __repr__(self) -> str:
        return (
            f"JacobianFactor(keys={list(self._keys)}, dims={list(self._dims)}, "
            f"rows={self.rows}, model={self._model!r})"
        )


class HessianFactor(GaussianFactor):
    """
    Quadratic factor ½ (f − 2 xᵀg + xᵀGx) in information form.

    :param keys: Variable indices, in block order.
    :param Gs: Upper-triangular blocks of G in row-major order,
        ``G₁₁, G₁₂, …, G₁ₖ, G₂₂, …, Gₖₖ``.
    :param gs: Blocks of the linear term g, one per key.
    :param f: Constant term.
    """

    def __init__(self, keys: Sequence[int], Gs: Sequence[object], gs: Sequence[object], f: float) -> None:
        n = len(keys)
        if len(gs) != n:
            raise DimensionMismatch(f"{n} keys but {len(gs)} linear-term blocks")
        if len(Gs) != n * (n + 1) // 2:
            raise DimensionMismatch(
                f"{n} keys need {n * (n + 1) // 2} upper-triangular blocks, got {len(Gs)}"
            )
        gs = [jnp.asarray(g, dtype=jnp.float64).reshape(-1) for g in gs]
        super().__init__(keys, [g.shape[0] for g in gs])

        total = self.total_dim
        info = np.zeros((total + 1, total + 1))
        it = iter(Gs)
        for i in range(n):
            for j in range(i, n):
                G = np.asarray(next(it), dtype=np.float64)
                if G.shape != (self._dims[i], self._dims[j]):
                    raise DimensionMismatch(
                        f"block G[{i},{j}] has shape {G.shape}, "
                        f"expected {(self._dims[i], self._dims[j])}"
                    )
                rs, cs = self.block_slice(i), self.block_slice(j)
                info[rs, cs] = G
                info[cs, rs] = G.T
            info[self.block_slice(i), total] = np.asarray(gs[i])
            info[total, self.block_slice(i)] = np.asarray(gs[i])
        info[total, total] = float(f)
        self._info = jnp.asarray(info)

    @staticmethod
    def from_info(keys: Sequence[int], dims: Sequence[int], info) -> "HessianFactor":
        """
        Build from a full augmented information matrix.

        Only the upper triangle is read; the lower triangle is mirrored from it.
        """
        info = jnp.asarray(info, dtype=jnp.float64)
        total = sum(int(d) for d in dims)
        if info.shape != (total + 1, total + 1):
            raise DimensionMismatch(
                f"augmented information must be {(total + 1, total + 1)}, got {info.shape}"
            )
        upper = jnp.triu(info)
        full = upper + jnp.triu(info, 1).T
        offsets = _offsets(dims)
        Gs, gs = [], []
        for i in range(len(dims)):
            rs = slice(offsets[i], offsets[i + 1])
            for j in range(i, len(dims)):
                Gs.append(full[rs, offsets[j] : offsets[j + 1]])
            gs.append(full[rs, total])
        return HessianFactor(keys, Gs, gs, float(full[total, total]))

    @staticmethod
    def from_jacobian(factor: JacobianFactor) -> "HessianFactor":
        """G = AᵀA, g = Aᵀb, f = bᵀb on the whitened system."""
        Ab = factor.matrix_augmented(weighted=True)
        return HessianFactor.from_info(factor.keys, factor.dims, Ab.T @ Ab)

    def info(self) -> jnp.ndarray:
        """Full symmetric augmented matrix [[G, g], [gᵀ, f]]."""
        return self._info

    def squared_term(self) -> jnp.ndarray:
        n = self.total_dim
        return self._info[:n, :n]

    def linear_term(self) -> jnp.ndarray:
        n = self.total_dim
        return self._info[:n, n]

    def constant_term(self) -> float:
        n = self.total_dim
        return float(self._info[n, n])

    def block(self, i: int, j: int) -> jnp.ndarray:
        """G block between positions i and j."""
        return self._info[self.block_slice(i), self.block_slice(j)]

    def error(self, x: IndexedVectors) -> jnp.ndarray:
        dx = self._stack(x)
        G, g, f = self.squared_term(), self.linear_term(), self.constant_term()
        return 0.5 * (f - 2.0 * jnp.dot(dx, g) + dx @ G @ dx)

    def equals(self, other: GaussianFactor, tol: Optional[float] = None) -> bool:
        if not isinstance(other, HessianFactor):
            return False
        if other.keys != self.keys or other.dims != self.dims:
            return False
        return equal_with_abs_tol(self._info, other.info(), resolve_tol(tol))

    def __repr__(self) -> str:
        return f"HessianFactor(keys={list(self._keys)}, dims={list(self._dims)})"
