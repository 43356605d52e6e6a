# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Keyed container of variable values on their manifolds.

`Values` is the estimate handed to nonlinear factors. Each entry stores a
flat value vector together with the `Manifold` that defines its local
coordinates and retraction:

    values = Values()
    values.insert("x1", jnp.array([0.0, 0.0, 0.0]), "pose_se2")
    values.insert("l1", jnp.array([1.0, 2.0]))           # Euclidean

Values are treated as immutable by the optimizer: `retract` returns a new
container. `insert` / `update` exist for building estimates.

`pose2_circle` builds a ring of planar poses, handy as ground truth for
loop-shaped test problems.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from whitened_lsq.core.config import equal_with_abs_tol, resolve_tol
from whitened_lsq.core.errors import check_dim
from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.manifold import Manifold, resolve_manifold
from whitened_lsq.core.math3d import wrap_angle
from whitened_lsq.core.types import Key


class Values:
    def __init__(self) -> None:
        self._values: Dict[Key, jnp.ndarray] = {}
        self._manifolds: Dict[Key, Manifold] = {}

    def insert(self, key: Key, value, manifold: Manifold | str | None = None) -> None:
        if key in self._values:
            raise KeyError(f"key {key!r} already present in Values")
        value = jnp.asarray(value, dtype=jnp.float64)
        if value.ndim != 1:
            raise ValueError(f"value for {key!r} must be a flat vector, got shape {value.shape}")
        manifold = resolve_manifold(manifold)
        manifold.check(value)
        self._values[key] = value
        self._manifolds[key] = manifold

    def update(self, key: Key, value) -> None:
        old = self.at(key)
        value = jnp.asarray(value, dtype=jnp.float64)
        check_dim(old.shape[0], value.shape[0], f"update of {key!r}")
        self._manifolds[key].check(value)
        self._values[key] = value

    def at(self, key: Key) -> jnp.ndarray:
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(f"key {key!r} not found in Values") from None

    def __getitem__(self, key: Key) -> jnp.ndarray:
        return self.at(key)

    def manifold(self, key: Key) -> Manifold:
        self.at(key)
        return self._manifolds[key]

    def exists(self, key: Key) -> bool:
        return key in self._values

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def keys(self) -> List[Key]:
        return list(self._values)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def dim(self, key: Key) -> int:
        """Tangent-space dimension of one variable."""
        return self.manifold(key).dim(self.at(key))

    def total_dim(self) -> int:
        return sum(self.dim(k) for k in self._values)

    def local_coordinates(self, other: "Values") -> Dict[Key, jnp.ndarray]:
        """Per-key tangent deltas taking ``self`` to ``other`` (keys of ``self``)."""
        return {
            key: self._manifolds[key].local_coordinates(value, other.at(key))
            for key, value in self._values.items()
        }

    def retract(self, delta: Mapping[Key, object]) -> "Values":
        """New Values with each keyed delta applied; missing keys are copied."""
        out = Values()
        for key, value in self._values.items():
            manifold = self._manifolds[key]
            if key in delta:
                d = jnp.asarray(delta[key], dtype=jnp.float64)
                check_dim(manifold.dim(value), d.shape[0], f"delta for {key!r}")
                value = manifold.retract(value, d)
            out.insert(key, value, manifold)
        return out

    def subset(self, keys: Iterable[Key]) -> "Values":
        out = Values()
        for key in keys:
            out.insert(key, self.at(key), self._manifolds[key])
        return out

    def copy(self) -> "Values":
        return self.subset(self._values)

    def equals(self, other: "Values", tol: Optional[float] = None) -> bool:
        if set(self._values) != set(other._values):
            return False
        tol = resolve_tol(tol)
        for key, value in self._values.items():
            if self._manifolds[key] != other._manifolds[key]:
                return False
            if not equal_with_abs_tol(value, other._values[key], tol):
                return False
        return True

    def __repr__(self) -> str:
        items = ", ".join(
            f"{k!r}: {self._manifolds[k].name}{jnp.asarray(v).tolist()}"
            for k, v in self._values.items()
        )
        return f"Values({{{items}}})"


def pose2_circle(n: int, radius: float, prefix: str = "p") -> Values:
    """
    ``n`` SE2 poses tangent to a circle of ``radius``, counter-clockwise.

    Pose i sits at angle θᵢ = 2πi/n, i.e. (R cos θᵢ, R sin θᵢ) with heading
    θᵢ + π/2; the first pose is at (R, 0). Keys are ``f"{prefix}{i}"``.
    """
    if n <= 0:
        raise ValueError(f"pose2_circle needs at least one pose, got n={n}")
    values = Values()
    for i in range(n):
        theta = 2.0 * jnp.pi * i / n
        pose = jnp.array(
            [radius * jnp.cos(theta), radius * jnp.sin(theta), wrap_angle(theta + 0.5 * jnp.pi)]
        )
        values.insert(f"{prefix}{i}", pose, "pose_se2")
    return values
