# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Manifold capabilities for variables stored in a `Values` container.

Linearized factors never subtract variable values directly. They ask the
variable's manifold for the tangent-space delta between the stored
linearization point and the current estimate:

    delta = manifold.local_coordinates(lin_point, estimate)

and the solver applies tangent-space updates back through

    estimate' = manifold.retract(estimate, delta)

Manifolds
---------
Euclidean
    ℝⁿ; local coordinates are plain differences.
SE2
    Planar poses [x, y, theta], tangent dimension 3.
SE3
    Spatial poses [tx, ty, tz, wx, wy, wz], tangent dimension 6.

Metadata
--------
`TYPE_TO_MANIFOLD` maps variable type strings (as used when inserting into
`Values`) to manifold instances; `get_manifold_for_var_type` falls back to
Euclidean for unknown types, so plain vector variables need no registration.
"""

from __future__ import annotations

import abc
from typing import Dict

from .errors import check_dim
from .jax_init import jnp
from .math3d import (
    compose_pose_se2,
    compose_pose_se3,
    relative_pose_se2,
    relative_pose_se3,
)


class Manifold(abc.ABC):
    """Local-coordinates / retraction pair for one kind of variable."""

    name: str = "manifold"

    def check(self, value: jnp.ndarray) -> None:
        """Raise DimensionMismatch if ``value`` cannot be a point of this manifold."""

    @abc.abstractmethod
    def dim(self, value: jnp.ndarray) -> int:
        """Tangent-space dimension at ``value``."""

    @abc.abstractmethod
    def local_coordinates(self, p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
        """Tangent vector at ``p`` that retracts onto ``q``."""

    @abc.abstractmethod
    def retract(self, p: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
        """Move ``p`` along the tangent vector ``delta``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self))


class Euclidean(Manifold):
    name = "euclidean"

    def dim(self, value: jnp.ndarray) -> int:
        return int(jnp.asarray(value).shape[0])

    def local_coordinates(self, p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
        p, q = jnp.asarray(p), jnp.asarray(q)
        check_dim(p.shape[0], q.shape[0], "euclidean local coordinates")
        return q - p

    def retract(self, p: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
        p, delta = jnp.asarray(p), jnp.asarray(delta)
        check_dim(p.shape[0], delta.shape[0], "euclidean retract")
        return p + delta


class _Pose(Manifold):
    """Poses stored as fixed-length vectors with tangent dimension ``size``."""

    size: int = 0

    def check(self, value: jnp.ndarray) -> None:
        check_dim(self.size, jnp.asarray(value).shape[0], f"{self.name} value")

    def dim(self, value: jnp.ndarray) -> int:
        return self.size

    def local_coordinates(self, p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
        self.check(p)
        self.check(q)
        return self._relative(p, q)

    def retract(self, p: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
        self.check(p)
        self.check(delta)
        return self._compose(p, delta)


class SE2(_Pose):
    name = "se2"
    size = 3

    def _relative(self, p, q):
        return relative_pose_se2(p, q)

    def _compose(self, p, delta):
        return compose_pose_se2(p, delta)


class SE3(_Pose):
    name = "se3"
    size = 6

    def _relative(self, p, q):
        return relative_pose_se3(p, q)

    def _compose(self, p, delta):
        return compose_pose_se3(p, delta)


EUCLIDEAN = Euclidean()

TYPE_TO_MANIFOLD: Dict[str, Manifold] = {
    "euclidean": EUCLIDEAN,
    "vector": EUCLIDEAN,
    "point2": EUCLIDEAN,
    "point3": EUCLIDEAN,
    "landmark3d": EUCLIDEAN,
    "pose_se2": SE2(),
    "pose_se3": SE3(),
}


def get_manifold_for_var_type(var_type: str) -> Manifold:
    return TYPE_TO_MANIFOLD.get(var_type, EUCLIDEAN)


def resolve_manifold(manifold: Manifold | str | None) -> Manifold:
    """Accept a Manifold instance, a registered type name, or None (Euclidean)."""
    if manifold is None:
        return EUCLIDEAN
    if isinstance(manifold, Manifold):
        return manifold
    return get_manifold_for_var_type(manifold)
