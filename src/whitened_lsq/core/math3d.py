# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Planar and spatial rigid-body math in vector form.

Poses are stored as flat vectors so they can live in a `Values` container
and be differentiated with JAX:

    SE(2): [x, y, theta]
    SE(3): [tx, ty, tz, wx, wy, wz]   (w is an axis-angle rotation vector)

The manifold layer (`core.manifold`) builds its local-coordinates and
retraction maps on top of the compose / relative helpers below:

    local(p, q)   = relative_pose(p, q)      (p⁻¹ ∘ q, in vector form)
    retract(p, d) = compose_pose(p, d)       (p ∘ d)

so that ``local(p, retract(p, d)) == d`` for deltas inside the injectivity
radius (rotation angles below pi), which the linearized
factors rely on when they re-express a frozen linear system at a new
estimate.

Every function is JAX-traceable (no Python branching on array values) so
that `NoiseModelFactor.linearize` can take Jacobians through them.
"""

from __future__ import annotations

from .jax_init import jnp

_SMALL_ANGLE = 1e-8


def wrap_angle(theta: jnp.ndarray) -> jnp.ndarray:
    """Wrap an angle (or array of angles) to [-pi, pi)."""
    return jnp.mod(theta + jnp.pi, 2.0 * jnp.pi) - jnp.pi


def rot2(theta: jnp.ndarray) -> jnp.ndarray:
    c, s = jnp.cos(theta), jnp.sin(theta)
    return jnp.array([[c, -s], [s, c]])


def compose_pose_se2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a ∘ b for planar poses [x, y, theta]."""
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    t = a[:2] + rot2(a[2]) @ b[:2]
    return jnp.concatenate([t, jnp.reshape(wrap_angle(a[2] + b[2]), (1,))])


def relative_pose_se2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a⁻¹ ∘ b for planar poses [x, y, theta]."""
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    t = rot2(a[2]).T @ (b[:2] - a[:2])
    return jnp.concatenate([t, jnp.reshape(wrap_angle(b[2] - a[2]), (1,))])


def hat(w: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: 3-vector -> skew-symmetric 3x3 matrix."""
    return jnp.array(
        [
            [0.0, -w[2], w[1]],
            [w[2], 0.0, -w[0]],
            [-w[1], w[0], 0.0],
        ]
    )


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Rodrigues' formula, rotation vector -> rotation matrix.

    The sin/cos coefficients are evaluated on a guarded angle so the
    small-angle branch stays differentiable at w = 0.
    """
    w = jnp.asarray(w)
    theta2 = jnp.dot(w, w)
    small = theta2 < _SMALL_ANGLE**2
    theta = jnp.sqrt(jnp.where(small, 1.0, theta2))

    a = jnp.where(small, 1.0 - theta2 / 6.0, jnp.sin(theta) / theta)
    b = jnp.where(small, 0.5 - theta2 / 24.0, (1.0 - jnp.cos(theta)) / (theta * theta))

    W = hat(w)
    return jnp.eye(3) + a * W + b * (W @ W)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Rotation matrix -> rotation vector.

    The angle comes from atan2(|skew(R)|, cos) rather than arccos, so the
    map has finite reverse-mode derivatives at the identity. All three
    regimes are evaluated and selected with ``jnp.where``; each one is kept
    finite everywhere so unselected branches never leak NaN gradients.
    """
    R = jnp.asarray(R)
    skew = 0.5 * jnp.array(
        [R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]]
    )  # sin(theta) * axis
    sin2 = jnp.dot(skew, skew)
    cos_theta = 0.5 * (jnp.trace(R) - 1.0)

    tiny = sin2 < _SMALL_ANGLE**2
    sin_safe = jnp.sqrt(jnp.where(tiny, 1.0, sin2))
    theta = jnp.arctan2(sin_safe, cos_theta)
    regular = (theta / sin_safe) * skew

    # theta ~ 0: theta / sin(theta) ~ 1 + sin²/6
    near_zero = (1.0 + sin2 / 6.0) * skew

    # theta ~ pi: R ~ 2aaᵀ - I, take the axis from the symmetric part
    B = 0.5 * (R + jnp.eye(3))
    diag = jnp.clip(jnp.diag(B), 1e-12, None)
    k = jnp.argmax(diag)
    axis = B[:, k] / jnp.sqrt(diag[k])
    axis = axis / jnp.linalg.norm(axis)
    sign = jnp.where(jnp.dot(axis, skew) < 0.0, -1.0, 1.0)
    near_pi = sign * (jnp.pi - jnp.sqrt(jnp.maximum(sin2, 1e-30))) * axis

    return jnp.where(tiny, jnp.where(cos_theta > 0.0, near_zero, near_pi), regular)


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a ∘ b for spatial poses [t, w]."""
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    Ra = so3_exp(a[3:])
    Rb = so3_exp(b[3:])
    t = Ra @ b[:3] + a[:3]
    return jnp.concatenate([t, so3_log(Ra @ Rb)])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    a⁻¹ ∘ b for spatial poses [t, w]:

        t_rel = R_aᵀ (t_b - t_a)
        w_rel = log(R_aᵀ R_b)
    """
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    Ra = so3_exp(a[3:])
    Rb = so3_exp(b[3:])
    t = Ra.T @ (b[:3] - a[:3])
    return jnp.concatenate([t, so3_log(Ra.T @ Rb)])
