from __future__ import annotations

import jax.numpy as jnp
import pytest

from whitened_lsq.noise.model import Isotropic, Unit
from whitened_lsq.nonlinear.factor import NoiseModelFactor
from whitened_lsq.nonlinear.factor_graph import NonlinearFactorGraph
from whitened_lsq.nonlinear.linearized import LinearizedJacobianFactor
from whitened_lsq.nonlinear.measurements import between_residual, prior_residual
from whitened_lsq.nonlinear.values import Values
from whitened_lsq.optimization.solvers import GNConfig, gauss_newton


def _three_pose_chain(theta: float):
    graph = NonlinearFactorGraph()
    values = Values()

    # Initial guesses (intentionally a bit off)
    values.insert("pose0", jnp.array([0.10, -0.05, 0.02, 0.02, -0.01, -0.01]), "pose_se3")
    values.insert("pose1", jnp.array([0.9, 0.05, -0.02, 0.01, 0.01, theta + 0.03]), "pose_se3")
    values.insert("pose2", jnp.array([2.1, -0.02, 0.01, -0.02, 0.02, 2 * theta - 0.04]), "pose_se3")

    graph.add(
        NoiseModelFactor(
            ["pose0"],
            prior_residual,
            {"target": jnp.zeros(6), "manifold": "pose_se3"},
            Isotropic.from_sigma(6, 0.01),
        )
    )

    # Geodesic SE(3) odom: 1m along x, yaw = theta
    meas = jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, theta])
    for a, b in (("pose0", "pose1"), ("pose1", "pose2")):
        graph.add(
            NoiseModelFactor(
                [a, b],
                between_residual,
                {"measurement": meas, "manifold": "pose_se3"},
                Unit.create(6),
            )
        )
    return graph, values


def test_se3_manifold_geodesic_three_pose_chain():
    """
    Manifold GN + SE(3) geodesic between residual on a 3-pose chain.

    Ground truth (world frame):
      pose0: t=[0, 0, 0], yaw=0
      pose1: t=[1, 0, 0], yaw=theta
      pose2: t=[1+cos(theta), sin(theta), 0], yaw=2*theta
    """
    theta = 0.1
    graph, values = _three_pose_chain(theta)

    result = gauss_newton(graph, values, GNConfig(max_iters=20, damping=5e-3))

    assert jnp.allclose(result.at("pose0"), jnp.zeros(6), atol=1e-4)
    assert jnp.allclose(result.at("pose1"), jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, theta]), atol=1e-4)

    p2 = result.at("pose2")
    assert float(p2[0]) == pytest.approx(1.0 + float(jnp.cos(theta)), abs=1e-4)
    assert float(p2[1]) == pytest.approx(float(jnp.sin(theta)), abs=1e-4)
    assert float(p2[5]) == pytest.approx(2 * theta, abs=1e-4)
    assert float(graph.error(result)) == pytest.approx(0.0, abs=1e-8)


def test_se3_frozen_odometry_tracks_true_factor():
    """
    Freeze the pose1 → pose2 odometry at the optimum.

      - relinearizing at the optimum reproduces the linearization it was built from
      - for a small tangent step on pose2 the frozen error agrees with the
        true geodesic error to second order
    """
    theta = 0.1
    graph, values = _three_pose_chain(theta)
    result = gauss_newton(graph, values, GNConfig(max_iters=20, damping=0.0))

    ordering = graph.ordering_for(result)
    odom12 = graph[2].linearize(result, ordering)
    frozen = LinearizedJacobianFactor(odom12, ordering, result)

    assert frozen.relinearize(result, ordering).equals(odom12, tol=1e-9)

    d = jnp.array([0.01, -0.005, 0.0, 0.0, 0.0, 0.002])
    moved = result.retract({"pose2": d})
    e = frozen.error_vector(moved)
    assert float(frozen.error(moved)) == pytest.approx(0.5 * float(jnp.dot(e, e)), rel=1e-12)
    assert float(frozen.error(moved)) == pytest.approx(float(graph[2].error(moved)), rel=1e-2, abs=1e-8)
