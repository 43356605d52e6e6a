from __future__ import annotations

import jax.numpy as jnp
import pytest

from whitened_lsq.core.errors import DimensionMismatch
from whitened_lsq.linear.ordering import Ordering
from whitened_lsq.noise.model import Constrained, Diagonal, Isotropic, Unit
from whitened_lsq.nonlinear.factor import NoiseModelFactor
from whitened_lsq.nonlinear.factor_graph import NonlinearFactorGraph
from whitened_lsq.nonlinear.measurements import between_residual, linear_residual, prior_residual
from whitened_lsq.nonlinear.values import Values


def _pose2_values() -> Values:
    values = Values()
    values.insert("x0", jnp.array([0.1, -0.2, 0.05]), "pose_se2")
    values.insert("x1", jnp.array([1.2, 0.1, 0.3]), "pose_se2")
    return values


def test_prior_error_is_half_mahalanobis():
    values = Values()
    values.insert("p", jnp.array([1.0, 2.0]))
    model = Diagonal.from_sigmas(jnp.array([0.5, 2.0]))
    factor = NoiseModelFactor(["p"], prior_residual, {"target": jnp.array([0.0, 0.0])}, model)

    r = factor.unwhitened_error(values)
    assert jnp.allclose(r, jnp.array([1.0, 2.0]))
    assert jnp.allclose(factor.whitened_error(values), jnp.array([2.0, 1.0]))
    assert float(factor.error(values)) == pytest.approx(0.5 * (4.0 + 1.0))


def test_between_residual_zero_at_measurement():
    values = _pose2_values()
    x0, x1 = values.at("x0"), values.at("x1")
    manifold = values.manifold("x0")
    meas = manifold.local_coordinates(x0, x1)

    factor = NoiseModelFactor(
        ["x0", "x1"],
        between_residual,
        {"measurement": meas, "manifold": "pose_se2"},
        Isotropic.from_sigma(3, 0.1),
    )
    assert jnp.allclose(factor.unwhitened_error(values), jnp.zeros(3), atol=1e-12)
    assert float(factor.error(values)) == pytest.approx(0.0, abs=1e-20)


def test_linearize_bakes_in_noise_model():
    """
    For a non-constrained model the linear factor is whitened, carries a
    Unit model and has b = −whiten(r).
    """
    values = _pose2_values()
    model = Diagonal.from_sigmas(jnp.array([0.1, 0.2, 0.05]))
    factor = NoiseModelFactor(
        ["x0", "x1"],
        between_residual,
        {"measurement": jnp.array([1.0, 0.0, 0.2]), "manifold": "pose_se2"},
        model,
    )
    ordering = Ordering.from_keys(["x0", "x1"])
    jf = factor.linearize(values, ordering)

    assert isinstance(jf.model, Unit)
    assert jf.keys == (0, 1) and jf.dims == (3, 3)
    assert jnp.allclose(jf.b, -model.whiten(factor.unwhitened_error(values)))

    J0, J1 = factor.jacobians(values)
    assert jnp.allclose(jf.get_A(0), model.whiten_matrix(J0))
    assert jnp.allclose(jf.get_A(1), model.whiten_matrix(J1))


def test_jacobian_matches_finite_difference_through_retract():
    values = _pose2_values()
    factor = NoiseModelFactor(
        ["x0", "x1"],
        between_residual,
        {"measurement": jnp.array([1.0, 0.0, 0.2]), "manifold": "pose_se2"},
        Unit.create(3),
    )
    J0, _ = factor.jacobians(values)

    eps = 1e-6
    r0 = factor.unwhitened_error(values)
    for k in range(3):
        d = jnp.zeros(3).at[k].set(eps)
        moved = values.retract({"x0": d})
        fd = (factor.unwhitened_error(moved) - r0) / eps
        assert jnp.allclose(J0[:, k], fd, atol=1e-5)


def test_constrained_linearization_keeps_model():
    values = Values()
    values.insert("a", jnp.array([1.0, 2.0]))
    model = Constrained.mixed(jnp.array([0.0, 1.0]))
    factor = NoiseModelFactor(
        ["a"], linear_residual, {"H": jnp.eye(2), "z": jnp.array([1.0, 0.0])}, model
    )
    jf = factor.linearize(values, Ordering.from_keys(["a"]))
    assert jf.is_constrained
    assert jf.model is model
    assert jnp.allclose(jf.b, jnp.array([0.0, -2.0]))
    assert float(factor.error(values)) == pytest.approx(2.0)


def test_residual_dimension_must_match_model():
    values = Values()
    values.insert("p", jnp.zeros(3))
    factor = NoiseModelFactor(["p"], prior_residual, {"target": jnp.ones(3)}, Unit.create(2))
    with pytest.raises(DimensionMismatch):
        factor.error(values)


def test_duplicate_keys_rejected():
    with pytest.raises(ValueError):
        NoiseModelFactor(["p", "p"], between_residual, {"measurement": jnp.zeros(2)}, Unit.create(2))


def test_factor_equals():
    model = Isotropic.from_sigma(2, 0.5)
    a = NoiseModelFactor(["p"], prior_residual, {"target": jnp.array([1.0, 2.0])}, model)
    b = NoiseModelFactor(["p"], prior_residual, {"target": jnp.array([1.0, 2.0])}, model)
    c = NoiseModelFactor(["p"], prior_residual, {"target": jnp.array([1.0, 2.5])}, model)
    assert a.equals(b)
    assert not a.equals(c)


def test_graph_error_keys_and_linearize():
    values = _pose2_values()
    graph = NonlinearFactorGraph()
    graph.add(
        NoiseModelFactor(
            ["x0"], prior_residual, {"target": jnp.zeros(3), "manifold": "pose_se2"}, Unit.create(3)
        )
    )
    graph.add(
        NoiseModelFactor(
            ["x0", "x1"],
            between_residual,
            {"measurement": jnp.array([1.0, 0.0, 0.0]), "manifold": "pose_se2"},
            Unit.create(3),
        )
    )

    assert graph.keys() == ["x0", "x1"]
    assert float(graph.error(values)) == pytest.approx(sum(float(f.error(values)) for f in graph))

    ordering = graph.ordering_for(values)
    assert ordering.keys() == ["x0", "x1"]
    linear = graph.linearize(values, ordering)
    assert len(linear) == 2
    assert linear[1].keys == (0, 1)

    with pytest.raises(TypeError):
        graph.add("not a factor")
