from __future__ import annotations

import jax.numpy as jnp
import pytest

from whitened_lsq.core.errors import DecodingError, DimensionMismatch, UnsupportedOperation
from whitened_lsq.linear.gaussian_factor import HessianFactor, JacobianFactor
from whitened_lsq.linear.ordering import Ordering
from whitened_lsq.noise.model import Constrained, Diagonal
from whitened_lsq.nonlinear.linearized import (
    LinearizationPoint,
    LinearizedHessianFactor,
    LinearizedJacobianFactor,
)
from whitened_lsq.nonlinear.values import Values


def _values(x1, x2, manifold=None) -> Values:
    v = Values()
    v.insert("x1", jnp.asarray(x1, dtype=jnp.float64), manifold)
    v.insert("x2", jnp.asarray(x2, dtype=jnp.float64), manifold)
    return v


def _pose2_factor() -> JacobianFactor:
    A1 = jnp.array([[1.0, 0.2, 0.0], [0.0, 1.0, 0.5], [0.3, 0.0, 1.0]])
    A2 = jnp.array([[-1.0, 0.0, 0.1], [0.4, -1.0, 0.0], [0.0, 0.2, -1.0]])
    b = jnp.array([0.1, -0.2, 0.05])
    return JacobianFactor([(0, A1), (1, A2)], b, Diagonal.from_sigmas(jnp.array([0.1, 0.2, 0.05])))


def test_example_two_key_identity_factor():
    """
    A₁ = A₂ = I₂, b = 0, linearized at x₁ = x₂ = 0.

    At x₁ = (1, 0), x₂ = (0, 0) the error vector is (1, 0), so the error is
    ½ · 1² = 0.5.
    """
    ordering = Ordering.from_keys(["x1", "x2"])
    jf = JacobianFactor([(0, jnp.eye(2)), (1, jnp.eye(2))], jnp.zeros(2))
    lf = LinearizedJacobianFactor(jf, ordering, _values([0.0, 0.0], [0.0, 0.0]))

    estimate = _values([1.0, 0.0], [0.0, 0.0])
    assert jnp.allclose(lf.error_vector(estimate), jnp.array([1.0, 0.0]))
    assert float(lf.error(estimate)) == pytest.approx(0.5)


def test_jacobian_error_matches_half_squared_error_vector():
    """Multi-key SE2 example: error = ½ ⟨e, e⟩ with e = −b + Σ Aᵢ δᵢ."""
    ordering = Ordering.from_keys(["x1", "x2"])
    lin = _values([0.0, 0.0, 0.0], [1.0, 0.0, 0.1], "pose_se2")
    lf = LinearizedJacobianFactor(_pose2_factor(), ordering, lin)

    estimate = _values([0.05, -0.02, 0.03], [1.1, 0.05, 0.08], "pose_se2")
    e = lf.error_vector(estimate)
    assert float(lf.error(estimate)) == pytest.approx(0.5 * float(jnp.dot(e, e)), rel=1e-12)

    deltas = lf.linearization_point.deltas(estimate)
    expected = -lf.b + lf.A("x1") @ deltas[0] + lf.A("x2") @ deltas[1]
    assert jnp.allclose(e, expected)


def test_jacobian_stores_whitened_system():
    ordering = Ordering.from_keys(["x1", "x2"])
    jf = _pose2_factor()
    lf = LinearizedJacobianFactor(jf, ordering, _values(jnp.zeros(3), jnp.zeros(3), "pose_se2"))
    Ab = jf.matrix_augmented(weighted=True)
    assert jnp.allclose(lf.A("x1"), Ab[:, 0:3])
    assert jnp.allclose(lf.A("x2"), Ab[:, 3:6])
    assert jnp.allclose(lf.b, Ab[:, 6])


def test_jacobian_relinearize_at_linearization_point_is_identity():
    """
    With every δ = 0, relinearization reproduces the whitened input
    factor, under a different ordering too.
    """
    ordering = Ordering.from_keys(["x1", "x2"])
    lin = _values([0.2, -0.1, 0.3], [1.0, 0.5, -0.2], "pose_se2")
    jf = _pose2_factor()
    lf = LinearizedJacobianFactor(jf, ordering, lin)

    relinearized = lf.relinearize(lin, ordering)
    assert relinearized.equals(jf.whiten())
    assert lf.linearize(lin, ordering).equals(relinearized)

    swapped = Ordering.from_keys(["x2", "x1"])
    moved = lf.relinearize(lin, swapped)
    assert moved.keys == (1, 0)
    assert jnp.allclose(moved.get_A(1), lf.A("x1"))


def test_jacobian_relinearize_moves_rhs():
    ordering = Ordering.from_keys(["x1", "x2"])
    lf = LinearizedJacobianFactor(_pose2_factor(), ordering, _values(jnp.zeros(3), jnp.zeros(3), "pose_se2"))
    estimate = _values([0.1, 0.0, 0.0], [0.0, 0.0, 0.05], "pose_se2")

    moved = lf.relinearize(estimate, ordering)
    assert jnp.allclose(moved.b, -lf.error_vector(estimate))
    # At δ = 0 of the new point, the new factor reproduces the wrapped error.
    zero = {0: jnp.zeros(3), 1: jnp.zeros(3)}
    assert float(moved.error(zero)) == pytest.approx(float(lf.error(estimate)), rel=1e-10)


def test_hessian_error_matches_wrapped_jacobian():
    """
    Wrapping the Hessian form of a Jacobian factor gives the same error at
    every estimate as wrapping the Jacobian itself.
    """
    ordering = Ordering.from_keys(["x1", "x2"])
    lin = _values([0.0, 0.0, 0.0], [1.0, 0.0, 0.1], "pose_se2")
    jf = _pose2_factor()
    lj = LinearizedJacobianFactor(jf, ordering, lin)
    lh = LinearizedHessianFactor(jf.to_hessian(), ordering, lin)

    for estimate in (
        lin,
        _values([0.05, -0.02, 0.03], [1.1, 0.05, 0.08], "pose_se2"),
        _values([-0.3, 0.2, 0.4], [0.7, -0.1, 0.0], "pose_se2"),
    ):
        assert float(lh.error(estimate)) == pytest.approx(float(lj.error(estimate)), rel=1e-8, abs=1e-10)


def test_hessian_relinearize_shifts_quadratic():
    """f' = f − 2δᵀg + δᵀGδ, g' = g − Gδ, G' = G."""
    ordering = Ordering.from_keys(["x1", "x2"])
    G11 = jnp.array([[4.0, 1.0], [1.0, 3.0]])
    G12 = jnp.array([[0.5, 0.0], [0.0, 0.5]])
    G22 = jnp.array([[2.0, 0.0], [0.0, 2.0]])
    g1, g2 = jnp.array([1.0, -1.0]), jnp.array([0.5, 0.25])
    hf = HessianFactor([0, 1], [G11, G12, G22], [g1, g2], 10.0)

    lin = _values([0.0, 0.0], [0.0, 0.0])
    lh = LinearizedHessianFactor(hf, ordering, lin)

    estimate = _values([0.1, 0.2], [-0.3, 0.4])
    dx = jnp.array([0.1, 0.2, -0.3, 0.4])
    G, g = hf.squared_term(), hf.linear_term()

    moved = lh.relinearize(estimate, ordering)
    assert jnp.allclose(moved.squared_term(), G)
    assert jnp.allclose(moved.linear_term(), g - G @ dx)
    expected_f = 10.0 - 2.0 * float(dx @ g) + float(dx @ G @ dx)
    assert moved.constant_term() == pytest.approx(expected_f)
    assert float(lh.error(estimate)) == pytest.approx(0.5 * expected_f)


def test_hessian_relinearize_at_linearization_point_is_identity():
    ordering = Ordering.from_keys(["x1", "x2"])
    lin = _values([0.2, -0.1, 0.3], [1.0, 0.5, -0.2], "pose_se2")
    hf = _pose2_factor().to_hessian()
    lh = LinearizedHessianFactor(hf, ordering, lin)
    assert lh.relinearize(lin, ordering).equals(hf)


def test_equals_compares_keys_points_and_blocks():
    ordering = Ordering.from_keys(["x1", "x2"])
    lin = _values(jnp.zeros(3), jnp.zeros(3), "pose_se2")
    other_lin = _values(jnp.zeros(3), [0.0, 0.0, 0.1], "pose_se2")
    jf = _pose2_factor()

    a = LinearizedJacobianFactor(jf, ordering, lin)
    assert a.equals(LinearizedJacobianFactor(jf, ordering, lin))
    assert not a.equals(LinearizedJacobianFactor(jf, ordering, other_lin))
    other_b = JacobianFactor([(0, jf.get_A(0)), (1, jf.get_A(1))], jf.b + 1.0, jf.model)
    assert not a.equals(LinearizedJacobianFactor(other_b, ordering, lin))

    h = LinearizedHessianFactor(jf.to_hessian(), ordering, lin)
    assert h.equals(LinearizedHessianFactor(jf.to_hessian(), ordering, lin))
    assert not h.equals(a)

    hf = jf.to_hessian()
    shifted = HessianFactor.from_info(hf.keys, hf.dims, hf.info().at[-1, -1].add(1.0))
    assert not h.equals(LinearizedHessianFactor(shifted, ordering, lin))


def test_unresolvable_index_raises_decoding_error():
    ordering = Ordering.from_keys(["x1", "x2"])
    jf = JacobianFactor([(0, jnp.eye(2)), (5, jnp.eye(2))], jnp.zeros(2))
    with pytest.raises(DecodingError):
        LinearizedJacobianFactor(jf, ordering, _values([0.0, 0.0], [0.0, 0.0]))


def test_missing_linearization_value_raises_decoding_error():
    ordering = Ordering.from_keys(["x1", "x2", "x3"])
    jf = JacobianFactor([(0, jnp.eye(2)), (2, jnp.eye(2))], jnp.zeros(2))
    with pytest.raises(DecodingError):
        LinearizedJacobianFactor(jf, ordering, _values([0.0, 0.0], [0.0, 0.0]))


def test_block_width_must_match_tangent_dimension():
    ordering = Ordering.from_keys(["x1", "x2"])
    jf = JacobianFactor([(0, jnp.eye(2)), (1, jnp.eye(2))], jnp.zeros(2))
    with pytest.raises(DimensionMismatch):
        LinearizedJacobianFactor(jf, ordering, _values(jnp.zeros(3), jnp.zeros(3), "pose_se2"))


def test_constrained_jacobian_cannot_be_wrapped():
    ordering = Ordering.from_keys(["x1", "x2"])
    jf = JacobianFactor(
        [(0, jnp.eye(2)), (1, jnp.eye(2))], jnp.zeros(2), Constrained.mixed(jnp.array([0.0, 1.0]))
    )
    with pytest.raises(UnsupportedOperation):
        LinearizedJacobianFactor(jf, ordering, _values([0.0, 0.0], [0.0, 0.0]))


def test_linearization_point_snapshot_is_independent():
    ordering = Ordering.from_keys(["x1", "x2"])
    values = _values([0.0, 0.0], [1.0, 1.0])
    jf = JacobianFactor([(1, jnp.eye(2))], jnp.zeros(2))
    point = LinearizationPoint.from_gaussian(jf, ordering, values)

    values.update("x2", jnp.array([5.0, 5.0]))
    assert point.keys == ("x2",)
    assert jnp.allclose(point.lin_points.at("x2"), jnp.array([1.0, 1.0]))
    assert jnp.allclose(point.stacked_delta(values), jnp.array([4.0, 4.0]))


def test_wrong_length_estimate_raises_dimension_mismatch():
    ordering = Ordering.from_keys(["x1", "x2"])
    jf = JacobianFactor([(0, jnp.eye(2)), (1, jnp.eye(2))], jnp.zeros(2))
    lin = _values([0.0, 0.0], [0.0, 0.0])
    lj = LinearizedJacobianFactor(jf, ordering, lin)
    lh = LinearizedHessianFactor(jf.to_hessian(), ordering, lin)

    short = _values([1.0], [0.0, 0.0])
    for factor in (lj, lh):
        with pytest.raises(DimensionMismatch):
            factor.error(short)
        with pytest.raises(DimensionMismatch):
            factor.relinearize(short, ordering)
    with pytest.raises(DimensionMismatch):
        lj.error_vector(short)


def test_unknown_key_block_raises_key_error():
    ordering = Ordering.from_keys(["x1", "x2"])
    lf = LinearizedJacobianFactor(_pose2_factor(), ordering, _values(jnp.zeros(3), jnp.zeros(3), "pose_se2"))
    with pytest.raises(KeyError):
        lf.A("x9")


def test_linearization_point_cannot_mutate_factor():
    ordering = Ordering.from_keys(["x1", "x2"])
    lin = _values([0.0, 0.0], [0.0, 0.0])
    jf = JacobianFactor([(0, jnp.eye(2)), (1, jnp.eye(2))], jnp.zeros(2))
    lj = LinearizedJacobianFactor(jf, ordering, lin)
    lh = LinearizedHessianFactor(jf.to_hessian(), ordering, lin)

    for factor in (lj, lh):
        factor.linearization_point.lin_points.update("x1", jnp.array([3.0, 3.0]))
        assert jnp.allclose(factor.linearization_point.lin_points.at("x1"), jnp.zeros(2))
        assert float(factor.error(lin)) == pytest.approx(0.0)
