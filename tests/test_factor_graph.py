from __future__ import annotations

import pytest
import jax.numpy as jnp

from fusion_jit.core.types import Factor, FactorId, VariableId
from fusion_jit.core.factor_graph import FactorGraph, FactorGraphError
from fusion_jit.core.variables import VariableAssignments
from fusion_jit.slam.manifold import Pose2, Pose3, Vector


def test_single_variable_prior_error():
    """
    One vector variable x, one prior factor:
        residual = x - prior
    The total error is the squared residual norm.
    """
    values = VariableAssignments()
    x = values.store(Vector(jnp.array([0.0])))

    fg = FactorGraph()
    fg.add_factor("prior", (x,), {"measurement": Vector(jnp.array([2.0]))})

    assert fg.error(values) == pytest.approx(4.0)
    errors = fg.error_vectors(values)
    assert jnp.allclose(errors[FactorId(0)], jnp.array([-2.0]))


def test_tiny_slam_prior_plus_between_error():
    """
    Two planar poses.

    Factors:
      - prior on p0: wants p0 = identity
      - between p0 and p1: wants p1 = p0 ∘ (1, 0, 0)

    At p0 = identity, p1 = (1, 0, 0) the error vanishes; moving p1 by 0.5 in
    x contributes 0.25.
    """
    values = VariableAssignments()
    p0 = values.store(Pose2.identity())
    p1 = values.store(Pose2.from_xytheta(1.0, 0.0, 0.0))

    fg = FactorGraph()
    fg.add_factor("prior", (p0,), {"measurement": Pose2.identity()})
    fg.add_factor("between", (p0, p1), {"measurement": Pose2.from_xytheta(1.0, 0.0, 0.0)})

    assert fg.error(values) == pytest.approx(0.0, abs=1e-20)

    values[p1] = Pose2.from_xytheta(1.5, 0.0, 0.0)
    assert fg.error(values) == pytest.approx(0.25)


def test_sigma_and_weight_scale_residuals():
    values = VariableAssignments()
    x = values.store(Vector(jnp.array([1.0, 1.0])))
    zero = Vector(jnp.zeros(2))

    fg = FactorGraph()
    fg.add_factor("prior", (x,), {"measurement": zero, "sigma": 0.5})
    fg.add_factor("prior", (x,), {"measurement": zero, "weight": 9.0})
    fg.add_factor("prior", (x,), {"measurement": zero, "weight": jnp.array([1.0, 3.0])})

    errors = fg.error_vectors(values)
    assert jnp.allclose(errors[FactorId(0)], jnp.array([2.0, 2.0]))
    assert jnp.allclose(errors[FactorId(1)], jnp.array([3.0, 3.0]))
    assert jnp.allclose(errors[FactorId(2)], jnp.array([1.0, 3.0]))


def test_store_rejects_duplicate_factor_ids():
    fg = FactorGraph()
    vid = VariableId("vector", 0)
    fg.store(Factor(FactorId(3), "prior", (vid,), {}))
    with pytest.raises(FactorGraphError):
        fg.store(Factor(FactorId(3), "prior", (vid,), {}))
    # allocated ids continue after the largest stored one
    assert fg.add_factor("prior", (vid,), {}) == FactorId(4)


def test_validate_fails_fast():
    values = VariableAssignments()
    p0 = values.store(Pose2.identity())

    fg = FactorGraph()
    fg.add_factor("between", (p0, VariableId("pose2", 7)), {"measurement": Pose2.identity()})
    with pytest.raises(FactorGraphError):
        fg.validate(values)

    fg = FactorGraph()
    fg.add_factor("odometry", (p0,), {})
    with pytest.raises(FactorGraphError):
        fg.validate(values)

    fg = FactorGraph()
    fg.add_factor("prior", (p0,), {"measurement": Pose2.identity()})
    fg.validate(values)
    assert fg.variable_ids() == {p0}


def test_custom_residual_registration():
    """Residuals registered by type are picked up by error evaluation."""

    def range_residual(values, params):
        a, b = values
        return jnp.atleast_1d(jnp.linalg.norm(b.t - a.t) - params["range"])

    values = VariableAssignments()
    a = values.store(Pose2.identity())
    b = values.store(Pose2.from_xytheta(3.0, 4.0, 0.0))

    fg = FactorGraph()
    fg.register_residual("range", range_residual)
    fg.add_factor("range", (a, b), {"range": 4.0})
    assert fg.error(values) == pytest.approx(1.0)


def test_add_factor_ids_follow_the_largest_stored_id():
    vid = VariableId("vector", 0)
    fg = FactorGraph({FactorId(5): Factor(FactorId(5), "prior", (vid,), {})})
    assert fg.add_factor("prior", (vid,), {}) == FactorId(6)
    assert fg.add_factor("prior", (vid,), {}) == FactorId(7)
    fg.store(Factor(FactorId(20), "prior", (vid,), {}))
    assert fg.add_factor("prior", (vid,), {}) == FactorId(21)
    assert len(fg) == 4


def test_validate_rejects_between_over_mixed_kinds():
    """A "between" over a Pose2 and a Pose3 cannot be evaluated."""
    values = VariableAssignments()
    p2 = values.store(Pose2.identity())
    p3 = values.store(Pose3.identity())

    fg = FactorGraph()
    fg.add_factor("between", (p2, p3), {"measurement": Pose2.identity()})
    with pytest.raises(FactorGraphError, match="Factor 0"):
        fg.validate(values)


def test_validate_rejects_mismatched_vector_dimensions():
    values = VariableAssignments()
    a = values.store(Vector(jnp.zeros(2)))
    b = values.store(Vector(jnp.zeros(3)))

    fg = FactorGraph()
    fg.add_factor("between", (a, b), {"measurement": Vector(jnp.zeros(2))})
    with pytest.raises(FactorGraphError, match="tangent dimensions"):
        fg.validate(values)

    fg = FactorGraph()
    fg.add_factor("prior", (b,), {"measurement": Vector(jnp.zeros(2))})
    with pytest.raises(FactorGraphError, match="measurement"):
        fg.validate(values)


def test_validate_rejects_wrong_measurement_type():
    """A Pose3 measurement on a Pose2 prior is caught before evaluation."""
    values = VariableAssignments()
    p = values.store(Pose2.identity())

    fg = FactorGraph()
    fg.add_factor("prior", (p,), {"measurement": Pose3.identity()})
    with pytest.raises(FactorGraphError, match="pose3"):
        fg.validate(values)


def test_validate_rejects_missing_measurement_and_bad_arity():
    values = VariableAssignments()
    p0 = values.store(Pose2.identity())
    p1 = values.store(Pose2.identity())

    fg = FactorGraph()
    fg.add_factor("prior", (p0,), {"sigma": 0.1})
    with pytest.raises(FactorGraphError, match="no 'measurement'"):
        fg.validate(values)

    fg = FactorGraph()
    fg.add_factor("prior", (p0, p1), {"measurement": Pose2.identity()})
    with pytest.raises(FactorGraphError, match="needs 1 variable"):
        fg.validate(values)


def test_validate_leaves_custom_residual_types_alone():
    """Only the built-in residuals get measurement checks."""
    values = VariableAssignments()
    p2 = values.store(Pose2.identity())
    p3 = values.store(Pose3.identity())

    fg = FactorGraph()
    fg.register_residual("mixed", lambda vals, params: jnp.zeros(1))
    fg.add_factor("mixed", (p2, p3), {})
    fg.validate(values)
