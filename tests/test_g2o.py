from __future__ import annotations

import jax.numpy as jnp
import pytest

from fusion_jit.datasets.g2o import (
    G2OParseError,
    InitialGuess,
    Measurement,
    load_g2o_2d,
    load_g2o_3d,
    parse_g2o_2d,
    parse_g2o_3d,
)
from fusion_jit.optimization.solvers import LMConfig, levenberg_marquardt
from fusion_jit.slam.manifold import Pose2, Rot3

SIMPLE_2D = """VERTEX_SE2 0 0.1 0.2 0.3
VERTEX_SE2 1 0.4 0.5 0.6
EDGE_SE2 0 1 0.7 0.8 0.9 1 0 0 1 0 1
"""

SIMPLE_3D = """VERTEX_SE3:QUAT 0 18.7381 2.74428e-07 98.2287 0 0 0 1
VERTEX_SE3:QUAT 1 19.0477 2.34636 98.2319 -0.139007 0.0806488 0.14657 0.976059
EDGE_SE3:QUAT 0 1 0.309576 2.34636 0.00315914 -0.139007 0.0806488 0.14657 0.976059 1 0 0 0 0 0 1 0 0 0 0 1 0 0 0 1 0 0 1 0 1
"""


def test_parse_simple_2d():
    entries = list(parse_g2o_2d(SIMPLE_2D.splitlines()))
    assert len(entries) == 3

    g0, g1, m = entries
    assert isinstance(g0, InitialGuess) and g0.index == 0
    assert isinstance(g1, InitialGuess) and g1.index == 1
    assert jnp.allclose(g1.pose.t, jnp.array([0.4, 0.5]))
    assert float(g1.pose.theta) == pytest.approx(0.6)

    assert isinstance(m, Measurement)
    assert (m.frame_index, m.measured_index) == (0, 1)
    assert jnp.allclose(m.pose.t, jnp.array([0.7, 0.8]))
    assert float(m.pose.theta) == pytest.approx(0.9)


def test_parse_simple_3d_quaternion_order():
    """Quaternions are stored qx qy qz qw."""
    g0, g1, m = list(parse_g2o_3d(SIMPLE_3D.splitlines()))
    assert jnp.allclose(g0.pose.rot.R, jnp.eye(3))
    assert jnp.allclose(g0.pose.t, jnp.array([18.7381, 2.74428e-07, 98.2287]))

    expected = Rot3.from_quaternion(0.976059, -0.139007, 0.0806488, 0.14657)
    assert jnp.allclose(g1.pose.rot.R, expected.R)
    assert jnp.allclose(m.pose.rot.R, expected.R)
    assert (m.frame_index, m.measured_index) == (0, 1)


def test_blank_lines_are_skipped_and_errors_carry_the_line():
    lines = ["VERTEX_SE2 0 0 0 0", "", "VERTEX_SE2 1 0 0"]
    with pytest.raises(G2OParseError) as excinfo:
        list(parse_g2o_2d(lines))
    err = excinfo.value
    assert err.line_index == 2
    assert err.line == "VERTEX_SE2 1 0 0"
    assert err.message == "Fewer columns than expected"


@pytest.mark.parametrize(
    "line,message",
    [
        ("VERTEX_SE2 0 0 0 0 7", "More columns than expected"),
        ("VERTEX_SE2 0 0 zero 0", "Cannot convert zero to Double"),
        ("VERTEX_SE2 a 0 0 0", "Cannot convert a to Int"),
        ("VERTEX_XYZ 0 0 0 0", "First column should be VERTEX_SE2 or EDGE_SE2, but it is VERTEX_XYZ"),
        ("EDGE_SE2 0 1 0 0 0 1 0 0 1 0", "Fewer columns than expected"),
    ],
)
def test_malformed_lines(line, message):
    with pytest.raises(G2OParseError) as excinfo:
        list(parse_g2o_2d([line]))
    assert excinfo.value.line_index == 0
    assert excinfo.value.message == message


def test_load_2d_builds_between_factors(tmp_path):
    path = tmp_path / "simple2d.g2o"
    path.write_text(SIMPLE_2D)
    problem = load_g2o_2d(path)

    assert len(problem.initial_guess) == 2
    assert len(problem.graph) == 1
    (factor,) = problem.graph.factors.values()
    assert factor.type == "between"
    assert factor.var_ids == (problem.variable_ids[0], problem.variable_ids[1])
    problem.graph.validate(problem.initial_guess)


def test_load_3d(tmp_path):
    path = tmp_path / "simple3d.g2o"
    path.write_text(SIMPLE_3D)
    problem = load_g2o_3d(path)
    assert [vid.kind for vid in problem.variable_ids.values()] == ["pose3", "pose3"]


def test_loaded_2d_problem_optimizes(tmp_path):
    """A noise-free triangle loaded from g2o is solved to zero error."""
    text = "\n".join(
        [
            "VERTEX_SE2 0 0.0 0.0 0.0",
            "VERTEX_SE2 1 1.2 0.1 0.1",
            "VERTEX_SE2 2 0.9 1.1 1.7",
            "EDGE_SE2 0 1 1 0 0 1 0 0 1 0 1",
            "EDGE_SE2 1 2 0 1 1.5707963267948966 1 0 0 1 0 1",
        ]
    )
    path = tmp_path / "triangle.g2o"
    path.write_text(text)
    problem = load_g2o_2d(path)
    x0 = problem.variable_ids[0]
    problem.graph.add_factor("prior", (x0,), {"measurement": Pose2.identity()})

    result = levenberg_marquardt(problem.graph, problem.initial_guess, LMConfig(max_iters=20))
    assert result.error < 1e-8
    x2 = problem.initial_guess[problem.variable_ids[2]]
    assert jnp.allclose(x2.t, jnp.array([1.0, 1.0]), atol=1e-4)
