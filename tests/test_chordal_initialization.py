from __future__ import annotations

import jax.numpy as jnp
import pytest

from fusion_jit.core.factor_graph import FactorGraph
from fusion_jit.core.variables import VariableAssignments
from fusion_jit.optimization.solvers import LMConfig, levenberg_marquardt
from fusion_jit.slam.initialization import chordal_initialization
from fusion_jit.slam.manifold import Pose3


def _ground_truth():
    return [
        Pose3.identity(),
        Pose3.from_tangent(jnp.array([0.0, 0.0, 0.8, 1.0, 0.0, 0.0])),
        Pose3.from_tangent(jnp.array([0.3, -0.2, 1.6, 1.0, 1.0, 0.2])),
        Pose3.from_tangent(jnp.array([-0.4, 0.1, 2.5, 0.0, 1.5, -0.3])),
    ]


def _noise_free_graph(truth, ids, with_prior=True):
    graph = FactorGraph()
    edges = [(0, 1), (1, 2), (2, 3), (3, 0), (0, 2)]
    for a, b in edges:
        graph.add_factor("between", (ids[a], ids[b]), {"measurement": truth[a].between(truth[b])})
    if with_prior:
        graph.add_factor("prior", (ids[0],), {"measurement": truth[0]})
    return graph


def _assert_poses_close(values, ids, truth, atol=1e-6):
    for vid, expected in zip(ids, truth):
        assert jnp.allclose(values[vid].rot.R, expected.rot.R, atol=atol)
        assert jnp.allclose(values[vid].t, expected.t, atol=atol)


def test_chordal_initialization_recovers_noise_free_graph():
    truth = _ground_truth()
    values = VariableAssignments()
    ids = [values.store(Pose3.identity()) for _ in truth]
    graph = _noise_free_graph(truth, ids)

    init = chordal_initialization(graph, values)

    _assert_poses_close(init, ids, truth)
    assert graph.error(init) == pytest.approx(0.0, abs=1e-10)
    # the input assignments are not modified
    assert jnp.allclose(values[ids[2]].rot.R, jnp.eye(3))


def test_chordal_initialization_without_prior_anchors_first_pose():
    truth = _ground_truth()
    values = VariableAssignments()
    ids = [values.store(Pose3.identity()) for _ in truth]
    graph = _noise_free_graph(truth, ids, with_prior=False)

    init = chordal_initialization(graph, values)
    _assert_poses_close(init, ids, truth)


def test_chordal_guess_is_a_good_start_for_lm():
    truth = _ground_truth()
    values = VariableAssignments()
    ids = [values.store(Pose3.from_tangent(jnp.array([0.0, 0.0, 3.0, 5.0, -5.0, 0.0]))) for _ in truth]
    graph = _noise_free_graph(truth, ids)

    init = chordal_initialization(graph, values)
    result = levenberg_marquardt(graph, init, LMConfig(max_iters=5))
    assert result.error < 1e-10
    _assert_poses_close(init, ids, truth)
