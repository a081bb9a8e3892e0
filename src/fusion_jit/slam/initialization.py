# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Chordal initialization for Pose3 pose graphs.

Poor initial rotations are the main reason pose-graph optimization stalls in
a bad local minimum. Chordal initialization computes a global guess in two
linear solves:

1. **Rotations.** Each rotation R_i is relaxed to an unconstrained 3×3
   matrix (a ``Vector(9)`` variable, row-major). Every "between" measurement
   R_ab contributes the linear residual

       vec(R_b) − vec(R_a R_ab)

   (``frobenius_between_residual``), and an anchor pins one matrix to a known
   rotation. One linearization + CGLS solve gives the least-squares matrices,
   which are then projected back onto SO(3) (``Rot3.closest_to``).

2. **Translations.** Starting from Pose3(R_i, 0), one Gauss–Newton step
   (linearize + CGLS) of the original pose graph recovers the positions.

The anchor is an extra identity pose: Pose3 priors become "between"
measurements from it, and without priors the first pose is tied to it with
an identity measurement.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import jax.numpy as jnp

from fusion_jit.core.factor_graph import FactorGraph
from fusion_jit.core.types import VariableId
from fusion_jit.core.variables import VariableAssignments
from fusion_jit.optimization.cgls import CGLS, CGLSConfig
from fusion_jit.slam.manifold import Pose3, Rot3, Vector
from fusion_jit.slam.measurements import (
    frobenius_anchor_residual,
    frobenius_between_residual,
)

logger = logging.getLogger("fusion_jit.initialization")


def build_pose3_graph(graph: FactorGraph, anchor: VariableId, poses: List[VariableId]) -> FactorGraph:
    """Pose3 "between" factors of ``graph``, with priors rewritten against ``anchor``."""
    pose3_graph = FactorGraph()
    for factor in graph.factors_of_type("between"):
        if all(vid.kind == Pose3.KIND for vid in factor.var_ids):
            pose3_graph.add_factor("between", factor.var_ids, factor.params)

    priors = [
        f for f in graph.factors_of_type("prior") if f.var_ids[0].kind == Pose3.KIND
    ]
    for factor in priors:
        pose3_graph.add_factor("between", (anchor, factor.var_ids[0]), factor.params)
    if not priors and poses:
        pose3_graph.add_factor("between", (anchor, poses[0]), {"measurement": Pose3.identity()})
    return pose3_graph


def solve_orientations(
    pose3_graph: FactorGraph, anchor: VariableId, poses: List[VariableId], cfg: CGLSConfig
) -> Dict[VariableId, Rot3]:
    """Relaxed rotation solve followed by projection onto SO(3)."""
    orientation_graph = FactorGraph()
    orientation_graph.register_residual("frobenius_between", frobenius_between_residual)
    orientation_graph.register_residual("frobenius_anchor", frobenius_anchor_residual)

    relaxed = VariableAssignments()
    associations = {vid: relaxed.store(Vector(jnp.zeros(9))) for vid in poses + [anchor]}

    for factor in pose3_graph.factors.values():
        a, b = factor.var_ids
        R_ab = factor.params["measurement"].rot.R
        orientation_graph.add_factor(
            "frobenius_between", (associations[a], associations[b]), {"measurement": R_ab}
        )
    orientation_graph.add_factor(
        "frobenius_anchor", (associations[anchor],), {"measurement": jnp.eye(3)}
    )

    # The relaxed problem is linear, so one solve from zero is exact.
    gfg = orientation_graph.linearize(relaxed)
    dx = CGLS(cfg).optimize(gfg)
    relaxed.move(gfg.index.unpack(dx))

    return {
        vid: Rot3.closest_to(jnp.reshape(relaxed[associations[vid]].v, (3, 3)))
        for vid in poses
    }


def chordal_initialization(
    graph: FactorGraph,
    values: VariableAssignments,
    rotation_cfg: Optional[CGLSConfig] = None,
    translation_cfg: Optional[CGLSConfig] = None,
) -> VariableAssignments:
    """
    Initial guess for every Pose3 variable of ``values`` constrained by
    ``graph``.

    Returns a new VariableAssignments with the same ids as ``values``: Pose3
    variables are replaced by their chordal estimate, other variables are
    copied unchanged. ``values`` itself is not modified.
    """
    rotation_cfg = rotation_cfg or CGLSConfig(precision=1e-20, max_iters=500)
    translation_cfg = translation_cfg or CGLSConfig(precision=1e-20, max_iters=500)

    graph.validate(values)
    poses = values.ids(Pose3.KIND)
    result = values.copy()
    if not poses:
        return result

    work = values.copy()
    anchor = work.store(Pose3.identity())
    pose3_graph = build_pose3_graph(graph, anchor, poses)

    orientations = solve_orientations(pose3_graph, anchor, poses, rotation_cfg)

    for vid in poses:
        work[vid] = Pose3(orientations[vid], jnp.zeros(3))
    pose3_graph.add_factor("prior", (anchor,), {"measurement": Pose3.identity()})

    index = work.tangent_index(poses + [anchor])
    gfg = pose3_graph.linearize(work, index)
    dx = CGLS(translation_cfg).optimize(gfg)
    work.move(index.unpack(dx))

    for vid in poses:
        result[vid] = work[vid]
    logger.info("chordal initialization of %d poses, error = %g", len(poses), graph.error(result))
    return result
