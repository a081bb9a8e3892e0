# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Batched evaluation and linearization of factor graphs.

Factors are grouped by

    (factor type, kinds and shapes of the adjacent values, parameter shapes)

so that every group can be evaluated with a single vmapped, jit-compiled
kernel from :mod:`fusion_jit.optimization.jit_wrappers`. Values and
parameters of a group are stacked leaf-wise with ``jax.tree_util.tree_map``.

Both entry points are pure functions of the assignments: the graph and the
values are read, never modified.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import jax
import jax.numpy as jnp

from fusion_jit.core.types import Factor, FactorId
from fusion_jit.core.variables import TangentIndex, VariableAssignments
from fusion_jit.optimization.gaussian_factor_graph import GaussianFactorGraph, JacobianBlock
from fusion_jit.optimization.jit_wrappers import JittedResidual

logger = logging.getLogger("fusion_jit.linearization")


def _stack(*leaves):
    return jnp.stack([jnp.asarray(leaf) for leaf in leaves])


def _group_factors(graph, values: VariableAssignments) -> Dict[tuple, List[Factor]]:
    groups: Dict[tuple, List[Factor]] = {}
    for factor in graph.factors.values():
        adjacent = tuple(values[vid] for vid in factor.var_ids)
        leaves, treedef = jax.tree_util.tree_flatten((adjacent, factor.params))
        shapes = tuple(jnp.shape(leaf) for leaf in leaves)
        key = (factor.type, treedef, shapes)
        groups.setdefault(key, []).append(factor)
    return groups


def _stacked_group(factors: List[Factor], values: VariableAssignments):
    stacked_values = jax.tree_util.tree_map(
        _stack, *[tuple(values[vid] for vid in f.var_ids) for f in factors]
    )
    stacked_params = jax.tree_util.tree_map(_stack, *[f.params for f in factors])
    return stacked_values, stacked_params


def evaluate_errors(graph, values: VariableAssignments) -> Dict[FactorId, jnp.ndarray]:
    """Weighted residual of every factor, keyed by factor id."""
    result: Dict[FactorId, jnp.ndarray] = {}
    for (f_type, _, _), factors in _group_factors(graph, values).items():
        kernel = JittedResidual.from_residual(graph.residual_fn(f_type))
        errors = kernel.errors(*_stacked_group(factors, values))
        for f, e in zip(factors, errors):
            result[f.id] = e
    return result


def total_error(graph, values: VariableAssignments) -> float:
    """Σ_f ‖r_f‖² without materializing per-factor arrays."""
    total = 0.0
    for (f_type, _, _), factors in _group_factors(graph, values).items():
        kernel = JittedResidual.from_residual(graph.residual_fn(f_type))
        errors = kernel.errors(*_stacked_group(factors, values))
        total += float(jnp.sum(errors * errors))
    return total


def linearize(
    graph, values: VariableAssignments, index: Optional[TangentIndex] = None
) -> GaussianFactorGraph:
    """
    Linearize ``graph`` at ``values``.

    Returns a GaussianFactorGraph whose blocks hold, per factor, the Jacobian
    of the weighted residual with respect to the local chart of each adjacent
    variable and the weighted residual itself.
    """
    if index is None:
        index = values.tangent_index()
    blocks: List[JacobianBlock] = []
    for (f_type, _, _), factors in _group_factors(graph, values).items():
        kernel = JittedResidual.from_residual(graph.residual_fn(f_type))
        jacobians, errors = kernel.linearize(*_stacked_group(factors, values))
        blocks.append(
            JacobianBlock([f.var_ids for f in factors], jacobians, errors, index)
        )
    logger.debug(
        "linearized %d factors into %d blocks over %d tangent dims",
        len(graph.factors), len(blocks), index.dim,
    )
    return GaussianFactorGraph(index, blocks)
