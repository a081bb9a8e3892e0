# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Residual models (measurement factors) for fusion-jit.

This module defines the *measurement-level* building blocks used by the
factor graph:

    • Each function here implements a residual

          r(values; params) ∈ ℝᵐ

      where ``values`` is the tuple of manifold values adjacent to the factor
      (in ``Factor.var_ids`` order) and ``params`` is the factor's parameter
      dict. Residuals only read the values they are given.

    • Factor types in the graph ("prior", "between", ...) are mapped to these
      residual functions via ``FactorGraph.register_residual``. The two
      pose-graph residuals are registered on every new graph.

Residual families
-----------------
1. Pose-graph factors
    • ``prior_residual``:
          r = localCoordinate(prior, x)
    • ``between_residual``:
          r = localCoordinate(difference, x_a⁻¹ ∘ x_b)

   Both work for every manifold type in :mod:`fusion_jit.slam.manifold`
   (Rot2, Pose2, Rot3, Pose3, Vector); the measured value lives in
   ``params["measurement"]``.

2. Chordal relaxation factors (linear, on ``Vector(9)`` variables)
    • ``frobenius_between_residual``:
          r = vec(R_b) − vec(R_a R_ab)
    • ``frobenius_anchor_residual``:
          r = vec(R) − vec(R_anchor)

   These are used by :mod:`fusion_jit.slam.initialization`.

Weighting and noise models
--------------------------
Every residual goes through ``_apply_weight``:

    - ``params["sigma"]``  (scalar or per-axis): r' = r / σ
    - ``params["weight"]`` scalar:              r' = sqrt(w) * r
    - ``params["weight"]`` vector:              r' = w * r   (sqrt-info)

Only diagonal models are supported; the squared weighted residual norm is
the factor's contribution to the total error.

Notes
-----
When adding a new factor type:

    1. Implement a residual here:
           def my_residual(values: tuple, params: Dict[str, Any]) -> jnp.ndarray

    2. Register it with the factor graph:
           fg.register_residual("my_factor", my_residual)

All factors sharing a type and parameter shapes are evaluated together in
one vmapped call, so residuals must be written for a single factor and
must not branch in Python on array values.
"""

from __future__ import annotations
from typing import Any, Dict, Tuple

import jax.numpy as jnp


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params["sigma"] is present, the residual is first divided by it.
    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    sigma = params.get("sigma", None)
    if sigma is not None:
        residual = residual / jnp.asarray(sigma)

    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)

    if w.ndim == 0:
        # scalar weight; use sqrt to interpret as information
        return jnp.sqrt(w) * residual
    else:
        # assume w is already per-component sqrt-info vector
        return w * residual


def prior_residual(values: Tuple[Any, ...], params: Dict[str, Any]) -> jnp.ndarray:
    """
    Prior on a single manifold variable:
        residual = localCoordinate(measurement, x)
    """
    (x,) = values
    r = params["measurement"].local_coordinate(x)
    return _apply_weight(r, params)


def between_residual(values: Tuple[Any, ...], params: Dict[str, Any]) -> jnp.ndarray:
    """
    Relative constraint between two variables of the same manifold type:
        residual = localCoordinate(measurement, x_a⁻¹ ∘ x_b)

    Used for odometry edges and loop closures alike.
    """
    start, end = values
    r = params["measurement"].local_coordinate(start.between(end))
    return _apply_weight(r, params)


def frobenius_between_residual(values: Tuple[Any, ...], params: Dict[str, Any]) -> jnp.ndarray:
    """Linear relaxation of R_b = R_a R_ab over row-major flattened matrices."""
    start, end = values
    R_a = jnp.reshape(start.v, (3, 3))
    R_ab = jnp.asarray(params["measurement"])
    r = end.v - jnp.reshape(R_a @ R_ab, (9,))
    return _apply_weight(r, params)


def frobenius_anchor_residual(values: Tuple[Any, ...], params: Dict[str, Any]) -> jnp.ndarray:
    (x,) = values
    r = x.v - jnp.reshape(jnp.asarray(params["measurement"]), (9,))
    return _apply_weight(r, params)


DEFAULT_RESIDUALS = {
    "prior": prior_residual,
    "between": between_residual,
}
