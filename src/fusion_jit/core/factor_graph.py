# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Factor graph container for fusion-jit.

This module implements the central structure of the system: an append-only
collection of factors over manifold-valued variables, plus the registry of
residual functions that gives each factor type its meaning. The values
themselves live outside the graph, in a
:class:`fusion_jit.core.variables.VariableAssignments`, so one graph can be
evaluated at many candidate points (the LM loop does exactly that).

The FactorGraph stores:
    - Factors (constraints between variables)
    - Registered residual functions (by factor type)

Key Features
------------
• Batched residual evaluation
    Factors of the same type and shape are stacked and evaluated by one
    vmapped, jit-compiled kernel (see ``optimization.linearization``).

• Automatic Jacobians
    Residuals are written in JAX; Jacobians with respect to each variable's
    local chart are derived with forward-mode autodiff.

• Diagonal weighting
    Residuals honour per-factor ``sigma`` / ``weight`` parameters, so the
    total error is a sum of squared whitened residuals.

Primary Methods
---------------
add_factor(type, var_ids, params)
    Appends a factor and returns its id.

validate(values)
    Checks that every factor refers to stored variables of the right kind and
    to a registered residual type, and that "prior" / "between" factors
    connect variables of one kind with a measurement of the same kind.

error(values)
    Total error Σ_f ‖r_f(values)‖².

linearize(values)
    Returns the :class:`GaussianFactorGraph` of the problem at ``values``.
"""


from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Set

import jax.numpy as jnp

from .types import Factor, FactorId, VariableId
from .variables import VariableAssignments
from fusion_jit.slam.measurements import DEFAULT_RESIDUALS
from fusion_jit.optimization.gaussian_factor_graph import GaussianFactorGraph
from fusion_jit.optimization.linearization import evaluate_errors, linearize, total_error


# Type aliases for clarity
ResidualFn = Callable[[tuple, Dict[str, Any]], jnp.ndarray]

_BUILTIN_ARITY = {"prior": 1, "between": 2}


class FactorGraphError(ValueError):
    """Raised when a factor graph does not fit the values it is evaluated at."""


@dataclass
class FactorGraph:
    """
    Append-only factor graph.

    - factors: mapping from FactorId -> Factor
    - residual_fns: mapping factor.type -> callable that computes residuals

    ``"prior"`` and ``"between"`` are registered on construction.
    """
    factors: Dict[FactorId, Factor] = field(default_factory=dict)
    residual_fns: Dict[str, ResidualFn] = field(
        default_factory=lambda: dict(DEFAULT_RESIDUALS)
    )
    _next_id: int = field(default=0, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._next_id = max(self.factors, default=-1) + 1

    def __len__(self) -> int:
        return len(self.factors)

    def store(self, factor: Factor) -> FactorId:
        if factor.id in self.factors:
            raise FactorGraphError(f"Factor id {factor.id} is already in the graph")
        self.factors[factor.id] = factor
        self._next_id = max(self._next_id, factor.id + 1)
        return factor.id

    def add_factor(
        self,
        f_type: str,
        var_ids: Iterable[VariableId],
        params: Optional[Dict[str, Any]] = None,
    ) -> FactorId:
        fid = FactorId(self._next_id)
        return self.store(Factor(fid, f_type, tuple(var_ids), dict(params or {})))

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def residual_fn(self, factor_type: str) -> ResidualFn:
        fn = self.residual_fns.get(factor_type, None)
        if fn is None:
            raise FactorGraphError(f"No residual fn registered for factor type '{factor_type}'")
        return fn

    def factors_of_type(self, factor_type: str):
        return [f for f in self.factors.values() if f.type == factor_type]

    def variable_ids(self) -> Set[VariableId]:
        return {vid for f in self.factors.values() for vid in f.var_ids}

    def validate(self, values: VariableAssignments) -> None:
        """Raise FactorGraphError if any factor cannot be evaluated at ``values``."""
        for factor in self.factors.values():
            self.residual_fn(factor.type)
            if not factor.var_ids:
                raise FactorGraphError(f"Factor {factor.id} has no adjacent variables")
            for vid in factor.var_ids:
                if not isinstance(vid, VariableId):
                    raise FactorGraphError(
                        f"Factor {factor.id} refers to {vid!r}, which is not a VariableId"
                    )
                if vid not in values:
                    raise FactorGraphError(f"Factor {factor.id} refers to unknown variable {vid}")
                stored_kind = getattr(type(values[vid]), "KIND", None)
                if stored_kind != vid.kind:
                    raise FactorGraphError(
                        f"Factor {factor.id}: {vid} holds a {stored_kind} value"
                    )
            if self.residual_fns[factor.type] is DEFAULT_RESIDUALS.get(factor.type):
                self._check_measurement(factor, values)

    def _check_measurement(self, factor: Factor, values: VariableAssignments) -> None:
        """Shape checks for the built-in "prior" / "between" residuals."""
        arity = _BUILTIN_ARITY[factor.type]
        if len(factor.var_ids) != arity:
            raise FactorGraphError(
                f"Factor {factor.id} ({factor.type}) needs {arity} variable(s), "
                f"got {len(factor.var_ids)}"
            )
        kinds = {vid.kind for vid in factor.var_ids}
        dims = {values[vid].dim for vid in factor.var_ids}
        if len(kinds) != 1 or len(dims) != 1:
            raise FactorGraphError(
                f"Factor {factor.id} ({factor.type}) mixes variables of different "
                f"kinds or tangent dimensions: {list(factor.var_ids)}"
            )
        (kind,), (dim,) = kinds, dims
        if "measurement" not in factor.params:
            raise FactorGraphError(f"Factor {factor.id} ({factor.type}) has no 'measurement'")
        measurement = factor.params["measurement"]
        measured_kind = getattr(type(measurement), "KIND", None)
        if measured_kind != kind or measurement.dim != dim:
            raise FactorGraphError(
                f"Factor {factor.id} ({factor.type}): measurement of kind {measured_kind} "
                f"does not match {kind} variables of dimension {dim}"
            )

    # --- Evaluation ---

    def error_vectors(self, values: VariableAssignments) -> Dict[FactorId, jnp.ndarray]:
        return evaluate_errors(self, values)

    def error(self, values: VariableAssignments) -> float:
        return total_error(self, values)

    def linearize(self, values: VariableAssignments, index=None) -> GaussianFactorGraph:
        return linearize(self, values, index)
