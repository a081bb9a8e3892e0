# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Core typed data structures for fusion-jit.

This module defines the lightweight record classes used throughout the
factor graph engine. They only carry structural information; every numerical
operation is performed by JAX-compiled functions in the optimization layer.

Classes
-------
VariableId
    Typed handle of a value stored in a
    :class:`fusion_jit.core.variables.VariableAssignments`:
    - kind: manifold type discriminant (``"pose2"``, ``"pose3"``, ...)
    - index: slot within that kind's arena

Factor
    Represents a constraint between one or more variables. A factor contains:
    - id: Unique identifier
    - type: String key selecting a residual function
    - var_ids: Ordered tuple of variable ids used by the residual
    - params: Dictionary of parameters passed into the residual function
              (e.g., measurements, ``sigma`` or ``weight``)

Notes
-----
Handles are ordered by ``(kind, index)`` so that every layout derived from a
set of IDs (tangent vectors, stacked blocks) is deterministic.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import NewType, Dict, Any

FactorId = NewType("FactorId", int)


@dataclass(frozen=True, order=True)
class VariableId:
    """Handle of one value in a VariableAssignments arena."""
    kind: str
    index: int

    def __repr__(self) -> str:
        return f"VariableId({self.kind!r}, {self.index})"


@dataclass
class Factor:
    """Constraint connecting variables through a registered residual."""
    id: FactorId
    type: str          # e.g. "prior", "between"
    var_ids: tuple[VariableId, ...]
    params: Dict[str, Any] = field(default_factory=dict)  # Measurement, noise, etc.
