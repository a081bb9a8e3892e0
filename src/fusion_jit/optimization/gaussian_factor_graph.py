# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Gaussian (linearized) factor graphs for fusion-jit.

Linearizing a :class:`fusion_jit.core.factor_graph.FactorGraph` at a point
produces a sparse linear least-squares problem

    min_dx  Σ_f ‖ Σ_k J_fk dx_k + e_f ‖²  (+ ‖λ dx‖² when damped)

over one flat tangent vector ``dx`` laid out by a
:class:`fusion_jit.core.variables.TangentIndex`.

Storage
-------
Factors with identical shapes (same number of adjacent variables, same
tangent dimensions, same error dimension) are stacked into one
:class:`JacobianBlock`:

    jacobians[k] : (n, m, d_k)   one dense block per adjacent variable
    error        : (n, m)        residuals at the linearization point
    columns[k]   : (n, d_k)      positions of those variables in ``dx``

so the forward product is a batched ``einsum`` plus a gather, and the
adjoint a batched ``einsum`` plus a scatter-add (``.at[...].add``) into the
per-variable tangent accumulators. ``AᵀA`` is never formed.

Error-space vectors are flat: the raveled block rows in block order, followed
by one damping row per tangent coordinate. The damping rows are the scalar
Jacobian factors ``λ·I`` added by :meth:`GaussianFactorGraph.damped`; with
``λ = 0`` they contribute nothing.

Graphs are immutable; the LM loop rebuilds one per outer iteration and derives
damped copies from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np
import jax
import jax.numpy as jnp

from fusion_jit.core.types import VariableId
from fusion_jit.core.variables import TangentIndex


@dataclass(frozen=True)
class JacobianFactor:
    """A single linear factor: Σ_k J_k dx_k + e."""
    var_ids: Tuple[VariableId, ...]
    jacobians: Tuple[jnp.ndarray, ...]
    error: jnp.ndarray

    @property
    def error_dim(self) -> int:
        return int(jnp.shape(self.error)[0])


class JacobianBlock:
    """Stack of ``n`` linear factors sharing the same shapes."""

    def __init__(
        self,
        var_ids: Sequence[Tuple[VariableId, ...]],
        jacobians: Sequence[jnp.ndarray],
        error: jnp.ndarray,
        index: TangentIndex,
    ):
        self.var_ids = tuple(tuple(ids) for ids in var_ids)
        self.jacobians = tuple(jnp.asarray(J) for J in jacobians)
        self.error = jnp.asarray(error)

        n, m = self.error.shape
        if len(self.jacobians) != (len(self.var_ids[0]) if self.var_ids else 0):
            raise ValueError("One Jacobian block is required per adjacent variable")

        columns = []
        for k, J in enumerate(self.jacobians):
            if J.ndim != 3 or J.shape[:2] != (n, m):
                raise ValueError(
                    f"Jacobian block {k} has shape {J.shape}, expected ({n}, {m}, d)"
                )
            d = J.shape[2]
            cols = np.empty((n, d), dtype=np.int32)
            for row, ids in enumerate(self.var_ids):
                vid = ids[k]
                if vid not in index:
                    raise ValueError(f"{vid} is not part of the tangent layout")
                if index.block_dim(vid) != d:
                    raise ValueError(
                        f"Jacobian block for {vid} has {d} columns, "
                        f"but its tangent dimension is {index.block_dim(vid)}"
                    )
                start = index.start(vid)
                cols[row] = np.arange(start, start + d)
            columns.append(jnp.asarray(cols))
        self.columns = tuple(columns)

    @property
    def size(self) -> int:
        return int(self.error.size)

    def __len__(self) -> int:
        return int(self.error.shape[0])

    def arrays(self):
        return self.jacobians, self.columns, self.error


@jax.jit
def _forward(blocks, damping, x):
    rows = []
    for jacobians, columns, _ in blocks:
        y = 0.0
        for J, cols in zip(jacobians, columns):
            y = y + jnp.einsum("nmd,nd->nm", J, x[cols])
        rows.append(jnp.ravel(y))
    rows.append(damping * x)
    return jnp.concatenate(rows)


@jax.jit
def _adjoint(blocks, damping, y):
    dim = y.shape[0] - sum(err.size for _, _, err in blocks)
    x = damping * y[-dim:] if dim else jnp.zeros(0, dtype=y.dtype)
    offset = 0
    for jacobians, columns, err in blocks:
        rows = jnp.reshape(y[offset:offset + err.size], err.shape)
        offset += err.size
        for J, cols in zip(jacobians, columns):
            x = x.at[cols].add(jnp.einsum("nmd,nm->nd", J, rows))
    return x


class GaussianFactorGraph:
    """
    Linear least-squares problem over the tangent layout ``index``.

    - ``linear_forward(x)``  A x         (flat error-space vector)
    - ``linear_adjoint(y)``  Aᵀ y        (flat tangent vector)
    - ``error_vectors(x)``   A x + e
    - ``error(x)``           ‖A x + e‖²
    """

    def __init__(
        self,
        index: TangentIndex,
        blocks: Iterable[JacobianBlock] = (),
        damping: float = 0.0,
    ):
        self.index = index
        self.blocks: Tuple[JacobianBlock, ...] = tuple(blocks)
        self.damping = float(damping)
        self._arrays = tuple(b.arrays() for b in self.blocks)
        parts = [jnp.ravel(b.error) for b in self.blocks]
        parts.append(jnp.zeros(index.dim))
        self._offset = jnp.concatenate(parts)

    @classmethod
    def from_factors(
        cls, factors: Iterable[JacobianFactor], index: TangentIndex
    ) -> "GaussianFactorGraph":
        """Group individual linear factors by shape and stack them."""
        groups: Dict[tuple, List[JacobianFactor]] = {}
        for f in factors:
            key = (tuple(jnp.shape(J) for J in f.jacobians), f.error_dim)
            groups.setdefault(key, []).append(f)
        blocks = []
        for fs in groups.values():
            jacobians = [
                jnp.stack([jnp.asarray(f.jacobians[k]) for f in fs])
                for k in range(len(fs[0].jacobians))
            ]
            error = jnp.stack([jnp.asarray(f.error) for f in fs])
            blocks.append(JacobianBlock([f.var_ids for f in fs], jacobians, error, index))
        return cls(index, blocks)

    @property
    def num_factors(self) -> int:
        return sum(len(b) for b in self.blocks)

    def zeros(self) -> jnp.ndarray:
        return self.index.zeros()

    def damped(self, lam: float) -> "GaussianFactorGraph":
        """Copy with a scalar Jacobian ``lam * I`` on every variable."""
        return GaussianFactorGraph(self.index, self.blocks, damping=lam)

    def linear_forward(self, x: jnp.ndarray) -> jnp.ndarray:
        return _forward(self._arrays, self.damping, jnp.asarray(x))

    def linear_adjoint(self, y: jnp.ndarray) -> jnp.ndarray:
        return _adjoint(self._arrays, self.damping, jnp.asarray(y))

    def error_vectors(self, x: jnp.ndarray) -> jnp.ndarray:
        return self.linear_forward(x) + self._offset

    def error(self, x: jnp.ndarray) -> float:
        r = self.error_vectors(x)
        return float(jnp.dot(r, r))
