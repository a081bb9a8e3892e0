# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Variable storage for fusion-jit.

:class:`VariableAssignments` is a heterogeneous arena: one list of values per
manifold kind, addressed by :class:`fusion_jit.core.types.VariableId`
handles. Values are immutable pytrees, so writes replace slots and copies are
shallow.

:class:`TangentIndex` is the flat layout used by the linear solvers. It plays
the role that ``FactorGraph.pack_state`` / ``unpack_state`` play for a flat
state vector, but over *tangent* blocks: each variable owns a contiguous
slice of length ``value.dim`` and the slices are ordered by ``VariableId``.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import numpy as np
import jax.numpy as jnp

from fusion_jit.core.types import VariableId
from fusion_jit.slam.manifold import kind_of


class TangentIndex:
    """Ordered layout of tangent blocks inside one flat vector."""

    def __init__(self, ids: Iterable[VariableId], dims: Iterable[int]):
        self.ids: Tuple[VariableId, ...] = tuple(ids)
        self.dims: Tuple[int, ...] = tuple(int(d) for d in dims)
        if len(self.ids) != len(self.dims):
            raise ValueError("TangentIndex needs one dimension per variable id")
        starts = np.concatenate([[0], np.cumsum(self.dims, dtype=np.int64)])
        self.dim = int(starts[-1])
        self._start: Dict[VariableId, int] = {
            vid: int(s) for vid, s in zip(self.ids, starts[:-1])
        }
        self._dim: Dict[VariableId, int] = dict(zip(self.ids, self.dims))

    def __contains__(self, vid: VariableId) -> bool:
        return vid in self._start

    def __len__(self) -> int:
        return len(self.ids)

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, TangentIndex)
            and self.ids == other.ids
            and self.dims == other.dims
        )

    def __hash__(self) -> int:
        return hash((self.ids, self.dims))

    def start(self, vid: VariableId) -> int:
        return self._start[vid]

    def block_dim(self, vid: VariableId) -> int:
        return self._dim[vid]

    def slice(self, vid: VariableId) -> slice:
        s = self._start[vid]
        return slice(s, s + self._dim[vid])

    def zeros(self) -> jnp.ndarray:
        return jnp.zeros(self.dim)

    def pack(self, blocks: Mapping[VariableId, jnp.ndarray]) -> jnp.ndarray:
        """Concatenate per-variable tangent blocks; missing blocks are zero."""
        if not self.ids:
            return jnp.zeros(0)
        parts = []
        for vid, d in zip(self.ids, self.dims):
            block = blocks.get(vid)
            parts.append(jnp.zeros(d) if block is None else jnp.reshape(block, (d,)))
        return jnp.concatenate(parts)

    def unpack(self, x: jnp.ndarray) -> Dict[VariableId, jnp.ndarray]:
        x = jnp.asarray(x)
        if x.shape != (self.dim,):
            raise ValueError(f"Expected a tangent vector of shape ({self.dim},), got {x.shape}")
        return {vid: x[self.slice(vid)] for vid in self.ids}


class VariableAssignments:
    """
    Arena store of manifold values, one slot list per kind.

    IDs returned by :meth:`store` are stable: slots are never reused or
    removed, so a handle stays valid for the lifetime of the store.
    """

    def __init__(self):
        self._storage: Dict[str, List] = {}

    def store(self, value) -> VariableId:
        kind = kind_of(value)
        arena = self._storage.setdefault(kind, [])
        arena.append(value)
        return VariableId(kind, len(arena) - 1)

    def _check_id(self, vid) -> List:
        if not isinstance(vid, VariableId):
            raise KeyError(vid)
        arena = self._storage.get(vid.kind)
        if arena is None or not 0 <= vid.index < len(arena):
            raise KeyError(vid)
        return arena

    def __getitem__(self, vid: VariableId):
        return self._check_id(vid)[vid.index]

    def __setitem__(self, vid: VariableId, value) -> None:
        arena = self._check_id(vid)
        kind = kind_of(value)
        if kind != vid.kind:
            raise TypeError(f"Cannot store a {kind} value under {vid}")
        if value.dim != arena[vid.index].dim:
            raise TypeError(
                f"Cannot store a value of dimension {value.dim} under {vid} "
                f"(dimension {arena[vid.index].dim})"
            )
        arena[vid.index] = value

    def __contains__(self, vid) -> bool:
        try:
            self._check_id(vid)
        except KeyError:
            return False
        return True

    def __len__(self) -> int:
        return sum(len(a) for a in self._storage.values())

    def __iter__(self) -> Iterator[VariableId]:
        return iter(self.ids())

    def ids(self, kind: Optional[str] = None) -> List[VariableId]:
        kinds = sorted(self._storage) if kind is None else [kind]
        return [
            VariableId(k, i)
            for k in kinds
            for i in range(len(self._storage.get(k, ())))
        ]

    def items(self):
        for vid in self.ids():
            yield vid, self[vid]

    def copy(self) -> "VariableAssignments":
        other = VariableAssignments()
        other._storage = {k: list(v) for k, v in self._storage.items()}
        return other

    def tangent_index(self, ids: Optional[Iterable[VariableId]] = None) -> TangentIndex:
        ids = self.ids() if ids is None else sorted(ids)
        return TangentIndex(ids, [self[vid].dim for vid in ids])

    def tangent_zeros(self) -> Dict[VariableId, jnp.ndarray]:
        return {vid: jnp.zeros(value.dim) for vid, value in self.items()}

    def move(self, along: Mapping[VariableId, jnp.ndarray]) -> None:
        """Retract every listed variable in place: v <- v.retract(d)."""
        for vid, d in along.items():
            arena = self._check_id(vid)
            arena[vid.index] = arena[vid.index].retract(jnp.asarray(d))

    def retracted(self, along: Mapping[VariableId, jnp.ndarray]) -> "VariableAssignments":
        """Copy of ``self`` moved along ``along``; ``self`` is left untouched."""
        other = self.copy()
        other.move(along)
        return other

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={len(v)}" for k, v in sorted(self._storage.items()))
        return f"VariableAssignments({counts})"
