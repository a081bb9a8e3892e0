from __future__ import annotations

import jax.numpy as jnp
import pytest

from fusion_jit.core.types import VariableId
from fusion_jit.core.variables import TangentIndex, VariableAssignments
from fusion_jit.slam.manifold import Pose2, Pose3, Rot2, Vector


def test_store_returns_typed_stable_ids():
    values = VariableAssignments()
    p0 = values.store(Pose2.identity())
    v0 = values.store(Vector(jnp.zeros(2)))
    p1 = values.store(Pose2.from_xytheta(1.0, 0.0, 0.0))

    assert p0 == VariableId("pose2", 0)
    assert p1 == VariableId("pose2", 1)
    assert v0 == VariableId("vector", 0)
    assert len(values) == 3
    assert list(values) == [p0, p1, v0]
    assert values.ids("pose2") == [p0, p1]


def test_store_rejects_foreign_values():
    values = VariableAssignments()
    with pytest.raises(TypeError):
        values.store(jnp.zeros(3))


def test_unknown_id_raises_key_error():
    values = VariableAssignments()
    values.store(Rot2.identity())
    with pytest.raises(KeyError):
        values[VariableId("rot2", 5)]
    with pytest.raises(KeyError):
        values[VariableId("pose3", 0)]
    assert VariableId("rot2", 5) not in values


def test_write_with_wrong_kind_raises_type_error():
    values = VariableAssignments()
    pid = values.store(Pose2.identity())
    with pytest.raises(TypeError):
        values[pid] = Pose3.identity()
    values[pid] = Pose2.from_xytheta(3.0, 0.0, 0.0)
    assert float(values[pid].x) == pytest.approx(3.0)


def test_tangent_index_layout_and_pack_unpack():
    values = VariableAssignments()
    a = values.store(Pose3.identity())
    b = values.store(Rot2.identity())
    c = values.store(Vector(jnp.zeros(4)))

    index = values.tangent_index()
    assert index.dim == 6 + 1 + 4
    # ids are ordered by (kind, index)
    assert index.ids == (a, b, c)
    assert index.slice(b) == slice(6, 7)

    x = jnp.arange(11.0)
    blocks = index.unpack(x)
    assert jnp.allclose(blocks[c], jnp.array([7.0, 8.0, 9.0, 10.0]))
    assert jnp.allclose(index.pack(blocks), x)

    with pytest.raises(ValueError):
        index.unpack(jnp.zeros(3))


def test_tangent_index_requires_matching_lengths():
    with pytest.raises(ValueError):
        TangentIndex([VariableId("rot2", 0)], [1, 2])


def test_move_and_retracted():
    values = VariableAssignments()
    pid = values.store(Pose2.identity())
    vid = values.store(Vector(jnp.array([1.0, 1.0])))

    step = {pid: jnp.array([1.0, 0.0, 0.0]), vid: jnp.array([0.5, -1.0])}
    moved = values.retracted(step)

    # the original is untouched
    assert jnp.allclose(values[pid].t, jnp.zeros(2))
    assert jnp.allclose(values[vid].v, jnp.array([1.0, 1.0]))

    assert jnp.allclose(moved[pid].t, jnp.array([1.0, 0.0]))
    assert jnp.allclose(moved[vid].v, jnp.array([1.5, 0.0]))

    values.move(step)
    assert jnp.allclose(values[vid].v, jnp.array([1.5, 0.0]))


def test_tangent_zeros_matches_dims():
    values = VariableAssignments()
    values.store(Pose3.identity())
    values.store(Rot2.identity())
    zeros = values.tangent_zeros()
    assert sorted(z.shape[0] for z in zeros.values()) == [1, 6]
