# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
Manifold value types for fusion-jit.

This module centralizes the *geometric* objects that live in a
:class:`fusion_jit.core.variables.VariableAssignments`:

    • ``Rot2``   planar rotation, stored as (cos θ, sin θ)
    • ``Pose2``  planar rigid transform (Rot2, t)
    • ``Rot3``   spatial rotation, stored as a 3×3 matrix
    • ``Pose3``  spatial rigid transform (Rot3, t)
    • ``Vector`` Euclidean ℝⁿ with the identity chart

The optimizer works in a local tangent space while the *state* lives on the
manifold. Every type exposes the same small interface:

    - ``compose`` / ``inverse`` / ``between``   group operations
    - ``retract(d)``           base ∘ Exp(d)
    - ``local_coordinate(q)``  Log(base⁻¹ ∘ q)
    - ``identity()``           group identity
    - ``DIM`` / ``dim``        tangent dimension

so that ``local_coordinate(p, retract(p, v)) == v`` for tangent vectors
inside the injectivity radius, and ``retract(p, 0) == p``.

Tangent conventions
-------------------
    Rot2   [ω]
    Pose2  [vx, vy, ω]
    Rot3   [ωx, ωy, ωz]
    Pose3  [ωx, ωy, ωz, vx, vy, vz]   (rotation first)

All types are registered JAX pytrees, so they can be passed through
``jax.jit``, ``jax.vmap`` and ``jax.jacfwd`` directly, and stacked with
``jax.tree_util.tree_map``.

Manifold metadata
-----------------
``TYPE_TO_MANIFOLD`` maps the kind string carried by a
:class:`fusion_jit.core.types.VariableId` to its value class, and
``get_manifold_for_kind`` resolves it.
"""

from __future__ import annotations

from typing import Dict, Type

import jax.numpy as jnp
from jax.tree_util import register_pytree_node_class

from fusion_jit.core.math3d import (
    closest_rotation,
    quaternion_to_matrix,
    se2_exp,
    se2_log,
    se3_exp,
    se3_log,
    so3_exp,
    so3_log,
)


def _as_float(x) -> jnp.ndarray:
    return jnp.asarray(x, dtype=float)


@register_pytree_node_class
class Rot2:
    """Planar rotation stored as its (cos θ, sin θ) pair."""

    KIND = "rot2"
    DIM = 1

    def __init__(self, c, s):
        self.c = _as_float(c)
        self.s = _as_float(s)

    @classmethod
    def from_angle(cls, theta) -> "Rot2":
        theta = _as_float(theta)
        return cls(jnp.cos(theta), jnp.sin(theta))

    @classmethod
    def identity(cls) -> "Rot2":
        return cls(1.0, 0.0)

    @property
    def dim(self) -> int:
        return self.DIM

    @property
    def theta(self) -> jnp.ndarray:
        return jnp.arctan2(self.s, self.c)

    def matrix(self) -> jnp.ndarray:
        return jnp.array([[self.c, -self.s], [self.s, self.c]])

    def compose(self, other: "Rot2") -> "Rot2":
        return Rot2(
            self.c * other.c - self.s * other.s,
            self.s * other.c + self.c * other.s,
        )

    def inverse(self) -> "Rot2":
        return Rot2(self.c, -self.s)

    def between(self, other: "Rot2") -> "Rot2":
        return self.inverse().compose(other)

    def rotate(self, p: jnp.ndarray) -> jnp.ndarray:
        return jnp.stack([self.c * p[0] - self.s * p[1], self.s * p[0] + self.c * p[1]])

    def unrotate(self, p: jnp.ndarray) -> jnp.ndarray:
        return jnp.stack([self.c * p[0] + self.s * p[1], -self.s * p[0] + self.c * p[1]])

    def retract(self, d: jnp.ndarray) -> "Rot2":
        return self.compose(Rot2.from_angle(d[0]))

    def local_coordinate(self, other: "Rot2") -> jnp.ndarray:
        return jnp.reshape(self.between(other).theta, (1,))

    def tree_flatten(self):
        return (self.c, self.s), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        obj = object.__new__(cls)
        obj.c, obj.s = children
        return obj

    def __repr__(self) -> str:
        return f"Rot2(theta={self.theta})"


@register_pytree_node_class
class Pose2:
    """Planar rigid transform; tangent ordering is [vx, vy, ω]."""

    KIND = "pose2"
    DIM = 3

    def __init__(self, rot: Rot2, t):
        self.rot = rot
        self.t = _as_float(t)

    @classmethod
    def from_xytheta(cls, x, y, theta) -> "Pose2":
        return cls(Rot2.from_angle(theta), jnp.stack([_as_float(x), _as_float(y)]))

    @classmethod
    def from_tangent(cls, xi) -> "Pose2":
        c, s, t = se2_exp(_as_float(xi))
        return cls(Rot2(c, s), t)

    @classmethod
    def identity(cls) -> "Pose2":
        return cls(Rot2.identity(), jnp.zeros(2))

    @property
    def dim(self) -> int:
        return self.DIM

    @property
    def x(self) -> jnp.ndarray:
        return self.t[0]

    @property
    def y(self) -> jnp.ndarray:
        return self.t[1]

    @property
    def theta(self) -> jnp.ndarray:
        return self.rot.theta

    def compose(self, other: "Pose2") -> "Pose2":
        return Pose2(self.rot.compose(other.rot), self.t + self.rot.rotate(other.t))

    def inverse(self) -> "Pose2":
        inv = self.rot.inverse()
        return Pose2(inv, -inv.rotate(self.t))

    def between(self, other: "Pose2") -> "Pose2":
        return self.inverse().compose(other)

    def adjoint(self) -> jnp.ndarray:
        """Adjoint matrix acting on [vx, vy, ω] tangent vectors."""
        c, s = self.rot.c, self.rot.s
        return jnp.array(
            [
                [c, -s, self.t[1]],
                [s, c, -self.t[0]],
                [0.0, 0.0, 1.0],
            ]
        )

    def retract(self, d: jnp.ndarray) -> "Pose2":
        return self.compose(Pose2.from_tangent(d))

    def local_coordinate(self, other: "Pose2") -> jnp.ndarray:
        b = self.between(other)
        return se2_log(b.rot.c, b.rot.s, b.t)

    def tree_flatten(self):
        return (self.rot, self.t), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        obj = object.__new__(cls)
        obj.rot, obj.t = children
        return obj

    def __repr__(self) -> str:
        return f"Pose2(t={self.t}, theta={self.theta})"


@register_pytree_node_class
class Rot3:
    """Spatial rotation stored as a 3×3 orthonormal matrix."""

    KIND = "rot3"
    DIM = 3

    def __init__(self, R):
        self.R = _as_float(R)

    @classmethod
    def from_tangent(cls, w) -> "Rot3":
        return cls(so3_exp(_as_float(w)))

    @classmethod
    def from_quaternion(cls, w, x, y, z) -> "Rot3":
        """Rotation of the unit quaternion w + xi + yj + zk (scalar first)."""
        return cls(quaternion_to_matrix(w, x, y, z))

    @classmethod
    def closest_to(cls, M) -> "Rot3":
        """Closest rotation to ``M`` in the Frobenius norm."""
        return cls(closest_rotation(_as_float(M)))

    @classmethod
    def identity(cls) -> "Rot3":
        return cls(jnp.eye(3))

    @property
    def dim(self) -> int:
        return self.DIM

    def compose(self, other: "Rot3") -> "Rot3":
        return Rot3(self.R @ other.R)

    def inverse(self) -> "Rot3":
        return Rot3(self.R.T)

    def between(self, other: "Rot3") -> "Rot3":
        return Rot3(self.R.T @ other.R)

    def rotate(self, p: jnp.ndarray) -> jnp.ndarray:
        return self.R @ p

    def unrotate(self, p: jnp.ndarray) -> jnp.ndarray:
        return self.R.T @ p

    def retract(self, d: jnp.ndarray) -> "Rot3":
        return self.compose(Rot3.from_tangent(d))

    def local_coordinate(self, other: "Rot3") -> jnp.ndarray:
        return so3_log(self.between(other).R)

    def tree_flatten(self):
        return (self.R,), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        obj = object.__new__(cls)
        (obj.R,) = children
        return obj

    def __repr__(self) -> str:
        return f"Rot3({self.R})"


@register_pytree_node_class
class Pose3:
    """Spatial rigid transform; tangent ordering is [ω, v]."""

    KIND = "pose3"
    DIM = 6

    def __init__(self, rot: Rot3, t):
        self.rot = rot
        self.t = _as_float(t)

    @classmethod
    def from_tangent(cls, xi) -> "Pose3":
        R, t = se3_exp(_as_float(xi))
        return cls(Rot3(R), t)

    @classmethod
    def identity(cls) -> "Pose3":
        return cls(Rot3.identity(), jnp.zeros(3))

    @property
    def dim(self) -> int:
        return self.DIM

    def compose(self, other: "Pose3") -> "Pose3":
        return Pose3(self.rot.compose(other.rot), self.t + self.rot.rotate(other.t))

    def inverse(self) -> "Pose3":
        inv = self.rot.inverse()
        return Pose3(inv, -inv.rotate(self.t))

    def between(self, other: "Pose3") -> "Pose3":
        return Pose3(self.rot.between(other.rot), self.rot.unrotate(other.t - self.t))

    def retract(self, d: jnp.ndarray) -> "Pose3":
        return self.compose(Pose3.from_tangent(d))

    def local_coordinate(self, other: "Pose3") -> jnp.ndarray:
        b = self.between(other)
        return se3_log(b.rot.R, b.t)

    def tree_flatten(self):
        return (self.rot, self.t), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        obj = object.__new__(cls)
        obj.rot, obj.t = children
        return obj

    def __repr__(self) -> str:
        return f"Pose3(R={self.rot.R}, t={self.t})"


@register_pytree_node_class
class Vector:
    """Euclidean vector; retract is addition and local_coordinate subtraction."""

    KIND = "vector"
    DIM = None

    def __init__(self, v):
        self.v = jnp.atleast_1d(_as_float(v))

    @classmethod
    def identity(cls, dim: int) -> "Vector":
        return cls(jnp.zeros(dim))

    @property
    def dim(self) -> int:
        return int(self.v.shape[-1])

    def compose(self, other: "Vector") -> "Vector":
        return Vector(self.v + other.v)

    def inverse(self) -> "Vector":
        return Vector(-self.v)

    def between(self, other: "Vector") -> "Vector":
        return Vector(other.v - self.v)

    def retract(self, d: jnp.ndarray) -> "Vector":
        return Vector(self.v + d)

    def local_coordinate(self, other: "Vector") -> jnp.ndarray:
        return other.v - self.v

    def tree_flatten(self):
        return (self.v,), None

    @classmethod
    def tree_unflatten(cls, aux, children):
        obj = object.__new__(cls)
        (obj.v,) = children
        return obj

    def __repr__(self) -> str:
        return f"Vector({self.v})"


def compose(a, b):
    """a ∘ b"""
    return a.compose(b)


def inverse(a):
    return a.inverse()


def between(a, b):
    """a⁻¹ ∘ b"""
    return a.between(b)


TYPE_TO_MANIFOLD: Dict[str, Type] = {
    Rot2.KIND: Rot2,
    Pose2.KIND: Pose2,
    Rot3.KIND: Rot3,
    Pose3.KIND: Pose3,
    Vector.KIND: Vector,
}


def get_manifold_for_kind(kind: str) -> Type:
    try:
        return TYPE_TO_MANIFOLD[kind]
    except KeyError:
        raise TypeError(f"Unknown manifold kind '{kind}'") from None


def kind_of(value) -> str:
    """Kind string of a manifold value; raises TypeError for foreign objects."""
    kind = getattr(type(value), "KIND", None)
    if kind not in TYPE_TO_MANIFOLD or not isinstance(value, TYPE_TO_MANIFOLD[kind]):
        raise TypeError(
            f"{type(value).__name__} is not a registered manifold type "
            f"(expected one of {sorted(TYPE_TO_MANIFOLD)})"
        )
    return kind
