# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
SO(2)/SE(2) and SO(3)/SE(3) Lie-group primitives for fusion-jit.

This module implements the exponential and logarithm maps that back the
manifold value types in :mod:`fusion_jit.slam.manifold`:

    • SO(3) exponential & logarithm maps (rotation vectors ↔ matrices)
    • SE(3) exponential & logarithm maps with the closed-form V matrix
    • SE(2) exponential & logarithm maps on (cos θ, sin θ, t) triples
    • Quaternion conversion and projection of arbitrary 3×3 matrices onto SO(3)

All functions are written in JAX and support:
    - JIT compilation
    - Forward-mode differentiation (used for linearization)
    - Batched operation through ``jax.vmap``
    - Numerically stable behavior near zero rotation *and* near θ = π

Key Functions
-------------
so3_exp(w)
    Maps a 3-vector (axis-angle) to a 3×3 rotation matrix.

so3_log(R)
    Maps a rotation matrix back to its axis-angle representation, with a
    dedicated branch for rotations close to π where the skew-symmetric part
    of R vanishes.

se3_exp(xi), se3_log(R, t)
    Twist ξ = (ω, v) ↔ rigid transform (R, t). Rotation comes first.

se2_exp(xi), se2_log(c, s, t)
    Twist ξ = (vx, vy, ω) ↔ planar transform.

Utilities
---------
hat(ω)
    Converts a 3-vector to its skew-symmetric matrix.

vee(Ω)
    Converts a 3×3 skew matrix back into a 3-vector.

Notes
-----
Every branch is evaluated with safe denominators and selected with
``jnp.where`` so that the unused branch never injects NaNs into values or
tangents, whether the function is traced as-is or under ``vmap``.
"""

from __future__ import annotations

import jax.numpy as jnp

# Squared-angle threshold below which Taylor expansions replace closed forms.
_SMALL_ANGLE2 = 1e-10

# trace(R) + 1 below this switches so3_log to the θ ≈ π branch.
_NEAR_PI_TRACE = 1e-4


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.stack(
        [
            jnp.stack([zero, -z, y]),
            jnp.stack([z, zero, -x]),
            jnp.stack([-y, x, zero]),
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Assumes R is a 3x3 skew-symmetric-like matrix.
    """
    return jnp.stack([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def _safe(small: jnp.ndarray, x: jnp.ndarray) -> jnp.ndarray:
    return jnp.where(small, jnp.ones_like(x), x)


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula, written with 1 - cos θ = 2 sin²(θ/2) to keep
    precision for small θ, and a second-order Taylor fallback.
    """
    w = jnp.asarray(w)
    theta2 = jnp.dot(w, w)
    small = theta2 < _SMALL_ANGLE2
    theta = jnp.sqrt(_safe(small, theta2))

    half_sin = jnp.sin(0.5 * theta)
    a = jnp.where(small, 1.0 - theta2 / 6.0, jnp.sin(theta) / theta)
    b = jnp.where(small, 0.5 - theta2 / 24.0, 2.0 * half_sin * half_sin / _safe(small, theta2))

    W = hat(w)
    return jnp.eye(3, dtype=w.dtype) + a * W + b * (W @ W)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    Handles three regimes:
      - θ ≈ 0: first-order expansion of θ / (2 sin θ)
      - generic θ: θ recovered with atan2 from the skew and trace parts
      - θ ≈ π: axis recovered from the symmetric part of R, sign taken
        from the (vanishing) skew part

    Returns w in R^3 such that Exp(w) ~ R, with |w| ≤ π.
    """
    R = jnp.asarray(R)
    tr = jnp.trace(R)
    skew = jnp.stack([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])

    tr_3 = tr - 3.0  # always ≤ 0
    small = tr_3 > -1e-7
    near_pi = tr + 1.0 < _NEAR_PI_TRACE

    cos_theta = 0.5 * (tr - 1.0)

    # Taylor expansion of θ / (2 sin θ) around θ = 0, using θ² ≈ -(tr - 3).
    w_small = (0.5 - tr_3 / 12.0) * skew

    sin_theta = 0.5 * jnp.sqrt(_safe(small | near_pi, jnp.dot(skew, skew)))
    theta = jnp.arctan2(sin_theta, cos_theta)
    w_generic = (theta / (2.0 * sin_theta)) * skew

    # (R + Rᵀ)/2 = cos θ I + (1 - cos θ) k kᵀ, so any column of B is k·k_i.
    one_minus_cos = jnp.where(near_pi, 1.0 - cos_theta, 1.0)
    B = (0.5 * (R + R.T) - cos_theta * jnp.eye(3, dtype=R.dtype)) / one_minus_cos
    i = jnp.argmax(jnp.diagonal(B))
    column = B[:, i]
    column_norm = jnp.sqrt(jnp.where(near_pi, jnp.dot(column, column), 1.0))
    axis = column / column_norm
    signed_sin = 0.5 * jnp.dot(axis, skew)
    axis = jnp.where(signed_sin < 0.0, -axis, axis)
    w_pi = jnp.arctan2(jnp.abs(signed_sin), cos_theta) * axis

    return jnp.where(small, w_small, jnp.where(near_pi, w_pi, w_generic))


def _se3_coefficients(w: jnp.ndarray):
    """Return (θ², small, B, C) with V = I + B W + C W²."""
    theta2 = jnp.dot(w, w)
    small = theta2 < _SMALL_ANGLE2
    theta2_safe = _safe(small, theta2)
    theta = jnp.sqrt(theta2_safe)
    half_sin = jnp.sin(0.5 * theta)
    B = jnp.where(small, 0.5 - theta2 / 24.0, 2.0 * half_sin * half_sin / theta2_safe)
    C = jnp.where(
        small, 1.0 / 6.0 - theta2 / 120.0, (theta - jnp.sin(theta)) / (theta2_safe * theta)
    )
    return theta2, small, B, C


def se3_exp(xi: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Exponential map from se(3) -> SE(3).

    xi = [w_x, w_y, w_z, v_x, v_y, v_z]
      - w: rotation vector in R^3 (axis-angle)
      - v: translational velocity in R^3

    Returns (R, t) with t = V(w) v and

        V = I + (1 - cos θ)/θ² W + (θ - sin θ)/θ³ W²
    """
    xi = jnp.asarray(xi)
    w = xi[:3]
    v = xi[3:]
    _, _, B, C = _se3_coefficients(w)
    W = hat(w)
    V = jnp.eye(3, dtype=xi.dtype) + B * W + C * (W @ W)
    return so3_exp(w), V @ v


def se3_log(R: jnp.ndarray, t: jnp.ndarray) -> jnp.ndarray:
    """
    Inverse of se3_exp; extracts a twist [w, v] from (R, t).

    Uses the closed-form inverse

        V⁻¹ = I - W/2 + (1 - (θ/2) cot(θ/2)) / θ² W²

    which stays finite at θ = π.
    """
    w = so3_log(R)
    theta2 = jnp.dot(w, w)
    small = theta2 < _SMALL_ANGLE2
    theta2_safe = _safe(small, theta2)
    half = 0.5 * jnp.sqrt(theta2_safe)
    D = jnp.where(
        small,
        1.0 / 12.0 + theta2 / 720.0,
        (1.0 - half * jnp.cos(half) / jnp.sin(half)) / theta2_safe,
    )
    W = hat(w)
    V_inv = jnp.eye(3, dtype=R.dtype) - 0.5 * W + D * (W @ W)
    return jnp.concatenate([w, V_inv @ t])


def se2_exp(xi: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray, jnp.ndarray]:
    """
    Exponential map from se(2) -> SE(2).

    xi = [v_x, v_y, ω]; returns (cos ω, sin ω, t) with

        t = [[sin ω/ω, -(1 - cos ω)/ω], [(1 - cos ω)/ω, sin ω/ω]] v
    """
    xi = jnp.asarray(xi)
    vx, vy, omega = xi[0], xi[1], xi[2]
    omega2 = omega * omega
    small = omega2 < _SMALL_ANGLE2
    omega_safe = _safe(small, omega)
    half_sin = jnp.sin(0.5 * omega_safe)
    a = jnp.where(small, 1.0 - omega2 / 6.0, jnp.sin(omega_safe) / omega_safe)
    b = jnp.where(small, 0.5 * omega - omega * omega2 / 24.0, 2.0 * half_sin * half_sin / omega_safe)
    t = jnp.stack([a * vx - b * vy, b * vx + a * vy])
    return jnp.cos(omega), jnp.sin(omega), t


def se2_log(c: jnp.ndarray, s: jnp.ndarray, t: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map SE(2) -> se(2), returning [v_x, v_y, ω].

    ω = atan2(s, c) ∈ (-π, π]; the translation part is V⁻¹ t with
    V⁻¹ = [[a, ω/2], [-ω/2, a]], a = (ω/2) cot(ω/2).
    """
    omega = jnp.arctan2(s, c)
    omega2 = omega * omega
    small = omega2 < _SMALL_ANGLE2
    half = 0.5 * _safe(small, omega)
    a = jnp.where(small, 1.0 - omega2 / 12.0, half * jnp.cos(half) / jnp.sin(half))
    half = 0.5 * omega
    vx = a * t[0] + half * t[1]
    vy = -half * t[0] + a * t[1]
    return jnp.stack([vx, vy, omega])


def quaternion_to_matrix(w, x, y, z) -> jnp.ndarray:
    """Rotation matrix of the unit quaternion w + xi + yj + zk."""
    tx, ty, tz = 2.0 * x, 2.0 * y, 2.0 * z
    twx, twy, twz = tx * w, ty * w, tz * w
    txx, txy, txz = tx * x, ty * x, tz * x
    tyy, tyz, tzz = ty * y, tz * y, tz * z
    return jnp.array(
        [
            [1.0 - (tyy + tzz), txy - twz, txz + twy],
            [txy + twz, 1.0 - (txx + tzz), tyz - twx],
            [txz - twy, tyz + twx, 1.0 - (txx + tyy)],
        ]
    )


def closest_rotation(M: jnp.ndarray) -> jnp.ndarray:
    """
    Project an arbitrary 3×3 matrix onto SO(3) in the Frobenius sense.

    With M = U S Vᵀ, returns U diag(1, 1, det(U Vᵀ)) Vᵀ.
    """
    U, _, Vt = jnp.linalg.svd(jnp.asarray(M))
    d = jnp.linalg.det(U @ Vt)
    S = jnp.diag(jnp.array([1.0, 1.0, d]))
    return U @ S @ Vt
