# Copyright (c) 2025.
# This file is part of fusion-jit, released under the MIT License.
"""
JIT-compiled, vectorized wrappers around residual functions.

A residual is written for a *single* factor:

    residual(values: tuple[Manifold, ...], params: dict) -> (m,) array

The linearization layer evaluates all factors of the same type and shape
together. This module builds, once per residual function, the two batched
kernels it needs:

    errors(values, params) -> (n, m)
        ``jax.jit(jax.vmap(residual))``

    linearize(values, params) -> (jacobians, errors)
        Jacobians with respect to the *local chart* of every adjacent value,
        i.e. ``jax.jacfwd`` of ``δ ↦ residual(retract(x, δ))`` at ``δ = 0``,
        one ``(n, m, d_k)`` array per adjacent variable.

Wrappers are cached with ``functools.lru_cache`` keyed on the residual
function itself, so repeated linearizations inside the LM loop reuse the
compiled XLA programs; JAX retraces only when group shapes change.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

import jax
import jax.numpy as jnp


@dataclass(frozen=True)
class JittedResidual:
    """
    Compiled batched kernels for one residual function.

    Usage:
        jr = JittedResidual.from_residual(between_residual)
        errs = jr.errors(stacked_values, stacked_params)
        jacs, errs = jr.linearize(stacked_values, stacked_params)
    """
    residual_fn: Callable
    errors: Callable
    linearize: Callable

    @staticmethod
    @lru_cache(maxsize=None)
    def from_residual(residual_fn: Callable) -> "JittedResidual":
        def error_one(values, params):
            return jnp.atleast_1d(residual_fn(values, params))

        def linearize_one(values, params):
            def local(deltas):
                moved = tuple(v.retract(d) for v, d in zip(values, deltas))
                return jnp.atleast_1d(residual_fn(moved, params))

            zeros = tuple(jnp.zeros(v.dim) for v in values)
            jacobians = jax.jacfwd(local)(zeros)
            return jacobians, error_one(values, params)

        return JittedResidual(
            residual_fn=residual_fn,
            errors=jax.jit(jax.vmap(error_one)),
            linearize=jax.jit(jax.vmap(linearize_one)),
        )
